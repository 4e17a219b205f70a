"""
Holoweb: Cascading Visual Parameter Engine
==========================================

Derives a live tree of visual parameters for many rendered surfaces from a
single home vector, reacts to interaction events, and keeps a smoothed
"consciousness" summary of where attention sits.

    UI events → InteractionCoordinator → CascadeStore ⇄ ConsciousnessEstimator
                                              │
    host tick ────────────────────────────────┘──▶ subscribers / snapshots

Modules:
    params.py        - ParameterVector, field ranges, layers
    relationships.py - RelationshipEvaluator (delta math, curve validation)
    config.py        - Section rules, cascade tables, EngineConfig, YAML loading
    schemas.py       - Pydantic validation of config files
    cascade.py       - CascadeStore (home authority, scoped decaying deltas)
    interaction.py   - InteractionCoordinator (hover/focus/click/idle)
    consciousness.py - ConsciousnessEstimator (attention → awareness etc.)
    observers.py     - Per-instance subscribe/revision plumbing
    loop.py          - TickLoop for hosts without a frame loop
    cli.py           - `holoweb derive` / `holoweb simulate`

Usage:
    from holoweb import CascadeStore, InteractionCoordinator, VisualizerRegistration

    store = CascadeStore()
    coordinator = InteractionCoordinator(store)
    unregister = coordinator.register_visualizer(
        VisualizerRegistration(id="card-1", section_id="ai-news", layer="content")
    )

    coordinator.handle_hover_start("card-1")
    store.step(16.0)
    coordinator.tick(16.0)
    params = store.derive_layer_params("ai-news", "content")
"""

__version__ = "0.1.0"

from .params import (
    LayerType,
    LAYERS,
    PARAMETER_NAMES,
    PARAMETER_RANGES,
    ParameterVector,
    DEFAULT_HOME_PARAMS,
    clamp_param,
    randomize_home_params,
)

from .relationships import (
    RelationshipKind,
    Relationship,
    RelationshipEvaluator,
)

from .config import (
    ConfigurationError,
    SectionDerivationRule,
    DEFAULT_SECTION_RULES,
    ScopeKind,
    CascadeRule,
    default_cascade_table,
    EngineConfig,
    HolowebConfig,
    get_default_config,
    load_config,
)

from .schemas import (
    validate_cascade_table,
    validate_section_rules,
)

from .cascade import (
    CascadeScope,
    CascadeContext,
    ScopedDelta,
    SectionActivity,
    CascadeSnapshot,
    CascadeStore,
)

from .consciousness import (
    ConsciousnessSnapshot,
    ConsciousnessEstimator,
)

from .interaction import (
    VisualizerRegistration,
    HoverMeta,
    InteractionCoordinator,
)

from .loop import TickLoop


__all__ = [
    '__version__',

    # Params
    'LayerType',
    'LAYERS',
    'PARAMETER_NAMES',
    'PARAMETER_RANGES',
    'ParameterVector',
    'DEFAULT_HOME_PARAMS',
    'clamp_param',
    'randomize_home_params',

    # Relationships
    'RelationshipKind',
    'Relationship',
    'RelationshipEvaluator',

    # Config
    'ConfigurationError',
    'SectionDerivationRule',
    'DEFAULT_SECTION_RULES',
    'ScopeKind',
    'CascadeRule',
    'default_cascade_table',
    'EngineConfig',
    'HolowebConfig',
    'get_default_config',
    'load_config',
    'validate_cascade_table',
    'validate_section_rules',

    # Cascade
    'CascadeScope',
    'CascadeContext',
    'ScopedDelta',
    'SectionActivity',
    'CascadeSnapshot',
    'CascadeStore',

    # Consciousness
    'ConsciousnessSnapshot',
    'ConsciousnessEstimator',

    # Interaction
    'VisualizerRegistration',
    'HoverMeta',
    'InteractionCoordinator',

    # Loop
    'TickLoop',
]
