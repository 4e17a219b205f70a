#!/usr/bin/env python3
"""
Holoweb CLI - Inspect Derivations and Replay a Scripted Session

Usage:
    holoweb derive                       # Derived vector per section (JSON)
    holoweb derive --layers              # ...and per layer
    holoweb simulate --seconds 20        # Scripted hover/focus/click/idle run
    holoweb simulate --config my.yaml    # Same, with a custom config

The simulation is deterministic: it ticks a simulated clock, never sleeps,
and prints one JSON line per simulated second.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .cascade import CascadeStore
from .config import ConfigurationError, load_config
from .consciousness import ConsciousnessEstimator
from .interaction import HoverMeta, InteractionCoordinator, VisualizerRegistration
from .params import LAYERS


logger = logging.getLogger(__name__)


def _load(path: Optional[str]):
    return load_config(Path(path) if path else None)


# =============================================================================
# derive
# =============================================================================

def cmd_derive(args: argparse.Namespace) -> int:
    config = _load(args.config)
    store = CascadeStore.from_config(config)

    output: Dict[str, object] = {'home': store.home_params.to_dict(), 'sections': {}}
    for section_id in store.section_ids():
        entry: Dict[str, object] = {'params': store.derive_section_params(section_id).to_dict()}
        if args.layers:
            entry['layers'] = {
                layer: store.derive_layer_params(section_id, layer).to_dict()
                for layer in LAYERS
            }
        output['sections'][section_id] = entry

    print(json.dumps(output, indent=2))
    store.dispose()
    return 0


# =============================================================================
# simulate
# =============================================================================

SimEvent = Tuple[float, str, str]

# (time in seconds, handler, visualizer id)
DEFAULT_SCRIPT: List[SimEvent] = [
    (0.5, 'hover_start', 'news-card-1'),
    (2.0, 'hover_end', 'news-card-1'),
    (3.0, 'focus', 'news-card-2'),
    (4.0, 'blur', 'news-card-2'),
    (5.0, 'click', 'news-card-3'),
]


def _build_session(config, clock: Callable[[], float]) -> Tuple[CascadeStore, InteractionCoordinator]:
    estimator = ConsciousnessEstimator(memory_size=config.engine.memory_size, clock=clock)
    store = CascadeStore.from_config(config, consciousness=estimator, clock=clock)
    coordinator = InteractionCoordinator(store)

    for i in range(1, 4):
        coordinator.register_visualizer(
            VisualizerRegistration(id=f"news-card-{i}", section_id='ai-news', layer='content')
        )
    for section_id in store.section_ids():
        coordinator.register_visualizer(
            VisualizerRegistration(id=f"{section_id}-bg", section_id=section_id, layer='background')
        )
    return store, coordinator


def _dispatch(coordinator: InteractionCoordinator, handler: str, visualizer_id: str) -> None:
    if handler == 'hover_start':
        coordinator.handle_hover_start(visualizer_id, HoverMeta(index=0, total=3))
    elif handler == 'hover_end':
        coordinator.handle_hover_end(visualizer_id)
    elif handler == 'focus':
        coordinator.handle_focus(visualizer_id)
    elif handler == 'blur':
        coordinator.handle_blur(visualizer_id)
    elif handler == 'click':
        coordinator.handle_click(visualizer_id)


def cmd_simulate(args: argparse.Namespace) -> int:
    config = _load(args.config)
    now = [0.0]
    store, coordinator = _build_session(config, clock=lambda: now[0])

    dt_ms = 1000.0 / args.hz
    total_ticks = int(args.seconds * args.hz)
    report_every = max(1, int(round(args.hz)))
    script = sorted(DEFAULT_SCRIPT)
    cursor = 0

    for tick in range(1, total_ticks + 1):
        now[0] = tick * dt_ms / 1000.0

        while cursor < len(script) and script[cursor][0] <= now[0]:
            _, handler, visualizer_id = script[cursor]
            _dispatch(coordinator, handler, visualizer_id)
            cursor += 1

        store.step(dt_ms)
        coordinator.tick(dt_ms)

        if tick % report_every == 0:
            mind = store.consciousness.get_snapshot()
            line = {
                't': round(now[0], 3),
                'revision': store.get_revision(),
                'active_scopes': list(store.get_snapshot().active_scopes),
                'awareness': round(mind.awareness, 4),
                'emergence': round(mind.emergence, 4),
                'coherence': round(mind.coherence, 4),
                'flux': round(mind.flux, 4),
                'ai_news_content': {
                    k: round(v, 4)
                    for k, v in store.derive_layer_params('ai-news', 'content').to_dict().items()
                },
            }
            print(json.dumps(line))

    coordinator.dispose()
    store.dispose()
    return 0


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="holoweb",
        description="Cascading visual parameter engine",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command")

    derive = sub.add_parser("derive", help="Print derived parameters per section")
    derive.add_argument("--config", "-c", help="YAML config file")
    derive.add_argument("--layers", action="store_true", help="Include per-layer vectors")

    simulate = sub.add_parser("simulate", help="Run a scripted interaction session")
    simulate.add_argument("--config", "-c", help="YAML config file")
    simulate.add_argument("--seconds", "-s", type=float, default=20.0, help="Simulated duration (default: 20)")
    simulate.add_argument("--hz", type=float, default=60.0, help="Tick rate (default: 60)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%H:%M:%S',
    )

    try:
        if args.command == "derive":
            return cmd_derive(args)
        if args.command == "simulate":
            if args.hz <= 0 or args.seconds < 0:
                parser.error("--hz must be positive and --seconds non-negative")
            return cmd_simulate(args)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
