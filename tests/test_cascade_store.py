"""
Tests for the cascade store.

Covers section derivation, immediate trigger effects, additive merging,
exponential decay with pruning, scoping, aux channels, revisions and the
subscriber contract.
"""

import math
import threading

import numpy as np
import pytest

from holoweb import (
    CascadeContext,
    CascadeRule,
    CascadeStore,
    EngineConfig,
    Relationship,
    RelationshipKind,
    ScopeKind,
    SectionActivity,
    SectionDerivationRule,
)
from holoweb.params import LAYERS, PARAMETER_RANGES


def rule(trigger, parameter, intensity, scope=ScopeKind.SECTION,
         kind=RelationshipKind.LINEAR, curve=None, **pins):
    return CascadeRule(
        trigger_name=trigger,
        parameter_name=parameter,
        relationship=Relationship(kind=kind, intensity=intensity, curve=curve),
        target_scope=scope,
        **pins,
    )


@pytest.fixture
def pulse_store(clock, plain_sections):
    """Identity sections a/b and a single 'pulse' trigger on density."""
    s = CascadeStore(
        cascades={'pulse': [rule('pulse', 'density', 0.2)]},
        sections=plain_sections,
        clock=clock,
    )
    yield s
    s.dispose()


class TestDerivation:
    """Section and layer vectors derived from home plus rules."""

    def test_ai_news_shift_and_multiplier(self, clock):
        store = CascadeStore(
            sections={'ai-news': SectionDerivationRule(hue_shift=0.07, density_multiplier=0.9)},
            home_params={'hue': 0.6, 'density': 0.5},
            clock=clock,
        )
        params = store.derive_section_params('ai-news')
        assert params.hue == pytest.approx(0.67)
        assert params.density == pytest.approx(0.45)

    def test_stock_sections(self, store):
        assert store.derive_section_params('home').glitch == pytest.approx(0.15)
        philosophy = store.derive_section_params('philosophy')
        assert philosophy.density == pytest.approx(0.55)
        assert philosophy.glitch == pytest.approx(0.07)
        assert philosophy.time_scale == pytest.approx(0.9)
        assert store.derive_section_params('info-theory').noise_frequency == pytest.approx(1.68)

    def test_hue_shift_wraps(self, clock):
        store = CascadeStore(
            sections={'x': SectionDerivationRule(hue_shift=0.5)},
            home_params={'hue': 0.75},
            clock=clock,
        )
        assert store.derive_section_params('x').hue == pytest.approx(0.25)

    def test_glitch_never_negative(self, clock):
        store = CascadeStore(
            sections={'x': SectionDerivationRule(glitch_bias=-0.5)},
            clock=clock,
        )
        assert store.derive_section_params('x').glitch == 0.0

    def test_unknown_section_uses_identity(self, store):
        params = store.derive_section_params('nowhere')
        assert params == store.home_params

    def test_layer_scaling(self, pulse_store):
        assert pulse_store.derive_layer_params('a', 'background').density == pytest.approx(0.35)
        assert pulse_store.derive_layer_params('a', 'accent').density == pytest.approx(0.25)
        assert pulse_store.derive_layer_params('a', 'shadow').chaos == pytest.approx(0.16)
        assert pulse_store.derive_layer_params('a', 'highlight').chaos == pytest.approx(0.24)
        assert pulse_store.derive_layer_params('a', 'content') == pulse_store.derive_section_params('a')


class TestHomeParams:

    def test_update_clamps(self, store):
        assert store.update_home_params({'density': 1.7, 'hue': 1.2}) is True
        assert store.home_params.density == 1.0
        assert store.home_params.hue == pytest.approx(0.2)

    def test_update_notifies_synchronously(self, store):
        calls = []
        store.subscribe(lambda: calls.append(store.get_revision()))
        before = store.get_revision()

        store.update_home_params(density=0.8)

        assert calls == [before + 1]
        assert store.derive_section_params('vibe-coding').density == pytest.approx(0.8)

    def test_no_op_update_is_silent(self, store):
        calls = []
        store.subscribe(lambda: calls.append(1))
        assert store.update_home_params(density=store.home_params.density) is False
        assert store.update_home_params(sparkle=3.0) is False
        assert store.update_home_params(chaos=math.nan) is False
        assert calls == []

    def test_home_params_is_a_copy(self, store):
        home = store.home_params
        home.density = 0.0
        assert store.home_params.density == 0.5

    def test_randomize_home(self, store):
        home = store.randomize_home(np.random.default_rng(3))
        assert home == store.home_params
        for name, rng in PARAMETER_RANGES.items():
            assert rng.low <= getattr(home, name) <= rng.high


class TestTriggers:
    """Triggers write deltas that are visible immediately."""

    def test_effect_before_any_step(self, pulse_store):
        written = pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        assert written == 1
        assert pulse_store.derive_section_params('a').density == pytest.approx(0.7)
        assert pulse_store.derive_section_params('b').density == pytest.approx(0.5)

    def test_trigger_notifies(self, pulse_store):
        calls = []
        pulse_store.subscribe(lambda: calls.append(1))
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        assert calls == [1]

    def test_same_scope_merges_additively(self, pulse_store):
        ctx = CascadeContext(section_id='a')
        pulse_store.trigger_parameter_cascade('pulse', ctx)
        pulse_store.trigger_parameter_cascade('pulse', ctx)

        deltas = pulse_store.get_active_deltas()
        assert len(deltas) == 1
        assert deltas[0].value == pytest.approx(0.4)
        assert pulse_store.derive_section_params('a').density == pytest.approx(0.9)

    def test_clamp_applies_once_to_the_sum(self, pulse_store):
        ctx = CascadeContext(section_id='a')
        for _ in range(3):
            pulse_store.trigger_parameter_cascade('pulse', ctx)
        assert pulse_store.derive_section_params('a').density == 1.0

        # the stored sum is 0.6, not the clamped 0.5 headroom
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a', polarity=-1))
        assert pulse_store.derive_section_params('a').density == pytest.approx(0.9)

    def test_magnitude_scales_source(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a', magnitude=0.5))
        assert pulse_store.derive_section_params('a').density == pytest.approx(0.6)

    def test_unknown_trigger_is_a_no_op(self, pulse_store):
        calls = []
        pulse_store.subscribe(lambda: calls.append(1))
        assert pulse_store.trigger_parameter_cascade('nope') == 0
        assert calls == []

    def test_zero_source_writes_nothing(self, pulse_store):
        ctx = CascadeContext(section_id='a', magnitude=0.0)
        assert pulse_store.trigger_parameter_cascade('pulse', ctx) == 0
        assert pulse_store.get_active_deltas() == []

    def test_section_activity(self, pulse_store):
        assert pulse_store.section_activity('a') is SectionActivity.IDLE
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        assert pulse_store.section_activity('a') is SectionActivity.ACTIVE
        assert pulse_store.section_activity('b') is SectionActivity.IDLE

    def test_invalid_custom_curve_behaves_linear(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'bend': [rule('bend', 'density', 0.2,
                                    kind=RelationshipKind.CUSTOM,
                                    curve=lambda x: 1.0 / (x - 0.5))]},
            sections=plain_sections,
            clock=clock,
        )
        store.trigger_parameter_cascade('bend', CascadeContext(section_id='a'))
        assert store.derive_section_params('a').density == pytest.approx(0.7)

    def test_unknown_parameter_rules_are_dropped(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'bad': [rule('bad', 'sparkle', 1.0)]},
            sections=plain_sections,
            clock=clock,
        )
        assert store.triggers() == []
        assert store.trigger_parameter_cascade('bad', CascadeContext(section_id='a')) == 0


class TestScopes:

    def test_layer_scope(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'lift': [rule('lift', 'density', 0.2, scope=ScopeKind.LAYER)]},
            sections=plain_sections,
            clock=clock,
        )
        store.trigger_parameter_cascade('lift', CascadeContext(section_id='a', layer_type='content'))

        assert store.derive_layer_params('a', 'content').density == pytest.approx(0.7)
        assert store.derive_layer_params('a', 'shadow').density == pytest.approx(0.5)
        assert store.derive_layer_params('b', 'content').density == pytest.approx(0.5)
        assert store.derive_section_params('a').density == pytest.approx(0.5)

    def test_layer_scope_without_section_hits_every_section(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'wash': [rule('wash', 'chaos', 0.3, scope=ScopeKind.LAYER)]},
            sections=plain_sections,
            clock=clock,
        )
        store.trigger_parameter_cascade('wash', CascadeContext(layer_type='background'))

        for section_id in ('a', 'b'):
            assert store.derive_layer_params(section_id, 'background').chaos == pytest.approx(0.5)
            assert store.derive_layer_params(section_id, 'content').chaos == pytest.approx(0.2)

    def test_global_scope(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'all': [rule('all', 'glitch', 0.4, scope=ScopeKind.GLOBAL)]},
            sections=plain_sections,
            clock=clock,
        )
        store.trigger_parameter_cascade('all', CascadeContext(section_id='a'))
        for section_id in ('a', 'b', 'elsewhere'):
            assert store.derive_section_params(section_id).glitch == pytest.approx(0.5)

    def test_pinned_section(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'remote': [rule('remote', 'density', 0.2, section_id='b')]},
            sections=plain_sections,
            clock=clock,
        )
        store.trigger_parameter_cascade('remote', CascadeContext(section_id='a'))
        assert store.derive_section_params('a').density == pytest.approx(0.5)
        assert store.derive_section_params('b').density == pytest.approx(0.7)

    def test_aux_channel(self, store):
        store.trigger_parameter_cascade('cardHoverTarget', CascadeContext(
            section_id='ai-news', layer_type='content',
        ))
        assert store.get_aux_value('otherCards.opacity', 1.0, section_id='ai-news') == pytest.approx(0.4)
        assert store.get_aux_value('aux.otherCards.opacity', 1.0, section_id='philosophy') == 1.0

    def test_aux_deltas_do_not_leak_into_vectors(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'fade': [rule('fade', 'aux.density', 0.5)]},
            sections=plain_sections,
            clock=clock,
        )
        store.trigger_parameter_cascade('fade', CascadeContext(section_id='a'))
        assert store.derive_section_params('a').density == pytest.approx(0.5)


class TestDecay:

    def test_one_time_constant(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        pulse_store.step(600.0)
        expected = 0.5 + 0.2 * math.exp(-1.0)
        assert pulse_store.derive_section_params('a').density == pytest.approx(expected)

    def test_steps_compose(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        for _ in range(10):
            pulse_store.step(60.0)
        expected = 0.5 + 0.2 * math.exp(-1.0)
        assert pulse_store.derive_section_params('a').density == pytest.approx(expected)

    def test_custom_time_constant(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'pulse': [rule('pulse', 'density', 0.2)]},
            sections=plain_sections,
            engine_config=EngineConfig(decay_time_constant_ms=100.0),
            clock=clock,
        )
        store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        store.step(100.0)
        assert store.get_active_deltas()[0].value == pytest.approx(0.2 * math.exp(-1.0))

    def test_prune_returns_to_idle(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        revision = pulse_store.get_revision()

        assert pulse_store.step(10000.0) is True

        assert pulse_store.get_active_deltas() == []
        assert pulse_store.section_activity('a') is SectionActivity.IDLE
        assert pulse_store.derive_section_params('a').density == pytest.approx(0.5)
        assert pulse_store.get_revision() == revision + 1

    @pytest.mark.parametrize("dt", [0.0, -16.0, math.nan, math.inf])
    def test_degenerate_step_changes_nothing(self, pulse_store, dt):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        pulse_store.consciousness.register_element('a', 'content')
        before = pulse_store.get_snapshot()
        mind_before = pulse_store.consciousness.get_snapshot()

        assert pulse_store.step(dt) is False

        assert pulse_store.get_snapshot() == before
        assert pulse_store.consciousness.get_snapshot().to_dict() == mind_before.to_dict()

    def test_quiet_step_keeps_revision(self, pulse_store):
        calls = []
        pulse_store.subscribe(lambda: calls.append(1))
        revision = pulse_store.get_revision()

        for _ in range(5):
            assert pulse_store.step(16.0) is False

        assert pulse_store.get_revision() == revision
        assert calls == []

    def test_clear_cascades(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='b'))

        assert pulse_store.clear_cascades('a') == 1
        assert pulse_store.section_activity('a') is SectionActivity.IDLE
        assert pulse_store.section_activity('b') is SectionActivity.ACTIVE

        assert pulse_store.clear_cascades() == 1
        assert pulse_store.clear_cascades() == 0


class TestRangeInvariant:
    """Whatever fires, every published vector stays inside its ranges."""

    def test_hammered_store_stays_in_range(self, clock):
        kinds = [RelationshipKind.LINEAR, RelationshipKind.INVERSE,
                 RelationshipKind.EXPONENTIAL, RelationshipKind.LOGARITHMIC]
        names = list(PARAMETER_RANGES)
        table = {
            f"t{i}": [rule(f"t{i}", names[i % len(names)], 1000.0 * (-1) ** i,
                           kind=kinds[i % len(kinds)])]
            for i in range(20)
        }
        store = CascadeStore(cascades=table, clock=clock)
        gen = np.random.default_rng(11)

        for _ in range(200):
            trigger = f"t{gen.integers(20)}"
            section = store.section_ids()[gen.integers(len(store.section_ids()))]
            store.trigger_parameter_cascade(trigger, CascadeContext(
                section_id=section,
                magnitude=float(gen.uniform(0, 50)),
                polarity=int(gen.choice([-1, 1])),
            ))
            store.step(float(gen.uniform(1, 50)))

        for section_id in store.section_ids():
            vectors = [store.derive_section_params(section_id)]
            vectors += [store.derive_layer_params(section_id, layer) for layer in LAYERS]
            for vector in vectors:
                for name, rng in PARAMETER_RANGES.items():
                    value = getattr(vector, name)
                    assert math.isfinite(value)
                    assert rng.low <= value <= rng.high


class TestSubscribers:

    def test_unsubscribe_is_idempotent(self, store):
        calls = []
        unsubscribe = store.subscribe(lambda: calls.append(1))
        unsubscribe()
        unsubscribe()
        store.update_home_params(density=0.9)
        assert calls == []

    def test_failing_listener_does_not_block_others(self, store):
        calls = []

        def broken():
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(lambda: calls.append(1))
        store.update_home_params(density=0.9)
        assert calls == [1]

    def test_stores_are_independent(self, clock):
        first = CascadeStore(clock=clock)
        second = CascadeStore(clock=clock)
        calls = []
        second.subscribe(lambda: calls.append(1))

        first.update_home_params(density=0.1)

        assert calls == []
        assert second.home_params.density == 0.5


class TestSnapshot:

    def test_snapshot_reflects_trigger(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        snapshot = pulse_store.get_snapshot()

        assert snapshot.revision == pulse_store.get_revision()
        assert snapshot.sections['a']['density'] == pytest.approx(0.7)
        assert snapshot.layers['a']['background']['density'] == pytest.approx(0.55)
        assert snapshot.active_scopes == ('a:*',)

    def test_snapshot_to_dict(self, pulse_store):
        data = pulse_store.get_snapshot().to_dict()
        assert set(data) == {'revision', 'home', 'sections', 'layers', 'active_scopes'}
        assert set(data['layers']['a']) == set(LAYERS)


class TestLifecycle:

    def test_start_stop_idempotent(self, store):
        store.start()
        store.start()
        assert store.running
        store.stop()
        store.stop()
        assert not store.running

    def test_dispose(self, pulse_store):
        calls = []
        pulse_store.subscribe(lambda: calls.append(1))
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        pulse_store.dispose()
        pulse_store.dispose()

        assert pulse_store.get_active_deltas() == []
        assert pulse_store.subscriber_count == 0
        pulse_store.start()
        assert not pulse_store.running

    def test_from_config(self, clock):
        from holoweb import get_default_config

        config = get_default_config()
        config.engine.decay_time_constant_ms = 250.0
        store = CascadeStore.from_config(config, clock=clock)
        assert store.config.decay_time_constant_ms == 250.0
        assert 'cardHoverTarget' in store.triggers()


class TestAuxBounds:

    def test_bounded_channel_clamps_after_summing(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'fade': [rule('fade', 'aux.glow', -0.5, min_value=0.2, max_value=1.0)]},
            sections=plain_sections,
            clock=clock,
        )
        assert store.get_aux_bounds('glow') == (0.2, 1.0)

        store.trigger_parameter_cascade('fade', CascadeContext(section_id='a'))
        assert store.get_aux_value('glow', 1.0, section_id='a') == pytest.approx(0.5)

        store.trigger_parameter_cascade('fade', CascadeContext(section_id='a'))
        store.trigger_parameter_cascade('fade', CascadeContext(section_id='a'))
        assert store.get_aux_value('glow', 1.0, section_id='a') == pytest.approx(0.2)
        # the live delta itself is not clipped, so decay still runs from the sum
        assert store.get_active_deltas()[0].value == pytest.approx(-1.5)

    def test_base_outside_bounds_is_clamped(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'fade': [rule('fade', 'aux.glow', 0.1, max_value=1.0)]},
            sections=plain_sections,
            clock=clock,
        )
        assert store.get_aux_value('glow', 3.0) == 1.0

    def test_unbounded_channel_is_not_clamped(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'fade': [rule('fade', 'aux.glow', -0.5)]},
            sections=plain_sections,
            clock=clock,
        )
        store.trigger_parameter_cascade('fade', CascadeContext(section_id='a'))
        store.trigger_parameter_cascade('fade', CascadeContext(section_id='a'))
        store.trigger_parameter_cascade('fade', CascadeContext(section_id='a'))
        assert store.get_aux_bounds('glow') is None
        assert store.get_aux_value('glow', 1.0, section_id='a') == pytest.approx(-0.5)

    def test_stock_opacity_bounds(self, store):
        assert store.get_aux_bounds('aux.otherCards.opacity') == (0.15, 1.0)

    def test_inverted_bounds_are_ignored(self, clock, plain_sections):
        store = CascadeStore(
            cascades={'fade': [rule('fade', 'aux.glow', -0.5, min_value=2.0, max_value=1.0)]},
            sections=plain_sections,
            clock=clock,
        )
        assert store.get_aux_bounds('glow') is None


class TestQuietSections:
    """Sections with no rule are published only while a delta pins them."""

    def test_decayed_section_is_forgotten(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='zzz'))
        assert 'zzz' in pulse_store.section_ids()
        assert 'zzz' in pulse_store.get_snapshot().sections

        pulse_store.step(10000.0)

        assert 'zzz' not in pulse_store.section_ids()
        assert 'zzz' not in pulse_store.get_snapshot().sections
        assert pulse_store.section_ids() == ['a', 'b']

    def test_cleared_section_is_forgotten(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='zzz'))
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='yyy'))

        pulse_store.clear_cascades('zzz')

        assert 'zzz' not in pulse_store.section_ids()
        assert 'yyy' in pulse_store.section_ids()

    def test_ruled_sections_stay(self, pulse_store):
        pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
        pulse_store.clear_cascades()
        assert pulse_store.section_ids() == ['a', 'b']

    def test_many_transient_sections_do_not_accumulate(self, pulse_store):
        for i in range(50):
            pulse_store.trigger_parameter_cascade('pulse', CascadeContext(section_id=f'transient-{i}'))
            pulse_store.step(10000.0)
        assert pulse_store.section_ids() == ['a', 'b']


class TestBadSectionRules:

    def test_non_numeric_rule_falls_back_to_identity(self, clock):
        store = CascadeStore(
            sections={
                'x': SectionDerivationRule(hue_shift='oops'),
                'y': SectionDerivationRule(hue_shift=0.25),
            },
            clock=clock,
        )
        assert 'x' not in store.section_ids()
        assert 'y' in store.section_ids()
        assert store.derive_section_params('x') == store.home_params

    def test_non_finite_rule_is_logged(self, clock, caplog):
        with caplog.at_level('WARNING', logger='holoweb.cascade'):
            CascadeStore(sections={'x': SectionDerivationRule(density_add=float('nan'))}, clock=clock)
        assert "falls back to the identity rule" in caplog.text


class TestLocking:
    """The store, its estimator and a background loop share one lock."""

    def test_store_uses_estimator_lock(self, store):
        assert store.lock is store.consciousness.lock

    def test_trigger_waits_for_lock_holder(self, pulse_store):
        worker = threading.Thread(
            target=pulse_store.trigger_parameter_cascade,
            args=('pulse', CascadeContext(section_id='a')),
        )
        with pulse_store.lock:
            worker.start()
            worker.join(0.1)
            assert worker.is_alive()
            assert pulse_store.get_active_deltas() == []

        worker.join(5.0)
        assert not worker.is_alive()
        assert pulse_store.derive_section_params('a').density == pytest.approx(0.7)

    def test_running_loops_and_host_calls_stay_consistent(self, clock, plain_sections):
        from holoweb import InteractionCoordinator, VisualizerRegistration

        store = CascadeStore(
            cascades={'pulse': [rule('pulse', 'density', 0.2)]},
            sections=plain_sections,
            engine_config=EngineConfig(tick_hz=500.0),
            clock=clock,
        )
        coordinator = InteractionCoordinator(store)
        coordinator.register_visualizer(VisualizerRegistration(id='v', section_id='a', layer='content'))
        store.start()
        coordinator.start()
        try:
            for _ in range(200):
                store.trigger_parameter_cascade('pulse', CascadeContext(section_id='a'))
                for section_id in store.section_ids():
                    vector = store.derive_section_params(section_id)
                    assert 0.0 <= vector.density <= 1.0
            assert store._loop.get_stats()['errors'] == 0
            assert coordinator._loop.get_stats()['errors'] == 0
        finally:
            coordinator.dispose()
            store.dispose()
        assert not store.running
        assert not coordinator.running
