"""Tests for ThermodynamicRouter and the Boltzmann helpers."""

from __future__ import annotations

import math
import random

import pytest

from meshcore.config import RouterConfig
from meshcore.errors import DimensionMismatchError, NoCandidatesError
from meshcore.observer import Observer
from meshcore.routing.thermodynamic import (
    MIN_TEMPERATURE,
    Message,
    RoutingCandidate,
    ThermodynamicRouter,
    compute_energy,
    sample,
    softmax,
)


class _FixedRandom:
    """Stand-in RNG whose random() always returns the same value."""

    def __init__(self, value: float):
        self.value = value

    def random(self) -> float:
        return self.value


def _candidate(
    agent_id: str,
    attractor: list[float],
    load: float = 0.0,
    coherence: float = 0.0,
    model_embedding: list[float] | None = None,
) -> RoutingCandidate:
    return RoutingCandidate(
        observer=Observer(id=agent_id, name=agent_id, frequency=1.0),
        load=load,
        coherence=coherence,
        attractor=attractor,
        model_embedding=model_embedding,
    )


def _make_router(schedule: str = "none", temperature: float = 1.0, seed: int = 0) -> ThermodynamicRouter:
    return ThermodynamicRouter(
        RouterConfig(temperature=temperature, annealing_schedule=schedule),
        rng=random.Random(seed),
    )


# ---------------------------------------------------------------------------
# Softmax and sampling
# ---------------------------------------------------------------------------


class TestSoftmax:
    def test_sums_to_one(self):
        probs = softmax([0.1, 0.5, 2.0, -1.0], 0.7)
        assert sum(probs) == pytest.approx(1.0)

    def test_lower_energy_is_more_likely(self):
        low, high = softmax([0.0, 1.0], 1.0)
        assert low > high

    def test_equal_energies_are_uniform(self):
        assert softmax([0.3, 0.3, 0.3], 1.0) == pytest.approx([1 / 3] * 3)

    def test_temperature_is_floored(self):
        assert softmax([0.0, 0.001], 0.0) == pytest.approx(softmax([0.0, 0.001], MIN_TEMPERATURE))

    def test_large_energies_do_not_overflow(self):
        probs = softmax([1000.0, 1001.0], 0.01)
        assert all(math.isfinite(p) for p in probs)
        assert sum(probs) == pytest.approx(1.0)

    def test_empty(self):
        assert softmax([], 1.0) == []


class TestSample:
    def test_empty_raises(self):
        with pytest.raises(NoCandidatesError):
            sample([], [])

    def test_walks_cumulative_distribution(self):
        items = ["a", "b", "c"]
        probs = [0.2, 0.3, 0.5]
        assert sample(items, probs, _FixedRandom(0.1)) == "a"
        assert sample(items, probs, _FixedRandom(0.4)) == "b"
        assert sample(items, probs, _FixedRandom(0.9)) == "c"

    def test_float_shortfall_falls_back_to_last(self):
        assert sample(["a", "b"], [0.4, 0.4], _FixedRandom(0.99)) == "b"


# ---------------------------------------------------------------------------
# Energy
# ---------------------------------------------------------------------------


class TestComputeEnergy:
    def test_aligned_idle_candidate_has_zero_energy(self):
        cand = _candidate("a", [1.0, 0.0, 0.0])
        assert compute_energy([1.0, 0.0, 0.0], cand, RouterConfig()) == pytest.approx(0.0)

    def test_terms_combine_with_weights(self):
        config = RouterConfig(semantic_weight=0.3, load_weight=0.2, coherence_weight=0.2, model_weight=0.3)
        cand = _candidate("a", [0.0, 1.0], load=0.5, coherence=0.5, model_embedding=[1.0, 0.0])
        # semantic 1.0*0.3 + load 0.5*0.2 - coherence 0.5*0.2 - model 1.0*0.3
        assert compute_energy([1.0, 0.0], cand, config) == pytest.approx(0.0)

    def test_load_raises_energy(self):
        config = RouterConfig()
        idle = _candidate("idle", [1.0, 0.0], load=0.0)
        busy = _candidate("busy", [1.0, 0.0], load=1.0)
        assert compute_energy([1.0, 0.0], busy, config) > compute_energy([1.0, 0.0], idle, config)

    def test_dimension_mismatch(self):
        cand = _candidate("a", [1.0, 0.0, 0.0])
        with pytest.raises(DimensionMismatchError):
            compute_energy([1.0, 0.0], cand, RouterConfig())


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class TestRoute:
    def test_no_candidates_raises(self):
        with pytest.raises(NoCandidatesError):
            _make_router().route(Message(id="m1", embedding=[1.0, 0.0]), [])

    def test_single_candidate_short_circuits(self):
        router = _make_router(schedule="exponential")
        only = _candidate("only", [0.0, 1.0])
        assert router.route(Message(id="m1", embedding=[1.0, 0.0]), [only]) is only.observer
        assert router.step == 0
        assert router.get_temperature() == 1.0

    def test_cold_router_picks_best_fit(self):
        router = _make_router(temperature=0.01)
        good = _candidate("good", [1.0, 0.0])
        bad = _candidate("bad", [-1.0, 0.0])
        for _ in range(20):
            chosen = router.route(Message(id="m", embedding=[1.0, 0.0]), [bad, good])
            assert chosen.id == "good"

    def test_hot_router_explores(self):
        router = _make_router(temperature=100.0, seed=42)
        candidates = [_candidate("a", [1.0, 0.0]), _candidate("b", [0.0, 1.0])]
        chosen = {router.route({"embedding": [1.0, 0.0]}, candidates).id for _ in range(200)}
        assert chosen == {"a", "b"}

    def test_message_without_embedding_uses_zero_vector(self):
        router = _make_router()
        landscape = router.energy_landscape(Message(id="m"), [_candidate("a", [1.0, 0.0]), _candidate("b", [0.0, 1.0])])
        assert landscape["a"].probability == pytest.approx(0.5)

    def test_decisions_counted(self):
        router = _make_router()
        candidates = [_candidate("a", [1.0, 0.0]), _candidate("b", [0.0, 1.0])]
        for _ in range(3):
            router.route({"embedding": [1.0, 0.0]}, candidates)
        assert router.decisions == 3


class TestEnergyLandscape:
    def test_keyed_by_agent_id(self):
        router = _make_router()
        candidates = [_candidate("a", [1.0, 0.0]), _candidate("b", [0.0, 1.0])]
        landscape = router.energy_landscape({"embedding": [1.0, 0.0]}, candidates)
        assert set(landscape) == {"a", "b"}
        assert landscape["a"].energy < landscape["b"].energy
        assert landscape["a"].probability + landscape["b"].probability == pytest.approx(1.0)

    def test_empty(self):
        assert _make_router().energy_landscape({"embedding": [1.0]}, []) == {}

    def test_does_not_anneal(self):
        router = _make_router(schedule="exponential")
        router.energy_landscape({"embedding": [1.0, 0.0]}, [_candidate("a", [1.0, 0.0]), _candidate("b", [0.0, 1.0])])
        assert router.step == 0


# ---------------------------------------------------------------------------
# Annealing
# ---------------------------------------------------------------------------


def _route_once(router: ThermodynamicRouter) -> None:
    router.route({"embedding": [1.0, 0.0]}, [_candidate("a", [1.0, 0.0]), _candidate("b", [0.0, 1.0])])


class TestAnnealing:
    def test_none_keeps_temperature(self):
        router = _make_router(schedule="none")
        _route_once(router)
        assert router.get_temperature() == 1.0

    def test_adaptive_keeps_temperature_until_set(self):
        router = _make_router(schedule="adaptive")
        _route_once(router)
        assert router.get_temperature() == 1.0
        router.set_temperature(0.4)
        assert router.get_temperature() == 0.4

    def test_linear(self):
        router = _make_router(schedule="linear")
        _route_once(router)
        _route_once(router)
        assert router.get_temperature() == pytest.approx(0.998)

    def test_exponential(self):
        router = _make_router(schedule="exponential")
        _route_once(router)
        assert router.get_temperature() == pytest.approx(0.999)

    def test_linear_is_floored(self):
        router = _make_router(schedule="linear", temperature=0.0105)
        for _ in range(5):
            _route_once(router)
        assert router.get_temperature() == MIN_TEMPERATURE

    def test_set_temperature_is_floored(self):
        router = _make_router()
        router.set_temperature(-3.0)
        assert router.get_temperature() == MIN_TEMPERATURE

    def test_reset_restores_temperature(self):
        router = _make_router(schedule="exponential")
        _route_once(router)
        router.reset()
        assert router.step == 0
        assert router.get_temperature() == 1.0

    def test_unknown_schedule_rejected(self):
        with pytest.raises(ValueError):
            ThermodynamicRouter(RouterConfig(annealing_schedule="cosine"))
