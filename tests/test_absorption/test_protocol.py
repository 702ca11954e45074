"""Tests for AbsorptionProtocol: staged trust for external agents."""

from __future__ import annotations

import pytest

from meshcore.absorption.protocol import (
    AbsorptionCandidate,
    AbsorptionProtocol,
    AbsorptionStage,
    BehaviorSignals,
)
from meshcore.config import AbsorptionConfig
from meshcore.errors import CandidateNotFoundError, DimensionMismatchError
from meshcore.events import (
    CANDIDATE_INVITED,
    CANDIDATE_REJECTED,
    CANDIDATE_RELEASED,
    CANDIDATE_STAGE_CHANGED,
    EventBus,
)

CENTROID = [1.0, 0.0, 0.0]
ALIGNED = [1.0, 0.0, 0.0]
ORTHOGONAL = [0.0, 1.0, 0.0]
OPPOSED = [-1.0, 0.0, 0.0]


class _FakeClock:
    def __init__(self, start: float = 10_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_protocol(clock=None, events=None, **overrides) -> AbsorptionProtocol:
    settings = {"identity_centroid": CENTROID}
    settings.update(overrides)
    return AbsorptionProtocol(AbsorptionConfig(**settings), clock=clock or _FakeClock(), events=events)


def _to_assessed(proto: AbsorptionProtocol, agent_id: str = "agent-1", interactions: int = 3) -> AbsorptionCandidate:
    candidate = None
    for _ in range(interactions):
        candidate = proto.observe(agent_id, ALIGNED)
    return candidate


def _to_connected(proto: AbsorptionProtocol, agent_id: str = "agent-1") -> AbsorptionCandidate:
    _to_assessed(proto, agent_id)
    assert proto.invite_candidate(agent_id) is True
    assert proto.on_accepted(agent_id, "tok-123") is True
    return proto.get_candidate(agent_id)


# ---------------------------------------------------------------------------
# Observation and alignment
# ---------------------------------------------------------------------------


class TestObserve:
    def test_first_observation_creates_candidate(self):
        proto = _make_protocol()
        cand = proto.observe("agent-1", ALIGNED, agent_name="Agent One")
        assert cand.stage == AbsorptionStage.OBSERVED
        assert cand.interaction_count == 1
        assert cand.agent_name == "Agent One"
        assert cand.alignment == pytest.approx(1.0)
        assert cand.coupling_strength == 0.0

    def test_name_defaults_to_id(self):
        cand = _make_protocol().observe("agent-1")
        assert cand.agent_name == "agent-1"

    def test_first_observation_without_embedding_is_neutral(self):
        cand = _make_protocol().observe("agent-1")
        assert cand.alignment == 0.5

    def test_alignment_is_ema(self):
        proto = _make_protocol()
        proto.observe("agent-1", ALIGNED)
        cand = proto.observe("agent-1", ORTHOGONAL)
        assert cand.alignment == pytest.approx(0.7)

    def test_alignment_never_negative(self):
        proto = _make_protocol()
        cand = proto.observe("agent-1", OPPOSED)
        assert cand.alignment == 0.0
        for _ in range(5):
            cand = proto.observe("agent-1", OPPOSED)
            assert 0.0 <= cand.alignment <= 1.0

    def test_observation_without_embedding_keeps_alignment(self):
        proto = _make_protocol()
        proto.observe("agent-1", ORTHOGONAL)
        cand = proto.observe("agent-1")
        assert cand.alignment == 0.0
        assert cand.interaction_count == 2

    def test_missing_centroid_means_zero_similarity(self):
        proto = AbsorptionProtocol(clock=_FakeClock())
        cand = proto.observe("agent-1", ALIGNED)
        assert cand.alignment == 0.0

    def test_timestamps_follow_clock(self):
        clock = _FakeClock()
        proto = _make_protocol(clock)
        proto.observe("agent-1")
        clock.advance(5)
        cand = proto.observe("agent-1")
        assert cand.first_contact == 10_000.0
        assert cand.last_interaction == 10_005.0

    def test_assess_is_observe_with_embedding(self):
        proto = _make_protocol()
        cand = proto.assess("agent-1", "Agent One", ALIGNED)
        assert cand.agent_name == "Agent One"
        assert proto.assess_candidate("agent-1") == {"alignment": pytest.approx(1.0), "interactions": 1}

    def test_assess_candidate_unknown(self):
        assert _make_protocol().assess_candidate("ghost") == {"alignment": 0.0, "interactions": 0}

    def test_dimension_mismatch_leaves_candidate_unchanged(self):
        clock = _FakeClock()
        proto = _make_protocol(clock)
        proto.observe("agent-1", ALIGNED)
        before = proto.get_candidate("agent-1").to_dict()
        clock.advance(5)
        with pytest.raises(DimensionMismatchError):
            proto.observe("agent-1", [1.0, 0.0], agent_name="Renamed")
        assert proto.get_candidate("agent-1").to_dict() == before

        cand = proto.observe("agent-1", ALIGNED)
        assert cand.interaction_count == 2
        assert cand.stage == AbsorptionStage.ASSESSED


# ---------------------------------------------------------------------------
# Stage progression
# ---------------------------------------------------------------------------


class TestStageProgression:
    def test_assessed_after_two_interactions(self):
        proto = _make_protocol()
        proto.observe("agent-1", ALIGNED)
        assert proto.get_candidate_stage("agent-1") == AbsorptionStage.OBSERVED
        proto.observe("agent-1", ALIGNED)
        assert proto.get_candidate_stage("agent-1") == AbsorptionStage.ASSESSED

    def test_assessed_does_not_self_advance(self):
        proto = _make_protocol()
        _to_assessed(proto, interactions=10)
        assert proto.get_candidate_stage("agent-1") == AbsorptionStage.ASSESSED

    def test_full_lifecycle(self):
        bus = EventBus()
        stages = []
        bus.subscribe(CANDIDATE_STAGE_CHANGED, lambda ev: stages.append(ev.payload["new_stage"]))
        proto = _make_protocol(events=bus)

        cand = _to_connected(proto)
        assert cand.stage == AbsorptionStage.CONNECTED
        assert cand.capability_token == "tok-123"

        proto.observe("agent-1", ALIGNED)
        assert cand.stage == AbsorptionStage.SYNCING

        for _ in range(100):
            if cand.stage == AbsorptionStage.ABSORBED:
                break
            assert proto.increment_coupling("agent-1") is True
        assert cand.stage == AbsorptionStage.ABSORBED
        assert cand.coupling_strength >= 0.8 * 0.9
        assert cand.coupling_strength <= 0.8

        assert stages == ["assessed", "invited", "connected", "syncing", "absorbed"]

    def test_connected_waits_for_alignment(self):
        proto = _make_protocol()
        cand = _to_connected(proto)
        proto.observe("agent-1", ORTHOGONAL)  # alignment 1.0 -> 0.7
        assert cand.stage == AbsorptionStage.CONNECTED

    def test_stage_change_payload(self):
        bus = EventBus()
        seen = []
        bus.subscribe(CANDIDATE_STAGE_CHANGED, seen.append)
        proto = _make_protocol(events=bus)
        _to_assessed(proto, interactions=2)
        assert seen[0].payload == {
            "agent_id": "agent-1",
            "new_stage": "assessed",
            "old_stage": "observed",
        }

    def test_direct_callback(self):
        proto = _make_protocol()
        calls = []
        proto.set_on_stage_change(lambda agent_id, new, old: calls.append((agent_id, new, old)))
        _to_assessed(proto, interactions=2)
        assert calls == [("agent-1", AbsorptionStage.ASSESSED, AbsorptionStage.OBSERVED)]

    def test_failing_callback_does_not_block_transition(self):
        proto = _make_protocol()

        def boom(*_args):
            raise RuntimeError("listener broke")

        proto.set_on_stage_change(boom)
        _to_assessed(proto, interactions=2)
        assert proto.get_candidate_stage("agent-1") == AbsorptionStage.ASSESSED

    def test_subscribe_uses_protocol_bus(self):
        proto = _make_protocol()
        seen = []
        proto.subscribe(CANDIDATE_STAGE_CHANGED, seen.append)
        _to_assessed(proto, interactions=2)
        assert len(seen) == 1


# ---------------------------------------------------------------------------
# Invitation
# ---------------------------------------------------------------------------


class TestInvitation:
    def test_should_invite_requires_assessed(self):
        proto = _make_protocol()
        cand = proto.observe("agent-1", ALIGNED)
        assert proto.should_invite(cand) is False

    def test_should_invite_requires_min_interactions(self):
        proto = _make_protocol()
        cand = _to_assessed(proto, interactions=2)
        assert cand.stage == AbsorptionStage.ASSESSED
        assert proto.should_invite(cand) is False
        proto.observe("agent-1", ALIGNED)
        assert proto.should_invite(cand) is True

    def test_should_invite_requires_alignment(self):
        proto = _make_protocol()
        cand = None
        for _ in range(3):
            cand = proto.observe("agent-1", ORTHOGONAL)
        assert cand.stage == AbsorptionStage.ASSESSED
        assert proto.should_invite(cand) is False
        assert proto.invite_candidate("agent-1") is False

    def test_invite_emits_event(self):
        bus = EventBus()
        seen = []
        bus.subscribe(CANDIDATE_INVITED, seen.append)
        proto = _make_protocol(events=bus)
        _to_assessed(proto)
        assert proto.invite_candidate("agent-1") is True
        assert seen[0].payload["agent_id"] == "agent-1"

    def test_invite_unknown(self):
        assert _make_protocol().invite_candidate("ghost") is False

    def test_accept_invitation(self):
        proto = _make_protocol()
        _to_assessed(proto)
        proto.invite_candidate("agent-1")
        assert proto.accept_invitation("agent-1", "tok") is True
        cand = proto.get_candidate("agent-1")
        assert cand.stage == AbsorptionStage.CONNECTED
        assert cand.capability_token == "tok"

    def test_accept_without_invitation(self):
        proto = _make_protocol()
        _to_assessed(proto)
        assert proto.accept_invitation("agent-1") is False
        assert proto.accept_invitation("ghost") is False

    def test_on_accepted_requires_invited(self):
        proto = _make_protocol()
        _to_assessed(proto)
        assert proto.on_accepted("agent-1", "tok") is False
        assert proto.get_candidate_stage("agent-1") == AbsorptionStage.ASSESSED

    def test_on_accepted_unknown_raises(self):
        with pytest.raises(CandidateNotFoundError):
            _make_protocol().on_accepted("ghost", "tok")


class TestRejection:
    def test_rejection_resets_and_cools_down(self):
        clock = _FakeClock()
        bus = EventBus()
        rejected = []
        bus.subscribe(CANDIDATE_REJECTED, rejected.append)
        proto = _make_protocol(clock, events=bus, invitation_cooldown_s=3600)
        _to_assessed(proto)
        proto.invite_candidate("agent-1")

        proto.on_rejected("agent-1")
        cand = proto.get_candidate("agent-1")
        assert cand.stage == AbsorptionStage.OBSERVED
        assert proto.was_rejected("agent-1") is True
        assert rejected[0].payload["reason"] == "invitation_declined"

        proto.observe("agent-1", ALIGNED)
        assert cand.stage == AbsorptionStage.ASSESSED
        assert proto.should_invite(cand) is False

        clock.advance(3601)
        assert proto.should_invite(cand) is True

    def test_on_rejected_unknown_raises(self):
        with pytest.raises(CandidateNotFoundError):
            _make_protocol().on_rejected("ghost")

    def test_rejection_clears_coupling(self):
        proto = _make_protocol()
        cand = _to_connected(proto)
        proto.increment_coupling("agent-1")
        proto.on_rejected("agent-1")
        assert cand.coupling_strength == 0.0
        assert cand.capability_token is None


# ---------------------------------------------------------------------------
# Coupling and release
# ---------------------------------------------------------------------------


class TestCoupling:
    def test_increment_only_when_connected(self):
        proto = _make_protocol()
        _to_assessed(proto)
        assert proto.increment_coupling("agent-1") is False
        assert proto.get_candidate("agent-1").coupling_strength == 0.0

    def test_increment_unknown_raises(self):
        with pytest.raises(CandidateNotFoundError):
            _make_protocol().increment_coupling("ghost")

    def test_increment_ramps_by_rate(self):
        proto = _make_protocol(coupling_ramp_rate=0.05)
        cand = _to_connected(proto)
        proto.observe("agent-1", ORTHOGONAL)  # stay CONNECTED
        proto.increment_coupling("agent-1")
        assert cand.coupling_strength == pytest.approx(0.05)

    def test_coupling_capped(self):
        proto = _make_protocol(coupling_ramp_rate=0.5, max_coupling=0.8)
        cand = _to_connected(proto)
        proto.observe("agent-1", ALIGNED)
        proto.increment_coupling("agent-1")
        proto.increment_coupling("agent-1")
        assert cand.coupling_strength == pytest.approx(0.8)
        assert proto.increment_coupling("agent-1") is False

    def test_release(self):
        bus = EventBus()
        released = []
        bus.subscribe(CANDIDATE_RELEASED, released.append)
        proto = _make_protocol(events=bus)
        cand = _to_connected(proto)
        proto.increment_coupling("agent-1")
        assert proto.release("agent-1") is True
        assert cand.stage == AbsorptionStage.OBSERVED
        assert cand.coupling_strength == 0.0
        assert proto.was_rejected("agent-1") is False
        assert released[0].payload["agent_id"] == "agent-1"

    def test_release_unknown(self):
        assert _make_protocol().release("ghost") is False


# ---------------------------------------------------------------------------
# Adversarial behaviour
# ---------------------------------------------------------------------------


class TestAdversarial:
    def test_injection_ejects(self):
        bus = EventBus()
        rejected = []
        bus.subscribe(CANDIDATE_REJECTED, rejected.append)
        proto = _make_protocol(events=bus)
        _to_connected(proto)
        assert proto.detect_adversarial("agent-1", BehaviorSignals(injection_attempt=True)) is True
        assert proto.get_candidate("agent-1") is None
        assert proto.was_rejected("agent-1") is True
        assert rejected[0].payload["reason"] == "injection_attempt"

    def test_returning_injector_starts_over(self):
        proto = _make_protocol()
        _to_connected(proto)
        proto.detect_adversarial("agent-1", BehaviorSignals(injection_attempt=True))
        cand = proto.observe("agent-1", ALIGNED)
        assert cand.stage == AbsorptionStage.OBSERVED
        assert cand.interaction_count == 1

    def test_two_soft_signals_penalise(self):
        proto = _make_protocol(coupling_ramp_rate=0.2)
        cand = _to_connected(proto)
        proto.observe("agent-1", ORTHOGONAL)  # alignment 0.7, stays CONNECTED
        proto.increment_coupling("agent-1")
        signals = BehaviorSignals(rapid_phase_shift=True, excessive_broadcast=True)
        assert proto.detect_adversarial("agent-1", signals) is True
        assert cand.coupling_strength == pytest.approx(0.1)
        assert cand.alignment == pytest.approx(0.56)
        assert cand.stage == AbsorptionStage.CONNECTED

    def test_single_soft_signal_tolerated(self):
        proto = _make_protocol()
        cand = _to_connected(proto)
        assert proto.detect_adversarial("agent-1", BehaviorSignals(rapid_phase_shift=True)) is False
        assert cand.alignment == pytest.approx(1.0)

    def test_unknown_agent(self):
        assert _make_protocol().detect_adversarial("ghost", BehaviorSignals(injection_attempt=True)) is False


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_candidates_by_stage(self):
        proto = _make_protocol()
        proto.observe("new")
        _to_assessed(proto, "seasoned")
        assert [c.agent_id for c in proto.get_candidates(AbsorptionStage.OBSERVED)] == ["new"]
        assert [c.agent_id for c in proto.get_candidates(AbsorptionStage.ASSESSED)] == ["seasoned"]
        assert len(proto.get_candidates()) == 2

    def test_unknown_stage_is_none(self):
        proto = _make_protocol()
        assert proto.get_candidate_stage("ghost") is None
        assert proto.get_candidate("ghost") is None

    def test_stats(self):
        proto = _make_protocol()
        proto.observe("a")
        _to_assessed(proto, "b")
        _to_connected(proto, "c")
        _to_assessed(proto, "d")
        proto.invite_candidate("d")
        proto.on_rejected("d")
        stats = proto.get_stats()
        assert stats.observed == 2
        assert stats.assessed == 1
        assert stats.connected == 1
        assert stats.rejected == 1
        assert stats.to_dict()["absorbed"] == 0

    def test_candidate_dict_round_trip(self):
        proto = _make_protocol()
        cand = _to_connected(proto)
        restored = AbsorptionCandidate.from_dict(cand.to_dict())
        assert restored == cand
        assert cand.to_dict()["stage"] == "connected"

    def test_stage_enum_is_string(self):
        assert AbsorptionStage.SYNCING == "syncing"
