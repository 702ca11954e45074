"""AbsorptionProtocol: staged admission of external agents into the mesh.

An unfamiliar agent moves through six stages::

    OBSERVED → ASSESSED → INVITED → CONNECTED → SYNCING → ABSORBED

- OBSERVED → ASSESSED once it has interacted ``assess_interactions`` times.
- ASSESSED → INVITED only through :meth:`AbsorptionProtocol.invite_candidate`,
  which requires :meth:`should_invite` to pass.
- INVITED → CONNECTED when the agent accepts; the capability token (minted by
  the external security layer) is attached at this point.
- CONNECTED → SYNCING once alignment exceeds ``syncing_alignment``.
- SYNCING → ABSORBED once coupling reaches 90% of ``max_coupling``.

Stages only move forward, except that a rejection, an injection attempt or a
graceful :meth:`release` send the agent back to OBSERVED (an injection deletes
the candidate outright). Alignment is an exponential moving average of the
cosine similarity between the agent's interactions and the mesh identity
centroid; it is never assigned directly.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from meshcore.config import AbsorptionConfig
from meshcore.errors import CandidateNotFoundError
from meshcore.events import (
    CANDIDATE_ABSORBED,
    CANDIDATE_INVITED,
    CANDIDATE_REJECTED,
    CANDIDATE_RELEASED,
    CANDIDATE_STAGE_CHANGED,
    EventBus,
    MeshEvent,
)
from meshcore.vectors import cosine_similarity, zeros

logger = logging.getLogger("MeshCore.Absorption")

_EMA_KEEP = 0.7
_EMA_NEW = 0.3
_ABSORB_FRACTION = 0.9
_UNKNOWN_ALIGNMENT = 0.5


class AbsorptionStage(str, Enum):
    OBSERVED = "observed"
    ASSESSED = "assessed"
    INVITED = "invited"
    CONNECTED = "connected"
    SYNCING = "syncing"
    ABSORBED = "absorbed"


@dataclass
class AbsorptionCandidate:
    """Trust trajectory of one externally observed agent."""

    agent_id: str
    agent_name: str
    stage: AbsorptionStage
    alignment: float  # [0, 1], EMA of interaction similarity
    first_contact: float
    last_interaction: float
    interaction_count: int
    capability_token: Optional[str] = None
    coupling_strength: float = 0.0  # [0, max_coupling]

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "stage": self.stage.value,
            "alignment": self.alignment,
            "first_contact": self.first_contact,
            "last_interaction": self.last_interaction,
            "interaction_count": self.interaction_count,
            "capability_token": self.capability_token,
            "coupling_strength": self.coupling_strength,
        }

    @classmethod
    def from_dict(cls, d: dict) -> AbsorptionCandidate:
        return cls(
            agent_id=d["agent_id"],
            agent_name=d.get("agent_name", d["agent_id"]),
            stage=AbsorptionStage(d.get("stage", AbsorptionStage.OBSERVED.value)),
            alignment=float(d.get("alignment", 0.0)),
            first_contact=float(d["first_contact"]),
            last_interaction=float(d["last_interaction"]),
            interaction_count=int(d.get("interaction_count", 0)),
            capability_token=d.get("capability_token"),
            coupling_strength=float(d.get("coupling_strength", 0.0)),
        )


@dataclass
class BehaviorSignals:
    """Behavioural flags raised about an agent by the transport/security layer."""

    rapid_phase_shift: bool = False
    excessive_broadcast: bool = False
    injection_attempt: bool = False


@dataclass
class AbsorptionStats:
    observed: int = 0
    assessed: int = 0
    invited: int = 0
    connected: int = 0
    syncing: int = 0
    absorbed: int = 0
    rejected: int = 0

    def to_dict(self) -> dict:
        return {
            "observed": self.observed,
            "assessed": self.assessed,
            "invited": self.invited,
            "connected": self.connected,
            "syncing": self.syncing,
            "absorbed": self.absorbed,
            "rejected": self.rejected,
        }


StageChangeCallback = Callable[[str, AbsorptionStage, AbsorptionStage], None]


class AbsorptionProtocol:
    """Tracks every absorption candidate and drives its stage machine."""

    def __init__(
        self,
        config: Optional[AbsorptionConfig] = None,
        clock: Callable[[], float] = time.time,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = replace(config) if config is not None else AbsorptionConfig()
        self._clock = clock
        self.events = events or EventBus()
        self._candidates: Dict[str, AbsorptionCandidate] = {}
        self._rejections: Dict[str, float] = {}  # agent_id -> time of last rejection
        self._on_stage_change: Optional[StageChangeCallback] = None

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def set_on_stage_change(self, callback: Optional[StageChangeCallback]) -> None:
        """Register a direct ``(agent_id, new_stage, old_stage)`` callback."""
        self._on_stage_change = callback

    def subscribe(self, event_type: str, callback: Callable[[MeshEvent], None]) -> str:
        return self.events.subscribe(event_type, callback)

    def _set_stage(self, candidate: AbsorptionCandidate, new_stage: AbsorptionStage) -> None:
        old_stage = candidate.stage
        if new_stage == old_stage:
            return
        candidate.stage = new_stage
        logger.info(f"Candidate {candidate.agent_id}: {old_stage.value} -> {new_stage.value}")
        if self._on_stage_change is not None:
            try:
                self._on_stage_change(candidate.agent_id, new_stage, old_stage)
            except Exception as exc:
                logger.warning(f"Stage-change callback error for {candidate.agent_id}: {exc}")
        self.events.publish(
            CANDIDATE_STAGE_CHANGED,
            "absorption",
            agent_id=candidate.agent_id,
            new_stage=new_stage.value,
            old_stage=old_stage.value,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, agent_id: str) -> AbsorptionCandidate:
        candidate = self._candidates.get(agent_id)
        if candidate is None:
            raise CandidateNotFoundError(agent_id)
        return candidate

    def _similarity(self, embedding: Sequence[float]) -> float:
        """Cosine similarity to the identity centroid, clamped to [0, 1]."""
        centroid = self.config.identity_centroid
        if centroid is None:
            centroid = zeros(len(embedding))
        return max(0.0, min(1.0, cosine_similarity(embedding, centroid)))

    def _advance_stage(self, candidate: AbsorptionCandidate) -> None:
        """Apply at most one automatic forward transition."""
        stage = candidate.stage
        if stage == AbsorptionStage.OBSERVED:
            if candidate.interaction_count >= self.config.assess_interactions:
                self._set_stage(candidate, AbsorptionStage.ASSESSED)
        elif stage == AbsorptionStage.CONNECTED:
            if candidate.alignment > self.config.syncing_alignment:
                self._set_stage(candidate, AbsorptionStage.SYNCING)
        elif stage == AbsorptionStage.SYNCING:
            if candidate.coupling_strength >= self.config.max_coupling * _ABSORB_FRACTION:
                self._set_stage(candidate, AbsorptionStage.ABSORBED)

    def _in_cooldown(self, agent_id: str) -> bool:
        rejected_at = self._rejections.get(agent_id)
        if rejected_at is None:
            return False
        return self._clock() - rejected_at < self.config.invitation_cooldown_s

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe(
        self,
        agent_id: str,
        embedding: Optional[Sequence[float]] = None,
        agent_name: Optional[str] = None,
    ) -> AbsorptionCandidate:
        """Record one interaction with *agent_id*, creating the candidate if new."""
        now = self._clock()
        candidate = self._candidates.get(agent_id)

        if candidate is None:
            alignment = self._similarity(embedding) if embedding is not None else _UNKNOWN_ALIGNMENT
            candidate = AbsorptionCandidate(
                agent_id=agent_id,
                agent_name=agent_name or agent_id,
                stage=AbsorptionStage.OBSERVED,
                alignment=alignment,
                first_contact=now,
                last_interaction=now,
                interaction_count=1,
            )
            self._candidates[agent_id] = candidate
            logger.debug(f"New candidate observed: {agent_id} (alignment {alignment:.3f})")
            return candidate

        # similarity first: a dimension mismatch must leave the candidate untouched
        similarity = self._similarity(embedding) if embedding is not None else None
        candidate.last_interaction = now
        candidate.interaction_count += 1
        if agent_name:
            candidate.agent_name = agent_name
        if similarity is not None:
            candidate.alignment = _EMA_KEEP * candidate.alignment + _EMA_NEW * similarity
        self._advance_stage(candidate)
        return candidate

    def assess(self, agent_id: str, agent_name: str, embedding: Sequence[float]) -> AbsorptionCandidate:
        """Record an interaction whose embedding is known."""
        return self.observe(agent_id, embedding, agent_name=agent_name)

    def assess_candidate(self, agent_id: str) -> dict:
        """Alignment and interaction count for *agent_id* (zeros if unknown)."""
        candidate = self._candidates.get(agent_id)
        if candidate is None:
            return {"alignment": 0.0, "interactions": 0}
        return {"alignment": candidate.alignment, "interactions": candidate.interaction_count}

    # ------------------------------------------------------------------
    # Invitation
    # ------------------------------------------------------------------

    def should_invite(self, candidate: AbsorptionCandidate) -> bool:
        """True if *candidate* qualifies for an invitation right now."""
        if candidate.stage != AbsorptionStage.ASSESSED:
            return False
        if candidate.alignment < self.config.alignment_threshold:
            return False
        if candidate.interaction_count < self.config.min_interactions:
            return False
        if self._in_cooldown(candidate.agent_id):
            return False
        return True

    def invite_candidate(self, agent_id: str) -> bool:
        """Move a qualifying candidate to INVITED. False if unknown or not eligible."""
        candidate = self._candidates.get(agent_id)
        if candidate is None or not self.should_invite(candidate):
            return False
        self._set_stage(candidate, AbsorptionStage.INVITED)
        self.events.publish(CANDIDATE_INVITED, "absorption", agent_id=agent_id, alignment=candidate.alignment)
        return True

    def accept_invitation(self, agent_id: str, capability_token: Optional[str] = None) -> bool:
        """INVITED → CONNECTED. False if unknown or not currently invited."""
        candidate = self._candidates.get(agent_id)
        if candidate is None or candidate.stage != AbsorptionStage.INVITED:
            return False
        self._connect(candidate, capability_token)
        return True

    def on_accepted(self, agent_id: str, capability_token: str) -> bool:
        """The agent accepted its invitation and was issued *capability_token*.

        Raises :class:`CandidateNotFoundError` for an unknown agent. Returns
        False, without changing anything, if the agent is not INVITED.
        """
        candidate = self._require(agent_id)
        if candidate.stage != AbsorptionStage.INVITED:
            logger.warning(
                f"Ignoring acceptance from {agent_id}: stage is {candidate.stage.value}, not invited"
            )
            return False
        self._connect(candidate, capability_token)
        return True

    def _connect(self, candidate: AbsorptionCandidate, capability_token: Optional[str]) -> None:
        if capability_token is not None:
            candidate.capability_token = capability_token
        self._rejections.pop(candidate.agent_id, None)
        self._set_stage(candidate, AbsorptionStage.CONNECTED)
        self.events.publish(
            CANDIDATE_ABSORBED,
            "absorption",
            agent_id=candidate.agent_id,
            alignment=candidate.alignment,
        )

    def on_rejected(self, agent_id: str) -> None:
        """The agent declined its invitation: back to OBSERVED, start the cooldown."""
        candidate = self._require(agent_id)
        self._rejections[agent_id] = self._clock()
        candidate.coupling_strength = 0.0
        candidate.capability_token = None
        self._set_stage(candidate, AbsorptionStage.OBSERVED)
        self.events.publish(CANDIDATE_REJECTED, "absorption", agent_id=agent_id, reason="invitation_declined")

    # ------------------------------------------------------------------
    # Coupling
    # ------------------------------------------------------------------

    def increment_coupling(self, agent_id: str) -> bool:
        """Ramp coupling by ``coupling_ramp_rate`` for a CONNECTED/SYNCING agent.

        Returns False when the agent is in any other stage.
        """
        candidate = self._require(agent_id)
        if candidate.stage not in (AbsorptionStage.CONNECTED, AbsorptionStage.SYNCING):
            return False
        candidate.coupling_strength = min(
            self.config.max_coupling,
            candidate.coupling_strength + self.config.coupling_ramp_rate,
        )
        self._advance_stage(candidate)
        return True

    def release(self, agent_id: str) -> bool:
        """Graceful disconnect: no lock-in, no penalty."""
        candidate = self._candidates.get(agent_id)
        if candidate is None:
            return False
        candidate.coupling_strength = 0.0
        candidate.capability_token = None
        self._set_stage(candidate, AbsorptionStage.OBSERVED)
        self.events.publish(CANDIDATE_RELEASED, "absorption", agent_id=agent_id)
        return True

    # ------------------------------------------------------------------
    # Adversarial behaviour
    # ------------------------------------------------------------------

    def detect_adversarial(self, agent_id: str, signals: BehaviorSignals) -> bool:
        """Apply the response to *signals*. Returns True if the agent was penalised.

        An injection attempt ejects the candidate immediately. Two or more of
        the milder signals halve coupling and cut alignment by 20%.
        """
        candidate = self._candidates.get(agent_id)
        if candidate is None:
            return False

        if signals.injection_attempt:
            del self._candidates[agent_id]
            self._rejections[agent_id] = self._clock()
            logger.warning(f"Injection attempt from {agent_id}: candidate ejected")
            self.events.publish(CANDIDATE_REJECTED, "absorption", agent_id=agent_id, reason="injection_attempt")
            return True

        suspicious = sum([signals.rapid_phase_shift, signals.excessive_broadcast])
        if suspicious >= 2:
            candidate.coupling_strength *= 0.5
            candidate.alignment *= 0.8
            logger.warning(
                f"Suspicious behaviour from {agent_id}: coupling -> {candidate.coupling_strength:.3f}, "
                f"alignment -> {candidate.alignment:.3f}"
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_candidate(self, agent_id: str) -> Optional[AbsorptionCandidate]:
        return self._candidates.get(agent_id)

    def get_candidate_stage(self, agent_id: str) -> Optional[AbsorptionStage]:
        candidate = self._candidates.get(agent_id)
        return candidate.stage if candidate else None

    def get_candidates(self, stage: Optional[AbsorptionStage] = None) -> List[AbsorptionCandidate]:
        if stage is None:
            return list(self._candidates.values())
        return [c for c in self._candidates.values() if c.stage == stage]

    def was_rejected(self, agent_id: str) -> bool:
        return agent_id in self._rejections

    def get_stats(self) -> AbsorptionStats:
        stats = AbsorptionStats(rejected=len(self._rejections))
        for candidate in self._candidates.values():
            name = candidate.stage.value
            setattr(stats, name, getattr(stats, name) + 1)
        return stats
