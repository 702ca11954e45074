"""ThermodynamicRouter: Boltzmann sampling over an energy field.

Each candidate agent gets an energy for the message at hand:

    E = w_sem · (1 − cos(msg, attractor))
      + w_load · load
      − w_coh · coherence
      − w_model · cos(msg, model_identity)      (only if the candidate has one)

Lower energy means a better fit. Energies become probabilities through a
temperature-scaled softmax, ``p_i ∝ exp(−E_i / T)``, and one candidate is
drawn from that distribution. High temperatures explore, low temperatures
exploit; an annealing schedule can lower T after every decision.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, TypeVar

import numpy as np

from meshcore.config import ANNEALING_SCHEDULES, RouterConfig
from meshcore.errors import NoCandidatesError
from meshcore.observer import Observer
from meshcore.vectors import Vector, cosine_similarity, zeros

logger = logging.getLogger("MeshCore.Router")

#: Floor for the Boltzmann temperature (no division by zero, no one-hot collapse).
MIN_TEMPERATURE = 0.01

_LINEAR_DECAY = 0.001
_EXPONENTIAL_DECAY = 0.999

T = TypeVar("T")


@dataclass
class Message:
    """A message needing dispatch. Only the embedding matters for routing."""

    id: str
    content: str = ""
    embedding: Optional[List[float]] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class RoutingCandidate:
    """Per-message view of an agent the router may pick."""

    observer: Observer
    load: float  # 0.0 (idle) to 1.0 (saturated)
    coherence: float  # agent's current coherence contribution
    attractor: List[float]  # agent's semantic attractor vector
    model_embedding: Optional[List[float]] = None  # optional model identity vector

    @property
    def agent_id(self) -> str:
        return self.observer.id


@dataclass
class LandscapePoint:
    energy: float
    probability: float

    def to_dict(self) -> dict:
        return {"energy": self.energy, "probability": self.probability}


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def compute_energy(
    message_embedding: Vector,
    candidate: RoutingCandidate,
    config: RouterConfig,
) -> float:
    """Energy of routing a message to *candidate*; lower is better."""
    semantic_distance = 1.0 - cosine_similarity(message_embedding, candidate.attractor)
    load_penalty = candidate.load * config.load_weight
    coherence_bonus = candidate.coherence * config.coherence_weight

    model_affinity = 0.0
    if candidate.model_embedding is not None:
        model_affinity = (
            cosine_similarity(message_embedding, candidate.model_embedding) * config.model_weight
        )

    return semantic_distance * config.semantic_weight + load_penalty - coherence_bonus - model_affinity


def softmax(energies: Sequence[float], temperature: float) -> List[float]:
    """Boltzmann probabilities for *energies* at *temperature*.

    The temperature is floored at :data:`MIN_TEMPERATURE` and the maximum
    logit is subtracted before exponentiating, so the result always sums to 1.
    """
    if len(energies) == 0:
        return []
    t = max(MIN_TEMPERATURE, temperature)
    logits = -np.asarray(energies, dtype=np.float64) / t
    exps = np.exp(logits - logits.max())
    return (exps / exps.sum()).tolist()


def sample(items: Sequence[T], probabilities: Sequence[float], rng: Optional[random.Random] = None) -> T:
    """Draw one item by walking the cumulative distribution."""
    if not items:
        raise NoCandidatesError("Cannot sample from an empty list")
    r = (rng or random).random()
    cumulative = 0.0
    for item, p in zip(items, probabilities):
        cumulative += p
        if r <= cumulative:
            return item
    # float shortfall in the cumulative sum
    return items[-1]


def message_embedding_of(message: Any, dim: int) -> List[float]:
    """Extract a message's embedding, or a zero vector of *dim* if it has none."""
    if isinstance(message, dict):
        embedding = message.get("embedding")
    else:
        embedding = getattr(message, "embedding", None)
    if embedding is None:
        return zeros(dim)
    return list(embedding)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class ThermodynamicRouter:
    """Routes messages to agents by sampling a Boltzmann distribution."""

    def __init__(self, config: Optional[RouterConfig] = None, rng: Optional[random.Random] = None) -> None:
        self.config = replace(config) if config is not None else RouterConfig()
        if self.config.annealing_schedule not in ANNEALING_SCHEDULES:
            raise ValueError(
                f"Unknown annealing schedule {self.config.annealing_schedule!r}; "
                f"expected one of {', '.join(ANNEALING_SCHEDULES)}"
            )
        self._rng = rng or random.Random()
        self._temperature = max(MIN_TEMPERATURE, self.config.temperature)
        self._step = 0
        self._decisions = 0

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(self, message: Any, candidates: Sequence[RoutingCandidate]) -> Observer:
        """Pick the destination observer for *message*.

        Raises :class:`NoCandidatesError` when *candidates* is empty. A single
        candidate is returned directly, without computing energies.
        """
        if not candidates:
            raise NoCandidatesError("No agents available for routing")
        if len(candidates) == 1:
            return candidates[0].observer

        energies = self._energies(message, candidates)
        probabilities = softmax(energies, self._temperature)
        index = sample(range(len(candidates)), probabilities, self._rng)
        selected = candidates[index]
        self._decisions += 1
        logger.debug(
            f"Routed to {selected.agent_id} at T={self._temperature:.4f} (p={probabilities[index]:.3f})"
        )

        self._anneal()
        return selected.observer

    def energy_landscape(
        self, message: Any, candidates: Sequence[RoutingCandidate]
    ) -> Dict[str, LandscapePoint]:
        """Energy and selection probability for every candidate, keyed by agent id."""
        if not candidates:
            return {}
        energies = self._energies(message, candidates)
        probabilities = softmax(energies, self._temperature)
        return {
            c.agent_id: LandscapePoint(energy=e, probability=p)
            for c, e, p in zip(candidates, energies, probabilities)
        }

    def _energies(self, message: Any, candidates: Sequence[RoutingCandidate]) -> List[float]:
        embedding = message_embedding_of(message, len(candidates[0].attractor))
        return [compute_energy(embedding, c, self.config) for c in candidates]

    # ------------------------------------------------------------------
    # Temperature
    # ------------------------------------------------------------------

    def _anneal(self) -> None:
        self._step += 1
        schedule = self.config.annealing_schedule
        if schedule == "linear":
            self._temperature = max(MIN_TEMPERATURE, self.config.temperature - self._step * _LINEAR_DECAY)
        elif schedule == "exponential":
            self._temperature = max(
                MIN_TEMPERATURE, self.config.temperature * _EXPONENTIAL_DECAY**self._step
            )
        # "adaptive": driven externally through set_temperature()
        # "none": fixed temperature

    def set_temperature(self, temperature: float) -> None:
        self._temperature = max(MIN_TEMPERATURE, temperature)

    def get_temperature(self) -> float:
        return self._temperature

    @property
    def step(self) -> int:
        return self._step

    @property
    def decisions(self) -> int:
        return self._decisions

    def reset(self) -> None:
        """Restore the configured temperature and clear the annealing step."""
        self._step = 0
        self._temperature = max(MIN_TEMPERATURE, self.config.temperature)
