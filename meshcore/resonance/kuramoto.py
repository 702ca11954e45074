"""CoherenceEngine: Kuramoto phase synchronisation for agent swarms.

Each registered observer becomes an oscillator with a natural frequency ω_i
and a phase θ_i. Every tick the phases evolve by

    dθ_i/dt = ω_i + (K/N) · Σ_j sin(θ_j − θ_i)

integrated with explicit Euler over the elapsed interval. The swarm's
alignment is the order parameter

    r = |Σ_j e^{iθ_j}| / N

which is 0 for fully incoherent phases and 1 for perfect synchronisation.
Productive swarms sit around 0.7–0.9; below ``coherence_threshold`` the host
should intervene, and when stall detection is enabled the engine nudges the
phases toward the mean itself if coherence stops improving.
"""

from __future__ import annotations

import logging
import math
import random
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from meshcore.config import CoherenceConfig
from meshcore.events import COHERENCE_INTERVENTION, EventBus
from meshcore.observer import Observer, wrap_phase

logger = logging.getLogger("MeshCore.Kuramoto")

_TWO_PI = 2 * math.pi


@dataclass
class Oscillator:
    """Phase state attached to one observer."""

    id: str
    natural_frequency: float  # rad/s, fixed at creation
    phase: float  # [0, 2π)
    observer: Observer


@dataclass
class TickResult:
    coherence: float
    phases: Dict[str, float]


@dataclass
class CoherenceStats:
    """Rolling statistics over the coherence history."""

    current: float = 0.0
    mean: float = 0.0
    min: float = 0.0
    max: float = 0.0
    variance: float = 0.0
    samples: int = 0

    def to_dict(self) -> dict:
        return {
            "current": self.current,
            "mean": self.mean,
            "min": self.min,
            "max": self.max,
            "variance": self.variance,
            "samples": self.samples,
        }


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def compute_coherence(phases: Iterable[float]) -> float:
    """Kuramoto order parameter ``r`` for a set of phases."""
    theta = np.fromiter(phases, dtype=np.float64)
    n = theta.shape[0]
    if n == 0:
        return 0.0
    if n == 1:
        return 1.0
    r = float(np.hypot(np.cos(theta).sum(), np.sin(theta).sum())) / n
    return min(1.0, max(0.0, r))


def compute_mean_phase(phases: Iterable[float]) -> float:
    """Mean phase Ψ = atan2(Σ sin θ, Σ cos θ); 0 for no phases."""
    theta = np.fromiter(phases, dtype=np.float64)
    if theta.shape[0] == 0:
        return 0.0
    return float(math.atan2(np.sin(theta).sum(), np.cos(theta).sum()))


def evolve_phases(
    phases: np.ndarray,
    natural_frequencies: np.ndarray,
    coupling_strength: float,
    dt_s: float,
) -> np.ndarray:
    """One explicit Euler step of the Kuramoto equations.

    All oscillators are advanced from the same snapshot of *phases*. The
    result is wrapped into ``[0, 2π)``.
    """
    n = phases.shape[0]
    if n == 0:
        return phases.copy()
    # diff[i, j] = θ_j − θ_i; the diagonal contributes sin(0) = 0
    diff = phases[np.newaxis, :] - phases[:, np.newaxis]
    coupling = np.sin(diff).sum(axis=1)
    d_theta = natural_frequencies + (coupling_strength / n) * coupling
    return np.mod(phases + d_theta * dt_s, _TWO_PI)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CoherenceEngine:
    """Owns the oscillators of one swarm and advances them on each tick.

    The engine never schedules itself: a host calls :meth:`tick` on a fixed
    cadence (about 60 Hz). ``clock`` returns seconds and defaults to
    :func:`time.monotonic`; ``rng`` perturbs natural frequencies.
    """

    def __init__(
        self,
        config: Optional[CoherenceConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = replace(config) if config is not None else CoherenceConfig()
        self.config.coupling_strength = _clamp_coupling(self.config.coupling_strength)
        self._clock = clock
        self._rng = rng or random.Random()
        self._events = events

        self._oscillators: Dict[str, Oscillator] = {}
        self._history: deque = deque(maxlen=self.config.history_size)
        self._last_tick = self._clock()
        self._stalled_ticks = 0
        self._last_window_coherence = 0.0
        self._interventions = 0

    # ------------------------------------------------------------------
    # Oscillator management
    # ------------------------------------------------------------------

    def add_oscillator(self, observer: Observer) -> Oscillator:
        """Register *observer* as an oscillator (replacing any with the same id)."""
        jitter = (self._rng.random() - 0.5) * self.config.frequency_variance
        osc = Oscillator(
            id=observer.id,
            natural_frequency=observer.frequency * (1 + jitter),
            phase=wrap_phase(observer.phase),
            observer=observer,
        )
        self._oscillators[observer.id] = osc
        logger.debug(f"Oscillator added: {observer.id} (ω={osc.natural_frequency:.4f})")
        return osc

    def remove_oscillator(self, oscillator_id: str) -> bool:
        """Remove an oscillator. Returns True if it existed."""
        if self._oscillators.pop(oscillator_id, None) is None:
            return False
        logger.debug(f"Oscillator removed: {oscillator_id}")
        return True

    def get_oscillator(self, oscillator_id: str) -> Optional[Oscillator]:
        return self._oscillators.get(oscillator_id)

    def get_oscillators(self) -> List[Oscillator]:
        return list(self._oscillators.values())

    def set_phase(self, oscillator_id: str, phase: float) -> bool:
        """Overwrite one oscillator's phase (e.g. from a remote phase report)."""
        osc = self._oscillators.get(oscillator_id)
        if osc is None:
            return False
        osc.phase = wrap_phase(phase)
        osc.observer.phase = osc.phase
        return True

    def __len__(self) -> int:
        return len(self._oscillators)

    # ------------------------------------------------------------------
    # Evolution
    # ------------------------------------------------------------------

    def tick(self, dt_s: Optional[float] = None) -> TickResult:
        """Advance every phase and record the new coherence.

        *dt_s* overrides the wall-clock interval since the previous tick.
        """
        now = self._clock()
        elapsed = now - self._last_tick if dt_s is None else dt_s
        self._last_tick = now

        oscillators = list(self._oscillators.values())
        phases = np.array([o.phase for o in oscillators], dtype=np.float64)
        omegas = np.array([o.natural_frequency for o in oscillators], dtype=np.float64)
        new_phases = evolve_phases(phases, omegas, self.config.coupling_strength, max(0.0, elapsed))

        result_phases: Dict[str, float] = {}
        for osc, phase in zip(oscillators, new_phases):
            osc.phase = wrap_phase(float(phase))
            osc.observer.phase = osc.phase
            result_phases[osc.id] = osc.phase

        coherence = compute_coherence(new_phases)
        self._history.append(coherence)

        if self.config.stall_detection:
            self._check_stall(coherence)

        return TickResult(coherence=coherence, phases=result_phases)

    def _check_stall(self, coherence: float) -> None:
        if coherence >= self.config.target_coherence:
            self._stalled_ticks = 0
            self._last_window_coherence = coherence
            return

        delta = coherence - self._last_window_coherence
        if delta < self.config.convergence_min_delta:
            self._stalled_ticks += 1
        else:
            self._stalled_ticks = 0
        self._last_window_coherence = coherence

        if self._stalled_ticks >= self.config.convergence_timeout_ticks:
            logger.info(
                f"Coherence stalled at {coherence:.3f} for {self._stalled_ticks} ticks; "
                "forcing synchronisation"
            )
            self.force_synchronize()
            self._stalled_ticks = 0

    # ------------------------------------------------------------------
    # Measurement & control
    # ------------------------------------------------------------------

    def get_coherence(self) -> float:
        return compute_coherence(o.phase for o in self._oscillators.values())

    def get_mean_phase(self) -> float:
        return compute_mean_phase(o.phase for o in self._oscillators.values())

    def needs_intervention(self) -> bool:
        """True when coherence is below ``coherence_threshold``."""
        return self.get_coherence() < self.config.coherence_threshold

    def force_synchronize(self) -> None:
        """Move every phase halfway (along the shorter arc) toward the mean phase."""
        if not self._oscillators:
            return
        mean_phase = self.get_mean_phase()
        before = self.get_coherence()
        for osc in self._oscillators.values():
            diff = math.atan2(math.sin(mean_phase - osc.phase), math.cos(mean_phase - osc.phase))
            osc.phase = wrap_phase(osc.phase + diff * 0.5)
            osc.observer.phase = osc.phase
        self._interventions += 1
        if self._events is not None:
            self._events.publish(
                COHERENCE_INTERVENTION,
                "coherence",
                before=before,
                after=self.get_coherence(),
                oscillators=len(self._oscillators),
            )

    def set_coupling_strength(self, strength: float) -> None:
        """Set K, clamped to ``[0, 2]``."""
        self.config.coupling_strength = _clamp_coupling(strength)

    def get_coupling_strength(self) -> float:
        return self.config.coupling_strength

    @property
    def stalled_ticks(self) -> int:
        return self._stalled_ticks

    @property
    def intervention_count(self) -> int:
        return self._interventions

    def get_stats(self) -> CoherenceStats:
        history = np.fromiter(self._history, dtype=np.float64)
        if history.shape[0] == 0:
            return CoherenceStats()
        return CoherenceStats(
            current=self.get_coherence(),
            mean=float(history.mean()),
            min=float(history.min()),
            max=float(history.max()),
            variance=float(history.var()),
            samples=int(history.shape[0]),
        )

    def reset(self) -> None:
        """Drop all oscillators and history."""
        self._oscillators.clear()
        self._history.clear()
        self._last_tick = self._clock()
        self._stalled_ticks = 0
        self._last_window_coherence = 0.0


def _clamp_coupling(strength: float) -> float:
    return max(0.0, min(2.0, float(strength)))
