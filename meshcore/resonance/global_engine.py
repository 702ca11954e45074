"""GlobalCoherenceEngine: network-wide phase synchronisation.

Wraps a :class:`CoherenceEngine` for agents spread across the rail network:

- remote agents report their own phases (``report_phase``), which overwrite
  the local oscillator state;
- agents that stop reporting for ``stale_ttl_s`` are pruned;
- an agent reporting more than ``flood_max_reports`` times per
  ``flood_window_s`` has its reports dropped and its trust score lowered;
- with ``adaptive_coupling`` enabled, K rises while coherence is below
  ``coherence_threshold`` and falls once it exceeds ``groupthink_threshold``.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from meshcore.config import GlobalCoherenceConfig
from meshcore.events import EventBus
from meshcore.observer import Observer
from meshcore.resonance.kuramoto import CoherenceEngine, CoherenceStats, TickResult

logger = logging.getLogger("MeshCore.GlobalKuramoto")


@dataclass
class NetworkOscillator:
    """Network bookkeeping for one remote agent."""

    id: str
    last_reported: float
    network_latency: float = 0.0
    trust_score: float = 1.0
    report_times: List[float] = field(default_factory=list)


@dataclass
class GlobalTickResult(TickResult):
    adapted_coupling: float = 0.0


class GlobalCoherenceEngine:
    """Network-facing coherence engine with TTL pruning and flood detection."""

    def __init__(
        self,
        config: Optional[GlobalCoherenceConfig] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = config or GlobalCoherenceConfig()
        self._clock = clock
        self._engine = CoherenceEngine(self.config, clock=clock, rng=rng, events=events)
        self._network: Dict[str, NetworkOscillator] = {}
        self._coupling = self._engine.get_coupling_strength()

    @property
    def engine(self) -> CoherenceEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_agent(self, observer: Observer) -> None:
        self._engine.add_oscillator(observer)
        self._network[observer.id] = NetworkOscillator(id=observer.id, last_reported=self._clock())

    def remove_agent(self, agent_id: str) -> bool:
        existed = self._engine.remove_oscillator(agent_id)
        return self._network.pop(agent_id, None) is not None or existed

    def prune_stale(self) -> List[str]:
        """Remove agents that have not reported within ``stale_ttl_s``."""
        now = self._clock()
        stale = [
            agent_id
            for agent_id, meta in self._network.items()
            if now - meta.last_reported > self.config.stale_ttl_s
        ]
        for agent_id in stale:
            self.remove_agent(agent_id)
        if stale:
            logger.info(f"Pruned {len(stale)} stale agent(s): {stale}")
        return stale

    # ------------------------------------------------------------------
    # Phase reports
    # ------------------------------------------------------------------

    def report_phase(self, agent_id: str, phase: float, timestamp: float) -> bool:
        """Apply a phase reported by a remote agent.

        Returns False when the report was dropped (flooding or unknown agent).
        """
        if self.detect_flood_attack(agent_id):
            return False
        meta = self._network.get(agent_id)
        if meta is None:
            return False
        now = self._clock()
        meta.last_reported = now
        meta.network_latency = now - timestamp
        return self._engine.set_phase(agent_id, phase)

    def detect_flood_attack(self, agent_id: str) -> bool:
        """Record a report from *agent_id* and say whether it is flooding."""
        meta = self._network.get(agent_id)
        if meta is None:
            return False
        now = self._clock()
        window = self.config.flood_window_s
        meta.report_times = [t for t in meta.report_times if now - t < window]
        meta.report_times.append(now)
        if len(meta.report_times) > self.config.flood_max_reports:
            meta.trust_score = max(0.0, meta.trust_score - 0.1)
            logger.warning(
                f"Phase report flood from {agent_id}: {len(meta.report_times)} in {window}s "
                f"(trust now {meta.trust_score:.1f})"
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Evolution
    # ------------------------------------------------------------------

    def tick(self, dt_s: Optional[float] = None) -> GlobalTickResult:
        result = self._engine.tick(dt_s)
        if self.config.adaptive_coupling:
            self._adapt_coupling(result.coherence)
        return GlobalTickResult(
            coherence=result.coherence,
            phases=result.phases,
            adapted_coupling=self._coupling,
        )

    def _adapt_coupling(self, coherence: float) -> None:
        step = self.config.coupling_step
        if coherence < self.config.coherence_threshold:
            self._coupling = min(self.config.max_coupling, self._coupling + step)
        elif coherence > self.config.groupthink_threshold:
            self._coupling = max(self.config.min_coupling, self._coupling - step)
        self._engine.set_coupling_strength(self._coupling)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_coherence_field(self) -> dict:
        return {
            "coherence": self._engine.get_coherence(),
            "mean_phase": self._engine.get_mean_phase(),
            "agent_count": len(self._network),
            "coupling": self._coupling,
        }

    def get_network_topology(self) -> List[dict]:
        topology = []
        for osc in self._engine.get_oscillators():
            meta = self._network.get(osc.id)
            topology.append(
                {
                    "id": osc.id,
                    "phase": osc.phase,
                    "frequency": osc.natural_frequency,
                    "trust": meta.trust_score if meta else 0.0,
                }
            )
        return topology

    def get_trust(self, agent_id: str) -> Optional[float]:
        meta = self._network.get(agent_id)
        return meta.trust_score if meta else None

    def get_coherence(self) -> float:
        return self._engine.get_coherence()

    def get_mean_phase(self) -> float:
        return self._engine.get_mean_phase()

    def needs_intervention(self) -> bool:
        return self._engine.needs_intervention()

    def force_synchronize(self) -> None:
        self._engine.force_synchronize()

    def get_stats(self) -> CoherenceStats:
        return self._engine.get_stats()
