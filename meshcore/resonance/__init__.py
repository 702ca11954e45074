"""meshcore.resonance: Kuramoto phase synchronisation.

Key classes:

- :class:`CoherenceEngine`: owns oscillator phases, advances them each tick
  and reports the order parameter. Optional stall detection nudges a stuck
  swarm toward its mean phase.
- :class:`GlobalCoherenceEngine`: network-facing wrapper adding remote
  phase reports, stale-agent pruning, flood detection and adaptive coupling.
"""

from meshcore.resonance.global_engine import GlobalCoherenceEngine
from meshcore.resonance.kuramoto import (
    CoherenceEngine,
    CoherenceStats,
    Oscillator,
    TickResult,
    compute_coherence,
    compute_mean_phase,
    evolve_phases,
)

__all__ = [
    "CoherenceEngine",
    "CoherenceStats",
    "GlobalCoherenceEngine",
    "Oscillator",
    "TickResult",
    "compute_coherence",
    "compute_mean_phase",
    "evolve_phases",
]
