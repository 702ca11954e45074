"""meshcore.routing: thermodynamic message routing and basin gossip.

Key classes:

- :class:`ThermodynamicRouter`: picks a destination agent by Boltzmann
  sampling over per-candidate energies (semantic distance, load, coherence,
  optional model affinity), with an optional annealing schedule.
- :class:`ModelRegistry`: static catalogue of models with identity
  embeddings, costs and capability strengths.
- :class:`DistributedRouter`: attractor basins shared between rail nodes by
  an additive, mass-conserving gossip merge.

Configuration (``router`` and ``distributed`` sections)::

    router:
      temperature: 1.0
      annealing_schedule: exponential   # none | linear | exponential | adaptive
    distributed:
      max_basins: 50
      merge_threshold: 0.92
"""

from meshcore.routing.distributed import (
    AttractorBasin,
    DistributedRouter,
    EnergyLandscapeSnapshot,
    GossipStats,
    find_nearest_basin,
)
from meshcore.routing.model_registry import ModelCapability, ModelEntry, ModelRegistry
from meshcore.routing.thermodynamic import (
    MIN_TEMPERATURE,
    LandscapePoint,
    Message,
    RoutingCandidate,
    ThermodynamicRouter,
    compute_energy,
    sample,
    softmax,
)

__all__ = [
    "AttractorBasin",
    "DistributedRouter",
    "EnergyLandscapeSnapshot",
    "GossipStats",
    "LandscapePoint",
    "MIN_TEMPERATURE",
    "Message",
    "ModelCapability",
    "ModelEntry",
    "ModelRegistry",
    "RoutingCandidate",
    "ThermodynamicRouter",
    "compute_energy",
    "find_nearest_basin",
    "sample",
    "softmax",
]
