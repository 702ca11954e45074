"""meshcore.absorption: staged trust for external agents.

Key classes:

- :class:`AbsorptionProtocol`: per-agent stage machine
  (observed → assessed → invited → connected → syncing → absorbed) with
  alignment tracking, coupling ramp, graceful release and adversarial
  ejection.
- :class:`AbsorptionBridge`: turns rail join events into protocol calls
  and attaches capability tokens minted by the external security layer.
"""

from meshcore.absorption.bridge import AbsorptionBridge, JoinResult, RailClient
from meshcore.absorption.protocol import (
    AbsorptionCandidate,
    AbsorptionProtocol,
    AbsorptionStage,
    AbsorptionStats,
    BehaviorSignals,
)

__all__ = [
    "AbsorptionBridge",
    "AbsorptionCandidate",
    "AbsorptionProtocol",
    "AbsorptionStage",
    "AbsorptionStats",
    "BehaviorSignals",
    "JoinResult",
    "RailClient",
]
