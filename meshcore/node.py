"""MeshNode: one rail node's coordination core, assembled from a MeshConfig.

The node owns a single :class:`EventBus` shared by every subsystem, so a host
can subscribe once and see coherence interventions, basin changes, gossip
merges and absorption stage changes. It schedules nothing itself: the host
calls :meth:`tick` at the coherence cadence and exchanges
:meth:`gossip_payload` with peers at the gossip cadence.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from typing import Any, Callable, Optional, Sequence

from meshcore.absorption import AbsorptionBridge, AbsorptionProtocol
from meshcore.absorption.bridge import TokenIssuer
from meshcore.config import MeshConfig
from meshcore.events import EventBus
from meshcore.observer import Observer
from meshcore.resonance import CoherenceEngine, TickResult
from meshcore.routing import (
    DistributedRouter,
    EnergyLandscapeSnapshot,
    ModelRegistry,
    RoutingCandidate,
    ThermodynamicRouter,
)

logger = logging.getLogger("MeshCore.Node")


class MeshNode:
    """Composition of the coherence, routing, registry and absorption subsystems."""

    def __init__(
        self,
        config: Optional[MeshConfig] = None,
        token_issuer: Optional[TokenIssuer] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or MeshConfig()
        self.node_id = self.config.node_id or str(uuid.uuid4())
        self.events = EventBus()
        rng = rng or random.Random()

        self.coherence = CoherenceEngine(self.config.coherence, rng=rng, events=self.events)
        self.router = ThermodynamicRouter(self.config.router, rng=rng)
        self.distributed = DistributedRouter(
            local_router=self.router,
            config=self.config.distributed,
            node_id=self.node_id,
            clock=clock,
            rng=rng,
            events=self.events,
        )
        self.absorption = AbsorptionProtocol(self.config.absorption, clock=clock, events=self.events)
        self.models = ModelRegistry.with_defaults()
        self.bridge = AbsorptionBridge(self.absorption, token_issuer) if token_issuer else None

        logger.info(f"Mesh node {self.node_id} ready ({len(self.models)} models registered)")

    def add_agent(self, observer: Observer) -> None:
        self.coherence.add_oscillator(observer)

    def remove_agent(self, agent_id: str) -> bool:
        return self.coherence.remove_oscillator(agent_id)

    def tick(self, dt_s: Optional[float] = None) -> TickResult:
        return self.coherence.tick(dt_s)

    def route(self, message: Any, candidates: Sequence[RoutingCandidate]) -> Observer:
        return self.distributed.route(message, candidates)

    def gossip_payload(self) -> EnergyLandscapeSnapshot:
        return self.distributed.get_gossip_payload()

    def receive_gossip(self, snapshot: EnergyLandscapeSnapshot) -> int:
        return self.distributed.receive_gossip(snapshot)

    def status(self) -> dict:
        return {
            "node_id": self.node_id,
            "agents": len(self.coherence),
            "coherence": self.coherence.get_stats().to_dict(),
            "temperature": self.router.get_temperature(),
            "basins": self.distributed.get_stats().to_dict(),
            "absorption": self.absorption.get_stats().to_dict(),
        }
