"""DistributedRouter: attractor basins kept consistent by gossip.

Each rail node owns a set of :class:`AttractorBasin` objects (semantic
clusters with a centroid, a mass and a member count). Nodes periodically swap
:class:`EnergyLandscapeSnapshot` payloads and merge them:

- a remote basin with a local counterpart (same id) is folded in: centroids
  are averaged by mass, masses and agent counts are summed;
- a remote basin with no local counterpart is adopted as a copy;
- local-only basins are never evicted by gossip.

The merge is additive, so total mass is conserved and nodes converge
eventually rather than immediately. No snapshot content can make a merge
raise; snapshots are not authenticated here, a verification layer is
expected in front of :meth:`DistributedRouter.receive_gossip`.
"""

from __future__ import annotations

import copy
import logging
import math
import random
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from meshcore.config import DistributedRouterConfig
from meshcore.errors import BasinNotFoundError, DimensionMismatchError
from meshcore.events import (
    BASIN_ADDED,
    BASIN_MERGED,
    BASIN_REMOVED,
    BASIN_SPLIT,
    GOSSIP_RECEIVED,
    EventBus,
)
from meshcore.observer import Observer
from meshcore.routing.thermodynamic import RoutingCandidate, ThermodynamicRouter
from meshcore.vectors import Vector, as_array, cosine_similarity, topic_embedding, weighted_mean

logger = logging.getLogger("MeshCore.Gossip")


@dataclass
class AttractorBasin:
    """A semantic cluster that attracts related messages."""

    id: str
    centroid: List[float]
    mass: float  # semantic mass, > 0
    agent_count: int  # agents currently in the basin
    topic_label: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "centroid": list(self.centroid),
            "mass": self.mass,
            "agent_count": self.agent_count,
            "topic_label": self.topic_label,
        }

    @classmethod
    def from_dict(cls, d: dict) -> AttractorBasin:
        return cls(
            id=d["id"],
            centroid=[float(v) for v in d["centroid"]],
            mass=float(d["mass"]),
            agent_count=int(d.get("agent_count", 0)),
            topic_label=d.get("topic_label", ""),
        )


@dataclass(frozen=True)
class EnergyLandscapeSnapshot:
    """One node's basins at a point in time; the unit of gossip exchange."""

    basins: Tuple[AttractorBasin, ...]
    timestamp: float
    node_id: str

    @property
    def total_mass(self) -> float:
        return sum(b.mass for b in self.basins)

    def to_dict(self) -> dict:
        return {
            "basins": [b.to_dict() for b in self.basins],
            "timestamp": self.timestamp,
            "node_id": self.node_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> EnergyLandscapeSnapshot:
        return cls(
            basins=tuple(AttractorBasin.from_dict(b) for b in d.get("basins", [])),
            timestamp=float(d["timestamp"]),
            node_id=d["node_id"],
        )


@dataclass
class GossipStats:
    basin_count: int = 0
    total_mass: float = 0.0
    largest_basin: str = "none"
    snapshots_applied: int = 0
    snapshots_ignored: int = 0
    peers: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "basin_count": self.basin_count,
            "total_mass": self.total_mass,
            "largest_basin": self.largest_basin,
            "snapshots_applied": self.snapshots_applied,
            "snapshots_ignored": self.snapshots_ignored,
            "peers": list(self.peers),
        }


def find_nearest_basin(embedding: Vector, basins: Sequence[AttractorBasin]) -> Optional[AttractorBasin]:
    """Basin whose centroid is most similar to *embedding*; None if there are none."""
    nearest: Optional[AttractorBasin] = None
    best = float("-inf")
    for basin in basins:
        similarity = cosine_similarity(embedding, basin.centroid)
        if similarity > best:
            best = similarity
            nearest = basin
    return nearest


class DistributedRouter:
    """Gossip-synchronised attractor landscape wrapped around a local router."""

    def __init__(
        self,
        local_router: Optional[ThermodynamicRouter] = None,
        config: Optional[DistributedRouterConfig] = None,
        node_id: Optional[str] = None,
        dim: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = replace(config) if config is not None else DistributedRouterConfig()
        self.node_id = node_id or str(uuid.uuid4())
        self._local_router = local_router or ThermodynamicRouter()
        self._dim = dim  # inferred from the first basin when None
        self._clock = clock
        self._rng = rng or random.Random()
        self._events = events

        self._basins: Dict[str, AttractorBasin] = {}
        self._peer_timestamps: Dict[str, float] = {}  # node_id -> last applied snapshot time
        self._applied = 0
        self._ignored = 0

    @property
    def local_router(self) -> ThermodynamicRouter:
        return self._local_router

    @property
    def dim(self) -> Optional[int]:
        return self._dim

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self._events is not None:
            self._events.publish(event_type, self.node_id, **payload)

    def _check_dim(self, centroid: Sequence[float]) -> None:
        if self._dim is None:
            self._dim = len(centroid)
        elif len(centroid) != self._dim:
            raise DimensionMismatchError(len(centroid), self._dim)

    @staticmethod
    def _merge_two(a: AttractorBasin, b: AttractorBasin) -> AttractorBasin:
        return AttractorBasin(
            id=str(uuid.uuid4()),
            centroid=weighted_mean(a.centroid, a.mass, b.centroid, b.mass),
            mass=a.mass + b.mass,
            agent_count=a.agent_count + b.agent_count,
            topic_label=f"{a.topic_label}+{b.topic_label}",
        )

    def _replace_pair(self, a: AttractorBasin, b: AttractorBasin) -> AttractorBasin:
        merged = self._merge_two(a, b)
        del self._basins[a.id]
        del self._basins[b.id]
        self._basins[merged.id] = merged
        logger.debug(f"Merged basins '{a.topic_label}' and '{b.topic_label}' -> {merged.id}")
        self._emit(BASIN_MERGED, merged_id=merged.id, source_ids=[a.id, b.id], mass=merged.mass)
        return merged

    def _similarity_matrix(self, basins: List[AttractorBasin]) -> np.ndarray:
        """Pairwise cosine similarities with the diagonal set to -inf."""
        matrix = np.array([as_array(b.centroid) for b in basins], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0  # zero centroids end up with similarity 0
        unit = matrix / norms[:, np.newaxis]
        sims = unit @ unit.T
        np.fill_diagonal(sims, -np.inf)
        return sims

    # ------------------------------------------------------------------
    # Basin management
    # ------------------------------------------------------------------

    def add_basin(self, basin: AttractorBasin) -> None:
        """Add (or replace) a basin, then enforce the basin ceiling."""
        self._check_dim(basin.centroid)
        self._basins[basin.id] = basin
        self._emit(BASIN_ADDED, basin_id=basin.id, topic_label=basin.topic_label, mass=basin.mass)
        self.enforce_max_basins()

    def remove_basin(self, basin_id: str) -> bool:
        if self._basins.pop(basin_id, None) is None:
            return False
        self._emit(BASIN_REMOVED, basin_id=basin_id)
        return True

    def get_basin(self, basin_id: str) -> Optional[AttractorBasin]:
        return self._basins.get(basin_id)

    def get_basins(self) -> List[AttractorBasin]:
        return list(self._basins.values())

    def total_mass(self) -> float:
        return math.fsum(b.mass for b in self._basins.values())

    def __len__(self) -> int:
        return len(self._basins)

    # ------------------------------------------------------------------
    # Gossip
    # ------------------------------------------------------------------

    def get_gossip_payload(self) -> EnergyLandscapeSnapshot:
        """Snapshot of the local landscape, detached from live state."""
        return EnergyLandscapeSnapshot(
            basins=tuple(copy.deepcopy(b) for b in self._basins.values()),
            timestamp=self._clock(),
            node_id=self.node_id,
        )

    def receive_gossip(self, snapshot: EnergyLandscapeSnapshot) -> int:
        """Merge a peer snapshot into the local landscape.

        Returns the number of remote basins merged or adopted. Our own
        snapshots, and snapshots not newer than the last one applied from the
        same peer, are ignored, so re-delivery of a snapshot is harmless.
        """
        if snapshot.node_id == self.node_id:
            self._ignored += 1
            return 0
        last = self._peer_timestamps.get(snapshot.node_id)
        if last is not None and snapshot.timestamp <= last:
            self._ignored += 1
            logger.debug(f"Ignoring stale/duplicate snapshot from {snapshot.node_id}")
            return 0
        self._peer_timestamps[snapshot.node_id] = snapshot.timestamp

        touched = 0
        merged = 0
        for remote in snapshot.basins:
            if self._dim is not None and len(remote.centroid) != self._dim:
                logger.warning(
                    f"Skipping basin {remote.id} from {snapshot.node_id}: "
                    f"dimension {len(remote.centroid)} != {self._dim}"
                )
                continue
            if self._dim is None:
                self._dim = len(remote.centroid)

            local = self._basins.get(remote.id)
            if local is None:
                self._basins[remote.id] = copy.deepcopy(remote)
            else:
                total_mass = local.mass + remote.mass
                self._basins[remote.id] = AttractorBasin(
                    id=local.id,
                    centroid=weighted_mean(local.centroid, local.mass, remote.centroid, remote.mass),
                    mass=total_mass,
                    agent_count=local.agent_count + remote.agent_count,
                    topic_label=local.topic_label,
                )
                merged += 1
            touched += 1

        self._applied += 1
        logger.debug(
            f"Gossip from {snapshot.node_id}: {merged} merged, {touched - merged} adopted"
        )
        self._emit(
            GOSSIP_RECEIVED,
            peer=snapshot.node_id,
            merged=merged,
            adopted=touched - merged,
            basin_count=len(self._basins),
        )
        self.enforce_max_basins()
        return touched

    # ------------------------------------------------------------------
    # Capacity, merging and splitting
    # ------------------------------------------------------------------

    def enforce_max_basins(self) -> int:
        """Merge the most similar pair until the basin count fits ``max_basins``.

        Returns the number of merges performed.
        """
        merges = 0
        while len(self._basins) > max(1, self.config.max_basins):
            basins = list(self._basins.values())
            sims = self._similarity_matrix(basins)
            i, j = np.unravel_index(int(np.argmax(sims)), sims.shape)
            if sims[i, j] < self.config.merge_threshold:
                logger.info(
                    f"Basin ceiling {self.config.max_basins} exceeded; merging closest pair "
                    f"below merge threshold (similarity {sims[i, j]:.3f})"
                )
            self._replace_pair(basins[i], basins[j])
            merges += 1
        return merges

    def merge_similar_basins(self, threshold: Optional[float] = None) -> int:
        """One greedy pass merging every pair with similarity >= *threshold*.

        Each basin takes part in at most one merge per pass. Returns the
        number of merges.
        """
        merge_threshold = self.config.merge_threshold if threshold is None else threshold
        basins = list(self._basins.values())
        if len(basins) < 2:
            return 0
        sims = self._similarity_matrix(basins)
        used = set()
        merges = 0
        for i in range(len(basins)):
            if i in used:
                continue
            for j in range(i + 1, len(basins)):
                if j in used:
                    continue
                if sims[i, j] >= merge_threshold:
                    self._replace_pair(basins[i], basins[j])
                    used.update((i, j))
                    merges += 1
                    break
        if merges:
            logger.info(f"Merged {merges} similar basin pair(s) (threshold {merge_threshold})")
        return merges

    def check_split(self, basin_id: str) -> bool:
        """True if the basin holds more agents than ``split_threshold``."""
        basin = self._basins.get(basin_id)
        return basin is not None and basin.agent_count > self.config.split_threshold

    def split_basin(self, basin_id: str) -> Tuple[AttractorBasin, AttractorBasin]:
        """Replace a basin with two halves pushed apart by a random perturbation."""
        basin = self._basins.get(basin_id)
        if basin is None:
            raise BasinNotFoundError(basin_id)

        width = self.config.split_perturbation
        perturbation = np.array([(self._rng.random() - 0.5) * width for _ in basin.centroid])
        centroid = as_array(basin.centroid)

        first = AttractorBasin(
            id=str(uuid.uuid4()),
            centroid=(centroid + perturbation).tolist(),
            mass=basin.mass / 2,
            agent_count=basin.agent_count // 2,
            topic_label=f"{basin.topic_label}-A",
        )
        second = AttractorBasin(
            id=str(uuid.uuid4()),
            centroid=(centroid - perturbation).tolist(),
            mass=basin.mass / 2,
            agent_count=basin.agent_count - basin.agent_count // 2,
            topic_label=f"{basin.topic_label}-B",
        )

        del self._basins[basin_id]
        self._basins[first.id] = first
        self._basins[second.id] = second
        logger.info(
            f"Split basin '{basin.topic_label}' ({basin.agent_count} agents) into "
            f"{first.agent_count}+{second.agent_count}"
        )
        self._emit(BASIN_SPLIT, basin_id=basin_id, into=[first.id, second.id])
        return first, second

    def seed_agent_zero_attractors(self, topics: Sequence[str]) -> List[AttractorBasin]:
        """Create one unit-mass basin per topic from its deterministic embedding."""
        seeded = []
        for topic in topics:
            centroid = topic_embedding(topic, self._dim) if self._dim else topic_embedding(topic)
            basin = AttractorBasin(
                id=str(uuid.uuid4()),
                centroid=centroid,
                mass=1.0,
                agent_count=1,
                topic_label=topic,
            )
            self.add_basin(basin)
            seeded.append(basin)
        return seeded

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route_to_basin(self, embedding: Vector) -> Optional[AttractorBasin]:
        """Basin with the highest affinity for *embedding*, or None."""
        return find_nearest_basin(embedding, list(self._basins.values()))

    def route(self, message: Any, candidates: Sequence[RoutingCandidate]) -> Observer:
        """Route a message among agent candidates with the local router."""
        return self._local_router.route(message, candidates)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_stats(self) -> GossipStats:
        basins = list(self._basins.values())
        largest = max(basins, key=lambda b: b.mass).topic_label if basins else "none"
        return GossipStats(
            basin_count=len(basins),
            total_mass=self.total_mass(),
            largest_basin=largest,
            snapshots_applied=self._applied,
            snapshots_ignored=self._ignored,
            peers=sorted(self._peer_timestamps),
        )
