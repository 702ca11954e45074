"""MeshEvent and EventBus: callback pub/sub for core notifications.

The core never pushes anything onto a transport. Instead, subsystems emit
:class:`MeshEvent` objects on an :class:`EventBus` and the host layer
subscribes to the event types it cares about::

    bus = EventBus()
    sub_id = bus.subscribe("candidate:invited", lambda ev: print(ev.payload))
    ...
    bus.unsubscribe(sub_id)

Any number of listeners may watch the same event type, and ``"*"`` watches
all of them. A listener that raises is logged and skipped; the remaining
listeners still run.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List

logger = logging.getLogger("MeshCore.Events")

WILDCARD = "*"

# Event type names emitted by the core.
CANDIDATE_STAGE_CHANGED = "candidate:stage_changed"
CANDIDATE_INVITED = "candidate:invited"
CANDIDATE_ABSORBED = "candidate:absorbed"
CANDIDATE_REJECTED = "candidate:rejected"
CANDIDATE_RELEASED = "candidate:released"
BASIN_ADDED = "basin:added"
BASIN_REMOVED = "basin:removed"
BASIN_MERGED = "basin:merged"
BASIN_SPLIT = "basin:split"
GOSSIP_RECEIVED = "gossip:received"
COHERENCE_INTERVENTION = "coherence:intervention"


@dataclass
class MeshEvent:
    """An event emitted by a core subsystem."""

    event_type: str  # e.g. "candidate:invited", "basin:merged"
    source: str  # subsystem or node that emitted it
    payload: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "source": self.source,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> MeshEvent:
        return cls(
            event_type=d["event_type"],
            source=d["source"],
            payload=dict(d.get("payload", {})),
            timestamp=float(d.get("timestamp", 0.0)),
        )


class EventBus:
    """Synchronous fan-out of :class:`MeshEvent` objects to callbacks."""

    def __init__(self) -> None:
        # event_type → {sub_id → callback}
        self._subscribers: Dict[str, Dict[str, Callable[[MeshEvent], None]]] = {}
        self._emitted = 0

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, event_type: str, callback: Callable[[MeshEvent], None]) -> str:
        """Register *callback* for *event_type* (or ``"*"``). Returns a subscription id."""
        sub_id = uuid.uuid4().hex
        self._subscribers.setdefault(event_type, {})[sub_id] = callback
        logger.debug("Subscribed %s to '%s'", sub_id, event_type)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        for event_type, subs in list(self._subscribers.items()):
            if sub_id in subs:
                del subs[sub_id]
                if not subs:
                    del self._subscribers[event_type]
                return True
        return False

    def listener_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(s) for s in self._subscribers.values())
        return len(self._subscribers.get(event_type, {}))

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def emit(self, event: MeshEvent) -> int:
        """Deliver *event* to every matching listener.

        Returns the number of listeners that completed without raising.
        """
        self._emitted += 1
        callbacks = list(self._subscribers.get(event.event_type, {}).values())
        if event.event_type != WILDCARD:
            callbacks.extend(self._subscribers.get(WILDCARD, {}).values())

        delivered = 0
        for cb in callbacks:
            try:
                cb(event)
                delivered += 1
            except Exception as exc:
                logger.warning(f"Listener error for '{event.event_type}': {exc}")
        return delivered

    def publish(self, event_type: str, source: str, **payload) -> MeshEvent:
        """Build a :class:`MeshEvent` and emit it."""
        event = MeshEvent(event_type=event_type, source=source, payload=payload)
        self.emit(event)
        return event

    @property
    def emitted_count(self) -> int:
        return self._emitted
