"""Observer: an agent identity as seen by the coordination core."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass
class Observer:
    """An agent taking part in phase synchronisation and routing."""

    id: str
    name: str
    frequency: float  # observation frequency (Hz), must be > 0
    phase: float = 0.0  # current phase in [0, 2π)
    layer: int = 2  # abstraction layer: 0=physical, 1=computational, 2=semantic

    def __post_init__(self) -> None:
        if self.frequency <= 0:
            raise ValueError(f"Observer {self.id} frequency must be positive, got {self.frequency}")
        self.phase = wrap_phase(self.phase)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "frequency": self.frequency,
            "phase": self.phase,
            "layer": self.layer,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Observer:
        return cls(
            id=d["id"],
            name=d.get("name", d["id"]),
            frequency=float(d["frequency"]),
            phase=float(d.get("phase", 0.0)),
            layer=int(d.get("layer", 2)),
        )


def wrap_phase(phase: float) -> float:
    """Wrap *phase* into ``[0, 2π)``."""
    wrapped = math.fmod(phase, 2 * math.pi)
    if wrapped < 0:
        wrapped += 2 * math.pi
    # fmod of a tiny negative number can land exactly on 2π
    if wrapped >= 2 * math.pi:
        wrapped = 0.0
    return wrapped
