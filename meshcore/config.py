"""Configuration for the coordination core.

Every subsystem takes an explicit dataclass with documented defaults. Partial
settings (from YAML or a dict) are merged over those defaults with
``from_dict``; unknown keys are logged and ignored.

A node config file looks like::

    node_id: rail-node-1
    coherence:
      coupling_strength: 0.5
      stall_detection: true
    router:
      temperature: 1.0
      annealing_schedule: exponential
    distributed:
      max_basins: 50
    absorption:
      alignment_threshold: 0.7

Call :func:`load_config` to read one, and :func:`validate_mesh_config` to check
a raw dict before building engines from it.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, List, Optional, Tuple

import yaml

logger = logging.getLogger("MeshCore.Config")

ANNEALING_SCHEDULES = ("none", "linear", "exponential", "adaptive")


def _merge_defaults(cls, d: Optional[dict], section: str):
    """Build *cls* from its defaults overridden by the known keys of *d*."""
    if not d:
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(d) - known)
    if unknown:
        logger.warning("Ignoring unknown %s config keys: %s", section, unknown)
    return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class CoherenceConfig:
    """Kuramoto coherence engine settings."""

    frequency_variance: float = 0.1  # relative spread of natural frequencies
    coupling_strength: float = 0.5  # K, clamped to [0, 2]
    target_coherence: float = 0.8
    coherence_threshold: float = 0.3  # below this, needs_intervention() is True
    dt_ms: float = 16.0  # nominal tick period (~60 Hz)
    convergence_timeout_ticks: int = 300  # stalled ticks before auto-sync (~5 s)
    convergence_min_delta: float = 0.01
    stall_detection: bool = True
    history_size: int = 1000

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> CoherenceConfig:
        return _merge_defaults(cls, d, "coherence")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GlobalCoherenceConfig(CoherenceConfig):
    """Network-wide coherence settings layered on :class:`CoherenceConfig`."""

    dt_ms: float = 100.0
    broadcast_hz: float = 1.0
    stale_ttl_s: float = 30.0
    adaptive_coupling: bool = True
    min_coupling: float = 0.1
    max_coupling: float = 1.5
    groupthink_threshold: float = 0.95
    coupling_step: float = 0.05
    flood_window_s: float = 1.0
    flood_max_reports: int = 10

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> GlobalCoherenceConfig:
        return _merge_defaults(cls, d, "global_coherence")


@dataclass
class RouterConfig:
    """Thermodynamic router weights and annealing."""

    temperature: float = 1.0
    load_weight: float = 0.2
    coherence_weight: float = 0.2
    semantic_weight: float = 0.3
    model_weight: float = 0.3
    annealing_schedule: str = "adaptive"  # none | linear | exponential | adaptive

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> RouterConfig:
        return _merge_defaults(cls, d, "router")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DistributedRouterConfig:
    """Attractor-basin gossip settings."""

    gossip_interval_ms: int = 5000  # cadence hint for the external scheduler
    sync_threshold: float = 0.85
    max_basins: int = 50
    split_threshold: int = 10  # agent count above which a split is advised
    merge_threshold: float = 0.92  # min cosine similarity to merge two basins
    split_perturbation: float = 0.1  # width of the uniform split perturbation

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> DistributedRouterConfig:
        return _merge_defaults(cls, d, "distributed")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AbsorptionConfig:
    """Staged-trust absorption settings."""

    alignment_threshold: float = 0.7
    min_interactions: int = 3  # required before an invitation
    assess_interactions: int = 2  # OBSERVED -> ASSESSED
    syncing_alignment: float = 0.8  # CONNECTED -> SYNCING when exceeded
    coupling_ramp_rate: float = 0.05
    max_coupling: float = 0.8
    invitation_cooldown_s: float = 3600.0
    identity_centroid: Optional[List[float]] = None  # None = zero vector

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> AbsorptionConfig:
        return _merge_defaults(cls, d, "absorption")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MeshConfig:
    """Aggregate configuration for one rail node."""

    node_id: Optional[str] = None  # None = random UUID
    coherence: CoherenceConfig = field(default_factory=CoherenceConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    distributed: DistributedRouterConfig = field(default_factory=DistributedRouterConfig)
    absorption: AbsorptionConfig = field(default_factory=AbsorptionConfig)

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> MeshConfig:
        d = d or {}
        unknown = sorted(set(d) - {f.name for f in fields(cls)})
        if unknown:
            logger.warning("Ignoring unknown top-level config keys: %s", unknown)
        return cls(
            node_id=d.get("node_id"),
            coherence=CoherenceConfig.from_dict(d.get("coherence")),
            router=RouterConfig.from_dict(d.get("router")),
            distributed=DistributedRouterConfig.from_dict(d.get("distributed")),
            absorption=AbsorptionConfig.from_dict(d.get("absorption")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(path: str | Path) -> MeshConfig:
    """Read a YAML node config. An empty file yields all defaults."""
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    ok, errors = validate_mesh_config(raw)
    if not ok:
        for msg in errors:
            logger.error("Mesh config error in %s: %s", path, msg)
        raise ValueError(f"Invalid mesh config {path}: {'; '.join(errors)}")
    return MeshConfig.from_dict(raw)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_SECTIONS = ("coherence", "router", "distributed", "absorption")

# (section, key) pairs that must be numbers in [0, 1]
_UNIT_INTERVAL_KEYS: List[Tuple[str, str]] = [
    ("coherence", "target_coherence"),
    ("coherence", "coherence_threshold"),
    ("distributed", "sync_threshold"),
    ("distributed", "merge_threshold"),
    ("absorption", "alignment_threshold"),
    ("absorption", "syncing_alignment"),
    ("absorption", "max_coupling"),
]

# (section, key) pairs that must be strictly positive numbers
_POSITIVE_KEYS: List[Tuple[str, str]] = [
    ("coherence", "dt_ms"),
    ("coherence", "convergence_timeout_ticks"),
    ("coherence", "history_size"),
    ("router", "temperature"),
    ("distributed", "max_basins"),
    ("distributed", "gossip_interval_ms"),
    ("absorption", "coupling_ramp_rate"),
    ("absorption", "min_interactions"),
]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_mesh_config(config: Any) -> Tuple[bool, List[str]]:
    """Validate a raw (already parsed) mesh config dict.

    Returns:
        A ``(is_valid, errors)`` tuple. ``is_valid`` is ``True`` only when
        ``errors`` is empty.
    """
    if not isinstance(config, dict):
        return False, ["Config must be a mapping (check YAML syntax)"]

    errors: List[str] = []

    node_id = config.get("node_id")
    if node_id is not None and not isinstance(node_id, str):
        errors.append("'node_id' must be a string")

    for section in _SECTIONS:
        if section in config and config[section] is not None and not isinstance(
            config[section], dict
        ):
            errors.append(f"'{section}' must be a mapping (dict), not a scalar")

    def _value(section: str, key: str) -> Any:
        block = config.get(section)
        if isinstance(block, dict):
            return block.get(key)
        return None

    for section, key in _UNIT_INTERVAL_KEYS:
        value = _value(section, key)
        if value is None:
            continue
        if not _is_number(value) or not 0.0 <= value <= 1.0:
            errors.append(f"'{section}.{key}' must be a number in [0, 1], got {value!r}")

    for section, key in _POSITIVE_KEYS:
        value = _value(section, key)
        if value is None:
            continue
        if not _is_number(value) or value <= 0:
            errors.append(f"'{section}.{key}' must be a positive number, got {value!r}")

    coupling = _value("coherence", "coupling_strength")
    if coupling is not None and (not _is_number(coupling) or not 0.0 <= coupling <= 2.0):
        errors.append(f"'coherence.coupling_strength' must be in [0, 2], got {coupling!r}")

    schedule = _value("router", "annealing_schedule")
    if schedule is not None and schedule not in ANNEALING_SCHEDULES:
        errors.append(
            f"'router.annealing_schedule' must be one of {', '.join(ANNEALING_SCHEDULES)}, "
            f"got {schedule!r}"
        )

    centroid = _value("absorption", "identity_centroid")
    if centroid is not None and (
        not isinstance(centroid, list) or not all(_is_number(v) for v in centroid)
    ):
        errors.append("'absorption.identity_centroid' must be a list of numbers")

    return len(errors) == 0, errors


def log_validation_result(config: Any, label: str = "Mesh config") -> bool:
    """Validate *config* and log each error. Returns True if valid."""
    ok, errors = validate_mesh_config(config)
    if ok:
        logger.debug("%s validation passed", label)
    else:
        for msg in errors:
            logger.error("%s validation error: %s", label, msg)
    return ok
