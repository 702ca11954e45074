"""ModelRegistry: static catalogue of routable models.

Each entry carries an identity embedding so the thermodynamic router can add a
model-affinity term to its energy. Built-in entries get deterministic
pseudo-embeddings from :func:`meshcore.vectors.deterministic_embedding`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from meshcore.vectors import Vector, cosine_similarity, deterministic_embedding


@dataclass
class ModelCapability:
    name: str
    strength: float  # 0.0–1.0, how good the model is at this capability


@dataclass
class ModelEntry:
    """One model available for routing."""

    id: str
    provider: str  # "anthropic" | "google" | "openai" | "openrouter"
    name: str
    capabilities: List[ModelCapability]
    cost_per_1k_tokens: float  # USD
    max_context_tokens: int
    identity_embedding: List[float]  # unit-norm semantic identity vector
    supports_streaming: bool = True
    supports_tools: bool = True
    metadata: dict = field(default_factory=dict)

    def capability(self, name: str) -> Optional[ModelCapability]:
        for cap in self.capabilities:
            if cap.name == name:
                return cap
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "name": self.name,
            "capabilities": [{"name": c.name, "strength": c.strength} for c in self.capabilities],
            "cost_per_1k_tokens": self.cost_per_1k_tokens,
            "max_context_tokens": self.max_context_tokens,
            "identity_embedding": list(self.identity_embedding),
            "supports_streaming": self.supports_streaming,
            "supports_tools": self.supports_tools,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, d: dict) -> ModelEntry:
        return cls(
            id=d["id"],
            provider=d.get("provider", "unknown"),
            name=d.get("name", d["id"]),
            capabilities=[
                ModelCapability(name=c["name"], strength=float(c["strength"]))
                for c in d.get("capabilities", [])
            ],
            cost_per_1k_tokens=float(d["cost_per_1k_tokens"]),
            max_context_tokens=int(d["max_context_tokens"]),
            identity_embedding=list(d.get("identity_embedding") or deterministic_embedding(d["id"])),
            supports_streaming=bool(d.get("supports_streaming", True)),
            supports_tools=bool(d.get("supports_tools", True)),
            metadata=dict(d.get("metadata", {})),
        )


# (id, provider, name, capabilities, cost per 1k tokens, max context)
_DEFAULT_MODELS = [
    ("claude-opus-4", "anthropic", "Claude Opus 4", {"reasoning": 0.95, "code": 0.9}, 0.015, 200_000),
    ("claude-sonnet-4", "anthropic", "Claude Sonnet 4", {"reasoning": 0.85, "code": 0.85}, 0.003, 200_000),
    (
        "gemini-2.5-flash",
        "google",
        "Gemini 2.5 Flash",
        {"reasoning": 0.8, "code": 0.75, "search": 0.9},
        0.0001,
        1_000_000,
    ),
    (
        "gemini-2.5-pro",
        "google",
        "Gemini 2.5 Pro",
        {"reasoning": 0.9, "code": 0.85, "vision": 0.9},
        0.00125,
        1_000_000,
    ),
]


class ModelRegistry:
    """Read-mostly lookup table of :class:`ModelEntry` objects."""

    def __init__(self) -> None:
        self._models: Dict[str, ModelEntry] = {}

    def register(self, entry: ModelEntry) -> None:
        self._models[entry.id] = entry

    def unregister(self, model_id: str) -> bool:
        return self._models.pop(model_id, None) is not None

    def get(self, model_id: str) -> Optional[ModelEntry]:
        return self._models.get(model_id)

    def list_all(self) -> List[ModelEntry]:
        return list(self._models.values())

    def __len__(self) -> int:
        return len(self._models)

    def find_by_capability(self, capability_name: str, min_strength: float = 0.0) -> List[ModelEntry]:
        """Models having *capability_name* with at least *min_strength*."""
        results = []
        for model in self._models.values():
            cap = model.capability(capability_name)
            if cap is not None and cap.strength >= min_strength:
                results.append(model)
        return results

    def find_best_match(self, task_embedding: Vector, max_cost: Optional[float] = None) -> Optional[ModelEntry]:
        """Model whose identity is most similar to *task_embedding*.

        Models costing more than *max_cost* per 1k tokens are skipped. Returns
        None when nothing is left to choose from.
        """
        best: Optional[ModelEntry] = None
        best_similarity = float("-inf")
        for model in self._models.values():
            if max_cost is not None and model.cost_per_1k_tokens > max_cost:
                continue
            similarity = cosine_similarity(task_embedding, model.identity_embedding)
            if similarity > best_similarity:
                best_similarity = similarity
                best = model
        return best

    def estimate_cost(self, model_id: str, input_tokens: int, output_tokens: int) -> float:
        """USD cost of a call; 0.0 for an unknown model."""
        model = self._models.get(model_id)
        if model is None:
            return 0.0
        return model.cost_per_1k_tokens * ((input_tokens + output_tokens) / 1000)

    @classmethod
    def with_defaults(cls) -> ModelRegistry:
        """Registry pre-populated with the built-in model catalogue."""
        registry = cls()
        for model_id, provider, name, caps, cost, max_context in _DEFAULT_MODELS:
            registry.register(
                ModelEntry(
                    id=model_id,
                    provider=provider,
                    name=name,
                    capabilities=[ModelCapability(n, s) for n, s in caps.items()],
                    cost_per_1k_tokens=cost,
                    max_context_tokens=max_context,
                    identity_embedding=deterministic_embedding(model_id),
                )
            )
        return registry
