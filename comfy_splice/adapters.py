"""
Comfy Splice - Adapter Specs
============================

One LoRA-style adapter the caller wants applied: which file, how strongly on
the model and on the text conditioning pathway, and in what order.

Usage:
    from comfy_splice.adapters import AdapterSpec

    adapters = [
        AdapterSpec("styles/ink.safetensors", model_weight=0.8, order=1),
        AdapterSpec.from_mapping({"lora_name": "detail.safetensors", "clip_strength": "0.6"}),
    ]
"""

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from .config import settings

__all__ = [
    "AdapterSpec",
    "coerce_weight",
    "applicable",
    "compose_activation_prompt",
]


def coerce_weight(value: Any, default: float = 1.0) -> float:
    """Float weight, or ``default`` when the value is absent or not numeric."""
    if value is None or isinstance(value, bool):
        return default
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return default
    if weight != weight:  # NaN
        return default
    return weight


def _coerce_order(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class AdapterSpec:
    """A single adapter request."""

    file_path: str
    model_weight: float = 1.0
    conditioning_weight: float = 1.0
    order: int = 0
    activation_text: str | None = None
    name: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "file_path", str(self.file_path or "").strip())
        object.__setattr__(self, "model_weight", coerce_weight(self.model_weight))
        object.__setattr__(self, "conditioning_weight", coerce_weight(self.conditioning_weight))
        object.__setattr__(self, "order", _coerce_order(self.order))

    @property
    def is_applicable(self) -> bool:
        """False for empty paths and the "none" sentinel."""
        sentinel = settings.compiler.empty_adapter_sentinel.lower()
        return bool(self.file_path) and self.file_path.lower() not in ("none", sentinel)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AdapterSpec":
        """
        Build from a plain mapping.

        Accepts the asset-table column names (``lora_name``, ``model_strength``,
        ``clip_strength``, ``lora_order``, ``activation_words``) as well as the
        field names of this class.
        """

        def pick(*keys, default=None):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return default

        return cls(
            file_path=pick("file_path", "lora_name", "path", default=""),
            model_weight=pick("model_weight", "model_strength", "strength_model"),
            conditioning_weight=pick("conditioning_weight", "clip_strength", "strength_clip"),
            order=pick("order", "lora_order", default=0),
            activation_text=pick("activation_text", "activation_words"),
            name=pick("name"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def applicable(adapters: Iterable[AdapterSpec]) -> list[AdapterSpec]:
    """Drop sentinel entries and sort by ``order``; ties keep their input order."""
    return sorted((a for a in adapters if a.is_applicable), key=lambda a: a.order)


def compose_activation_prompt(prompt: str | None, adapters: Iterable[AdapterSpec]) -> str | None:
    """
    Prepend the adapters' activation words to ``prompt``.

    Returns ``prompt`` unchanged when no adapter carries activation text.
    """
    words = [
        a.activation_text.strip()
        for a in applicable(adapters)
        if a.activation_text and a.activation_text.strip()
    ]
    if not words:
        return prompt
    prefix = ", ".join(words)
    if not prompt:
        return prefix
    return f"{prefix}, {prompt}"
