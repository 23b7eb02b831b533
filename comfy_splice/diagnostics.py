"""
Comfy Splice - Compile Diagnostics
==================================

Recoverable conditions found while binding, splicing and repairing. They
travel alongside the compiled graph instead of being raised, so a caller can
show warnings for a degraded but usable graph.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

__all__ = ["Stage", "Diagnostic"]


class Stage(str, Enum):
    BIND = "bind"
    EMBED = "embed"
    SPLICE = "splice"
    REPAIR = "repair"
    COMPILE = "compile"


@dataclass(frozen=True)
class Diagnostic:
    """One recoverable finding. ``code`` is stable; ``message`` is for humans."""

    stage: Stage
    code: str
    message: str
    node_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data = {"stage": self.stage.value, "code": self.code, "message": self.message}
        if self.node_id is not None:
            data["node_id"] = self.node_id
        if self.detail:
            data["detail"] = dict(self.detail)
        return data

    def __str__(self) -> str:
        where = f" (node {self.node_id})" if self.node_id is not None else ""
        return f"[{self.stage.value}:{self.code}] {self.message}{where}"
