"""
Comfy Splice - Parameter Binder
===============================

Writes scalar parameters (prompt, steps, seed, size...) into a copy of a
template graph. Only literals change: node ids and edges are left exactly as
they were, and an input that is currently wired to another node is never
overwritten.
"""

import random
from collections.abc import Mapping
from typing import Any, NamedTuple

from .diagnostics import Diagnostic, Stage
from .exceptions import InvalidParameterError, PathResolutionError
from .graph import Graph, Node, Reference, get_by_path, set_by_path
from .logging_config import get_logger
from .registry import DEFAULT_PARAMETERS, ParameterSpec, ParameterType

logger = get_logger(__name__)

__all__ = ["BindResult", "bind", "coerce_value", "RANDOM_SEED"]

RANDOM_SEED = -1
_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


class BindResult(NamedTuple):
    graph: Graph
    diagnostics: list[Diagnostic]
    # Values actually written, after coercion and seed resolution
    values: dict[str, Any]


def coerce_value(spec: ParameterSpec, value: Any) -> Any:
    """
    Convert ``value`` to the literal form the target input expects.

    Raises:
        InvalidParameterError: If the value cannot be represented
    """
    kind = spec.value_type
    try:
        if kind is ParameterType.INT:
            if isinstance(value, bool):
                raise ValueError("booleans are not integers")
            number = float(value) if isinstance(value, str) else value
            if isinstance(number, float) and not number.is_integer():
                raise ValueError("not a whole number")
            return int(number)
        if kind is ParameterType.FLOAT:
            if isinstance(value, bool):
                raise ValueError("booleans are not numbers")
            return float(value)
        if kind is ParameterType.BOOL:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in _TRUE:
                    return True
                if lowered in _FALSE:
                    return False
                raise ValueError("not a boolean")
            return bool(value)
    except (TypeError, ValueError) as e:
        raise InvalidParameterError(spec.name, value, reason=str(e)) from e

    return value if isinstance(value, str) else str(value)


def _write(node: Node, spec: ParameterSpec, value: Any) -> str:
    """Write through the primary path, falling back only on structural failure."""
    try:
        set_by_path(node, spec.primary_path, value)
        return spec.primary_path
    except PathResolutionError:
        if not spec.fallback_path:
            raise
    if isinstance(get_by_path(node, spec.fallback_path), Reference):
        raise PathResolutionError(spec.fallback_path, "input is wired to another node")
    set_by_path(node, spec.fallback_path, value)
    return spec.fallback_path


def bind(
    graph: Graph,
    parameters: Mapping[str, Any],
    specs: Mapping[str, ParameterSpec] = DEFAULT_PARAMETERS,
    rng: random.Random | None = None,
) -> BindResult:
    """
    Apply ``parameters`` to a deep copy of ``graph``.

    Parameters whose value is None are treated as not supplied. A seed of -1
    is replaced by one random seed for the whole bind.
    """
    result = graph.copy()
    diagnostics: list[Diagnostic] = []
    written: dict[str, Any] = {}
    rng = rng or random.Random()

    for name, raw in parameters.items():
        if raw is None:
            continue
        spec = specs.get(name)
        if spec is None:
            diagnostics.append(
                Diagnostic(Stage.BIND, "unknown-parameter", f"No registry entry for '{name}'")
            )
            continue

        try:
            value = coerce_value(spec, raw)
        except InvalidParameterError as e:
            diagnostics.append(
                Diagnostic(Stage.BIND, "invalid-value", e.message, detail={"parameter": name})
            )
            continue
        if name == "seed" and value == RANDOM_SEED:
            value = rng.randint(0, 2**32 - 1)

        targets = [node for node in result if spec.matches(node, result)]
        if not targets:
            diagnostics.append(
                Diagnostic(
                    Stage.BIND,
                    "no-target",
                    f"Template has no {' / '.join(spec.target_types)} node for '{name}'",
                    detail={"parameter": name},
                )
            )
            continue

        for node in targets:
            if isinstance(get_by_path(node, spec.primary_path), Reference):
                diagnostics.append(
                    Diagnostic(
                        Stage.BIND,
                        "wired-input",
                        f"'{name}' target {spec.primary_path} is wired to another node; left as is",
                        node_id=node.node_id,
                        detail={"parameter": name},
                    )
                )
                continue
            try:
                path = _write(node, spec, value)
            except PathResolutionError as e:
                diagnostics.append(
                    Diagnostic(
                        Stage.BIND,
                        "path-unresolved",
                        e.message,
                        node_id=node.node_id,
                        detail={"parameter": name},
                    )
                )
                continue
            written[name] = value
            logger.debug(f"Bound {name} -> node {node.node_id} {path}")

    return BindResult(result, diagnostics, written)
