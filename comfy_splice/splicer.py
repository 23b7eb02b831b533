"""
Comfy Splice - Adapter-Chain Splicer
====================================

Inserts adapter (LoRA) nodes between a graph's base model/CLIP producers and
everything that consumed them, without the caller knowing any node id.

Two strategies, picked from the executor's schema:

- **stacked**: one multi-slot stacking node plus one apply-stack node.
  Exactly two new ids; every slot up to the stack's capacity is filled, the
  unused ones with the "None" sentinel at weight 1.0.
- **chained**: one single-adapter loader per adapter, each reading the
  previous loader's MODEL (slot 0) and CLIP (slot 1). No cap.

Afterwards every consumer that read the base MODEL output reads slot 0 of the
last new node, and every consumer of the base CLIP output reads slot 1. New
ids always start above the largest numeric id already in the graph.

Anything that prevents splicing (no adapters, no base producer, no adapter
node types on the executor) returns an unchanged copy plus a diagnostic.
"""

from collections.abc import Iterable, Sequence
from enum import Enum
from typing import NamedTuple

from .adapters import AdapterSpec, applicable
from .config import settings
from .diagnostics import Diagnostic, Stage
from .graph import Graph, Node, OperationKind, Reference
from .logging_config import get_logger
from .schema import SchemaInfo, StackChoice

logger = get_logger(__name__)

__all__ = [
    "SpliceStrategy",
    "SpliceResult",
    "splice",
    "find_base_producers",
]

MODEL_PRODUCERS = (OperationKind.MODEL_LOADER, OperationKind.CHECKPOINT_LOADER)
CLIP_PRODUCERS = (OperationKind.CLIP_LOADER, OperationKind.CHECKPOINT_LOADER)


class SpliceStrategy(str, Enum):
    STACKED = "stacked"
    CHAINED = "chained"


class SpliceResult(NamedTuple):
    graph: Graph
    diagnostics: list[Diagnostic]
    strategy: SpliceStrategy | None
    applied: list[AdapterSpec]
    created_ids: list[str]


def _diag(code: str, message: str, node_id: str | None = None, **detail) -> Diagnostic:
    return Diagnostic(Stage.SPLICE, code, message, node_id=node_id, detail=detail)


def _unchanged(
    graph: Graph, diagnostics: list[Diagnostic], diagnostic: Diagnostic
) -> SpliceResult:
    logger.info(f"Splice skipped: {diagnostic.message}", extra={"code": diagnostic.code})
    return SpliceResult(graph.copy(), [*diagnostics, diagnostic], None, [], [])


def _pick(
    graph: Graph, kinds: Sequence[OperationKind], label: str, diagnostics: list[Diagnostic]
) -> Node | None:
    found = graph.find(kinds)
    if len(found) > 1:
        diagnostics.append(
            _diag(
                "multiple-base-producers",
                f"{len(found)} {label} producers found; using the first",
                node_id=found[0].node_id,
                candidates=[node.node_id for node in found],
            )
        )
    return found[0] if found else None


def find_base_producers(
    graph: Graph, diagnostics: list[Diagnostic] | None = None
) -> tuple[Node | None, Node | None]:
    """The base MODEL and CLIP producers, first in id order."""
    sink = diagnostics if diagnostics is not None else []
    return _pick(graph, MODEL_PRODUCERS, "model", sink), _pick(graph, CLIP_PRODUCERS, "clip", sink)


def _choose_strategy(
    schema: SchemaInfo, prefer: SpliceStrategy | None
) -> tuple[SpliceStrategy | None, StackChoice | None, str | None]:
    stack = schema.choose_stack()
    chain = schema.choose_chain()
    if prefer is None:
        stacked_first = settings.compiler.prefer_stacked
        prefer = SpliceStrategy.STACKED if stacked_first else SpliceStrategy.CHAINED

    order = (
        [SpliceStrategy.STACKED, SpliceStrategy.CHAINED]
        if prefer is SpliceStrategy.STACKED
        else [SpliceStrategy.CHAINED, SpliceStrategy.STACKED]
    )
    for strategy in order:
        if strategy is SpliceStrategy.STACKED and stack is not None:
            return strategy, stack, None
        if strategy is SpliceStrategy.CHAINED and chain is not None:
            return strategy, None, chain
    return None, None, None


# =============================================================================
# STRATEGIES
# =============================================================================


def _build_stack(
    result: Graph,
    adapters: list[AdapterSpec],
    choice: StackChoice,
    model_ref: Reference,
    clip_ref: Reference,
) -> list[str]:
    stack_id, apply_id = result.next_ids(2)
    compiler = settings.compiler
    sentinel = compiler.empty_adapter_sentinel

    inputs: dict = {"toggle": True, "mode": compiler.stack_mode, "num_loras": len(adapters)}
    for slot in range(1, choice.capacity + 1):
        adapter = adapters[slot - 1] if slot <= len(adapters) else None
        if adapter is None:
            name, model_weight, clip_weight = sentinel, 1.0, 1.0
        else:
            name, model_weight, clip_weight = (
                adapter.file_path,
                adapter.model_weight,
                adapter.conditioning_weight,
            )
        inputs[f"lora_{slot}_name"] = name
        inputs[f"lora_{slot}_strength"] = model_weight
        inputs[f"lora_{slot}_model_strength"] = model_weight
        inputs[f"lora_{slot}_clip_strength"] = clip_weight

    result.add(
        Node(stack_id, choice.stack_type, {"inputs": inputs, "_meta": {"title": "LoRA Stack"}})
    )
    result.add(
        Node(
            apply_id,
            choice.apply_type,
            {
                "inputs": {
                    "model": model_ref,
                    "clip": clip_ref,
                    "lora_stack": Reference(stack_id, 0),
                },
                "_meta": {"title": "Apply LoRA Stack"},
            },
        )
    )
    return [stack_id, apply_id]


def _build_chain(
    result: Graph,
    adapters: list[AdapterSpec],
    class_type: str,
    model_ref: Reference,
    clip_ref: Reference,
) -> list[str]:
    created = result.next_ids(len(adapters))
    for node_id, adapter in zip(created, adapters):
        result.add(
            Node(
                node_id,
                class_type,
                {
                    "inputs": {
                        "model": model_ref,
                        "clip": clip_ref,
                        "lora_name": adapter.file_path,
                        "strength_model": adapter.model_weight,
                        "strength_clip": adapter.conditioning_weight,
                    },
                    "_meta": {"title": adapter.name or f"LoRA {adapter.file_path}"},
                },
            )
        )
        model_ref, clip_ref = Reference(node_id, 0), Reference(node_id, 1)
    return created


# =============================================================================
# SPLICE
# =============================================================================


def splice(
    graph: Graph,
    adapters: Iterable[AdapterSpec],
    schema: SchemaInfo,
    prefer: SpliceStrategy | None = None,
) -> SpliceResult:
    """
    Apply ``adapters`` to a copy of ``graph``.

    Args:
        graph: Graph to rewrite (not mutated)
        adapters: Requested adapters; sentinel entries are skipped and the
            rest applied in ``order``
        schema: What the executor supports
        prefer: Strategy to try first (default from settings)
    """
    diagnostics: list[Diagnostic] = []
    usable = applicable(adapters)
    if not usable:
        return _unchanged(graph, diagnostics, _diag("no-adapters", "No applicable adapters"))

    model, clip = find_base_producers(graph, diagnostics)
    if model is None or clip is None:
        missing = "model" if model is None else "clip"
        return _unchanged(
            graph,
            diagnostics,
            _diag("no-base-producer", f"Template has no base {missing} producer"),
        )

    strategy, stack, chain_type = _choose_strategy(schema, prefer)
    if strategy is None:
        return _unchanged(
            graph,
            diagnostics,
            _diag("adapters-unsupported", "Adapters unsupported by target executor"),
        )

    model_ref = Reference(model.node_id, model.model_slot)
    clip_ref = Reference(clip.node_id, clip.clip_slot)
    model_consumers = graph.consumers_of(model.node_id, model.model_slot)
    clip_consumers = graph.consumers_of(clip.node_id, clip.clip_slot)

    result = graph.copy()
    if strategy is SpliceStrategy.STACKED:
        if len(usable) > stack.capacity:
            diagnostics.append(
                _diag(
                    "adapters-truncated",
                    f"{len(usable)} adapters requested, stack holds {stack.capacity}; "
                    f"dropped {len(usable) - stack.capacity}",
                    dropped=[a.file_path for a in usable[stack.capacity:]],
                )
            )
            usable = usable[: stack.capacity]
        created = _build_stack(result, usable, stack, model_ref, clip_ref)
    else:
        created = _build_chain(result, usable, chain_type, model_ref, clip_ref)

    tail = created[-1]
    new_ids = set(created)
    for consumer_id, input_name in model_consumers:
        if consumer_id not in new_ids:
            result[consumer_id].inputs[input_name] = Reference(tail, 0)
    for consumer_id, input_name in clip_consumers:
        if consumer_id not in new_ids:
            result[consumer_id].inputs[input_name] = Reference(tail, 1)

    logger.info(
        f"Spliced {len(usable)} adapter(s) using {strategy.value} strategy",
        extra={
            "strategy": strategy.value,
            "created_ids": created,
            "model_consumers": len(model_consumers),
            "clip_consumers": len(clip_consumers),
        },
    )
    return SpliceResult(result, diagnostics, strategy, usable, created)
