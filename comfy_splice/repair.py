"""
Comfy Splice - Reference Integrity Repair
=========================================

Final pass over a rewritten graph: every reference must point at a node that
exists. A dangling input is relinked when a sensible producer survives and
deleted otherwise:

1. The ``clip`` input of a text encoder relinks to the first CLIP-bearing
   node in id order, at its CLIP slot.
2. An input named ``model`` relinks to the tail of an adapter chain if one
   exists, else to the first model producer, at its MODEL slot.
3. Anything else is deleted.

A candidate that itself depends on the consuming node is never used, so a
relink cannot close a cycle. The pass is idempotent.
"""

from typing import NamedTuple

from .diagnostics import Diagnostic, Stage
from .graph import Graph, Node, OperationKind, Reference
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = ["RepairResult", "repair", "check_references", "adapter_chain_tail"]

ADAPTER_KINDS = (OperationKind.ADAPTER_LOADER, OperationKind.ADAPTER_STACK_APPLY)
MODEL_PRODUCERS = (OperationKind.MODEL_LOADER, OperationKind.CHECKPOINT_LOADER)


class RepairResult(NamedTuple):
    graph: Graph
    diagnostics: list[Diagnostic]


def check_references(graph: Graph) -> list[Diagnostic]:
    """Report dangling references without touching the graph."""
    return [
        Diagnostic(
            Stage.REPAIR,
            "dangling-reference",
            f"Input '{name}' references missing node {ref.producer_id}",
            node_id=consumer,
            detail={"input": name, "producer_id": ref.producer_id},
        )
        for consumer, name, ref in graph.dangling_references()
    ]


def _upstream(graph: Graph, node_id: str) -> set[str]:
    """Ids of every node ``node_id`` transitively reads from."""
    seen: set[str] = set()
    pending = [node_id]
    while pending:
        current = pending.pop()
        if current not in graph:
            continue
        for _, ref in graph[current].references():
            if ref.producer_id not in seen:
                seen.add(ref.producer_id)
                pending.append(ref.producer_id)
    return seen


def _usable(graph: Graph, candidate: Node, consumer: Node) -> bool:
    if candidate.node_id == consumer.node_id:
        return False
    return consumer.node_id not in _upstream(graph, candidate.node_id)


def adapter_chain_tail(graph: Graph) -> Node | None:
    """
    The adapter node whose MODEL output no other adapter node consumes.

    With several independent chains the last one in id order wins.
    """
    adapters = graph.find(ADAPTER_KINDS)
    adapter_ids = {node.node_id for node in adapters}
    tails = [
        node
        for node in adapters
        if not any(consumer in adapter_ids for consumer, _ in graph.consumers_of(node.node_id, 0))
    ]
    return tails[-1] if tails else None


def _clip_candidate(graph: Graph, consumer: Node) -> Reference | None:
    for node in graph:
        if node.clip_slot is not None and _usable(graph, node, consumer):
            return Reference(node.node_id, node.clip_slot)
    return None


def _model_candidate(graph: Graph, consumer: Node) -> Reference | None:
    tail = adapter_chain_tail(graph)
    if tail is not None and _usable(graph, tail, consumer):
        return Reference(tail.node_id, tail.model_slot)
    for node in graph.find(MODEL_PRODUCERS):
        if _usable(graph, node, consumer):
            return Reference(node.node_id, node.model_slot)
    return None


def repair(graph: Graph) -> RepairResult:
    """Return a copy of ``graph`` with no dangling references."""
    result = graph.copy()
    diagnostics: list[Diagnostic] = []

    for node in result:
        for name, ref in list(node.references()):
            if ref.producer_id in result:
                continue

            replacement = None
            if node.kind is OperationKind.TEXT_ENCODE and name == "clip":
                replacement = _clip_candidate(result, node)
            elif name == "model":
                replacement = _model_candidate(result, node)

            if replacement is not None:
                node.inputs[name] = replacement
                diagnostics.append(
                    Diagnostic(
                        Stage.REPAIR,
                        "relinked",
                        f"Input '{name}' relinked from missing node {ref.producer_id} "
                        f"to {replacement.producer_id}",
                        node_id=node.node_id,
                        detail={
                            "input": name,
                            "from": ref.producer_id,
                            "to": replacement.to_json(),
                        },
                    )
                )
            else:
                del node.inputs[name]
                diagnostics.append(
                    Diagnostic(
                        Stage.REPAIR,
                        "removed-dangling",
                        f"Input '{name}' referenced missing node {ref.producer_id}; removed",
                        node_id=node.node_id,
                        detail={"input": name, "from": ref.producer_id},
                    )
                )

    if diagnostics:
        logger.warning(
            f"Repaired {len(diagnostics)} dangling reference(s)",
            extra={"codes": [d.code for d in diagnostics]},
        )
    return RepairResult(result, diagnostics)
