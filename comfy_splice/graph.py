"""
Comfy Splice - Graph Model
==========================

In-memory model of a ComfyUI workflow graph plus the dotted/bracket path
helpers the parameter binder writes through.

A graph maps node ids to nodes. Each node has a ``class_type`` and a body
(``inputs``, ``widgets_values``, ``_meta``...). An input value is either a
literal or a ``Reference`` to another node's output slot, serialized on the
wire as ``[producer_id, slot]``.

Usage:
    from comfy_splice.graph import Graph, Reference, get_by_path, set_by_path

    graph = Graph.load("workflows/flux.json")
    sampler = graph.find(OperationKind.SAMPLER)[0]
    set_by_path(sampler, "inputs.steps", 40)
    graph.to_api()  # ready for POST /prompt
"""

import copy
import json
import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, NamedTuple

from .config import settings
from .exceptions import PathResolutionError, TemplateParseError
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    # Values
    "Reference",
    "MISSING",
    "as_reference",
    # Node classification
    "OperationKind",
    "NODE_KINDS",
    "classify",
    "MODEL_OUTPUT_SLOTS",
    "CLIP_OUTPUT_SLOTS",
    # Model
    "Node",
    "Graph",
    # Paths
    "parse_path",
    "get_by_path",
    "set_by_path",
    # Helpers
    "node_sort_key",
    "to_jsonable",
]


# =============================================================================
# VALUES
# =============================================================================


class Reference(NamedTuple):
    """An edge: the consuming input reads ``output_slot`` of ``producer_id``."""

    producer_id: str
    output_slot: int

    def to_json(self) -> list:
        return [self.producer_id, self.output_slot]


class _Missing:
    """Marker for "absent": list padding and failed path lookups."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (_Missing, ())


MISSING: Any = _Missing()


def as_reference(value: Any) -> Reference | None:
    """Return ``value`` as a Reference if it has the ``[id, slot]`` shape."""
    if isinstance(value, Reference):
        return value
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return None
    producer, slot = value
    if isinstance(producer, bool) or not isinstance(producer, (str, int)):
        return None
    if isinstance(slot, bool) or not isinstance(slot, int) or slot < 0:
        return None
    return Reference(str(producer), slot)


def to_jsonable(value: Any) -> Any:
    """Deep-convert to plain JSON types (References become lists, MISSING becomes None)."""
    if value is MISSING:
        return None
    if isinstance(value, Reference):
        return value.to_json()
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


# =============================================================================
# NODE CLASSIFICATION
# =============================================================================


class OperationKind(str, Enum):
    """Roles a node can play in the model/conditioning pathways."""

    MODEL_LOADER = "model-loader"
    CLIP_LOADER = "clip-loader"
    CHECKPOINT_LOADER = "checkpoint-loader"
    TEXT_ENCODE = "text-encode"
    SAMPLER = "sampler"
    LATENT_IMAGE = "latent-image"
    GUIDANCE = "guidance"
    SAVE_IMAGE = "save-image"
    LOAD_IMAGE = "load-image"
    ADAPTER_LOADER = "adapter-loader"
    ADAPTER_STACK = "adapter-stack"
    ADAPTER_STACK_APPLY = "adapter-stack-apply"
    UNKNOWN = "unknown"


NODE_KINDS: Mapping[str, OperationKind] = {
    "UNETLoader": OperationKind.MODEL_LOADER,
    "UnetLoaderGGUF": OperationKind.MODEL_LOADER,
    "CheckpointLoaderSimple": OperationKind.CHECKPOINT_LOADER,
    "CheckpointLoader": OperationKind.CHECKPOINT_LOADER,
    "DualCLIPLoader": OperationKind.CLIP_LOADER,
    "CLIPLoader": OperationKind.CLIP_LOADER,
    "TripleCLIPLoader": OperationKind.CLIP_LOADER,
    "CLIPTextEncode": OperationKind.TEXT_ENCODE,
    "CLIPTextEncodeFlux": OperationKind.TEXT_ENCODE,
    "CLIPTextEncodeSDXL": OperationKind.TEXT_ENCODE,
    "KSampler": OperationKind.SAMPLER,
    "KSamplerAdvanced": OperationKind.SAMPLER,
    "EmptyLatentImage": OperationKind.LATENT_IMAGE,
    "EmptySD3LatentImage": OperationKind.LATENT_IMAGE,
    "FluxGuidance": OperationKind.GUIDANCE,
    "SaveImage": OperationKind.SAVE_IMAGE,
    "PreviewImage": OperationKind.SAVE_IMAGE,
    "LoadImage": OperationKind.LOAD_IMAGE,
    "LoadImageFromBase64": OperationKind.LOAD_IMAGE,
    "LoraLoader": OperationKind.ADAPTER_LOADER,
    "FluxLoraLoader": OperationKind.ADAPTER_LOADER,
    "easy loraStack": OperationKind.ADAPTER_STACK,
    "CR Apply LoRA Stack": OperationKind.ADAPTER_STACK_APPLY,
}

# Output slot carrying MODEL / CLIP for each producing role
MODEL_OUTPUT_SLOTS: Mapping[OperationKind, int] = {
    OperationKind.MODEL_LOADER: 0,
    OperationKind.CHECKPOINT_LOADER: 0,
    OperationKind.ADAPTER_LOADER: 0,
    OperationKind.ADAPTER_STACK_APPLY: 0,
}
CLIP_OUTPUT_SLOTS: Mapping[OperationKind, int] = {
    OperationKind.CLIP_LOADER: 0,
    OperationKind.CHECKPOINT_LOADER: 1,
    OperationKind.ADAPTER_LOADER: 1,
    OperationKind.ADAPTER_STACK_APPLY: 1,
}


def classify(class_type: str) -> OperationKind:
    """Map an executor class type onto an operation kind."""
    kind = NODE_KINDS.get(class_type)
    if kind is not None:
        return kind
    # Installations may rename the adapter nodes through settings
    compiler = settings.compiler
    if class_type == compiler.stack_node_type:
        return OperationKind.ADAPTER_STACK
    if class_type == compiler.stack_apply_node_type:
        return OperationKind.ADAPTER_STACK_APPLY
    if class_type in compiler.chain_node_types:
        return OperationKind.ADAPTER_LOADER
    return OperationKind.UNKNOWN


def node_sort_key(node_id: str) -> tuple:
    """Numeric ids sort numerically and before any non-numeric id."""
    text = str(node_id)
    if text.isdigit():
        return (0, int(text), text)
    return (1, 0, text)


# =============================================================================
# NODE
# =============================================================================


@dataclass
class Node:
    """
    One computation step.

    ``body`` is the node's JSON object without ``class_type``. It always holds
    an ``inputs`` mapping. Unknown node types are carried verbatim.
    """

    node_id: str
    class_type: str
    body: dict

    @property
    def inputs(self) -> dict:
        return self.body["inputs"]

    @property
    def kind(self) -> OperationKind:
        return classify(self.class_type)

    @property
    def title(self) -> str:
        meta = self.body.get("_meta")
        if isinstance(meta, Mapping) and isinstance(meta.get("title"), str):
            return meta["title"]
        return ""

    @property
    def model_slot(self) -> int | None:
        return MODEL_OUTPUT_SLOTS.get(self.kind)

    @property
    def clip_slot(self) -> int | None:
        return CLIP_OUTPUT_SLOTS.get(self.kind)

    def references(self) -> Iterator[tuple[str, Reference]]:
        """Yield ``(input_name, reference)`` for every wired input."""
        for name, value in self.inputs.items():
            if isinstance(value, Reference):
                yield name, value

    def to_api(self) -> dict:
        data = {"class_type": self.class_type}
        data.update(to_jsonable(self.body))
        return data


# =============================================================================
# GRAPH
# =============================================================================


def _parse_inputs(raw: Any, node_id: str, source: str | None) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise TemplateParseError(
            f"Node {node_id} has invalid inputs (must be an object)", node_id=node_id, source=source
        )
    parsed = {}
    for name, value in raw.items():
        ref = as_reference(value)
        parsed[str(name)] = ref if ref is not None else copy.deepcopy(value)
    return parsed


class Graph:
    """
    Mapping of node id to Node.

    Graphs handed to the compiler are never mutated; every rewrite works on
    ``graph.copy()``.
    """

    def __init__(self, nodes: Iterable[Node] = ()):
        self.nodes: dict[str, Node] = {}
        for node in nodes:
            self.nodes[node.node_id] = node

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @classmethod
    def from_api(cls, data: Any, source: str | None = None) -> "Graph":
        """Build a graph from the API format ``{id: {"class_type", "inputs", ...}}``."""
        if not isinstance(data, Mapping):
            raise TemplateParseError("Workflow must be a JSON object", source=source)

        nodes = []
        for raw_id, raw_node in data.items():
            node_id = str(raw_id)
            if not isinstance(raw_node, Mapping):
                raise TemplateParseError(
                    f"Node {node_id} is not an object", node_id=node_id, source=source
                )
            class_type = raw_node.get("class_type") or raw_node.get("type")
            if not isinstance(class_type, str) or not class_type:
                raise TemplateParseError(
                    f"Node {node_id} is missing class_type", node_id=node_id, source=source
                )
            body = {
                k: copy.deepcopy(v) for k, v in raw_node.items() if k not in ("class_type", "type")
            }
            body["inputs"] = _parse_inputs(raw_node.get("inputs"), node_id, source)
            nodes.append(Node(node_id, class_type, body))

        return cls(nodes)

    @classmethod
    def from_editor(cls, data: Any, source: str | None = None) -> "Graph":
        """
        Convert the editor's save format (``nodes`` + ``links`` arrays).

        Links are ``[link_id, src_node, src_slot, dst_node, dst_slot, type]``.
        Widget values are copied as ``widgets_values``; only SaveImage's
        filename prefix is lifted into ``inputs`` because widget names are
        not recorded in this format.
        """
        if not isinstance(data, Mapping) or not isinstance(data.get("nodes"), list):
            raise TemplateParseError("Editor workflow must contain a 'nodes' array", source=source)

        links: dict[Any, tuple[str, int]] = {}
        for link in data.get("links") or []:
            if not isinstance(link, list) or len(link) < 5:
                continue
            link_id, src_node, src_slot = link[0], link[1], link[2]
            if isinstance(src_slot, bool) or not isinstance(src_slot, int) or src_slot < 0:
                raise TemplateParseError(
                    f"Editor link {link_id} has invalid source slot {src_slot!r}",
                    node_id=str(link[3]),
                    source=source,
                )
            links[link_id] = (str(src_node), src_slot)

        api: dict[str, dict] = {}
        for raw in data["nodes"]:
            if not isinstance(raw, Mapping) or "id" not in raw:
                raise TemplateParseError("Editor node without an id", source=source)
            node_id = str(raw["id"])
            entry: dict[str, Any] = {"class_type": raw.get("type"), "inputs": {}}
            if raw.get("title"):
                entry["_meta"] = {"title": raw["title"]}
            widgets = raw.get("widgets_values")
            if isinstance(widgets, list):
                entry["widgets_values"] = list(widgets)

            for slot in raw.get("inputs") or []:
                link_id = slot.get("link") if isinstance(slot, Mapping) else None
                if link_id is None:
                    continue
                name = slot.get("name")
                if not isinstance(name, str) or not name:
                    raise TemplateParseError(
                        f"Node {node_id} has a linked input without a name",
                        node_id=node_id,
                        source=source,
                    )
                if link_id in links:
                    entry["inputs"][name] = list(links[link_id])
                else:
                    logger.debug(f"Editor link {link_id} on node {node_id} has no source")

            if entry["class_type"] == "SaveImage" and isinstance(widgets, list) and widgets:
                entry["inputs"]["filename_prefix"] = widgets[0]
            api[node_id] = entry

        return cls.from_api(api, source=source)

    @classmethod
    def load(cls, data: "Mapping | str | Path") -> "Graph":
        """Load a graph from a dict, a JSON string, or a JSON file, detecting the format."""
        source = None
        if isinstance(data, Path) or (isinstance(data, str) and not data.lstrip().startswith("{")):
            source = str(data)
            try:
                text = Path(data).read_text(encoding="utf-8")
            except OSError as e:
                raise TemplateParseError(f"Cannot read workflow file: {e}", source=source, cause=e)
            data = text
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise TemplateParseError(f"Invalid JSON: {e}", source=source, cause=e)
        if isinstance(data, Mapping) and isinstance(data.get("nodes"), list):
            return cls.from_editor(data, source=source)
        return cls.from_api(data, source=source)

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def to_api(self) -> dict:
        return {node_id: self.nodes[node_id].to_api() for node_id in self.ids_in_order()}

    def copy(self) -> "Graph":
        return Graph(copy.deepcopy(list(self.nodes.values())))

    # -------------------------------------------------------------------------
    # Mapping protocol
    # -------------------------------------------------------------------------

    def __contains__(self, node_id: object) -> bool:
        return str(node_id) in self.nodes

    def __getitem__(self, node_id: str) -> Node:
        return self.nodes[str(node_id)]

    def __iter__(self) -> Iterator[Node]:
        for node_id in self.ids_in_order():
            yield self.nodes[node_id]

    def __len__(self) -> int:
        return len(self.nodes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Graph):
            return NotImplemented
        return self.to_api() == other.to_api()

    def __repr__(self) -> str:
        return f"Graph({len(self.nodes)} nodes)"

    def add(self, node: Node) -> Node:
        self.nodes[node.node_id] = node
        return node

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def ids_in_order(self) -> list[str]:
        return sorted(self.nodes, key=node_sort_key)

    def find(
        self,
        kinds: "OperationKind | Iterable[OperationKind] | None" = None,
        class_types: Iterable[str] | None = None,
        selector: Callable[[Node], bool] | None = None,
    ) -> list[Node]:
        """Nodes in id order matching any of ``kinds`` / ``class_types`` and ``selector``."""
        if isinstance(kinds, OperationKind):
            kinds = {kinds}
        kind_set = set(kinds) if kinds is not None else None
        type_set = set(class_types) if class_types is not None else None

        matches = []
        for node in self:
            if kind_set is not None or type_set is not None:
                by_kind = kind_set is not None and node.kind in kind_set
                by_type = type_set is not None and node.class_type in type_set
                if not (by_kind or by_type):
                    continue
            if selector is not None and not selector(node):
                continue
            matches.append(node)
        return matches

    def edges(self) -> Iterator[tuple[str, str, Reference]]:
        """Yield ``(consumer_id, input_name, reference)`` for every wired input."""
        for node in self:
            for name, ref in node.references():
                yield node.node_id, name, ref

    def consumers_of(self, producer_id: str, slot: int | None = None) -> list[tuple[str, str]]:
        """``(consumer_id, input_name)`` pairs reading ``producer_id`` (at ``slot`` if given)."""
        return [
            (consumer, name)
            for consumer, name, ref in self.edges()
            if ref.producer_id == producer_id and (slot is None or ref.output_slot == slot)
        ]

    def dangling_references(self) -> list[tuple[str, str, Reference]]:
        return [edge for edge in self.edges() if edge[2].producer_id not in self.nodes]

    def next_ids(self, count: int) -> list[str]:
        """
        Allocate ``count`` fresh ids above the largest numeric id in use.

        Non-numeric ids never collide with the result because the result is
        always numeric.
        """
        numeric = [int(node_id) for node_id in self.nodes if node_id.isdigit()]
        start = max(numeric, default=0) + 1
        return [str(start + offset) for offset in range(count)]

    def find_cycle(self) -> list[str] | None:
        """Return the node ids forming a cycle, or None for a DAG."""
        adjacency: dict[str, list[str]] = {node_id: [] for node_id in self.nodes}
        for consumer, _, ref in self.edges():
            if ref.producer_id in self.nodes:
                adjacency[consumer].append(ref.producer_id)

        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def visit(node_id: str) -> list[str] | None:
            visited.add(node_id)
            stack.append(node_id)
            on_stack.add(node_id)
            for neighbor in adjacency[node_id]:
                if neighbor not in visited:
                    found = visit(neighbor)
                    if found:
                        return found
                elif neighbor in on_stack:
                    return stack[stack.index(neighbor):]
            stack.pop()
            on_stack.discard(node_id)
            return None

        for node_id in self.ids_in_order():
            if node_id not in visited:
                cycle = visit(node_id)
                if cycle:
                    return cycle
        return None


# =============================================================================
# PATH UTILITIES
# =============================================================================

_PATH_RE = re.compile(r"^[^.\[\]]+(\[\d+\])*(\.[^.\[\]]+(\[\d+\])*)*$")
_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


@lru_cache(maxsize=256)
def parse_path(path: str) -> tuple:
    """
    Split ``"a.b[2].c"`` into ``("a", "b", 2, "c")``.

    Raises:
        PathResolutionError: If the path is empty or malformed
    """
    if not isinstance(path, str) or not _PATH_RE.match(path):
        raise PathResolutionError(str(path), "malformed path")
    return tuple(
        name if name else int(index) for name, index in _SEGMENT_RE.findall(path)
    )


def _root(target: Any) -> Any:
    return target.body if isinstance(target, Node) else target


def get_by_path(target: Any, path: str) -> Any:
    """
    Read the value at ``path`` inside a node (or plain mapping).

    Never raises: returns MISSING for absent keys, out-of-range indexes,
    wrong container types and malformed paths.
    """
    try:
        segments = parse_path(path)
    except PathResolutionError:
        return MISSING

    current = _root(target)
    for segment in segments:
        if isinstance(segment, int):
            if not isinstance(current, list) or segment >= len(current):
                return MISSING
            current = current[segment]
        else:
            if not isinstance(current, Mapping) or segment not in current:
                return MISSING
            current = current[segment]
    return current


def _empty_container(segment: Any) -> Any:
    return [] if isinstance(segment, int) else {}


def _fits(container: Any, segment: Any) -> bool:
    if isinstance(segment, int):
        return isinstance(container, list)
    return isinstance(container, dict)


def _pad(items: list, index: int):
    if index >= len(items):
        items.extend([MISSING] * (index + 1 - len(items)))


def set_by_path(target: Any, path: str, value: Any) -> None:
    """
    Write ``value`` at ``path``, creating intermediate dicts/lists.

    Lists grow to reach an index, padded with MISSING; they are never
    truncated.

    Raises:
        PathResolutionError: If the path is malformed or an existing value in
            the way is not the container the path needs (e.g. indexing a string)
    """
    segments = parse_path(path)
    current = _root(target)

    for position, segment in enumerate(segments):
        if not _fits(current, segment):
            raise PathResolutionError(
                path, f"segment {segment!r} cannot index {type(current).__name__}"
            )
        last = position == len(segments) - 1

        if isinstance(segment, int):
            _pad(current, segment)
            if last:
                current[segment] = value
                return
            child = current[segment]
            if child is MISSING or child is None:
                child = _empty_container(segments[position + 1])
                current[segment] = child
        else:
            if last:
                current[segment] = value
                return
            child = current.get(segment, MISSING)
            if child is MISSING or child is None:
                child = _empty_container(segments[position + 1])
                current[segment] = child
        current = child
