"""
Comfy Splice - Schema Discovery
===============================

Asks the executor which node types it has right now (``GET /object_info``)
and reduces the answer to what the compiler needs: which adapter node
flavours exist, how many slots a stacking node offers, and which adapter
files are installed.

Discovery fails closed. Any transport error, bad payload or timeout yields
``SchemaInfo.empty()``, which makes the splicer degrade to "adapters
unsupported" instead of aborting the compile. Nothing is cached: call it
once per build.
"""

import asyncio
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, NamedTuple

import httpx

from .config import settings
from .exceptions import ComfySpliceError
from .http_client import AsyncHttpClient
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "NodeInputs",
    "StackChoice",
    "SchemaInfo",
    "combo_options",
    "discover_schema",
    "discover_schema_sync",
]

_STACK_SLOT_RE = re.compile(r"^lora_(\d+)_name$")
_ADAPTER_FILE_INPUTS = ("lora_name", "lora_1_name")


class NodeInputs(NamedTuple):
    required: tuple[str, ...]
    optional: tuple[str, ...]

    @property
    def all(self) -> tuple[str, ...]:
        return self.required + self.optional


class StackChoice(NamedTuple):
    stack_type: str
    apply_type: str
    capacity: int


def combo_options(spec: Any) -> list[str]:
    """
    Extract the choices of a combo input spec.

    Handles the shapes ComfyUI has used over time::

        [["a.safetensors", "b.safetensors"], {...}]
        ["COMBO", {"options": ["a.safetensors"]}]
        {"options": ["a.safetensors"]} / {"options": {"a.safetensors": ...}}
    """
    if isinstance(spec, Mapping):
        options = spec.get("options")
        if isinstance(options, Mapping):
            return [str(key) for key in options]
        if isinstance(options, list):
            return [str(item) for item in options]
        return []
    if isinstance(spec, list) and spec:
        head = spec[0]
        if isinstance(head, list):
            return [str(item) for item in head]
        if head == "COMBO" and len(spec) > 1:
            return combo_options(spec[1])
    return []


@dataclass(frozen=True)
class SchemaInfo:
    """What the executor supports, as far as graph rewriting is concerned."""

    operation_types: frozenset = frozenset()
    node_inputs: Mapping[str, NodeInputs] = field(default_factory=lambda: MappingProxyType({}))
    stack_capacity: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    adapter_files: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> "SchemaInfo":
        return cls()

    @classmethod
    def from_types(
        cls, operation_types, stack_capacity: Mapping[str, int] | None = None
    ) -> "SchemaInfo":
        """Schema for a known set of node types, without introspection data."""
        return cls(
            operation_types=frozenset(operation_types),
            stack_capacity=MappingProxyType(dict(stack_capacity or {})),
        )

    @classmethod
    def from_object_info(cls, data: Any) -> "SchemaInfo":
        """Parse an ``/object_info`` payload. Malformed entries are skipped."""
        if not isinstance(data, Mapping):
            logger.warning("object_info payload is not an object; treating schema as empty")
            return cls.empty()

        node_inputs: dict[str, NodeInputs] = {}
        capacities: dict[str, int] = {}
        files: list[str] = []

        for class_type, info in data.items():
            if not isinstance(info, Mapping):
                continue
            declared = info.get("input")
            declared = declared if isinstance(declared, Mapping) else {}
            required = declared.get("required")
            optional = declared.get("optional")
            required = required if isinstance(required, Mapping) else {}
            optional = optional if isinstance(optional, Mapping) else {}
            node_inputs[class_type] = NodeInputs(tuple(required), tuple(optional))

            slots = [
                int(match.group(1))
                for name in (*required, *optional)
                if (match := _STACK_SLOT_RE.match(name))
            ]
            if slots:
                capacities[class_type] = max(slots)

            for name in _ADAPTER_FILE_INPUTS:
                spec = required.get(name, optional.get(name))
                for option in combo_options(spec):
                    if option.lower() != "none" and option not in files:
                        files.append(option)

        schema = cls(
            operation_types=frozenset(node_inputs),
            node_inputs=MappingProxyType(node_inputs),
            stack_capacity=MappingProxyType(capacities),
            adapter_files=tuple(files),
        )
        logger.debug(
            f"Schema parsed: {len(schema.operation_types)} node types",
            extra={"adapter_files": len(files), "stack_types": list(capacities)},
        )
        return schema

    @property
    def is_empty(self) -> bool:
        return not self.operation_types

    def supports(self, class_type: str) -> bool:
        return class_type in self.operation_types

    def capacity_of(self, stack_type: str) -> int:
        return self.stack_capacity.get(stack_type) or settings.compiler.default_stack_capacity

    def choose_stack(self) -> StackChoice | None:
        """The stacking + apply-stack pair, if both node types exist."""
        compiler = settings.compiler
        if self.supports(compiler.stack_node_type) and self.supports(
            compiler.stack_apply_node_type
        ):
            return StackChoice(
                compiler.stack_node_type,
                compiler.stack_apply_node_type,
                self.capacity_of(compiler.stack_node_type),
            )
        return None

    def choose_chain(self) -> str | None:
        """The first single-adapter node type the executor offers."""
        for class_type in settings.compiler.chain_node_types:
            if self.supports(class_type):
                return class_type
        return None


# =============================================================================
# DISCOVERY
# =============================================================================


async def discover_schema(
    client: AsyncHttpClient | None = None, timeout: float | None = None
) -> SchemaInfo:
    """
    One introspection call against the executor, bounded by ``timeout``.

    Never raises for transport problems and never retries. Cancellation
    propagates to the caller.
    """
    own_client = client is None
    client = client or AsyncHttpClient()
    deadline = timeout if timeout is not None else settings.executor.timeout_schema

    try:
        response = await asyncio.wait_for(client.get("/object_info"), timeout=deadline)
        response.raise_for_status()
        data = response.json()
    except asyncio.TimeoutError:
        logger.warning(
            f"Schema discovery timed out after {deadline}s; adapters disabled",
            extra={"timeout": deadline},
        )
        return SchemaInfo.empty()
    except (httpx.HTTPError, ComfySpliceError, ValueError) as e:
        logger.warning(
            f"Schema discovery failed; adapters disabled: {e}",
            extra={"error_type": type(e).__name__},
        )
        return SchemaInfo.empty()
    finally:
        if own_client:
            await client.close()

    return SchemaInfo.from_object_info(data)


def discover_schema_sync(client) -> SchemaInfo:
    """Blocking variant for callers that hold an ExecutorClient."""
    try:
        data = client.get_object_info()
    except ComfySpliceError as e:
        logger.warning(f"Schema discovery failed; adapters disabled: {e.message}")
        return SchemaInfo.empty()
    return SchemaInfo.from_object_info(data)
