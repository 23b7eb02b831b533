"""
Comfy Splice - Workflow Compiler
================================

Turns a template plus user parameters and adapters into a graph the executor
can run:

    template -> Bind -> Embed images -> Splice -> Repair -> CompiledGraph

Compilation is synchronous, and pure unless an embedded image is given as a
URL. Each call works on its own copy of the template, so any number of
compiles may run concurrently against the shared template library.
Recoverable problems come back as diagnostics on the result; only unusable
input raises.

Usage:
    from comfy_splice import WorkflowCompiler, AdapterSpec

    compiled = WorkflowCompiler().compile(
        "txt2img_flux",
        {"prompt": "a lighthouse at dusk", "steps": 30},
        adapters=[AdapterSpec("ink.safetensors", model_weight=0.8)],
        schema=schema,
    )
    client.submit(compiled)
"""

import hashlib
import json
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .adapters import AdapterSpec, compose_activation_prompt
from .binder import bind
from .diagnostics import Diagnostic, Stage
from .exceptions import WorkflowCompilationError
from .graph import Graph
from .images import ImageSource, embed_images
from .logging_config import get_logger, log_timing
from .registry import (
    DEFAULT_PARAMETERS,
    ParameterSpec,
    TemplateLibrary,
    WorkflowTemplate,
    get_library,
)
from .repair import repair
from .schema import SchemaInfo
from .splicer import SpliceStrategy, splice

logger = get_logger(__name__)

__all__ = [
    "CompiledGraph",
    "WorkflowCompiler",
    "compute_workflow_hash",
    "get_compiler",
]


def compute_workflow_hash(workflow: Mapping[str, Any]) -> str:
    """
    Compute a deterministic hash for an API-format workflow.

    Used for provenance and change detection.
    """
    serialized = json.dumps(workflow, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode()).hexdigest()[:16]


@dataclass
class CompiledGraph:
    """A compiled graph ready for submission."""

    template_id: str
    template_name: str
    graph: Graph
    parameters: dict[str, Any]
    diagnostics: list[Diagnostic] = field(default_factory=list)
    strategy: SpliceStrategy | None = None
    adapters_applied: list[AdapterSpec] = field(default_factory=list)
    workflow_hash: str = ""
    compiled_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.workflow_hash:
            self.workflow_hash = compute_workflow_hash(self.workflow)

    @property
    def workflow(self) -> dict[str, Any]:
        """The graph in executor API format."""
        return self.graph.to_api()

    @property
    def warnings(self) -> list[str]:
        return [str(diagnostic) for diagnostic in self.diagnostics]

    def to_payload(self, client_id: str) -> dict[str, Any]:
        return {"prompt": self.workflow, "client_id": client_id}


class WorkflowCompiler:
    """
    Compiles workflow templates into executable ComfyUI graphs.

    Users supply simple parameters and adapter choices; the compiler finds
    the nodes to write, splices the adapters in and keeps every reference
    intact.
    """

    def __init__(
        self,
        library: TemplateLibrary | None = None,
        specs: Mapping[str, ParameterSpec] | None = None,
    ):
        self.library = library or get_library()
        self.specs = specs

    def _resolve(self, template) -> tuple[str, str, Graph, Mapping[str, ParameterSpec], Mapping]:
        if isinstance(template, WorkflowTemplate):
            return (
                template.id,
                template.name,
                template.graph(),
                template.parameters,
                template.defaults,
            )
        if isinstance(template, Graph):
            return "custom", "Custom workflow", template.copy(), {}, {}
        if isinstance(template, Mapping):
            return "custom", "Custom workflow", Graph.load(template), {}, {}
        if isinstance(template, (str, Path)):
            return self._resolve(self.library.resolve(str(template)))
        raise TypeError(f"Cannot compile {type(template).__name__}")

    def compile(
        self,
        template: "WorkflowTemplate | Graph | Mapping | str",
        parameters: Mapping[str, Any] | None = None,
        adapters: Iterable[AdapterSpec] = (),
        schema: SchemaInfo | None = None,
        strategy: SpliceStrategy | None = None,
        images: Mapping[str, ImageSource] | None = None,
    ) -> CompiledGraph:
        """
        Compile a template with parameters and adapters.

        Args:
            template: Template, template id, workflow JSON path, raw API dict or Graph
            parameters: User parameters; template defaults fill the gaps
            adapters: Adapters to splice in
            schema: Executor capabilities; without one adapters are not applied
            strategy: Preferred splice strategy
            images: Node id -> image to embed inline in that image loader

        Raises:
            TemplateParseError: If the template cannot be parsed
            TemplateNotFoundError: If a template id is unknown
            WorkflowCompilationError: If the template graph contains a cycle
            InputImageError: If an image to embed cannot be loaded
        """
        template_id, template_name, graph, template_specs, defaults = self._resolve(template)
        specs = self.specs or template_specs or DEFAULT_PARAMETERS
        adapters = list(adapters)

        cycle = graph.find_cycle()
        if cycle:
            raise WorkflowCompilationError(
                f"Template {template_id} contains a cycle: {' -> '.join(cycle)}",
                template_id=template_id,
                errors=[f"cycle: {cycle}"],
            )

        final_params: dict[str, Any] = {**defaults, **dict(parameters or {})}

        with log_timing(logger, "compile", template_id=template_id):
            diagnostics: list[Diagnostic] = []

            bound = bind(graph, final_params, specs)
            diagnostics.extend(bound.diagnostics)
            current = bound.graph
            final_params.update(bound.values)

            if images:
                embedded = embed_images(current, images)
                diagnostics.extend(embedded.diagnostics)
                current = embedded.graph

            applied_strategy = None
            applied: list[AdapterSpec] = []
            if adapters:
                spliced = splice(current, adapters, schema or SchemaInfo.empty(), prefer=strategy)
                diagnostics.extend(spliced.diagnostics)
                current = spliced.graph
                applied_strategy = spliced.strategy
                applied = spliced.applied

                # Activation words only for adapters that actually made it in
                prompt = compose_activation_prompt(final_params.get("prompt"), applied)
                if prompt != final_params.get("prompt"):
                    rebound = bind(current, {"prompt": prompt}, specs)
                    diagnostics.extend([d for d in rebound.diagnostics if d not in diagnostics])
                    current = rebound.graph
                    final_params.update(rebound.values)

            repaired = repair(current)
            diagnostics.extend(repaired.diagnostics)
            current = repaired.graph

            cycle = current.find_cycle()
            if cycle:
                diagnostics.append(
                    Diagnostic(
                        Stage.COMPILE,
                        "cycle",
                        f"Compiled graph contains a cycle: {' -> '.join(cycle)}",
                        node_id=cycle[0],
                        detail={"cycle": cycle},
                    )
                )

        compiled = CompiledGraph(
            template_id=template_id,
            template_name=template_name,
            graph=current,
            parameters=final_params,
            diagnostics=diagnostics,
            strategy=applied_strategy,
            adapters_applied=applied,
        )
        if diagnostics:
            logger.info(
                f"Compiled {template_id} with {len(diagnostics)} diagnostic(s)",
                extra={"template_id": template_id, "workflow_hash": compiled.workflow_hash},
            )
        return compiled


_compiler: WorkflowCompiler | None = None


def get_compiler() -> WorkflowCompiler:
    """Get the process-wide compiler."""
    global _compiler
    if _compiler is None:
        _compiler = WorkflowCompiler()
    return _compiler
