"""
Comfy Splice - ComfyUI Workflow Compiler
========================================

Turns workflow templates plus user parameters and LoRA-style adapters into
graphs a ComfyUI executor can run, without callers knowing any node id.

    template -> Bind -> Splice -> Repair -> CompiledGraph

Features:
- Declarative parameter registry (primary/fallback paths, selectors)
- Adapter splicing via a stacking node or a chain of loaders, chosen from
  the executor's live schema
- Reference repair so rewritten graphs never carry dangling edges
- Recoverable problems reported as diagnostics, not exceptions
- Executor client with circuit breaker and tenacity-based polling
- Artifact persistence with provenance
- Structured logging and pydantic-settings configuration

Usage:
    from comfy_splice import AdapterSpec, ExecutorClient, WorkflowCompiler, discover_schema_sync

    client = ExecutorClient()
    schema = discover_schema_sync(client)
    compiled = WorkflowCompiler().compile(
        "txt2img_flux",
        {"prompt": "a lighthouse at dusk", "steps": 30, "seed": -1},
        adapters=[AdapterSpec("ink.safetensors", model_weight=0.8)],
        schema=schema,
    )
    for warning in compiled.warnings:
        print(warning)
    job_id = client.submit(compiled)
"""

# Configuration
from .config import Settings, get_settings, reload_settings, settings

# Logging
from .logging_config import LogContext, get_logger, set_log_level

# Exceptions
from .exceptions import (
    CircuitOpenError,
    ComfySpliceError,
    ExecutorConnectionError,
    ExecutorError,
    InputImageError,
    InvalidParameterError,
    PathResolutionError,
    PersistenceError,
    ResilienceError,
    RetryExhaustedError,
    SubmissionError,
    TemplateNotFoundError,
    TemplateParseError,
    ValidationError,
    WorkflowCompilationError,
    WorkflowError,
    format_error_for_user,
)

# Graph model
from .graph import (
    MISSING,
    Graph,
    Node,
    OperationKind,
    Reference,
    get_by_path,
    parse_path,
    set_by_path,
)

# Registry
from .registry import (
    DEFAULT_PARAMETERS,
    ParameterSpec,
    ParameterType,
    TemplateLibrary,
    WorkflowCategory,
    WorkflowTemplate,
    get_library,
)

# Adapters
from .adapters import AdapterSpec, coerce_weight, compose_activation_prompt

# Schema
from .schema import SchemaInfo, discover_schema, discover_schema_sync

# Compile stages
from .diagnostics import Diagnostic, Stage
from .binder import BindResult, bind
from .images import EmbedResult, embed_images
from .splicer import SpliceResult, SpliceStrategy, splice
from .repair import RepairResult, check_references, repair
from .compiler import (
    CompiledGraph,
    WorkflowCompiler,
    compute_workflow_hash,
    get_compiler,
)

# Resilience
from .retry import (
    CircuitBreaker,
    PollResult,
    get_circuit_breaker,
    poll_until,
    retry_with_backoff,
)

# Executor access
from .client import ExecutorClient
from .http_client import AsyncHttpClient

# Outputs
from .outputs import (
    FilenameCheckStrategy,
    HistoryStrategy,
    OutputLocator,
    OutputRef,
    RetrievalOutcome,
    RetrievalStatus,
    candidate_filenames,
    wait_for_output,
)

# Persistence
from .storage import (
    Artifact,
    ArtifactStore,
    InMemoryArtifactStore,
    Session,
    SessionStatus,
)

# Pipeline
from .pipeline import GenerationPipeline, GenerationResult

__version__ = settings.version

__all__ = [
    "__version__",
    # Configuration
    "settings",
    "Settings",
    "get_settings",
    "reload_settings",
    # Logging
    "get_logger",
    "set_log_level",
    "LogContext",
    # Exceptions
    "ComfySpliceError",
    "ExecutorError",
    "ExecutorConnectionError",
    "SubmissionError",
    "WorkflowError",
    "TemplateParseError",
    "TemplateNotFoundError",
    "WorkflowCompilationError",
    "PathResolutionError",
    "ValidationError",
    "InvalidParameterError",
    "InputImageError",
    "ResilienceError",
    "RetryExhaustedError",
    "CircuitOpenError",
    "PersistenceError",
    "format_error_for_user",
    # Graph model
    "Graph",
    "Node",
    "Reference",
    "OperationKind",
    "MISSING",
    "parse_path",
    "get_by_path",
    "set_by_path",
    # Registry
    "ParameterSpec",
    "ParameterType",
    "DEFAULT_PARAMETERS",
    "WorkflowTemplate",
    "WorkflowCategory",
    "TemplateLibrary",
    "get_library",
    # Adapters
    "AdapterSpec",
    "coerce_weight",
    "compose_activation_prompt",
    # Schema
    "SchemaInfo",
    "discover_schema",
    "discover_schema_sync",
    # Compile stages
    "Diagnostic",
    "Stage",
    "bind",
    "BindResult",
    "embed_images",
    "EmbedResult",
    "splice",
    "SpliceResult",
    "SpliceStrategy",
    "repair",
    "RepairResult",
    "check_references",
    "WorkflowCompiler",
    "CompiledGraph",
    "compute_workflow_hash",
    "get_compiler",
    # Executor access
    "ExecutorClient",
    "AsyncHttpClient",
    # Outputs
    "OutputRef",
    "OutputLocator",
    "HistoryStrategy",
    "FilenameCheckStrategy",
    "RetrievalOutcome",
    "RetrievalStatus",
    "candidate_filenames",
    "wait_for_output",
    # Resilience
    "retry_with_backoff",
    "poll_until",
    "PollResult",
    "CircuitBreaker",
    "get_circuit_breaker",
    # Persistence
    "ArtifactStore",
    "InMemoryArtifactStore",
    "Session",
    "SessionStatus",
    "Artifact",
    # Pipeline
    "GenerationPipeline",
    "GenerationResult",
]
