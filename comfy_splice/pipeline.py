"""
Comfy Splice - Generation Pipeline
==================================

End-to-end generation against a live executor:

1. open a session in the artifact store
2. stamp the filename prefix so outputs can be found by name
3. discover the executor schema (only when adapters are requested)
4. compile, submit and poll for the output
5. upload the image and record it with its provenance

Submission failures are fatal: the session is marked ``failed`` and the error
propagates so the caller can offer a retry. A poll that runs out of attempts
marks the session ``timed_out`` and returns normally.

Usage:
    from comfy_splice import ExecutorClient, GenerationPipeline, InMemoryArtifactStore

    pipeline = GenerationPipeline(ExecutorClient(), InMemoryArtifactStore())
    result = pipeline.generate("txt2img_flux", {"prompt": "a red fox"})
    if result.outcome.found:
        print(result.artifact.storage_path)
"""

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .adapters import AdapterSpec
from .compiler import CompiledGraph, WorkflowCompiler, get_compiler
from .config import settings
from .exceptions import ComfySpliceError, ExecutorError, PersistenceError
from .images import ImageSource
from .logging_config import LogContext, get_logger, log_exception
from .outputs import (
    FilenameCheckStrategy,
    HistoryStrategy,
    OutputLocator,
    RetrievalOutcome,
    timestamped_prefix,
    wait_for_output,
)
from .retry import retry_with_backoff
from .schema import SchemaInfo, discover_schema_sync
from .storage import Artifact, ArtifactStore, Session, SessionStatus

logger = get_logger(__name__)

__all__ = ["GenerationResult", "GenerationPipeline", "DEFAULT_PREFIX"]

DEFAULT_PREFIX = "comfy_splice"


@dataclass
class GenerationResult:
    session: Session
    compiled: CompiledGraph
    job_id: str
    outcome: RetrievalOutcome
    artifact: Artifact | None = None


def _adapter_record(adapter: AdapterSpec) -> dict[str, Any]:
    return {
        "lora_name": adapter.file_path,
        "model_strength": adapter.model_weight,
        "clip_strength": adapter.conditioning_weight,
        "activation_words": adapter.activation_text,
        "lora_order": adapter.order,
    }


class GenerationPipeline:
    """Compile, run and persist one generation at a time."""

    def __init__(
        self,
        client,
        store: ArtifactStore,
        compiler: WorkflowCompiler | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.store = store
        self.compiler = compiler or get_compiler()
        self.clock = clock
        self.sleep = sleep

    def _fail(self, session: Session, error: Exception):
        log_exception(logger, "Generation failed", error, session_id=session.id)
        try:
            self.store.update_session_status(session.id, SessionStatus.FAILED)
        except PersistenceError as e:
            logger.error(f"Could not mark session {session.id} failed: {e.message}")

    def generate(
        self,
        template,
        parameters: Mapping[str, Any] | None = None,
        adapters: Iterable[AdapterSpec] = (),
        schema: SchemaInfo | None = None,
        images: Mapping[str, ImageSource] | None = None,
    ) -> GenerationResult:
        """
        Run one generation.

        Args:
            template: Template, template id or workflow path
            parameters: User parameters
            adapters: Adapters to splice in
            schema: Executor schema; discovered when omitted and adapters are given
            images: Node id -> input image embedded inline in that loader

        Raises:
            ComfySpliceError: Fatal compile, submission or persistence failure
        """
        adapters = list(adapters)
        params = dict(parameters or {})
        session = self.store.create_session(
            {**params, "adapters": [_adapter_record(a) for a in adapters]}
        )

        with LogContext(session.id):
            try:
                prefix = timestamped_prefix(
                    params.get("filename_prefix") or DEFAULT_PREFIX, int(self.clock())
                )
                params["filename_prefix"] = prefix

                if schema is None:
                    schema = discover_schema_sync(self.client) if adapters else SchemaInfo.empty()
                compiled = self.compiler.compile(
                    template, params, adapters=adapters, schema=schema, images=images
                )
                for warning in compiled.warnings:
                    logger.info(warning)

                self.store.update_session_status(session.id, SessionStatus.IN_PROGRESS)
                job_id = self.client.submit(compiled)
            except ComfySpliceError as e:
                self._fail(session, e)
                raise

            locator = OutputLocator(
                [HistoryStrategy(self.client), FilenameCheckStrategy(self.client, prefix)]
            )
            outcome = wait_for_output(locator, job_id, sleep=self.sleep)
            if not outcome.found:
                self.store.update_session_status(session.id, SessionStatus.TIMED_OUT)
                return GenerationResult(session, compiled, job_id, outcome)

            try:
                artifact = self._persist(session, compiled, job_id, outcome)
            except ComfySpliceError as e:
                self._fail(session, e)
                raise

            self.store.update_session_status(session.id, SessionStatus.COMPLETED)
            logger.info(
                "Generation complete",
                extra={"prompt_id": job_id[:8], "artifact_id": artifact.id},
            )
            return GenerationResult(session, compiled, job_id, outcome, artifact)

    def _persist(
        self, session: Session, compiled: CompiledGraph, job_id: str, outcome: RetrievalOutcome
    ) -> Artifact:
        output = outcome.output
        data = self.client.fetch_output(output.filename, output.subfolder, output.folder_type)
        if data is None:
            raise ExecutorError(
                f"Output {output.filename} was reported but could not be downloaded",
                code="OUTPUT_DOWNLOAD_ERROR",
                details={"filename": output.filename, "prompt_id": job_id},
            )

        bucket = settings.storage.bucket
        path = f"{session.id}/{output.filename}"

        @retry_with_backoff(exceptions=(PersistenceError,))
        def upload():
            self.store.upload_artifact(bucket, path, data)

        upload()

        artifact = self.store.create_artifact_record(
            {
                "storage_path": f"{bucket}/{path}",
                "artifact_type": settings.storage.artifact_type,
                "status": "complete",
                "session_id": session.id,
                "metadata": {
                    "template_id": compiled.template_id,
                    "workflow": compiled.workflow,
                    "parameters": compiled.parameters,
                    "prompt_id": job_id,
                    "workflow_hash": compiled.workflow_hash,
                    "strategy": compiled.strategy.value if compiled.strategy else None,
                    "diagnostics": [d.to_dict() for d in compiled.diagnostics],
                },
                "adapters": [_adapter_record(a) for a in compiled.adapters_applied],
            }
        )
        self.store.link_artifact_to_session(session.id, artifact.id)
        return artifact
