"""
Comfy Splice - Artifact Persistence
===================================

Interface to the store that records generation sessions and the images they
produce, plus a thread-safe in-memory implementation used by the CLI and
tests.

A real backend (object storage + tables) only has to satisfy the
``ArtifactStore`` protocol and raise ``PersistenceError`` on failure.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .config import settings
from .exceptions import PersistenceError
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "SessionStatus",
    "Session",
    "Artifact",
    "ArtifactStore",
    "InMemoryArtifactStore",
]


class SessionStatus(str, Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class Session:
    id: str
    parameters: dict[str, Any]
    status: SessionStatus = SessionStatus.INITIATED
    created_at: float = field(default_factory=time.time)
    artifact_ids: list[str] = field(default_factory=list)


@dataclass
class Artifact:
    """One stored output plus its provenance."""

    id: str
    storage_path: str
    artifact_type: str = ""
    status: str = "complete"
    session_id: str | None = None
    parent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    adapters: list[dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


@runtime_checkable
class ArtifactStore(Protocol):
    """What the generation pipeline needs from persistence."""

    def create_session(self, params: dict[str, Any]) -> Session: ...

    def upload_artifact(self, bucket: str, path: str, data: bytes) -> None: ...

    def create_artifact_record(self, metadata: dict[str, Any]) -> Artifact: ...

    def link_artifact_to_session(self, session_id: str, artifact_id: str) -> None: ...

    def update_session_status(self, session_id: str, status: SessionStatus) -> None: ...

    def list_artifacts(
        self,
        artifact_type: str | None = None,
        session_id: str | None = None,
        parent_id: str | None = None,
        status: str | None = None,
    ) -> list[Artifact]: ...


class InMemoryArtifactStore:
    """
    ArtifactStore kept in process memory.

    Usage:
        store = InMemoryArtifactStore()
        session = store.create_session({"prompt": "a red fox"})
        store.upload_artifact("images-2d", f"{session.id}/fox.png", data)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.sessions: dict[str, Session] = {}
        self.artifacts: dict[str, Artifact] = {}
        self.blobs: dict[str, bytes] = {}

    def create_session(self, params: dict[str, Any]) -> Session:
        session = Session(id=str(uuid.uuid4()), parameters=dict(params))
        with self._lock:
            self.sessions[session.id] = session
        logger.debug(f"Created session {session.id}")
        return session

    def upload_artifact(self, bucket: str, path: str, data: bytes) -> None:
        if not bucket or not path:
            raise PersistenceError("upload", "Bucket and path are required")
        if not isinstance(data, (bytes, bytearray)):
            raise PersistenceError("upload", f"Expected bytes, got {type(data).__name__}")
        with self._lock:
            self.blobs[f"{bucket}/{path}"] = bytes(data)
        logger.debug(f"Uploaded {len(data)} bytes to {bucket}/{path}")

    def create_artifact_record(self, metadata: dict[str, Any]) -> Artifact:
        storage_path = metadata.get("storage_path")
        if not storage_path:
            raise PersistenceError("create_artifact", "storage_path is required")
        with self._lock:
            if storage_path not in self.blobs:
                raise PersistenceError(
                    "create_artifact", f"No uploaded object at {storage_path}"
                )
            artifact = Artifact(
                id=str(uuid.uuid4()),
                storage_path=storage_path,
                artifact_type=metadata.get("artifact_type", settings.storage.artifact_type),
                status=metadata.get("status", "complete"),
                session_id=metadata.get("session_id"),
                parent_id=metadata.get("parent_id"),
                metadata=dict(metadata.get("metadata") or {}),
                adapters=list(metadata.get("adapters") or []),
            )
            self.artifacts[artifact.id] = artifact
        return artifact

    def link_artifact_to_session(self, session_id: str, artifact_id: str) -> None:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise PersistenceError("link", f"Unknown session {session_id}")
            if artifact_id not in self.artifacts:
                raise PersistenceError("link", f"Unknown artifact {artifact_id}")
            if artifact_id not in session.artifact_ids:
                session.artifact_ids.append(artifact_id)

    def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise PersistenceError("update_status", f"Unknown session {session_id}")
            session.status = SessionStatus(status)
        logger.debug(f"Session {session_id} -> {session.status.value}")

    def list_artifacts(
        self,
        artifact_type: str | None = None,
        session_id: str | None = None,
        parent_id: str | None = None,
        status: str | None = None,
    ) -> list[Artifact]:
        """Artifacts matching every given filter, newest first."""
        with self._lock:
            artifacts = list(self.artifacts.values())
        if artifact_type is not None:
            artifacts = [a for a in artifacts if a.artifact_type == artifact_type]
        if session_id is not None:
            artifacts = [a for a in artifacts if a.session_id == session_id]
        if parent_id is not None:
            artifacts = [a for a in artifacts if a.parent_id == parent_id]
        if status is not None:
            artifacts = [a for a in artifacts if a.status == status]
        return sorted(artifacts, key=lambda a: a.created_at, reverse=True)
