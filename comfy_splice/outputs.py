"""
Comfy Splice - Output Retrieval
===============================

The executor does not push completion events to us, so outputs are found by
polling. Each attempt walks an ordered list of resolution strategies and
stops at the first one that produces an ``OutputRef``:

- ``HistoryStrategy`` reads the job's ``/history`` entry.
- ``FilenameCheckStrategy`` HEAD-checks the filenames SaveImage would have
  written for a timestamped prefix.

``wait_for_output`` bounds the polling with a fixed delay and attempt cap.
Running out of attempts is an outcome (``TIMED_OUT``), not an error.
"""

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .config import settings
from .exceptions import ComfySpliceError
from .logging_config import get_logger
from .retry import poll_until

logger = get_logger(__name__)

__all__ = [
    "OutputRef",
    "RetrievalStatus",
    "RetrievalOutcome",
    "ResolutionStrategy",
    "HistoryStrategy",
    "FilenameCheckStrategy",
    "OutputLocator",
    "candidate_filenames",
    "timestamped_prefix",
    "wait_for_output",
    "TIMED_OUT_MESSAGE",
]

TIMED_OUT_MESSAGE = "timed out, check back later"


@dataclass(frozen=True)
class OutputRef:
    """Where an output file lives on the executor."""

    filename: str
    subfolder: str = ""
    folder_type: str = "output"
    source: str = ""


class RetrievalStatus(str, Enum):
    FOUND = "found"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RetrievalOutcome:
    status: RetrievalStatus
    output: OutputRef | None = None
    attempts: int = 0
    message: str = ""

    @property
    def found(self) -> bool:
        return self.status is RetrievalStatus.FOUND


def timestamped_prefix(prefix: str, timestamp: int | None = None) -> str:
    """``prefix_<unix ts>``, unique per generation."""
    ts = int(timestamp if timestamp is not None else time.time())
    return f"{prefix}_{ts}"


def candidate_filenames(prefix: str, timestamp: int | None = None) -> list[str]:
    """
    Filenames SaveImage may produce for ``prefix``, most specific last.

    With ``timestamp`` the prefix is first stamped with it.
    """
    base = timestamped_prefix(prefix, timestamp) if timestamp is not None else prefix
    return [f"{base}.png", f"{base}_00001.png", f"{base}_00001_.png"]


# =============================================================================
# STRATEGIES
# =============================================================================


class ResolutionStrategy(Protocol):
    name: str

    def resolve(self, job_id: str) -> OutputRef | None: ...


class HistoryStrategy:
    """First image listed in the job's history outputs."""

    name = "history"

    def __init__(self, client):
        self.client = client

    def resolve(self, job_id: str) -> OutputRef | None:
        try:
            history = self.client.get_history(job_id)
        except ComfySpliceError as e:
            logger.debug(f"History lookup failed: {e.message}")
            return None

        entry = history.get(job_id) if isinstance(history, dict) else None
        outputs = entry.get("outputs") if isinstance(entry, dict) else None
        if not isinstance(outputs, dict):
            return None

        for node_output in outputs.values():
            images = node_output.get("images") if isinstance(node_output, dict) else None
            for image in images or []:
                if isinstance(image, dict) and image.get("filename"):
                    return OutputRef(
                        filename=image["filename"],
                        subfolder=image.get("subfolder") or "",
                        folder_type=image.get("type") or settings.polling.output_type,
                        source=self.name,
                    )
        return None


class FilenameCheckStrategy:
    """HEAD-check the filenames SaveImage writes for a known prefix."""

    name = "filename-check"

    def __init__(self, client, prefix: str, folder_type: str | None = None):
        self.client = client
        subfolder, _, base = prefix.rpartition("/")
        self.subfolder = subfolder
        self.candidates = candidate_filenames(base)
        self.folder_type = folder_type or settings.polling.output_type

    def resolve(self, job_id: str) -> OutputRef | None:
        for filename in self.candidates:
            try:
                exists = self.client.output_exists(filename, self.subfolder, self.folder_type)
            except ComfySpliceError as e:
                logger.debug(f"Check of {filename} failed: {e.message}")
                return None
            if exists:
                return OutputRef(filename, self.subfolder, self.folder_type, source=self.name)
        return None


class OutputLocator:
    """Tries each strategy in order; the first hit wins."""

    def __init__(self, strategies: Iterable[ResolutionStrategy]):
        self.strategies: Sequence[ResolutionStrategy] = tuple(strategies)

    def locate(self, job_id: str) -> OutputRef | None:
        for strategy in self.strategies:
            found = strategy.resolve(job_id)
            if found is not None:
                logger.debug(f"Output located by {strategy.name}: {found.filename}")
                return found
        return None


def wait_for_output(
    locator: OutputLocator,
    job_id: str,
    max_attempts: int | None = None,
    delay: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RetrievalOutcome:
    """
    Poll ``locator`` until an output turns up or the attempts run out.

    Args:
        locator: Strategies to try on each attempt
        job_id: Executor job id
        max_attempts: Attempt cap (default settings.polling.max_attempts)
        delay: Seconds between attempts (default settings.polling.delay)
        sleep: Sleep function, replaceable in tests
    """
    result = poll_until(
        lambda: locator.locate(job_id),
        max_attempts=max_attempts,
        delay=delay,
        sleep=sleep,
    )
    if result.succeeded:
        logger.info(
            f"Output ready after {result.attempts} attempt(s)",
            extra={"prompt_id": job_id[:8], "output_filename": result.value.filename},
        )
        return RetrievalOutcome(RetrievalStatus.FOUND, result.value, result.attempts)

    logger.warning(
        f"No output after {result.attempts} attempts",
        extra={"prompt_id": job_id[:8], "attempts": result.attempts},
    )
    return RetrievalOutcome(
        RetrievalStatus.TIMED_OUT, None, result.attempts, message=TIMED_OUT_MESSAGE
    )
