"""
Comfy Splice - Exception Hierarchy
==================================

Only fatal conditions are exceptions. Recoverable conditions (a parameter with
no target node, adapters the executor cannot apply, a dangling reference)
are reported as diagnostics on the compiled graph and never raised.

Every exception carries:
- A user-friendly message and a simpler "eli5" message
- A developer message with structured details
- A stable error code for programmatic handling
- Recovery suggestions

Usage:
    from comfy_splice.exceptions import ExecutorConnectionError, SubmissionError

    try:
        job_id = client.submit(compiled)
    except (ExecutorConnectionError, SubmissionError) as e:
        show_retry_banner(e.user_message, e.suggestions)
        logger.error(e.developer_message)
"""

import os
from enum import Enum
from typing import Any

__all__ = [
    "VerbosityLevel",
    "set_verbosity",
    # Base
    "ComfySpliceError",
    # Executor errors
    "ExecutorError",
    "ExecutorConnectionError",
    "SubmissionError",
    # Workflow errors
    "WorkflowError",
    "TemplateParseError",
    "TemplateNotFoundError",
    "WorkflowCompilationError",
    "PathResolutionError",
    # Validation errors
    "ValidationError",
    "InvalidParameterError",
    "InputImageError",
    # Resilience errors
    "ResilienceError",
    "RetryExhaustedError",
    "CircuitOpenError",
    # Persistence
    "PersistenceError",
    # Utilities
    "format_error_for_user",
]


# =============================================================================
# VERBOSITY
# =============================================================================


class VerbosityLevel(Enum):
    """
    Output verbosity levels for different audiences.

    ELI5: Simple explanations for non-technical users
    CASUAL: User-friendly messages for general users
    DEVELOPER: Full technical details for debugging
    """

    ELI5 = "eli5"
    CASUAL = "casual"
    DEVELOPER = "developer"


_current_verbosity: VerbosityLevel | None = None


def _get_verbosity() -> VerbosityLevel:
    if _current_verbosity is not None:
        return _current_verbosity
    level = os.environ.get("COMFY_SPLICE_VERBOSITY", "casual").lower()
    try:
        return VerbosityLevel(level)
    except ValueError:
        return VerbosityLevel.CASUAL


def set_verbosity(level: VerbosityLevel | None):
    """Set the global verbosity level; None falls back to COMFY_SPLICE_VERBOSITY."""
    global _current_verbosity
    _current_verbosity = level


def _is_production() -> bool:
    return os.environ.get("COMFY_SPLICE_ENV", "development").lower() == "production"


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class ComfySpliceError(Exception):
    """
    Base exception for all comfy_splice errors.

    Attributes:
        message: Technical error message
        user_message: User-friendly explanation
        code: Error code for programmatic handling
        details: Dict with additional context
        suggestions: List of recovery suggestions
    """

    _default_user_message = "An error occurred"
    _default_eli5_message = "Something went wrong"
    _default_suggestions: list[str] = []

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        eli5_message: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
        suggestions: list[str] | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self._user_message = user_message
        self._eli5_message = eli5_message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self._suggestions = suggestions
        self.request_id = request_id

        if request_id:
            self.details["request_id"] = request_id

        if cause:
            self.__cause__ = cause

    @property
    def user_message(self) -> str:
        """Get user-friendly message (for UI display)."""
        return self._user_message or self._default_user_message

    @property
    def eli5_message(self) -> str:
        return self._eli5_message or self._default_eli5_message

    @property
    def developer_message(self) -> str:
        """Get full technical message (for logs/debugging)."""
        prefix = f"[{self.code}]"
        if self.request_id:
            prefix = f"[{self.code}:{self.request_id}]"
        msg = f"{prefix} {self.message}"
        shown = {k: v for k, v in self.details.items() if k != "request_id"}
        if shown:
            msg += " (" + ", ".join(f"{k}={v}" for k, v in shown.items()) + ")"
        if self.cause:
            msg += f" [caused by: {type(self.cause).__name__}: {self.cause}]"
        return msg

    @property
    def suggestions(self) -> list[str]:
        return self._suggestions or self._default_suggestions

    def get_message(self, verbosity: VerbosityLevel | None = None) -> str:
        """Get message appropriate for the verbosity level."""
        level = verbosity or _get_verbosity()

        if level == VerbosityLevel.ELI5:
            return self.eli5_message
        elif level == VerbosityLevel.CASUAL:
            return self.user_message
        return self.developer_message

    def to_dict(self, include_internal: bool = False) -> dict[str, Any]:
        """
        Convert exception to dictionary for JSON serialization.

        Args:
            include_internal: Include developer details (False in production)
        """
        result = {
            "error": True,
            "code": self.code,
            "message": self.user_message,
            "suggestions": self.suggestions,
        }

        if self.request_id:
            result["request_id"] = self.request_id

        if include_internal or not _is_production():
            result["details"] = self.details
            result["developer_message"] = self.developer_message
            if self.cause:
                result["cause"] = str(self.cause)

        return result

    def __str__(self) -> str:
        if _is_production():
            return self.user_message
        return self.developer_message


# =============================================================================
# EXECUTOR ERRORS
# =============================================================================


class ExecutorError(ComfySpliceError):
    """Base class for errors talking to the graph executor."""

    _default_user_message = "The image generator reported an error"
    _default_eli5_message = "The image generator had a problem"


class ExecutorConnectionError(ExecutorError):
    """The executor could not be reached."""

    _default_user_message = "Unable to connect to the image generator"
    _default_eli5_message = "The image generator isn't responding"
    _default_suggestions = [
        "Check if ComfyUI is running",
        "Verify COMFY_SPLICE_EXECUTOR__URL",
        "Retry in a few seconds",
    ]

    def __init__(
        self, message: str = "Failed to connect to executor", url: str | None = None, **kwargs
    ):
        details = kwargs.pop("details", {})
        if url:
            details["url"] = url
        super().__init__(message, code="EXECUTOR_CONNECTION_ERROR", details=details, **kwargs)


class SubmissionError(ExecutorError):
    """The executor refused or failed to queue a graph."""

    _default_user_message = "Unable to start generation"
    _default_eli5_message = "Couldn't start making the image"
    _default_suggestions = [
        "Check that every model and LoRA file exists on the server",
        "Retry the generation",
    ]

    def __init__(
        self,
        message: str = "Failed to submit workflow",
        status_code: int | None = None,
        node_errors: dict | None = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        if node_errors:
            details["node_errors"] = node_errors
        super().__init__(message, code="SUBMISSION_ERROR", details=details, **kwargs)


# =============================================================================
# WORKFLOW ERRORS
# =============================================================================


class WorkflowError(ComfySpliceError):
    """Base class for workflow-related errors."""

    _default_user_message = "Workflow error"
    _default_eli5_message = "The recipe for making the image has a problem"


class TemplateParseError(WorkflowError):
    """A template cannot be read into the graph model at all."""

    _default_user_message = "The workflow template is malformed"
    _default_eli5_message = "The image recipe file is broken"
    _default_suggestions = [
        "Export the workflow from ComfyUI with 'Save (API Format)'",
        "Check the file is valid JSON",
    ]

    def __init__(
        self,
        message: str = "Malformed workflow template",
        node_id: str | None = None,
        source: str | None = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if node_id is not None:
            details["node_id"] = node_id
        if source:
            details["source"] = source
        super().__init__(message, code="TEMPLATE_PARSE_ERROR", details=details, **kwargs)


class TemplateNotFoundError(WorkflowError):
    """Requested workflow template not found."""

    _default_user_message = "Template not found"
    _default_eli5_message = "Can't find that image recipe"

    def __init__(self, template_id: str, message: str | None = None, **kwargs):
        msg = message or f"Template not found: {template_id}"
        details = kwargs.pop("details", {})
        details["template_id"] = template_id
        super().__init__(msg, code="TEMPLATE_NOT_FOUND", details=details, **kwargs)


class WorkflowCompilationError(WorkflowError):
    """The compiler cannot produce an executable graph (e.g. a cyclic template)."""

    _default_user_message = "Unable to prepare the workflow"
    _default_eli5_message = "Couldn't set up the image recipe"

    def __init__(
        self,
        message: str = "Failed to compile workflow",
        template_id: str | None = None,
        errors: list | None = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if template_id:
            details["template_id"] = template_id
        if errors:
            details["errors"] = errors
        super().__init__(message, code="WORKFLOW_COMPILATION_ERROR", details=details, **kwargs)


class PathResolutionError(WorkflowError):
    """A parameter path is malformed or cannot be created inside a node."""

    _default_user_message = "Parameter location is invalid"

    def __init__(self, path: str, reason: str, **kwargs):
        details = kwargs.pop("details", {})
        details["path"] = path
        details["reason"] = reason
        super().__init__(
            f"Cannot resolve path '{path}': {reason}",
            code="PATH_RESOLUTION_ERROR",
            details=details,
            **kwargs,
        )
        self.path = path
        self.reason = reason


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ComfySpliceError):
    """Base class for validation errors."""

    _default_user_message = "Invalid input"
    _default_eli5_message = "Something you entered isn't quite right"


class InvalidParameterError(ValidationError):
    """Parameter value is invalid."""

    def __init__(
        self,
        parameter: str,
        value: Any,
        reason: str | None = None,
        allowed_values: list | None = None,
        **kwargs,
    ):
        msg = f"Invalid value for '{parameter}': {value}"
        if reason:
            msg += f" ({reason})"

        details = kwargs.pop("details", {})
        details["parameter"] = parameter
        details["value"] = str(value)
        if reason:
            details["reason"] = reason
        if allowed_values:
            details["allowed_values"] = allowed_values

        user_msg = f"Invalid {parameter}"
        if allowed_values:
            user_msg += f". Choose from: {', '.join(str(v) for v in allowed_values[:5])}"

        super().__init__(
            msg, code="INVALID_PARAMETER", user_message=user_msg, details=details, **kwargs
        )


class InputImageError(ValidationError):
    """An input image could not be read, fetched or encoded."""

    _default_user_message = "Could not load the input image"
    _default_eli5_message = "We couldn't open the picture you gave us"
    _default_suggestions = ["Check the image path or URL", "Try a PNG or JPEG file"]

    def __init__(self, source: str, message: str | None = None, **kwargs):
        msg = message or f"Cannot load input image: {source}"
        details = kwargs.pop("details", {})
        details["source"] = source
        super().__init__(msg, code="INPUT_IMAGE_ERROR", details=details, **kwargs)


# =============================================================================
# RESILIENCE ERRORS
# =============================================================================


class ResilienceError(ComfySpliceError):
    """Base class for resilience-related errors."""

    _default_user_message = "Service temporarily unavailable"
    _default_eli5_message = "The service is having trouble right now"


class RetryExhaustedError(ResilienceError):
    """All retry attempts exhausted."""

    _default_user_message = "Operation failed after multiple attempts"
    _default_eli5_message = "We tried several times but it didn't work"
    _default_suggestions = [
        "Wait a moment and try again",
        "Check your connection",
    ]

    def __init__(
        self,
        message: str = "All retry attempts exhausted",
        attempts: int | None = None,
        last_error: Exception | None = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if attempts:
            details["attempts"] = attempts
        super().__init__(
            message, code="RETRY_EXHAUSTED", details=details, cause=last_error, **kwargs
        )


class CircuitOpenError(ResilienceError):
    """Circuit breaker is open, requests blocked."""

    _default_user_message = "Service temporarily blocked for safety"
    _default_eli5_message = "We're giving the service a break because it wasn't working"
    _default_suggestions = [
        "Wait 30-60 seconds",
        "The executor may be overloaded or down",
    ]

    def __init__(self, service: str, message: str | None = None, **kwargs):
        msg = message or f"Circuit breaker open for {service}"
        details = kwargs.pop("details", {})
        details["service"] = service
        super().__init__(msg, code="CIRCUIT_OPEN", details=details, **kwargs)


# =============================================================================
# PERSISTENCE ERRORS
# =============================================================================


class PersistenceError(ComfySpliceError):
    """The artifact store rejected an operation."""

    _default_user_message = "Could not save the result"
    _default_eli5_message = "The picture was made but we couldn't keep it"
    _default_suggestions = ["Retry saving from the history panel"]

    def __init__(self, operation: str, message: str | None = None, **kwargs):
        msg = message or f"Persistence operation failed: {operation}"
        details = kwargs.pop("details", {})
        details["operation"] = operation
        super().__init__(msg, code="PERSISTENCE_ERROR", details=details, **kwargs)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def format_error_for_user(error: Exception, verbosity: VerbosityLevel | None = None) -> str:
    """Format any exception for user display."""
    level = verbosity or _get_verbosity()

    if isinstance(error, ComfySpliceError):
        return error.get_message(level)

    if level == VerbosityLevel.ELI5:
        return "Something went wrong"
    elif level == VerbosityLevel.CASUAL:
        return f"Error: {type(error).__name__}"
    return f"{type(error).__name__}: {error}"
