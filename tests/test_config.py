"""
Tests for settings, exceptions, diagnostics and structured logging.
"""

import json
import logging

import pytest
from pydantic import ValidationError

from comfy_splice.config import (
    CompilerConfig,
    LoggingConfig,
    PollingConfig,
    Settings,
    reload_settings,
)
from comfy_splice.diagnostics import Diagnostic, Stage
from comfy_splice.exceptions import (
    ComfySpliceError,
    ExecutorConnectionError,
    InvalidParameterError,
    SubmissionError,
    VerbosityLevel,
    format_error_for_user,
)
from comfy_splice.logging_config import (
    LogContext,
    StructuredFormatter,
    current_request_id,
    get_logger,
)


class TestSettings:
    def test_defaults(self):
        config = Settings()
        assert config.executor.url == "http://localhost:8188"
        assert config.compiler.stack_node_type == "easy loraStack"
        assert config.polling.max_attempts == 15
        assert config.polling.delay == 2.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("COMFY_SPLICE_POLLING__MAX_ATTEMPTS", "30")
        assert PollingConfig().max_attempts == 30

    def test_level_normalized(self):
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_invalid_level(self):
        with pytest.raises(ValidationError):
            LoggingConfig(level="chatty")

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValidationError):
            CompilerConfig(default_stack_capacity=0)

    def test_to_dict(self):
        data = Settings().to_dict()
        assert data["compiler"]["chain_node_types"] == ["LoraLoader", "FluxLoraLoader"]
        json.dumps(data)

    def test_reload(self, monkeypatch):
        monkeypatch.setenv("COMFY_SPLICE_EXECUTOR__URL", "http://gpu-box:8188")
        try:
            assert reload_settings().executor.url == "http://gpu-box:8188"
        finally:
            monkeypatch.delenv("COMFY_SPLICE_EXECUTOR__URL")
            reload_settings()


class TestExceptions:
    def test_hierarchy(self):
        assert issubclass(SubmissionError, ComfySpliceError)
        assert issubclass(ExecutorConnectionError, ComfySpliceError)

    def test_details_and_code(self):
        error = SubmissionError("rejected", status_code=400, node_errors={"5": {}})
        assert error.code == "SUBMISSION_ERROR"
        assert error.details["status_code"] == 400

    def test_invalid_parameter_message(self):
        error = InvalidParameterError("steps", "many", reason="not a whole number")
        assert "steps" in error.message
        assert error.details["reason"] == "not a whole number"

    def test_to_dict_includes_suggestions(self):
        data = ExecutorConnectionError("down", url="http://x").to_dict(include_internal=True)
        assert data["code"] == "EXECUTOR_CONNECTION_ERROR"
        assert data["suggestions"]
        assert data["details"]["url"] == "http://x"

    def test_format_for_user(self):
        error = ExecutorConnectionError("down")
        assert format_error_for_user(error, VerbosityLevel.CASUAL) == error.user_message
        assert "ValueError" in format_error_for_user(ValueError("x"), VerbosityLevel.DEVELOPER)

    def test_no_unused_error_helpers(self):
        """Severity levels and post-hoc context are not part of the error API."""
        from comfy_splice import exceptions
        from comfy_splice.retry import CircuitBreakerRegistry

        assert not hasattr(exceptions, "ErrorLevel")
        assert not hasattr(exceptions, "add_context")
        assert not hasattr(ComfySpliceError, "add_context")
        assert not hasattr(ComfySpliceError("x"), "level")
        assert not hasattr(CircuitBreakerRegistry, "status")


class TestDiagnostics:
    def test_str_and_dict(self):
        diagnostic = Diagnostic(Stage.REPAIR, "relinked", "Input 'clip' relinked", node_id="3")
        assert str(diagnostic) == "[repair:relinked] Input 'clip' relinked (node 3)"
        assert diagnostic.to_dict() == {
            "stage": "repair",
            "code": "relinked",
            "message": "Input 'clip' relinked",
            "node_id": "3",
        }

    def test_detail_ignored_in_equality(self):
        a = Diagnostic(Stage.BIND, "no-target", "m", detail={"parameter": "width"})
        b = Diagnostic(Stage.BIND, "no-target", "m")
        assert a == b


class TestStructuredLogging:
    def test_json_output_carries_extras(self):
        formatter = StructuredFormatter(json_output=True)
        record = logging.LogRecord("comfy_splice.test", logging.INFO, __file__, 1, "hi", (), None)
        record.template_id = "txt2img_flux"
        record.unserializable = object()

        data = json.loads(formatter.format(record))

        assert data["message"] == "hi"
        assert data["template_id"] == "txt2img_flux"
        assert isinstance(data["unserializable"], str)

    def test_loggers_are_namespaced(self):
        assert get_logger("compiler").name.startswith("comfy_splice")

    def test_log_context_sets_request_id(self, caplog):
        logger = get_logger("test_context")
        with caplog.at_level(logging.INFO, logger=logger.name):
            with LogContext("session-1"):
                logger.info("inside")
        assert caplog.records[-1].request_id == "session-1"

    def test_log_context_nests(self):
        with LogContext("outer"):
            with LogContext("inner"):
                assert current_request_id() == "inner"
            assert current_request_id() == "outer"
        assert current_request_id() is None
