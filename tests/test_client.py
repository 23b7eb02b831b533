"""
Tests for the blocking executor client.

requests is patched at the Session level; no network access.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from comfy_splice.client import ExecutorClient
from comfy_splice.exceptions import CircuitOpenError, ExecutorConnectionError, SubmissionError
from comfy_splice.graph import Graph


def _response(status=200, json_data=None, text="", content=b""):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.url = "http://executor.test/x"
    response.text = text
    response.content = content
    if isinstance(json_data, Exception):
        response.json.side_effect = json_data
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def client():
    with ExecutorClient(base_url="http://executor.test/", client_id="tester") as client:
        yield client


class TestClientInit:
    def test_base_url_trailing_slash_stripped(self, client):
        assert client.base_url == "http://executor.test"
        assert client.client_id == "tester"

    def test_sessions_created_lazily(self, client):
        assert client._session is None
        assert client.session is client.session
        assert client.plain_session is not client.session

    def test_plain_session_never_retries(self, client):
        adapter = client.plain_session.get_adapter("http://executor.test")
        assert adapter.max_retries.total == 0

    def test_retrying_session_skips_post(self, client):
        adapter = client.session.get_adapter("http://executor.test")
        assert "POST" not in adapter.max_retries.allowed_methods


class TestSubmit:
    def test_returns_job_id(self, client):
        with patch.object(requests.Session, "request") as request:
            request.return_value = _response(json_data={"prompt_id": "abc123", "number": 1})
            graph = Graph.from_api({"1": {"class_type": "KSampler", "inputs": {"steps": 5}}})

            assert client.submit(graph) == "abc123"

        method, url = request.call_args.args
        assert (method, url) == ("POST", "http://executor.test/prompt")
        payload = request.call_args.kwargs["json"]
        assert payload["client_id"] == "tester"
        assert payload["prompt"]["1"]["inputs"]["steps"] == 5

    def test_rejection_carries_node_errors(self, client):
        body = {
            "error": {"message": "Prompt outputs failed validation"},
            "node_errors": {"5": {"errors": ["lora not found"]}},
        }
        with patch.object(requests.Session, "request", return_value=_response(400, body)):
            with pytest.raises(SubmissionError) as exc_info:
                client.submit({"1": {"class_type": "KSampler", "inputs": {}}})

        error = exc_info.value
        assert error.details["status_code"] == 400
        assert error.details["node_errors"] == body["node_errors"]
        assert "failed validation" in error.message

    def test_missing_prompt_id(self, client):
        with patch.object(requests.Session, "request", return_value=_response(json_data={})):
            with pytest.raises(SubmissionError):
                client.submit({})

    def test_connection_error(self, client):
        with patch.object(
            requests.Session, "request", side_effect=requests.exceptions.ConnectionError("down")
        ):
            with pytest.raises(ExecutorConnectionError):
                client.submit({})

    def test_unsupported_type(self, client):
        with pytest.raises(SubmissionError):
            client.submit(42)

    def test_circuit_opens_after_failures(self, client):
        with patch.object(
            requests.Session, "request", side_effect=requests.exceptions.ConnectionError("down")
        ):
            for _ in range(client._circuit.failure_threshold):
                with pytest.raises(ExecutorConnectionError):
                    client.submit({})
            with pytest.raises(CircuitOpenError):
                client.submit({})


class TestIntrospection:
    def test_object_info(self, client):
        with patch.object(
            requests.Session, "request", return_value=_response(json_data={"KSampler": {}})
        ) as request:
            assert client.get_object_info() == {"KSampler": {}}
        assert request.call_count == 1

    def test_object_info_error_status(self, client):
        with patch.object(requests.Session, "request", return_value=_response(500)):
            with pytest.raises(ExecutorConnectionError):
                client.get_object_info()

    def test_object_info_invalid_json(self, client):
        with patch.object(
            requests.Session, "request", return_value=_response(json_data=ValueError("bad"))
        ):
            with pytest.raises(ExecutorConnectionError):
                client.get_object_info()

    def test_history_empty_on_failure(self, client):
        with patch.object(
            requests.Session, "request", side_effect=requests.exceptions.Timeout("slow")
        ):
            assert client.get_history("job") == {}


class TestOutputs:
    def test_output_exists_uses_head(self, client):
        with patch.object(requests.Session, "request", return_value=_response(200)) as request:
            assert client.output_exists("a.png", "sub")

        assert request.call_args.args[0] == "HEAD"
        assert request.call_args.kwargs["params"] == {
            "filename": "a.png",
            "subfolder": "sub",
            "type": "output",
        }

    def test_output_missing(self, client):
        with patch.object(requests.Session, "request", return_value=_response(404)):
            assert not client.output_exists("a.png")

    def test_output_check_unreachable(self, client):
        with patch.object(
            requests.Session, "request", side_effect=requests.exceptions.ConnectionError("x")
        ):
            assert not client.output_exists("a.png")

    def test_fetch_output(self, client):
        with patch.object(
            requests.Session, "request", return_value=_response(200, content=b"PNG")
        ):
            assert client.fetch_output("a.png") == b"PNG"

    def test_fetch_output_failure(self, client):
        with patch.object(requests.Session, "request", return_value=_response(404)):
            assert client.fetch_output("a.png") is None


class TestIsOnline:
    def test_online(self, client):
        with patch("comfy_splice.client.requests.get", return_value=_response(200)):
            assert client.is_online()

    def test_offline(self, client):
        with patch(
            "comfy_splice.client.requests.get",
            side_effect=requests.exceptions.ConnectionError("down"),
        ):
            assert not client.is_online()
