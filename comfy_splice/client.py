"""
Comfy Splice - Executor Client
==============================

Blocking HTTP client for the ComfyUI executor with:
- Connection pooling via requests.Session
- Automatic retry of idempotent requests (urllib3 Retry)
- Circuit breaker for failure resilience
- Structured logging

Submission is never retried automatically; a duplicate POST would queue the
graph twice. Introspection (``/object_info``) is never retried either, so
schema discovery fails fast.

Usage:
    from comfy_splice import ExecutorClient

    with ExecutorClient() as client:
        job_id = client.submit(compiled)
        history = client.get_history(job_id)
"""

import json
from collections.abc import Mapping
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .compiler import CompiledGraph
from .config import settings
from .exceptions import ExecutorConnectionError, SubmissionError
from .graph import Graph
from .logging_config import get_logger
from .retry import get_circuit_breaker

logger = get_logger(__name__)

__all__ = ["ExecutorClient"]


def _safe_json_parse(response: requests.Response, context: str = "") -> Any:
    """
    Parse JSON from a response.

    Raises:
        ExecutorConnectionError: If the body is not JSON
    """
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError) as e:
        logger.error(
            f"Invalid JSON response{f' ({context})' if context else ''}",
            extra={"error": str(e), "response_text": response.text[:200] if response.text else ""},
        )
        raise ExecutorConnectionError(
            f"Invalid JSON response from executor{f' while {context}' if context else ''}",
            url=response.url,
            cause=e,
        ) from e


class ExecutorClient:
    """
    HTTP client for the ComfyUI API.

    Attributes:
        base_url: Executor URL
        client_id: Opaque token sent with every submission
    """

    def __init__(self, base_url: str | None = None, client_id: str | None = None):
        self.base_url = (base_url or settings.executor.url).rstrip("/")
        self.client_id = client_id or settings.executor.client_id
        self._session: requests.Session | None = None
        self._plain_session: requests.Session | None = None
        self._circuit = get_circuit_breaker("executor")

        logger.debug(
            "ExecutorClient initialized",
            extra={"base_url": self.base_url, "client_id": self.client_id},
        )

    @property
    def session(self) -> requests.Session:
        """Pooled session that retries idempotent requests."""
        if self._session is None:
            self._session = self._create_session(retries=True)
        return self._session

    @property
    def plain_session(self) -> requests.Session:
        """Pooled session without automatic retries."""
        if self._plain_session is None:
            self._plain_session = self._create_session(retries=False)
        return self._plain_session

    def _create_session(self, retries: bool) -> requests.Session:
        session = requests.Session()

        retry_strategy = Retry(
            total=settings.retry.max_retries if retries else 0,
            backoff_factor=settings.retry.backoff_base,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=10,
            pool_maxsize=20,
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def close(self):
        """Close the HTTP sessions."""
        for session in (self._session, self._plain_session):
            if session is not None:
                session.close()
        self._session = None
        self._plain_session = None
        logger.debug("HTTP sessions closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # =========================================================================
    # INTERNAL REQUEST METHODS
    # =========================================================================

    def _request(
        self,
        method: str,
        endpoint: str,
        timeout: float | None = None,
        retries: bool = True,
        **kwargs,
    ) -> requests.Response:
        """
        Make an HTTP request with circuit breaker protection.

        Raises:
            ExecutorConnectionError: If the executor cannot be reached
            CircuitOpenError: If the executor circuit is open
        """
        url = f"{self.base_url}{endpoint}"
        timeout = timeout or settings.executor.timeout_read
        session = self.session if retries else self.plain_session

        try:
            with self._circuit:
                return session.request(
                    method,
                    url,
                    timeout=(settings.executor.timeout_connect, timeout),
                    **kwargs,
                )
        except requests.exceptions.ConnectionError as e:
            logger.warning(f"Connection error: {endpoint}", extra={"error": str(e)})
            raise ExecutorConnectionError(
                f"Failed to connect to executor at {self.base_url}",
                url=self.base_url,
                cause=e,
            ) from e
        except requests.exceptions.Timeout as e:
            logger.warning(f"Request timeout: {endpoint}", extra={"timeout": timeout})
            raise ExecutorConnectionError(
                f"Request timed out after {timeout}s", url=url, cause=e
            ) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {endpoint}", extra={"error": str(e)})
            raise ExecutorConnectionError(f"Request failed: {e}", url=url, cause=e) from e

    # =========================================================================
    # CONNECTION
    # =========================================================================

    def is_online(self) -> bool:
        """
        Quick reachability check.

        Bypasses the circuit breaker and the retrying session so it answers
        within about two seconds when the executor is down.
        """
        try:
            response = requests.get(f"{self.base_url}/system_stats", timeout=(1.0, 1.0))
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_object_info(self) -> dict:
        """
        Fetch ``/object_info`` once, without retries.

        Raises:
            ExecutorConnectionError: On transport failure, non-2xx or a non-JSON body
        """
        response = self._request(
            "GET", "/object_info", timeout=settings.executor.timeout_schema, retries=False
        )
        if not response.ok:
            raise ExecutorConnectionError(
                f"Introspection failed with status {response.status_code}",
                url=response.url,
                details={"status_code": response.status_code},
            )
        return _safe_json_parse(response, "reading object info")

    def get_history(self, job_id: str) -> dict:
        """Execution history for one job; empty when unknown or unreachable."""
        try:
            response = self._request("GET", f"/history/{job_id}")
            if response.ok:
                data = _safe_json_parse(response, "getting history")
                return data if isinstance(data, dict) else {}
        except ExecutorConnectionError as e:
            logger.debug(f"Failed to get history: {e.message}")
        return {}

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def submit(self, graph: "CompiledGraph | Graph | Mapping") -> str:
        """
        Queue a graph for execution.

        Returns:
            The executor's job id (``prompt_id``)

        Raises:
            ExecutorConnectionError: If the executor cannot be reached
            SubmissionError: If the executor rejects the graph
        """
        if isinstance(graph, CompiledGraph):
            workflow = graph.workflow
        elif isinstance(graph, Graph):
            workflow = graph.to_api()
        elif isinstance(graph, Mapping):
            workflow = dict(graph)
        else:
            raise SubmissionError(f"Cannot submit {type(graph).__name__}")

        payload = {"prompt": workflow, "client_id": self.client_id}
        response = self._request(
            "POST", "/prompt", json=payload, timeout=settings.executor.timeout_queue, retries=False
        )

        if not response.ok:
            node_errors = None
            error_text = response.text[:200] if response.text else ""
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                node_errors = body.get("node_errors") or None
                error = body.get("error")
                if isinstance(error, dict) and error.get("message"):
                    error_text = error["message"]
            logger.warning(
                f"Submission rejected with status {response.status_code}",
                extra={"status": response.status_code},
            )
            raise SubmissionError(
                f"Executor rejected the workflow ({response.status_code}): {error_text}",
                status_code=response.status_code,
                node_errors=node_errors,
            )

        data = _safe_json_parse(response, "queueing prompt")
        job_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not isinstance(job_id, str) or not job_id:
            raise SubmissionError(
                "Executor response is missing prompt_id", status_code=response.status_code
            )
        logger.info("Queued prompt", extra={"prompt_id": job_id[:8]})
        return job_id

    # =========================================================================
    # OUTPUT FILES
    # =========================================================================

    def output_exists(
        self, filename: str, subfolder: str = "", folder_type: str | None = None
    ) -> bool:
        """HEAD-check ``/view`` for a file; unreachable counts as absent."""
        params = {
            "filename": filename,
            "subfolder": subfolder,
            "type": folder_type or settings.polling.output_type,
        }
        try:
            response = self._request("HEAD", "/view", params=params, retries=False)
        except ExecutorConnectionError as e:
            logger.debug(f"Existence check failed for {filename}: {e.message}")
            return False
        return response.ok

    def fetch_output(
        self, filename: str, subfolder: str = "", folder_type: str | None = None
    ) -> bytes | None:
        """Download an output file, or None if it cannot be fetched."""
        params = {
            "filename": filename,
            "subfolder": subfolder,
            "type": folder_type or settings.polling.output_type,
        }
        try:
            response = self._request(
                "GET", "/view", params=params, timeout=settings.executor.timeout_image
            )
        except ExecutorConnectionError as e:
            logger.warning(f"Failed to download {filename}: {e.message}")
            return None
        if response.ok:
            logger.debug(f"Downloaded output: {filename}")
            return response.content
        logger.warning(f"Download of {filename} failed with status {response.status_code}")
        return None
