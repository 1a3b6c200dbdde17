"""Coconut API v2 client.

Creates jobs and retrieves job info and metadata. Errors are split between
requests that never reached Coconut (:class:`CoconutConnectionError`) and
requests Coconut rejected (:class:`CoconutAPIError`) so callers can decide
whether a retry makes sense.
"""

import logging
import time
from typing import Any, Optional

import httpx

from coconut_jobs.core.config import settings
from coconut_jobs.core.metrics import (
    COCONUT_API_REQUESTS_TOTAL,
    COCONUT_API_REQUEST_DURATION_SECONDS,
)
from coconut_jobs.core.tracing import create_span, record_exception

logger = logging.getLogger(__name__)


class CoconutClientError(Exception):
    """Base exception for Coconut API client errors."""
    pass


class CoconutConnectionError(CoconutClientError):
    """The request never reached the Coconut API (network failure, timeout)."""
    pass


class CoconutAPIError(CoconutClientError):
    """The Coconut API rejected the request."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_code: Optional[str] = None,
        response: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.response = response or {}


class CoconutClient:
    """Async client for the Coconut API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.COCONUT_API_KEY
        self.endpoint = (endpoint or settings.coconut_endpoint).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.COCONUT_HTTP_TIMEOUT
        self._transport = transport

    async def _make_request(
        self,
        operation: str,
        method: str,
        path: str,
        data: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request to the Coconut API.

        Args:
            operation: Operation name used for metrics and tracing
            method: HTTP method
            path: API path relative to the endpoint
            data: JSON request body

        Returns:
            Response JSON

        Raises:
            CoconutConnectionError: If the API could not be reached
            CoconutAPIError: If the API responded with an error status
        """
        start_time = time.perf_counter()
        with create_span(
            f"coconut.{operation}",
            attributes={"http.method": method, "coconut.path": path},
        ):
            try:
                async with httpx.AsyncClient(
                    auth=(self.api_key, ""),
                    timeout=self.timeout,
                    transport=self._transport,
                ) as client:
                    response = await client.request(
                        method=method,
                        url=f"{self.endpoint}{path}",
                        headers={"Accept": "application/json"},
                        json=data,
                    )
            except httpx.TransportError as e:
                record_exception(e)
                COCONUT_API_REQUESTS_TOTAL.labels(operation=operation, status="unreachable").inc()
                logger.warning(
                    "Coconut API unreachable",
                    extra={"operation": operation, "error": str(e)},
                )
                raise CoconutConnectionError(f"Could not reach Coconut API: {e}") from e
            finally:
                COCONUT_API_REQUEST_DURATION_SECONDS.labels(operation=operation).observe(
                    time.perf_counter() - start_time
                )

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                body = self._json_body(response)
                error = CoconutAPIError(
                    body.get("message") or f"Coconut API returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    error_code=body.get("error_code"),
                    response=body,
                )
                record_exception(error)
                COCONUT_API_REQUESTS_TOTAL.labels(operation=operation, status="rejected").inc()
                logger.warning(
                    "Coconut API rejected request",
                    extra={
                        "operation": operation,
                        "status_code": response.status_code,
                        "error_code": error.error_code,
                    },
                )
                raise error from e

            COCONUT_API_REQUESTS_TOTAL.labels(operation=operation, status="ok").inc()
            return self._json_body(response)

    @staticmethod
    def _json_body(response: httpx.Response) -> dict:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def create_job(self, params: dict[str, Any]) -> dict:
        """Create a Coconut job.

        Args:
            params: Job parameters (input, storage, notification, outputs)

        Returns:
            Job data returned by Coconut
        """
        return await self._make_request("create_job", "POST", "/jobs", params)

    async def retrieve_job(self, coconut_id: str) -> dict:
        """Retrieve current info of a Coconut job."""
        return await self._make_request("retrieve_job", "GET", f"/jobs/{coconut_id}")

    async def retrieve_metadata(self, coconut_id: str) -> dict:
        """Retrieve input and output metadata of a Coconut job."""
        return await self._make_request("retrieve_metadata", "GET", f"/metadata/jobs/{coconut_id}")
