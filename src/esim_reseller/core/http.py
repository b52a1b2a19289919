import time
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from esim_reseller.config import settings
from esim_reseller.core.exceptions import SupplierHTTPError
from esim_reseller.core.logging import get_logger
from esim_reseller.core.resilience import RETRYABLE_EXCEPTIONS, get_circuit_breaker

logger = get_logger(__name__)


def _sanitize_headers(headers: dict[str, str]) -> dict[str, str]:
    """Redact sensitive header values for logging."""
    sensitive = {"authorization", "x-api-key", "rt-accesscode", "rt-secretkey"}
    return {
        k: "***" if k.lower() in sensitive else v
        for k, v in headers.items()
    }


def _sanitize_body(body: dict[str, Any] | None) -> dict[str, Any] | None:
    """Redact credentials from form/json bodies (OAuth token requests)."""
    if not body:
        return body
    sensitive = {"client_secret", "password", "secret"}
    return {k: "***" if k.lower() in sensitive else v for k, v in body.items()}


class HTTPClient:
    """Async HTTP client wrapper for supplier and payment provider requests.

    Uses a shared client instance with connection pooling. Network errors are
    retried with exponential backoff; every failure is raised as
    SupplierHTTPError so adapters can classify it.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        auth: tuple[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_headers = headers or {}
        self.timeout = timeout or settings.http_timeout
        self.auth = auth
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                http2=True,
                auth=self.auth,
                limits=httpx.Limits(
                    max_keepalive_connections=settings.http_max_keepalive,
                    max_connections=settings.http_max_connections,
                    keepalive_expiry=30.0,
                ),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        supplier: str = "unknown",
        use_circuit_breaker: bool = True,
    ) -> dict[str, Any]:
        """Make an HTTP request with retry and circuit breaker.

        Returns the decoded JSON body of a 2xx response. Raises
        SupplierHTTPError for non-2xx statuses, non-JSON bodies (suppliers
        answer with HTML error pages when down), network failures and an
        open circuit.
        """
        url = f"{self.base_url}{path}"
        merged_headers = {**self.default_headers, **(headers or {})}
        circuit_breaker = get_circuit_breaker(supplier)

        if use_circuit_breaker and not await circuit_breaker.can_execute():
            logger.warning(
                "circuit_breaker_rejected",
                supplier=supplier,
                method=method,
                url=url,
            )
            raise SupplierHTTPError(
                message="Supplier temporarily unavailable (circuit breaker open)",
                supplier=supplier,
                transient=True,
            )

        logger.info(
            "supplier_request",
            supplier=supplier,
            method=method,
            url=url,
            params=params,
            body=_sanitize_body(json or data),
            headers=_sanitize_headers(merged_headers),
        )

        @retry(
            retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
            stop=stop_after_attempt(settings.retry_max_attempts),
            wait=wait_exponential(
                multiplier=settings.retry_multiplier,
                min=settings.retry_min_wait,
                max=settings.retry_max_wait,
            ),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                "request_retry",
                supplier=supplier,
                method=method,
                url=url,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            ),
        )
        async def _do_request() -> httpx.Response:
            client = await self._get_client()
            return await client.request(
                method=method,
                url=url,
                params=params,
                json=json,
                data=data,
                headers=merged_headers,
            )

        start_time = time.perf_counter()
        try:
            response = await _do_request()
        except httpx.RequestError as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "supplier_connection_error",
                supplier=supplier,
                method=method,
                url=url,
                elapsed_ms=round(elapsed_ms, 2),
                error=str(e),
            )
            if use_circuit_breaker:
                await circuit_breaker.record_failure(e)
            raise SupplierHTTPError(
                message=f"Request to supplier failed: {e}",
                supplier=supplier,
                transient=True,
            ) from e

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        content_type = response.headers.get("content-type", "")
        try:
            body = response.json()
        except ValueError:
            body = None

        logger.info(
            "supplier_response",
            supplier=supplier,
            method=method,
            url=url,
            status=response.status_code,
            elapsed_ms=round(elapsed_ms, 2),
            body=body if body is not None else {"raw": response.text[:500]},
        )

        if response.status_code >= 500 and use_circuit_breaker:
            await circuit_breaker.record_failure(
                Exception(f"HTTP {response.status_code}")
            )

        if response.is_error:
            raise SupplierHTTPError(
                message=f"Supplier returned {response.status_code}",
                supplier=supplier,
                http_status=response.status_code,
                body=body if body is not None else {"raw": response.text},
            )

        if body is None or "text/html" in content_type:
            raise SupplierHTTPError(
                message="Supplier returned a non-JSON response",
                supplier=supplier,
                http_status=response.status_code,
                body={"raw": response.text[:500]},
            )

        if use_circuit_breaker:
            await circuit_breaker.record_success()

        return body if isinstance(body, dict) else {"data": body}

    async def get(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        supplier: str = "unknown",
    ) -> dict[str, Any]:
        """Make a GET request."""
        return await self.request(
            "GET",
            path,
            params=params,
            headers=headers,
            supplier=supplier,
        )

    async def post(
        self,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        supplier: str = "unknown",
    ) -> dict[str, Any]:
        """Make a POST request."""
        return await self.request(
            "POST",
            path,
            json=json,
            data=data,
            params=params,
            headers=headers,
            supplier=supplier,
        )
