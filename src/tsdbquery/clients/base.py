from __future__ import annotations

from typing import Any

import httpx
import structlog
from circuitbreaker import CircuitBreaker, CircuitBreakerError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tsdbquery.core.errors import ProtocolError, TransportError

logger = structlog.get_logger()

AuthTypes = httpx.Auth | tuple[str, str] | None


class RetryableHTTPError(Exception):
    """HTTP errors that should be retried."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def is_retryable_status(status_code: int) -> bool:
    """Determine if HTTP status code is retryable."""
    return status_code in (408, 429, 500, 502, 503, 504)


def decode_json(response: httpx.Response) -> Any:
    """Parse a response body, raising ProtocolError when it is not JSON."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        logger.info(
            "http_invalid_json",
            status=response.status_code,
            url=str(response.url),
            error=str(exc),
        )
        raise ProtocolError(
            "Failed to parse response body",
            {"url": str(response.url)},
            status_code=response.status_code,
            body=response.text,
        ) from exc


class BaseHTTPClient:
    """Base HTTP client with retry logic and circuit breaker."""

    def __init__(
        self,
        base_url: str,
        *,
        auth: AuthTypes = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        circuit_failure_threshold: int = 5,
        circuit_recovery_timeout: int = 60,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._extra_headers = dict(headers or {})
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._backoff_factor = backoff_factor
        self._breaker = CircuitBreaker(
            failure_threshold=circuit_failure_threshold,
            recovery_timeout=circuit_recovery_timeout,
            expected_exception=RetryableHTTPError,
            name=f"tsdb:{self._base_url}",
        )
        self._guarded_send = self._breaker(self._send_with_retry)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self) -> dict[str, str]:
        """Override to provide custom headers."""
        headers = {"Accept": "application/json"}
        headers.update(self._extra_headers)
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        req_headers = self._headers()
        if headers:
            req_headers.update(headers)

        try:
            async with httpx.AsyncClient(timeout=self._timeout, auth=self._auth) as client:
                response = await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=req_headers,
                )
        except httpx.RequestError as exc:
            logger.warning("http_network_error", method=method, url=url, error=str(exc))
            raise RetryableHTTPError(f"{type(exc).__name__}: {exc}") from exc

        if is_retryable_status(response.status_code):
            logger.warning(
                "http_retryable_error",
                status=response.status_code,
                method=method,
                url=url,
            )
            raise RetryableHTTPError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        if not response.is_success:
            logger.error(
                "http_permanent_error",
                status=response.status_code,
                method=method,
                url=url,
                body=response.text[:200],
            )
            raise ProtocolError(
                f"Request failed status: {response.status_code} {response.reason_phrase}",
                {"method": method, "url": str(response.url)},
                status_code=response.status_code,
                body=response.text,
            )

        return response

    async def _send_with_retry(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RetryableHTTPError),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._backoff_factor, max=30),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, path, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Execute HTTP request with retry and circuit breaker."""
        url = f"{self._base_url}{path}"
        try:
            return await self._guarded_send(method, path, params=params, json=json, headers=headers)
        except RetryableHTTPError as exc:
            if exc.status_code is not None:
                raise ProtocolError(
                    f"Request failed status: {exc.status_code}",
                    {"method": method, "url": url, "attempts": self._max_retries},
                    status_code=exc.status_code,
                    body=exc.body,
                ) from exc
            raise TransportError(
                f"Request failed: {exc}",
                {"method": method, "url": url, "attempts": self._max_retries},
            ) from exc
        except CircuitBreakerError as exc:
            logger.warning("http_circuit_open", method=method, url=url)
            raise TransportError("Circuit open, backend unavailable", {"url": url}) from exc

    async def get(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Execute GET request and decode the JSON body."""
        return decode_json(await self._request("GET", path, params=params, headers=headers))

    async def post(
        self,
        path: str,
        *,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Execute POST request and decode the JSON body."""
        return decode_json(await self._request("POST", path, json=json, headers=headers))
