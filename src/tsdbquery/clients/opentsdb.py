"""
OpenTSDB HTTP API client.

Wraps the query, expression and discovery endpoints and turns their JSON
bodies into RawSeries rows.
"""

from __future__ import annotations

from typing import Any

import structlog

from tsdbquery.clients.base import AuthTypes, BaseHTTPClient, decode_json
from tsdbquery.core.errors import ProtocolError
from tsdbquery.query.models import BatchRequest, ExpressionRequest, ExpressionResponse, RawSeries

logger = structlog.get_logger()

DEFAULT_USER_AGENT = "tsdbquery/0.1.0"


def parse_series_list(data: Any, url: str) -> list[RawSeries]:
    if data is None:
        return []
    if isinstance(data, dict) and "error" in data:
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ProtocolError(f"Backend error: {message}", {"url": url})
    if not isinstance(data, list):
        raise ProtocolError(
            "Unexpected response shape, expected a list of series",
            {"url": url, "type": type(data).__name__},
        )
    return [RawSeries.from_dict(row) for row in data]


class OpenTSDBClient(BaseHTTPClient):
    """OpenTSDB API client with retry logic and circuit breaker."""

    def __init__(
        self,
        base_url: str,
        *,
        auth: AuthTypes = None,
        auth_header: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        headers = {"User-Agent": user_agent}
        if auth_header:
            headers["Authorization"] = auth_header
        super().__init__(
            base_url,
            auth=auth,
            headers=headers,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
        )

    async def query(self, batch: BatchRequest) -> list[RawSeries]:
        """POST the batch to /api/query."""
        body = batch.to_body()
        logger.debug("tsdb_batch_request", queries=len(batch.queries), start=body["start"])
        data = await self.post("/api/query", json=body, headers={"Content-Type": "application/json"})
        return parse_series_list(data, f"{self.base_url}/api/query")

    async def query_gexp(self, request: ExpressionRequest) -> ExpressionResponse:
        """GET one expression from /api/query/gexp."""
        logger.debug(
            "tsdb_gexp_request",
            expression=request.expression,
            gexp_index=request.correlation_index,
        )
        response = await self._request("GET", "/api/query/gexp", params=request.to_params())
        url = str(response.url)
        return ExpressionResponse(url=url, series=parse_series_list(decode_json(response), url))

    async def suggest(self, query: str, type_: str, max_results: int) -> list[str]:
        data = await self.get("/api/suggest", params={"type": type_, "q": query, "max": max_results})
        if not isinstance(data, list):
            return []
        return [str(item) for item in data]

    async def lookup(self, m: str, limit: int) -> list[dict[str, Any]]:
        data = await self.get("/api/search/lookup", params={"m": m, "limit": limit})
        if not isinstance(data, dict):
            return []
        results = data.get("results") or []
        return [r for r in results if isinstance(r, dict)]

    async def aggregators(self) -> list[str]:
        data = await self.get("/api/aggregators")
        if isinstance(data, list):
            return sorted(str(a) for a in data)
        return []

    async def filter_types(self) -> list[str]:
        data = await self.get("/api/config/filters")
        if isinstance(data, dict):
            return sorted(data.keys())
        return []
