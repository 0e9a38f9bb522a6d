"""
Request dispatch for one panel evaluation.

The batch request and every expression request run as sibling tasks of one
task group under a single deadline. The first failure cancels the remaining
requests and fails the whole evaluation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from tsdbquery.core.errors import TransportError, TsdbQueryError, with_request
from tsdbquery.query.models import BatchRequest, ExpressionRequest, ExpressionResponse, RawSeries

logger = structlog.get_logger()


class QueryBackend(Protocol):
    async def query(self, batch: BatchRequest) -> list[RawSeries]:
        ...

    async def query_gexp(self, request: ExpressionRequest) -> ExpressionResponse:
        ...


@dataclass
class DispatchResult:
    batch: list[RawSeries] | None = None
    expressions: list[ExpressionResponse] = field(default_factory=list)


def _first_error(group: BaseExceptionGroup) -> BaseException:
    for exc in group.exceptions:
        if isinstance(exc, BaseExceptionGroup):
            return _first_error(exc)
        if isinstance(exc, TsdbQueryError):
            return exc
    return group.exceptions[0]


class RequestDispatcher:
    def __init__(self, backend: QueryBackend, *, timeout: float | None = None) -> None:
        self._backend = backend
        self._timeout = timeout

    async def _run_batch(self, batch: BatchRequest) -> list[RawSeries]:
        try:
            return await self._backend.query(batch)
        except TsdbQueryError as exc:
            raise with_request(exc, "batch")

    async def _run_expression(self, request: ExpressionRequest) -> ExpressionResponse:
        try:
            return await self._backend.query_gexp(request)
        except TsdbQueryError as exc:
            raise with_request(exc, f"gexp[{request.correlation_index}]")

    async def dispatch(
        self,
        batch: BatchRequest | None,
        expressions: list[ExpressionRequest],
    ) -> DispatchResult:
        """Run all sub-requests; results are returned in request order."""
        result = DispatchResult()
        if batch is None and not expressions:
            return result

        try:
            async with asyncio.timeout(self._timeout):
                try:
                    async with asyncio.TaskGroup() as group:
                        batch_task = group.create_task(self._run_batch(batch)) if batch else None
                        expression_tasks = [
                            group.create_task(self._run_expression(request)) for request in expressions
                        ]
                except BaseExceptionGroup as eg:
                    error = _first_error(eg)
                    logger.warning(
                        "panel_evaluation_failed",
                        error_type=type(error).__name__,
                        error=str(error),
                    )
                    raise error from None
        except TimeoutError as exc:
            raise TransportError(
                "Query deadline exceeded",
                {"timeout": self._timeout, "requests": (1 if batch else 0) + len(expressions)},
            ) from exc

        if batch_task is not None:
            result.batch = batch_task.result()
        result.expressions = [task.result() for task in expression_tasks]
        return result
