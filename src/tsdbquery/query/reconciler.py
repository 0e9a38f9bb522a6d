"""
Response reconciliation.

The backend answers the batch request with a flat list of series that may be
reordered, merged or fanned out, and answers expression requests without any
correlation key besides the URL it was asked for. This module maps every
returned row back to the planned query that produced it.

Metric rows:
    - protocol version 3 echoes ``query.index``, the position of the
      sub-query in the batch, so the mapping is exact;
    - older versions need a heuristic: the first query (declaration order) with
      the same metric name that either uses filters or whose every tag accepts
      the series' tag value. Rows that match nothing are attributed to the
      first query and counted as misses.

Expression rows carry the ``gexpIndex`` parameter of the request they answer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Generic, Sequence, TypeVar

import structlog

from tsdbquery.query.builder import PlannedExpression, PlannedMetric
from tsdbquery.query.models import ExpressionResponse, MetricQuery, RawSeries

logger = structlog.get_logger()

WILDCARD = "*"

_GEXP_INDEX = re.compile(r"[?&]gexpIndex=(\d+)")

P = TypeVar("P", PlannedMetric, PlannedExpression)


@dataclass(frozen=True)
class ReconciledRow(Generic[P]):
    series: RawSeries
    planned: P


def tag_matches(query_value: str, series_value: str | None) -> bool:
    """True when a (pipe-expanded) tag value accepts the series' value."""
    if query_value == WILDCARD:
        return True
    if series_value is None:
        return False
    return series_value in query_value.split("|")


def query_matches(query: MetricQuery, series: RawSeries) -> bool:
    if query.metric != series.metric:
        return False
    # One filtered query can fan out into many series
    if query.uses_filters:
        return True
    return all(tag_matches(value, series.tags.get(key)) for key, value in (query.tags or {}).items())


def find_query_index(queries: Sequence[MetricQuery], series: RawSeries) -> int:
    """Index of the first query that could have produced ``series``, else -1."""
    for index, query in enumerate(queries):
        if query_matches(query, series):
            return index
    return -1


def extract_gexp_index(url: str) -> int:
    """Recover the correlation index echoed in an expression request URL, else -1."""
    match = _GEXP_INDEX.search(url)
    if match is None:
        return -1
    return int(match.group(1))


class ResponseReconciler:
    """Maps response rows to planned queries.

    ``misses`` counts rows attributed by the index-0 fallback, ``dropped`` counts
    rows that could not be attributed at all.
    """

    def __init__(self, version: int = 1) -> None:
        self._version = version
        self.misses = 0
        self.dropped = 0

    def _fallback(self, kind: str, **fields: object) -> int:
        self.misses += 1
        logger.warning("reconciliation_miss", kind=kind, fallback_index=0, **fields)
        return 0

    def _metric_index(self, series: RawSeries, queries: Sequence[MetricQuery]) -> int:
        if self._version >= 3:
            if series.origin_index is None:
                return self._fallback("metric", metric=series.metric, reason="missing_origin_index")
            return series.origin_index

        index = find_query_index(queries, series)
        if index == -1:
            return self._fallback("metric", metric=series.metric, tags=series.tags)
        return index

    def reconcile_metrics(
        self,
        series_list: Sequence[RawSeries],
        planned: Sequence[PlannedMetric],
    ) -> list[ReconciledRow[PlannedMetric]]:
        if not planned:
            return []
        queries = [p.query for p in planned]
        rows: list[ReconciledRow[PlannedMetric]] = []
        for series in series_list:
            index = self._metric_index(series, queries)
            if not 0 <= index < len(planned):
                self.dropped += 1
                logger.warning(
                    "metric_row_dropped",
                    metric=series.metric,
                    index=index,
                    queries=len(planned),
                )
                continue
            rows.append(ReconciledRow(series=series, planned=planned[index]))
        return rows

    def reconcile_expressions(
        self,
        responses: Sequence[ExpressionResponse],
        planned: Sequence[PlannedExpression],
    ) -> list[ReconciledRow[PlannedExpression]]:
        rows: list[ReconciledRow[PlannedExpression]] = []
        for response in responses:
            index = extract_gexp_index(response.url)
            if index == -1:
                index = self._fallback("gexp", url=response.url)
            if not 0 <= index < len(planned):
                self.dropped += len(response.series)
                logger.warning(
                    "gexp_row_dropped",
                    gexp_index=index,
                    rows=len(response.series),
                    expressions=len(planned),
                )
                continue
            rows.extend(ReconciledRow(series=s, planned=planned[index]) for s in response.series)
        return rows
