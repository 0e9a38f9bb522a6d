"""
Batch query building.

All metric targets of a panel travel in one BatchRequest; every expression
target gets its own ExpressionRequest tagged with its position among the
panel's expressions so the response can be matched back to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import structlog

from tsdbquery.query.models import (
    BatchRequest,
    ExpressionQuery,
    ExpressionRequest,
    MetricQuery,
    Target,
    TimeWindow,
)
from tsdbquery.query.normalizer import TargetNormalizer
from tsdbquery.templating import ScopedVars

logger = structlog.get_logger()


@dataclass(frozen=True)
class PlannedMetric:
    """A metric query together with the target that produced it."""

    position: int
    target: Target
    query: MetricQuery


@dataclass(frozen=True)
class PlannedExpression:
    position: int
    target: Target
    query: ExpressionQuery
    request: ExpressionRequest


@dataclass
class QueryPlan:
    """Everything needed to dispatch and later reconcile one panel evaluation."""

    window: TimeWindow
    batch: BatchRequest | None = None
    metrics: list[PlannedMetric] = field(default_factory=list)
    expressions: list[PlannedExpression] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.batch is None and not self.expressions

    @property
    def expression_requests(self) -> list[ExpressionRequest]:
        return [e.request for e in self.expressions]

    def group_by_tags(self) -> dict[str, bool]:
        """Union of tag keys used by any metric query, in first-seen order."""
        keys: dict[str, bool] = {}
        for planned in self.metrics:
            for key in planned.query.group_by_keys():
                keys.setdefault(key, True)
        return keys


class BatchQueryBuilder:
    def __init__(
        self,
        normalizer: TargetNormalizer,
        *,
        version: int = 1,
        ms_resolution: bool = False,
    ) -> None:
        self._normalizer = normalizer
        self._version = version
        self._ms_resolution = ms_resolution

    def build(
        self,
        targets: Iterable[Target | Mapping[str, Any]],
        window: TimeWindow,
        scoped_vars: ScopedVars | None = None,
        interval: str | None = None,
    ) -> QueryPlan:
        plan = QueryPlan(window=window)

        for position, raw in enumerate(targets):
            target = raw if isinstance(raw, Target) else Target.from_dict(raw)
            query = self._normalizer.normalize(target, scoped_vars, interval)
            if query is None:
                continue
            if isinstance(query, MetricQuery):
                plan.metrics.append(PlannedMetric(position=position, target=target, query=query))
            else:
                request = ExpressionRequest(
                    window=window,
                    expression=query.expression,
                    correlation_index=len(plan.expressions),
                )
                plan.expressions.append(
                    PlannedExpression(position=position, target=target, query=query, request=request)
                )

        if plan.metrics:
            plan.batch = self.build_batch([m.query for m in plan.metrics], window)

        logger.debug(
            "query_plan_built",
            metric_queries=len(plan.metrics),
            expression_queries=len(plan.expressions),
        )
        return plan

    def build_batch(self, queries: list[MetricQuery], window: TimeWindow) -> BatchRequest | None:
        if not queries:
            return None
        return BatchRequest(
            window=window,
            queries=tuple(queries),
            ms_resolution=self._ms_resolution,
            global_annotations=True,
            show_query=self._version >= 3,
        )
