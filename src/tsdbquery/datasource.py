"""
OpenTSDB datasource.

Entry point used by the panel layer: evaluates a list of targets over a time
window, runs annotation queries and answers the autocomplete lookups.
"""

from __future__ import annotations

import math
import re
from typing import Any, Iterable, Mapping

import structlog

from tsdbquery.cache import TagKeyCache
from tsdbquery.clients.opentsdb import OpenTSDBClient
from tsdbquery.config.settings import RESOLUTION_MILLISECOND, Settings, get_settings
from tsdbquery.core.errors import TsdbQueryError
from tsdbquery.logging import bind_context
from tsdbquery.query.builder import BatchQueryBuilder
from tsdbquery.query.dispatcher import RequestDispatcher
from tsdbquery.query.models import (
    AnnotationEvent,
    MetricQuery,
    ReconciledSeries,
    Target,
    TimeWindow,
)
from tsdbquery.query.normalizer import TargetNormalizer
from tsdbquery.query.reconciler import ResponseReconciler
from tsdbquery.query.transformer import SeriesTransformer
from tsdbquery.templating import FORMAT_DISTRIBUTED, ScopedVars, TemplateInterpolator, TemplateSrv

logger = structlog.get_logger()

ANNOTATION_AGGREGATOR = "sum"

_METRICS_QUERY = re.compile(r"metrics\((.*)\)")
_TAG_NAMES_QUERY = re.compile(r"tag_names\((.*)\)")
_TAG_VALUES_QUERY = re.compile(r"tag_values\((.*?),\s?(.*)\)")
_TAG_NAMES_SUGGEST_QUERY = re.compile(r"suggest_tagk\((.*)\)")
_TAG_VALUES_SUGGEST_QUERY = re.compile(r"suggest_tagv\((.*)\)")


class OpenTSDBDatasource:
    """Query translation and reconciliation against one OpenTSDB backend."""

    name = "opentsdb"

    def __init__(
        self,
        client: OpenTSDBClient,
        *,
        template_srv: TemplateInterpolator | None = None,
        version: int = 1,
        resolution: int = 1,
        lookup_limit: int = 1000,
        query_timeout: float | None = None,
        tag_keys: TagKeyCache | None = None,
    ) -> None:
        self._client = client
        self._template_srv = template_srv or TemplateSrv()
        self.version = version
        self.ms_resolution = resolution == RESOLUTION_MILLISECOND
        self.lookup_limit = lookup_limit
        self.tag_keys = tag_keys or TagKeyCache()

        self._normalizer = TargetNormalizer(self._template_srv)
        self._builder = BatchQueryBuilder(
            self._normalizer,
            version=version,
            ms_resolution=self.ms_resolution,
        )
        self._dispatcher = RequestDispatcher(client, timeout=query_timeout)
        self.reconciler = ResponseReconciler(version=version)
        self._transformer = SeriesTransformer(self._template_srv, ms_resolution=self.ms_resolution)

        self._aggregators: list[str] | None = None
        self._filter_types: list[str] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        template_srv: TemplateInterpolator | None = None,
    ) -> "OpenTSDBDatasource":
        settings = settings or get_settings()
        auth = None
        if settings.basic_auth_user:
            password = settings.basic_auth_password.get_secret_value() if settings.basic_auth_password else ""
            auth = (settings.basic_auth_user, password)
        client = OpenTSDBClient(
            settings.url,
            auth=auth,
            auth_header=settings.auth_header.get_secret_value() if settings.auth_header else None,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
            backoff_factor=settings.http_retry_backoff_factor,
        )
        return cls(
            client,
            template_srv=template_srv,
            version=settings.version,
            resolution=settings.resolution,
            lookup_limit=settings.lookup_limit,
            query_timeout=settings.query_timeout,
        )

    async def query(
        self,
        targets: Iterable[Target | Mapping[str, Any]],
        window: TimeWindow,
        scoped_vars: ScopedVars | None = None,
        interval: str | None = None,
    ) -> list[ReconciledSeries]:
        """Evaluate one panel. Series come back in target declaration order."""
        plan = self._builder.build(targets, window, scoped_vars, interval)
        # No valid targets, skip the round trip
        if plan.is_empty:
            return []

        result = await self._dispatcher.dispatch(plan.batch, plan.expression_requests)

        ordered: list[tuple[int, ReconciledSeries]] = []
        if result.batch is not None:
            group_by_tags = plan.group_by_tags()
            for row in self.reconciler.reconcile_metrics(result.batch, plan.metrics):
                self.tag_keys.save(row.series)
                series = self._transformer.transform_metric(
                    row.series, row.planned.target, group_by_tags, scoped_vars
                )
                ordered.append((row.planned.position, series))

        for row in self.reconciler.reconcile_expressions(result.expressions, plan.expressions):
            series = self._transformer.transform_expression(row.series, row.planned.target)
            ordered.append((row.planned.position, series))

        ordered.sort(key=lambda item: item[0])
        bind_context(window_start=window.start, window_end=window.end).debug(
            "panel_evaluated",
            series=len(ordered),
            metric_queries=len(plan.metrics),
            expression_queries=len(plan.expressions),
        )
        return [series for _, series in ordered]

    async def annotation_query(
        self,
        metric: str,
        window: TimeWindow,
        *,
        is_global: bool = False,
    ) -> list[AnnotationEvent]:
        batch = self._builder.build_batch(
            [MetricQuery(metric=metric, aggregator=ANNOTATION_AGGREGATOR)],
            window,
        )
        if batch is None:
            return []
        rows = await self._client.query(batch)
        if not rows:
            return []

        annotations = rows[0].global_annotations if is_global else rows[0].annotations
        return [
            AnnotationEvent(text=a.description, time_ms=math.floor(a.start_time) * 1000)
            for a in annotations
        ]

    def target_contains_template(self, target: Target | Mapping[str, Any]) -> bool:
        if not isinstance(target, Target):
            target = Target.from_dict(target)
        if any(self._template_srv.variable_exists(f.filter) for f in target.filters):
            return True
        return any(self._template_srv.variable_exists(v) for v in target.tags.values())

    async def suggest_tag_keys(self, metric: str) -> list[str]:
        return self.tag_keys.get(metric)

    async def _suggest(self, query: str, type_: str) -> list[str]:
        return await self._client.suggest(query, type_, self.lookup_limit)

    async def _metric_key_value_lookup(self, metric: str, keys: str) -> list[str]:
        if not metric or not keys:
            return []

        keys_list = [key.strip() for key in keys.split(",")]
        key = keys_list[0]
        keys_query = f"{key}=*"
        if len(keys_list) > 1:
            keys_query += "," + ",".join(keys_list[1:])

        results = await self._client.lookup(f"{metric}{{{keys_query}}}", self.lookup_limit)
        values: list[str] = []
        for result in results:
            value = (result.get("tags") or {}).get(key)
            if value is not None and value not in values:
                values.append(value)
        return values

    async def _metric_key_lookup(self, metric: str) -> list[str]:
        if not metric:
            return []

        results = await self._client.lookup(metric, 1000)
        keys: list[str] = []
        for result in results:
            for key in result.get("tags") or {}:
                if key not in keys:
                    keys.append(key)
        return keys

    async def metric_find_query(self, query: str) -> list[dict[str, str]]:
        """Resolve a variable query such as ``tag_values(sys.cpu, host)``."""
        if not query:
            return []

        interpolated = self._template_srv.replace(query, {}, FORMAT_DISTRIBUTED)
        values: list[str] | None = None

        if match := _METRICS_QUERY.search(interpolated):
            values = await self._suggest(match.group(1), "metrics")
        elif match := _TAG_NAMES_QUERY.search(interpolated):
            values = await self._metric_key_lookup(match.group(1))
        elif match := _TAG_VALUES_QUERY.search(interpolated):
            values = await self._metric_key_value_lookup(match.group(1), match.group(2))
        elif match := _TAG_NAMES_SUGGEST_QUERY.search(interpolated):
            values = await self._suggest(match.group(1), "tagk")
        elif match := _TAG_VALUES_SUGGEST_QUERY.search(interpolated):
            values = await self._suggest(match.group(1), "tagv")

        return [{"text": value} for value in values or []]

    async def test_datasource(self) -> dict[str, str]:
        try:
            await self._suggest("cpu", "metrics")
        except TsdbQueryError as exc:
            logger.warning("datasource_test_failed", error=str(exc))
            return {"status": "error", "message": str(exc)}
        return {"status": "success", "message": "Data source is working"}

    async def get_aggregators(self) -> list[str]:
        if self._aggregators is None:
            self._aggregators = await self._client.aggregators()
        return list(self._aggregators)

    async def get_filter_types(self) -> list[str]:
        if self._filter_types is None:
            self._filter_types = await self._client.filter_types()
        return list(self._filter_types)
