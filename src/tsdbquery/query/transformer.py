"""
Series transformation into the dashboard's ``{label, datapoints}`` format.
"""

from __future__ import annotations

import math
import re
from typing import Any, Mapping

from tsdbquery.core.errors import ProtocolError
from tsdbquery.query.models import RawSeries, ReconciledSeries, Target
from tsdbquery.templating import ScopedVars, TemplateInterpolator

_GEXP_ALIAS_TAG = re.compile(r"\$tag_([a-zA-Z0-9\-_./]+)")


def _timestamp(key: str, multiplier: int, metric: str) -> int | float:
    try:
        value = float(key) * multiplier
    except (TypeError, ValueError) as exc:
        raise ProtocolError(
            "Failed to parse datapoint timestamp",
            {"timestamp": key, "metric": metric},
        ) from exc
    if not math.isfinite(value):
        raise ProtocolError(
            "Failed to parse datapoint timestamp",
            {"timestamp": key, "metric": metric},
        )
    return int(value) if value.is_integer() else value


def datapoints_at_resolution(series: RawSeries, ms_resolution: bool) -> list[tuple[int | float, Any]]:
    """Convert the ``dps`` mapping to ``(timestamp_ms, value)`` pairs sorted by time.

    Millisecond-resolution backends already answer in ms; otherwise keys are
    seconds.
    """
    multiplier = 1 if ms_resolution else 1000
    points = [(_timestamp(k, multiplier, series.metric), v) for k, v in series.dps.items()]
    points.sort(key=lambda point: point[0])
    return points


def metric_label(series: RawSeries, group_by_tags: Mapping[str, Any]) -> str:
    label = series.metric
    tag_data = [f"{key}={value}" for key, value in series.tags.items() if key in group_by_tags]
    if tag_data:
        label += "{" + ", ".join(tag_data) + "}"
    return label


def gexp_label(series: RawSeries, target: Target) -> str:
    if not target.gexp_alias:
        return target.gexp or ""
    return _GEXP_ALIAS_TAG.sub(lambda m: series.tags.get(m.group(1), ""), target.gexp_alias)


class SeriesTransformer:
    def __init__(self, template_srv: TemplateInterpolator, *, ms_resolution: bool = False) -> None:
        self._template_srv = template_srv
        self._ms_resolution = ms_resolution

    def metric_label(
        self,
        series: RawSeries,
        target: Target,
        group_by_tags: Mapping[str, Any],
        scoped_vars: ScopedVars | None = None,
    ) -> str:
        if target.alias:
            alias_vars: dict[str, Any] = dict(scoped_vars or {})
            for key, value in series.tags.items():
                alias_vars[f"tag_{key}"] = {"value": value}
            return self._template_srv.replace(target.alias, alias_vars)
        return metric_label(series, group_by_tags)

    def transform_metric(
        self,
        series: RawSeries,
        target: Target,
        group_by_tags: Mapping[str, Any],
        scoped_vars: ScopedVars | None = None,
    ) -> ReconciledSeries:
        return ReconciledSeries(
            label=self.metric_label(series, target, group_by_tags, scoped_vars),
            datapoints=datapoints_at_resolution(series, self._ms_resolution),
        )

    def transform_expression(
        self,
        series: RawSeries,
        target: Target,
    ) -> ReconciledSeries:
        return ReconciledSeries(
            label=gexp_label(series, target),
            datapoints=datapoints_at_resolution(series, self._ms_resolution),
        )
