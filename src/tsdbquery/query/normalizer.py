"""
Target normalization.

Turns one parsed Target into the query fragment the backend understands. The
normalizer never fails on odd field values: anything it cannot interpret is
left off the query and the backend gets the final word.
"""

from __future__ import annotations

import re

import structlog

from tsdbquery.query.models import (
    FILL_POLICY_NONE,
    QUERY_TYPE_GEXP,
    ComputedRateOptions,
    ExpressionQuery,
    MetricQuery,
    NormalizedQuery,
    TagFilter,
    Target,
)
from tsdbquery.templating import FORMAT_PIPE, ScopedVars, TemplateInterpolator

logger = structlog.get_logger()

DEFAULT_AGGREGATOR = "avg"
DEFAULT_DOWNSAMPLE_INTERVAL = "1m"

# "0.5s", "1.25s": the backend only accepts integral intervals
_FRACTIONAL_SECONDS = re.compile(r"\.[0-9]+s")


def _parse_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    match = re.match(r"\s*([+-]?\d+)", value)
    if match is None:
        return None
    return int(match.group(1))


def _format_number(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)


def normalize_interval(interval: str) -> str:
    """Rewrite a fractional-second interval as milliseconds (``0.5s`` -> ``500ms``)."""
    if not _FRACTIONAL_SECONDS.search(interval):
        return interval
    match = re.match(r"\s*([0-9]*\.?[0-9]+)", interval)
    if match is None:
        return interval
    return _format_number(float(match.group(1)) * 1000) + "ms"


def compute_rate_options(target: Target) -> ComputedRateOptions | None:
    rate = target.rate
    if not rate.enabled:
        return None

    counter_max = _parse_int(rate.counter_max)
    reset_value = _parse_int(rate.counter_reset_value)
    if counter_max is None and rate.counter_max and rate.counter_max.strip():
        logger.debug("rate_option_ignored", option="counterMax", value=rate.counter_max)
    if reset_value is None and rate.counter_reset_value and rate.counter_reset_value.strip():
        logger.debug("rate_option_ignored", option="counterResetValue", value=rate.counter_reset_value)
    return ComputedRateOptions(
        counter=rate.is_counter,
        counter_max=counter_max,
        reset_value=reset_value,
        drop_resets=counter_max is None and not reset_value,
    )


class TargetNormalizer:
    """Builds MetricQuery/ExpressionQuery values from dashboard targets."""

    def __init__(self, template_srv: TemplateInterpolator) -> None:
        self._template_srv = template_srv

    def _interpolate(self, text: str | None, scoped_vars: ScopedVars | None) -> str:
        return self._template_srv.replace(text, scoped_vars, FORMAT_PIPE)

    def normalize(
        self,
        target: Target,
        scoped_vars: ScopedVars | None = None,
        interval: str | None = None,
    ) -> NormalizedQuery | None:
        """Normalize one target; None means the target is skipped."""
        if target.hide:
            return None
        if target.query_type == QUERY_TYPE_GEXP:
            return self.normalize_expression(target, scoped_vars)
        return self.normalize_metric(target, scoped_vars, interval)

    def normalize_expression(
        self,
        target: Target,
        scoped_vars: ScopedVars | None = None,
    ) -> ExpressionQuery | None:
        if target.hide or not target.gexp:
            return None
        expression = self._interpolate(target.gexp, scoped_vars)
        if not expression:
            return None
        return ExpressionQuery(expression=expression)

    def normalize_metric(
        self,
        target: Target,
        scoped_vars: ScopedVars | None = None,
        interval: str | None = None,
    ) -> MetricQuery | None:
        if target.hide or not target.metric:
            return None
        metric = self._interpolate(target.metric, scoped_vars)
        if not metric:
            return None

        aggregator = DEFAULT_AGGREGATOR
        if target.aggregator:
            aggregator = self._template_srv.replace(target.aggregator) or DEFAULT_AGGREGATOR

        filters: tuple[TagFilter, ...] | None = None
        tags: dict[str, str] | None = None
        if target.filters:
            filters = tuple(
                TagFilter(
                    tagk=f.tagk,
                    filter=self._interpolate(f.filter, scoped_vars),
                    type=f.type,
                    group_by=f.group_by,
                )
                for f in target.filters
            )
        elif target.tags:
            tags = {k: self._interpolate(v, scoped_vars) for k, v in target.tags.items()}

        return MetricQuery(
            metric=metric,
            aggregator=aggregator,
            downsample=self._downsample(target, interval),
            rate_options=compute_rate_options(target),
            tags=tags,
            filters=filters,
            explicit_tags=target.explicit_tags,
        )

    def _downsample(self, target: Target, interval: str | None) -> str | None:
        options = target.downsample
        if options.disabled:
            return None

        raw_interval = options.interval or interval or ""
        resolved = self._template_srv.replace(raw_interval).strip() or DEFAULT_DOWNSAMPLE_INTERVAL
        resolved = normalize_interval(resolved)

        downsample = f"{resolved}-{options.aggregator or DEFAULT_AGGREGATOR}"
        if options.fill_policy and options.fill_policy != FILL_POLICY_NONE:
            downsample += f"-{options.fill_policy}"
        return downsample
