"""
Data models for the query pipeline.

Raw panel targets are parsed once into Target; the normalizer turns each
visible target into a MetricQuery or an ExpressionQuery. Everything here lives
for a single panel evaluation.
"""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from tsdbquery.core.errors import BuildError, ProtocolError
from tsdbquery.timeutil import RawTime, convert_to_tsdb_time, to_epoch_ms

QUERY_TYPE_METRIC = "metric"
QUERY_TYPE_GEXP = "gexp"
QUERY_TYPES = (QUERY_TYPE_METRIC, QUERY_TYPE_GEXP)

FILL_POLICY_NONE = "none"


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class TagFilter:
    """One OpenTSDB filter: ``{type, tagk, filter, groupBy}``."""

    tagk: str
    filter: str
    type: str = "literal_or"
    group_by: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TagFilter":
        return cls(
            tagk=str(data.get("tagk", "")),
            filter=str(data.get("filter", "")),
            type=str(data.get("type") or "literal_or"),
            group_by=_as_bool(data.get("groupBy", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "tagk": self.tagk,
            "filter": self.filter,
            "groupBy": self.group_by,
        }


@dataclass(frozen=True)
class DownsampleOptions:
    disabled: bool = False
    interval: str | None = None
    aggregator: str | None = None
    fill_policy: str | None = None


@dataclass(frozen=True)
class RateOptions:
    enabled: bool = False
    is_counter: bool = False
    counter_max: str | None = None
    counter_reset_value: str | None = None


@dataclass(frozen=True)
class Target:
    """One panel row as configured in the dashboard."""

    ref_id: str | None = None
    query_type: str = QUERY_TYPE_METRIC
    metric: str | None = None
    aggregator: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    filters: tuple[TagFilter, ...] = ()
    downsample: DownsampleOptions = field(default_factory=DownsampleOptions)
    rate: RateOptions = field(default_factory=RateOptions)
    explicit_tags: bool = False
    alias: str | None = None
    gexp: str | None = None
    gexp_alias: str | None = None
    hide: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Target":
        """Parse a loosely typed target (dashboard JSON field names)."""
        if not isinstance(data, Mapping):
            raise BuildError("Target must be a mapping", {"target": repr(data)})

        query_type = data.get("queryType") or QUERY_TYPE_METRIC
        if query_type not in QUERY_TYPES:
            raise BuildError(
                f"Unrecognized query type: {query_type}",
                {"refId": data.get("refId")},
            )

        raw_tags = data.get("tags") or {}
        if not isinstance(raw_tags, Mapping):
            raise BuildError("Target tags must be a mapping", {"refId": data.get("refId")})
        raw_filters = data.get("filters") or []
        if not isinstance(raw_filters, (list, tuple)):
            raise BuildError("Target filters must be a list", {"refId": data.get("refId")})

        return cls(
            ref_id=_as_str(data.get("refId")),
            query_type=query_type,
            metric=_as_str(data.get("metric")),
            aggregator=_as_str(data.get("aggregator")),
            tags={str(k): "" if v is None else str(v) for k, v in raw_tags.items()},
            filters=tuple(TagFilter.from_dict(f) for f in raw_filters if isinstance(f, Mapping)),
            downsample=DownsampleOptions(
                disabled=_as_bool(data.get("disableDownsampling", False)),
                interval=_as_str(data.get("downsampleInterval")),
                aggregator=_as_str(data.get("downsampleAggregator")),
                fill_policy=_as_str(data.get("downsampleFillPolicy")),
            ),
            rate=RateOptions(
                enabled=_as_bool(data.get("shouldComputeRate", False)),
                is_counter=_as_bool(data.get("isCounter", False)),
                counter_max=_as_str(data.get("counterMax")),
                counter_reset_value=_as_str(data.get("counterResetValue")),
            ),
            explicit_tags=_as_bool(data.get("explicitTags", False)),
            alias=_as_str(data.get("alias")),
            gexp=_as_str(data.get("gexp")),
            gexp_alias=_as_str(data.get("gexpAlias")),
            hide=_as_bool(data.get("hide", False)),
        )


@dataclass(frozen=True)
class ComputedRateOptions:
    counter: bool
    drop_resets: bool
    counter_max: int | None = None
    reset_value: int | None = None

    def to_dict(self) -> dict[str, Any]:
        options: dict[str, Any] = {"counter": self.counter}
        if self.counter_max is not None:
            options["counterMax"] = self.counter_max
        if self.reset_value is not None:
            options["resetValue"] = self.reset_value
        options["dropResets"] = self.drop_resets
        return options


@dataclass(frozen=True)
class MetricQuery:
    """A normalized sub-query of the batch request."""

    metric: str
    aggregator: str
    downsample: str | None = None
    rate_options: ComputedRateOptions | None = None
    tags: dict[str, str] | None = None
    filters: tuple[TagFilter, ...] | None = None
    explicit_tags: bool = False

    @property
    def uses_filters(self) -> bool:
        return bool(self.filters)

    def group_by_keys(self) -> list[str]:
        """Tag keys this query groups on (filters take precedence over tags)."""
        if self.filters:
            return [f.tagk for f in self.filters]
        return list(self.tags or {})

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"metric": self.metric, "aggregator": self.aggregator}
        if self.downsample is not None:
            body["downsample"] = self.downsample
        if self.rate_options is not None:
            body["rate"] = True
            body["rateOptions"] = self.rate_options.to_dict()
        if self.filters:
            body["filters"] = [f.to_dict() for f in self.filters]
        elif self.tags:
            body["tags"] = dict(self.tags)
        if self.explicit_tags:
            body["explicitTags"] = True
        return body


@dataclass(frozen=True)
class ExpressionQuery:
    """A normalized expression (gexp) query."""

    expression: str


NormalizedQuery = Union[MetricQuery, ExpressionQuery]


@dataclass(frozen=True)
class TimeWindow:
    start: int
    end: int | None = None

    def __post_init__(self) -> None:
        if self.end is not None and self.end < self.start:
            raise BuildError(
                "Time window end precedes start",
                {"start": self.start, "end": self.end},
            )

    @classmethod
    def from_raw(
        cls,
        raw_from: RawTime | None,
        raw_to: RawTime | None = "now",
        tz: tzinfo | None = None,
        now: datetime | None = None,
    ) -> "TimeWindow":
        """Build a window from dashboard range expressions such as ``now-6h``."""
        start = convert_to_tsdb_time(raw_from, round_up=False, tz=tz, now=now)
        if start is None:
            start = to_epoch_ms(now or datetime.now(timezone.utc))
        return cls(start=start, end=convert_to_tsdb_time(raw_to, round_up=True, tz=tz, now=now))


@dataclass(frozen=True)
class BatchRequest:
    window: TimeWindow
    queries: tuple[MetricQuery, ...]
    ms_resolution: bool = False
    global_annotations: bool = True
    show_query: bool = False

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "start": self.window.start,
            "queries": [q.to_dict() for q in self.queries],
            "msResolution": self.ms_resolution,
            "globalAnnotations": self.global_annotations,
        }
        if self.show_query:
            body["showQuery"] = True
        # Relative ranges (e.g. last hour) don't include an end time
        if self.window.end is not None:
            body["end"] = self.window.end
        return body


@dataclass(frozen=True)
class ExpressionRequest:
    window: TimeWindow
    expression: str
    correlation_index: int

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"start": self.window.start}
        if self.window.end is not None:
            params["end"] = self.window.end
        params["exp"] = self.expression
        params["gexpIndex"] = self.correlation_index
        return params


@dataclass(frozen=True)
class Annotation:
    description: str
    start_time: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Annotation":
        try:
            start_time = float(data.get("startTime") or 0)
        except (TypeError, ValueError) as exc:
            raise ProtocolError("Annotation startTime is not numeric", {"annotation": dict(data)}) from exc
        return cls(description=str(data.get("description") or ""), start_time=start_time)


@dataclass(frozen=True)
class RawSeries:
    """One row of a backend response."""

    metric: str
    tags: dict[str, str] = field(default_factory=dict)
    aggregate_tags: tuple[str, ...] = ()
    dps: dict[str, Any] = field(default_factory=dict)
    origin_index: int | None = None
    annotations: tuple[Annotation, ...] = ()
    global_annotations: tuple[Annotation, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> "RawSeries":
        if not isinstance(data, Mapping):
            raise ProtocolError("Response row is not an object", {"row": repr(data)[:200]})
        dps = data.get("dps") or {}
        if not isinstance(dps, Mapping):
            raise ProtocolError("Response datapoints are not a mapping", {"metric": data.get("metric")})
        tags = data.get("tags") or {}
        if not isinstance(tags, Mapping):
            raise ProtocolError("Response tags are not a mapping", {"metric": data.get("metric")})

        origin_index = None
        query = data.get("query")
        if isinstance(query, Mapping) and query.get("index") is not None:
            try:
                origin_index = int(query["index"])
            except (TypeError, ValueError):
                origin_index = None

        return cls(
            metric=str(data.get("metric") or ""),
            tags={str(k): str(v) for k, v in tags.items()},
            aggregate_tags=tuple(str(t) for t in data.get("aggregateTags") or ()),
            dps=dict(dps),
            origin_index=origin_index,
            annotations=tuple(Annotation.from_dict(a) for a in data.get("annotations") or ()),
            global_annotations=tuple(
                Annotation.from_dict(a) for a in data.get("globalAnnotations") or ()
            ),
        )


@dataclass(frozen=True)
class ReconciledSeries:
    """Terminal artifact consumed by the rendering layer."""

    label: str
    datapoints: list[tuple[float, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {"target": self.label, "datapoints": [[ts, v] for ts, v in self.datapoints]}


@dataclass(frozen=True)
class AnnotationEvent:
    text: str
    time_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "time": self.time_ms}


@dataclass(frozen=True)
class ExpressionResponse:
    """Rows of one expression request plus the URL the backend answered for."""

    url: str
    series: list[RawSeries]
