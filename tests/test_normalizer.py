"""Tests for target normalization.

Covers defaults, downsampling, rate options, tag/filter handling and
template interpolation of panel targets.
"""

import json

import pytest
from tsdbquery.core.errors import BuildError
from tsdbquery.query.models import ExpressionQuery, MetricQuery, Target
from tsdbquery.query.normalizer import (
    TargetNormalizer,
    compute_rate_options,
    normalize_interval,
)
from tsdbquery.templating import TemplateSrv


@pytest.fixture
def normalizer():
    """Normalizer with a multi-value host variable."""
    template_srv = TemplateSrv({"host": ["web1", "web2"], "agg": "sum", "dc": "us"})
    return TargetNormalizer(template_srv)


def _metric(normalizer, **fields) -> MetricQuery:
    data = {"metric": "sys.cpu.user", "downsampleAggregator": "avg"}
    data.update(fields)
    query = normalizer.normalize(Target.from_dict(data))
    assert isinstance(query, MetricQuery)
    return query


def test_hidden_target_is_skipped(normalizer):
    assert normalizer.normalize(Target.from_dict({"metric": "sys.cpu", "hide": True})) is None


def test_empty_metric_is_skipped(normalizer):
    assert normalizer.normalize(Target.from_dict({"metric": ""})) is None
    assert normalizer.normalize(Target.from_dict({})) is None


def test_empty_gexp_is_skipped(normalizer):
    assert normalizer.normalize(Target.from_dict({"queryType": "gexp", "gexp": ""})) is None


def test_missing_query_type_defaults_to_metric(normalizer):
    target = Target.from_dict({"metric": "sys.cpu"})
    assert target.query_type == "metric"
    assert isinstance(normalizer.normalize(target), MetricQuery)


def test_unknown_query_type_raises_build_error():
    with pytest.raises(BuildError, match="Unrecognized query type"):
        Target.from_dict({"queryType": "sql", "metric": "sys.cpu"})


def test_metric_name_is_interpolated(normalizer):
    assert _metric(normalizer, metric="sys.cpu.$dc").metric == "sys.cpu.us"


def test_aggregator_defaults_to_avg(normalizer):
    assert _metric(normalizer).aggregator == "avg"


def test_aggregator_is_interpolated(normalizer):
    assert _metric(normalizer, aggregator="$agg").aggregator == "sum"


def test_disable_downsampling_omits_field(normalizer):
    query = _metric(normalizer, disableDownsampling=True, downsampleInterval="5m")
    assert query.downsample is None
    assert "downsample" not in query.to_dict()


def test_blank_interval_defaults_to_one_minute(normalizer):
    query = _metric(normalizer, disableDownsampling=False, downsampleInterval="")
    assert query.downsample.startswith("1m-")
    assert query.downsample == "1m-avg"


def test_panel_interval_used_when_target_interval_blank(normalizer):
    target = Target.from_dict({"metric": "sys.cpu", "downsampleAggregator": "max"})
    query = normalizer.normalize(target, interval="30s")
    assert query.downsample == "30s-max"


def test_fractional_seconds_become_milliseconds(normalizer):
    assert _metric(normalizer, downsampleInterval="0.5s").downsample == "500ms-avg"


@pytest.mark.parametrize(
    "interval,expected",
    [
        ("1.5s", "1500ms"),
        ("0.25s", "250ms"),
        ("10s", "10s"),
        ("5m", "5m"),
    ],
)
def test_normalize_interval(interval, expected):
    assert normalize_interval(interval) == expected


def test_fill_policy_suffix(normalizer):
    assert _metric(normalizer, downsampleFillPolicy="nan").downsample == "1m-avg-nan"


def test_fill_policy_none_is_omitted(normalizer):
    assert _metric(normalizer, downsampleFillPolicy="none").downsample == "1m-avg"


@pytest.mark.parametrize(
    "counter_max,reset_value,drop_resets",
    [
        (None, None, True),
        ("100", None, False),
        (None, "0", True),
        (None, "5", False),
        ("100", "5", False),
    ],
)
def test_drop_resets_derivation(counter_max, reset_value, drop_resets):
    fields = {"metric": "sys.net.bytes", "shouldComputeRate": True, "isCounter": True}
    if counter_max is not None:
        fields["counterMax"] = counter_max
    if reset_value is not None:
        fields["counterResetValue"] = reset_value

    options = compute_rate_options(Target.from_dict(fields))
    assert options.drop_resets is drop_resets
    assert options.to_dict()["dropResets"] is drop_resets


def test_rate_options_serialization(normalizer):
    body = _metric(
        normalizer,
        shouldComputeRate=True,
        isCounter=True,
        counterMax="100",
        counterResetValue="5",
    ).to_dict()

    assert body["rate"] is True
    assert body["rateOptions"] == {
        "counter": True,
        "counterMax": 100,
        "resetValue": 5,
        "dropResets": False,
    }


def test_rate_disabled_has_no_rate_field(normalizer):
    body = _metric(normalizer).to_dict()
    assert "rate" not in body
    assert "rateOptions" not in body


def test_unparseable_counter_max_is_ignored():
    target = Target.from_dict({"metric": "m", "shouldComputeRate": True, "counterMax": "lots"})
    options = compute_rate_options(target)
    assert options.counter_max is None
    assert options.counter is False
    assert options.drop_resets is True


def test_tag_values_are_interpolated_with_pipe(normalizer):
    query = _metric(normalizer, tags={"host": "$host", "dc": "$dc"})
    assert query.tags == {"host": "web1|web2", "dc": "us"}
    assert list(query.to_dict()["tags"]) == ["host", "dc"]


def test_filters_take_precedence_over_tags(normalizer):
    query = _metric(
        normalizer,
        tags={"dc": "us"},
        filters=[{"type": "literal_or", "tagk": "host", "filter": "$host", "groupBy": True}],
    )
    body = query.to_dict()

    assert "tags" not in body
    assert body["filters"] == [
        {"type": "literal_or", "tagk": "host", "filter": "web1|web2", "groupBy": True}
    ]


def test_explicit_tags_only_emitted_when_true(normalizer):
    assert "explicitTags" not in _metric(normalizer, explicitTags=False).to_dict()
    assert _metric(normalizer, explicitTags=True).to_dict()["explicitTags"] is True


def test_expression_is_interpolated(normalizer):
    target = Target.from_dict({"queryType": "gexp", "gexp": "sum(sys.cpu{host=$host})"})
    query = normalizer.normalize(target)
    assert query == ExpressionQuery(expression="sum(sys.cpu{host=web1|web2})")


def test_normalization_is_deterministic(normalizer):
    raw = {
        "metric": "sys.cpu.$dc",
        "aggregator": "$agg",
        "downsampleInterval": "0.5s",
        "downsampleAggregator": "max",
        "downsampleFillPolicy": "zero",
        "shouldComputeRate": True,
        "counterMax": "1000",
        "tags": {"host": "$host", "core": "*"},
        "explicitTags": True,
    }

    first = normalizer.normalize(Target.from_dict(raw)).to_dict()
    second = normalizer.normalize(Target.from_dict(raw)).to_dict()
    assert json.dumps(first) == json.dumps(second)
