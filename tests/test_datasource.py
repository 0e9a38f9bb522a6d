"""End-to-end tests for panel evaluation against a mocked backend."""

import json

import pytest
import respx
from httpx import Response
from tsdbquery.clients.opentsdb import OpenTSDBClient
from tsdbquery.config.settings import Settings
from tsdbquery.core.errors import BuildError, ProtocolError
from tsdbquery.datasource import OpenTSDBDatasource
from tsdbquery.query.models import TimeWindow
from tsdbquery.templating import TemplateSrv

BASE = "http://tsdb.example.com:4242"
WINDOW = TimeWindow(start=1700000000000, end=1700003600000)


def _datasource(version: int = 3, resolution: int = 1, variables=None) -> OpenTSDBDatasource:
    client = OpenTSDBClient(BASE, max_retries=1, backoff_factor=0)
    return OpenTSDBDatasource(
        client,
        template_srv=TemplateSrv(variables or {}),
        version=version,
        resolution=resolution,
    )


def _gexp_responder(rows_by_index):
    def handler(request):
        index = int(request.url.params["gexpIndex"])
        return Response(200, json=rows_by_index[index])

    return handler


@pytest.mark.asyncio
async def test_no_request_for_empty_or_hidden_targets():
    datasource = _datasource()

    with respx.mock(assert_all_called=False) as router:
        route = router.route()

        assert await datasource.query([], WINDOW) == []
        assert await datasource.query([{"metric": "sys.cpu", "hide": True}, {"metric": ""}], WINDOW) == []
        assert route.call_count == 0


@pytest.mark.asyncio
async def test_build_error_before_any_request():
    datasource = _datasource()

    with respx.mock(assert_all_called=False) as router:
        route = router.route()

        with pytest.raises(BuildError):
            await datasource.query([{"queryType": "influx", "metric": "m"}], WINDOW)

        assert route.call_count == 0


@pytest.mark.asyncio
async def test_mixed_panel_comes_back_in_declaration_order():
    datasource = _datasource(version=3)
    targets = [
        {"queryType": "gexp", "gexp": "sum(a)"},
        {"metric": "sys.cpu", "aggregator": "sum"},
        {"queryType": "gexp", "gexp": "sum(b)", "gexpAlias": "b on $tag_host"},
        {"metric": "sys.mem", "tags": {"host": "*"}},
    ]

    with respx.mock:
        batch_route = respx.post(f"{BASE}/api/query").mock(
            return_value=Response(
                200,
                json=[
                    {"metric": "sys.mem", "tags": {"host": "web1"}, "dps": {"1700000000": 2}, "query": {"index": 1}},
                    {"metric": "sys.cpu", "tags": {}, "dps": {"1700000000": 1}, "query": {"index": 0}},
                ],
            )
        )
        respx.get(f"{BASE}/api/query/gexp").mock(
            side_effect=_gexp_responder(
                {
                    0: [{"metric": "a", "tags": {}, "dps": {"1700000000": 10}}],
                    1: [{"metric": "b", "tags": {"host": "web2"}, "dps": {"1700000000": 20}}],
                }
            )
        )

        series = await datasource.query(targets, WINDOW)

        body = json.loads(batch_route.calls.last.request.content)
        assert body["showQuery"] is True
        assert [q["metric"] for q in body["queries"]] == ["sys.cpu", "sys.mem"]

    assert [s.label for s in series] == ["sum(a)", "sys.cpu", "b on web2", "sys.mem{host=web1}"]
    assert series[1].datapoints == [(1700000000000, 1)]
    assert datasource.reconciler.misses == 0


@pytest.mark.asyncio
async def test_tag_keys_are_cached_from_results():
    datasource = _datasource()

    with respx.mock:
        respx.post(f"{BASE}/api/query").mock(
            return_value=Response(
                200,
                json=[
                    {
                        "metric": "sys.cpu",
                        "tags": {"host": "web1"},
                        "aggregateTags": ["core"],
                        "dps": {},
                        "query": {"index": 0},
                    }
                ],
            )
        )

        await datasource.query([{"metric": "sys.cpu"}], WINDOW)

    assert await datasource.suggest_tag_keys("sys.cpu") == ["host", "core"]
    assert await datasource.suggest_tag_keys("sys.mem") == []


@pytest.mark.asyncio
async def test_legacy_version_matches_by_tags_and_applies_alias():
    datasource = _datasource(version=1, resolution=2, variables={"host": ["web2", "web3"]})
    targets = [
        {"metric": "sys.cpu", "tags": {"host": "web1"}, "alias": "cpu web1"},
        {"metric": "sys.cpu", "tags": {"host": "$host"}, "alias": "$tag_host"},
    ]

    with respx.mock:
        route = respx.post(f"{BASE}/api/query").mock(
            return_value=Response(
                200,
                json=[
                    {"metric": "sys.cpu", "tags": {"host": "web3"}, "dps": {"1700000000500": 1}},
                    {"metric": "sys.cpu", "tags": {"host": "web1"}, "dps": {"1700000000000": 2}},
                ],
            )
        )

        series = await datasource.query(targets, WINDOW)

        body = json.loads(route.calls.last.request.content)
        assert "showQuery" not in body
        assert body["msResolution"] is True
        assert body["queries"][1]["tags"] == {"host": "web2|web3"}

    assert [s.label for s in series] == ["cpu web1", "web3"]
    assert series[1].datapoints == [(1700000000500, 1)]


@pytest.mark.asyncio
async def test_batch_failure_fails_whole_panel():
    datasource = _datasource()

    with respx.mock(assert_all_called=False) as router:
        router.post(f"{BASE}/api/query").mock(return_value=Response(500, text="internal"))
        router.get(f"{BASE}/api/query/gexp").mock(return_value=Response(200, json=[]))

        with pytest.raises(ProtocolError) as exc_info:
            await datasource.query([{"metric": "sys.cpu"}, {"queryType": "gexp", "gexp": "sum(a)"}], WINDOW)

    assert exc_info.value.details["request"] == "batch"
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_annotations():
    datasource = _datasource()
    row = {
        "metric": "events",
        "dps": {},
        "annotations": [{"description": "deploy", "startTime": 1700000000.7}],
        "globalAnnotations": [{"description": "outage", "startTime": 1700000100}],
    }

    with respx.mock:
        route = respx.post(f"{BASE}/api/query").mock(return_value=Response(200, json=[row]))

        local = await datasource.annotation_query("events", WINDOW)
        global_ = await datasource.annotation_query("events", WINDOW, is_global=True)

        body = json.loads(route.calls.last.request.content)
        assert body["queries"] == [{"metric": "events", "aggregator": "sum"}]
        assert body["globalAnnotations"] is True

    assert [e.to_dict() for e in local] == [{"text": "deploy", "time": 1700000000000}]
    assert [e.to_dict() for e in global_] == [{"text": "outage", "time": 1700000100000}]


@pytest.mark.asyncio
async def test_annotations_empty_response():
    datasource = _datasource()

    with respx.mock:
        respx.post(f"{BASE}/api/query").mock(return_value=Response(200, json=[]))

        assert await datasource.annotation_query("events", WINDOW) == []


@pytest.mark.asyncio
async def test_metric_find_query_metrics():
    datasource = _datasource()

    with respx.mock:
        route = respx.get(f"{BASE}/api/suggest").mock(return_value=Response(200, json=["sys.cpu"]))

        assert await datasource.metric_find_query("metrics(sys.)") == [{"text": "sys.cpu"}]

        params = route.calls.last.request.url.params
        assert params["type"] == "metrics"
        assert params["q"] == "sys."


@pytest.mark.asyncio
@pytest.mark.parametrize("query,type_", [("suggest_tagk(ho)", "tagk"), ("suggest_tagv(web)", "tagv")])
async def test_metric_find_query_suggest(query, type_):
    datasource = _datasource()

    with respx.mock:
        route = respx.get(f"{BASE}/api/suggest").mock(return_value=Response(200, json=["x"]))

        assert await datasource.metric_find_query(query) == [{"text": "x"}]
        assert route.calls.last.request.url.params["type"] == type_


@pytest.mark.asyncio
async def test_metric_find_query_tag_names():
    datasource = _datasource()

    with respx.mock:
        route = respx.get(f"{BASE}/api/search/lookup").mock(
            return_value=Response(
                200,
                json={
                    "results": [
                        {"tags": {"host": "web1", "dc": "us"}},
                        {"tags": {"host": "web2", "rack": "r1"}},
                    ]
                },
            )
        )

        assert await datasource.metric_find_query("tag_names(sys.cpu)") == [
            {"text": "host"},
            {"text": "dc"},
            {"text": "rack"},
        ]
        assert route.calls.last.request.url.params["m"] == "sys.cpu"


@pytest.mark.asyncio
async def test_metric_find_query_tag_values_with_distributed_variable():
    datasource = _datasource(variables={"dc": ["us", "eu"]})

    with respx.mock:
        route = respx.get(f"{BASE}/api/search/lookup").mock(
            return_value=Response(
                200,
                json={"results": [{"tags": {"host": "web1"}}, {"tags": {"host": "web1"}}, {"tags": {"host": "web2"}}]},
            )
        )

        values = await datasource.metric_find_query("tag_values(sys.cpu, host, dc=$dc)")

        assert route.calls.last.request.url.params["m"] == "sys.cpu{host=*,dc=us,dc=eu}"

    assert values == [{"text": "web1"}, {"text": "web2"}]


@pytest.mark.asyncio
async def test_metric_find_query_unrecognized():
    datasource = _datasource()
    assert await datasource.metric_find_query("something_else(x)") == []
    assert await datasource.metric_find_query("") == []


@pytest.mark.asyncio
async def test_aggregators_are_memoized():
    datasource = _datasource()

    with respx.mock:
        route = respx.get(f"{BASE}/api/aggregators").mock(return_value=Response(200, json=["sum", "avg"]))

        assert await datasource.get_aggregators() == ["avg", "sum"]
        assert await datasource.get_aggregators() == ["avg", "sum"]
        assert route.call_count == 1


@pytest.mark.asyncio
async def test_filter_types_are_memoized():
    datasource = _datasource()

    with respx.mock:
        route = respx.get(f"{BASE}/api/config/filters").mock(
            return_value=Response(200, json={"wildcard": {}, "literal_or": {}})
        )

        assert await datasource.get_filter_types() == ["literal_or", "wildcard"]
        await datasource.get_filter_types()
        assert route.call_count == 1


@pytest.mark.asyncio
async def test_datasource_check_success_and_failure():
    datasource = _datasource()

    with respx.mock:
        respx.get(f"{BASE}/api/suggest").mock(return_value=Response(200, json=["cpu"]))
        assert (await datasource.test_datasource())["status"] == "success"

    with respx.mock:
        respx.get(f"{BASE}/api/suggest").mock(return_value=Response(404, text="not found"))
        result = await datasource.test_datasource()

    assert result["status"] == "error"
    assert "404" in result["message"]


def test_target_contains_template():
    datasource = _datasource(variables={"host": "web1"})

    assert datasource.target_contains_template({"metric": "m", "tags": {"host": "$host"}})
    assert datasource.target_contains_template(
        {"metric": "m", "filters": [{"tagk": "host", "filter": "[[host]]"}]}
    )
    assert not datasource.target_contains_template({"metric": "m", "tags": {"host": "$unknown"}})
    assert not datasource.target_contains_template({"metric": "m", "tags": {"host": "web1"}})


@pytest.mark.asyncio
async def test_from_settings_applies_credentials():
    settings = Settings(
        url=BASE,
        version=2,
        resolution=2,
        basic_auth_user="grafana",
        basic_auth_password="secret",
        http_max_retries=1,
    )
    datasource = OpenTSDBDatasource.from_settings(settings)

    assert datasource.version == 2
    assert datasource.ms_resolution is True

    with respx.mock:
        route = respx.get(f"{BASE}/api/aggregators").mock(return_value=Response(200, json=[]))
        await datasource.get_aggregators()

        assert route.calls.last.request.headers["Authorization"].startswith("Basic ")
