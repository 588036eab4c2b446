"""查询服务客户端、指标元数据与结果后处理测试。"""
import json
from datetime import timedelta

import httpx
import pytest

from rule_engine.core.config import settings
from rule_engine.core.exceptions import PostprocessError, QueryError
from rule_engine.models.timeseries import TimeSeriesMetadata
from rule_engine.schemas.query import ClickHouseQuery, CompositeQuery, Point, QueryResult, QueryType, Series, Temporality
from rule_engine.services.querier import HttpQuerier, SqlMetadataSource, parse_query_response, postprocess_result
from rule_engine.services.window_planner import plan

from factories import METRIC, NOW, builder_condition, builder_query, result, series


def params():
    return plan(builder_condition(), timedelta(minutes=5), timedelta(0), NOW).current


RESPONSE = {
    "status": "success",
    "data": {
        "resultType": "",
        "result": [
            {
                "queryName": "A",
                "series": [
                    {
                        "labels": {"svc": "api", "code": 500},
                        "values": [{"timestamp": 1000, "value": "2.5"}, {"timestamp": 2000, "value": "3"}],
                    },
                ],
            },
        ],
    },
}


class TestParseQueryResponse:
    def test_parse(self):
        results, warnings = parse_query_response(RESPONSE)
        assert warnings == {}
        [res] = results
        assert res.query_name == "A"
        assert res.series[0].labels == {"svc": "api", "code": "500"}
        assert [p.value for p in res.series[0].points] == [2.5, 3.0]

    def test_list_warnings(self):
        _, warnings = parse_query_response({"data": {"result": []}, "warnings": ["slow query"]})
        assert warnings == {"0": "slow query"}


class TestHttpQuerier:
    @pytest.mark.asyncio
    async def test_posts_query_range(self):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json=RESPONSE)

        querier = HttpQuerier("http://query:8085/", transport=httpx.MockTransport(handler))
        results, _ = await querier.query_range(params(), {})

        path, body = captured[0]
        assert path == "/api/v4/query_range"
        assert body["start"] == params().start
        assert body["compositeQuery"]["queryType"] == "builder"
        assert body["compositeQuery"]["builderQueries"]["A"]["stepInterval"] == 60
        assert results[0].series[0].points[0].timestamp == 1000

    def test_timeout_defaults(self):
        assert HttpQuerier("http://query:8085").timeout == settings.query_timeout_seconds
        assert HttpQuerier("http://query:8085", timeout=0).timeout == 0

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(QueryError, match="HTTP 500") as exc:
            await HttpQuerier("http://query:8085", transport=transport).query_range(params(), {})
        assert exc.value.detail == "boom"

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(QueryError, match="request failed"):
            await HttpQuerier("http://query:8085", transport=httpx.MockTransport(handler)).query_range(params(), {})

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="not json"))
        with pytest.raises(QueryError, match="malformed"):
            await HttpQuerier("http://query:8085", transport=transport).query_range(params(), {})


class TestSqlMetadataSource:
    @pytest.mark.asyncio
    async def test_fetch_temporality(self, session_factory, db_session):
        db_session.add_all([
            TimeSeriesMetadata(metric_name=METRIC, temporality="Delta"),
            TimeSeriesMetadata(metric_name=METRIC, temporality="Cumulative"),
            TimeSeriesMetadata(metric_name="other", temporality="Bogus"),
            TimeSeriesMetadata(metric_name="ignored", temporality="Delta"),
        ])
        await db_session.commit()

        mapping = await SqlMetadataSource(session_factory).fetch_temporality([METRIC, "other", "missing"])

        assert mapping == {
            METRIC: {Temporality.DELTA, Temporality.CUMULATIVE},
            "other": {Temporality.UNSPECIFIED},
        }

    @pytest.mark.asyncio
    async def test_empty_request(self, session_factory):
        assert await SqlMetadataSource(session_factory).fetch_temporality([]) == {}


class TestPostprocessResult:
    def test_sorts_points(self):
        unsorted = Series(labels={"svc": "api"}, points=[
            Point(timestamp=3000, value=3.0), Point(timestamp=1000, value=1.0), Point(timestamp=2000, value=2.0),
        ])
        original = result(unsorted)
        [processed] = postprocess_result([original], params())
        assert [p.timestamp for p in processed.series[0].points] == [1000, 2000, 3000]
        assert [p.timestamp for p in original.series[0].points] == [3000, 1000, 2000]

    def test_drops_disabled_queries(self):
        cond = builder_condition()
        cond.composite_query.builder_queries["B"] = builder_query("B", disabled=True)
        p = plan(cond, timedelta(minutes=5), timedelta(0), NOW).current
        processed = postprocess_result([result(name="A"), result(name="B")], p)
        assert [r.query_name for r in processed] == ["A"]

    def test_drops_disabled_clickhouse_queries(self):
        p = params()
        p.composite_query = CompositeQuery(
            query_type=QueryType.CLICKHOUSE_SQL, ch_queries={"A": ClickHouseQuery(query="SELECT 1", disabled=True)},
        )
        assert postprocess_result([result(name="A")], p) == []

    def test_missing_query_name(self):
        with pytest.raises(PostprocessError):
            postprocess_result([QueryResult(query_name="")], params())

    def test_duplicate_query_name(self):
        with pytest.raises(PostprocessError, match="duplicate"):
            postprocess_result([result(series({"a": "1"}, [1.0])), result()], params())
