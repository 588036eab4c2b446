"""
查询与元数据适配器 (Query and Metadata Adapters)

- Querier / MetadataSource: 规则引擎依赖的外部接口协议
- HttpQuerier: 通过 HTTP 调用时序查询服务执行区间查询
- SqlMetadataSource: 从 time_series_metadata 表批量读取指标时间性
- postprocess_result: 查询结果后处理（去掉禁用查询、按时间排序、校验结构）

Protocols for the external query and metadata collaborators, an httpx based
querier, a SQLAlchemy based metadata source and result post-processing.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

import httpx
from sqlalchemy import select

from rule_engine.core.config import settings
from rule_engine.core.database import async_session
from rule_engine.core.exceptions import PostprocessError, QueryError
from rule_engine.models.timeseries import TimeSeriesMetadata
from rule_engine.schemas.query import (
    AttributeKey,
    Point,
    QueryRangeParams,
    QueryResult,
    Series,
    Temporality,
)

logger = logging.getLogger(__name__)


class Querier(Protocol):
    async def query_range(
        self, params: QueryRangeParams, attribute_hints: Dict[str, AttributeKey]
    ) -> Tuple[List[QueryResult], Dict[str, str]]:
        ...


class MetadataSource(Protocol):
    async def fetch_temporality(self, metric_names: List[str]) -> Dict[str, Set[Temporality]]:
        ...


# ── HTTP 查询服务 (HTTP Query Service) ──

def _parse_series(raw: dict) -> Series:
    points = raw.get("points") or raw.get("values") or []
    return Series(
        labels={k: str(v) for k, v in (raw.get("labels") or {}).items()},
        points=[Point(timestamp=int(p["timestamp"]), value=float(p["value"])) for p in points],
    )


def parse_query_response(body: dict) -> Tuple[List[QueryResult], Dict[str, str]]:
    """解析查询服务响应 (Parse the query service response body)"""
    data = body.get("data") or {}
    results = [
        QueryResult(
            query_name=item.get("queryName", ""),
            series=[_parse_series(s) for s in (item.get("series") or [])],
        )
        for item in (data.get("result") or [])
    ]
    warnings = body.get("warnings") or data.get("warnings") or {}
    if isinstance(warnings, list):
        warnings = {str(i): str(w) for i, w in enumerate(warnings)}
    return results, warnings


class HttpQuerier:
    """
    时序查询服务客户端 (Time-series query service client)

    将区间查询参数以 JSON POST 到查询服务，非 2xx 响应或网络异常抛出 QueryError。
    """

    path = "/api/v4/query_range"

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.query_service_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.query_timeout_seconds
        self._transport = transport

    async def query_range(self, params: QueryRangeParams, attribute_hints: Optional[Dict[str, Any]] = None):
        payload = params.model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}{self.path}", json=payload)
        except httpx.HTTPError as exc:
            raise QueryError("query service request failed", detail=str(exc)) from exc

        if not 200 <= resp.status_code < 300:
            raise QueryError(f"query service returned HTTP {resp.status_code}", detail=resp.text[:500])
        try:
            return parse_query_response(resp.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise QueryError("malformed query service response", detail=str(exc)) from exc


# ── 指标元数据 (Metric Metadata) ──

class SqlMetadataSource:
    """从数据库读取指标时间性 (Reads metric temporality from the database)"""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session

    async def fetch_temporality(self, metric_names: List[str]) -> Dict[str, Set[Temporality]]:
        if not metric_names:
            return {}
        async with self._session_factory() as db:
            result = await db.execute(
                select(TimeSeriesMetadata.metric_name, TimeSeriesMetadata.temporality)
                .where(TimeSeriesMetadata.metric_name.in_(metric_names))
                .distinct()
            )
            rows = result.all()

        mapping: Dict[str, Set[Temporality]] = {}
        for metric_name, temporality in rows:
            try:
                value = Temporality(temporality)
            except ValueError:
                logger.warning("Unknown temporality %r for metric %s", temporality, metric_name)
                value = Temporality.UNSPECIFIED
            mapping.setdefault(metric_name, set()).add(value)
        return mapping


# ── 结果后处理 (Result Post-processing) ──

def _disabled_queries(params: QueryRangeParams) -> Set[str]:
    query = params.composite_query
    disabled = {name for name, q in query.builder_queries.items() if q.disabled}
    disabled |= {name for name, q in query.ch_queries.items() if q.disabled}
    disabled |= {name for name, q in query.prom_queries.items() if q.disabled}
    return disabled


def postprocess_result(results: List[QueryResult], params: QueryRangeParams) -> List[QueryResult]:
    """
    查询结果后处理 (Post-process query results)

    丢弃被禁用查询的结果，序列点按时间戳排序。结果缺少查询名称或查询名称重复时
    抛出 PostprocessError。
    """
    disabled = _disabled_queries(params)
    seen = set()
    processed = []
    for result in results:
        if not result.query_name:
            raise PostprocessError("query result without query name")
        if result.query_name in seen:
            raise PostprocessError(f"duplicate result for query {result.query_name}")
        seen.add(result.query_name)
        if result.query_name in disabled:
            continue
        processed.append(QueryResult(
            query_name=result.query_name,
            series=[
                Series(labels=dict(s.labels), points=sorted(s.points, key=lambda p: p.timestamp))
                for s in result.series
            ],
        ))
    return processed
