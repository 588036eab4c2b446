"""
聚合时间性解析 (Temporality Resolver)

为未显式声明时间性的指标构建器查询补全 Delta / Cumulative / Unspecified。
解析分三步，均可单独测试：

    1. apply_cached     用缓存填充（Delta 优先于 Cumulative，再到 Unspecified）
    2. collect_missing  汇总四个窗口中仍缺失的指标名，去重
    3. populate         写回查询并更新缓存

每次评估最多发起一次元数据查询；查询失败抛出 TemporalityError，本次评估中止。

Back-fills aggregation temporality for metric builder queries. At most one
metadata lookup per evaluation; a failed lookup raises TemporalityError.
"""
import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

from rule_engine.core.exceptions import TemporalityError
from rule_engine.schemas.query import CompositeQuery, DataSource, Temporality

logger = logging.getLogger(__name__)

# 时间性优先级 (Preference order)
PREFERENCE = (Temporality.DELTA, Temporality.CUMULATIVE)


def choose_temporality(observed: Iterable[Temporality]) -> Temporality:
    observed = set(observed)
    for candidate in PREFERENCE:
        if candidate in observed:
            return candidate
    return Temporality.UNSPECIFIED


class TemporalityCache:
    """指标名 -> 已观测时间性集合 (Metric name to observed temporalities)"""

    def __init__(self):
        self._entries: Dict[str, Set[Temporality]] = {}
        self._lock = threading.Lock()

    def get(self, metric: str) -> Optional[Set[Temporality]]:
        with self._lock:
            entry = self._entries.get(metric)
            return set(entry) if entry is not None else None

    def update(self, metric: str, temporalities: Iterable[Temporality]) -> None:
        with self._lock:
            self._entries[metric] = set(temporalities)

    def preferred(self, metric: str) -> Optional[Temporality]:
        entry = self.get(metric)
        if entry is None:
            return None
        return choose_temporality(entry)

    def __contains__(self, metric: str) -> bool:
        with self._lock:
            return metric in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _builder_queries(queries: Iterable[CompositeQuery]):
    for query in queries:
        if query is None:
            continue
        yield from query.builder_queries.values()


class TemporalityResolver:
    """
    时间性解析器 (Temporality Resolver)

    缓存通过构造函数注入，规则实例之间互不共享。
    """

    def __init__(self, cache: TemporalityCache, metadata_source=None):
        self.cache = cache
        self.metadata_source = metadata_source

    def apply_cached(self, queries: Iterable[CompositeQuery]) -> None:
        for builder in _builder_queries(queries):
            if builder.temporality is not None:
                continue
            preferred = self.cache.preferred(builder.aggregate_attribute.key)
            if preferred is not None:
                builder.temporality = preferred

    def collect_missing(self, queries: Iterable[CompositeQuery]) -> List[str]:
        missing = set()
        for builder in _builder_queries(queries):
            key = builder.aggregate_attribute.key
            if builder.data_source == DataSource.METRICS and builder.temporality is None and key:
                missing.add(key)
        return sorted(missing)

    def populate(self, queries: Iterable[CompositeQuery], fetched: Dict[str, Set[Temporality]]) -> None:
        for builder in _builder_queries(queries):
            key = builder.aggregate_attribute.key
            if builder.data_source != DataSource.METRICS or builder.temporality is not None or not key:
                continue
            observed = fetched.get(key) or set()
            builder.temporality = choose_temporality(observed)
            if observed:
                self.cache.update(key, observed)

    async def fetch(self, metric_names: List[str]) -> Dict[str, Set[Temporality]]:
        if self.metadata_source is None:
            raise TemporalityError("no metadata source configured", detail=",".join(metric_names))
        try:
            raw = await self.metadata_source.fetch_temporality(metric_names)
            return {
                name: {Temporality(t) for t in values}
                for name, values in (raw or {}).items()
            }
        except Exception as exc:
            logger.error("Failed to fetch temporality for %s: %s", metric_names, exc)
            raise TemporalityError("internal error while setting temporality", detail=str(exc)) from exc

    async def resolve(self, queries: Iterable[CompositeQuery]) -> None:
        """按 缓存 -> 批量查询 -> 回填 三步解析 (cache, batch fetch, populate)"""
        queries = list(queries)
        self.apply_cached(queries)
        missing = self.collect_missing(queries)
        if not missing:
            return
        fetched = await self.fetch(missing)
        self.populate(queries, fetched)
