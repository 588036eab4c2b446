"""
查询模型 (Query Schemas)

组合查询、构建器子查询、查询区间参数以及查询结果序列的 Pydantic 定义。
JSON 字段使用 camelCase 别名，与查询服务和规则存储格式保持一致。

Pydantic definitions of composite queries, builder sub-queries, query range
parameters and result series. JSON fields use camelCase aliases to match the
query service and the stored rule format.
"""
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class QueryType(str, Enum):
    UNKNOWN = ""
    BUILDER = "builder"
    CLICKHOUSE_SQL = "clickhouse_sql"
    PROMQL = "promql"


class PanelType(str, Enum):
    GRAPH = "graph"
    VALUE = "value"
    TABLE = "table"
    LIST = "list"
    TRACE = "trace"


class DataSource(str, Enum):
    METRICS = "metrics"
    TRACES = "traces"
    LOGS = "logs"


class Temporality(str, Enum):
    DELTA = "Delta"
    CUMULATIVE = "Cumulative"
    UNSPECIFIED = "Unspecified"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── 构建器查询 (Builder Query) ──

class AttributeKey(_CamelModel):
    key: str = ""
    data_type: str = ""
    type: str = ""
    is_column: bool = False


class FilterItem(_CamelModel):
    key: AttributeKey
    value: Any = None
    op: str = "="


class FilterSet(_CamelModel):
    operator: str = "AND"
    items: list[FilterItem] = Field(default_factory=list)


class OrderBy(_CamelModel):
    column_name: str
    order: str = "desc"


class BuilderQuery(_CamelModel):
    query_name: str
    step_interval: int = 60
    data_source: DataSource = DataSource.METRICS
    aggregate_operator: str = ""
    aggregate_attribute: AttributeKey = Field(default_factory=AttributeKey)
    temporality: Temporality | None = None
    filters: FilterSet | None = None
    group_by: list[AttributeKey] = Field(default_factory=list)
    expression: str = ""
    disabled: bool = False
    having: list[dict] = Field(default_factory=list)
    order_by: list[OrderBy] = Field(default_factory=list)
    time_aggregation: str = ""
    space_aggregation: str = ""
    limit: int | None = None


class ClickHouseQuery(_CamelModel):
    query: str
    disabled: bool = False


class PromQuery(_CamelModel):
    query: str
    disabled: bool = False


class CompositeQuery(_CamelModel):
    query_type: QueryType = QueryType.UNKNOWN
    panel_type: PanelType = PanelType.GRAPH
    unit: str = ""
    builder_queries: dict[str, BuilderQuery] = Field(default_factory=dict)
    ch_queries: dict[str, ClickHouseQuery] = Field(default_factory=dict)
    prom_queries: dict[str, PromQuery] = Field(default_factory=dict)

    def sanitize(self) -> None:
        """清理与查询类型无关的子查询 (Drop sub-queries unrelated to the query type)"""
        if self.query_type == QueryType.BUILDER:
            self.ch_queries = {}
            self.prom_queries = {}
        elif self.query_type == QueryType.CLICKHOUSE_SQL:
            self.builder_queries = {}
            self.prom_queries = {}
        elif self.query_type == QueryType.PROMQL:
            self.builder_queries = {}
            self.ch_queries = {}

    def query_names(self) -> list[str]:
        if self.query_type == QueryType.BUILDER:
            return list(self.builder_queries)
        if self.query_type == QueryType.CLICKHOUSE_SQL:
            return list(self.ch_queries)
        if self.query_type == QueryType.PROMQL:
            return list(self.prom_queries)
        return []

    def check(self) -> None:
        """
        校验组合查询结构 (Validate composite query structure)

        Raises:
            ValueError: 查询类型未知或缺少对应子查询时抛出
        """
        if self.query_type == QueryType.UNKNOWN:
            raise ValueError("query type is required")
        if self.query_type == QueryType.BUILDER:
            if not self.builder_queries:
                raise ValueError("at least one builder query is required")
            for name, query in self.builder_queries.items():
                if not query.query_name:
                    raise ValueError(f"builder query {name} has no query name")
                if query.step_interval < 0:
                    raise ValueError(f"builder query {name} has a negative step interval")


# ── 查询区间参数 (Query Range Params) ──

class QueryRangeParams(_CamelModel):
    start: int  # 毫秒 (ms)
    end: int  # 毫秒 (ms)
    step: int  # 秒 (seconds)
    composite_query: CompositeQuery
    variables: dict[str, Any] = Field(default_factory=dict)
    no_cache: bool = False


# ── 查询结果 (Query Result) ──

class Point(_CamelModel):
    timestamp: int  # 毫秒 (ms)
    value: float


class Series(_CamelModel):
    labels: dict[str, str] = Field(default_factory=dict)
    points: list[Point] = Field(default_factory=list)


class QueryResult(_CamelModel):
    query_name: str
    series: list[Series] = Field(default_factory=list)
