"""
关联数据链接 (Related Data Links)

为日志类和链路类告警生成跳转到日志查询页 / 链路查询页的链接，放入告警注解
（链接带时间范围，不能放进用于分组的标签）。链接构造按告警类型注册为策略，
未注册的类型不生成链接。同时提供规则来源地址与规则编辑页地址的处理。

Builds logs-explorer and traces-explorer links for log and trace based
alerts. Builders are strategies keyed by AlertType; types without a builder
get no link. Also derives the rule generator URL and host from the rule source.
"""
import json
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote_plus, urlsplit

from rule_engine.schemas.query import (
    AttributeKey,
    BuilderQuery,
    DataSource,
    FilterItem,
    FilterSet,
    OrderBy,
    QueryType,
)
from rule_engine.schemas.rule import AlertType, RuleCondition


RELATED_LOGS_ANNOTATION = "related_logs"
RELATED_TRACES_ANNOTATION = "related_traces"

# 链路列表默认展示列 (Default columns of the traces list view)
TRACES_LIST_DEFAULT_COLUMNS = [
    AttributeKey(key="serviceName", data_type="string", type="tag", is_column=True),
    AttributeKey(key="name", data_type="string", type="tag", is_column=True),
    AttributeKey(key="durationNano", data_type="float64", type="tag", is_column=True),
    AttributeKey(key="httpMethod", data_type="string", type="tag", is_column=True),
    AttributeKey(key="responseStatusCode", data_type="string", type="tag", is_column=True),
]


def _split(source: str):
    try:
        parsed = urlsplit(source)
        port = parsed.port
    except ValueError:
        return None, None
    return parsed, port


def host_from_source(source: str) -> str:
    """从规则来源地址中取出 scheme://host[:port]"""
    if not source:
        return ""
    parsed, port = _split(source)
    if parsed is None or not parsed.scheme or not parsed.hostname:
        return ""
    if port:
        return f"{parsed.scheme}://{parsed.hostname}:{port}"
    return f"{parsed.scheme}://{parsed.hostname}"


def prepare_rule_generator_url(rule_id: str, source: str) -> str:
    """
    生成回溯到规则定义的地址 (Build the URL that leads back to the rule)

    新建规则时记录的来源形如 host:port/alerts/new，此时把最后一个 new 替换为
    edit?ruleId=<id>；否则丢弃来源中的查询参数，只保留 /alerts/edit?ruleId=<id>。
    """
    if not source:
        return ""
    parsed, port = _split(source)
    if parsed is None:
        return ""

    idx = source.rfind("new")
    if idx > -1:
        return f"{source[:idx]}edit?ruleId={rule_id}"

    if port:
        return f"{parsed.scheme}://{parsed.hostname}:{port}/alerts/edit?ruleId={rule_id}"
    return f"{parsed.scheme}://{parsed.hostname}/alerts/edit?ruleId={rule_id}"


def fetch_filters(condition: RuleCondition, selected_query: str, labels: Dict[str, str]) -> List[FilterItem]:
    """
    合并查询过滤条件与结果标签 (Merge query filters with result labels)

    过滤项的键出现在结果标签中时替换为 key = value；其余过滤项原样保留；
    结果标签中未被过滤项覆盖的键追加为 key = value。
    """
    items: List[FilterItem] = []
    added = set()

    query = condition.composite_query
    builder = query.builder_queries.get(selected_query) if query else None
    if query and query.query_type == QueryType.BUILDER and builder and builder.filters:
        for item in builder.filters.items:
            if item.key.key in labels:
                items.append(FilterItem(key=item.key, op="=", value=labels[item.key.key]))
                added.add(item.key.key)
            else:
                items.append(item)

    for name, value in labels.items():
        if name not in added:
            items.append(FilterItem(key=AttributeKey(key=name), op="=", value=value))
    return items


@dataclass(frozen=True)
class LinkContext:
    """构造链接所需的上下文 (Inputs needed to build a link)"""
    source: str
    condition: RuleCondition
    selected_query: str
    start_ms: int
    end_ms: int
    labels: Dict[str, str] = field(default_factory=dict)


def _dumps(data) -> str:
    return json.dumps(data, separators=(",", ":"))


def _explorer_query(ctx: LinkContext, data_source: DataSource, start: int, end: int, columns) -> str:
    if not ("A" <= ctx.selected_query <= "Z"):
        return ""

    time_range = {"start": start, "end": end, "pageSize": 100}
    options = {
        "maxLines": 2,
        "format": "list",
        "selectColumns": [c.model_dump(by_alias=True) for c in columns],
    }
    builder = BuilderQuery(
        query_name="A",
        data_source=data_source,
        aggregate_operator="noop",
        filters=FilterSet(operator="AND", items=fetch_filters(ctx.condition, ctx.selected_query, ctx.labels)),
        expression="A",
        step_interval=60,
        order_by=[OrderBy(column_name="timestamp", order="desc")],
    )
    composite = {
        "queryType": QueryType.BUILDER.value,
        "builder": {
            "queryData": [builder.model_dump(mode="json", by_alias=True, exclude_none=True)],
            "queryFormulas": [],
        },
    }
    return (
        f"compositeQuery={quote_plus(_dumps(composite))}"
        f"&timeRange={quote_plus(_dumps(time_range))}"
        f"&startTime={start}&endTime={end}"
        f"&options={quote_plus(_dumps(options))}"
    )


def prepare_links_to_logs(ctx: LinkContext) -> str:
    # 日志列表使用毫秒 (logs list view expects milliseconds)
    return _explorer_query(ctx, DataSource.LOGS, ctx.start_ms, ctx.end_ms, [])


def prepare_links_to_traces(ctx: LinkContext) -> str:
    # 链路列表使用纳秒 (traces list view expects nanoseconds)
    return _explorer_query(
        ctx, DataSource.TRACES, ctx.start_ms * 1_000_000, ctx.end_ms * 1_000_000, TRACES_LIST_DEFAULT_COLUMNS
    )


def _related_logs(ctx: LinkContext) -> Optional[Tuple[str, str]]:
    host = host_from_source(ctx.source)
    link = prepare_links_to_logs(ctx)
    if not link or not host:
        return None
    return RELATED_LOGS_ANNOTATION, f"{host}/logs/logs-explorer?{link}"


def _related_traces(ctx: LinkContext) -> Optional[Tuple[str, str]]:
    host = host_from_source(ctx.source)
    link = prepare_links_to_traces(ctx)
    if not link or not host:
        return None
    return RELATED_TRACES_ANNOTATION, f"{host}/traces-explorer?{link}"


LinkBuilder = Callable[[LinkContext], Optional[Tuple[str, str]]]

LINK_BUILDERS: Dict[AlertType, LinkBuilder] = {
    AlertType.LOGS: _related_logs,
    AlertType.TRACES: _related_traces,
}


def build_related_link(alert_type: AlertType, ctx: LinkContext) -> Optional[Tuple[str, str]]:
    """按告警类型生成 (注解名, 链接)，无对应策略时返回 None"""
    builder = LINK_BUILDERS.get(alert_type)
    if builder is None:
        return None
    return builder(ctx)
