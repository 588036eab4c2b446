"""
告警规则模型 (Alert Rule Schemas)

规则条件（组合查询、比较运算符、匹配方式、目标值、缺失数据策略）和
可持久化规则定义的 Pydantic 模型，以及 Go 风格时长（"5m"、"1h30m"）的解析。

Pydantic models for the rule condition (composite query, compare operator,
match type, target, absence policy) and the stored rule definition, plus
parsing of Go-style durations ("5m", "1h30m").
"""
import json
import re
from datetime import timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from rule_engine.core.exceptions import (
    ERR_INVALID_COMPARE_OP,
    ERR_INVALID_COMPOSITE_QUERY,
    ERR_NIL_COMPOSITE_QUERY,
    ERR_NIL_TARGET,
    ERR_NO_CLICKHOUSE_QUERY,
    ERR_NO_PROMQL_QUERY,
    RuleConfigError,
)
from rule_engine.schemas.query import CompositeQuery, QueryType


class CompareOp(str, Enum):
    """比较运算符 (Compare Operator)"""
    NONE = "0"
    ABOVE = "1"
    BELOW = "2"
    EQUAL = "3"
    NOT_EQUAL = "4"

    @classmethod
    def _missing_(cls, value):
        aliases = {
            ">": cls.ABOVE, "above": cls.ABOVE,
            "<": cls.BELOW, "below": cls.BELOW,
            "==": cls.EQUAL, "eq": cls.EQUAL,
            "!=": cls.NOT_EQUAL, "not_eq": cls.NOT_EQUAL,
            "": cls.NONE,
        }
        if isinstance(value, str):
            return aliases.get(value.strip().lower())
        return None

    @property
    def symbol(self) -> str:
        return {
            CompareOp.ABOVE: ">",
            CompareOp.BELOW: "<",
            CompareOp.EQUAL: "==",
            CompareOp.NOT_EQUAL: "!=",
        }.get(self, "")

    def compare(self, value: float, target: float) -> bool:
        """value 是否满足条件 (Whether value satisfies the condition)"""
        if self == CompareOp.ABOVE:
            return value > target
        if self == CompareOp.BELOW:
            return value < target
        if self == CompareOp.EQUAL:
            return value == target
        if self == CompareOp.NOT_EQUAL:
            return value != target
        return False

    def violated_by(self, value: float, target: float) -> bool:
        """
        value 是否违反条件 (Whether value violates the condition)

        与 ``not compare()`` 不同：NaN 对 > 和 < 条件不构成违反。
        """
        if self == CompareOp.ABOVE:
            return value <= target
        if self == CompareOp.BELOW:
            return value >= target
        if self == CompareOp.EQUAL:
            return value != target
        if self == CompareOp.NOT_EQUAL:
            return value == target
        return False


class MatchType(str, Enum):
    """匹配方式 (Match Type)"""
    NONE = "0"
    AT_LEAST_ONCE = "1"
    ALL_THE_TIMES = "2"
    ON_AVERAGE = "3"
    IN_TOTAL = "4"


class RuleType(str, Enum):
    THRESHOLD = "threshold_rule"
    PROMQL = "promql_rule"
    ANOMALY = "anomaly_rule"


class AlertType(str, Enum):
    """告警类型，决定附加哪种关联数据链接 (Alert type, selects the related-data link builder)"""
    METRIC = "METRIC_BASED_ALERT"
    LOGS = "LOGS_BASED_ALERT"
    TRACES = "TRACES_BASED_ALERT"
    EXCEPTIONS = "EXCEPTIONS_BASED_ALERT"


# ── 时长解析 (Duration Parsing) ──

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0,
}


def parse_duration(value: Any) -> timedelta:
    """
    解析时长，支持 Go 风格字符串和纳秒整数 (Parse Go-style strings or integer nanoseconds)

    Examples:
        "5m" -> 5 分钟, "1h30m" -> 90 分钟, 300000000000 -> 5 分钟
    """
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(microseconds=value / 1000)
    s = str(value).strip()
    if s in ("", "0"):
        return timedelta(0)
    sign = 1
    if s[0] in "+-":
        sign = -1 if s[0] == "-" else 1
        s = s[1:]
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(s):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(s) or pos == 0:
        raise ValueError(f"invalid duration {value!r}")
    return timedelta(seconds=sign * total)


def format_duration(value: timedelta) -> str:
    """按 Go 风格输出时长，如 5m0s (Render a duration Go-style, e.g. 5m0s)"""
    total = value.total_seconds()
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    hours, rest = divmod(int(total), 3600)
    minutes, seconds = divmod(rest, 60)
    frac = total - int(total)
    sec_str = f"{seconds + frac:g}s" if frac else f"{seconds}s"
    if hours:
        return f"{sign}{hours}h{minutes}m{sec_str}"
    if minutes:
        return f"{sign}{minutes}m{sec_str}"
    return f"{sign}{sec_str}"


# ── 规则条件 (Rule Condition) ──

class RuleCondition(BaseModel):
    """
    规则条件 (Rule Condition)

    声明式比较规格：组合查询 + 比较运算符 + 匹配方式 + 目标值 + 缺失数据策略。
    纯数据与校验，不做任何 I/O。
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    composite_query: CompositeQuery | None = None
    op: CompareOp | None = None
    target: float | None = None
    alert_on_absent: bool = False
    absent_for: int = 0  # 分钟 (minutes)
    match_type: MatchType = MatchType.AT_LEAST_ONCE
    target_unit: str = ""
    selected_query_name: str = ""

    def query_type(self) -> QueryType:
        if self.composite_query is not None:
            return self.composite_query.query_type
        return QueryType.UNKNOWN

    def ensure_valid(self) -> None:
        """
        校验规则条件，失败时抛出 RuleConfigError (Validate, raising RuleConfigError)

        构建器查询必须设置目标值和比较运算符；PromQL / SQL 查询至少需要一条原始查询。
        """
        if self.composite_query is None:
            raise RuleConfigError(ERR_NIL_COMPOSITE_QUERY)

        self.composite_query.sanitize()
        try:
            self.composite_query.check()
        except ValueError as exc:
            raise RuleConfigError(ERR_INVALID_COMPOSITE_QUERY, str(exc)) from exc

        if self.query_type() == QueryType.BUILDER:
            if self.target is None:
                raise RuleConfigError(ERR_NIL_TARGET)
            if self.op is None or self.op == CompareOp.NONE:
                raise RuleConfigError(ERR_INVALID_COMPARE_OP)
        if self.query_type() == QueryType.PROMQL and not self.composite_query.prom_queries:
            raise RuleConfigError(ERR_NO_PROMQL_QUERY)
        if self.query_type() == QueryType.CLICKHOUSE_SQL and not self.composite_query.ch_queries:
            raise RuleConfigError(ERR_NO_CLICKHOUSE_QUERY)

    def is_valid(self) -> bool:
        try:
            self.ensure_valid()
        except RuleConfigError:
            return False
        return True

    def target_value(self) -> float:
        return self.target if self.target is not None else 0.0

    def compare_op(self) -> CompareOp:
        return self.op if self.op is not None else CompareOp.NONE

    def selected_query(self) -> str:
        """
        告警使用的查询名称 (Name of the query whose result drives the alert)

        未显式指定时：存在 F1 则用 F1，否则取名称排序最大的查询（兼容旧规则）。
        """
        if self.selected_query_name:
            return self.selected_query_name
        names = self.composite_query.query_names() if self.composite_query else []
        if "F1" in names:
            return "F1"
        if not names:
            return ""
        return sorted(names)[-1]

    def __str__(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True, exclude_none=True))


# ── 可持久化规则定义 (Stored Rule Definition) ──

class PostableRule(BaseModel):
    """
    规则定义 (Rule Definition)

    规则存储和配置文件中的规则格式；时长字段接受 "5m" 这类字符串。
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    alert: str
    alert_type: AlertType = AlertType.METRIC
    rule_type: RuleType = RuleType.ANOMALY
    eval_window: timedelta = timedelta(0)
    frequency: timedelta = timedelta(minutes=1)
    hold_duration: timedelta = timedelta(0)
    condition: RuleCondition | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    preferred_channels: list[str] = Field(default_factory=list)
    source: str = ""
    version: str = "v4"
    disabled: bool = False

    @field_validator("eval_window", "frequency", "hold_duration", mode="before")
    @classmethod
    def _parse_duration(cls, value):
        return parse_duration(value)

    @field_serializer("eval_window", "frequency", "hold_duration")
    def _format_duration(self, value: timedelta) -> str:
        return format_duration(value)
