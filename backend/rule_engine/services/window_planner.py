"""
查询窗口规划 (Query Window Planner)

根据评估时间、评估窗口和评估延迟，推导异常检测所需的四个对齐查询窗口：

    current       当前窗口 [start, end]
    prior_period  上周同期 [start - 168h, end - 164h]（166 小时偏移，±2 小时容差）
    current_week  本周趋势 [start - 7d, end]
    prior_week    上周趋势 [current_week.start - 7d, current_week.start]

每个窗口持有组合查询的独立深拷贝，步长按窗口跨度单独调整，规则自身的查询从不被修改。
plan() 只依赖入参，同样的输入总是得到同样的窗口边界。

Derives the four aligned query windows used for anomaly scoring. Each window
owns a deep copy of the composite query with its own step interval; the
rule's query is never mutated. plan() is a pure function of its inputs.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict

from rule_engine.core.config import settings
from rule_engine.schemas.query import CompositeQuery, PanelType, QueryRangeParams
from rule_engine.schemas.rule import RuleCondition

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS
_WEEK_MS = 7 * 24 * _HOUR_MS

PRIOR_PERIOD_SHIFT_MS = 166 * _HOUR_MS
PRIOR_PERIOD_SKEW_MS = 2 * _HOUR_MS


def unix_millis(ts: datetime) -> int:
    """datetime 转毫秒时间戳，naive 时间按 UTC 处理 (naive values are treated as UTC)"""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (ts - _EPOCH) // timedelta(milliseconds=1)


def min_allowed_step(start_ms: int, end_ms: int) -> int:
    """
    后端允许的最小步长，单位秒 (Backend minimum step in seconds)

    保证每条序列不超过 max_points_per_series 个点；不小于 60 秒时向下取整到整分钟。
    """
    step = (end_ms - start_ms) // settings.max_points_per_series // 1000
    if step < 60:
        return step
    return step - step % 60


@dataclass(frozen=True)
class WindowPlan:
    """一次评估的四个查询窗口 (The four query windows of one evaluation)"""
    current: QueryRangeParams
    prior_period: QueryRangeParams
    current_week: QueryRangeParams
    prior_week: QueryRangeParams

    def windows(self) -> Dict[str, QueryRangeParams]:
        return {
            "current": self.current,
            "prior_period": self.prior_period,
            "current_week": self.current_week,
            "prior_week": self.prior_week,
        }

    def bounds(self) -> Dict[str, tuple]:
        return {name: (p.start, p.end, p.step) for name, p in self.windows().items()}


def _window(query: CompositeQuery, start: int, end: int, keep_larger_step: bool) -> QueryRangeParams:
    copied = query.model_copy(deep=True)
    copied.panel_type = PanelType.GRAPH
    step = max(min_allowed_step(start, end), settings.min_step_seconds)
    for builder in copied.builder_queries.values():
        if keep_larger_step:
            builder.step_interval = max(builder.step_interval, step)
        else:
            builder.step_interval = step
    return QueryRangeParams(start=start, end=end, step=step, composite_query=copied)


def plan(
    condition: RuleCondition,
    eval_window: timedelta,
    eval_delay: timedelta,
    now: datetime,
) -> WindowPlan:
    """
    规划四个查询窗口 (Plan the four query windows)

    Args:
        condition: 规则条件，组合查询不能为空
        eval_window: 评估窗口，为 0 时使用默认 5 分钟
        eval_delay: 评估延迟，用于等待数据入库
        now: 评估时间
    """
    if not eval_window:
        eval_window = timedelta(minutes=settings.default_eval_window_minutes)

    end = unix_millis(now) - eval_delay // timedelta(milliseconds=1)
    start = end - eval_window // timedelta(milliseconds=1)
    # 取整到分钟，否则可能漏掉数据 (round to the minute so no data is missed)
    start -= start % _MINUTE_MS
    end -= end % _MINUTE_MS

    query = condition.composite_query
    prior_start = start - PRIOR_PERIOD_SHIFT_MS - PRIOR_PERIOD_SKEW_MS
    prior_end = end - PRIOR_PERIOD_SHIFT_MS + PRIOR_PERIOD_SKEW_MS
    week_start = start - _WEEK_MS

    return WindowPlan(
        current=_window(query, start, end, keep_larger_step=True),
        prior_period=_window(query, prior_start, prior_end, keep_larger_step=False),
        current_week=_window(query, week_start, end, keep_larger_step=False),
        prior_week=_window(query, week_start - _WEEK_MS, week_start, keep_larger_step=False),
    )
