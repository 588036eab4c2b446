"""
异常检测告警规则 (Anomaly Alert Rule)

一次评估 (eval) 的流程：

    1. 规划四个查询窗口（当前 / 上周同期 / 本周 / 上周）
    2. 补全指标时间性，并发执行四个窗口的查询，后处理结果
    3. 缺失数据检测：满足条件时只产出一个“无数据”样本，不做评分
    4. 按指纹对齐基线并评分，生成候选告警（标签 / 注解模板展开、关联链接）
    5. 持锁执行状态机转换：pending -> firing，未匹配告警恢复或清理
    6. 锁外写入状态历史，最后更新规则健康度

同一规则的评估由 asyncio.Lock 串行化；可变字段由 threading.Lock 保护，
外部读取方通过 current_alerts() 等方法获取副本。查询失败、时间性解析失败、
后处理失败和指纹重复都会中止本次评估，活跃告警表保持不变。

Evaluates one anomaly rule per tick: plans windows, resolves temporality,
queries, scores and drives the alert state machine. Evaluations of one rule
are serialized; mutable fields are guarded by a lock and read via copies.
Backend and invariant errors abort the tick with the active table untouched.
"""
import asyncio
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import yaml

from rule_engine.core.config import settings
from rule_engine.core.exceptions import (
    DuplicateAlertError,
    QueryError,
    RuleConfigError,
    RuleEngineError,
    TemplateExpansionError,
)
from rule_engine.schemas.query import QueryResult
from rule_engine.schemas.rule import CompareOp, MatchType, PostableRule, RuleType
from rule_engine.services.alerting import (
    Alert,
    AlertState,
    RuleHealth,
    RuleStateHistoryRecord,
    Sample,
    labels_json,
)
from rule_engine.services.anomaly import match_baselines, should_alert
from rule_engine.services.dispatcher import select_alerts
from rule_engine.services.history import HistoryRecorder
from rule_engine.services.labels import (
    ALERT_NAME_LABEL,
    ALERT_RULE_ID_LABEL,
    ALERT_TIME_FORMAT,
    LAST_SEEN_LABEL,
    METRIC_NAME_LABEL,
    NO_DATA_PREFIX,
    RULE_SOURCE_LABEL,
    TEMPORALITY_LABEL,
    fingerprint,
    normalize_label_name,
    without,
)
from rule_engine.services.querier import postprocess_result
from rule_engine.services.related_links import LinkContext, build_related_link, prepare_rule_generator_url
from rule_engine.services.templating import TemplateContext, expand_template, format_value
from rule_engine.services.temporality import TemporalityCache, TemporalityResolver
from rule_engine.services.window_planner import WindowPlan, plan, unix_millis

logger = logging.getLogger(__name__)

# 已恢复告警的保留时长，期间仍会作为 resolved 上报
RESOLVED_RETENTION = timedelta(minutes=settings.resolved_retention_minutes)


@dataclass
class RuleOptions:
    """
    规则运行选项 (Rule runtime options)

    send_unmatched: 未满足条件的序列也产出样本，用于测试规则
    send_always:    忽略重发间隔，每次都发送
    eval_delay:     评估延迟，等待数据入库
    """
    send_unmatched: bool = False
    send_always: bool = False
    eval_delay: timedelta = timedelta(0)


@dataclass
class Queriers:
    """评估所需的外部查询依赖 (External query collaborators of one evaluation)"""
    querier: Any
    metadata: Any = None


@dataclass
class _Windows:
    current: Optional[QueryResult] = None
    prior_period: Optional[QueryResult] = None
    current_week: Optional[QueryResult] = None
    prior_week: Optional[QueryResult] = None


def _find_result(results: List[QueryResult], name: str) -> Optional[QueryResult]:
    for result in results:
        if result.query_name == name:
            return result
    return None


def _overall_label(state: AlertState) -> str:
    return "normal" if state == AlertState.INACTIVE else state.label


class AnomalyRule:
    """
    异常检测告警规则 (Anomaly Alert Rule)

    构造时校验规则条件，无效时抛出 RuleConfigError。
    """

    def __init__(
        self,
        rule_id: str,
        rule: PostableRule,
        opts: Optional[RuleOptions] = None,
        history_store=None,
        temporality_cache: Optional[TemporalityCache] = None,
    ):
        if rule.condition is None:
            raise RuleConfigError("no rule condition")
        condition = rule.condition.model_copy(deep=True)
        condition.ensure_valid()

        self.id = rule_id
        self.name = rule.alert
        self.source = rule.source
        self.condition = condition
        self.eval_window = rule.eval_window or timedelta(minutes=settings.default_eval_window_minutes)
        self.frequency = rule.frequency
        self.hold_duration = rule.hold_duration
        self.labels = dict(rule.labels)
        self.annotations = dict(rule.annotations)
        self.preferred_channels = list(rule.preferred_channels)
        self.alert_type = rule.alert_type
        self.version = rule.version
        self.opts = opts or RuleOptions()
        self.eval_delay = self.opts.eval_delay
        self.temporality_cache = temporality_cache or TemporalityCache()

        self._recorder = HistoryRecorder(history_store)
        self._eval_lock = asyncio.Lock()
        self._mtx = threading.Lock()
        self._health = RuleHealth.UNKNOWN
        self._last_error: Optional[RuleEngineError] = None
        self._evaluation_duration = timedelta(0)
        self._evaluation_timestamp: Optional[datetime] = None
        self._active: Dict[int, Alert] = {}
        self._last_timestamp_with_datapoints: Optional[datetime] = None

        logger.info("creating new AnomalyRule name=%s id=%s", self.name, self.id)

    # ── 规则属性 (Rule Attributes) ──

    @property
    def rule_type(self) -> RuleType:
        return RuleType.ANOMALY

    def generator_url(self) -> str:
        return prepare_rule_generator_url(self.id, self.source)

    def unit(self) -> str:
        return self.condition.composite_query.unit

    def target_value(self) -> float:
        return self.condition.target_value()

    def compare_op(self) -> CompareOp:
        return self.condition.compare_op()

    def match_type(self) -> MatchType:
        return self.condition.match_type

    def selected_query(self) -> str:
        return self.condition.selected_query()

    def plan(self, now: datetime) -> WindowPlan:
        return plan(self.condition, self.eval_window, self.eval_delay, now)

    # ── 健康度与评估计时 (Health and Evaluation Timing) ──

    @property
    def health(self) -> RuleHealth:
        with self._mtx:
            return self._health

    @health.setter
    def health(self, value: RuleHealth) -> None:
        with self._mtx:
            self._health = value

    @property
    def last_error(self) -> Optional[RuleEngineError]:
        with self._mtx:
            return self._last_error

    @last_error.setter
    def last_error(self, value: Optional[RuleEngineError]) -> None:
        with self._mtx:
            self._last_error = value

    @property
    def evaluation_duration(self) -> timedelta:
        with self._mtx:
            return self._evaluation_duration

    @evaluation_duration.setter
    def evaluation_duration(self, value: timedelta) -> None:
        with self._mtx:
            self._evaluation_duration = value

    @property
    def evaluation_timestamp(self) -> Optional[datetime]:
        with self._mtx:
            return self._evaluation_timestamp

    @evaluation_timestamp.setter
    def evaluation_timestamp(self, value: datetime) -> None:
        with self._mtx:
            self._evaluation_timestamp = value

    @property
    def last_timestamp_with_datapoints(self) -> Optional[datetime]:
        with self._mtx:
            return self._last_timestamp_with_datapoints

    # ── 告警读取 (Alert Readers) ──

    def _max_state(self) -> AlertState:
        return max((a.state for a in self._active.values()), default=AlertState.INACTIVE)

    def state(self) -> AlertState:
        """所有告警实例中最严重的状态 (firing > pending > inactive)"""
        with self._mtx:
            return self._max_state()

    def current_alerts(self) -> List[Alert]:
        with self._mtx:
            return [a.copy() for a in self._active.values()]

    def active_alerts(self) -> List[Alert]:
        return [a for a in self.current_alerts() if a.resolved_at is None]

    def for_each_active_alert(self, fn: Callable[[Alert], None]) -> None:
        """在锁内对实际告警对象执行 fn；只需读取时请用 active_alerts()"""
        with self._mtx:
            for alert in self._active.values():
                fn(alert)

    # ── 查询 (Querying) ──

    async def _query_windows(self, window_plan: WindowPlan, querier) -> _Windows:
        windows = window_plan.windows()
        try:
            outcomes = await asyncio.wait_for(
                asyncio.gather(
                    *(querier.query_range(params, {}) for params in windows.values()),
                    return_exceptions=True,
                ),
                timeout=settings.query_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("alert queries timed out for rule %s", self.name)
            raise QueryError("alert queries timed out") from exc

        failures = {
            name: outcome for name, outcome in zip(windows, outcomes) if isinstance(outcome, BaseException)
        }
        if failures:
            logger.error("failed to get alert query result for rule %s: %s", self.name, failures)
            raise QueryError(
                "internal error while querying",
                detail="; ".join(f"{name}: {err!r}" for name, err in failures.items()),
            )

        selected = self.selected_query()
        found = _Windows()
        for (name, params), (results, warnings) in zip(windows.items(), outcomes):
            if warnings:
                logger.debug("query warnings for rule %s window %s: %s", self.name, name, warnings)
            processed = postprocess_result(results, params)
            setattr(found, name, _find_result(processed, selected))
        return found

    def _data_absent(self, now: datetime) -> bool:
        if not self.condition.alert_on_absent:
            return False
        last = self._last_timestamp_with_datapoints
        return last is None or last + timedelta(minutes=self.condition.absent_for) < now

    async def build_and_run_query(
        self, now: datetime, queriers: Queriers, window_plan: Optional[WindowPlan] = None
    ) -> List[Sample]:
        """
        执行查询并评分，返回告警样本 (Query, score and return alert samples)

        Raises:
            TemporalityError / QueryError / PostprocessError: 后端错误，本次评估中止
        """
        window_plan = window_plan or self.plan(now)

        resolver = TemporalityResolver(self.temporality_cache, queriers.metadata)
        await resolver.resolve(p.composite_query for p in window_plan.windows().values())

        found = await self._query_windows(window_plan, queriers.querier)

        with self._mtx:
            if found.current is not None and found.current.series:
                self._last_timestamp_with_datapoints = now
            last_seen = self._last_timestamp_with_datapoints
            absent = self._data_absent(now)

        # 持续无数据时只产出一个缺失样本 (absent data yields exactly one missing sample)
        if absent:
            logger.info("no data found for rule condition, rule id=%s", self.id)
            metric = {}
            if last_seen is not None:
                metric[LAST_SEEN_LABEL] = last_seen.strftime(ALERT_TIME_FORMAT)
            return [Sample(metric=metric, timestamp=now, is_missing=True)]

        op, match_type, target = self.compare_op(), self.match_type(), self.target_value()
        samples = []
        for series, prior_period, current_week, prior_week in match_baselines(
            found.current, found.prior_period, found.current_week, found.prior_week
        ):
            alert, value = should_alert(series, prior_period, current_week, prior_week, op, match_type, target)
            if alert or (self.opts.send_unmatched and not math.isnan(value)):
                samples.append(Sample(
                    metric=dict(series.labels),
                    metric_orig=dict(series.labels),
                    value=value,
                    timestamp=now,
                ))
        return samples

    # ── 候选告警 (Candidate Alerts) ──

    def _expand(self, text: str, ctx: TemplateContext) -> str:
        try:
            return expand_template(text, ctx)
        except TemplateExpansionError as exc:
            logger.error("Expanding alert template failed for rule %s: %s", self.name, exc)
            return f"<error expanding template: {exc}>"

    def _build_alerts(self, now: datetime, samples: List[Sample], window_plan: WindowPlan) -> Dict[int, Alert]:
        """
        由样本生成候选告警，指纹重复时抛出 DuplicateAlertError

        不访问活跃告警表，失败时无需回滚。
        """
        generator_url = self.generator_url()
        threshold = format_value(self.target_value())
        selected = self.selected_query()
        alerts: Dict[int, Alert] = {}

        for sample in samples:
            ctx = TemplateContext(labels=dict(sample.metric), value=format_value(sample.value), threshold=threshold)

            lbs = without(sample.metric, METRIC_NAME_LABEL, TEMPORALITY_LABEL)
            result_labels = without(sample.metric_orig, METRIC_NAME_LABEL, TEMPORALITY_LABEL)
            for name, tmpl in self.labels.items():
                lbs[name] = self._expand(tmpl, ctx)
            lbs[ALERT_NAME_LABEL] = self.name
            lbs[ALERT_RULE_ID_LABEL] = self.id
            lbs[RULE_SOURCE_LABEL] = generator_url
            if sample.is_missing:
                lbs[ALERT_NAME_LABEL] = NO_DATA_PREFIX + self.name

            annotations = {normalize_label_name(k): self._expand(v, ctx) for k, v in self.annotations.items()}
            # 链接带时间戳，放在注解而不是分组标签中 (links carry timestamps, so they go in annotations)
            link = build_related_link(self.alert_type, LinkContext(
                source=self.source,
                condition=self.condition,
                selected_query=selected,
                start_ms=window_plan.current.start,
                end_ms=window_plan.current.end,
                labels=dict(sample.metric_orig),
            ))
            if link is not None:
                annotations[link[0]] = link[1]

            fp = fingerprint(lbs)
            if fp in alerts:
                logger.error("the alert query returns duplicate records, rule id=%s labels=%s", self.id, lbs)
                raise DuplicateAlertError(
                    "duplicate alert found, vector contains metrics with the same labelset after applying alert labels",
                    detail=labels_json(lbs),
                )

            alerts[fp] = Alert(
                state=AlertState.PENDING,
                labels=lbs,
                annotations=annotations,
                query_result_labels=result_labels,
                generator_url=generator_url,
                receivers=list(self.preferred_channels),
                value=sample.value,
                active_at=now,
                missing=sample.is_missing,
            )
        return alerts

    # ── 状态机 (State Machine) ──

    def _history_record(self, alert: Alert, state: str, now: datetime) -> RuleStateHistoryRecord:
        return RuleStateHistoryRecord(
            rule_id=self.id,
            rule_name=self.name,
            state=state,
            state_changed=True,
            unix_milli=unix_millis(now),
            labels=labels_json(alert.query_result_labels),
            fingerprint=fingerprint(alert.query_result_labels),
            value=alert.value,
        )

    def _transition(self, now: datetime, candidates: Dict[int, Alert]) -> List[RuleStateHistoryRecord]:
        """
        状态机转换，调用方须持有 _mtx (Apply the state machine; caller holds _mtx)
        """
        prev_state = self._max_state()

        for fp, candidate in candidates.items():
            alert = self._active.get(fp)
            if alert is not None and alert.state != AlertState.INACTIVE:
                alert.value = candidate.value
                alert.annotations = candidate.annotations
                alert.receivers = list(self.preferred_channels)
                continue
            self._active[fp] = candidate

        records = []
        for fp, alert in list(self._active.items()):
            if fp not in candidates:
                # 从未触发的 pending 告警直接删除；已恢复告警保留一段时间用于上报 resolved
                if alert.state == AlertState.PENDING or (
                    alert.resolved_at is not None and now - alert.resolved_at > RESOLVED_RETENTION
                ):
                    del self._active[fp]
                    continue
                if alert.state != AlertState.INACTIVE:
                    alert.state = AlertState.INACTIVE
                    alert.resolved_at = now
                    records.append(self._history_record(alert, "normal", now))
                continue

            if alert.state == AlertState.PENDING and now - alert.active_at >= self.hold_duration:
                alert.state = AlertState.FIRING
                alert.fired_at = now
                records.append(self._history_record(alert, "no_data" if alert.missing else "firing", now))

        current_state = self._max_state()
        changed = current_state != prev_state
        for record in records:
            record.overall_state_changed = changed
            record.overall_state = _overall_label(current_state) if changed else current_state.label
        return records

    def _series_alert_count(self) -> int:
        return sum(1 for a in self._active.values() if not a.missing)

    def _fail(self, exc: RuleEngineError) -> None:
        logger.error("rule %s evaluation failed (%s): %s", self.id, exc.kind.value, exc.message)
        with self._mtx:
            self._health = RuleHealth.BAD
            self._last_error = exc

    async def eval(self, now: datetime, queriers: Queriers) -> int:
        """
        执行一次评估 (Run one evaluation tick)

        Returns:
            由查询序列产生的活跃告警数量（不含无数据告警）

        Raises:
            RuleEngineError: 后端错误或指纹重复，活跃告警表保持不变
        """
        async with self._eval_lock:
            try:
                window_plan = self.plan(now)
                samples = await self.build_and_run_query(now, queriers, window_plan)
                candidates = self._build_alerts(now, samples, window_plan)
            except RuleEngineError as exc:
                self._fail(exc)
                raise

            with self._mtx:
                records = self._transition(now, candidates)
                count = self._series_alert_count()

            logger.info("alerts found for rule %s: %d", self.name, len(candidates))
            await self._recorder.record(records)

            with self._mtx:
                self._health = RuleHealth.GOOD
                self._last_error = None
            return count

    # ── 通知 (Notification) ──

    async def send_alerts(self, now: datetime, resend_delay: timedelta, eval_interval: timedelta, notify) -> int:
        """
        发送需要（重新）通知的告警 (Send alerts due for notification)

        快照在锁内生成，notify 在锁外调用；没有需要发送的告警时不调用 notify。
        """
        with self._mtx:
            snapshots = select_alerts(
                self._active.values(), now, resend_delay, eval_interval, send_always=self.opts.send_always
            )
        if not snapshots:
            return 0
        await notify("", *snapshots)
        return len(snapshots)

    # ── 序列化 (Rendering) ──

    def to_postable(self) -> PostableRule:
        return PostableRule(
            alert=self.name,
            alert_type=self.alert_type,
            rule_type=self.rule_type,
            eval_window=self.eval_window,
            frequency=self.frequency,
            hold_duration=self.hold_duration,
            condition=self.condition,
            labels=self.labels,
            annotations=self.annotations,
            preferred_channels=self.preferred_channels,
            source=self.source,
            version=self.version,
        )

    def __str__(self) -> str:
        data = self.to_postable().model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        except yaml.YAMLError as exc:
            return f"error marshaling alerting rule: {exc}"
