"""
规则评估任务模块。

按规则的评估频率定期执行评估，记录评估耗时和时间戳，并按重发策略发送告警通知。
每条规则一个后台循环，不同规则之间并行运行，评估失败只记录日志。
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from rule_engine.core.config import settings
from rule_engine.services.anomaly_rule import AnomalyRule, Queriers

logger = logging.getLogger(__name__)


def _interval(rule: AnomalyRule) -> timedelta:
    return rule.frequency or timedelta(seconds=settings.eval_interval_seconds)


async def run_rule_once(
    rule: AnomalyRule,
    queriers: Queriers,
    notify,
    now: Optional[datetime] = None,
    resend_delay: Optional[timedelta] = None,
) -> int:
    """执行一次评估并发送通知，返回活跃告警数量。评估失败时异常向上抛出。"""
    now = now or datetime.now(timezone.utc)
    if resend_delay is None:
        resend_delay = timedelta(minutes=settings.resend_delay_minutes)

    started = time.monotonic()
    try:
        count = await rule.eval(now, queriers)
    finally:
        rule.evaluation_duration = timedelta(seconds=time.monotonic() - started)
        rule.evaluation_timestamp = now

    await rule.send_alerts(now, resend_delay, _interval(rule), notify)
    return count


async def rule_runner_loop(rule: AnomalyRule, queriers: Queriers, notify):
    """单条规则的后台评估循环。"""
    interval = _interval(rule)
    logger.info("Rule runner started for rule %s (every %ss)", rule.id, interval.total_seconds())
    while True:
        try:
            await run_rule_once(rule, queriers, notify)
        except Exception:
            logger.exception("Error evaluating rule %s", rule.id)
        await asyncio.sleep(interval.total_seconds())
