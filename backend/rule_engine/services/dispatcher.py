"""
通知分发 (Notification Dispatcher)

按重发策略从活跃告警中挑选需要发送的告警，更新发送时间和有效期，
并返回不可变快照；快照在锁外交给 notify 回调。

Selects alerts due for (re)sending according to the resend policy, stamps
them and returns snapshot copies that are handed to notify outside the lock.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, List

from rule_engine.services.alerting import Alert

logger = logging.getLogger(__name__)

# 可容忍连续两次评估或发送失败 (tolerate two missed evaluations or sends)
VALID_FOR_MULTIPLIER = 4


def valid_until(now: datetime, resend_delay: timedelta, eval_interval: timedelta) -> datetime:
    return now + VALID_FOR_MULTIPLIER * max(resend_delay, eval_interval)


def select_alerts(
    alerts: Iterable[Alert],
    now: datetime,
    resend_delay: timedelta,
    eval_interval: timedelta,
    send_always: bool = False,
) -> List[Alert]:
    """
    挑选需要发送的告警并返回快照 (Pick alerts to send and return snapshots)

    调用方须持有规则锁：本函数会修改告警的 last_sent_at 和 valid_until。
    """
    snapshots = []
    for alert in alerts:
        if send_always or alert.needs_sending(now, resend_delay):
            alert.last_sent_at = now
            alert.valid_until = valid_until(now, resend_delay, eval_interval)
            snapshots.append(alert.copy())
        else:
            logger.debug("skipping send alert due to resend delay: %s", alert.labels)
    return snapshots
