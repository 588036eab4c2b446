"""
告警通知 (Alert Notifiers)

NotifyFunc 的两个实现：
    - WebhookNotifier: 以 JSON POST 告警快照，失败时按 notify_max_retries 重试
    - RedisAlertPublisher: 将告警快照发布到 Redis 频道，供其他服务订阅
另有 fan_out 将多个通知函数组合为一个。

Two NotifyFunc implementations (webhook with bounded retries and Redis
pub/sub) plus fan_out to combine several notify functions.
"""
import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import httpx

from rule_engine.core.config import settings
from rule_engine.core.redis import get_redis
from rule_engine.services.alerting import Alert

logger = logging.getLogger(__name__)

NotifyFunc = Callable[..., Awaitable[None]]


def build_payload(group_key: str, alerts) -> dict:
    return {"groupKey": group_key, "alerts": [a.to_dict() for a in alerts]}


class WebhookNotifier:
    """Webhook 通知 (Webhook notifier)"""

    def __init__(self, url: Optional[str] = None, max_retries: Optional[int] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url or settings.notify_webhook_url
        self.max_retries = max_retries if max_retries is not None else settings.notify_max_retries
        self._transport = transport

    async def __call__(self, group_key: str, *alerts: Alert) -> bool:
        if not self.url or not alerts:
            return False

        payload = build_payload(group_key, alerts)
        error = None
        # 带重试的发送逻辑 (send with retries)
        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                    resp = await client.post(self.url, json=payload)
                if 200 <= resp.status_code < 300:
                    logger.info("Notification sent for %d alerts to %s", len(alerts), self.url)
                    return True
                error = f"HTTP {resp.status_code}"
            except httpx.HTTPError as e:
                error = str(e)[:500]
            logger.debug("Notification attempt %d failed: %s", attempt + 1, error)

        logger.warning("Notification failed for %d alerts to %s: %s", len(alerts), self.url, error)
        return False


class RedisAlertPublisher:
    """Redis 频道发布 (Redis pub/sub publisher)"""

    def __init__(self, channel: Optional[str] = None, redis=None):
        self.channel = channel or settings.alert_events_channel
        self._redis = redis

    async def __call__(self, group_key: str, *alerts: Alert) -> None:
        if not alerts:
            return
        redis = self._redis or await get_redis()
        await redis.publish(self.channel, json.dumps(build_payload(group_key, alerts)))


def fan_out(*notifiers: NotifyFunc) -> NotifyFunc:
    """组合多个通知函数，并发调用，单个失败不影响其他 (Combine notify functions)"""

    async def notify(group_key: str, *alerts: Alert) -> None:
        outcomes = await asyncio.gather(
            *(n(group_key, *alerts) for n in notifiers), return_exceptions=True
        )
        for notifier, outcome in zip(notifiers, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Notifier %r failed: %s", notifier, outcome)

    return notify
