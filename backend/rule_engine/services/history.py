"""
规则状态历史 (Rule State History)

状态机在内存中完成状态转换后，把本次评估产生的状态变化记录转交给外部存储。
持久化失败只记录日志，不影响评估结果和规则健康度。

Forwards the state change records of a tick to the history store after the
in-memory transition. Persistence failures are logged and never raised.
"""
import logging
from typing import List, Optional, Protocol

from rule_engine.core.database import async_session
from rule_engine.core.exceptions import HistoryPersistError
from rule_engine.models.rule_state_history import RuleStateHistory
from rule_engine.services.alerting import RuleStateHistoryRecord

logger = logging.getLogger(__name__)


class HistoryStore(Protocol):
    async def add_rule_state_history(self, records: List[RuleStateHistoryRecord]) -> None:
        ...


class SqlHistoryStore:
    """写入 rule_state_history 表 (Writes the rule_state_history table)"""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session

    async def add_rule_state_history(self, records: List[RuleStateHistoryRecord]) -> None:
        async with self._session_factory() as db:
            for r in records:
                db.add(RuleStateHistory(
                    rule_id=r.rule_id,
                    rule_name=r.rule_name,
                    overall_state=r.overall_state,
                    overall_state_changed=r.overall_state_changed,
                    state=r.state,
                    state_changed=r.state_changed,
                    unix_milli=r.unix_milli,
                    labels=r.labels,
                    fingerprint=str(r.fingerprint),
                    value=r.value,
                ))
            await db.commit()


class HistoryRecorder:
    """状态历史转发器 (State history forwarder)"""

    def __init__(self, store: Optional[HistoryStore] = None):
        self.store = store

    async def record(self, records: List[RuleStateHistoryRecord]) -> bool:
        """
        持久化状态变化记录，成功或无需写入时返回 True

        Returns:
            False 表示写入失败（已记录日志）
        """
        if not records or self.store is None:
            return True
        try:
            await self.store.add_rule_state_history(records)
        except Exception as exc:
            err = HistoryPersistError("error while inserting rule state history", detail=str(exc))
            logger.error("%s: %s (%d records)", err.message, err.detail, len(records))
            return False
        return True
