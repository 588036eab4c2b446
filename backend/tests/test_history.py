"""
规则状态历史持久化测试

使用 SQLite 内存数据库验证 SqlHistoryStore 写入，以及 HistoryRecorder 的尽力而为语义。
"""
import logging

import pytest
from sqlalchemy import select

from rule_engine.models.rule_state_history import RuleStateHistory
from rule_engine.services.alerting import RuleStateHistoryRecord
from rule_engine.services.history import HistoryRecorder, SqlHistoryStore
from rule_engine.services.labels import fingerprint

from factories import FakeHistoryStore


def make_record(state="firing", **overrides) -> RuleStateHistoryRecord:
    data = dict(
        rule_id="1",
        rule_name="Units test",
        state=state,
        state_changed=True,
        unix_milli=1716206430000,
        labels='{"svc": "api"}',
        fingerprint=fingerprint({"svc": "api"}),
        value=5.0,
        overall_state="firing",
        overall_state_changed=True,
    )
    data.update(overrides)
    return RuleStateHistoryRecord(**data)


class TestSqlHistoryStore:
    @pytest.mark.asyncio
    async def test_records_persisted(self, session_factory, db_session):
        store = SqlHistoryStore(session_factory)
        await store.add_rule_state_history([make_record(), make_record("normal", value=0.0)])

        rows = (await db_session.execute(
            select(RuleStateHistory).order_by(RuleStateHistory.id)
        )).scalars().all()

        assert [r.state for r in rows] == ["firing", "normal"]
        first = rows[0]
        assert first.rule_id == "1"
        assert first.overall_state == "firing"
        assert first.overall_state_changed is True
        assert first.unix_milli == 1716206430000
        assert first.fingerprint == str(fingerprint({"svc": "api"}))
        assert first.labels == '{"svc": "api"}'
        assert first.value == 5.0


class TestHistoryRecorder:
    @pytest.mark.asyncio
    async def test_forwards_records(self):
        store = FakeHistoryStore()
        assert await HistoryRecorder(store).record([make_record()])
        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_record(self):
        store = FakeHistoryStore(error=RuntimeError("never called"))
        assert await HistoryRecorder(store).record([])
        assert await HistoryRecorder(None).record([make_record()])

    @pytest.mark.asyncio
    async def test_failure_logged_not_raised(self, caplog):
        store = FakeHistoryStore(error=RuntimeError("db down"))
        with caplog.at_level(logging.ERROR, logger="rule_engine.services.history"):
            assert await HistoryRecorder(store).record([make_record()]) is False
        assert "db down" in caplog.text

    def test_record_to_dict(self):
        data = make_record().to_dict()
        assert data["state"] == "firing"
        assert data["fingerprint"] == fingerprint({"svc": "api"})
