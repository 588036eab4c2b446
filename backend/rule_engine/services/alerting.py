"""
告警实例与状态 (Alert Instances and States)

告警状态、规则健康度、评估样本、告警实例以及规则状态历史记录的定义。

Alert states, rule health, evaluation samples, alert instances and rule
state history records.
"""
import copy
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Dict, List, Optional


class AlertState(IntEnum):
    """告警状态，数值越大越严重 (Alert state, larger is more severe)"""
    INACTIVE = 0
    PENDING = 1
    FIRING = 2
    DISABLED = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "AlertState":
        try:
            return cls[label.upper()]
        except KeyError:
            raise ValueError(f"invalid alert state {label!r}") from None


class RuleHealth(str, Enum):
    UNKNOWN = "unknown"
    GOOD = "ok"
    BAD = "err"


@dataclass
class Sample:
    """一条序列的评估结果 (Evaluated outcome of one series)"""
    metric: Dict[str, str] = field(default_factory=dict)
    metric_orig: Dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    timestamp: Optional[datetime] = None
    is_missing: bool = False


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass
class Alert:
    """
    告警实例 (Alert Instance)

    每个标签集指纹对应一个实例。labels 用于分组去重，annotations 用于展示，
    query_result_labels 保留查询结果的原始标签，用于按结果分组状态历史。
    """
    state: AlertState = AlertState.PENDING
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    query_result_labels: Dict[str, str] = field(default_factory=dict)
    generator_url: str = ""
    receivers: List[str] = field(default_factory=list)
    value: float = 0.0
    active_at: Optional[datetime] = None
    fired_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    missing: bool = False

    def needs_sending(self, now: datetime, resend_delay: timedelta) -> bool:
        """
        是否需要（重新）发送 (Whether the alert needs to be (re)sent)

        pending 状态从不发送；发送后又恢复的告警立即发送；否则等待 resend_delay。
        """
        if self.state == AlertState.PENDING:
            return False
        if self.last_sent_at is None:
            return True
        if self.resolved_at is not None and self.resolved_at > self.last_sent_at:
            return True
        return self.last_sent_at + resend_delay < now

    def copy(self) -> "Alert":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "state": self.state.label,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "generatorURL": self.generator_url,
            "receivers": list(self.receivers),
            "value": self.value,
            "activeAt": _iso(self.active_at),
            "firedAt": _iso(self.fired_at),
            "resolvedAt": _iso(self.resolved_at),
            "lastSentAt": _iso(self.last_sent_at),
            "validUntil": _iso(self.valid_until),
            "missing": self.missing,
        }


@dataclass
class RuleStateHistoryRecord:
    """规则状态变化记录 (Rule state change record)"""
    rule_id: str
    rule_name: str
    state: str
    state_changed: bool
    unix_milli: int
    labels: str
    fingerprint: int
    value: float = 0.0
    overall_state: str = ""
    overall_state_changed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def labels_json(labels: Dict[str, str]) -> str:
    return json.dumps(labels, sort_keys=True)
