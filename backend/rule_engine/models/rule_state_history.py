"""
规则状态历史模型 (Rule State History Model)

记录每次评估中告警实例的状态变化（normal / firing / no_data），
以及规则整体状态是否随之改变。标签以 JSON 字符串保存，指纹用于按查询结果分组。

Records alert instance state changes (normal / firing / no_data) produced by
each evaluation, together with whether the rule-level overall state changed.
Labels are stored as a JSON string; the fingerprint groups history by query
result identity.
"""
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from rule_engine.core.database import Base


class RuleStateHistory(Base):
    """
    规则状态历史表 (Rule State History Table)
    """
    __tablename__ = "rule_state_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    rule_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)  # 规则 ID (Rule ID)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)  # 规则名称 (Rule Name)
    overall_state: Mapped[str] = mapped_column(String(20), nullable=False)  # 规则整体状态 (Overall rule state)
    overall_state_changed: Mapped[bool] = mapped_column(Boolean, default=False)  # 整体状态是否变化 (Overall state changed)
    state: Mapped[str] = mapped_column(String(20), nullable=False)  # 告警实例状态 (Alert instance state)
    state_changed: Mapped[bool] = mapped_column(Boolean, default=True)  # 实例状态是否变化 (Instance state changed)
    unix_milli: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)  # 评估时间戳，毫秒 (Eval timestamp, ms)
    labels: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # 查询结果标签 JSON (Query result labels JSON)
    fingerprint: Mapped[str] = mapped_column(String(20), index=True, nullable=False)  # 标签指纹 (Label fingerprint)
    value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)  # 告警值 (Alert value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )  # 创建时间 (Creation Time)
