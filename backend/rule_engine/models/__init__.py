"""
数据模型包 (Data Models Package)

集中导出规则引擎使用的 SQLAlchemy ORM 模型：规则状态历史与指标元数据。

Centrally exports the SQLAlchemy ORM models used by the rule engine: rule
state history and metric metadata.
"""
from rule_engine.models.rule_state_history import RuleStateHistory
from rule_engine.models.timeseries import TimeSeriesMetadata

__all__ = ["RuleStateHistory", "TimeSeriesMetadata"]
