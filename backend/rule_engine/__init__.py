"""
VigilOps 规则评估引擎 (VigilOps Rule Evaluation Engine)

针对时序数据的异常告警规则评估引擎：计算对比时间窗口、拉取查询结果、
基于季节性基线打分、驱动每条序列的告警状态机，并输出状态历史和通知。

Anomaly alert rule evaluation engine over time-series data: plans comparison
windows, fetches query results, scores series against a seasonal baseline,
drives the per-series alert state machine and emits history and notifications.
"""

__version__ = "0.1.0"
