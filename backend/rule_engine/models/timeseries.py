"""
时序元数据模型 (Time Series Metadata Model)

保存指标名称与其聚合时间性（Delta / Cumulative / Unspecified）的对应关系，
供时间性解析器批量查询。

Stores the metric name to aggregation temporality mapping (Delta /
Cumulative / Unspecified) looked up in batches by the temporality resolver.
"""
from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from rule_engine.core.database import Base


class TimeSeriesMetadata(Base):
    """指标元数据表 (Metric Metadata Table)"""
    __tablename__ = "time_series_metadata"
    __table_args__ = (UniqueConstraint("metric_name", "temporality", name="uq_metric_temporality"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    metric_name: Mapped[str] = mapped_column(String(255), index=True, nullable=False)  # 指标名称 (Metric Name)
    temporality: Mapped[str] = mapped_column(String(20), nullable=False)  # 时间性 (Temporality)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )  # 创建时间 (Creation Time)
