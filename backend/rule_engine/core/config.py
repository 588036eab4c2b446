"""
应用配置模块 (Application Configuration Module)

使用 Pydantic Settings 管理规则引擎的所有配置项，支持从 .env 文件和环境变量读取。
提供数据库连接、Redis、查询服务、告警保留与重发等配置。

Uses Pydantic Settings to manage all configuration items for the rule engine,
supporting reading from .env files and environment variables. Covers database
connections, Redis, the query service, alert retention and resend behaviour.
"""
import logging

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    引擎全局配置类 (Engine Global Configuration Class)

    字段名自动映射同名环境变量（不区分大小写），支持 .env 文件加载。

    Field names automatically map to same-named environment variables
    (case insensitive), supporting .env file loading.
    """

    # 数据库配置 (Database Configuration)
    postgres_host: str = "localhost"  # PostgreSQL 主机地址 (PostgreSQL Host)
    postgres_port: int = 5432  # PostgreSQL 端口号 (PostgreSQL Port)
    postgres_db: str = "vigilops"  # 数据库名称 (Database Name)
    postgres_user: str = "vigilops"  # 数据库用户名 (Database Username)
    postgres_password: str = "vigilops_dev_password"  # 数据库密码 (Database Password)

    # Redis 配置 (Redis Configuration)
    redis_host: str = "localhost"  # Redis 主机地址 (Redis Host)
    redis_port: int = 6379  # Redis 端口号 (Redis Port)
    alert_events_channel: str = "vigilops:alert:rule"  # 告警事件发布频道 (Alert event pub/sub channel)

    # 查询服务配置 (Query Service Configuration)
    query_service_url: str = "http://localhost:8085"  # 时序查询服务地址 (Time-series query service URL)
    query_timeout_seconds: float = 30.0  # 单次评估的查询超时 (Query timeout per evaluation)

    # 评估与告警生命周期 (Evaluation and Alert Lifecycle)
    default_eval_window_minutes: int = 5  # 未配置评估窗口时的默认值 (Default eval window)
    resolved_retention_minutes: int = 15  # 已恢复告警保留时长 (Resolved alert retention)
    max_points_per_series: int = 300  # 每条序列允许的最大点数 (Max points per series)
    min_step_seconds: int = 60  # 最小查询步长 (Minimum query step)
    eval_interval_seconds: int = 60  # 评估间隔 (Evaluation interval)
    resend_delay_minutes: int = 60  # 告警重发间隔 (Resend delay for firing alerts)

    # 通知配置 (Notification Configuration)
    notify_webhook_url: str = ""  # Webhook 通知地址，为空则不启用 (Webhook URL, disabled when empty)
    notify_max_retries: int = 3  # 通知最大重试次数 (Max notification retries)

    log_level: str = "INFO"  # 日志级别 (Log Level)

    @property
    def database_url(self) -> str:
        """
        构造 PostgreSQL 异步连接 URL (Build PostgreSQL Async Connection URL)

        生成适用于 asyncpg 驱动的连接字符串，用于状态历史和指标元数据存储。
        """
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        """构造 Redis 连接 URL (Build Redis Connection URL)"""
        return f"redis://{self.redis_host}:{self.redis_port}/0"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}  # 自动加载 .env 文件 (Auto-load .env file)


# 全局配置实例 (Global Configuration Instance)
settings = Settings()
