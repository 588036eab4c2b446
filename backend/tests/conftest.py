"""
规则引擎测试基础配置

提供 SQLite in-memory 异步数据库、mock Redis 以及查询 / 元数据 / 历史存储替身等通用 fixture。
所有测试使用隔离的 SQLite 数据库，不依赖外部 PostgreSQL/Redis/查询服务。
"""
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# 必须在导入引擎模块之前设置环境变量，避免真实连接
os.environ["POSTGRES_HOST"] = "localhost"
os.environ["POSTGRES_PORT"] = "5432"
os.environ["REDIS_HOST"] = "localhost"
os.environ["NOTIFY_WEBHOOK_URL"] = ""

from rule_engine.core.database import Base
import rule_engine.core.redis as redis_module
import rule_engine.models  # noqa: F401  注册 ORM 模型

from factories import FakeHistoryStore, FakeMetadataSource, RecordingNotifier


# ── SQLite 异步引擎 ──────────────────────────────────────────────────
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestingSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Mock Redis ────────────────────────────────────────────────────────
class FakeRedis:
    """内存级 Redis 模拟，记录 publish 的消息。"""
    def __init__(self):
        self._store: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None, **kwargs) -> None:
        self._store[key] = value

    async def delete(self, *keys: str) -> None:
        for k in keys:
            self._store.pop(k, None)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def close(self) -> None:
        pass


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """创建所有表并提供会话工厂，测试后清空。"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield TestingSessionLocal
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """提供一个干净的数据库会话。"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    """替换全局 Redis 客户端。"""
    fake = FakeRedis()
    original = redis_module.redis_client
    redis_module.redis_client = fake
    yield fake
    redis_module.redis_client = original


@pytest.fixture
def metadata():
    return FakeMetadataSource()


@pytest.fixture
def history_store():
    return FakeHistoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()
