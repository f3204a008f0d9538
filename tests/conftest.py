from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import List

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from delivery_stock import models  # noqa: F401
from delivery_stock.api import create_app
from delivery_stock.config import Settings
from delivery_stock.database import Base
from delivery_stock.storage import DatabaseBlobStore, MemoryBlobStore


SAMPLE_LINES: List[str] = [
    "納品予定一覧",
    "出力日：2024/05/01 10:30",
    "2024/05/01～2024/05/07",
    "1 / 2",
    "伝票No.",
    "000124",
    "取引先",
    "ABC食品",
    "伝票日付",
    "2024/05/01",
    "納品日",
    "2024/05/02 09:00",
    "総合計",
    "￥4,400",
    "No",
    "商品名",
    "単価",
    "納品数量",
    "規格・入数／単位",
    "発注数量",
    "ﾁｪｯｸ",
    "牛乳",
    "200",
    "10",
    "本",
    "10",
    "本",
    "□",
    "1",
    "玉ねぎ",
    "1,200",
    "2",
    "箱",
    "10kg",
    "2",
    "箱",
    "□",
    "2",
    "伝票No.000123",
    "仕入先：45 XYZ商事",
    "コメント",
    "午前中に納品",
    "No",
    "ﾁｪｯｸ",
    "バター",
    "500",
    "3",
    "個",
    "3",
    "個",
    "2 / 2",
    "抽出条件→ 納品日",
]


@pytest.fixture()
def sample_lines() -> List[str]:
    return list(SAMPLE_LINES)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        environment="test",
        app_name="Test Delivery Stock Service",
        storage_backend="memory",
        storage_path=tmp_path / "storage",
    )


@pytest.fixture()
def memory_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture()
async def session_factory(settings: Settings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(settings.database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture()
def database_store(session_factory: async_sessionmaker[AsyncSession]) -> DatabaseBlobStore:
    return DatabaseBlobStore(session_factory)


@pytest.fixture()
def app(settings: Settings, memory_store: MemoryBlobStore) -> FastAPI:
    return create_app(settings, store=memory_store)


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
