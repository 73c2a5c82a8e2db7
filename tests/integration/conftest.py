# tests/integration/conftest.py
"""
集成测试共享的 Fixtures。

每个测试函数都在 tmp_path 下创建一个独立的 SQLite 数据库文件，
通过 DI 容器装配完整的组件图，测试结束后停止队列并释放引擎。
"""

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from shoptrans.application.coordinator import Coordinator
from shoptrans.bootstrap import shutdown_container
from shoptrans.config import ShopTransConfig
from shoptrans.core.types import ResourceSnapshot
from shoptrans.di import AppContainer
from shoptrans.infrastructure.db import create_all
from shoptrans.infrastructure.uow import UowFactory
from tests.helpers.factories import make_config


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'shoptrans-test.db'}"


@pytest.fixture
def config_overrides() -> dict[str, Any]:
    """测试模块可以覆盖此 fixture 来调整配置。"""
    return {}


@pytest.fixture
def app_config(db_url: str, config_overrides: dict[str, Any]) -> ShopTransConfig:
    return make_config(database={"url": db_url}, **config_overrides)


@pytest_asyncio.fixture
async def container(app_config: ShopTransConfig) -> AsyncGenerator[AppContainer, None]:
    """提供一个已建表、装配完成的 DI 容器。"""
    app = AppContainer()
    app.config.override(app_config)
    await create_all(app.db_engine())
    try:
        yield app
    finally:
        await shutdown_container(app)


@pytest.fixture
def coordinator(container: AppContainer) -> Coordinator:
    return container.coordinator()


@pytest.fixture
def uow_factory(container: AppContainer) -> UowFactory:
    return container.uow_factory


@pytest.fixture
def ingest(coordinator: Coordinator) -> Callable[..., Any]:
    """把快照逐个写入存储的便捷函数。"""

    async def _ingest(*snapshots: ResourceSnapshot) -> None:
        for snapshot in snapshots:
            await coordinator.tracker.ingest(snapshot)

    return _ingest
