# tests/conftest.py
"""项目全局共享的测试 Fixtures。"""

from collections.abc import Generator
from typing import Any

import pytest
from pytest_mock import MockerFixture
from rich.console import Console

from shoptrans.config import ShopTransConfig
from tests.helpers.factories import make_config


@pytest.fixture(scope="session", autouse=True)
def disable_rich_colors_for_tests(
    session_mocker: MockerFixture,
) -> Generator[None, None, None]:
    """全局禁用 rich 库的颜色输出，以确保测试结果的确定性。"""
    original_init = Console.__init__

    def new_init(self: Console, *args: Any, **kwargs: Any) -> None:
        kwargs["force_terminal"] = False
        kwargs["color_system"] = None
        original_init(self, *args, **kwargs)

    session_mocker.patch("rich.console.Console.__init__", new=new_init)
    yield


@pytest.fixture(autouse=True)
def isolate_shoptrans_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """清掉宿主机上的 SHOPTRANS_* 环境变量，避免影响配置类测试。"""
    import os

    for name in list(os.environ):
        if name.upper().startswith("SHOPTRANS_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config() -> ShopTransConfig:
    """一份适合单元测试的内存配置（不触碰真实数据库）。"""
    return make_config()
