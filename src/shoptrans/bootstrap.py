# src/shoptrans/bootstrap.py
"""
应用引导程序和 DI 容器的生命周期管理。

本模块是应用的唯一初始化入口，负责：
1. 加载 .env 与配置。
2. 创建并装配 DI 容器，初始化日志。
3. 管理核心资源（如数据库连接池）的关闭。
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import structlog
from dotenv import load_dotenv

from shoptrans.application.coordinator import Coordinator
from shoptrans.config import ShopTransConfig
from shoptrans.di import AppContainer
from shoptrans.infrastructure.db import dispose_engine
from shoptrans.observability import setup_logging_from_config

EnvMode = Literal["prod", "dev", "test"]

logger = structlog.get_logger("shoptrans.bootstrap")


def _load_dotenv_files(env_mode: EnvMode, base_dir: Path | None = None) -> list[Path]:
    """按环境模式加载 .env 文件；已存在的环境变量优先。"""
    base_dir = base_dir or Path.cwd()
    candidates = [base_dir / ".env"]
    if env_mode in ("dev", "test"):
        candidates.append(base_dir / ".env.dev")
    if env_mode == "test":
        candidates.append(base_dir / ".env.test")

    loaded = [p for p in candidates if p.is_file()]
    for file_path in loaded:
        load_dotenv(file_path, override=False, encoding="utf-8")
    logger.debug("Dotenv files loaded", files=[str(p) for p in loaded])
    return loaded


def create_app_config(
    env_mode: EnvMode = "dev", base_dir: Path | None = None
) -> ShopTransConfig:
    """加载、验证并返回应用配置对象。"""
    _load_dotenv_files(env_mode, base_dir)
    return ShopTransConfig()


def create_container(config: ShopTransConfig, service_name: str) -> AppContainer:
    """创建并装配 DI 容器。"""
    container = AppContainer()
    container.config.override(config)
    setup_logging_from_config(config, service=service_name)
    return container


def create_coordinator(container: AppContainer) -> Coordinator:
    return container.coordinator()


async def shutdown_container(container: AppContainer) -> None:
    """停止队列并释放数据库连接池。"""
    await container.coordinator().close()
    await dispose_engine(container.db_engine())
    logger.debug("容器资源已释放")
