# src/shoptrans/di/container.py
"""
应用依赖注入 (DI) 容器。

本模块使用 `dependency-injector` 定义并装配应用的全部核心组件：
配置、数据库连接、UoW、决策缓存、翻译执行器、五个编排组件与顶层门面。
编排组件之间共享状态（队列、缓存、事件流），因此都以单例提供。
"""

from dependency_injector import containers, providers

from shoptrans.adapters.executors import create_executor
from shoptrans.application.coordinator import Coordinator
from shoptrans.application.job_handler import TranslationJobHandler
from shoptrans.application.recovery import RecoveryService
from shoptrans.application.sessions import SessionManager
from shoptrans.application.skip_engine import SkipDecisionEngine
from shoptrans.application.version_tracker import VersionTracker
from shoptrans.application.work_queue import WorkQueue
from shoptrans.config import ShopTransConfig
from shoptrans.infrastructure.cache import DecisionCache
from shoptrans.infrastructure.db import (
    create_async_db_engine,
    create_async_sessionmaker,
)
from shoptrans.infrastructure.uow import SqlAlchemyUnitOfWork
from shoptrans.observability.telemetry import Telemetry
from shoptrans.workers import OrchestrationWorker


class AppContainer(containers.DeclarativeContainer):
    """
    shoptrans 应用的核心 DI 容器。
    """

    # ==================================================================
    # 核心提供者 (Core Providers)
    # ==================================================================

    config = providers.Singleton(ShopTransConfig)

    db_engine = providers.Singleton(create_async_db_engine, cfg=config)

    db_sessionmaker = providers.Singleton(create_async_sessionmaker, engine=db_engine)

    uow_factory = providers.Factory(
        SqlAlchemyUnitOfWork,
        sessionmaker=db_sessionmaker,
    )

    telemetry = providers.Singleton(Telemetry)

    decision_cache = providers.Singleton(
        DecisionCache,
        config=config.provided.cache,
    )

    # ==================================================================
    # 适配器 (Adapters)
    # ==================================================================

    executor = providers.Singleton(create_executor, config=config)

    # ==================================================================
    # 应用组件 (Application Components)
    # ==================================================================

    job_handler = providers.Singleton(
        TranslationJobHandler,
        uow_factory=uow_factory.provider,
        executor=executor,
        config=config,
        cache=decision_cache,
    )

    work_queue = providers.Singleton(
        WorkQueue,
        config=config,
        handler=job_handler,
        telemetry=telemetry,
    )

    version_tracker = providers.Singleton(
        VersionTracker,
        uow_factory=uow_factory.provider,
        config=config,
        cache=decision_cache,
        telemetry=telemetry,
    )

    skip_engine = providers.Singleton(
        SkipDecisionEngine,
        uow_factory=uow_factory.provider,
        config=config,
        cache=decision_cache,
        telemetry=telemetry,
    )

    session_manager = providers.Singleton(
        SessionManager,
        uow_factory=uow_factory.provider,
        config=config,
        skip_engine=skip_engine,
        queue=work_queue,
        telemetry=telemetry,
    )

    recovery_service = providers.Singleton(
        RecoveryService,
        uow_factory=uow_factory.provider,
        config=config,
        queue=work_queue,
        sessions=session_manager,
        cache=decision_cache,
        telemetry=telemetry,
    )

    # ==================================================================
    # 顶层门面 (Top-Level Facade)
    # ==================================================================

    coordinator = providers.Singleton(
        Coordinator,
        uow_factory=uow_factory.provider,
        tracker=version_tracker,
        skip_engine=skip_engine,
        queue=work_queue,
        sessions=session_manager,
        recovery=recovery_service,
        cache=decision_cache,
    )

    orchestration_worker = providers.Factory(
        OrchestrationWorker,
        config=config,
        coordinator=coordinator,
    )
