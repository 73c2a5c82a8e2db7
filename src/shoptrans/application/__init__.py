# src/shoptrans/application/__init__.py
"""
应用服务层。

本层编排领域逻辑与基础设施，完成具体的业务用例。
总协调器 (Coordinator) 是本层对外的统一入口。
"""
from .coordinator import Coordinator
from .job_handler import TranslationJobHandler
from .recovery import RecoveryService
from .sessions import SessionManager
from .skip_engine import SkipDecisionEngine
from .streams import EventStream
from .version_tracker import VersionTracker
from .work_queue import WorkQueue

__all__ = [
    "Coordinator",
    "EventStream",
    "RecoveryService",
    "SessionManager",
    "SkipDecisionEngine",
    "TranslationJobHandler",
    "VersionTracker",
    "WorkQueue",
]
