# src/shoptrans/infrastructure/persistence/repositories/__init__.py
from ._error_repo import SqlAlchemyErrorRepository
from ._resource_repo import SqlAlchemyResourceRepository
from ._session_repo import SqlAlchemySessionRepository
from ._translation_repo import SqlAlchemyTranslationRepository

__all__ = [
    "SqlAlchemyErrorRepository",
    "SqlAlchemyResourceRepository",
    "SqlAlchemySessionRepository",
    "SqlAlchemyTranslationRepository",
]
