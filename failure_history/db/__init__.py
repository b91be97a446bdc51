"""Database package for the failure history store."""

from failure_history.db.connection import (
    create_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from failure_history.db.models import (
    Base,
    ScanLog,
    TestFailedBuild,
    TestResultEntry,
    TestResultRecord,
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "init_db",
    "session_scope",
    "Base",
    "ScanLog",
    "TestFailedBuild",
    "TestResultEntry",
    "TestResultRecord",
]
