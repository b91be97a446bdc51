"""Storage backends for test failure history and the scan log.

Supports SQL via SQLAlchemy (SQLite / PostgreSQL, production) and an
in-memory store (tests, local dry runs). Both provide the same atomic
per-key primitives: create-if-absent, add-if-absent by build id and
add-to-set for ``failed_in``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, Optional, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from failure_history.config import StorageConfig
from failure_history.db import (
    ScanLog,
    TestFailedBuild,
    TestResultEntry,
    TestResultRecord,
    create_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from failure_history.errors import StoreError
from failure_history.models import (
    HistorySummary,
    ScanLogEntry,
    ScanStatus,
    TestCaseResult,
    TestHistory,
    utcnow,
)

logger = logging.getLogger(__name__)


class HistoryStore(Protocol):
    """Storage backend protocol."""

    async def init(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def get_history(self, test_name: str) -> Optional[TestHistory]:
        """Return the stored history of a test, or None."""
        ...

    async def create_history(
        self, test_name: str, snapshot: TestCaseResult, failed: bool
    ) -> bool:
        """Create a record holding one snapshot. False if the test already exists."""
        ...

    async def add_result(
        self, test_name: str, snapshot: TestCaseResult, failed: bool = False
    ) -> bool:
        """Append a snapshot unless one for the same build exists. True if added.

        With ``failed`` the build joins ``failed_in`` in the same atomic write.
        """
        ...

    async def add_failed_build(self, test_name: str, build_id: int) -> None:
        """Add a build id to the test's ``failed_in`` set (idempotent)."""
        ...

    async def log_scan_started(self, build_id: int, started_at: datetime) -> None:
        """Write (or overwrite) a RUNNING scan log entry."""
        ...

    async def mark_scan_completed(self, build_id: int) -> None:
        ...

    async def scanned_since(self, cutoff: datetime) -> set[int]:
        """Build ids whose scan started after ``cutoff``."""
        ...

    async def get_scan(self, build_id: int) -> Optional[ScanLogEntry]:
        ...

    async def list_scans(self, since: datetime) -> list[ScanLogEntry]:
        ...

    async def get_summary(self) -> HistorySummary:
        ...


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class InMemoryStore:
    """Process-local store for tests and dry runs.

    Each mutation runs under a single asyncio lock, which gives the same
    per-key atomicity the SQL backend gets from unique constraints.
    """

    def __init__(self):
        self._histories: dict[str, TestHistory] = {}
        self._scans: dict[int, ScanLogEntry] = {}
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get_history(self, test_name: str) -> Optional[TestHistory]:
        history = self._histories.get(test_name)
        return history.model_copy(deep=True) if history else None

    async def create_history(
        self, test_name: str, snapshot: TestCaseResult, failed: bool
    ) -> bool:
        async with self._lock:
            if test_name in self._histories:
                return False
            self._histories[test_name] = TestHistory(
                test_name=test_name,
                failed_in={snapshot.build_id} if failed else set(),
                results=[snapshot.model_copy()],
                created_at=utcnow(),
            )
            return True

    async def add_result(
        self, test_name: str, snapshot: TestCaseResult, failed: bool = False
    ) -> bool:
        async with self._lock:
            history = self._histories.get(test_name)
            if history is None:
                raise StoreError(f"No history record for {test_name}")
            if history.has_build(snapshot.build_id):
                return False
            history.results.append(snapshot.model_copy())
            if failed:
                history.failed_in.add(snapshot.build_id)
            return True

    async def add_failed_build(self, test_name: str, build_id: int) -> None:
        async with self._lock:
            history = self._histories.get(test_name)
            if history is None:
                raise StoreError(f"No history record for {test_name}")
            history.failed_in.add(build_id)

    async def log_scan_started(self, build_id: int, started_at: datetime) -> None:
        async with self._lock:
            self._scans[build_id] = ScanLogEntry(
                build_id=build_id, status=ScanStatus.RUNNING, started_at=started_at
            )

    async def mark_scan_completed(self, build_id: int) -> None:
        async with self._lock:
            entry = self._scans.get(build_id)
            if entry is None:
                raise StoreError(f"No scan log entry for build #{build_id}")
            entry.status = ScanStatus.COMPLETED
            entry.completed_at = utcnow()

    async def scanned_since(self, cutoff: datetime) -> set[int]:
        return {b for b, e in self._scans.items() if e.started_at > cutoff}

    async def get_scan(self, build_id: int) -> Optional[ScanLogEntry]:
        entry = self._scans.get(build_id)
        return entry.model_copy() if entry else None

    async def list_scans(self, since: datetime) -> list[ScanLogEntry]:
        entries = [e.model_copy() for e in self._scans.values() if e.started_at > since]
        return sorted(entries, key=lambda e: e.build_id, reverse=True)

    async def get_summary(self) -> HistorySummary:
        scans = list(self._scans.values())
        return HistorySummary(
            tracked_tests=len(self._histories),
            recorded_results=sum(len(h.results) for h in self._histories.values()),
            scans_running=sum(1 for s in scans if s.status == ScanStatus.RUNNING),
            scans_completed=sum(1 for s in scans if s.status == ScanStatus.COMPLETED),
            last_scan_started=max((s.started_at for s in scans), default=None),
        )


class SQLStore:
    """SQLAlchemy storage backend (SQLite via aiosqlite, PostgreSQL via asyncpg).

    Dedup and set semantics come from ``INSERT ... ON CONFLICT DO NOTHING``
    against the unique keys, so concurrent collectors writing the same test
    never produce two snapshots for one build.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.engine = create_engine(database_url, echo=echo)
        self._session_factory = create_session_factory(self.engine)

    async def init(self) -> None:
        url = self.engine.url
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        await init_db(self.engine)
        logger.info(f"SQL store ready: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        await self.engine.dispose()

    def _insert(self, model):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    # --- Test history ---

    async def get_history(self, test_name: str) -> Optional[TestHistory]:
        async with self._session() as session:
            record = (
                await session.execute(
                    select(TestResultRecord)
                    .where(TestResultRecord.test_name == test_name)
                    .options(
                        selectinload(TestResultRecord.entries),
                        selectinload(TestResultRecord.failed_builds),
                    )
                )
            ).scalar_one_or_none()
            if record is None:
                return None
            return TestHistory(
                test_name=record.test_name,
                failed_in={f.build_id for f in record.failed_builds},
                results=[TestCaseResult.model_validate(e.payload) for e in record.entries],
                created_at=_as_utc(record.created_at),
            )

    async def create_history(
        self, test_name: str, snapshot: TestCaseResult, failed: bool
    ) -> bool:
        async with self._session() as session:
            created = await session.execute(
                self._insert(TestResultRecord)
                .values(test_name=test_name, created_at=utcnow())
                .on_conflict_do_nothing(index_elements=["test_name"])
            )
            if created.rowcount == 0:
                return False
            await session.execute(
                self._insert(TestResultEntry).values(**self._entry_values(test_name, snapshot))
            )
            if failed:
                await session.execute(
                    self._insert(TestFailedBuild).values(
                        test_name=test_name, build_id=snapshot.build_id
                    )
                )
            return True

    async def add_result(
        self, test_name: str, snapshot: TestCaseResult, failed: bool = False
    ) -> bool:
        async with self._session() as session:
            added = await session.execute(
                self._insert(TestResultEntry)
                .values(**self._entry_values(test_name, snapshot))
                .on_conflict_do_nothing(index_elements=["test_name", "build_id"])
            )
            if added.rowcount != 1:
                return False
            if failed:
                await session.execute(
                    self._insert(TestFailedBuild)
                    .values(test_name=test_name, build_id=snapshot.build_id)
                    .on_conflict_do_nothing(index_elements=["test_name", "build_id"])
                )
            return True

    async def add_failed_build(self, test_name: str, build_id: int) -> None:
        async with self._session() as session:
            await session.execute(
                self._insert(TestFailedBuild)
                .values(test_name=test_name, build_id=build_id)
                .on_conflict_do_nothing(index_elements=["test_name", "build_id"])
            )

    @staticmethod
    def _entry_values(test_name: str, snapshot: TestCaseResult) -> dict:
        return {
            "test_name": test_name,
            "build_id": snapshot.build_id,
            "status": snapshot.status.value,
            "payload": snapshot.model_dump(mode="json"),
            "recorded_at": utcnow(),
        }

    # --- Scan log ---

    async def log_scan_started(self, build_id: int, started_at: datetime) -> None:
        async with self._session() as session:
            await session.execute(
                self._insert(ScanLog)
                .values(
                    build_id=build_id,
                    status=ScanStatus.RUNNING.value,
                    started_at=started_at,
                    completed_at=None,
                )
                .on_conflict_do_update(
                    index_elements=["build_id"],
                    set_={
                        "status": ScanStatus.RUNNING.value,
                        "started_at": started_at,
                        "completed_at": None,
                    },
                )
            )

    async def mark_scan_completed(self, build_id: int) -> None:
        async with self._session() as session:
            result = await session.execute(
                update(ScanLog)
                .where(ScanLog.build_id == build_id)
                .values(status=ScanStatus.COMPLETED.value, completed_at=utcnow())
            )
            if result.rowcount == 0:
                raise StoreError(f"No scan log entry for build #{build_id}")

    async def scanned_since(self, cutoff: datetime) -> set[int]:
        async with self._session() as session:
            rows = await session.execute(
                select(ScanLog.build_id).where(ScanLog.started_at > cutoff)
            )
            return set(rows.scalars().all())

    async def get_scan(self, build_id: int) -> Optional[ScanLogEntry]:
        async with self._session() as session:
            row = await session.get(ScanLog, build_id)
            return self._to_entry(row) if row else None

    async def list_scans(self, since: datetime) -> list[ScanLogEntry]:
        async with self._session() as session:
            rows = await session.execute(
                select(ScanLog)
                .where(ScanLog.started_at > since)
                .order_by(ScanLog.build_id.desc())
            )
            return [self._to_entry(r) for r in rows.scalars().all()]

    @staticmethod
    def _to_entry(row: ScanLog) -> ScanLogEntry:
        return ScanLogEntry(
            build_id=row.build_id,
            status=ScanStatus(row.status),
            started_at=_as_utc(row.started_at),
            completed_at=_as_utc(row.completed_at),
        )

    async def get_summary(self) -> HistorySummary:
        async with self._session() as session:
            tracked = await session.scalar(select(func.count()).select_from(TestResultRecord))
            recorded = await session.scalar(select(func.count()).select_from(TestResultEntry))
            by_status = dict(
                (
                    await session.execute(
                        select(ScanLog.status, func.count()).group_by(ScanLog.status)
                    )
                ).all()
            )
            last_started = await session.scalar(select(func.max(ScanLog.started_at)))
            return HistorySummary(
                tracked_tests=tracked or 0,
                recorded_results=recorded or 0,
                scans_running=by_status.get(ScanStatus.RUNNING.value, 0),
                scans_completed=by_status.get(ScanStatus.COMPLETED.value, 0),
                last_scan_started=_as_utc(last_started),
            )


def create_store(config: StorageConfig) -> HistoryStore:
    """Factory: creates the configured storage backend."""
    if config.backend == "memory":
        logger.info("Using in-memory history store")
        return InMemoryStore()
    return SQLStore(config.database_url, echo=config.echo)
