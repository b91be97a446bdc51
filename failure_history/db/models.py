"""Database models for test failure history and the scan log.

Uses SQLAlchemy 2.0 with async support.
Backend-agnostic: works with SQLite (dev) and PostgreSQL (Cloud SQL).
"""

from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class TestResultRecord(Base):
    """One row per distinct test (``className.testName``)."""

    __test__ = False
    __tablename__ = "test_results"

    test_name: Mapped[str] = mapped_column(String(1000), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    entries: Mapped[list["TestResultEntry"]] = relationship(
        back_populates="test",
        order_by="TestResultEntry.id",
        cascade="all, delete-orphan",
    )
    failed_builds: Mapped[list["TestFailedBuild"]] = relationship(
        back_populates="test",
        cascade="all, delete-orphan",
    )


class TestResultEntry(Base):
    """Append-only snapshot log; at most one entry per test and build."""

    __test__ = False
    __tablename__ = "test_result_entries"
    __table_args__ = (
        UniqueConstraint("test_name", "build_id", name="uq_entry_test_build"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    test_name: Mapped[str] = mapped_column(
        String(1000), ForeignKey("test_results.test_name"), nullable=False, index=True
    )
    build_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)  # serialized TestCaseResult
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    test: Mapped["TestResultRecord"] = relationship(back_populates="entries")


class TestFailedBuild(Base):
    """The ``failed_in`` set of a test."""

    __test__ = False
    __tablename__ = "test_failed_builds"

    test_name: Mapped[str] = mapped_column(
        String(1000), ForeignKey("test_results.test_name"), primary_key=True
    )
    build_id: Mapped[int] = mapped_column(Integer, primary_key=True)

    test: Mapped["TestResultRecord"] = relationship(back_populates="failed_builds")


class ScanLog(Base):
    """Collection bookkeeping, one row per build."""

    __tablename__ = "scan_log"

    build_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
