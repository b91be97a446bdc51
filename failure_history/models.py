"""Data models for build scanning and test failure history."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from failure_history.errors import InvalidBuildIdError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaseStatus(str, Enum):
    """Normalized test case status."""

    PASSED = "PASSED"
    FAILED = "FAILED"
    FIXED = "FIXED"

    @classmethod
    def normalize(cls, raw: Optional[str]) -> "CaseStatus":
        """Map a CI status onto PASSED / FIXED / FAILED.

        SKIPPED, REGRESSION and anything unknown count as FAILED.
        """
        if raw == cls.FIXED.value:
            return cls.FIXED
        if raw == cls.PASSED.value:
            return cls.PASSED
        return cls.FAILED


class ScanStatus(str, Enum):
    """Lifecycle of a build collection."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"


class CollectionStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"


class MergeOutcome(str, Enum):
    CREATED = "created"
    APPENDED = "appended"
    DUPLICATE = "duplicate"


class BuildInfo(BaseModel):
    """Build metadata from ``{base}/{id}/api/json``."""

    build_id: int
    timestamp: Optional[int] = None  # epoch millis
    result: Optional[str] = None  # SUCCESS | UNSTABLE | FAILURE | ABORTED | None while running

    @property
    def aborted(self) -> bool:
        return self.result == "ABORTED"


class TestCaseResult(BaseModel):
    """One non-passing test case observed in one build."""

    __test__ = False  # prevent pytest collection

    class_name: str
    name: str
    status: CaseStatus
    duration_s: float = 0.0
    error_details: Optional[str] = None
    error_stack_trace: Optional[str] = None
    skipped: bool = False
    skipped_message: Optional[str] = None
    build_id: int
    build_timestamp: Optional[int] = None
    build_result: Optional[str] = None

    @property
    def key(self) -> str:
        return history_key(self.class_name, self.name)


class TestHistory(BaseModel):
    """Accumulated history of one test, keyed by ``className.testName``."""

    __test__ = False

    test_name: str
    failed_in: set[int] = Field(default_factory=set)
    results: list[TestCaseResult] = []
    created_at: Optional[datetime] = None

    def has_build(self, build_id: int) -> bool:
        return any(r.build_id == build_id for r in self.results)


class ScanLogEntry(BaseModel):
    """Bookkeeping row for one build collection."""

    build_id: int
    status: ScanStatus
    started_at: datetime
    completed_at: Optional[datetime] = None


class CollectionResult(BaseModel):
    """Outcome of collecting one build."""

    build_id: int
    status: CollectionStatus = CollectionStatus.OK
    results: list[TestCaseResult] = []
    created: int = 0
    appended: int = 0
    duplicates: int = 0
    failed_tests: list[str] = []
    finalized: bool = False


class ScanResult(BaseModel):
    """Outcome of one scan trigger run."""

    high_water_mark: int
    selected: list[int] = []
    failed_dispatches: list[int] = []


# --- API models ---


class ScanResponse(BaseModel):
    """POST /scan response."""

    status: str = "ok"
    high_water_mark: int
    dispatched: list[int] = []
    failed_dispatches: list[int] = []


class HistorySummary(BaseModel):
    """GET /summary response."""

    tracked_tests: int = 0
    recorded_results: int = 0
    scans_running: int = 0
    scans_completed: int = 0
    last_scan_started: Optional[datetime] = None


def history_key(class_name: str, name: str) -> str:
    return f"{class_name}.{name}"


def parse_build_id(raw: object) -> int:
    """Validate a build id from a path parameter, payload or CLI argument."""
    if raw is None or isinstance(raw, bool):
        raise InvalidBuildIdError(raw)
    if isinstance(raw, int):
        build_id = raw
    elif isinstance(raw, str) and raw.strip().isascii() and raw.strip().isdigit():
        build_id = int(raw.strip())
    else:
        raise InvalidBuildIdError(raw)
    if build_id <= 0:
        raise InvalidBuildIdError(raw)
    return build_id
