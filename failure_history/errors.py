"""Exception hierarchy for the failure history service."""

from typing import Optional


class FailureHistoryError(Exception):
    """Base class for all service errors."""


class InvalidBuildIdError(FailureHistoryError, ValueError):
    """Raised when a request carries no usable build id."""

    def __init__(self, raw: object = None):
        self.raw = raw
        if raw is None or raw == "":
            message = "You have to provide a build id"
        else:
            message = f"Build id must be a positive integer, got {raw!r}"
        super().__init__(message)


class CIServerError(FailureHistoryError):
    """The CI server answered with an error or could not be reached."""

    def __init__(self, url: str, status_code: Optional[int] = None, detail: str = ""):
        self.url = url
        self.status_code = status_code
        self.detail = detail
        if status_code is not None:
            message = f"CI server returned {status_code} for {url}"
        else:
            message = f"CI server request to {url} failed"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class StoreError(FailureHistoryError):
    """A read or write against the history store failed."""


class ConfigurationError(FailureHistoryError):
    """The service is not set up to perform the requested operation."""


class ScanLogEmptyError(ConfigurationError):
    """No build was scanned inside the trailing window.

    The trigger needs a high-water mark; seed the scan log with
    ``python -m failure_history seed <build_id>`` before the first run.
    """

    def __init__(self, window_days: int):
        self.window_days = window_days
        super().__init__(
            f"Scan log has no entries from the last {window_days} days; "
            f"seed it with a build id before running the scan trigger"
        )
