"""Scan trigger: finds builds newer than the last scan and dispatches them."""

import logging
from datetime import timedelta

from failure_history.config import ScanConfig
from failure_history.dispatcher import CollectDispatcher
from failure_history.errors import ScanLogEmptyError
from failure_history.jenkins import JenkinsClient
from failure_history.models import ScanResult, utcnow
from failure_history.storage import HistoryStore

logger = logging.getLogger(__name__)


def select_new_builds(
    builds: list[int], logged: set[int], max_batch: int
) -> list[int]:
    """Pick the builds to collect.

    ``builds`` is the CI server's list, newest first. Everything before the
    high-water mark (the newest logged build) is new; the result is capped to
    the ``max_batch`` most recent.

    When the mark is missing from ``builds`` (the CI server no longer lists
    it, or lists builds out of order) the selection falls back to the builds
    numbered above the mark.
    """
    if not logged:
        raise ValueError("logged builds must not be empty")
    mark = max(logged)

    if mark in builds:
        candidates = builds[: builds.index(mark)]
    else:
        logger.warning(
            f"High-water mark #{mark} not in CI build list "
            f"({len(builds)} builds); selecting builds numbered above it"
        )
        candidates = [b for b in builds if b > mark]

    return [b for b in candidates if b not in logged][:max_batch]


class ScanTrigger:
    """Discovers unscanned builds and fans out one collection per build."""

    def __init__(
        self,
        jenkins: JenkinsClient,
        store: HistoryStore,
        dispatcher: CollectDispatcher,
        config: ScanConfig,
    ):
        self.jenkins = jenkins
        self.store = store
        self.dispatcher = dispatcher
        self.config = config

    async def run(self) -> ScanResult:
        """Run one scan.

        Raises:
            ScanLogEmptyError: nothing was scanned inside the window, so
                there is no high-water mark to start from.
            CIServerError: the build list could not be fetched.
        """
        builds = await self.jenkins.list_completed_builds()

        cutoff = utcnow() - timedelta(days=self.config.window_days)
        logged = await self.store.scanned_since(cutoff)
        if not logged:
            raise ScanLogEmptyError(self.config.window_days)

        selected = select_new_builds(builds, logged, self.config.max_batch)
        result = ScanResult(high_water_mark=max(logged), selected=selected)
        if not selected:
            logger.info(f"No new builds since #{result.high_water_mark}")
            return result

        outcomes = self.dispatcher.dispatch(selected)
        result.failed_dispatches = [b for b, ok in outcomes.items() if not ok]
        logger.info(
            f"Scan dispatched {len(selected) - len(result.failed_dispatches)}"
            f"/{len(selected)} builds newer than #{result.high_water_mark}: {selected}"
        )
        return result
