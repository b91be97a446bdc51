"""Result collector: folds one build's non-passing tests into history.

Flow for a build id:
  1. Scan log entry → RUNNING
  2. Build metadata; ABORTED builds have no test report to read
  3. Test report → normalized, non-passing TestCaseResults
  4. Merge every case into its test's history (create / append / skip)
  5. Scan log entry → COMPLETED, whatever happened in 2-4

Per-test store failures are isolated: the remaining tests are still
merged and the collection is reported as degraded.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from failure_history.jenkins import JenkinsClient
from failure_history.models import (
    CaseStatus,
    CollectionResult,
    CollectionStatus,
    MergeOutcome,
    TestCaseResult,
    TestHistory,
    utcnow,
)
from failure_history.storage import HistoryStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def scan_log_entry(
    store: HistoryStore, result: CollectionResult
) -> AsyncGenerator[CollectionResult, None]:
    """Hold a RUNNING scan log entry for the duration of a collection.

    The entry is marked COMPLETED on every exit path. A failure to do so is
    logged and left on ``result.finalized``; it never replaces the error
    raised by the body.
    """
    await store.log_scan_started(result.build_id, utcnow())
    try:
        yield result
    finally:
        try:
            await store.mark_scan_completed(result.build_id)
            result.finalized = True
        except Exception as e:
            logger.error(
                f"Could not finalize scan log for build #{result.build_id}: {e}",
                exc_info=True,
            )


async def merge_result(store: HistoryStore, case: TestCaseResult) -> MergeOutcome:
    """Merge one non-passing case into the history of its test."""
    key = case.key
    failed = case.status == CaseStatus.FAILED

    history = await store.get_history(key)
    if history is None:
        if await store.create_history(key, case, failed=failed):
            return MergeOutcome.CREATED
        # Another collector created it between our read and write
        history = await store.get_history(key)

    if history is not None and history.has_build(case.build_id):
        await _repair_failed_in(store, history, case.build_id)
        return MergeOutcome.DUPLICATE

    if not await store.add_result(key, case, failed=failed):
        return MergeOutcome.DUPLICATE
    return MergeOutcome.APPENDED


async def _repair_failed_in(store: HistoryStore, history: TestHistory, build_id: int) -> None:
    # A FAILED snapshot always implies its build is in failed_in
    stored = next(r for r in history.results if r.build_id == build_id)
    if stored.status == CaseStatus.FAILED and build_id not in history.failed_in:
        logger.warning(f"{history.test_name}: adding missing failed build #{build_id}")
        await store.add_failed_build(history.test_name, build_id)


class ResultCollector:
    """Collects test failures of single builds into the history store."""

    def __init__(self, jenkins: JenkinsClient, store: HistoryStore):
        self.jenkins = jenkins
        self.store = store

    async def collect(self, build_id: int) -> CollectionResult:
        """Collect one build.

        Raises:
            CIServerError: the CI server could not deliver build data. The
                scan log entry is still finalized first.
        """
        result = CollectionResult(build_id=build_id)
        async with scan_log_entry(self.store, result):
            build = await self.jenkins.get_build_info(build_id)
            if build.aborted:
                logger.info(f"Build #{build_id} was aborted, skipping test report")
                return result

            result.results = await self.jenkins.get_test_report(build)
            await self._merge_all(result)

        logger.info(
            f"Collected build #{build_id}: {len(result.results)} results, "
            f"{result.created} created, {result.appended} appended, "
            f"{result.duplicates} duplicates, {len(result.failed_tests)} failed"
        )
        return result

    async def _merge_all(self, result: CollectionResult) -> None:
        for case in result.results:
            try:
                outcome = await merge_result(self.store, case)
            except Exception as e:
                logger.error(
                    f"Failed to store {case.key} for build #{case.build_id}: {e}",
                    exc_info=True,
                )
                result.failed_tests.append(case.key)
                continue

            if outcome == MergeOutcome.CREATED:
                result.created += 1
            elif outcome == MergeOutcome.APPENDED:
                result.appended += 1
            else:
                result.duplicates += 1

        if result.failed_tests:
            result.status = CollectionStatus.DEGRADED
