"""Jenkins API client for build listings and test reports.

Handles:
- Completed build discovery (in-progress builds excluded)
- Build metadata lookup
- Test report retrieval with a field projection
"""

import logging
from typing import Any, Optional

import httpx

from failure_history.config import JenkinsConfig
from failure_history.errors import CIServerError
from failure_history.models import BuildInfo, CaseStatus, TestCaseResult

logger = logging.getLogger(__name__)

BUILD_LIST_TREE = "lastCompletedBuild[number],builds[number]"
BUILD_INFO_TREE = "number,timestamp,result"
TEST_REPORT_TREE = (
    "suites[cases[className,name,status,duration,"
    "errorDetails,errorStackTrace,skipped,skippedMessage]]"
)


class JenkinsClient:
    """Read-only client for a single Jenkins job."""

    def __init__(self, config: JenkinsConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.base = config.base_url.rstrip("/")
        self.auth = (
            httpx.BasicAuth(config.username, config.password)
            if config.username
            else httpx.USE_CLIENT_DEFAULT
        )
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=config.timeout_s)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "JenkinsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _get_json(self, path: str, tree: str) -> dict[str, Any]:
        url = f"{self.base}/{path}"
        try:
            resp = await self.client.get(url, params={"tree": tree}, auth=self.auth)
        except httpx.HTTPError as e:
            raise CIServerError(url, detail=str(e)) from e
        if resp.status_code != 200:
            raise CIServerError(url, status_code=resp.status_code, detail=resp.text[:300])
        logger.debug(f"GET {url} -> {resp.status_code}")
        return resp.json()

    # --- Builds ---

    async def list_completed_builds(self) -> list[int]:
        """Build numbers up to the last completed build, server order (newest first)."""
        data = await self._get_json("api/json", BUILD_LIST_TREE)
        last_completed = data.get("lastCompletedBuild") or {}
        last_number = last_completed.get("number")
        if last_number is None:
            logger.info("CI server reports no completed builds")
            return []
        return [
            b["number"]
            for b in data.get("builds", [])
            if b.get("number") is not None and b["number"] <= last_number
        ]

    async def get_build_info(self, build_id: int) -> BuildInfo:
        data = await self._get_json(f"{build_id}/api/json", BUILD_INFO_TREE)
        # "id" was a timestamp string on old Jenkins; "number" is always the build number
        number = data.get("number")
        return BuildInfo(
            build_id=number if isinstance(number, int) else build_id,
            timestamp=data.get("timestamp"),
            result=data.get("result"),
        )

    # --- Test reports ---

    async def get_test_report(self, build: BuildInfo) -> list[TestCaseResult]:
        """Non-passing test cases of a build, with build metadata attached."""
        data = await self._get_json(f"{build.build_id}/testReport/api/json", TEST_REPORT_TREE)
        results = []
        for suite in data.get("suites", []):
            for case in suite.get("cases", []):
                status = CaseStatus.normalize(case.get("status"))
                if status == CaseStatus.PASSED:
                    continue
                results.append(parse_case(case, status, build))
        logger.info(
            f"Build #{build.build_id}: {len(results)} non-passing test cases"
        )
        return results


def parse_case(case: dict[str, Any], status: CaseStatus, build: BuildInfo) -> TestCaseResult:
    return TestCaseResult(
        class_name=case.get("className", ""),
        name=case.get("name", ""),
        status=status,
        duration_s=float(case.get("duration") or 0.0),
        error_details=case.get("errorDetails"),
        error_stack_trace=case.get("errorStackTrace"),
        skipped=bool(case.get("skipped", False)),
        skipped_message=case.get("skippedMessage"),
        build_id=build.build_id,
        build_timestamp=build.timestamp,
        build_result=build.result,
    )
