"""CI Failure History: FastAPI application.

Polls a Jenkins job for new builds, collects their non-passing tests and
keeps a per-test failure history.

Endpoints:
- POST /scan                 run the scan trigger (fan-out to the collector)
- GET  /collect/{build_id}   collect one build, answer with its results
- POST /collect              internal fan-out target, payload {"buildId": n}
- GET  /tests/{test_name}    stored history of one test
- GET  /scans, /summary, /metrics, /health
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from failure_history import __version__
from failure_history.config import ServiceConfig, get_config
from failure_history.errors import InvalidBuildIdError, ScanLogEmptyError
from failure_history.models import (
    CollectionResult,
    HistorySummary,
    ScanLogEntry,
    ScanResponse,
    TestHistory,
    parse_build_id,
)
from failure_history.services import Services

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    config: Optional[ServiceConfig] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """Build the application; pass ``services`` to run against substitutes."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        svc = services or Services.build(config or get_config())
        await svc.start()
        app.state.services = svc
        logger.info(f"CI Failure History v{app.version} started")
        yield
        if owned:
            await svc.close()
        else:
            await svc.invoker.drain()
        logger.info("Shutting down")

    app = FastAPI(
        title="CI Failure History",
        description="Failing-test history collected from CI builds",
        version=__version__,
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


async def _run_collection(request: Request, raw_build_id: object) -> CollectionResult:
    build_id = parse_build_id(raw_build_id)
    try:
        return await _services(request).collector.collect(build_id)
    except Exception as e:
        logger.error(f"Collection of build #{build_id} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def _register_routes(app: FastAPI) -> None:

    @app.exception_handler(InvalidBuildIdError)
    async def invalid_build_id(request: Request, exc: InvalidBuildIdError):
        return PlainTextResponse(str(exc), status_code=400)

    # -----------------------------------------------------------------------
    # Health Check
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint for Cloud Run."""
        svc = getattr(request.app.state, "services", None)
        return {
            "status": "healthy",
            "service": "ci-failure-history",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "storage": svc.store.__class__.__name__ if svc else "not initialized",
        }

    # -----------------------------------------------------------------------
    # Scan Trigger
    # -----------------------------------------------------------------------

    @app.post("/scan", response_model=ScanResponse)
    async def scan(request: Request):
        """Dispatch collections for builds newer than the last scan."""
        try:
            result = await _services(request).scanner.run()
        except ScanLogEmptyError as e:
            logger.error(f"Scan precondition failed: {e}")
            raise HTTPException(status_code=412, detail=str(e))
        except Exception as e:
            logger.error(f"Scan failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return ScanResponse(
            high_water_mark=result.high_water_mark,
            dispatched=result.selected,
            failed_dispatches=result.failed_dispatches,
        )

    # -----------------------------------------------------------------------
    # Result Collector
    # -----------------------------------------------------------------------

    @app.get("/collect")
    async def collect_without_id():
        raise InvalidBuildIdError()

    @app.get("/collect/{build_id}")
    async def collect(build_id: str, request: Request):
        """Collect one build and answer with its non-passing test results."""
        result = await _run_collection(request, build_id)
        return JSONResponse(
            content=[r.model_dump(mode="json") for r in result.results],
            headers={"X-Collection-Status": result.status.value},
        )

    @app.post("/collect")
    async def collect_dispatched(request: Request):
        """Fan-out target: payload ``{"buildId": n}``, empty response body."""
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        raw = payload.get("buildId") if isinstance(payload, dict) else None
        result = await _run_collection(request, raw)
        return Response(
            status_code=200, headers={"X-Collection-Status": result.status.value}
        )

    # -----------------------------------------------------------------------
    # History & scan log
    # -----------------------------------------------------------------------

    @app.get("/tests/{test_name}", response_model=TestHistory)
    async def get_test_history(test_name: str, request: Request):
        history = await _services(request).store.get_history(test_name)
        if history is None:
            raise HTTPException(status_code=404, detail=f"No history for {test_name}")
        return history

    @app.get("/scans", response_model=list[ScanLogEntry])
    async def list_scans(request: Request, days: int = 5):
        since = datetime.now(timezone.utc) - timedelta(days=days)
        return await _services(request).store.list_scans(since)

    # -----------------------------------------------------------------------
    # Summary
    # -----------------------------------------------------------------------

    @app.get("/summary", response_model=HistorySummary)
    async def get_summary(request: Request):
        """Get aggregated history summary."""
        try:
            return await _services(request).store.get_summary()
        except Exception as e:
            logger.error(f"Summary failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    # -----------------------------------------------------------------------
    # Prometheus Metrics
    # -----------------------------------------------------------------------

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics(request: Request):
        """Prometheus-compatible metrics endpoint."""
        try:
            summary = await _services(request).store.get_summary()
        except Exception as e:
            logger.error(f"Metrics failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        lines = [
            "# HELP ci_history_tests_tracked Distinct tests with recorded failures",
            "# TYPE ci_history_tests_tracked gauge",
            f"ci_history_tests_tracked {summary.tracked_tests}",
            "",
            "# HELP ci_history_results_total Recorded non-passing test results",
            "# TYPE ci_history_results_total counter",
            f"ci_history_results_total {summary.recorded_results}",
            "",
            "# HELP ci_history_scans Scan log entries by status",
            "# TYPE ci_history_scans gauge",
            f'ci_history_scans{{status="running"}} {summary.scans_running}',
            f'ci_history_scans{{status="completed"}} {summary.scans_completed}',
            "",
        ]
        return "\n".join(lines)


app = create_app()
