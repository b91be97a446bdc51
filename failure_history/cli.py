"""Command line entry point.

Usage:
    python -m failure_history scan
    python -m failure_history collect 1234
    python -m failure_history seed 1234
    python -m failure_history history com.example.FooTest.testBar
    python -m failure_history serve --port 8080
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Optional

from failure_history.config import ServiceConfig, load_config
from failure_history.errors import (
    CIServerError,
    FailureHistoryError,
    ScanLogEmptyError,
)
from failure_history.models import ScanStatus, parse_build_id, utcnow
from failure_history.services import Services

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PRECONDITION = 2


def _build_id(raw: str) -> int:
    try:
        return parse_build_id(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="failure_history",
        description="CI failure history: scan builds and collect failing tests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  scan      Dispatch collections for builds newer than the last scan
  collect   Collect a single build
  seed      Mark a build as scanned (bootstraps the high-water mark)
  history   Show the stored history of a test
  serve     Run the HTTP service
""",
    )
    parser.add_argument("--config", help="YAML config file (default: $CONFIG_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("scan", help="Run the scan trigger once and wait for collections")

    collect = sub.add_parser("collect", help="Collect one build")
    collect.add_argument("build_id", type=_build_id)

    seed = sub.add_parser("seed", help="Record a build as already scanned")
    seed.add_argument("build_id", type=_build_id)

    history = sub.add_parser("history", help="Print a test's failure history")
    history.add_argument("test_name", help="className.testName")

    serve = sub.add_parser("serve", help="Run the FastAPI service with uvicorn")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))

    return parser


async def _scan(services: Services) -> int:
    result = await services.scanner.run()
    print(f"🔎 High-water mark: #{result.high_water_mark}")
    if not result.selected:
        print("   No new builds")
        return EXIT_OK
    print(f"   Dispatched: {result.selected}")
    if result.failed_dispatches:
        print(f"   Failed to dispatch: {result.failed_dispatches}")
    await services.invoker.drain()
    return EXIT_OK


async def _collect(services: Services, build_id: int) -> int:
    result = await services.collector.collect(build_id)
    print(json.dumps([r.model_dump(mode="json") for r in result.results], indent=2))
    print(
        f"📥 Build #{build_id}: {result.created} created, {result.appended} appended, "
        f"{result.duplicates} duplicates ({result.status.value})",
        file=sys.stderr,
    )
    return EXIT_OK


async def _seed(services: Services, build_id: int) -> int:
    await services.store.log_scan_started(build_id, utcnow())
    await services.store.mark_scan_completed(build_id)
    entry = await services.store.get_scan(build_id)
    status = entry.status.value if entry else ScanStatus.COMPLETED.value
    print(f"🌱 Seeded scan log with build #{build_id} ({status})")
    return EXIT_OK


async def _history(services: Services, test_name: str) -> int:
    history = await services.store.get_history(test_name)
    if history is None:
        print(f"No history for {test_name}", file=sys.stderr)
        return EXIT_ERROR
    print(history.model_dump_json(indent=2))
    return EXIT_OK


async def run_command(args: argparse.Namespace, config: ServiceConfig) -> int:
    services = Services.build(config)
    await services.start()
    try:
        if args.command == "scan":
            return await _scan(services)
        if args.command == "collect":
            return await _collect(services, args.build_id)
        if args.command == "seed":
            return await _seed(services, args.build_id)
        if args.command == "history":
            return await _history(services, args.test_name)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await services.close()


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    config = load_config(args.config)

    if args.command == "serve":
        import uvicorn

        from failure_history.app import create_app

        uvicorn.run(create_app(config), host=args.host, port=args.port)
        return EXIT_OK

    try:
        return asyncio.run(run_command(args, config))
    except ScanLogEmptyError as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_PRECONDITION
    except CIServerError as e:
        print(f"❌ CI server error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except FailureHistoryError as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
