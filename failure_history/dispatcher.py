"""Collect dispatcher: fans out one collector invocation per build.

Handles:
- Invoker selection (in-process task or HTTP call to a collector service)
- Fire-and-forget scheduling, with pending tasks tracked for shutdown
- Error isolation (one build's dispatch failure doesn't block others)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from failure_history.collector import ResultCollector
from failure_history.config import InvokerConfig

logger = logging.getLogger(__name__)


class Invoker(ABC):
    """Schedules a collection for a build without waiting for it."""

    name = "invoker"

    def __init__(self):
        self._pending: set[asyncio.Task] = set()

    @abstractmethod
    async def _run(self, build_id: int) -> None:
        ...

    def invoke(self, build_id: int) -> asyncio.Task:
        task = asyncio.create_task(self._run(build_id), name=f"collect-{build_id}")
        self._pending.add(task)
        task.add_done_callback(lambda t: self._finished(build_id, t))
        return task

    def _finished(self, build_id: int, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning(f"Collection of build #{build_id} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Collection of build #{build_id} failed via {self.name}: {error}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for all scheduled collections to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()


class InProcessInvoker(Invoker):
    """Runs the collector as a background task in this process."""

    name = "in-process"

    def __init__(self, collector: ResultCollector):
        super().__init__()
        self.collector = collector

    async def _run(self, build_id: int) -> None:
        await self.collector.collect(build_id)


class HttpInvoker(Invoker):
    """Posts ``{"buildId": n}`` to a collector service's /collect endpoint."""

    name = "http"

    def __init__(self, config: InvokerConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.url = f"{config.collector_url.rstrip('/')}/collect"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=config.timeout_s)

    async def _run(self, build_id: int) -> None:
        resp = await self.client.post(self.url, json={"buildId": build_id})
        resp.raise_for_status()

    async def aclose(self) -> None:
        await super().aclose()
        if self._owns_client:
            await self.client.aclose()


def create_invoker(config: InvokerConfig, collector: ResultCollector) -> Invoker:
    """Factory: creates the configured invoker."""
    if config.mode == "http":
        return HttpInvoker(config)
    return InProcessInvoker(collector)


class CollectDispatcher:
    """Dispatches collections for a batch of builds, in order."""

    def __init__(self, invoker: Invoker):
        self.invoker = invoker

    def dispatch(self, build_ids: list[int]) -> dict[int, bool]:
        """Schedule a collection per build.

        Returns:
            Dict mapping build id -> whether scheduling succeeded
        """
        results = {}
        for build_id in build_ids:
            try:
                self.invoker.invoke(build_id)
                results[build_id] = True
                logger.info(f"Dispatched build #{build_id} via {self.invoker.name}")
            except Exception as e:
                logger.error(f"Dispatch of build #{build_id} failed: {e}", exc_info=True)
                results[build_id] = False
        return results
