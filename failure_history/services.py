"""Explicitly constructed service graph shared by the API and the CLI."""

import logging
from dataclasses import dataclass
from typing import Optional

from failure_history.collector import ResultCollector
from failure_history.config import ServiceConfig
from failure_history.dispatcher import CollectDispatcher, Invoker, create_invoker
from failure_history.jenkins import JenkinsClient
from failure_history.scanner import ScanTrigger
from failure_history.storage import HistoryStore, create_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: ServiceConfig
    store: HistoryStore
    jenkins: JenkinsClient
    collector: ResultCollector
    invoker: Invoker
    scanner: ScanTrigger

    @classmethod
    def build(
        cls,
        config: ServiceConfig,
        store: Optional[HistoryStore] = None,
        jenkins: Optional[JenkinsClient] = None,
        invoker: Optional[Invoker] = None,
    ) -> "Services":
        """Wire the services; any component can be substituted."""
        store = store if store is not None else create_store(config.storage)
        jenkins = jenkins if jenkins is not None else JenkinsClient(config.jenkins)
        collector = ResultCollector(jenkins, store)
        invoker = invoker if invoker is not None else create_invoker(config.invoker, collector)
        scanner = ScanTrigger(jenkins, store, CollectDispatcher(invoker), config.scan)
        return cls(
            config=config,
            store=store,
            jenkins=jenkins,
            collector=collector,
            invoker=invoker,
            scanner=scanner,
        )

    async def start(self) -> None:
        await self.store.init()
        logger.info(
            f"Services started: store={self.store.__class__.__name__} "
            f"invoker={self.invoker.name} jenkins={self.jenkins.base or '(unset)'}"
        )

    async def close(self) -> None:
        await self.invoker.aclose()
        await self.jenkins.aclose()
        await self.store.close()
