import asyncio
import logging
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pricehub.core.config import Settings
from pricehub.db.session import build_engine, build_session_factory
from pricehub.integrations.connector import ConnectorRegistry
from pricehub.integrations.shopify_client import ShopifyConnector
from pricehub.services.outbox_service import SubscriberRegistry
from pricehub.services.subscribers import default_subscribers

logger = logging.getLogger(__name__)


class PipelineContext:
    """Process-scoped resources shared by the API and the background jobs."""

    def __init__(self, settings: Settings, engine: AsyncEngine | None,
                 session_factory: async_sessionmaker[AsyncSession], connectors: ConnectorRegistry,
                 subscribers: SubscriberRegistry):
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.connectors = connectors
        self.subscribers = subscribers
        self._running_jobs: set[asyncio.Task] = set()

    @asynccontextmanager
    async def running_job(self):
        """Mark the current task as an in-flight loop iteration until the block exits."""
        task = asyncio.current_task()
        self._running_jobs.add(task)
        try:
            yield
        finally:
            self._running_jobs.discard(task)

    async def wait_for_running_jobs(self, timeout: float) -> bool:
        """Wait for in-flight iterations; False when some were still running at the timeout."""
        pending = [task for task in self._running_jobs if not task.done()]
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        return not still_running

    async def close(self) -> None:
        await self.connectors.close()
        await self.subscribers.close()
        if self.engine is not None:
            await self.engine.dispose()


def build_connectors(settings: Settings) -> ConnectorRegistry:
    registry = ConnectorRegistry()
    if settings.SHOPIFY_SHOP_DOMAIN and settings.SHOPIFY_ACCESS_TOKEN:
        registry.register("shopify", ShopifyConnector(
            shop_domain=settings.SHOPIFY_SHOP_DOMAIN,
            access_token=settings.SHOPIFY_ACCESS_TOKEN,
            api_version=settings.SHOPIFY_API_VERSION,
            timeout=settings.CONNECTOR_TIMEOUT_SECONDS,
        ))
    else:
        logger.warning("Shopify connector not configured; runs for platform 'shopify' will fail")
    return registry


def build_context(settings: Settings) -> PipelineContext:
    engine = build_engine(settings.database_url, echo=settings.DEBUG)
    return PipelineContext(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        connectors=build_connectors(settings),
        subscribers=default_subscribers(settings),
    )
