import logging

from pricehub.core.config import Settings
from pricehub.integrations.base_client import BaseApiClient
from pricehub.services.outbox_service import DomainEvent, EventType, OutboxSubscriber, SubscriberRegistry

logger = logging.getLogger(__name__)


class LogSubscriber(OutboxSubscriber):
    """Writes every pipeline event to the application log."""
    name = "log"
    event_types = EventType.ALL

    async def handle(self, event: DomainEvent) -> None:
        logger.info("Event %s", event.event_type, extra={"extra": {
            "event_id": str(event.id),
            "tenant_id": event.tenant_id,
            "aggregate_id": event.aggregate_id,
            "payload": event.payload,
        }})


class WebhookSubscriber(BaseApiClient, OutboxSubscriber):
    """POSTs events to an external endpoint; any non-2xx response counts as a failed delivery."""
    name = "webhook"
    event_types = ("*",)

    def __init__(self, url: str, **client_kwargs):
        super().__init__(base_url=url, **client_kwargs)

    async def handle(self, event: DomainEvent) -> None:
        await self._request(
            "POST",
            "",
            json=event.model_dump(mode="json"),
            headers={"X-Event-Type": event.event_type, "X-Event-Id": str(event.id)},
        )


def default_subscribers(config: Settings) -> SubscriberRegistry:
    registry = SubscriberRegistry()
    registry.register(LogSubscriber())
    if config.OUTBOX_WEBHOOK_URL:
        registry.register(WebhookSubscriber(config.OUTBOX_WEBHOOK_URL))
    return registry
