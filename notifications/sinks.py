import logging

from django.db import transaction

from notifications.models import OutboxEvent

logger = logging.getLogger(__name__)


class BaseSink:
    def send(self, event):
        raise NotImplementedError


class OutboxSink(BaseSink):
    """Persist events for connected clients to pull."""

    def send(self, event):
        with transaction.atomic():
            OutboxEvent.objects.create(
                event_type=event["event_type"],
                branch_id=event.get("branch_id"),
                audience=event.get("audience") or OutboxEvent.Audience.ALL,
                entity=event.get("entity") or "",
                entity_id=event.get("entity_id"),
                payload=event["payload"],
            )


class LoggingSink(BaseSink):
    def send(self, event):
        logger.info(
            "notification_published",
            extra={
                "event_type": event["event_type"],
                "entity": event.get("entity"),
                "entity_id": event.get("entity_id"),
            },
        )
