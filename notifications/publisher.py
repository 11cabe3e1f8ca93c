"""Fire-and-forget lifecycle notifications.

`publish` never raises into the caller and never delays it: delivery is
deferred until the surrounding transaction commits (immediately when none is
open) and each sink failure is logged and dropped.
"""

import logging

from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

from common.utils import to_json_compatible

logger = logging.getLogger(__name__)

AUDIENCE_ADMINS = "admins"
AUDIENCE_ALL = "all"

DEFAULT_SINKS = ["notifications.sinks.OutboxSink"]


def get_sinks():
    return [import_string(path)() for path in getattr(settings, "NOTIFICATION_SINKS", DEFAULT_SINKS)]


def publish(event_type, payload, *, branch_id=None, audience=AUDIENCE_ALL, entity=None, entity_id=None):
    try:
        event = {
            "event_type": event_type,
            "branch_id": str(branch_id) if branch_id else None,
            "audience": audience,
            "entity": entity,
            "entity_id": str(entity_id) if entity_id else None,
            "payload": to_json_compatible(dict(payload or {})),
        }
        transaction.on_commit(lambda: deliver(event))
    except Exception:
        logger.exception("notification_publish_failed", extra={"event_type": event_type})


def deliver(event):
    try:
        sinks = get_sinks()
    except ImportError:
        logger.exception("notification_sink_config_invalid", extra={"event_type": event["event_type"]})
        return

    for sink in sinks:
        try:
            sink.send(event)
        except Exception:
            logger.exception(
                "notification_delivery_failed",
                extra={"event_type": event["event_type"], "entity": sink.__class__.__name__},
            )
