"""Human-readable document numbers of the form ``<PREFIX>-<YYYY>-<MM>-<NNNN>``.

The sequence restarts every month. Numbers are derived from the highest one
already stored for the period, so two concurrent creators can pick the same
value; the unique constraint on the number column rejects the loser, which
recomputes and tries again.
"""

import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from common.exceptions import ConcurrentModification

logger = logging.getLogger(__name__)

QUOTATION_PREFIX = "Q"
SALE_PREFIX = "S"
STOCK_TRANSFER_PREFIX = "ST"
GOODS_RECEIVING_PREFIX = "GR"
PURCHASE_ORDER_PREFIX = "PO"

SEQUENCE_WIDTH = 4


def period_prefix(prefix, now=None):
    now = timezone.localtime(now or timezone.now())
    return f"{prefix}-{now:%Y}-{now:%m}-"


def next_sequence_number(model, field, prefix, now=None):
    stem = period_prefix(prefix, now)
    existing = model.objects.filter(**{f"{field}__startswith": stem}).values_list(field, flat=True)
    serials = [int(number[len(stem):]) for number in existing if number[len(stem):].isdigit()]
    serial = max(serials + [0]) + 1
    return f"{stem}{serial:0{SEQUENCE_WIDTH}d}"


def create_numbered(model, field, prefix, **fields):
    """Create ``model`` with a fresh sequence number in ``field``, retrying on collisions."""
    max_attempts = getattr(settings, "NUMBERING_MAX_ATTEMPTS", 5)

    for attempt in range(1, max_attempts + 1):
        number = next_sequence_number(model, field, prefix)
        try:
            with transaction.atomic():
                return model.objects.create(**{field: number}, **fields)
        except IntegrityError:
            if not model.objects.filter(**{field: number}).exists():
                raise
            logger.warning(
                "sequence_number_collision",
                extra={"entity": model._meta.label_lower, "entity_id": number, "attempt": attempt},
            )

    raise ConcurrentModification(errors={field: ["Could not allocate a unique number."]})
