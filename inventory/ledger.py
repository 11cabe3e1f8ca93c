"""Inventory quantity ledger.

All stock mutations go through `adjust_quantity`, which uses the item's
`version` column as an optimistic concurrency token: the write only lands if
the row still carries the version that was read. Every successful write
records a `StockMove` in the same local transaction.
"""

import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from common.exceptions import BusinessValidationError, ConcurrentModification, InsufficientStock, ResourceNotFound
from inventory.models import InventoryItem, StockMove

logger = logging.getLogger(__name__)

CLONED_FIELDS = (
    "barcode",
    "name",
    "description",
    "category",
    "brand",
    "unit",
    "cost",
    "price",
    "reorder_level",
    "supplier_id",
)


@dataclass(frozen=True)
class ItemSnapshot:
    quantity: int
    version: int
    branch_id: object


def _read_snapshot(item_id):
    row = (
        InventoryItem.objects.filter(id=item_id, is_active=True)
        .values_list("quantity", "version", "branch_id")
        .first()
    )
    if row is None:
        raise ResourceNotFound(errors={"item_id": str(item_id)})
    return ItemSnapshot(*row)


def adjust_quantity(item_id, delta, *, reason, source_ref_type=None, source_ref_id=None, actor=None, note=""):
    """Apply ``quantity += delta`` and return the recorded `StockMove`.

    Raises `InsufficientStock` when the result would be negative and
    `ConcurrentModification` once the retry budget is spent.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise BusinessValidationError(errors={"delta": ["Must be a non-zero whole number."]})

    max_attempts = getattr(settings, "INVENTORY_ADJUST_MAX_ATTEMPTS", 3)
    for attempt in range(1, max_attempts + 1):
        snapshot = _read_snapshot(item_id)
        quantity_after = snapshot.quantity + delta
        if quantity_after < 0:
            raise InsufficientStock(
                errors={"item_id": str(item_id), "available": snapshot.quantity, "requested": -delta},
            )

        with transaction.atomic():
            updated = InventoryItem.objects.filter(id=item_id, version=snapshot.version).update(
                quantity=F("quantity") + delta,
                version=F("version") + 1,
                updated_at=timezone.now(),
            )
            if updated:
                return StockMove.objects.create(
                    item_id=item_id,
                    branch_id=snapshot.branch_id,
                    delta=delta,
                    quantity_after=quantity_after,
                    reason=reason,
                    source_ref_type=source_ref_type,
                    source_ref_id=source_ref_id,
                    actor=actor if getattr(actor, "is_authenticated", False) else None,
                    note=note[:255],
                )

        logger.info(
            "inventory_adjust_conflict",
            extra={"item_id": item_id, "delta": delta, "attempt": attempt},
        )

    logger.warning("inventory_adjust_retries_exhausted", extra={"item_id": item_id, "delta": delta})
    raise ConcurrentModification(errors={"item_id": str(item_id)})


def create_item(*, branch, item_code, quantity=0, actor=None, **fields):
    """Create an item; a non-zero starting quantity is booked as an opening move."""
    with transaction.atomic():
        item = InventoryItem.objects.create(branch=branch, item_code=item_code, quantity=quantity, **fields)
        if quantity:
            StockMove.objects.create(
                item=item,
                branch=branch,
                delta=quantity,
                quantity_after=quantity,
                reason=StockMove.Reason.OPENING,
                source_ref_type="inventory.item",
                source_ref_id=item.id,
                actor=actor if getattr(actor, "is_authenticated", False) else None,
            )
    return item


def find_or_create_for_branch(item_code, branch, template):
    """Return the active item with ``item_code`` in ``branch``, cloning ``template`` if absent.

    New items start at quantity 0; the caller books the incoming stock through
    `adjust_quantity`. A soft-deleted match is reactivated rather than duplicated.
    """
    existing = InventoryItem.objects.filter(branch=branch, item_code=item_code).first()
    if existing is not None:
        if not existing.is_active:
            InventoryItem.objects.filter(id=existing.id).update(is_active=True, updated_at=timezone.now())
            existing.is_active = True
        return existing

    defaults = {field: getattr(template, field) for field in CLONED_FIELDS}
    try:
        with transaction.atomic():
            return InventoryItem.objects.create(branch=branch, item_code=item_code, quantity=0, **defaults)
    except IntegrityError:
        # A concurrent transfer created it first.
        return InventoryItem.objects.get(branch=branch, item_code=item_code)
