"""Moving stock between branches.

A transfer is written as `pending` before any stock moves. The source debit
and destination credit each run in their own short transaction that first
claims a progress flag on the still pending transfer row. Concurrent callers
therefore apply each step once, and a transfer interrupted between the two
can be identified and rolled forward by `repair_pending_transfers`.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from common.exceptions import (
    BusinessValidationError,
    DomainError,
    InsufficientStock,
    InvalidTransition,
    ResourceNotFound,
)
from common.numbering import STOCK_TRANSFER_PREFIX, create_numbered
from common.saga import Saga
from common.utils import require_positive_int
from core.models import Branch
from inventory import ledger
from inventory.models import InventoryItem, StockMove, StockTransfer
from notifications.publisher import publish

logger = logging.getLogger(__name__)

SOURCE_REF_TYPE = "inventory.stock_transfer"


def _get_branch(branch_id, field):
    branch = Branch.objects.filter(id=branch_id, is_active=True).first()
    if branch is None:
        raise ResourceNotFound(errors={field: str(branch_id)})
    return branch


def transfer_stock(item_id, from_branch_id, to_branch_id, quantity, actor, *, notes="", defer=False):
    """Move ``quantity`` units of an item from one branch to another.

    With ``defer=True`` only the pending transfer is recorded; stock moves when
    `complete_transfer` is called.
    """
    require_positive_int(quantity, "quantity")
    if str(from_branch_id) == str(to_branch_id):
        raise BusinessValidationError(errors={"to_branch": ["Destination branch must differ from source branch."]})

    from_branch = _get_branch(from_branch_id, "from_branch")
    to_branch = _get_branch(to_branch_id, "to_branch")

    source = InventoryItem.objects.filter(id=item_id, is_active=True).first()
    if source is None:
        raise ResourceNotFound(errors={"item_id": str(item_id)})
    if source.branch_id != from_branch.id:
        raise BusinessValidationError(errors={"item_id": ["Item does not belong to the source branch."]})
    if source.quantity < quantity:
        raise InsufficientStock(errors={"item_id": str(source.id), "available": source.quantity, "requested": quantity})

    transfer = create_numbered(
        StockTransfer,
        "transfer_number",
        STOCK_TRANSFER_PREFIX,
        source_item=source,
        from_branch=from_branch,
        to_branch=to_branch,
        quantity=quantity,
        status=StockTransfer.Status.PENDING,
        created_by=actor,
        notes=notes,
    )

    if defer:
        publish(
            "stock_transfer_created",
            _transfer_payload(transfer),
            branch_id=from_branch.id,
            entity="stock_transfer",
            entity_id=transfer.id,
        )
        return transfer
    return _apply(transfer, actor)


def complete_transfer(transfer_id, actor):
    transfer = _get_transfer(transfer_id)
    if transfer.status != StockTransfer.Status.PENDING:
        raise InvalidTransition(errors={"status": [f"Transfer is {transfer.status}."]})
    return _apply(transfer, actor)


def cancel_transfer(transfer_id, actor, *, reason=""):
    transfer = _get_transfer(transfer_id)
    updated = StockTransfer.objects.filter(
        id=transfer.id,
        status=StockTransfer.Status.PENDING,
        source_debited=False,
        destination_credited=False,
    ).update(
        status=StockTransfer.Status.CANCELLED,
        cancelled_at=timezone.now(),
        notes=_append_note(transfer.notes, reason or "Cancelled"),
        updated_at=timezone.now(),
    )
    if not updated:
        raise InvalidTransition(errors={"status": ["Only pending transfers that have not moved stock can be cancelled."]})

    transfer.refresh_from_db()
    publish(
        "stock_transfer_cancelled",
        _transfer_payload(transfer),
        branch_id=transfer.from_branch_id,
        entity="stock_transfer",
        entity_id=transfer.id,
    )
    return transfer


def delete_transfer(transfer):
    if transfer.status == StockTransfer.Status.COMPLETED or transfer.is_applied:
        raise InvalidTransition(errors={"status": ["Transfers that moved stock cannot be deleted."]})
    transfer.delete()


def repair_pending_transfers(older_than=None, actor=None):
    """Roll forward transfers left half-applied by an interrupted process."""
    if older_than is None:
        older_than = timedelta(seconds=getattr(settings, "STOCK_TRANSFER_REPAIR_AFTER_SECONDS", 300))
    cutoff = timezone.now() - older_than

    summary = {"repaired": [], "failed": []}
    stuck = StockTransfer.objects.filter(
        status=StockTransfer.Status.PENDING,
        updated_at__lte=cutoff,
    ).exclude(source_debited=False, destination_credited=False)

    for transfer in stuck.order_by("created_at"):
        try:
            _apply(transfer, actor)
        except DomainError as exc:
            logger.error(
                "stock_transfer_repair_failed",
                extra={"entity_id": transfer.id, "error_code": exc.default_code},
            )
            summary["failed"].append(transfer.transfer_number)
            continue
        logger.info("stock_transfer_repaired", extra={"entity_id": transfer.id})
        summary["repaired"].append(transfer.transfer_number)
    return summary


def _get_transfer(transfer_id):
    transfer = StockTransfer.objects.select_related("source_item").filter(id=transfer_id).first()
    if transfer is None:
        raise ResourceNotFound(errors={"transfer_id": str(transfer_id)})
    return transfer


def _append_note(notes, line):
    return f"{notes}\n{line}".strip() if notes else line


def _apply(transfer, actor):
    """Run the missing steps of ``transfer`` and mark it completed."""
    started_clean = not transfer.is_applied
    saga = Saga("stock_transfer", context={"transfer": transfer, "actor": actor})

    if not transfer.source_debited:
        saga.step("debit_source", _debit_source, _undo_debit_source)
    if not transfer.destination_credited:
        saga.step("credit_destination", _credit_destination, _undo_credit_destination)
    saga.step("complete", _mark_completed)

    try:
        saga.run()
    except DomainError as exc:
        # A lost claim leaves the transfer to the request that holds it.
        cancelled = started_clean and StockTransfer.objects.filter(
            id=transfer.id,
            status=StockTransfer.Status.PENDING,
            source_debited=False,
            destination_credited=False,
        ).update(
            status=StockTransfer.Status.CANCELLED,
            cancelled_at=timezone.now(),
            notes=_append_note(transfer.notes, f"Transfer failed: {exc.default_code}"),
            updated_at=timezone.now(),
        )
        if cancelled:
            publish(
                "stock_transfer_cancelled",
                _transfer_payload(transfer, status=StockTransfer.Status.CANCELLED),
                branch_id=transfer.from_branch_id,
                entity="stock_transfer",
                entity_id=transfer.id,
            )
        raise

    transfer.refresh_from_db()
    publish(
        "stock_transfer_completed",
        _transfer_payload(transfer),
        branch_id=transfer.from_branch_id,
        entity="stock_transfer",
        entity_id=transfer.id,
    )
    return transfer


def _claim(transfer, flag, value):
    """Flip a progress flag on a still pending transfer. Returns False if another request got there first."""
    return bool(
        StockTransfer.objects.filter(id=transfer.id, status=StockTransfer.Status.PENDING, **{flag: not value}).update(
            updated_at=timezone.now(), **{flag: value}
        )
    )


def _debit_source(context):
    transfer = context["transfer"]
    with transaction.atomic():
        if not _claim(transfer, "source_debited", True):
            raise InvalidTransition(errors={"status": ["Transfer is already being applied by another request."]})
        move = ledger.adjust_quantity(
            transfer.source_item_id,
            -transfer.quantity,
            reason=StockMove.Reason.TRANSFER_OUT,
            source_ref_type=SOURCE_REF_TYPE,
            source_ref_id=transfer.id,
            actor=context["actor"],
        )
    transfer.source_debited = True
    return move


def _undo_debit_source(context, move):
    transfer = context["transfer"]
    with transaction.atomic():
        if not _claim(transfer, "source_debited", False):
            # The transfer was completed or cancelled elsewhere and owns this debit now.
            return
        ledger.adjust_quantity(
            transfer.source_item_id,
            transfer.quantity,
            reason=StockMove.Reason.COMPENSATION,
            source_ref_type=SOURCE_REF_TYPE,
            source_ref_id=transfer.id,
            actor=context["actor"],
        )
    transfer.source_debited = False


def _credit_destination(context):
    transfer = context["transfer"]
    source = transfer.source_item
    destination = transfer.destination_item or ledger.find_or_create_for_branch(
        source.item_code, transfer.to_branch, template=source
    )
    with transaction.atomic():
        if not _claim(transfer, "destination_credited", True):
            raise InvalidTransition(errors={"status": ["Transfer is already being applied by another request."]})
        move = ledger.adjust_quantity(
            destination.id,
            transfer.quantity,
            reason=StockMove.Reason.TRANSFER_IN,
            source_ref_type=SOURCE_REF_TYPE,
            source_ref_id=transfer.id,
            actor=context["actor"],
        )
        StockTransfer.objects.filter(id=transfer.id).update(destination_item=destination)
    transfer.destination_item = destination
    transfer.destination_credited = True
    return move


def _undo_credit_destination(context, move):
    transfer = context["transfer"]
    with transaction.atomic():
        if not _claim(transfer, "destination_credited", False):
            return
        ledger.adjust_quantity(
            move.item_id,
            -transfer.quantity,
            reason=StockMove.Reason.COMPENSATION,
            source_ref_type=SOURCE_REF_TYPE,
            source_ref_id=transfer.id,
            actor=context["actor"],
        )
    transfer.destination_credited = False


def _mark_completed(context):
    transfer = context["transfer"]
    updated = StockTransfer.objects.filter(
        id=transfer.id,
        status=StockTransfer.Status.PENDING,
        source_debited=True,
        destination_credited=True,
    ).update(status=StockTransfer.Status.COMPLETED, completed_at=timezone.now(), updated_at=timezone.now())
    if not updated:
        raise InvalidTransition(errors={"status": ["Transfer was changed by another request."]})


def _transfer_payload(transfer, status=None):
    return {
        "transfer_number": transfer.transfer_number,
        "status": status or transfer.status,
        "source_item_id": transfer.source_item_id,
        "destination_item_id": transfer.destination_item_id,
        "from_branch_id": transfer.from_branch_id,
        "to_branch_id": transfer.to_branch_id,
        "quantity": transfer.quantity,
    }
