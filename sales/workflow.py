"""Quotation lifecycle.

The legal moves are data: `TRANSITIONS` maps ``(current status, event)`` to
the status the quotation moves to and the guard the actor must pass. Every
status write is conditional on the status that was read, so two requests
racing on the same quotation cannot both succeed.

Checks run in a fixed order: the quotation must exist, must not be terminal,
the event must be legal from its status, the actor must pass the guard, and
only then is the payload validated.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from common.audit import create_audit_log
from common.exceptions import BusinessValidationError, InvalidTransition, ResourceNotFound
from common.numbering import QUOTATION_PREFIX, create_numbered
from common.permissions import get_user_role
from common.saga import Saga
from common.utils import to_money
from core.models import User
from inventory import ledger
from inventory.models import InventoryItem, StockMove
from notifications.publisher import AUDIENCE_ADMINS, AUDIENCE_ALL, publish
from sales import materializer
from sales.guards import (
    AssigneeCapabilityGuard,
    CapabilityGuard,
    CreatorCapabilityGuard,
    CreatorOrCapabilityGuard,
    Guard,
)
from sales.models import Quotation, QuotationItem, Sale

logger = logging.getLogger(__name__)

APPROVE = "approve"
REJECT = "reject"
DELIVER = "deliver"
CONVERT = "convert"
CANCEL = "cancel"
APPROVE_CANCELLATION = "approve_cancellation"
DENY_CANCELLATION = "deny_cancellation"

EVENTS = (APPROVE, REJECT, DELIVER, CONVERT, CANCEL, APPROVE_CANCELLATION, DENY_CANCELLATION)

DEFAULT_CANCELLATION_REASON = "No reason provided"

Status = Quotation.Status


@dataclass(frozen=True)
class Transition:
    # None restores the status recorded when cancellation was requested.
    to_status: str | None
    guard: Guard


_approve = Transition(Status.APPROVED, CapabilityGuard("quotation.approve"))
_reject = Transition(Status.REJECTED, CapabilityGuard("quotation.reject"))
_deliver = Transition(Status.COMPLETED, AssigneeCapabilityGuard("quotation.deliver"))
_convert = Transition(Status.COMPLETED, CreatorCapabilityGuard("quotation.convert"))
_cancel = Transition(Status.CANCELLED, CreatorOrCapabilityGuard("quotation.cancel"))
_request_cancel = Transition(Status.CANCELLATION_REQUESTED, CreatorOrCapabilityGuard("quotation.cancel"))

TRANSITIONS = {
    (Status.DRAFT, APPROVE): _approve,
    (Status.PENDING, APPROVE): _approve,
    (Status.DRAFT, REJECT): _reject,
    (Status.PENDING, REJECT): _reject,
    (Status.DRAFT, CANCEL): _cancel,
    (Status.PENDING, CANCEL): _cancel,
    (Status.APPROVED, DELIVER): _deliver,
    (Status.ACCEPTED, DELIVER): _deliver,
    (Status.APPROVED, CONVERT): _convert,
    (Status.ACCEPTED, CONVERT): _convert,
    (Status.APPROVED, CANCEL): _request_cancel,
    (Status.ACCEPTED, CANCEL): _request_cancel,
    (Status.CANCELLATION_REQUESTED, APPROVE_CANCELLATION): Transition(
        Status.CANCELLED, CapabilityGuard("quotation.cancellation.resolve")
    ),
    (Status.CANCELLATION_REQUESTED, DENY_CANCELLATION): Transition(
        None, CapabilityGuard("quotation.cancellation.resolve")
    ),
}

create_guard = CapabilityGuard("quotation.create")
edit_guard = CreatorOrCapabilityGuard("quotation.edit")


def allowed_events(quotation):
    return [event for (status, event) in TRANSITIONS if status == quotation.status]


def transition_quotation(quotation_id, event, actor, payload=None):
    """Apply ``event`` to a quotation on behalf of ``actor``.

    Returns the updated quotation, or the new `Sale` for ``deliver`` and
    ``convert``.
    """
    quotation = Quotation.objects.select_related("branch").filter(id=quotation_id).first()
    if quotation is None:
        raise ResourceNotFound(errors={"quotation_id": str(quotation_id)})
    if quotation.status in Quotation.TERMINAL_STATUSES:
        raise InvalidTransition(errors={"status": [f"Quotation is {quotation.status}."], "event": event})

    transition = TRANSITIONS.get((quotation.status, event))
    if transition is None:
        raise InvalidTransition(
            errors={"status": [f"Cannot {event} a {quotation.status} quotation."], "event": event},
        )
    transition.guard.check(actor, quotation, event)

    from_status = quotation.status
    before = _snapshot(quotation)
    result = HANDLERS[event](quotation, transition, actor, payload or {})
    quotation.refresh_from_db()

    logger.info(
        "quotation_transition",
        extra={
            "entity": "quotation",
            "entity_id": quotation.id,
            "transition": event,
            "from_status": from_status,
            "to_status": quotation.status,
        },
    )
    publish(
        "quotation_status_changed",
        {
            "quotation_number": quotation.quotation_number,
            "event": event,
            "from_status": from_status,
            "to_status": quotation.status,
            "created_by_id": quotation.created_by_id,
            "assigned_delivery_id": quotation.assigned_delivery_id,
            "sale_id": result.id if isinstance(result, Sale) else None,
        },
        branch_id=quotation.branch_id,
        audience=AUDIENCE_ALL,
        entity="quotation",
        entity_id=quotation.id,
    )
    create_audit_log(
        actor=actor,
        branch=quotation.branch,
        action=f"quotation.{event}",
        entity="quotation",
        entity_id=quotation.id,
        before_snapshot=before,
        after_snapshot=_snapshot(quotation),
    )
    return result


def _compare_and_set(quotation, expected_status, **changes):
    changes["updated_at"] = timezone.now()
    updated = Quotation.objects.filter(id=quotation.id, status=expected_status).update(**changes)
    if not updated:
        raise InvalidTransition(errors={"status": ["Quotation was changed by another request."]})
    for field, value in changes.items():
        setattr(quotation, field, value)


def _resolve_delivery_user(value):
    if value in (None, ""):
        return None
    try:
        user_id = value.id if isinstance(value, User) else uuid.UUID(str(value))
    except ValueError:
        user_id = None
    user = User.objects.filter(id=user_id, role=User.Role.DELIVERY, is_active=True).first() if user_id else None
    if user is None:
        raise BusinessValidationError(errors={"assigned_delivery": ["Invalid delivery user selected."]})
    return user


def _handle_approve(quotation, transition, actor, payload):
    changes = {"status": transition.to_status, "approved_by": actor, "approved_at": timezone.now()}
    if payload.get("assigned_delivery") not in (None, ""):
        changes["assigned_delivery"] = _resolve_delivery_user(payload["assigned_delivery"])
    _compare_and_set(quotation, quotation.status, **changes)
    return quotation


def _handle_reject(quotation, transition, actor, payload):
    _compare_and_set(quotation, quotation.status, status=transition.to_status)
    return quotation


def _handle_materialize(quotation, transition, actor, payload):
    return materializer.materialize(quotation, actor)


def _handle_cancel(quotation, transition, actor, payload):
    reason = (payload.get("reason") or "").strip() or DEFAULT_CANCELLATION_REASON
    now = timezone.now()
    if transition.to_status == Status.CANCELLED:
        _compare_and_set(
            quotation,
            quotation.status,
            status=Status.CANCELLED,
            cancelled_at=now,
            cancelled_by=actor,
            cancellation_reason=reason,
        )
    else:
        _compare_and_set(
            quotation,
            quotation.status,
            status=Status.CANCELLATION_REQUESTED,
            status_before_cancellation=quotation.status,
            cancellation_requested_at=now,
            cancellation_requested_by=actor,
            cancellation_reason=reason,
        )
    return quotation


def _handle_approve_cancellation(quotation, transition, actor, payload):
    """Cancel the quotation and, if its stock was taken, put the stock back."""
    stock_committed = quotation.stock_committed
    saga = Saga("approve_cancellation", context={"actor": actor, "quotation": quotation})

    def cancel(ctx):
        _compare_and_set(
            quotation,
            Status.CANCELLATION_REQUESTED,
            status=Status.CANCELLED,
            cancelled_at=timezone.now(),
            cancelled_by=actor,
            stock_committed=False,
        )

    def uncancel(ctx, result):
        _compare_and_set(
            quotation,
            Status.CANCELLED,
            status=Status.CANCELLATION_REQUESTED,
            cancelled_at=None,
            cancelled_by=None,
            stock_committed=stock_committed,
        )

    saga.step("cancel_quotation", cancel, uncancel)

    # Completed is terminal, so committed stock only reaches here on legacy or imported rows.
    if stock_committed:
        sale = Sale.objects.filter(quotation_id=quotation.id).first()
        if sale is not None:
            saga.step("cancel_sale", lambda ctx: _set_sale_status(sale, Sale.Status.CANCELLED), _restore_sale_status)
            lines = [(item.inventory_item_id, item.quantity) for item in sale.items.all()]
        else:
            lines = [(item.inventory_item_id, item.quantity) for item in quotation.items.filter(quantity__gt=0)]

        for index, (item_id, quantity) in enumerate(lines):

            def restock(ctx, item_id=item_id, quantity=quantity):
                return ledger.adjust_quantity(
                    item_id,
                    quantity,
                    reason=StockMove.Reason.CANCELLATION,
                    source_ref_type="sales.quotation",
                    source_ref_id=quotation.id,
                    actor=actor,
                )

            def unstock(ctx, move, item_id=item_id, quantity=quantity):
                ledger.adjust_quantity(
                    item_id,
                    -quantity,
                    reason=StockMove.Reason.COMPENSATION,
                    source_ref_type="sales.quotation",
                    source_ref_id=quotation.id,
                    actor=actor,
                )

            saga.step(f"restock_{index}", restock, unstock)

    saga.run()
    return quotation


def _set_sale_status(sale, status):
    previous = sale.status
    Sale.objects.filter(id=sale.id).update(status=status, updated_at=timezone.now())
    return (sale.id, previous)


def _restore_sale_status(ctx, result):
    sale_id, previous = result
    Sale.objects.filter(id=sale_id).update(status=previous, updated_at=timezone.now())


def _handle_deny_cancellation(quotation, transition, actor, payload):
    # Quotations written before the previous status was recorded go back to approved.
    restored = quotation.status_before_cancellation or Status.APPROVED
    _compare_and_set(
        quotation,
        Status.CANCELLATION_REQUESTED,
        status=restored,
        status_before_cancellation=None,
        cancellation_requested_at=None,
        cancellation_requested_by=None,
        cancellation_reason="",
    )
    return quotation


HANDLERS = {
    APPROVE: _handle_approve,
    REJECT: _handle_reject,
    DELIVER: _handle_materialize,
    CONVERT: _handle_materialize,
    CANCEL: _handle_cancel,
    APPROVE_CANCELLATION: _handle_approve_cancellation,
    DENY_CANCELLATION: _handle_deny_cancellation,
}


def _snapshot(quotation):
    return {
        "status": quotation.status,
        "stock_committed": quotation.stock_committed,
        "assigned_delivery": quotation.assigned_delivery_id,
        "subtotal": str(quotation.subtotal),
        "total": str(quotation.total),
        "cancellation_reason": quotation.cancellation_reason,
    }


# Creation and editing


def _resolve_items(branch, items, *, price_locked):
    if not items:
        raise BusinessValidationError(errors={"items": ["At least one item is required."]})

    resolved = []
    for index, entry in enumerate(items):
        item = entry.get("inventory_item")
        if not isinstance(item, InventoryItem):
            item = InventoryItem.objects.filter(id=item).first() if item else None
        if item is None or not item.is_active:
            raise BusinessValidationError(errors={"items": {index: ["Unknown or inactive inventory item."]}})
        if item.branch_id != branch.id:
            raise BusinessValidationError(errors={"items": {index: ["Item must belong to the quotation branch."]}})

        quantity = entry.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise BusinessValidationError(errors={"items": {index: ["Quantity must be a non-negative whole number."]}})

        unit_price = entry.get("unit_price")
        unit_price = to_money(item.price if price_locked or unit_price is None else unit_price)
        if unit_price < 0:
            raise BusinessValidationError(errors={"items": {index: ["Unit price cannot be negative."]}})

        resolved.append(
            {
                "inventory_item": item,
                "description": entry.get("description") or item.name,
                "quantity": quantity,
                "unit_price": unit_price,
                "total": to_money(quantity * unit_price),
            }
        )

    if not any(line["quantity"] > 0 for line in resolved):
        raise BusinessValidationError(errors={"items": ["At least one item must have a quantity above zero."]})
    return resolved


def _totals(lines, tax_amount, discount_amount):
    tax_amount = to_money(tax_amount)
    discount_amount = to_money(discount_amount)
    if tax_amount < 0 or discount_amount < 0:
        raise BusinessValidationError(errors={"amount": ["Tax and discount cannot be negative."]})
    subtotal = to_money(sum((line["total"] for line in lines), Decimal("0")))
    total = to_money(subtotal + tax_amount - discount_amount)
    if total < 0:
        raise BusinessValidationError(errors={"discount_amount": ["Discount cannot exceed the quotation amount."]})
    return {"subtotal": subtotal, "tax_amount": tax_amount, "discount_amount": discount_amount, "total": total}


def _price_locked(actor):
    # Customers always quote at list price.
    return get_user_role(actor) == User.Role.CUSTOMER


def create_quotation(
    *,
    actor,
    branch,
    items,
    customer=None,
    status=Status.PENDING,
    tax_amount=0,
    discount_amount=0,
    assigned_delivery=None,
    valid_until=None,
    notes="",
    terms="",
):
    create_guard.check(actor)
    if status not in Quotation.OPEN_STATUSES:
        raise BusinessValidationError(errors={"status": ["New quotations start as draft or pending."]})
    if branch is None:
        raise BusinessValidationError(errors={"branch": ["A branch is required."]})
    if customer is not None and customer.branch_id != branch.id:
        raise BusinessValidationError(errors={"customer": ["Customer must belong to the quotation branch."]})

    lines = _resolve_items(branch, items, price_locked=_price_locked(actor))
    totals = _totals(lines, tax_amount, discount_amount)
    delivery_user = _resolve_delivery_user(assigned_delivery)
    if valid_until is None:
        valid_until = timezone.now() + timedelta(days=getattr(settings, "QUOTATION_VALIDITY_DAYS", 30))

    with transaction.atomic():
        quotation = create_numbered(
            Quotation,
            "quotation_number",
            QUOTATION_PREFIX,
            branch=branch,
            customer=customer,
            created_by=actor,
            assigned_delivery=delivery_user,
            status=status,
            valid_until=valid_until,
            notes=notes,
            terms=terms,
            **totals,
        )
        _write_items(quotation, lines)

    create_audit_log(
        actor=actor,
        branch=branch,
        action="quotation.create",
        entity="quotation",
        entity_id=quotation.id,
        after_snapshot=_snapshot(quotation),
    )
    publish(
        "quotation_created",
        {"quotation_number": quotation.quotation_number, "status": quotation.status, "total": quotation.total},
        branch_id=branch.id,
        audience=AUDIENCE_ADMINS,
        entity="quotation",
        entity_id=quotation.id,
    )
    return quotation


def _write_items(quotation, lines):
    QuotationItem.objects.bulk_create(
        [
            QuotationItem(
                quotation=quotation,
                inventory_item=line["inventory_item"],
                description=line["description"],
                quantity=line["quantity"],
                unit_price=line["unit_price"],
                total=line["total"],
            )
            for line in lines
        ]
    )


def _load_open_quotation(quotation_id, actor):
    quotation = Quotation.objects.select_related("branch").filter(id=quotation_id).first()
    if quotation is None:
        raise ResourceNotFound(errors={"quotation_id": str(quotation_id)})
    if quotation.status not in Quotation.OPEN_STATUSES:
        raise InvalidTransition(errors={"status": [f"A {quotation.status} quotation can no longer be edited."]})
    edit_guard.check(actor, quotation, "edit")
    return quotation


EDITABLE_FIELDS = ("customer", "notes", "terms", "valid_until")


def update_quotation(quotation_id, actor, *, items=None, tax_amount=None, discount_amount=None, **fields):
    """Edit an open quotation; totals are always recomputed from its items."""
    quotation = _load_open_quotation(quotation_id, actor)
    before = _snapshot(quotation)

    unknown = set(fields) - set(EDITABLE_FIELDS) - {"assigned_delivery"}
    if unknown:
        raise BusinessValidationError(errors={field: ["This field cannot be edited."] for field in sorted(unknown)})

    changes = {field: fields[field] for field in EDITABLE_FIELDS if field in fields}
    customer = changes.get("customer")
    if customer is not None and customer.branch_id != quotation.branch_id:
        raise BusinessValidationError(errors={"customer": ["Customer must belong to the quotation branch."]})
    if "assigned_delivery" in fields:
        changes["assigned_delivery"] = _resolve_delivery_user(fields["assigned_delivery"])

    if items is not None:
        lines = _resolve_items(quotation.branch, items, price_locked=_price_locked(actor))
    else:
        lines = [{"total": item.total} for item in quotation.items.all()]
    changes.update(
        _totals(
            lines,
            quotation.tax_amount if tax_amount is None else tax_amount,
            quotation.discount_amount if discount_amount is None else discount_amount,
        )
    )

    with transaction.atomic():
        if items is not None:
            quotation.items.all().delete()
            _write_items(quotation, lines)
        _compare_and_set(quotation, quotation.status, **changes)

    quotation.refresh_from_db()
    create_audit_log(
        actor=actor,
        branch=quotation.branch,
        action="quotation.update",
        entity="quotation",
        entity_id=quotation.id,
        before_snapshot=before,
        after_snapshot=_snapshot(quotation),
    )
    publish(
        "quotation_updated",
        {"quotation_number": quotation.quotation_number, "status": quotation.status, "total": quotation.total},
        branch_id=quotation.branch_id,
        audience=AUDIENCE_ADMINS,
        entity="quotation",
        entity_id=quotation.id,
    )
    return quotation


def delete_quotation(quotation_id, actor):
    quotation = _load_open_quotation(quotation_id, actor)
    before = _snapshot(quotation)
    deleted, _ = Quotation.objects.filter(id=quotation.id, status__in=Quotation.OPEN_STATUSES).delete()
    if not deleted:
        raise InvalidTransition(errors={"status": ["Quotation was changed by another request."]})

    create_audit_log(
        actor=actor,
        branch=quotation.branch,
        action="quotation.delete",
        entity="quotation",
        entity_id=quotation.id,
        before_snapshot=before,
    )
