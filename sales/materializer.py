"""Turning quotations (or a direct order) into sales.

A sale is created together with its stock decrements as a saga: the sale row
first, then one ledger decrement per line, then (for quotations) the
conditional move of the quotation to ``completed``. Any failure removes the
sale and puts back whatever stock was already taken.
"""

import logging
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from common.audit import create_audit_log
from common.exceptions import BusinessValidationError, ConcurrentModification, InvalidTransition, ResourceNotFound
from common.numbering import SALE_PREFIX, create_numbered
from common.saga import Saga
from common.utils import to_money
from inventory import ledger
from inventory.models import InventoryItem, StockMove
from notifications.publisher import AUDIENCE_ADMINS, publish
from sales.guards import CapabilityGuard
from sales.models import Quotation, Sale, SaleItem, SalePayment

logger = logging.getLogger(__name__)

SOURCE_REF_TYPE = "sales.sale"

create_sale_guard = CapabilityGuard("sale.create")
record_payment_guard = CapabilityGuard("sale.payment.record")


def compute_totals(lines, tax_amount, discount_amount):
    subtotal = to_money(sum((line["total"] for line in lines), Decimal("0")))
    total = to_money(subtotal + to_money(tax_amount) - to_money(discount_amount))
    return subtotal, total


def materialize(quotation, actor):
    """Create the sale for ``quotation`` and complete it.

    Only lines with a positive quantity are carried over, and totals are
    recomputed from those lines.
    """
    lines = [
        {
            "inventory_item": item.inventory_item,
            "description": item.description or item.inventory_item.name,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total": to_money(item.quantity * item.unit_price),
        }
        for item in quotation.items.select_related("inventory_item").order_by("id")
        if item.quantity > 0
    ]
    if not lines:
        raise BusinessValidationError(errors={"items": ["Quotation has no items with a positive quantity."]})

    subtotal, total = compute_totals(lines, quotation.tax_amount, quotation.discount_amount)
    expected_status = quotation.status

    saga = Saga("materialize_quotation", context={"actor": actor})
    saga.step(
        "create_sale",
        lambda ctx: _create_sale(
            branch_id=quotation.branch_id,
            quotation=quotation,
            customer_id=quotation.customer_id,
            lines=lines,
            subtotal=subtotal,
            tax_amount=quotation.tax_amount,
            discount_amount=quotation.discount_amount,
            total=total,
            actor=actor,
        ),
        _delete_sale,
    )
    _add_decrement_steps(saga, lines)
    saga.step("complete_quotation", lambda ctx: _complete_quotation(quotation, expected_status))
    context = saga.run()

    sale = context["create_sale"]
    _publish_sale_created(sale)
    return sale


def create_direct_sale(*, actor, branch, items, customer=None, tax_amount=0, discount_amount=0):
    """Sell stock without a quotation."""
    create_sale_guard.check(actor)

    lines = _resolve_direct_lines(branch, items)
    tax_amount = to_money(tax_amount)
    discount_amount = to_money(discount_amount)
    if tax_amount < 0 or discount_amount < 0:
        raise BusinessValidationError(errors={"amount": ["Tax and discount cannot be negative."]})
    subtotal, total = compute_totals(lines, tax_amount, discount_amount)
    if total < 0:
        raise BusinessValidationError(errors={"discount_amount": ["Discount cannot exceed the order amount."]})

    saga = Saga("direct_sale", context={"actor": actor})
    saga.step(
        "create_sale",
        lambda ctx: _create_sale(
            branch_id=branch.id,
            quotation=None,
            customer_id=getattr(customer, "id", None),
            lines=lines,
            subtotal=subtotal,
            tax_amount=tax_amount,
            discount_amount=discount_amount,
            total=total,
            actor=actor,
        ),
        _delete_sale,
    )
    _add_decrement_steps(saga, lines)
    context = saga.run()

    sale = context["create_sale"]
    create_audit_log(
        actor=actor,
        branch=branch,
        action="sale.create",
        entity="sale",
        entity_id=sale.id,
        after_snapshot=_sale_snapshot(sale),
    )
    _publish_sale_created(sale)
    return sale


def record_payment(sale_id, amount, method, actor):
    """Record a payment and move the sale's balance and payment status.

    The write is conditional on the ``amount_paid`` that was read, so two
    cashiers paying the same sale cannot both spend the same balance.
    """
    record_payment_guard.check(actor)

    amount = to_money(amount)
    if amount <= 0:
        raise BusinessValidationError(errors={"amount": ["Payment amount must be greater than zero."]})
    if method not in SalePayment.Method.values:
        raise BusinessValidationError(errors={"method": [f"Unknown payment method '{method}'."]})

    max_attempts = getattr(settings, "INVENTORY_ADJUST_MAX_ATTEMPTS", 3)
    for attempt in range(1, max_attempts + 1):
        sale = Sale.objects.filter(id=sale_id).first()
        if sale is None:
            raise ResourceNotFound(errors={"sale_id": str(sale_id)})
        if sale.status == Sale.Status.CANCELLED:
            raise InvalidTransition(errors={"status": ["Cannot record a payment on a cancelled sale."]})
        if amount > sale.balance:
            raise BusinessValidationError(
                errors={"amount": ["Payment amount cannot be greater than the remaining balance."], "balance": sale.balance}
            )

        amount_paid = to_money(sale.amount_paid + amount)
        balance = to_money(sale.total - amount_paid)
        status = Sale.Status.PAID if balance <= 0 else Sale.Status.PARTIALLY_PAID
        now = timezone.now()

        with transaction.atomic():
            updated = Sale.objects.filter(id=sale.id, amount_paid=sale.amount_paid).update(
                amount_paid=amount_paid,
                balance=balance,
                status=status,
                paid_at=now if status == Sale.Status.PAID else None,
                updated_at=now,
            )
            if updated:
                payment = SalePayment.objects.create(
                    sale=sale,
                    method=method,
                    amount=amount,
                    received_by=actor if getattr(actor, "is_authenticated", False) else None,
                    paid_at=now,
                )
                break

        logger.info("sale_payment_conflict", extra={"entity_id": sale.id, "attempt": attempt})
    else:
        raise ConcurrentModification(errors={"sale_id": str(sale_id)})

    sale.refresh_from_db()
    create_audit_log(
        actor=actor,
        branch=sale.branch,
        action="sale.payment",
        entity="sale",
        entity_id=sale.id,
        before_snapshot={"amount_paid": str(amount_paid - amount), "status": sale.status},
        after_snapshot={"payment_id": str(payment.id), **_sale_snapshot(sale)},
    )
    publish(
        "sale_payment_recorded",
        {"sale_number": sale.sale_number, "amount": amount, "balance": sale.balance, "status": sale.status},
        branch_id=sale.branch_id,
        audience=AUDIENCE_ADMINS,
        entity="sale",
        entity_id=sale.id,
    )
    return payment


def _resolve_direct_lines(branch, items):
    if not items:
        raise BusinessValidationError(errors={"items": ["At least one item is required."]})

    lines = []
    for index, entry in enumerate(items):
        item = entry.get("inventory_item")
        if not isinstance(item, InventoryItem):
            item = InventoryItem.objects.filter(id=item).first() if item else None
        if item is None or not item.is_active:
            raise BusinessValidationError(errors={"items": {index: ["Unknown or inactive inventory item."]}})
        if item.branch_id != branch.id:
            raise BusinessValidationError(errors={"items": {index: ["Item must belong to the sale branch."]}})

        quantity = entry.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise BusinessValidationError(errors={"items": {index: ["Quantity must be a positive whole number."]}})
        unit_price = to_money(item.price if entry.get("unit_price") is None else entry["unit_price"])
        if unit_price < 0:
            raise BusinessValidationError(errors={"items": {index: ["Unit price cannot be negative."]}})

        lines.append(
            {
                "inventory_item": item,
                "description": entry.get("description") or item.name,
                "quantity": quantity,
                "unit_price": unit_price,
                "total": to_money(quantity * unit_price),
            }
        )
    return lines


def _create_sale(*, branch_id, quotation, customer_id, lines, subtotal, tax_amount, discount_amount, total, actor):
    try:
        with transaction.atomic():
            sale = create_numbered(
                Sale,
                "sale_number",
                SALE_PREFIX,
                branch_id=branch_id,
                quotation=quotation,
                customer_id=customer_id,
                subtotal=subtotal,
                tax_amount=to_money(tax_amount),
                discount_amount=to_money(discount_amount),
                total=total,
                amount_paid=Decimal("0.00"),
                balance=total,
                status=Sale.Status.PENDING,
                created_by=actor,
            )
            SaleItem.objects.bulk_create(
                [
                    SaleItem(
                        sale=sale,
                        inventory_item=line["inventory_item"],
                        description=line["description"],
                        quantity=line["quantity"],
                        unit_price=line["unit_price"],
                        total=line["total"],
                    )
                    for line in lines
                ]
            )
    except IntegrityError:
        # One sale per quotation.
        raise InvalidTransition(errors={"quotation": ["A sale already exists for this quotation."]})
    return sale


def _delete_sale(context, sale):
    sale.delete()


def _add_decrement_steps(saga, lines):
    for index, line in enumerate(lines):
        item_id = line["inventory_item"].id
        quantity = line["quantity"]

        def decrement(ctx, item_id=item_id, quantity=quantity):
            return ledger.adjust_quantity(
                item_id,
                -quantity,
                reason=StockMove.Reason.SALE,
                source_ref_type=SOURCE_REF_TYPE,
                source_ref_id=ctx["create_sale"].id,
                actor=ctx["actor"],
            )

        def restore(ctx, move, item_id=item_id, quantity=quantity):
            ledger.adjust_quantity(
                item_id,
                quantity,
                reason=StockMove.Reason.COMPENSATION,
                source_ref_type=SOURCE_REF_TYPE,
                source_ref_id=ctx["create_sale"].id,
                actor=ctx["actor"],
            )

        saga.step(f"decrement_{index}", decrement, restore)


def _complete_quotation(quotation, expected_status):
    now = timezone.now()
    updated = Quotation.objects.filter(id=quotation.id, status=expected_status).update(
        status=Quotation.Status.COMPLETED,
        stock_committed=True,
        completed_at=now,
        updated_at=now,
    )
    if not updated:
        raise InvalidTransition(errors={"status": ["Quotation was changed by another request."]})


def _sale_snapshot(sale):
    return {
        "sale_number": sale.sale_number,
        "total": str(sale.total),
        "amount_paid": str(sale.amount_paid),
        "balance": str(sale.balance),
        "status": sale.status,
    }


def _publish_sale_created(sale):
    publish(
        "sale_created",
        {
            "sale_number": sale.sale_number,
            "quotation_id": sale.quotation_id,
            "total": sale.total,
            "status": sale.status,
        },
        branch_id=sale.branch_id,
        audience=AUDIENCE_ADMINS,
        entity="sale",
        entity_id=sale.id,
    )
