from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from common.exceptions import BusinessValidationError, InvalidTransition
from common.numbering import PURCHASE_ORDER_PREFIX, create_numbered
from common.utils import require_positive_int, to_money
from inventory import ledger
from inventory.models import CostHistory, InventoryItem, PurchaseOrder, PurchaseOrderLine, StockMove, SupplierPrice
from notifications.publisher import AUDIENCE_ADMINS, publish

EDITABLE_PURCHASE_ORDER_STATUSES = (PurchaseOrder.Status.DRAFT, PurchaseOrder.Status.SUBMITTED)
ASSIGNABLE_PURCHASE_ORDER_STATUSES = (
    PurchaseOrder.Status.DRAFT,
    PurchaseOrder.Status.SUBMITTED,
    PurchaseOrder.Status.APPROVED,
    PurchaseOrder.Status.CANCELLED,
    PurchaseOrder.Status.REJECTED,
)
PURCHASE_ORDER_HEADER_FIELDS = ("supplier", "expected_at", "notes")

# Quantity and version are owned by the ledger.
ITEM_DETAIL_FIELDS = (
    "barcode",
    "name",
    "description",
    "category",
    "brand",
    "unit",
    "cost",
    "price",
    "reorder_level",
    "supplier",
)


def _actor_or_none(actor):
    return actor if getattr(actor, "is_authenticated", False) else None


def record_cost_change(
    item,
    previous_cost,
    new_cost,
    *,
    change_type,
    reason,
    actor=None,
    quantity_added=0,
    source_ref_type=None,
    source_ref_id=None,
):
    return CostHistory.objects.create(
        item_id=item.id,
        branch_id=item.branch_id,
        previous_cost=to_money(previous_cost),
        new_cost=to_money(new_cost),
        cost_change=to_money(Decimal(new_cost) - Decimal(previous_cost)),
        quantity_added=quantity_added,
        change_type=change_type,
        reason=reason,
        actor=_actor_or_none(actor),
        source_ref_type=source_ref_type,
        source_ref_id=source_ref_id,
    )


def update_item_cost(
    item_id,
    incoming_qty,
    incoming_unit_cost,
    current_stock_qty=0,
    *,
    actor=None,
    reason="Stock received",
    source_ref_type=None,
    source_ref_id=None,
):
    """
    Update item cost using either last cost or weighted average costing.
    Enable weighted average by setting INVENTORY_WEIGHTED_AVERAGE_COST=True.
    Every change is written to the cost history. Returns the previous cost so
    callers can restore it.
    """
    incoming_qty = Decimal(incoming_qty or 0)
    incoming_unit_cost = Decimal(incoming_unit_cost or 0)
    current_stock_qty = max(Decimal(current_stock_qty or 0), Decimal("0"))

    item = InventoryItem.objects.get(id=item_id)
    previous_cost = item.cost
    if incoming_qty <= 0:
        return previous_cost

    use_weighted_average = getattr(settings, "INVENTORY_WEIGHTED_AVERAGE_COST", False)
    current_cost = Decimal(item.cost or 0)

    if use_weighted_average:
        total_existing_cost = current_stock_qty * current_cost
        total_incoming_cost = incoming_qty * incoming_unit_cost
        total_qty = current_stock_qty + incoming_qty
        new_cost = incoming_unit_cost if total_qty <= 0 else (total_existing_cost + total_incoming_cost) / total_qty
    else:
        new_cost = incoming_unit_cost

    new_cost = to_money(new_cost)
    if new_cost == previous_cost:
        return previous_cost

    with transaction.atomic():
        InventoryItem.objects.filter(id=item_id).update(cost=new_cost, updated_at=timezone.now())
        record_cost_change(
            item,
            previous_cost,
            new_cost,
            change_type=CostHistory.ChangeType.STOCK_ADDITION,
            reason=reason,
            actor=actor,
            quantity_added=int(incoming_qty),
            source_ref_type=source_ref_type,
            source_ref_id=source_ref_id,
        )
    return previous_cost


@transaction.atomic
def update_item_details(item, *, actor=None, **fields):
    """Write descriptive fields only, so concurrent ledger writes are never overwritten."""
    unknown = sorted(set(fields) - set(ITEM_DETAIL_FIELDS))
    if unknown:
        raise BusinessValidationError(errors={field: ["This field cannot be changed here."] for field in unknown})

    previous_cost = InventoryItem.objects.filter(id=item.id).values_list("cost", flat=True).get()
    for field, value in fields.items():
        setattr(item, field, value)
    item.save(update_fields=[*fields, "updated_at"])

    if "cost" in fields and to_money(fields["cost"]) != previous_cost:
        record_cost_change(
            item,
            previous_cost,
            fields["cost"],
            change_type=CostHistory.ChangeType.PRICE_ADJUSTMENT,
            reason="Cost edited",
            actor=actor,
        )
    item.refresh_from_db()
    return item


def adjust_stock_manually(item, delta, *, actor, note=""):
    move = ledger.adjust_quantity(
        item.id,
        delta,
        reason=StockMove.Reason.ADJUSTMENT,
        source_ref_type="inventory.item",
        source_ref_id=item.id,
        actor=actor,
        note=note,
    )
    publish(
        "inventory_adjusted",
        {"item_id": item.id, "item_code": item.item_code, "delta": delta, "quantity": move.quantity_after},
        branch_id=item.branch_id,
        audience=AUDIENCE_ADMINS,
        entity="inventory_item",
        entity_id=item.id,
    )
    return move


def _resolve_order_lines(branch_id, lines):
    if not lines:
        raise BusinessValidationError(errors={"lines": ["At least one item is required."]})

    resolved = []
    for index, line in enumerate(lines):
        item = line.get("inventory_item")
        if item is not None and item.branch_id != branch_id:
            raise BusinessValidationError(errors={"lines": {index: ["Item must belong to the order branch."]}})
        quantity = require_positive_int(line.get("quantity"), "quantity")
        unit_cost = to_money(line.get("unit_cost"))
        if unit_cost < 0:
            raise BusinessValidationError(errors={"lines": {index: ["Unit cost cannot be negative."]}})
        resolved.append(
            {
                "inventory_item": item,
                "description": line.get("description") or (item.name if item else ""),
                "quantity": quantity,
                "unit_cost": unit_cost,
                "line_total": to_money(quantity * unit_cost),
            }
        )
    return resolved


def _apply_order_totals(po, lines, tax_amount, discount_amount):
    subtotal = sum((line["line_total"] for line in lines), Decimal("0"))
    po.subtotal = to_money(subtotal)
    po.tax_amount = to_money(tax_amount)
    po.discount_amount = to_money(discount_amount)
    po.total = to_money(subtotal + po.tax_amount - po.discount_amount)


@transaction.atomic
def create_purchase_order(*, branch, supplier, lines, actor, status=PurchaseOrder.Status.DRAFT, tax_amount=0, discount_amount=0, **fields):
    if supplier.branch_id != branch.id:
        raise BusinessValidationError(errors={"supplier": ["Supplier must belong to the same branch."]})
    if status not in ASSIGNABLE_PURCHASE_ORDER_STATUSES:
        raise BusinessValidationError(errors={"status": [f"Status '{status}' cannot be set directly."]})

    resolved = _resolve_order_lines(branch.id, lines)
    po = create_numbered(
        PurchaseOrder,
        "order_number",
        PURCHASE_ORDER_PREFIX,
        branch=branch,
        supplier=supplier,
        status=status,
        created_by=actor,
        **fields,
    )
    for line in resolved:
        PurchaseOrderLine.objects.create(purchase_order=po, **line)

    _apply_order_totals(po, resolved, tax_amount, discount_amount)
    po.save(update_fields=["subtotal", "tax_amount", "discount_amount", "total", "updated_at"])
    return po


@transaction.atomic
def update_purchase_order(po, *, lines=None, tax_amount=None, discount_amount=None, status=None, **fields):
    """Edit header fields and, before any receipt, replace the order lines.

    The write only lands if the order is still in the status that was read,
    so a receipt booked meanwhile is never reopened.
    """
    read_status = po.status
    unknown = sorted(set(fields) - set(PURCHASE_ORDER_HEADER_FIELDS))
    if unknown:
        raise BusinessValidationError(errors={field: ["This field cannot be changed here."] for field in unknown})

    changes = dict(fields)
    if status is not None:
        if status not in ASSIGNABLE_PURCHASE_ORDER_STATUSES:
            raise BusinessValidationError(errors={"status": [f"Status '{status}' cannot be set directly."]})
        if read_status in (PurchaseOrder.Status.PARTIAL, PurchaseOrder.Status.COMPLETED):
            raise InvalidTransition(errors={"status": [f"Purchase order is {read_status}."]})
        changes["status"] = status

    if lines is not None:
        if read_status not in EDITABLE_PURCHASE_ORDER_STATUSES or po.lines.filter(received_quantity__gt=0).exists():
            raise InvalidTransition(errors={"lines": ["Lines can only be edited on draft or submitted orders."]})
        resolved = _resolve_order_lines(po.branch_id, lines)
        po.lines.all().delete()
        for line in resolved:
            PurchaseOrderLine.objects.create(purchase_order=po, **line)
    else:
        resolved = [{"line_total": line.line_total} for line in po.lines.all()]

    _apply_order_totals(
        po,
        resolved,
        po.tax_amount if tax_amount is None else tax_amount,
        po.discount_amount if discount_amount is None else discount_amount,
    )
    changes.update(subtotal=po.subtotal, tax_amount=po.tax_amount, discount_amount=po.discount_amount, total=po.total)

    updated = PurchaseOrder.objects.filter(id=po.id, status=read_status).update(updated_at=timezone.now(), **changes)
    if not updated:
        raise InvalidTransition(errors={"status": ["Purchase order changed while it was being edited. Reload and retry."]})
    po.refresh_from_db()
    return po


def set_supplier_prices(supplier, prices):
    """Create or update the supplier's price for each listed item.

    Rows that cannot be applied are reported per item and do not stop the rest.
    """
    if not prices:
        raise BusinessValidationError(errors={"prices": ["Please provide at least one price."]})

    results = []
    errors = []
    for entry in prices:
        item_id = entry.get("inventory_item")
        item = InventoryItem.objects.filter(id=item_id, branch_id=supplier.branch_id).first()
        if item is None:
            errors.append({"inventory_item": str(item_id), "error": "Inventory item not found in the supplier branch."})
            continue
        price = to_money(entry.get("price"))
        if price < 0:
            errors.append({"inventory_item": str(item_id), "error": "Price cannot be negative."})
            continue
        supplier_price, _ = SupplierPrice.objects.update_or_create(
            supplier=supplier, inventory_item=item, defaults={"price": price}
        )
        results.append(supplier_price)
    return results, errors
