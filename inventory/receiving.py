"""Goods receiving against purchase orders."""

import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from common.exceptions import BusinessValidationError, InvalidTransition, ResourceNotFound
from common.numbering import GOODS_RECEIVING_PREFIX, create_numbered
from common.saga import Saga
from inventory import ledger
from inventory.models import (
    CostHistory,
    InventoryItem,
    PurchaseOrder,
    PurchaseOrderLine,
    PurchaseReceiving,
    PurchaseReceivingLine,
    StockMove,
)
from inventory.services import update_item_cost
from notifications.publisher import AUDIENCE_ADMINS, publish

logger = logging.getLogger(__name__)

SOURCE_REF_TYPE = "inventory.purchase_receiving"


def receive_purchase_order(purchase_order_id, lines, actor, notes=""):
    """Book received goods for a purchase order.

    ``lines`` is a list of ``{"purchase_order_line": <id>, "quantity_received": int,
    "notes": str}``. Receiving more than is outstanding is allowed and noted
    on the receiving line.
    """
    po = PurchaseOrder.objects.filter(id=purchase_order_id).first()
    if po is None:
        raise ResourceNotFound(errors={"purchase_order_id": str(purchase_order_id)})
    if po.status not in PurchaseOrder.RECEIVABLE_STATUSES:
        raise InvalidTransition(errors={"status": [f"Cannot receive a {po.status} purchase order."]})

    planned = _plan_lines(po, lines)

    saga = Saga("purchase_receiving", context={"po": po, "actor": actor, "planned": planned})
    saga.step("create_receiving", lambda ctx: _create_receiving(ctx, notes), _delete_receiving)
    for index, line in enumerate(planned):
        saga.step(f"receive_line_{index}", _receive_line(line), _unreceive_line(line))
    saga.step("update_order_status", _update_order_status, _restore_order_status)
    saga.step("update_item_costs", _update_item_costs, _restore_item_costs)
    saga.step("complete_receiving", _complete_receiving)
    context = saga.run()

    receiving = context["create_receiving"]
    receiving.refresh_from_db()
    logger.info(
        "purchase_receiving_completed",
        extra={"entity": "purchase_receiving", "entity_id": receiving.id},
    )
    publish(
        "purchase_receiving_completed",
        {
            "receiving_number": receiving.receiving_number,
            "purchase_order_id": po.id,
            "order_number": po.order_number,
            "status": context["update_order_status"]["status"],
        },
        branch_id=po.branch_id,
        audience=AUDIENCE_ADMINS,
        entity="purchase_receiving",
        entity_id=receiving.id,
    )
    return receiving


def _plan_lines(po, lines):
    if not lines:
        raise BusinessValidationError(errors={"lines": ["At least one line is required."]})

    order_lines = {str(line.id): line for line in po.lines.select_related("inventory_item")}
    planned = []
    seen = set()
    for index, line in enumerate(lines):
        line_id = str(line.get("purchase_order_line") or "")
        order_line = order_lines.get(line_id)
        if order_line is None:
            raise BusinessValidationError(errors={"lines": {index: ["Line does not belong to this purchase order."]}})
        if line_id in seen:
            raise BusinessValidationError(errors={"lines": {index: ["Line is listed more than once."]}})
        seen.add(line_id)

        quantity = line.get("quantity_received")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise BusinessValidationError(errors={"lines": {index: ["Quantity received must be a positive whole number."]}})
        if order_line.inventory_item is None or not order_line.inventory_item.is_active:
            raise BusinessValidationError(errors={"lines": {index: ["Line has no active inventory item."]}})

        note = line.get("notes") or ""
        outstanding = order_line.outstanding_quantity
        if quantity > outstanding:
            over = (
                f"Over-received: ordered {order_line.quantity}, already received "
                f"{order_line.received_quantity}, receiving {quantity}"
            )
            note = f"{note}\n{over}".strip()

        planned.append({"order_line": order_line, "quantity": quantity, "notes": note})
    return planned


def _create_receiving(context, notes):
    po = context["po"]
    actor = context["actor"]
    with transaction.atomic():
        receiving = create_numbered(
            PurchaseReceiving,
            "receiving_number",
            GOODS_RECEIVING_PREFIX,
            purchase_order=po,
            branch_id=po.branch_id,
            status=PurchaseReceiving.Status.PENDING,
            received_by=actor if getattr(actor, "is_authenticated", False) else None,
            notes=notes,
        )
        for line in context["planned"]:
            order_line = line["order_line"]
            PurchaseReceivingLine.objects.create(
                receiving=receiving,
                purchase_order_line=order_line,
                inventory_item=order_line.inventory_item,
                quantity_ordered=order_line.quantity,
                previously_received=order_line.received_quantity,
                quantity_received=line["quantity"],
                unit_cost=order_line.unit_cost,
                notes=line["notes"],
            )
    return receiving


def _delete_receiving(context, receiving):
    receiving.delete()


def _receive_line(line):
    def action(context):
        order_line = line["order_line"]
        # Stock on hand before this receipt, for weighted average costing.
        line["stock_before"] = InventoryItem.objects.get(id=order_line.inventory_item_id).quantity
        with transaction.atomic():
            move = ledger.adjust_quantity(
                order_line.inventory_item_id,
                line["quantity"],
                reason=StockMove.Reason.PURCHASE,
                source_ref_type=SOURCE_REF_TYPE,
                source_ref_id=context["create_receiving"].id,
                actor=context["actor"],
            )
            PurchaseOrderLine.objects.filter(id=order_line.id).update(
                received_quantity=F("received_quantity") + line["quantity"]
            )
        return move

    return action


def _unreceive_line(line):
    def compensation(context, move):
        order_line = line["order_line"]
        with transaction.atomic():
            ledger.adjust_quantity(
                order_line.inventory_item_id,
                -line["quantity"],
                reason=StockMove.Reason.COMPENSATION,
                source_ref_type=SOURCE_REF_TYPE,
                source_ref_id=context["create_receiving"].id,
                actor=context["actor"],
            )
            PurchaseOrderLine.objects.filter(id=order_line.id).update(
                received_quantity=F("received_quantity") - line["quantity"]
            )

    return compensation


def _update_order_status(context):
    po = context["po"]
    previous = {"status": po.status, "received_at": po.received_at}
    fully_received = not po.lines.filter(received_quantity__lt=F("quantity")).exists()
    status = PurchaseOrder.Status.COMPLETED if fully_received else PurchaseOrder.Status.PARTIAL
    now = timezone.now()
    PurchaseOrder.objects.filter(id=po.id).update(status=status, received_at=now, updated_at=now)
    return {"status": status, "previous": previous}


def _restore_order_status(context, result):
    PurchaseOrder.objects.filter(id=context["po"].id).update(updated_at=timezone.now(), **result["previous"])


def _update_item_costs(context):
    previous_costs = {}
    for line in context["planned"]:
        order_line = line["order_line"]
        item_id = order_line.inventory_item_id
        previous = update_item_cost(
            item_id,
            line["quantity"],
            order_line.unit_cost,
            line["stock_before"],
            actor=context["actor"],
            reason=f"Received on {context['po'].order_number}",
            source_ref_type=SOURCE_REF_TYPE,
            source_ref_id=context["create_receiving"].id,
        )
        previous_costs.setdefault(item_id, previous)
    return previous_costs


def _restore_item_costs(context, previous_costs):
    CostHistory.objects.filter(source_ref_type=SOURCE_REF_TYPE, source_ref_id=context["create_receiving"].id).delete()
    for item_id, cost in previous_costs.items():
        InventoryItem.objects.filter(id=item_id).update(cost=cost, updated_at=timezone.now())


def _complete_receiving(context):
    receiving = context["create_receiving"]
    now = timezone.now()
    PurchaseReceiving.objects.filter(id=receiving.id).update(
        status=PurchaseReceiving.Status.COMPLETED,
        received_at=now,
        updated_at=now,
    )
