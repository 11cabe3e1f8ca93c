"""Consistency checks between stock levels, the move history and transfers."""

from dataclasses import dataclass

from django.db.models import Count, Q, Sum

from inventory.models import InventoryItem, StockMove, StockTransfer
from inventory.transfers import SOURCE_REF_TYPE as TRANSFER_REF_TYPE


@dataclass(frozen=True)
class InvariantViolation:
    entity: str
    entity_id: str
    message: str

    def __str__(self):
        return f"{self.entity} {self.entity_id}: {self.message}"


def check_item(item):
    violations = []
    if item.quantity < 0:
        violations.append(InvariantViolation("inventory_item", str(item.id), f"negative quantity {item.quantity}"))

    ledger_total = StockMove.objects.filter(item_id=item.id).aggregate(total=Sum("delta"))["total"] or 0
    if ledger_total != item.quantity:
        violations.append(
            InvariantViolation(
                "inventory_item",
                str(item.id),
                f"quantity {item.quantity} does not match stock move total {ledger_total}",
            )
        )
    return violations


def check_transfer(transfer):
    if transfer.status != StockTransfer.Status.COMPLETED:
        return []

    moves = StockMove.objects.filter(source_ref_type=TRANSFER_REF_TYPE, source_ref_id=transfer.id)
    counts = moves.aggregate(
        out_count=Count("id", filter=Q(reason=StockMove.Reason.TRANSFER_OUT)),
        in_count=Count("id", filter=Q(reason=StockMove.Reason.TRANSFER_IN)),
        out_total=Sum("delta", filter=Q(reason=StockMove.Reason.TRANSFER_OUT)),
        in_total=Sum("delta", filter=Q(reason=StockMove.Reason.TRANSFER_IN)),
        net=Sum("delta"),
    )

    violations = []
    if counts["out_count"] != 1 or counts["out_total"] != -transfer.quantity:
        violations.append(
            InvariantViolation("stock_transfer", transfer.transfer_number, "source was not debited exactly once")
        )
    if counts["in_count"] != 1 or counts["in_total"] != transfer.quantity:
        violations.append(
            InvariantViolation("stock_transfer", transfer.transfer_number, "destination was not credited exactly once")
        )
    if (counts["net"] or 0) != 0:
        violations.append(
            InvariantViolation("stock_transfer", transfer.transfer_number, f"quantity not conserved (net {counts['net']})")
        )
    if not (transfer.source_debited and transfer.destination_credited):
        violations.append(
            InvariantViolation("stock_transfer", transfer.transfer_number, "completed transfer has a cleared progress flag")
        )
    return violations


def check_all(branch=None):
    items = InventoryItem.objects.all()
    transfers = StockTransfer.objects.filter(status=StockTransfer.Status.COMPLETED)
    if branch is not None:
        items = items.filter(branch=branch)
        transfers = transfers.filter(Q(from_branch=branch) | Q(to_branch=branch))

    violations = []
    for item in items.iterator():
        violations.extend(check_item(item))
    for transfer in transfers.iterator():
        violations.extend(check_transfer(transfer))
    return violations
