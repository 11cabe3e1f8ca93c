from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.db.models import F
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import (
    BusinessValidationError,
    ConcurrentModification,
    InsufficientStock,
    InvalidTransition,
)
from common.numbering import create_numbered, period_prefix
from core.models import Branch
from inventory import ledger
from inventory.invariants import check_all, check_transfer
from inventory.models import (
    CostHistory,
    InventoryItem,
    PurchaseOrder,
    PurchaseReceiving,
    StockMove,
    StockTransfer,
    Supplier,
    SupplierPrice,
)
from inventory.receiving import receive_purchase_order
from inventory.services import create_purchase_order, update_purchase_order
from inventory.transfers import (
    SOURCE_REF_TYPE,
    cancel_transfer,
    complete_transfer,
    delete_transfer,
    transfer_stock,
)
from notifications.models import OutboxEvent

real_read_snapshot = ledger._read_snapshot


def competing_write(item_id, delta):
    """Simulate another request committing a change to the item."""
    InventoryItem.objects.filter(id=item_id).update(quantity=F("quantity") + delta, version=F("version") + 1)
    StockMove.objects.create(
        item_id=item_id,
        branch_id=InventoryItem.objects.get(id=item_id).branch_id,
        delta=delta,
        quantity_after=InventoryItem.objects.get(id=item_id).quantity,
        reason=StockMove.Reason.ADJUSTMENT,
    )


class InventoryFixtureMixin:
    def make_fixture(self):
        self.user_model = get_user_model()
        self.branch_a = Branch.objects.create(code="A", name="Branch A")
        self.branch_b = Branch.objects.create(code="B", name="Branch B")
        self.admin = self.user_model.objects.create_user(
            username="inventory-admin",
            password="pass1234",
            role="admin",
            branch=self.branch_a,
        )
        self.item = ledger.create_item(
            branch=self.branch_a,
            item_code="LAMP-1",
            quantity=10,
            actor=self.admin,
            name="Desk Lamp",
            cost=Decimal("10.00"),
            price=Decimal("25.00"),
        )


class LedgerTests(InventoryFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixture()

    def test_adjust_records_move_and_bumps_version(self):
        move = ledger.adjust_quantity(self.item.id, -4, reason=StockMove.Reason.ADJUSTMENT, actor=self.admin)

        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 6)
        self.assertEqual(self.item.version, 1)
        self.assertEqual(move.delta, -4)
        self.assertEqual(move.quantity_after, 6)
        self.assertEqual(move.actor, self.admin)

    def test_opening_quantity_is_booked_as_a_move(self):
        move = StockMove.objects.get(item=self.item)

        self.assertEqual(move.reason, StockMove.Reason.OPENING)
        self.assertEqual(move.delta, 10)

    def test_insufficient_stock_leaves_item_untouched(self):
        with self.assertRaises(InsufficientStock) as ctx:
            ledger.adjust_quantity(self.item.id, -11, reason=StockMove.Reason.SALE)

        self.assertEqual(ctx.exception.errors["available"], 10)
        self.assertEqual(ctx.exception.errors["requested"], 11)
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 10)
        self.assertEqual(self.item.version, 0)
        self.assertEqual(StockMove.objects.filter(item=self.item).count(), 1)

    def test_zero_delta_is_rejected(self):
        with self.assertRaises(BusinessValidationError):
            ledger.adjust_quantity(self.item.id, 0, reason=StockMove.Reason.ADJUSTMENT)

    def test_conflicting_write_is_retried_against_fresh_quantity(self):
        calls = []

        def racing_read(item_id):
            snapshot = real_read_snapshot(item_id)
            if not calls:
                competing_write(item_id, -3)
            calls.append(snapshot)
            return snapshot

        with patch("inventory.ledger._read_snapshot", side_effect=racing_read):
            with self.assertLogs("inventory.ledger", level="INFO") as cm:
                move = ledger.adjust_quantity(self.item.id, -5, reason=StockMove.Reason.SALE)

        self.assertEqual(len(calls), 2)
        self.assertTrue(any("inventory_adjust_conflict" in line for line in cm.output))
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 2)
        self.assertEqual(move.quantity_after, 2)
        self.assertEqual(check_all(), [])

    def test_competing_write_that_drains_stock_raises_insufficient_stock(self):
        calls = []

        def racing_read(item_id):
            snapshot = real_read_snapshot(item_id)
            if not calls:
                competing_write(item_id, -8)
            calls.append(snapshot)
            return snapshot

        with patch("inventory.ledger._read_snapshot", side_effect=racing_read):
            with self.assertRaises(InsufficientStock):
                ledger.adjust_quantity(self.item.id, -5, reason=StockMove.Reason.SALE)

        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 2)

    @override_settings(INVENTORY_ADJUST_MAX_ATTEMPTS=2)
    def test_retries_are_bounded(self):
        def always_racing(item_id):
            snapshot = real_read_snapshot(item_id)
            competing_write(item_id, 1)
            return snapshot

        with patch("inventory.ledger._read_snapshot", side_effect=always_racing) as mocked:
            with self.assertRaises(ConcurrentModification) as ctx:
                ledger.adjust_quantity(self.item.id, -1, reason=StockMove.Reason.SALE)

        self.assertEqual(mocked.call_count, 2)
        self.assertTrue(ctx.exception.errors["retryable"])
        self.assertFalse(StockMove.objects.filter(item=self.item, reason=StockMove.Reason.SALE).exists())


class NumberingTests(TestCase):
    def test_numbers_follow_monthly_sequence(self):
        first = create_numbered(Branch, "code", "BR", name="First")
        second = create_numbered(Branch, "code", "BR", name="Second")

        stem = period_prefix("BR")
        self.assertEqual(first.code, f"{stem}0001")
        self.assertEqual(second.code, f"{stem}0002")

    def test_collision_is_retried_with_a_fresh_number(self):
        stem = period_prefix("BR")
        Branch.objects.create(code=f"{stem}0001", name="Taken")

        with patch(
            "common.numbering.next_sequence_number",
            side_effect=[f"{stem}0001", f"{stem}0002"],
        ):
            branch = create_numbered(Branch, "code", "BR", name="Retry")

        self.assertEqual(branch.code, f"{stem}0002")

    @override_settings(NUMBERING_MAX_ATTEMPTS=2)
    def test_collisions_are_bounded(self):
        stem = period_prefix("BR")
        Branch.objects.create(code=f"{stem}0001", name="Taken")

        with patch("common.numbering.next_sequence_number", return_value=f"{stem}0001"):
            with self.assertRaises(ConcurrentModification):
                create_numbered(Branch, "code", "BR", name="Never")


class StockTransferTests(InventoryFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixture()

    def test_transfer_conserves_stock_and_creates_destination_item(self):
        with self.captureOnCommitCallbacks(execute=True):
            transfer = transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 4, self.admin)

        self.assertEqual(transfer.status, StockTransfer.Status.COMPLETED)
        self.assertTrue(transfer.transfer_number.startswith(period_prefix("ST")))
        self.item.refresh_from_db()
        destination = InventoryItem.objects.get(branch=self.branch_b, item_code="LAMP-1")
        self.assertEqual(self.item.quantity, 6)
        self.assertEqual(destination.quantity, 4)
        self.assertEqual(destination.name, "Desk Lamp")
        self.assertEqual(destination.price, Decimal("25.00"))
        self.assertEqual(transfer.destination_item_id, destination.id)

        moves = StockMove.objects.filter(source_ref_type=SOURCE_REF_TYPE, source_ref_id=transfer.id)
        self.assertEqual(sorted(moves.values_list("delta", flat=True)), [-4, 4])
        self.assertEqual(check_transfer(transfer), [])
        self.assertEqual(check_all(), [])
        self.assertTrue(OutboxEvent.objects.filter(event_type="stock_transfer_completed", entity_id=transfer.id).exists())

    def test_second_transfer_reuses_destination_item(self):
        transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 2, self.admin)
        transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 3, self.admin)

        destination = InventoryItem.objects.get(branch=self.branch_b, item_code="LAMP-1")
        self.assertEqual(destination.quantity, 5)
        self.assertEqual(InventoryItem.objects.filter(item_code="LAMP-1").count(), 2)

    def test_insufficient_stock_creates_no_transfer(self):
        with self.assertRaises(InsufficientStock):
            transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 11, self.admin)

        self.assertFalse(StockTransfer.objects.exists())
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 10)

    def test_same_branch_is_rejected(self):
        with self.assertRaises(BusinessValidationError):
            transfer_stock(self.item.id, self.branch_a.id, self.branch_a.id, 1, self.admin)

    def test_item_must_belong_to_source_branch(self):
        with self.assertRaises(BusinessValidationError):
            transfer_stock(self.item.id, self.branch_b.id, self.branch_a.id, 1, self.admin)

    def test_deferred_transfer_moves_nothing_until_completed(self):
        transfer = transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 3, self.admin, defer=True)

        self.assertEqual(transfer.status, StockTransfer.Status.PENDING)
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 10)

        transfer = complete_transfer(transfer.id, self.admin)

        self.assertEqual(transfer.status, StockTransfer.Status.COMPLETED)
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 7)

        with self.assertRaises(InvalidTransition):
            complete_transfer(transfer.id, self.admin)
        with self.assertRaises(InvalidTransition):
            delete_transfer(transfer)

    def test_pending_transfer_can_be_cancelled_once(self):
        transfer = transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 3, self.admin, defer=True)

        transfer = cancel_transfer(transfer.id, self.admin, reason="Wrong branch")

        self.assertEqual(transfer.status, StockTransfer.Status.CANCELLED)
        self.assertIn("Wrong branch", transfer.notes)
        with self.assertRaises(InvalidTransition):
            cancel_transfer(transfer.id, self.admin)
        with self.assertRaises(InvalidTransition):
            complete_transfer(transfer.id, self.admin)

    def test_concurrent_completion_moves_stock_once(self):
        transfer = transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 4, self.admin, defer=True)
        competing = []

        def racing_read(item_id):
            if not competing:
                competing.append(None)
                competing[0] = complete_transfer(transfer.id, self.admin)
            return real_read_snapshot(item_id)

        with patch("inventory.ledger._read_snapshot", side_effect=racing_read):
            with self.assertRaises(InvalidTransition):
                complete_transfer(transfer.id, self.admin)

        self.assertEqual(competing[0].status, StockTransfer.Status.COMPLETED)
        transfer.refresh_from_db()
        self.assertEqual(transfer.status, StockTransfer.Status.COMPLETED)
        self.assertTrue(transfer.source_debited)
        self.assertTrue(transfer.destination_credited)
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 6)
        self.assertEqual(transfer.destination_item.quantity, 4)
        moves = StockMove.objects.filter(source_ref_id=transfer.id)
        self.assertEqual(sorted(moves.values_list("reason", flat=True)), ["transfer_in", "transfer_out"])
        self.assertEqual(check_transfer(transfer), [])
        self.assertEqual(check_all(), [])

    def test_failed_completion_cancels_the_transfer(self):
        transfer = transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 8, self.admin, defer=True)
        ledger.adjust_quantity(self.item.id, -5, reason=StockMove.Reason.SALE)

        with self.assertRaises(InsufficientStock):
            complete_transfer(transfer.id, self.admin)

        transfer.refresh_from_db()
        self.assertEqual(transfer.status, StockTransfer.Status.CANCELLED)
        self.assertIn("Transfer failed: insufficient_stock", transfer.notes)
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 5)
        self.assertFalse(InventoryItem.objects.filter(branch=self.branch_b).exists())

    def test_failed_credit_restores_source(self):
        with patch("inventory.transfers.ledger.find_or_create_for_branch", side_effect=InsufficientStock()):
            with self.assertRaises(InsufficientStock):
                transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 4, self.admin)

        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 10)
        transfer = StockTransfer.objects.get()
        self.assertEqual(transfer.status, StockTransfer.Status.CANCELLED)
        self.assertFalse(transfer.source_debited)
        self.assertTrue(
            StockMove.objects.filter(source_ref_id=transfer.id, reason=StockMove.Reason.COMPENSATION, delta=4).exists()
        )
        self.assertEqual(check_all(), [])

    def test_repair_command_completes_half_applied_transfer(self):
        transfer = StockTransfer.objects.create(
            transfer_number="ST-REPAIR-0001",
            source_item=self.item,
            from_branch=self.branch_a,
            to_branch=self.branch_b,
            quantity=3,
            created_by=self.admin,
        )
        ledger.adjust_quantity(
            self.item.id,
            -3,
            reason=StockMove.Reason.TRANSFER_OUT,
            source_ref_type=SOURCE_REF_TYPE,
            source_ref_id=transfer.id,
        )
        StockTransfer.objects.filter(id=transfer.id).update(
            source_debited=True,
            updated_at=timezone.now() - timedelta(hours=1),
        )

        out = StringIO()
        call_command("repair_stock_transfers", older_than=60, stdout=out)

        transfer.refresh_from_db()
        self.assertEqual(transfer.status, StockTransfer.Status.COMPLETED)
        self.assertIn("repaired ST-REPAIR-0001", out.getvalue())
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 7)
        self.assertEqual(InventoryItem.objects.get(branch=self.branch_b, item_code="LAMP-1").quantity, 3)
        self.assertEqual(check_transfer(transfer), [])

    def test_repair_ignores_recent_and_untouched_transfers(self):
        untouched = transfer_stock(self.item.id, self.branch_a.id, self.branch_b.id, 2, self.admin, defer=True)
        recent = StockTransfer.objects.create(
            transfer_number="ST-RECENT-0001",
            source_item=self.item,
            from_branch=self.branch_a,
            to_branch=self.branch_b,
            quantity=1,
            source_debited=True,
        )

        call_command("repair_stock_transfers", older_than=3600, stdout=StringIO())

        untouched.refresh_from_db()
        recent.refresh_from_db()
        self.assertEqual(untouched.status, StockTransfer.Status.PENDING)
        self.assertEqual(recent.status, StockTransfer.Status.PENDING)


class InvariantCommandTests(InventoryFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixture()

    def test_clean_ledger_passes(self):
        out = StringIO()
        call_command("check_inventory_invariants", stdout=out)
        self.assertIn("No inventory invariant violations found.", out.getvalue())

    def test_quantity_drift_is_reported(self):
        InventoryItem.objects.filter(id=self.item.id).update(quantity=99)

        out = StringIO()
        with self.assertRaises(CommandError):
            call_command("check_inventory_invariants", branch_id=str(self.branch_a.id), stdout=out)
        self.assertIn("does not match stock move total 10", out.getvalue())


class PurchaseReceivingTests(InventoryFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixture()
        self.supplier = Supplier.objects.create(branch=self.branch_a, name="Acme", code="ACME")
        self.po = create_purchase_order(
            branch=self.branch_a,
            supplier=self.supplier,
            lines=[{"inventory_item": self.item, "quantity": 5, "unit_cost": Decimal("20.00")}],
            actor=self.admin,
            status=PurchaseOrder.Status.SUBMITTED,
        )
        self.line = self.po.lines.get()

    def test_partial_then_over_receipt(self):
        with self.captureOnCommitCallbacks(execute=True):
            first = receive_purchase_order(
                self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 3}], self.admin
            )

        self.po.refresh_from_db()
        self.line.refresh_from_db()
        self.item.refresh_from_db()
        self.assertEqual(first.status, PurchaseReceiving.Status.COMPLETED)
        self.assertTrue(first.receiving_number.startswith(period_prefix("GR")))
        self.assertEqual(self.po.status, PurchaseOrder.Status.PARTIAL)
        self.assertEqual(self.line.received_quantity, 3)
        self.assertEqual(self.item.quantity, 13)
        self.assertEqual(self.item.cost, Decimal("20.00"))
        self.assertTrue(OutboxEvent.objects.filter(event_type="purchase_receiving_completed", audience="admins").exists())

        second = receive_purchase_order(
            self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 4}], self.admin
        )

        self.po.refresh_from_db()
        self.item.refresh_from_db()
        self.assertEqual(self.po.status, PurchaseOrder.Status.COMPLETED)
        self.assertEqual(self.item.quantity, 17)
        receiving_line = second.lines.get()
        self.assertEqual(receiving_line.previously_received, 3)
        self.assertIn("Over-received: ordered 5, already received 3, receiving 4", receiving_line.notes)
        self.assertEqual(check_all(), [])

    @override_settings(INVENTORY_WEIGHTED_AVERAGE_COST=True)
    def test_weighted_average_cost(self):
        receive_purchase_order(self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 10}], self.admin)

        self.item.refresh_from_db()
        self.assertEqual(self.item.cost, Decimal("15.00"))

    def test_draft_order_cannot_be_received(self):
        PurchaseOrder.objects.filter(id=self.po.id).update(status=PurchaseOrder.Status.DRAFT)

        with self.assertRaises(InvalidTransition):
            receive_purchase_order(self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 1}], self.admin)

    def test_invalid_lines_are_rejected(self):
        with self.assertRaises(BusinessValidationError):
            receive_purchase_order(self.po.id, [], self.admin)
        with self.assertRaises(BusinessValidationError):
            receive_purchase_order(self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 0}], self.admin)
        with self.assertRaises(BusinessValidationError):
            receive_purchase_order(
                self.po.id,
                [
                    {"purchase_order_line": self.line.id, "quantity_received": 1},
                    {"purchase_order_line": self.line.id, "quantity_received": 1},
                ],
                self.admin,
            )

    def test_receipt_records_cost_history(self):
        first = receive_purchase_order(self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 3}], self.admin)
        receive_purchase_order(self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 2}], self.admin)

        entry = CostHistory.objects.get(item=self.item)
        self.assertEqual(entry.change_type, CostHistory.ChangeType.STOCK_ADDITION)
        self.assertEqual((entry.previous_cost, entry.new_cost, entry.cost_change), (Decimal("10.00"), Decimal("20.00"), Decimal("10.00")))
        self.assertEqual(entry.quantity_added, 3)
        self.assertEqual(entry.source_ref_id, first.id)
        self.assertEqual(entry.actor, self.admin)
        self.assertIn(self.po.order_number, entry.reason)

    def test_failure_after_cost_update_restores_cost_and_history(self):
        with patch("inventory.receiving._complete_receiving", side_effect=BusinessValidationError()):
            with self.assertRaises(BusinessValidationError):
                receive_purchase_order(
                    self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 3}], self.admin
                )

        self.item.refresh_from_db()
        self.assertEqual(self.item.cost, Decimal("10.00"))
        self.assertEqual(self.item.quantity, 10)
        self.assertFalse(CostHistory.objects.exists())

    def test_stale_edit_does_not_reopen_a_received_order(self):
        stale = PurchaseOrder.objects.get(id=self.po.id)
        receive_purchase_order(self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 3}], self.admin)

        with self.assertRaises(InvalidTransition):
            update_purchase_order(stale, notes="Call before delivery")

        self.po.refresh_from_db()
        self.assertEqual(self.po.status, PurchaseOrder.Status.PARTIAL)
        self.assertIsNotNone(self.po.received_at)
        self.assertEqual(self.po.notes, "")

        po = update_purchase_order(self.po, notes="Call before delivery")

        self.assertEqual(po.status, PurchaseOrder.Status.PARTIAL)
        self.assertIsNotNone(po.received_at)
        self.assertEqual(po.notes, "Call before delivery")
        self.assertEqual(po.total, Decimal("100.00"))

    def test_lines_cannot_be_replaced_after_receipt(self):
        receive_purchase_order(self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 1}], self.admin)
        self.po.refresh_from_db()

        with self.assertRaises(InvalidTransition):
            update_purchase_order(
                self.po, lines=[{"inventory_item": self.item, "quantity": 1, "unit_cost": Decimal("1.00")}]
            )

    def test_failure_after_stock_update_is_compensated(self):
        with patch("inventory.receiving.update_item_cost", side_effect=BusinessValidationError()):
            with self.assertRaises(BusinessValidationError):
                receive_purchase_order(
                    self.po.id, [{"purchase_order_line": self.line.id, "quantity_received": 3}], self.admin
                )

        self.po.refresh_from_db()
        self.line.refresh_from_db()
        self.item.refresh_from_db()
        self.assertEqual(self.po.status, PurchaseOrder.Status.SUBMITTED)
        self.assertIsNone(self.po.received_at)
        self.assertEqual(self.line.received_quantity, 0)
        self.assertEqual(self.item.quantity, 10)
        self.assertFalse(PurchaseReceiving.objects.exists())
        self.assertTrue(StockMove.objects.filter(item=self.item, reason=StockMove.Reason.COMPENSATION, delta=-3).exists())
        self.assertEqual(check_all(), [])


class InventoryApiTests(InventoryFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixture()
        self.client = APIClient()
        self.delivery = self.user_model.objects.create_user(
            username="inventory-delivery",
            password="pass1234",
            role="delivery",
            branch=self.branch_a,
        )
        self.other_item = ledger.create_item(branch=self.branch_b, item_code="B-1", quantity=1, name="Other")

    def test_list_is_branch_scoped(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/inventory/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.item.id), ids)
        self.assertNotIn(str(self.other_item.id), ids)

    def test_create_item_books_opening_quantity_in_user_branch(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/inventory/",
            {"item_code": "NEW-1", "name": "New", "price": "5.00", "opening_quantity": 7, "branch": str(self.branch_b.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        item = InventoryItem.objects.get(item_code="NEW-1")
        self.assertEqual(item.branch, self.branch_a)
        self.assertEqual(item.quantity, 7)
        self.assertTrue(StockMove.objects.filter(item=item, reason=StockMove.Reason.OPENING, delta=7).exists())

    def test_duplicate_item_code_returns_validation_error(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/inventory/", {"item_code": "LAMP-1", "name": "Dup"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("item_code", response.json()["errors"])

    def test_adjust_endpoint(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/inventory/{self.item.id}/adjust/", {"delta": -2, "note": "Broken"}, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["quantity_after"], 8)
        self.assertEqual(response.json()["reason"], "adjustment")

        history = self.client.get(f"/api/v1/inventory/{self.item.id}/history/")
        self.assertEqual(history.status_code, 200)
        self.assertEqual(history.json()["count"], 2)

    def test_adjust_below_zero_returns_insufficient_stock(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/inventory/{self.item.id}/adjust/", {"delta": -50}, format="json")

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertEqual(payload["errors"]["available"], 10)

    def test_delivery_cannot_adjust_stock(self):
        self.client.force_authenticate(user=self.delivery)

        response = self.client.post(f"/api/v1/inventory/{self.item.id}/adjust/", {"delta": 1}, format="json")

        self.assertEqual(response.status_code, 403)
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 10)

    def test_item_edit_keeps_concurrent_ledger_writes(self):
        self.client.force_authenticate(user=self.admin)
        real_save = InventoryItem.save
        sold = []

        def save_after_sale(instance, *args, **kwargs):
            if not sold:
                sold.append(ledger.adjust_quantity(self.item.id, -4, reason=StockMove.Reason.SALE))
            return real_save(instance, *args, **kwargs)

        with patch.object(InventoryItem, "save", autospec=True, side_effect=save_after_sale):
            response = self.client.patch(f"/api/v1/inventory/{self.item.id}/", {"name": "Desk Lamp 2"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["quantity"], 6)
        self.item.refresh_from_db()
        self.assertEqual((self.item.name, self.item.quantity), ("Desk Lamp 2", 6))
        self.assertEqual(check_all(), [])

    def test_cost_edit_is_recorded_in_cost_history(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(f"/api/v1/inventory/{self.item.id}/", {"cost": "12.50"}, format="json")

        self.assertEqual(response.status_code, 200)
        entry = CostHistory.objects.get(item=self.item)
        self.assertEqual(entry.change_type, CostHistory.ChangeType.PRICE_ADJUSTMENT)
        self.assertEqual((entry.previous_cost, entry.new_cost), (Decimal("10.00"), Decimal("12.50")))
        self.assertEqual(entry.actor, self.admin)

        history = self.client.get(f"/api/v1/inventory/{self.item.id}/cost-history/")
        self.assertEqual(history.status_code, 200)
        self.assertEqual(history.json()["count"], 1)
        self.assertEqual(history.json()["results"][0]["cost_change"], "2.50")

        unchanged = self.client.patch(f"/api/v1/inventory/{self.item.id}/", {"cost": "12.50", "name": "Lamp"}, format="json")
        self.assertEqual(unchanged.status_code, 200)
        self.assertEqual(CostHistory.objects.count(), 1)

    def test_delete_soft_deletes_item(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/inventory/{self.item.id}/")

        self.assertEqual(response.status_code, 204)
        self.item.refresh_from_db()
        self.assertFalse(self.item.is_active)

    def test_transfer_endpoint(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/stock-transfers/",
            {
                "item": str(self.item.id),
                "from_branch": str(self.branch_a.id),
                "to_branch": str(self.branch_b.id),
                "quantity": 2,
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["status"], "completed")
        listing = self.client.get("/api/v1/stock-transfers/")
        self.assertEqual(listing.json()["count"], 1)

    def test_receive_endpoint(self):
        supplier = Supplier.objects.create(branch=self.branch_a, name="Acme", code="ACME")
        po = create_purchase_order(
            branch=self.branch_a,
            supplier=supplier,
            lines=[{"inventory_item": self.item, "quantity": 5, "unit_cost": Decimal("12.00")}],
            actor=self.admin,
            status=PurchaseOrder.Status.APPROVED,
        )
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            f"/api/v1/purchase-orders/{po.id}/receive/",
            {"lines": [{"purchase_order_line": str(po.lines.get().id), "quantity_received": 5}]},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["receiving_number"].startswith("GR-"))
        po.refresh_from_db()
        self.assertEqual(po.status, PurchaseOrder.Status.COMPLETED)


class CostHistoryApiTests(InventoryFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixture()
        self.client = APIClient()
        self.other_item = ledger.create_item(branch=self.branch_b, item_code="B-1", quantity=1, name="Other")
        self.first = CostHistory.objects.create(
            item=self.item,
            branch=self.branch_a,
            previous_cost=Decimal("10.00"),
            new_cost=Decimal("20.00"),
            cost_change=Decimal("10.00"),
            quantity_added=3,
            reason="Received",
            actor=self.admin,
        )
        self.second = CostHistory.objects.create(
            item=self.item,
            branch=self.branch_a,
            previous_cost=Decimal("20.00"),
            new_cost=Decimal("16.00"),
            cost_change=Decimal("-4.00"),
            quantity_added=5,
            change_type=CostHistory.ChangeType.CORRECTION,
            reason="Invoice corrected",
        )
        CostHistory.objects.create(
            item=self.other_item,
            branch=self.branch_b,
            previous_cost=Decimal("0.00"),
            new_cost=Decimal("1.00"),
            cost_change=Decimal("1.00"),
            reason="Other branch",
        )
        self.month = timezone.localtime(self.first.created_at).strftime("%Y-%m")

    def test_list_is_branch_scoped_and_filterable(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/cost-history/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 2)

        response = self.client.get("/api/v1/cost-history/", {"change_type": "correction"})
        self.assertEqual([row["id"] for row in response.json()["results"]], [str(self.second.id)])

        response = self.client.get("/api/v1/cost-history/", {"month": self.month, "item": str(self.item.id)})
        self.assertEqual(response.json()["count"], 2)

    def test_invalid_month_is_a_validation_error(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/cost-history/", {"month": "October"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_monthly_report(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/cost-history/monthly-report/", {"month": self.month})

        self.assertEqual(response.status_code, 200)
        report = response.json()
        self.assertEqual(report["total_items"], 1)
        self.assertEqual(report["total_changes"], 2)
        self.assertEqual(report["total_quantity_added"], 8)
        summary = report["items"][0]
        self.assertEqual(summary["item_code"], "LAMP-1")
        self.assertEqual(summary["latest_cost"], "16.00")
        self.assertEqual(summary["average_cost_change"], "3.00")

    def test_delivery_cannot_read_cost_history(self):
        delivery = self.user_model.objects.create_user(
            username="cost-delivery", password="pass1234", role="delivery", branch=self.branch_a
        )
        self.client.force_authenticate(user=delivery)

        response = self.client.get("/api/v1/cost-history/")

        self.assertEqual(response.status_code, 403)


class SupplierPriceApiTests(InventoryFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixture()
        self.client = APIClient()
        self.client.force_authenticate(user=self.admin)
        self.supplier = Supplier.objects.create(branch=self.branch_a, name="Acme", code="ACME")
        self.bulb = ledger.create_item(branch=self.branch_a, item_code="BULB-1", quantity=0, name="Bulb")
        self.other_item = ledger.create_item(branch=self.branch_b, item_code="B-1", quantity=1, name="Other")

    def test_create_and_reject_duplicate(self):
        payload = {"supplier": str(self.supplier.id), "inventory_item": str(self.item.id), "price": "8.75"}

        response = self.client.post("/api/v1/supplier-prices/", payload, format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["item_code"], "LAMP-1")
        self.assertEqual(response.json()["supplier_name"], "Acme")

        duplicate = self.client.post("/api/v1/supplier-prices/", payload, format="json")
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(duplicate.json()["code"], "validation_error")
        self.assertIn("inventory_item", duplicate.json()["errors"])
        self.assertEqual(SupplierPrice.objects.count(), 1)

    def test_item_must_share_supplier_branch(self):
        response = self.client.post(
            "/api/v1/supplier-prices/",
            {"supplier": str(self.supplier.id), "inventory_item": str(self.other_item.id), "price": "1.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(SupplierPrice.objects.exists())

    def test_update_filter_and_delete(self):
        price = SupplierPrice.objects.create(supplier=self.supplier, inventory_item=self.item, price=Decimal("8.00"))

        response = self.client.patch(f"/api/v1/supplier-prices/{price.id}/", {"price": "7.25"}, format="json")
        self.assertEqual(response.status_code, 200)
        price.refresh_from_db()
        self.assertEqual(price.price, Decimal("7.25"))

        listing = self.client.get("/api/v1/supplier-prices/", {"inventory_item": str(self.item.id)})
        self.assertEqual(listing.json()["count"], 1)

        response = self.client.delete(f"/api/v1/supplier-prices/{price.id}/")
        self.assertEqual(response.status_code, 204)
        self.assertFalse(SupplierPrice.objects.exists())

    def test_bulk_upsert_reports_rows_it_cannot_apply(self):
        SupplierPrice.objects.create(supplier=self.supplier, inventory_item=self.item, price=Decimal("8.00"))

        response = self.client.put(
            f"/api/v1/suppliers/{self.supplier.id}/prices/",
            {
                "prices": [
                    {"inventory_item": str(self.item.id), "price": "9.50"},
                    {"inventory_item": str(self.bulb.id), "price": "2.00"},
                    {"inventory_item": str(self.other_item.id), "price": "1.00"},
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["count"], 2)
        self.assertEqual(payload["errors"], [{"inventory_item": str(self.other_item.id), "error": "Inventory item not found in the supplier branch."}])
        prices = dict(SupplierPrice.objects.values_list("inventory_item__item_code", "price"))
        self.assertEqual(prices, {"LAMP-1": Decimal("9.50"), "BULB-1": Decimal("2.00")})

        listing = self.client.get(f"/api/v1/suppliers/{self.supplier.id}/prices/")
        self.assertEqual([row["item_code"] for row in listing.json()], ["BULB-1", "LAMP-1"])
