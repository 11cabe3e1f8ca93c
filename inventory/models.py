import uuid

from django.db import models

from core.models import Branch, User


class Supplier(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT)
    name = models.CharField(max_length=255)
    code = models.CharField(max_length=64)
    contact_person = models.CharField(max_length=255, blank=True, default="")
    phone = models.CharField(max_length=64, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("branch", "code")
        indexes = [models.Index(fields=["branch", "is_active"], name="supplier_branch_active_idx")]


class InventoryItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="inventory_items")
    item_code = models.CharField(max_length=64)
    barcode = models.CharField(max_length=128, null=True, blank=True)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    category = models.CharField(max_length=128, blank=True, default="")
    brand = models.CharField(max_length=128, blank=True, default="")
    unit = models.CharField(max_length=32, default="pcs")
    cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    quantity = models.IntegerField(default=0)
    reorder_level = models.IntegerField(default=0)
    supplier = models.ForeignKey(Supplier, on_delete=models.SET_NULL, null=True, blank=True, related_name="items")
    version = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["branch", "item_code"], name="uniq_inventory_item_code_per_branch"),
            models.CheckConstraint(condition=models.Q(quantity__gte=0), name="inventory_item_quantity_non_negative"),
        ]
        indexes = [
            models.Index(fields=["branch", "is_active"], name="item_branch_active_idx"),
            models.Index(fields=["branch", "barcode"], name="item_branch_barcode_idx"),
        ]

    def __str__(self):
        return f"{self.item_code} @ {self.branch_id}"


class StockMove(models.Model):
    """One row per ledger adjustment; an item's quantity equals the sum of its deltas."""

    class Reason(models.TextChoices):
        OPENING = "opening", "Opening Balance"
        SALE = "sale", "Sale"
        CANCELLATION = "cancellation", "Cancellation"
        TRANSFER_OUT = "transfer_out", "Transfer Out"
        TRANSFER_IN = "transfer_in", "Transfer In"
        PURCHASE = "purchase", "Purchase"
        ADJUSTMENT = "adjustment", "Adjustment"
        COMPENSATION = "compensation", "Compensation"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    item = models.ForeignKey(InventoryItem, on_delete=models.PROTECT, related_name="moves")
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT)
    delta = models.IntegerField()
    quantity_after = models.IntegerField()
    reason = models.CharField(max_length=32, choices=Reason.choices)
    source_ref_type = models.CharField(max_length=64, null=True, blank=True)
    source_ref_id = models.UUIDField(null=True, blank=True)
    actor = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    note = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["item", "created_at"], name="stockmove_item_created_idx"),
            models.Index(fields=["branch", "created_at"], name="stockmove_branch_created_idx"),
            models.Index(fields=["source_ref_id", "source_ref_type"], name="stockmove_source_ref_idx"),
        ]


class StockTransfer(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    transfer_number = models.CharField(max_length=32, unique=True)
    source_item = models.ForeignKey(InventoryItem, on_delete=models.PROTECT, related_name="outgoing_transfers")
    destination_item = models.ForeignKey(
        InventoryItem,
        on_delete=models.PROTECT,
        related_name="incoming_transfers",
        null=True,
        blank=True,
    )
    from_branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="outgoing_transfers")
    to_branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="incoming_transfers")
    quantity = models.PositiveIntegerField()
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    source_debited = models.BooleanField(default=False)
    destination_credited = models.BooleanField(default=False)
    created_by = models.ForeignKey(User, on_delete=models.PROTECT, null=True, blank=True, related_name="stock_transfers")
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="stock_transfer_quantity_positive"),
        ]
        indexes = [
            models.Index(fields=["status", "created_at"], name="transfer_status_created_idx"),
            models.Index(fields=["from_branch", "created_at"], name="transfer_from_created_idx"),
            models.Index(fields=["to_branch", "created_at"], name="transfer_to_created_idx"),
        ]

    @property
    def is_applied(self):
        return self.source_debited or self.destination_credited


class PurchaseOrder(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SUBMITTED = "submitted", "Submitted"
        APPROVED = "approved", "Approved"
        PARTIAL = "partial", "Partially Received"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"
        REJECTED = "rejected", "Rejected"

    RECEIVABLE_STATUSES = (Status.SUBMITTED, Status.APPROVED, Status.PARTIAL)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT)
    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, related_name="purchase_orders")
    order_number = models.CharField(max_length=32, unique=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.DRAFT)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    expected_at = models.DateTimeField(null=True, blank=True)
    received_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch", "status", "created_at"], name="po_branch_status_idx"),
            models.Index(fields=["supplier", "status"], name="po_supplier_status_idx"),
        ]


class PurchaseOrderLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name="lines")
    inventory_item = models.ForeignKey(InventoryItem, on_delete=models.PROTECT, null=True, blank=True)
    description = models.CharField(max_length=255, blank=True, default="")
    quantity = models.PositiveIntegerField()
    received_quantity = models.PositiveIntegerField(default=0)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=2)
    line_total = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        indexes = [
            models.Index(fields=["purchase_order"], name="poline_order_idx"),
            models.Index(fields=["inventory_item"], name="poline_item_idx"),
        ]

    @property
    def outstanding_quantity(self):
        return max(self.quantity - self.received_quantity, 0)


class PurchaseReceiving(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    receiving_number = models.CharField(max_length=32, unique=True)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.PROTECT, related_name="receivings")
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    received_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    received_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["purchase_order", "created_at"], name="receiving_order_created_idx"),
            models.Index(fields=["branch", "created_at"], name="receiving_branch_created_idx"),
        ]


class PurchaseReceivingLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    receiving = models.ForeignKey(PurchaseReceiving, on_delete=models.CASCADE, related_name="lines")
    purchase_order_line = models.ForeignKey(PurchaseOrderLine, on_delete=models.PROTECT, related_name="receiving_lines")
    inventory_item = models.ForeignKey(InventoryItem, on_delete=models.PROTECT)
    quantity_ordered = models.PositiveIntegerField()
    previously_received = models.PositiveIntegerField(default=0)
    quantity_received = models.PositiveIntegerField()
    unit_cost = models.DecimalField(max_digits=12, decimal_places=2)
    notes = models.TextField(blank=True, default="")

    class Meta:
        indexes = [
            models.Index(fields=["receiving"], name="receivingline_receiving_idx"),
        ]


class CostHistory(models.Model):
    """One row per change of an item's unit cost."""

    class ChangeType(models.TextChoices):
        STOCK_ADDITION = "stock_addition", "Stock Addition"
        PRICE_ADJUSTMENT = "price_adjustment", "Price Adjustment"
        CORRECTION = "correction", "Correction"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    item = models.ForeignKey(InventoryItem, on_delete=models.PROTECT, related_name="cost_history")
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT)
    previous_cost = models.DecimalField(max_digits=12, decimal_places=2)
    new_cost = models.DecimalField(max_digits=12, decimal_places=2)
    cost_change = models.DecimalField(max_digits=12, decimal_places=2)
    quantity_added = models.PositiveIntegerField(default=0)
    change_type = models.CharField(max_length=32, choices=ChangeType.choices, default=ChangeType.STOCK_ADDITION)
    reason = models.CharField(max_length=255)
    source_ref_type = models.CharField(max_length=64, null=True, blank=True)
    source_ref_id = models.UUIDField(null=True, blank=True)
    actor = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["item", "created_at"], name="costhistory_item_created_idx"),
            models.Index(fields=["branch", "created_at"], name="costhistory_branch_created_idx"),
            models.Index(fields=["source_ref_id", "source_ref_type"], name="costhistory_source_ref_idx"),
        ]


class SupplierPrice(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    supplier = models.ForeignKey(Supplier, on_delete=models.CASCADE, related_name="prices")
    inventory_item = models.ForeignKey(InventoryItem, on_delete=models.CASCADE, related_name="supplier_prices")
    price = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["supplier", "inventory_item"], name="uniq_supplier_price_per_item"),
            models.CheckConstraint(condition=models.Q(price__gte=0), name="supplier_price_non_negative"),
        ]

    @property
    def branch(self):
        return self.supplier.branch

    @property
    def branch_id(self):
        return self.supplier.branch_id
