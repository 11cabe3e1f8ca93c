from rest_framework import serializers

from inventory import ledger
from inventory.models import (
    CostHistory,
    InventoryItem,
    PurchaseOrder,
    PurchaseOrderLine,
    PurchaseReceiving,
    PurchaseReceivingLine,
    StockMove,
    StockTransfer,
    Supplier,
    SupplierPrice,
)
from inventory.services import create_purchase_order, update_item_details, update_purchase_order


class SupplierSerializer(serializers.ModelSerializer):
    class Meta:
        model = Supplier
        fields = ["id", "branch", "name", "code", "contact_person", "phone", "email", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "branch", "created_at", "updated_at"]


class InventoryItemSerializer(serializers.ModelSerializer):
    opening_quantity = serializers.IntegerField(write_only=True, required=False, min_value=0, default=0)
    supplier_name = serializers.CharField(source="supplier.name", read_only=True)

    class Meta:
        model = InventoryItem
        fields = [
            "id",
            "branch",
            "item_code",
            "barcode",
            "name",
            "description",
            "category",
            "brand",
            "unit",
            "cost",
            "price",
            "quantity",
            "opening_quantity",
            "reorder_level",
            "supplier",
            "supplier_name",
            "version",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "branch", "quantity", "version", "is_active", "created_at", "updated_at"]

    def validate(self, attrs):
        if self.instance is not None:
            attrs.pop("opening_quantity", None)
            if "item_code" in attrs and attrs["item_code"] != self.instance.item_code:
                raise serializers.ValidationError({"item_code": "Item code cannot be changed."})
        supplier = attrs.get("supplier")
        branch_id = getattr(self.instance, "branch_id", None) or self.context.get("branch_id")
        if self.instance is None and branch_id:
            if InventoryItem.objects.filter(branch_id=branch_id, item_code=attrs.get("item_code")).exists():
                raise serializers.ValidationError({"item_code": "An item with this code already exists in the branch."})
        if supplier and branch_id and supplier.branch_id != branch_id:
            raise serializers.ValidationError({"supplier": "Supplier must belong to the same branch."})
        return attrs

    def create(self, validated_data):
        quantity = validated_data.pop("opening_quantity", 0)
        actor = validated_data.pop("actor", None)
        branch = validated_data.pop("branch")
        item_code = validated_data.pop("item_code")
        return ledger.create_item(branch=branch, item_code=item_code, quantity=quantity, actor=actor, **validated_data)

    def update(self, instance, validated_data):
        validated_data.pop("item_code", None)
        request = self.context.get("request")
        return update_item_details(instance, actor=getattr(request, "user", None), **validated_data)


class StockMoveSerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True, default=None)

    class Meta:
        model = StockMove
        fields = [
            "id",
            "item",
            "branch",
            "delta",
            "quantity_after",
            "reason",
            "source_ref_type",
            "source_ref_id",
            "actor",
            "actor_username",
            "note",
            "created_at",
        ]
        read_only_fields = fields


class StockAdjustmentSerializer(serializers.Serializer):
    delta = serializers.IntegerField()
    note = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")

    def validate_delta(self, value):
        if value == 0:
            raise serializers.ValidationError("Delta must not be zero.")
        return value


class StockTransferSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="source_item.item_code", read_only=True)
    item_name = serializers.CharField(source="source_item.name", read_only=True)

    class Meta:
        model = StockTransfer
        fields = [
            "id",
            "transfer_number",
            "source_item",
            "destination_item",
            "item_code",
            "item_name",
            "from_branch",
            "to_branch",
            "quantity",
            "status",
            "source_debited",
            "destination_credited",
            "created_by",
            "completed_at",
            "cancelled_at",
            "notes",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class StockTransferCreateSerializer(serializers.Serializer):
    item = serializers.UUIDField()
    from_branch = serializers.UUIDField()
    to_branch = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    defer = serializers.BooleanField(required=False, default=False)


class TransferCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class PurchaseOrderLineSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="inventory_item.item_code", read_only=True, default=None)

    class Meta:
        model = PurchaseOrderLine
        fields = [
            "id",
            "inventory_item",
            "item_code",
            "description",
            "quantity",
            "received_quantity",
            "unit_cost",
            "line_total",
        ]
        read_only_fields = ["id", "received_quantity", "line_total"]


class PurchaseOrderSerializer(serializers.ModelSerializer):
    lines = PurchaseOrderLineSerializer(many=True, required=False)
    supplier_name = serializers.CharField(source="supplier.name", read_only=True)

    class Meta:
        model = PurchaseOrder
        fields = [
            "id",
            "branch",
            "supplier",
            "supplier_name",
            "order_number",
            "status",
            "subtotal",
            "tax_amount",
            "discount_amount",
            "total",
            "expected_at",
            "received_at",
            "notes",
            "created_by",
            "created_at",
            "updated_at",
            "lines",
        ]
        read_only_fields = [
            "id",
            "branch",
            "order_number",
            "subtotal",
            "total",
            "received_at",
            "created_by",
            "created_at",
            "updated_at",
        ]

    def validate(self, attrs):
        if self.instance is None and not attrs.get("lines"):
            raise serializers.ValidationError({"lines": "At least one line is required."})
        if self.instance is not None and "supplier" in attrs and attrs["supplier"].id != self.instance.supplier_id:
            raise serializers.ValidationError({"supplier": "Supplier cannot be changed."})
        return attrs

    def create(self, validated_data):
        lines = validated_data.pop("lines")
        return create_purchase_order(
            branch=validated_data.pop("branch"),
            supplier=validated_data.pop("supplier"),
            lines=lines,
            actor=validated_data.pop("created_by", None),
            **validated_data,
        )

    def update(self, instance, validated_data):
        return update_purchase_order(instance, lines=validated_data.pop("lines", None), **validated_data)


class ReceiveLineSerializer(serializers.Serializer):
    purchase_order_line = serializers.UUIDField()
    quantity_received = serializers.IntegerField()
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ReceivePurchaseOrderSerializer(serializers.Serializer):
    lines = ReceiveLineSerializer(many=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class PurchaseReceivingLineSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="inventory_item.item_code", read_only=True)

    class Meta:
        model = PurchaseReceivingLine
        fields = [
            "id",
            "purchase_order_line",
            "inventory_item",
            "item_code",
            "quantity_ordered",
            "previously_received",
            "quantity_received",
            "unit_cost",
            "notes",
        ]
        read_only_fields = fields


class PurchaseReceivingSerializer(serializers.ModelSerializer):
    lines = PurchaseReceivingLineSerializer(many=True, read_only=True)
    order_number = serializers.CharField(source="purchase_order.order_number", read_only=True)

    class Meta:
        model = PurchaseReceiving
        fields = [
            "id",
            "receiving_number",
            "purchase_order",
            "order_number",
            "branch",
            "status",
            "received_by",
            "received_at",
            "notes",
            "created_at",
            "updated_at",
            "lines",
        ]
        read_only_fields = fields


class CostHistorySerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="item.item_code", read_only=True)
    item_name = serializers.CharField(source="item.name", read_only=True)
    actor_username = serializers.CharField(source="actor.username", read_only=True, default=None)

    class Meta:
        model = CostHistory
        fields = [
            "id",
            "item",
            "item_code",
            "item_name",
            "branch",
            "previous_cost",
            "new_cost",
            "cost_change",
            "quantity_added",
            "change_type",
            "reason",
            "source_ref_type",
            "source_ref_id",
            "actor",
            "actor_username",
            "created_at",
        ]
        read_only_fields = fields


class SupplierPriceSerializer(serializers.ModelSerializer):
    supplier_name = serializers.CharField(source="supplier.name", read_only=True)
    item_code = serializers.CharField(source="inventory_item.item_code", read_only=True)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)

    class Meta:
        model = SupplierPrice
        fields = ["id", "supplier", "supplier_name", "inventory_item", "item_code", "price", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]
        validators = []

    def validate(self, attrs):
        if self.instance is not None:
            for field in ("supplier", "inventory_item"):
                if field in attrs and attrs[field] != getattr(self.instance, field):
                    raise serializers.ValidationError({field: "This field cannot be changed."})
        supplier = attrs.get("supplier", getattr(self.instance, "supplier", None))
        item = attrs.get("inventory_item", getattr(self.instance, "inventory_item", None))
        if supplier.branch_id != item.branch_id:
            raise serializers.ValidationError({"inventory_item": "Item must belong to the supplier branch."})
        duplicates = SupplierPrice.objects.filter(supplier=supplier, inventory_item=item)
        if self.instance is not None:
            duplicates = duplicates.exclude(id=self.instance.id)
        if duplicates.exists():
            raise serializers.ValidationError({"inventory_item": "This supplier already has a price for the item."})
        return attrs


class SupplierPriceEntrySerializer(serializers.Serializer):
    inventory_item = serializers.UUIDField()
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class SupplierPriceBulkSerializer(serializers.Serializer):
    prices = SupplierPriceEntrySerializer(many=True, allow_empty=False)
