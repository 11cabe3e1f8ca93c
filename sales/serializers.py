from rest_framework import serializers

from core.models import Branch, User
from inventory.models import InventoryItem
from sales.models import Customer, Quotation, QuotationItem, Sale, SaleItem, SalePayment
from sales.workflow import allowed_events


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "branch", "user", "name", "phone", "email", "created_at", "updated_at"]
        read_only_fields = ["id", "branch", "created_at", "updated_at"]


class QuotationItemSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="inventory_item.item_code", read_only=True)

    class Meta:
        model = QuotationItem
        fields = ["id", "inventory_item", "item_code", "description", "quantity", "unit_price", "total"]
        read_only_fields = ["id", "total"]
        extra_kwargs = {"unit_price": {"required": False}, "description": {"required": False}}


class QuotationSerializer(serializers.ModelSerializer):
    items = QuotationItemSerializer(many=True, read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)
    created_by_username = serializers.CharField(source="created_by.username", read_only=True)
    assigned_delivery_username = serializers.CharField(source="assigned_delivery.username", read_only=True, default=None)
    sale_id = serializers.SerializerMethodField()
    allowed_events = serializers.SerializerMethodField()

    class Meta:
        model = Quotation
        fields = [
            "id",
            "quotation_number",
            "branch",
            "customer",
            "customer_name",
            "created_by",
            "created_by_username",
            "assigned_delivery",
            "assigned_delivery_username",
            "status",
            "status_before_cancellation",
            "stock_committed",
            "subtotal",
            "tax_amount",
            "discount_amount",
            "total",
            "valid_until",
            "notes",
            "terms",
            "approved_by",
            "approved_at",
            "completed_at",
            "cancelled_at",
            "cancelled_by",
            "cancellation_reason",
            "cancellation_requested_at",
            "cancellation_requested_by",
            "sale_id",
            "allowed_events",
            "created_at",
            "updated_at",
            "items",
        ]
        read_only_fields = fields

    def get_sale_id(self, obj):
        sale = Sale.objects.filter(quotation_id=obj.id).values_list("id", flat=True).first()
        return str(sale) if sale else None

    def get_allowed_events(self, obj):
        return allowed_events(obj)


class QuotationWriteSerializer(serializers.Serializer):
    """Input for creating or editing a quotation; business rules live in `sales.workflow`."""

    branch = serializers.PrimaryKeyRelatedField(queryset=Branch.objects.filter(is_active=True), required=False)
    customer = serializers.PrimaryKeyRelatedField(queryset=Customer.objects.all(), required=False, allow_null=True)
    assigned_delivery = serializers.UUIDField(required=False, allow_null=True)
    status = serializers.ChoiceField(choices=Quotation.OPEN_STATUSES, required=False)
    items = QuotationItemSerializer(many=True, required=False)
    tax_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    discount_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    valid_until = serializers.DateTimeField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    terms = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if self.instance is None and not attrs.get("items"):
            raise serializers.ValidationError({"items": "At least one item is required."})
        return attrs


class TransitionSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")
    assigned_delivery = serializers.UUIDField(required=False, allow_null=True)


class DeliveryUserSerializer(serializers.ModelSerializer):
    class Meta:
        model = User
        fields = ["id", "username", "first_name", "last_name", "email", "phone", "branch"]
        read_only_fields = fields


class SaleItemSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="inventory_item.item_code", read_only=True)

    class Meta:
        model = SaleItem
        fields = ["id", "inventory_item", "item_code", "description", "quantity", "unit_price", "total"]
        read_only_fields = fields


class SalePaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = SalePayment
        fields = ["id", "sale", "method", "amount", "received_by", "paid_at"]
        read_only_fields = fields


class SaleSerializer(serializers.ModelSerializer):
    items = SaleItemSerializer(many=True, read_only=True)
    payments = SalePaymentSerializer(many=True, read_only=True)
    quotation_number = serializers.CharField(source="quotation.quotation_number", read_only=True, default=None)

    class Meta:
        model = Sale
        fields = [
            "id",
            "sale_number",
            "branch",
            "quotation",
            "quotation_number",
            "customer",
            "subtotal",
            "tax_amount",
            "discount_amount",
            "total",
            "amount_paid",
            "balance",
            "status",
            "created_by",
            "paid_at",
            "created_at",
            "updated_at",
            "items",
            "payments",
        ]
        read_only_fields = fields


class DirectSaleLineSerializer(serializers.Serializer):
    inventory_item = serializers.PrimaryKeyRelatedField(queryset=InventoryItem.objects.all())
    quantity = serializers.IntegerField()
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    description = serializers.CharField(required=False, allow_blank=True)


class DirectSaleSerializer(serializers.Serializer):
    customer = serializers.PrimaryKeyRelatedField(queryset=Customer.objects.all(), required=False, allow_null=True)
    items = DirectSaleLineSerializer(many=True)
    tax_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, default=0)
    discount_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, default=0)


class PaymentInputSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    method = serializers.ChoiceField(choices=SalePayment.Method.choices)
