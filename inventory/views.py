from datetime import datetime
from decimal import Decimal

from django.db.models import Q
from django.utils.dateparse import parse_datetime
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.exceptions import InvalidTransition
from common.permissions import RoleCapabilityPermission, get_user_role
from common.utils import to_money
from core.models import User
from core.views import scoped_queryset_for_user
from inventory.models import (
    CostHistory,
    InventoryItem,
    PurchaseOrder,
    PurchaseReceiving,
    StockTransfer,
    Supplier,
    SupplierPrice,
)
from inventory.receiving import receive_purchase_order
from inventory.serializers import (
    CostHistorySerializer,
    InventoryItemSerializer,
    PurchaseOrderSerializer,
    PurchaseReceivingSerializer,
    ReceivePurchaseOrderSerializer,
    StockAdjustmentSerializer,
    StockMoveSerializer,
    StockTransferCreateSerializer,
    StockTransferSerializer,
    SupplierPriceBulkSerializer,
    SupplierPriceSerializer,
    SupplierSerializer,
    TransferCancelSerializer,
)
from inventory.services import adjust_stock_manually, set_supplier_prices
from inventory.transfers import cancel_transfer, complete_transfer, delete_transfer, transfer_stock
from notifications.publisher import AUDIENCE_ADMINS, publish

MANAGE_ACTIONS = ["create", "update", "partial_update", "destroy"]


class OutboxMutationMixin:
    outbox_entity = None
    audit_entity = None

    def _audit(self, *, action, entity, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            branch=getattr(instance, "branch", None),
        )

    def _emit(self, instance, op, payload=None):
        publish(
            f"{self.outbox_entity}_{op}",
            payload if payload is not None else self.get_serializer(instance).data,
            branch_id=getattr(instance, "branch_id", None),
            audience=AUDIENCE_ADMINS,
            entity=self.outbox_entity,
            entity_id=instance.id,
        )

    def perform_create(self, serializer):
        user = self.request.user
        if not getattr(user, "branch_id", None):
            raise ValidationError("Authenticated user must belong to a branch to create records.")

        instance = serializer.save(branch_id=user.branch_id)
        self._emit(instance, "created")
        self._audit(action=f"{self.audit_entity}.create", entity=self.audit_entity, instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._emit(instance, "updated")
        self._audit(action=f"{self.audit_entity}.update", entity=self.audit_entity, instance=instance, before_snapshot=before_snapshot, after_snapshot=self.get_serializer(instance).data)

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        self._emit(instance, "deleted", payload=before_snapshot)
        self._audit(action=f"{self.audit_entity}.delete", entity=self.audit_entity, instance=instance, before_snapshot=before_snapshot)
        instance.delete()


class InventoryItemViewSet(OutboxMutationMixin, viewsets.ModelViewSet):
    queryset = InventoryItem.objects.select_related("supplier").order_by("item_code")
    serializer_class = InventoryItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "history": "inventory.view",
        "cost_history": "purchasing.manage",
        "adjust": "stock.adjust",
        **{action: "inventory.manage" for action in MANAGE_ACTIONS},
    }
    outbox_entity = "inventory_item"
    audit_entity = "inventory_item"

    def get_queryset(self):
        qs = super().get_queryset()
        user = self.request.user
        params = self.request.query_params

        # Customers browse the catalogue of every branch.
        if get_user_role(user) == User.Role.CUSTOMER:
            qs = qs.filter(is_active=True)
        else:
            qs = scoped_queryset_for_user(qs, user)
            if params.get("include_inactive") not in {"1", "true"}:
                qs = qs.filter(is_active=True)

        branch_id = params.get("branch")
        if branch_id:
            qs = qs.filter(branch_id=branch_id)
        search = params.get("search")
        if search:
            qs = qs.filter(Q(item_code__icontains=search) | Q(name__icontains=search) | Q(barcode=search))
        return qs

    def get_serializer_context(self):
        context = super().get_serializer_context()
        context["branch_id"] = getattr(self.request.user, "branch_id", None)
        return context

    def perform_create(self, serializer):
        user = self.request.user
        if not getattr(user, "branch_id", None):
            raise ValidationError("Authenticated user must belong to a branch to create records.")

        instance = serializer.save(branch=user.branch, actor=user)
        self._emit(instance, "created")
        self._audit(action="inventory_item.create", entity=self.audit_entity, instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        instance.is_active = False
        instance.save(update_fields=["is_active", "updated_at"])
        self._emit(instance, "deleted", payload=before_snapshot)
        self._audit(action="inventory_item.delete", entity=self.audit_entity, instance=instance, before_snapshot=before_snapshot)

    @action(detail=True, methods=["post"], url_path="adjust")
    def adjust(self, request, pk=None):
        item = self.get_object()
        serializer = StockAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before = {"quantity": item.quantity}
        move = adjust_stock_manually(
            item,
            serializer.validated_data["delta"],
            actor=request.user,
            note=serializer.validated_data["note"],
        )
        self._audit(
            action="stock.adjust",
            entity=self.audit_entity,
            instance=item,
            before_snapshot=before,
            after_snapshot=StockMoveSerializer(move).data,
        )
        return Response(StockMoveSerializer(move).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request, pk=None):
        item = self.get_object()
        moves = item.moves.select_related("actor").order_by("-created_at")
        page = self.paginate_queryset(moves)
        if page is not None:
            return self.get_paginated_response(StockMoveSerializer(page, many=True).data)
        return Response(StockMoveSerializer(moves, many=True).data)

    @action(detail=True, methods=["get"], url_path="cost-history")
    def cost_history(self, request, pk=None):
        item = self.get_object()
        rows = item.cost_history.select_related("item", "actor").order_by("-created_at")
        page = self.paginate_queryset(rows)
        if page is not None:
            return self.get_paginated_response(CostHistorySerializer(page, many=True).data)
        return Response(CostHistorySerializer(rows, many=True).data)


class SupplierViewSet(OutboxMutationMixin, viewsets.ModelViewSet):
    queryset = Supplier.objects.order_by("name")
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "purchasing.manage" for action in ["list", "retrieve", "prices", *MANAGE_ACTIONS]}
    outbox_entity = "supplier"
    audit_entity = "supplier"

    def get_queryset(self):
        return scoped_queryset_for_user(super().get_queryset(), self.request.user)

    @action(detail=True, methods=["get", "put"], url_path="prices")
    def prices(self, request, pk=None):
        supplier = self.get_object()
        if request.method == "GET":
            rows = supplier.prices.select_related("supplier", "inventory_item").order_by("inventory_item__item_code")
            return Response(SupplierPriceSerializer(rows, many=True).data)

        serializer = SupplierPriceBulkSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        results, errors = set_supplier_prices(supplier, serializer.validated_data["prices"])
        data = SupplierPriceSerializer(results, many=True).data
        self._audit(action="supplier.prices", entity=self.audit_entity, instance=supplier, after_snapshot={"prices": data, "errors": errors})
        return Response({"count": len(results), "results": data, "errors": errors})


class SupplierPriceViewSet(OutboxMutationMixin, viewsets.ModelViewSet):
    queryset = SupplierPrice.objects.select_related("supplier", "inventory_item").order_by("-updated_at")
    serializer_class = SupplierPriceSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "purchasing.manage" for action in ["list", "retrieve", *MANAGE_ACTIONS]}
    outbox_entity = "supplier_price"
    audit_entity = "supplier_price"

    def get_queryset(self):
        qs = super().get_queryset()
        user = self.request.user
        if not user.is_superuser:
            qs = qs.filter(supplier__branch_id=user.branch_id) if getattr(user, "branch_id", None) else qs.none()

        params = self.request.query_params
        if params.get("supplier"):
            qs = qs.filter(supplier_id=params["supplier"])
        if params.get("inventory_item"):
            qs = qs.filter(inventory_item_id=params["inventory_item"])
        return qs

    def perform_create(self, serializer):
        user = self.request.user
        supplier = serializer.validated_data["supplier"]
        if not user.is_superuser and supplier.branch_id != getattr(user, "branch_id", None):
            raise ValidationError({"supplier": "Supplier must belong to your branch."})

        instance = serializer.save()
        self._emit(instance, "created")
        self._audit(action="supplier_price.create", entity=self.audit_entity, instance=instance, after_snapshot=self.get_serializer(instance).data)


class CostHistoryViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = CostHistory.objects.select_related("item", "actor").order_by("-created_at")
    serializer_class = CostHistorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "purchasing.manage" for action in ["list", "retrieve", "monthly_report"]}

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        params = self.request.query_params

        if params.get("item"):
            qs = qs.filter(item_id=params["item"])
        if params.get("change_type"):
            qs = qs.filter(change_type=params["change_type"])
        if params.get("actor_id"):
            qs = qs.filter(actor_id=params["actor_id"])
        if params.get("month"):
            year, month = _parse_month(params["month"])
            qs = qs.filter(created_at__year=year, created_at__month=month)
        for param, lookup in (("start_date", "created_at__gte"), ("end_date", "created_at__lte")):
            dt = parse_datetime(params.get(param) or "")
            if dt:
                qs = qs.filter(**{lookup: dt})
        return qs

    @action(detail=False, methods=["get"], url_path="monthly-report")
    def monthly_report(self, request):
        if not request.query_params.get("month"):
            raise ValidationError({"month": "This query parameter is required (YYYY-MM)."})
        rows = self.get_queryset().order_by("created_at")

        items = {}
        for row in rows:
            summary = items.setdefault(
                row.item_id,
                {
                    "item": row.item_id,
                    "item_code": row.item.item_code,
                    "item_name": row.item.name,
                    "change_count": 0,
                    "quantity_added": 0,
                    "total_cost_change": Decimal("0"),
                    "latest_cost": row.new_cost,
                },
            )
            summary["change_count"] += 1
            summary["quantity_added"] += row.quantity_added
            summary["total_cost_change"] += row.cost_change
            summary["latest_cost"] = row.new_cost

        for summary in items.values():
            summary["average_cost_change"] = str(to_money(summary.pop("total_cost_change") / summary["change_count"]))
            summary["latest_cost"] = str(summary["latest_cost"])

        return Response(
            {
                "month": request.query_params["month"],
                "total_items": len(items),
                "total_changes": sum(summary["change_count"] for summary in items.values()),
                "total_quantity_added": sum(summary["quantity_added"] for summary in items.values()),
                "items": list(items.values()),
            }
        )


def _parse_month(value):
    try:
        parsed = datetime.strptime(value, "%Y-%m")
    except ValueError:
        raise ValidationError({"month": "Use the YYYY-MM format."})
    return parsed.year, parsed.month


class PurchaseOrderViewSet(OutboxMutationMixin, viewsets.ModelViewSet):
    queryset = PurchaseOrder.objects.select_related("supplier").prefetch_related("lines__inventory_item").order_by("-created_at")
    serializer_class = PurchaseOrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "purchasing.manage" for action in ["list", "retrieve", "receive", *MANAGE_ACTIONS]}
    outbox_entity = "purchase_order"
    audit_entity = "purchase_order"

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def perform_create(self, serializer):
        user = self.request.user
        if not getattr(user, "branch_id", None):
            raise ValidationError("Authenticated user must belong to a branch to create records.")

        instance = serializer.save(branch=user.branch, created_by=user)
        self._emit(instance, "created")
        self._audit(action="purchase_order.create", entity=self.audit_entity, instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_destroy(self, instance):
        if instance.status != PurchaseOrder.Status.DRAFT:
            raise InvalidTransition(errors={"status": ["Only draft purchase orders can be deleted."]})
        super().perform_destroy(instance)

    @action(detail=True, methods=["post"], url_path="receive")
    def receive(self, request, pk=None):
        po = self.get_object()
        serializer = ReceivePurchaseOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        receiving = receive_purchase_order(
            po.id,
            serializer.validated_data["lines"],
            request.user,
            notes=serializer.validated_data["notes"],
        )
        data = PurchaseReceivingSerializer(receiving).data
        po.refresh_from_db()
        self._audit(action="purchase_order.receive", entity=self.audit_entity, instance=po, after_snapshot=data)
        return Response(data, status=status.HTTP_201_CREATED)


class PurchaseReceivingViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = PurchaseReceiving.objects.select_related("purchase_order").prefetch_related("lines__inventory_item").order_by("-created_at")
    serializer_class = PurchaseReceivingSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "purchasing.manage", "retrieve": "purchasing.manage"}

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        purchase_order_id = self.request.query_params.get("purchase_order")
        if purchase_order_id:
            qs = qs.filter(purchase_order_id=purchase_order_id)
        return qs


class StockTransferViewSet(
    mixins.CreateModelMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    queryset = StockTransfer.objects.select_related("source_item", "from_branch", "to_branch").order_by("-created_at")
    serializer_class = StockTransferSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "stock.transfer" for action in ["list", "retrieve", "create", "destroy", "complete", "cancel"]}

    def get_queryset(self):
        qs = super().get_queryset()
        user = self.request.user
        if user.is_superuser or get_user_role(user) == User.Role.SUPERADMIN:
            pass
        elif getattr(user, "branch_id", None):
            qs = qs.filter(Q(from_branch_id=user.branch_id) | Q(to_branch_id=user.branch_id))
        else:
            qs = qs.none()

        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def _audit(self, transfer, action, before_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity="stock_transfer",
            entity_id=transfer.id,
            before_snapshot=before_snapshot,
            after_snapshot=StockTransferSerializer(transfer).data,
            branch=transfer.from_branch,
        )

    def create(self, request, *args, **kwargs):
        serializer = StockTransferCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        transfer = transfer_stock(
            data["item"],
            data["from_branch"],
            data["to_branch"],
            data["quantity"],
            request.user,
            notes=data["notes"],
            defer=data["defer"],
        )
        self._audit(transfer, "transfer.create")
        return Response(StockTransferSerializer(transfer).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="complete")
    def complete(self, request, pk=None):
        transfer = self.get_object()
        transfer = complete_transfer(transfer.id, request.user)
        self._audit(transfer, "transfer.complete")
        return Response(StockTransferSerializer(transfer).data)

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        transfer = self.get_object()
        serializer = TransferCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        transfer = cancel_transfer(transfer.id, request.user, reason=serializer.validated_data["reason"])
        self._audit(transfer, "transfer.cancel")
        return Response(StockTransferSerializer(transfer).data)

    def perform_destroy(self, instance):
        before_snapshot = StockTransferSerializer(instance).data
        delete_transfer(instance)
        create_audit_log_from_request(
            self.request,
            action="transfer.delete",
            entity="stock_transfer",
            entity_id=before_snapshot["id"],
            before_snapshot=before_snapshot,
            branch=instance.from_branch,
        )
