from django.db.models import Q
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.permissions import RoleCapabilityPermission, get_user_role
from core.models import User
from core.views import scoped_queryset_for_user
from inventory.views import OutboxMutationMixin
from sales import workflow
from sales.materializer import create_direct_sale, record_payment
from sales.models import Customer, Quotation, Sale
from sales.serializers import (
    CustomerSerializer,
    DeliveryUserSerializer,
    DirectSaleSerializer,
    PaymentInputSerializer,
    QuotationSerializer,
    QuotationWriteSerializer,
    SalePaymentSerializer,
    SaleSerializer,
    TransitionSerializer,
)


class CustomerViewSet(OutboxMutationMixin, viewsets.ModelViewSet):
    queryset = Customer.objects.order_by("name")
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "customers.view",
        "retrieve": "customers.view",
        "create": "records.manage",
        "update": "records.manage",
        "partial_update": "records.manage",
        "destroy": "records.manage",
    }
    outbox_entity = "customer"
    audit_entity = "customer"

    def get_queryset(self):
        return scoped_queryset_for_user(super().get_queryset(), self.request.user)


class QuotationViewSet(viewsets.ModelViewSet):
    """Quotations and their lifecycle events.

    Lifecycle actions are not in ``permission_action_map``; `sales.workflow`
    checks the quotation status before the actor guard.
    """

    queryset = (
        Quotation.objects.select_related("customer", "created_by", "assigned_delivery")
        .prefetch_related("items__inventory_item")
        .order_by("-created_at")
    )
    serializer_class = QuotationSerializer
    lookup_value_regex = "[0-9a-fA-F-]{36}"
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "quotation.view",
        "retrieve": "quotation.view",
        "create": "quotation.create",
        "delivery_users": "quotation.approve",
    }

    def get_queryset(self):
        qs = super().get_queryset()
        user = self.request.user
        role = get_user_role(user)

        if role == User.Role.CUSTOMER:
            qs = qs.filter(created_by=user)
        elif role == User.Role.DELIVERY:
            qs = qs.filter(
                Q(assigned_delivery=user)
                | Q(assigned_delivery__isnull=True, status__in=[Quotation.Status.APPROVED, Quotation.Status.ACCEPTED])
            )
            if getattr(user, "branch_id", None):
                qs = qs.filter(branch_id=user.branch_id)
        elif not (user.is_superuser or role == User.Role.SUPERADMIN):
            qs = scoped_queryset_for_user(qs, user)

        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def _respond(self, quotation, status_code=status.HTTP_200_OK):
        quotation = Quotation.objects.select_related("customer").prefetch_related("items__inventory_item").get(id=quotation.id)
        return Response(QuotationSerializer(quotation).data, status=status_code)

    def create(self, request, *args, **kwargs):
        serializer = QuotationWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)

        branch = data.pop("branch", None) or getattr(request.user, "branch", None)
        if branch is None:
            raise ValidationError({"branch": "A branch is required."})

        quotation = workflow.create_quotation(
            actor=request.user,
            branch=branch,
            items=data.pop("items"),
            **data,
        )
        return self._respond(quotation, status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        quotation = self.get_object()
        partial = kwargs.pop("partial", False)
        serializer = QuotationWriteSerializer(quotation, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        data.pop("branch", None)
        data.pop("status", None)

        quotation = workflow.update_quotation(quotation.id, request.user, **data)
        return self._respond(quotation)

    def destroy(self, request, *args, **kwargs):
        quotation = self.get_object()
        workflow.delete_quotation(quotation.id, request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)

    def _transition(self, request, pk, event):
        serializer = TransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = workflow.transition_quotation(pk, event, request.user, serializer.validated_data)
        if isinstance(result, Sale):
            return Response(SaleSerializer(result).data, status=status.HTTP_201_CREATED)
        return self._respond(result)

    @action(detail=True, methods=["post"], url_path="approve")
    def approve(self, request, pk=None):
        return self._transition(request, pk, workflow.APPROVE)

    @action(detail=True, methods=["post"], url_path="reject")
    def reject(self, request, pk=None):
        return self._transition(request, pk, workflow.REJECT)

    @action(detail=True, methods=["post"], url_path="deliver")
    def deliver(self, request, pk=None):
        return self._transition(request, pk, workflow.DELIVER)

    @action(detail=True, methods=["post"], url_path="convert")
    def convert(self, request, pk=None):
        return self._transition(request, pk, workflow.CONVERT)

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        return self._transition(request, pk, workflow.CANCEL)

    @action(detail=True, methods=["post"], url_path="approve-cancellation")
    def approve_cancellation(self, request, pk=None):
        return self._transition(request, pk, workflow.APPROVE_CANCELLATION)

    @action(detail=True, methods=["post"], url_path="deny-cancellation")
    def deny_cancellation(self, request, pk=None):
        return self._transition(request, pk, workflow.DENY_CANCELLATION)

    @action(detail=False, methods=["get"], url_path="delivery-users", pagination_class=None)
    def delivery_users(self, request):
        users = User.objects.filter(role=User.Role.DELIVERY, is_active=True).order_by("username")
        if not (request.user.is_superuser or get_user_role(request.user) == User.Role.SUPERADMIN):
            if getattr(request.user, "branch_id", None):
                users = users.filter(Q(branch_id=request.user.branch_id) | Q(branch__isnull=True))
        return Response(DeliveryUserSerializer(users, many=True).data)


class SaleViewSet(mixins.CreateModelMixin, viewsets.ReadOnlyModelViewSet):
    queryset = (
        Sale.objects.select_related("quotation", "customer")
        .prefetch_related("items__inventory_item", "payments")
        .order_by("-created_at")
    )
    serializer_class = SaleSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "sale.view",
        "retrieve": "sale.view",
        "create": "sale.create",
        "payments": "sale.payment.record",
    }

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def create(self, request, *args, **kwargs):
        if not getattr(request.user, "branch_id", None):
            raise ValidationError("Authenticated user must belong to a branch to create records.")
        serializer = DirectSaleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        sale = create_direct_sale(
            actor=request.user,
            branch=request.user.branch,
            items=data["items"],
            customer=data.get("customer"),
            tax_amount=data["tax_amount"],
            discount_amount=data["discount_amount"],
        )
        return Response(SaleSerializer(sale).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="payments")
    def payments(self, request, pk=None):
        sale = self.get_object()
        serializer = PaymentInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        payment = record_payment(
            sale.id,
            serializer.validated_data["amount"],
            serializer.validated_data["method"],
            request.user,
        )
        return Response(SalePaymentSerializer(payment).data, status=status.HTTP_201_CREATED)
