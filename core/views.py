import csv
import logging

from django.db import DatabaseError, connections
from django.http import HttpResponse
from django.utils.dateparse import parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework_simplejwt.views import TokenObtainPairView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, user_has_capability
from core.models import AuditLog, Branch
from core.serializers import AuditLogSerializer, BranchSerializer, EmailOrUsernameTokenObtainPairSerializer

logger = logging.getLogger(__name__)


def scoped_queryset_for_user(queryset, user):
    if not user.is_authenticated:
        return queryset.none()

    if user.is_superuser:
        return queryset

    if getattr(user, "branch_id", None):
        return queryset.filter(branch_id=user.branch_id)

    return queryset.none()


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class BranchViewSet(viewsets.ModelViewSet):
    queryset = Branch.objects.all().order_by("code")
    serializer_class = BranchSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "create": "records.manage",
        "update": "records.manage",
        "partial_update": "records.manage",
        "destroy": "records.manage",
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        user = self.request.user

        if user.is_superuser or user_has_capability(user, "records.manage"):
            return queryset
        if getattr(user, "branch_id", None):
            return queryset.filter(id=user.branch_id)
        # Customers order from any branch.
        return queryset.filter(is_active=True)

    def perform_create(self, serializer):
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="branch.create",
            entity="branch",
            entity_id=instance.id,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="branch.update",
            entity="branch",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance,
        )

    def perform_destroy(self, instance):
        # Branches are referenced by the ledger; retire them instead.
        before_snapshot = self.get_serializer(instance).data
        instance.is_active = False
        instance.save(update_fields=["is_active", "updated_at"])
        create_audit_log_from_request(
            self.request,
            action="branch.deactivate",
            entity="branch",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance,
        )


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor", "branch")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "records.manage", "retrieve": "records.manage", "export": "records.manage"}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")
        user = self.request.user

        if not user.is_superuser and getattr(user, "branch_id", None):
            qs = qs.filter(branch_id=user.branch_id)
        elif not user.is_superuser:
            qs = qs.none()

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        actor_id = self.request.query_params.get("actor_id")
        action_name = self.request.query_params.get("action")
        entity = self.request.query_params.get("entity")
        entity_id = self.request.query_params.get("entity_id")

        if start_date:
            dt = parse_datetime(start_date)
            if dt:
                qs = qs.filter(created_at__gte=dt)
        if end_date:
            dt = parse_datetime(end_date)
            if dt:
                qs = qs.filter(created_at__lte=dt)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if action_name:
            qs = qs.filter(action=action_name)
        if entity:
            qs = qs.filter(entity=entity)
        if entity_id:
            qs = qs.filter(entity_id=entity_id)

        return qs

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        logs = self.get_queryset()
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'

        writer = csv.writer(response)
        writer.writerow(["id", "created_at", "actor", "branch", "action", "entity", "entity_id", "request_id"])
        for log in logs:
            writer.writerow(
                [
                    log.id,
                    log.created_at.isoformat(),
                    getattr(log.actor, "username", ""),
                    getattr(log.branch, "name", ""),
                    log.action,
                    log.entity,
                    log.entity_id,
                    log.request_id,
                ]
            )
        return response


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
