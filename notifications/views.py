from django.db.models import Q
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.permissions import STAFF_ROLES, RoleCapabilityPermission, get_user_role
from core.models import User
from notifications.models import OutboxEvent
from notifications.serializers import NotificationPullSerializer, OutboxEventSerializer


def visible_events_for_user(user):
    qs = OutboxEvent.objects.all()
    role = get_user_role(user)
    if role not in STAFF_ROLES:
        qs = qs.filter(audience=OutboxEvent.Audience.ALL)

    if user.is_superuser or role == User.Role.SUPERADMIN:
        return qs
    if role == User.Role.CUSTOMER:
        # Customers only follow their own quotations.
        return qs.filter(Q(branch_id__isnull=True) | Q(payload__created_by_id=str(user.id)))
    if getattr(user, "branch_id", None):
        return qs.filter(Q(branch_id=user.branch_id) | Q(branch_id__isnull=True))
    return qs.filter(branch_id__isnull=True)


class NotificationPullView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "notifications.view"}

    def post(self, request):
        serializer = NotificationPullSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        cursor = serializer.validated_data["cursor"]
        limit = serializer.validated_data["limit"]

        events_qs = visible_events_for_user(request.user).filter(id__gt=cursor).order_by("id")
        events = list(events_qs[: limit + 1])
        has_more = len(events) > limit
        events = events[:limit]

        return Response(
            {
                "server_cursor": events[-1].id if events else cursor,
                "events": OutboxEventSerializer(events, many=True).data,
                "has_more": has_more,
            }
        )
