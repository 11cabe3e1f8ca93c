from rest_framework import serializers

from notifications.models import OutboxEvent


class NotificationPullSerializer(serializers.Serializer):
    cursor = serializers.IntegerField(min_value=0, default=0)
    limit = serializers.IntegerField(min_value=1, max_value=1000, default=500)


class OutboxEventSerializer(serializers.ModelSerializer):
    cursor = serializers.IntegerField(source="id", read_only=True)

    class Meta:
        model = OutboxEvent
        fields = ["cursor", "event_type", "branch_id", "audience", "entity", "entity_id", "payload", "created_at"]
        read_only_fields = fields
