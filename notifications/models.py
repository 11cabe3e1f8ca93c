from django.db import models


class OutboxEvent(models.Model):
    class Audience(models.TextChoices):
        ADMINS = "admins", "Admins"
        ALL = "all", "All"

    id = models.BigAutoField(primary_key=True)
    event_type = models.CharField(max_length=64)
    branch_id = models.UUIDField(null=True, blank=True)
    audience = models.CharField(max_length=16, choices=Audience.choices, default=Audience.ALL)
    entity = models.CharField(max_length=64, blank=True, default="")
    entity_id = models.UUIDField(null=True, blank=True)
    payload = models.JSONField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch_id", "id"], name="outbox_branch_cursor_idx"),
            models.Index(fields=["event_type", "id"], name="outbox_type_cursor_idx"),
        ]
