from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="OutboxEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_type", models.CharField(max_length=64)),
                ("branch_id", models.UUIDField(blank=True, null=True)),
                (
                    "audience",
                    models.CharField(choices=[("admins", "Admins"), ("all", "All")], default="all", max_length=16),
                ),
                ("entity", models.CharField(blank=True, default="", max_length=64)),
                ("entity_id", models.UUIDField(blank=True, null=True)),
                ("payload", models.JSONField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch_id", "id"], name="outbox_branch_cursor_idx"),
                    models.Index(fields=["event_type", "id"], name="outbox_type_cursor_idx"),
                ],
            },
        ),
    ]
