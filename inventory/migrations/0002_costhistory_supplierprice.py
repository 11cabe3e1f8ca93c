import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("core", "0001_initial"),
        ("inventory", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="CostHistory",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("previous_cost", models.DecimalField(decimal_places=2, max_digits=12)),
                ("new_cost", models.DecimalField(decimal_places=2, max_digits=12)),
                ("cost_change", models.DecimalField(decimal_places=2, max_digits=12)),
                ("quantity_added", models.PositiveIntegerField(default=0)),
                (
                    "change_type",
                    models.CharField(
                        choices=[
                            ("stock_addition", "Stock Addition"),
                            ("price_adjustment", "Price Adjustment"),
                            ("correction", "Correction"),
                        ],
                        default="stock_addition",
                        max_length=32,
                    ),
                ),
                ("reason", models.CharField(max_length=255)),
                ("source_ref_type", models.CharField(blank=True, max_length=64, null=True)),
                ("source_ref_id", models.UUIDField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                ("branch", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, to="core.branch")),
                (
                    "item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="cost_history",
                        to="inventory.inventoryitem",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["item", "created_at"], name="costhistory_item_created_idx"),
                    models.Index(fields=["branch", "created_at"], name="costhistory_branch_created_idx"),
                    models.Index(fields=["source_ref_id", "source_ref_type"], name="costhistory_source_ref_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SupplierPrice",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "inventory_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="supplier_prices",
                        to="inventory.inventoryitem",
                    ),
                ),
                (
                    "supplier",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="prices",
                        to="inventory.supplier",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("supplier", "inventory_item"), name="uniq_supplier_price_per_item"),
                    models.CheckConstraint(condition=models.Q(("price__gte", 0)), name="supplier_price_non_negative"),
                ],
            },
        ),
    ]
