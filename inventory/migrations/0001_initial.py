import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("generic_name", models.CharField(blank=True, default="", max_length=255)),
                ("category", models.CharField(blank=True, default="", max_length=128)),
                ("unit", models.CharField(blank=True, default="", max_length=32)),
                ("min_stock_level", models.PositiveIntegerField(default=0)),
                ("requires_prescription", models.BooleanField(default=False)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["is_active", "name"], name="inventory_p_is_acti_3e1b7a_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="StockRow",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="stock_rows",
                        to="core.branch",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="stock_rows",
                        to="inventory.product",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch", "updated_at"], name="inventory_s_branch__9a4c2e_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("branch", "product"), name="uniq_stock_row_branch_product"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InventoryBatch",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("batch_number", models.CharField(max_length=64)),
                ("expiry_date", models.DateField(blank=True, null=True)),
                ("quantity", models.PositiveIntegerField(default=0)),
                (
                    "status",
                    models.CharField(
                        choices=[("ACTIVE", "Active"), ("ON_HOLD", "On hold"), ("EXPIRED", "Expired")],
                        default="ACTIVE",
                        max_length=16,
                    ),
                ),
                ("source_ref_type", models.CharField(blank=True, max_length=64, null=True)),
                ("source_ref_id", models.UUIDField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "stock_row",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="batches",
                        to="inventory.stockrow",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
                "indexes": [
                    models.Index(fields=["stock_row", "batch_number"], name="inventory_i_stock_r_5d8f31_idx"),
                    models.Index(fields=["status", "expiry_date"], name="inventory_i_status_7b2e90_idx"),
                    models.Index(fields=["source_ref_id", "source_ref_type"], name="inventory_i_source__c61a4f_idx"),
                ],
            },
        ),
    ]
