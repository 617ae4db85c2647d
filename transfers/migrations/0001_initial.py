import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        ("inventory", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="StockTransfer",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("reference", models.CharField(max_length=64, unique=True)),
                ("date_sent", models.DateField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("IN_TRANSIT", "In transit"),
                            ("RECEIVED_KEEPER", "Received by keeper"),
                            ("COMPLETED", "Completed"),
                        ],
                        default="IN_TRANSIT",
                        max_length=16,
                    ),
                ),
                (
                    "workflow_step",
                    models.CharField(
                        choices=[
                            ("KEEPER_CHECK", "Keeper check"),
                            ("CONTROLLER_VERIFY", "Controller verification"),
                            ("DONE", "Done"),
                        ],
                        default="KEEPER_CHECK",
                        max_length=24,
                    ),
                ),
                ("keeper_code", models.CharField(max_length=6)),
                ("controller_code", models.CharField(max_length=6)),
                ("notes", models.TextField(blank=True, default="")),
                ("keeper_verified_at", models.DateTimeField(blank=True, null=True)),
                ("controller_verified_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "source_branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="outgoing_transfers",
                        to="core.branch",
                    ),
                ),
                (
                    "target_branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="incoming_transfers",
                        to="core.branch",
                    ),
                ),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="dispatched_transfers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "keeper_verified_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="keeper_verified_transfers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "controller_verified_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="controller_verified_transfers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["source_branch", "status", "created_at"], name="transfers_s_source__2f8a41_idx"
                    ),
                    models.Index(
                        fields=["target_branch", "status", "created_at"], name="transfers_s_target__6c1d93_idx"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("source_branch", models.F("target_branch")), _negated=True),
                        name="transfer_source_differs_from_target",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="StockTransferItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity", models.PositiveIntegerField()),
                ("batch_number", models.CharField(max_length=64)),
                ("expiry_date", models.DateField(blank=True, null=True)),
                ("position", models.PositiveIntegerField(default=0)),
                (
                    "product",
                    models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, to="inventory.product"),
                ),
                (
                    "transfer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="transfers.stocktransfer",
                    ),
                ),
            ],
            options={
                "ordering": ["position"],
                "indexes": [
                    models.Index(fields=["transfer", "position"], name="transfers_s_transfe_8e3b57_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("quantity__gt", 0)),
                        name="transfer_item_quantity_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="TransferLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("role", models.CharField(max_length=128)),
                ("action", models.CharField(max_length=255)),
                ("user", models.CharField(max_length=150)),
                ("timestamp", models.DateTimeField()),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "transfer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="logs",
                        to="transfers.stocktransfer",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
            },
        ),
    ]
