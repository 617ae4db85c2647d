import uuid

from django.conf import settings
from django.db import models

from core.models import Branch
from inventory.models import Product
from requisitions.models import StockRequisition


class StockTransfer(models.Model):
    class Status(models.TextChoices):
        IN_TRANSIT = "IN_TRANSIT", "In transit"
        RECEIVED_KEEPER = "RECEIVED_KEEPER", "Received by keeper"
        COMPLETED = "COMPLETED", "Completed"

    class Step(models.TextChoices):
        KEEPER_CHECK = "KEEPER_CHECK", "Keeper check"
        CONTROLLER_VERIFY = "CONTROLLER_VERIFY", "Controller verification"
        DONE = "DONE", "Done"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reference = models.CharField(max_length=64, unique=True)
    source_branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="outgoing_transfers")
    target_branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="incoming_transfers")
    date_sent = models.DateField()
    status = models.CharField(max_length=16, choices=Status, default=Status.IN_TRANSIT)
    workflow_step = models.CharField(max_length=24, choices=Step, default=Step.KEEPER_CHECK)
    keeper_code = models.CharField(max_length=6)
    controller_code = models.CharField(max_length=6)
    requisition = models.ForeignKey(
        StockRequisition,
        on_delete=models.SET_NULL,
        related_name="transfers",
        null=True,
        blank=True,
    )
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="dispatched_transfers",
        null=True,
        blank=True,
    )
    keeper_verified_at = models.DateTimeField(null=True, blank=True)
    keeper_verified_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="keeper_verified_transfers",
        null=True,
        blank=True,
    )
    controller_verified_at = models.DateTimeField(null=True, blank=True)
    controller_verified_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="controller_verified_transfers",
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["source_branch", "status", "created_at"], name="transfers_s_source__2f8a41_idx"),
            models.Index(fields=["target_branch", "status", "created_at"], name="transfers_s_target__6c1d93_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(source_branch=models.F("target_branch")),
                name="transfer_source_differs_from_target",
            ),
        ]

    def __str__(self):
        return self.reference


class StockTransferItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    transfer = models.ForeignKey(StockTransfer, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT)
    quantity = models.PositiveIntegerField()
    batch_number = models.CharField(max_length=64)
    expiry_date = models.DateField(null=True, blank=True)
    position = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["position"]
        indexes = [
            models.Index(fields=["transfer", "position"], name="transfers_s_transfe_8e3b57_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="transfer_item_quantity_positive"),
        ]


class TransferLog(models.Model):
    """Append-only history; one row per state transition."""

    id = models.BigAutoField(primary_key=True)
    transfer = models.ForeignKey(StockTransfer, on_delete=models.CASCADE, related_name="logs")
    role = models.CharField(max_length=128)
    action = models.CharField(max_length=255)
    user = models.CharField(max_length=150)
    actor = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    timestamp = models.DateTimeField()

    class Meta:
        ordering = ["id"]
