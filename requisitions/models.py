import uuid

from django.conf import settings
from django.db import models

from core.models import Branch
from inventory.models import Product


class StockRequisition(models.Model):
    """A branch's request for stock, decided once by head office."""

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        APPROVED = "APPROVED", "Approved"
        REJECTED = "REJECTED", "Rejected"

    class Priority(models.TextChoices):
        NORMAL = "NORMAL", "Normal"
        URGENT = "URGENT", "Urgent"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reference = models.CharField(max_length=64, unique=True)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="requisitions")
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="stock_requisitions",
        null=True,
        blank=True,
    )
    status = models.CharField(max_length=16, choices=Status, default=Status.PENDING)
    priority = models.CharField(max_length=8, choices=Priority, default=Priority.NORMAL)
    notes = models.TextField(blank=True, default="")
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="decided_requisitions",
        null=True,
        blank=True,
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    decision_note = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["branch", "status", "created_at"], name="requisitio_branch__4d7e20_idx"),
            models.Index(fields=["status", "priority"], name="requisitio_status_b91c3a_idx"),
        ]

    def __str__(self):
        return self.reference


class StockRequisitionItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    requisition = models.ForeignKey(StockRequisition, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT)
    quantity_requested = models.PositiveIntegerField()
    # Sellable quantity at the requesting branch when the request was made.
    current_stock = models.PositiveIntegerField(default=0)
    notes = models.CharField(max_length=255, blank=True, default="")
    position = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["requisition", "product"], name="uniq_requisition_item_product"),
            models.CheckConstraint(
                condition=models.Q(quantity_requested__gt=0),
                name="requisition_item_quantity_positive",
            ),
        ]
