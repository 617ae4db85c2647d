import uuid

from django.db import models

from core.models import Branch


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    generic_name = models.CharField(max_length=255, blank=True, default="")
    category = models.CharField(max_length=128, blank=True, default="")
    unit = models.CharField(max_length=32, blank=True, default="")
    min_stock_level = models.PositiveIntegerField(default=0)
    requires_prescription = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["is_active", "name"], name="inventory_p_is_acti_3e1b7a_idx"),
        ]

    def __str__(self):
        return self.name


class StockRow(models.Model):
    """One row per branch and product; ``quantity`` is the sum of its batch quantities."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="stock_rows")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="stock_rows")
    quantity = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["branch", "product"], name="uniq_stock_row_branch_product"),
        ]
        indexes = [
            models.Index(fields=["branch", "updated_at"], name="inventory_s_branch__9a4c2e_idx"),
        ]


class InventoryBatch(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "ACTIVE", "Active"
        ON_HOLD = "ON_HOLD", "On hold"
        EXPIRED = "EXPIRED", "Expired"

    # Integer ids keep insertion order, which batch-number lookups rely on.
    id = models.BigAutoField(primary_key=True)
    stock_row = models.ForeignKey(StockRow, on_delete=models.CASCADE, related_name="batches")
    batch_number = models.CharField(max_length=64)
    expiry_date = models.DateField(null=True, blank=True)
    quantity = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=16, choices=Status, default=Status.ACTIVE)
    source_ref_type = models.CharField(max_length=64, null=True, blank=True)
    source_ref_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["stock_row", "batch_number"], name="inventory_i_stock_r_5d8f31_idx"),
            models.Index(fields=["status", "expiry_date"], name="inventory_i_status_7b2e90_idx"),
            models.Index(fields=["source_ref_id", "source_ref_type"], name="inventory_i_source__c61a4f_idx"),
        ]

    def __str__(self):
        return f"{self.batch_number} ({self.status})"
