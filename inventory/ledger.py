"""Branch stock ledger.

Stock is held per branch and product in a ``StockRow`` whose batches carry
their own status. Only ``ACTIVE`` batches count towards what a branch may
sell; ``ON_HOLD`` stock has been received but not cleared, and ``EXPIRED``
stock is kept for the record. The aggregate ``StockRow.quantity`` always
equals the sum of all batch quantities regardless of status.
"""

import logging

from django.db import transaction
from django.db.models import Q, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from inventory.exceptions import BatchNotFoundError, InvalidBatchTransitionError
from inventory.models import InventoryBatch, StockRow

logger = logging.getLogger("inventory.ledger")

Status = InventoryBatch.Status

ALLOWED_TRANSITIONS = {
    (Status.ON_HOLD.value, Status.ACTIVE.value),
    (Status.ON_HOLD.value, Status.EXPIRED.value),
    (Status.ACTIVE.value, Status.EXPIRED.value),
}


def _coerce_status(value):
    try:
        return Status(value)
    except ValueError:
        raise ValidationError({"status": f"Unknown batch status '{value}'."})


def _coerce_quantity(value, *, allow_zero=True):
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise ValidationError({"quantity": "Quantity must be a whole number."})
    if quantity < 0:
        raise ValidationError({"quantity": "Quantity cannot be negative."})
    if quantity == 0 and not allow_zero:
        raise ValidationError({"quantity": "Quantity must be greater than 0."})
    return quantity


def _refresh_quantity(stock_row):
    stock_row.quantity = stock_row.batches.aggregate(total=Coalesce(Sum("quantity"), 0))["total"]
    stock_row.save(update_fields=["quantity", "updated_at"])
    return stock_row


def get_stock_row(branch_id, product_id, *, for_update=False):
    queryset = StockRow.objects.all()
    if for_update:
        queryset = queryset.select_for_update()
    return queryset.filter(branch_id=branch_id, product_id=product_id).first()


def add_batch(
    branch_id,
    product_id,
    *,
    batch_number,
    expiry_date=None,
    quantity,
    status,
    source_ref_type=None,
    source_ref_id=None,
):
    """Append a batch to the branch's stock row for the product, creating the row if needed."""
    status = _coerce_status(status)
    quantity = _coerce_quantity(quantity)
    if not batch_number:
        raise ValidationError({"batch_number": "Batch number is required."})

    with transaction.atomic():
        stock_row, _ = StockRow.objects.select_for_update().get_or_create(
            branch_id=branch_id,
            product_id=product_id,
            defaults={"quantity": 0},
        )
        batch = InventoryBatch.objects.create(
            stock_row=stock_row,
            batch_number=batch_number,
            expiry_date=expiry_date,
            quantity=quantity,
            status=status,
            source_ref_type=source_ref_type,
            source_ref_id=source_ref_id,
        )
        _refresh_quantity(stock_row)

    logger.info(
        "batch_added",
        extra={
            "branch_id": branch_id,
            "product_id": product_id,
            "batch_number": batch_number,
            "status": status.value,
            "count": quantity,
        },
    )
    return batch


def set_batch_status(
    branch_id,
    product_id,
    batch_number,
    new_status,
    *,
    from_status=None,
    source_ref_type=None,
    source_ref_id=None,
):
    """Move the most recently added batch with ``batch_number`` to ``new_status``.

    ``from_status`` narrows the match to batches currently in that status, and
    ``source_ref_type`` / ``source_ref_id`` to batches booked by one document,
    so releasing one transfer's stock never touches another delivery that
    happens to share the batch number.

    A batch released to ACTIVE after its expiry date is booked as EXPIRED.
    """
    new_status = _coerce_status(new_status)
    if from_status is not None:
        from_status = _coerce_status(from_status)

    with transaction.atomic():
        stock_row = get_stock_row(branch_id, product_id, for_update=True)
        if stock_row is None:
            raise BatchNotFoundError(f"No stock is recorded for product {product_id} at this branch.")

        batches = stock_row.batches.select_for_update().filter(batch_number=batch_number)
        if from_status is not None:
            batches = batches.filter(status=from_status)
        if source_ref_type is not None:
            batches = batches.filter(source_ref_type=source_ref_type)
        if source_ref_id is not None:
            batches = batches.filter(source_ref_id=source_ref_id)
        batch = batches.order_by("-id").first()
        if batch is None:
            raise BatchNotFoundError(f"Batch '{batch_number}' was not found.")

        previous_status = batch.status
        if (previous_status, new_status.value) not in ALLOWED_TRANSITIONS:
            raise InvalidBatchTransitionError(
                f"Batch '{batch_number}' cannot move from {previous_status} to {new_status.value}."
            )

        if new_status == Status.ACTIVE and batch.expiry_date and batch.expiry_date < timezone.localdate():
            new_status = Status.EXPIRED
        batch.status = new_status
        batch.save(update_fields=["status", "updated_at"])

    logger.info(
        "batch_status_changed",
        extra={
            "branch_id": branch_id,
            "product_id": product_id,
            "batch_number": batch_number,
            "status": new_status.value,
        },
    )
    return batch


def sellable_quantity(branch_id, product_id):
    return InventoryBatch.objects.filter(
        stock_row__branch_id=branch_id,
        stock_row__product_id=product_id,
        status=Status.ACTIVE,
    ).aggregate(total=Coalesce(Sum("quantity"), 0))["total"]


def sellable_stock(branch_id):
    """Map product id to the ACTIVE quantity held at the branch."""
    rows = (
        InventoryBatch.objects.filter(stock_row__branch_id=branch_id, status=Status.ACTIVE)
        .values("stock_row__product_id")
        .annotate(total=Sum("quantity"))
    )
    return {row["stock_row__product_id"]: row["total"] or 0 for row in rows}


def with_sellable_quantity(queryset):
    return queryset.annotate(
        sellable_quantity=Coalesce(Sum("batches__quantity", filter=Q(batches__status=Status.ACTIVE)), 0)
    )


def receive_stock(
    branch_id,
    product_id,
    *,
    batch_number,
    expiry_date=None,
    quantity,
    source_ref_type="inventory.receipt",
    source_ref_id=None,
):
    """Book a delivery straight into sellable stock."""
    quantity = _coerce_quantity(quantity, allow_zero=False)
    return add_batch(
        branch_id,
        product_id,
        batch_number=batch_number,
        expiry_date=expiry_date,
        quantity=quantity,
        status=Status.ACTIVE,
        source_ref_type=source_ref_type,
        source_ref_id=source_ref_id,
    )


def expire_batches(as_of=None, branch_id=None):
    """Mark every ACTIVE batch whose expiry date is before ``as_of`` as EXPIRED."""
    as_of = as_of or timezone.localdate()

    with transaction.atomic():
        batches = InventoryBatch.objects.select_for_update().filter(status=Status.ACTIVE, expiry_date__lt=as_of)
        if branch_id is not None:
            batches = batches.filter(stock_row__branch_id=branch_id)
        batch_ids = list(batches.values_list("id", flat=True))
        count = InventoryBatch.objects.filter(id__in=batch_ids).update(status=Status.EXPIRED, updated_at=timezone.now())

    logger.info("batches_expired", extra={"branch_id": branch_id, "count": count})
    return count
