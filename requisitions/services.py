"""Branch stock requisitions.

A branch asks for stock with a PENDING requisition, and head office approves
or rejects it exactly once. Approved requisitions are fulfilled by
dispatching transfers that point back at them.
"""

import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from common.utils import create_with_reference, parse_uuid
from inventory.ledger import sellable_stock
from inventory.models import Product
from requisitions.exceptions import RequisitionAlreadyDecidedError
from requisitions.models import StockRequisition, StockRequisitionItem

logger = logging.getLogger("requisitions.workflow")


def _actor_or_none(actor):
    return actor if getattr(actor, "is_authenticated", False) else None


def _coerce_priority(value):
    if isinstance(value, str):
        value = value.strip().upper()
    try:
        return StockRequisition.Priority(value or StockRequisition.Priority.NORMAL)
    except ValueError:
        raise ValidationError({"priority": f"Unknown priority '{value}'."})


def _normalize_items(items):
    if not items:
        raise ValidationError({"items": "At least one item is required."})

    normalized = []
    errors = []
    seen = set()
    for item in items:
        item_errors = {}
        product_id = parse_uuid(item.get("product_id"))
        if product_id is None:
            item_errors["product_id"] = "A valid product id is required."
        elif product_id in seen:
            item_errors["product_id"] = "This product is already in the requisition."
        else:
            seen.add(product_id)

        try:
            quantity = int(item.get("quantity"))
        except (TypeError, ValueError):
            quantity = None
        if quantity is None or quantity <= 0:
            item_errors["quantity"] = "Quantity must be greater than 0."

        errors.append(item_errors)
        normalized.append(
            {
                "product_id": product_id,
                "quantity": quantity,
                "notes": str(item.get("notes") or "").strip(),
            }
        )

    if any(errors):
        raise ValidationError({"items": errors})

    known = set(Product.objects.filter(id__in=seen, is_active=True).values_list("id", flat=True))
    unknown = sorted(str(product_id) for product_id in seen - known)
    if unknown:
        raise ValidationError({"items": f"Unknown products: {', '.join(unknown)}."})
    return normalized


def create_requisition(branch, items, *, priority=None, notes="", actor=None):
    """Open a PENDING requisition for ``branch``, snapshotting its sellable stock per item."""
    priority = _coerce_priority(priority)
    items = _normalize_items(items)
    on_hand = sellable_stock(branch.id)

    with transaction.atomic():
        requisition = create_with_reference(
            StockRequisition,
            prefix=settings.REQUISITION_REFERENCE_PREFIX,
            day=timezone.localdate(),
            branch=branch,
            requested_by=_actor_or_none(actor),
            priority=priority,
            notes=notes or "",
        )
        StockRequisitionItem.objects.bulk_create(
            [
                StockRequisitionItem(
                    requisition=requisition,
                    product_id=item["product_id"],
                    quantity_requested=item["quantity"],
                    current_stock=on_hand.get(item["product_id"], 0),
                    notes=item["notes"],
                    position=position,
                )
                for position, item in enumerate(items)
            ]
        )

    logger.info(
        "requisition_created",
        extra={
            "requisition_id": requisition.id,
            "reference": requisition.reference,
            "branch_id": branch.id,
            "count": len(items),
        },
    )
    return requisition


def _decide(requisition_id, new_status, *, actor=None, note=""):
    with transaction.atomic():
        parsed_id = parse_uuid(requisition_id)
        requisition = (
            StockRequisition.objects.select_for_update().filter(id=parsed_id).first() if parsed_id else None
        )
        if requisition is None:
            raise NotFound(f"Requisition {requisition_id} was not found.")
        if requisition.status != StockRequisition.Status.PENDING:
            logger.warning(
                "requisition_state_rejected",
                extra={
                    "requisition_id": requisition.id,
                    "reference": requisition.reference,
                    "status": requisition.status,
                },
            )
            raise RequisitionAlreadyDecidedError(f"Requisition {requisition.reference} is already {requisition.status}.")

        requisition.status = new_status
        requisition.approved_by = _actor_or_none(actor)
        requisition.approved_at = timezone.now()
        requisition.decision_note = note or ""
        requisition.save(update_fields=["status", "approved_by", "approved_at", "decision_note", "updated_at"])

    logger.info(
        "requisition_decided",
        extra={
            "requisition_id": requisition.id,
            "reference": requisition.reference,
            "branch_id": requisition.branch_id,
            "status": new_status,
        },
    )
    return requisition


def approve_requisition(requisition_id, *, actor=None, note=""):
    return _decide(requisition_id, StockRequisition.Status.APPROVED, actor=actor, note=note)


def reject_requisition(requisition_id, *, actor=None, note=""):
    return _decide(requisition_id, StockRequisition.Status.REJECTED, actor=actor, note=note)


def ensure_fulfillable(requisition, target_branch):
    """Return the requisition a transfer to ``target_branch`` may fulfil, or raise ValidationError."""
    if not isinstance(requisition, StockRequisition):
        parsed_id = parse_uuid(requisition)
        requisition = StockRequisition.objects.filter(id=parsed_id).first() if parsed_id else None
        if requisition is None:
            raise ValidationError({"requisition": "Requisition not found."})
    if requisition.status != StockRequisition.Status.APPROVED:
        raise ValidationError({"requisition": "Only approved requisitions can be fulfilled."})
    if requisition.branch_id != target_branch.id:
        raise ValidationError({"requisition": "The requisition was raised by another branch."})
    return requisition
