"""Inter-branch transfer workflow.

A transfer moves through three states, each entered by exactly one call:

    dispatch_transfer   -> IN_TRANSIT       (step KEEPER_CHECK)
    verify_keeper       -> RECEIVED_KEEPER  (step CONTROLLER_VERIFY)
    verify_controller   -> COMPLETED        (step DONE)

Dispatch leaves both ledgers untouched. The keeper step books the items into
the target branch as ON_HOLD batches, and only the controller step releases
them as ACTIVE, sellable stock; a batch already past its expiry date is
released as EXPIRED instead. Every step runs in one transaction holding a
row lock on the transfer, so a failed or losing call changes nothing.
"""

import logging
from collections import defaultdict

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework.exceptions import ValidationError

from common.utils import parse_uuid
from core.models import Branch
from inventory.ledger import add_batch, sellable_stock, set_batch_status
from inventory.models import InventoryBatch, Product, StockRow
from requisitions.services import ensure_fulfillable
from transfers.codes import codes_match, generate_verification_codes
from transfers.exceptions import InvalidCodeError, InvalidStateError
from transfers.models import StockTransfer
from transfers.store import TransferStore

logger = logging.getLogger("transfers.workflow")

DISPATCH_ACTION = "Dispatched"
KEEPER_ROLE = "Store Keeper"
KEEPER_ACTION = "Confirmed Receipt"
CONTROLLER_ROLE = "Inventory Controller"
CONTROLLER_ACTION = "Verified & Made Available for Sale"

SOURCE_REF_TYPE = "transfers.stock_transfer"


def _resolve_branch(value, field):
    if isinstance(value, Branch):
        return value
    branch_id = parse_uuid(value)
    branch = Branch.objects.filter(id=branch_id, is_active=True).first() if branch_id else None
    if branch is None:
        raise ValidationError({field: "Branch not found."})
    return branch


def _actor_or_none(actor):
    return actor if getattr(actor, "is_authenticated", False) else None


def _normalize_items(items):
    if not items:
        raise ValidationError({"items": "At least one item is required."})

    normalized = []
    errors = []
    for item in items:
        item_errors = {}
        product_id = parse_uuid(item.get("product_id"))
        if product_id is None:
            item_errors["product_id"] = "A valid product id is required."

        try:
            quantity = int(item.get("quantity"))
        except (TypeError, ValueError):
            quantity = None
        if quantity is None or quantity <= 0:
            item_errors["quantity"] = "Quantity must be greater than 0."

        batch_number = str(item.get("batch_number") or "").strip()
        if not batch_number:
            item_errors["batch_number"] = "Batch number is required."

        expiry_date = item.get("expiry_date") or None
        if isinstance(expiry_date, str):
            try:
                expiry_date = parse_date(expiry_date)
            except ValueError:
                expiry_date = None
            if expiry_date is None:
                item_errors["expiry_date"] = "Expiry date must be in YYYY-MM-DD format."

        errors.append(item_errors)
        normalized.append(
            {
                "product_id": product_id,
                "quantity": quantity,
                "batch_number": batch_number,
                "expiry_date": expiry_date,
            }
        )

    if any(errors):
        raise ValidationError({"items": errors})
    return normalized


def _check_source_stock(source_branch, items):
    product_ids = {item["product_id"] for item in items}
    known = set(Product.objects.filter(id__in=product_ids, is_active=True).values_list("id", flat=True))
    unknown = sorted(str(product_id) for product_id in product_ids - known)
    if unknown:
        raise ValidationError({"items": f"Unknown products: {', '.join(unknown)}."})

    # Lock the source rows so two dispatches cannot both claim the same stock.
    list(StockRow.objects.select_for_update().filter(branch=source_branch, product_id__in=product_ids))

    requested = defaultdict(int)
    for item in items:
        requested[item["product_id"]] += item["quantity"]

    available = sellable_stock(source_branch.id)
    shortages = [
        {"product_id": str(product_id), "requested": quantity, "available": available.get(product_id, 0)}
        for product_id, quantity in requested.items()
        if quantity > available.get(product_id, 0)
    ]
    if shortages:
        raise ValidationError({"items": "Insufficient sellable stock at the source branch.", "shortages": shortages})


def dispatch_transfer(source_branch, target_branch, items, notes="", *, actor=None, store=None, requisition=None):
    """Create an IN_TRANSIT transfer with fresh keeper and controller codes.

    ``requisition`` links the shipment to the approved request it fulfils; it
    must have been raised by the target branch.
    """
    store = store or TransferStore()
    source_branch = _resolve_branch(source_branch, "source_branch")
    target_branch = _resolve_branch(target_branch, "target_branch")
    if source_branch.id == target_branch.id:
        raise ValidationError({"target_branch": "Target branch must differ from the source branch."})

    if requisition is not None:
        requisition = ensure_fulfillable(requisition, target_branch)
    items = _normalize_items(items)

    with transaction.atomic():
        _check_source_stock(source_branch, items)
        keeper_code, controller_code = generate_verification_codes()
        transfer = store.create(
            source_branch=source_branch,
            target_branch=target_branch,
            items=items,
            keeper_code=keeper_code,
            controller_code=controller_code,
            notes=notes,
            created_by=_actor_or_none(actor),
            requisition=requisition,
        )
        store.append_log(transfer, role=source_branch.name, action=DISPATCH_ACTION, actor=actor)

    logger.info(
        "transfer_dispatched",
        extra={
            "transfer_id": transfer.id,
            "reference": transfer.reference,
            "branch_id": source_branch.id,
            "count": len(items),
        },
    )
    return transfer


def _reject_state(transfer, expected):
    logger.warning(
        "transfer_state_rejected",
        extra={"transfer_id": transfer.id, "reference": transfer.reference, "status": transfer.status},
    )
    raise InvalidStateError(f"Transfer {transfer.reference} is {transfer.status}; expected {expected}.")


def _reject_code(transfer, message):
    logger.warning(
        "transfer_code_rejected",
        extra={"transfer_id": transfer.id, "reference": transfer.reference, "status": transfer.status},
    )
    raise InvalidCodeError(message)


def verify_keeper(transfer_id, code, *, actor=None, store=None):
    """Confirm physical receipt; the items land at the target branch as ON_HOLD batches."""
    store = store or TransferStore()

    with transaction.atomic():
        transfer = store.get(transfer_id, for_update=True)
        if transfer.status != StockTransfer.Status.IN_TRANSIT:
            _reject_state(transfer, StockTransfer.Status.IN_TRANSIT)
        if not codes_match(transfer.keeper_code, code):
            _reject_code(transfer, "Invalid Keeper Code")

        for item in transfer.items.all():
            add_batch(
                transfer.target_branch_id,
                item.product_id,
                batch_number=item.batch_number,
                expiry_date=item.expiry_date,
                quantity=item.quantity,
                status=InventoryBatch.Status.ON_HOLD,
                source_ref_type=SOURCE_REF_TYPE,
                source_ref_id=transfer.id,
            )

        store.update(
            transfer,
            status=StockTransfer.Status.RECEIVED_KEEPER,
            workflow_step=StockTransfer.Step.CONTROLLER_VERIFY,
            keeper_verified_at=timezone.now(),
            keeper_verified_by=_actor_or_none(actor),
        )
        store.append_log(transfer, role=KEEPER_ROLE, action=KEEPER_ACTION, actor=actor)

    logger.info(
        "transfer_keeper_verified",
        extra={"transfer_id": transfer.id, "reference": transfer.reference, "branch_id": transfer.target_branch_id},
    )
    return transfer


def verify_controller(transfer_id, code, *, actor=None, store=None):
    """Release the quarantined batches for sale and complete the transfer."""
    store = store or TransferStore()

    with transaction.atomic():
        transfer = store.get(transfer_id, for_update=True)
        if transfer.status != StockTransfer.Status.RECEIVED_KEEPER:
            _reject_state(transfer, StockTransfer.Status.RECEIVED_KEEPER)
        if not codes_match(transfer.controller_code, code):
            _reject_code(transfer, "Invalid Controller Code")

        for item in transfer.items.all():
            set_batch_status(
                transfer.target_branch_id,
                item.product_id,
                item.batch_number,
                InventoryBatch.Status.ACTIVE,
                from_status=InventoryBatch.Status.ON_HOLD,
                source_ref_type=SOURCE_REF_TYPE,
                source_ref_id=transfer.id,
            )

        store.update(
            transfer,
            status=StockTransfer.Status.COMPLETED,
            workflow_step=StockTransfer.Step.DONE,
            controller_verified_at=timezone.now(),
            controller_verified_by=_actor_or_none(actor),
        )
        store.append_log(transfer, role=CONTROLLER_ROLE, action=CONTROLLER_ACTION, actor=actor)

    logger.info(
        "transfer_controller_verified",
        extra={"transfer_id": transfer.id, "reference": transfer.reference, "branch_id": transfer.target_branch_id},
    )
    return transfer
