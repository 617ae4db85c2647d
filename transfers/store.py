from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone
from rest_framework.exceptions import NotFound

from common.utils import create_with_reference, parse_uuid
from transfers.models import StockTransfer, StockTransferItem, TransferLog


class TransferStore:
    """Persistence for transfers, their items and their history."""

    def __init__(self, queryset=None):
        self._queryset = queryset if queryset is not None else StockTransfer.objects.all()

    @transaction.atomic
    def create(
        self,
        *,
        source_branch,
        target_branch,
        items,
        keeper_code,
        controller_code,
        notes="",
        created_by=None,
        requisition=None,
    ):
        date_sent = timezone.localdate()
        transfer = create_with_reference(
            StockTransfer,
            prefix=settings.TRANSFER_REFERENCE_PREFIX,
            day=date_sent,
            source_branch=source_branch,
            target_branch=target_branch,
            date_sent=date_sent,
            status=StockTransfer.Status.IN_TRANSIT,
            workflow_step=StockTransfer.Step.KEEPER_CHECK,
            keeper_code=keeper_code,
            controller_code=controller_code,
            notes=notes or "",
            created_by=created_by,
            requisition=requisition,
        )
        StockTransferItem.objects.bulk_create(
            [
                StockTransferItem(
                    transfer=transfer,
                    product_id=item["product_id"],
                    quantity=item["quantity"],
                    batch_number=item["batch_number"],
                    expiry_date=item.get("expiry_date"),
                    position=position,
                )
                for position, item in enumerate(items)
            ]
        )
        return transfer

    def get(self, transfer_id, *, for_update=False):
        queryset = self._queryset
        if for_update:
            queryset = queryset.select_for_update()
        parsed_id = parse_uuid(transfer_id)
        transfer = queryset.filter(id=parsed_id).first() if parsed_id else None
        if transfer is None:
            raise NotFound(f"Transfer {transfer_id} was not found.")
        return transfer

    def update(self, transfer, **patch):
        for field, value in patch.items():
            setattr(transfer, field, value)
        transfer.save(update_fields=[*patch.keys(), "updated_at"])
        return transfer

    def list(self, *, source_branch_id=None, target_branch_id=None, status=None):
        queryset = self._queryset
        if source_branch_id:
            queryset = queryset.filter(source_branch_id=source_branch_id)
        if target_branch_id:
            queryset = queryset.filter(target_branch_id=target_branch_id)
        if status:
            queryset = queryset.filter(status=status)
        return queryset.order_by("-created_at")

    def for_branch(self, branch_id):
        return self._queryset.filter(Q(source_branch_id=branch_id) | Q(target_branch_id=branch_id))

    def append_log(self, transfer, *, role, action, actor=None):
        return TransferLog.objects.create(
            transfer=transfer,
            role=role,
            action=action,
            user=getattr(actor, "username", None) or "system",
            actor=actor if getattr(actor, "is_authenticated", False) else None,
            timestamp=timezone.now(),
        )
