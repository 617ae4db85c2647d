from django.db.models import Q
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle, UserRateThrottle

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, user_sees_all_branches
from common.utils import parse_uuid
from core.views import resolve_branch_for_user
from transfers import workflow
from transfers.models import StockTransfer
from transfers.serializers import DispatchTransferSerializer, StockTransferSerializer, VerificationCodeSerializer


class StockTransferViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = StockTransfer.objects.select_related("source_branch", "target_branch").prefetch_related(
        "items__product", "logs"
    )
    serializer_class = StockTransferSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "transfer.view",
        "retrieve": "transfer.view",
        "create": "transfer.dispatch",
        "verify_keeper": "transfer.verify.keeper",
        "verify_controller": "transfer.verify.controller",
    }
    throttle_scope = "transfer_verify"

    def get_queryset(self):
        user = self.request.user
        queryset = super().get_queryset()
        if not user_sees_all_branches(user):
            if not getattr(user, "branch_id", None):
                return queryset.none()
            queryset = queryset.filter(Q(source_branch_id=user.branch_id) | Q(target_branch_id=user.branch_id))

        params = self.request.query_params
        for param in ("source_branch", "target_branch"):
            if params.get(param):
                branch_id = parse_uuid(params[param])
                if branch_id is None:
                    raise ValidationError({param: "Must be a valid branch id."})
                queryset = queryset.filter(**{f"{param}_id": branch_id})
        if params.get("status"):
            queryset = queryset.filter(status=params["status"].upper())

        direction = params.get("direction")
        if direction:
            if direction not in ("incoming", "outgoing"):
                raise ValidationError({"direction": "Use 'incoming' or 'outgoing'."})
            branch = resolve_branch_for_user(user, params.get("branch"))
            if direction == "incoming":
                queryset = queryset.filter(target_branch=branch)
            else:
                queryset = queryset.filter(source_branch=branch)

        return queryset.order_by("-created_at")

    def get_serializer_context(self):
        context = super().get_serializer_context()
        user = self.request.user
        context["include_codes"] = lambda transfer: (
            user_sees_all_branches(user) or getattr(user, "branch_id", None) == transfer.source_branch_id
        )
        return context

    def _ensure_receiving_side(self, transfer):
        user = self.request.user
        if user_sees_all_branches(user):
            return
        if getattr(user, "branch_id", None) != transfer.target_branch_id:
            raise PermissionDenied("Only the receiving branch can verify this transfer.")

    def _snapshot(self, transfer):
        return StockTransferSerializer(transfer, context={"include_codes": False}).data

    def _audit(self, action_name, transfer, *, before_snapshot=None, branch=None):
        create_audit_log_from_request(
            self.request,
            action=action_name,
            entity="stock_transfer",
            entity_id=transfer.id,
            before_snapshot=before_snapshot,
            after_snapshot=self._snapshot(transfer),
            branch=branch,
        )

    def create(self, request, *args, **kwargs):
        serializer = DispatchTransferSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        source_branch = resolve_branch_for_user(request.user, data.get("source_branch"))

        transfer = workflow.dispatch_transfer(
            source_branch,
            data["target_branch"],
            [dict(item) for item in data["items"]],
            data.get("notes", ""),
            actor=request.user,
            requisition=data.get("requisition"),
        )
        self._audit("transfer.dispatch", transfer, branch=transfer.source_branch)
        return Response(self.get_serializer(transfer).data, status=status.HTTP_201_CREATED)

    def _verify(self, request, step, audit_action):
        transfer = self.get_object()
        self._ensure_receiving_side(transfer)
        serializer = VerificationCodeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = self._snapshot(transfer)
        transfer = step(transfer.id, serializer.validated_data["code"], actor=request.user)
        self._audit(audit_action, transfer, before_snapshot=before_snapshot, branch=transfer.target_branch)
        return Response(self.get_serializer(transfer).data)

    @action(
        detail=True,
        methods=["post"],
        url_path="verify-keeper",
        throttle_classes=[UserRateThrottle, ScopedRateThrottle],
    )
    def verify_keeper(self, request, pk=None):
        return self._verify(request, workflow.verify_keeper, "transfer.verify_keeper")

    @action(
        detail=True,
        methods=["post"],
        url_path="verify-controller",
        throttle_classes=[UserRateThrottle, ScopedRateThrottle],
    )
    def verify_controller(self, request, pk=None):
        return self._verify(request, workflow.verify_controller, "transfer.verify_controller")
