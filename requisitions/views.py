from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, user_sees_all_branches
from common.utils import parse_uuid
from core.views import resolve_branch_for_user
from requisitions import services
from requisitions.models import StockRequisition
from requisitions.serializers import (
    CreateRequisitionSerializer,
    RequisitionDecisionSerializer,
    StockRequisitionSerializer,
)


class StockRequisitionViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = StockRequisition.objects.select_related("branch", "requested_by", "approved_by").prefetch_related(
        "items__product", "transfers"
    )
    serializer_class = StockRequisitionSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "requisition.view",
        "retrieve": "requisition.view",
        "create": "requisition.create",
        "approve": "requisition.decide",
        "reject": "requisition.decide",
    }

    def get_queryset(self):
        user = self.request.user
        queryset = super().get_queryset()
        if not user_sees_all_branches(user):
            if not getattr(user, "branch_id", None):
                return queryset.none()
            queryset = queryset.filter(branch_id=user.branch_id)

        params = self.request.query_params
        if params.get("branch"):
            branch_id = parse_uuid(params["branch"])
            if branch_id is None:
                raise ValidationError({"branch": "Must be a valid branch id."})
            queryset = queryset.filter(branch_id=branch_id)
        if params.get("status"):
            queryset = queryset.filter(status=params["status"].upper())
        if params.get("priority"):
            queryset = queryset.filter(priority=params["priority"].upper())
        return queryset.order_by("-created_at")

    def _audit(self, action_name, requisition, *, before_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action_name,
            entity="stock_requisition",
            entity_id=requisition.id,
            before_snapshot=before_snapshot,
            after_snapshot=StockRequisitionSerializer(requisition).data,
            branch=requisition.branch,
        )

    def create(self, request, *args, **kwargs):
        serializer = CreateRequisitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        branch = resolve_branch_for_user(request.user, data.get("branch"))

        requisition = services.create_requisition(
            branch,
            [dict(item) for item in data["items"]],
            priority=data["priority"],
            notes=data.get("notes", ""),
            actor=request.user,
        )
        self._audit("requisition.create", requisition)
        return Response(self.get_serializer(requisition).data, status=status.HTTP_201_CREATED)

    def _decide(self, request, decide, audit_action):
        requisition = self.get_object()
        if not user_sees_all_branches(request.user):
            raise PermissionDenied("Requisitions are decided by head office.")
        serializer = RequisitionDecisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = StockRequisitionSerializer(requisition).data
        requisition = decide(requisition.id, actor=request.user, note=serializer.validated_data["note"])
        self._audit(audit_action, requisition, before_snapshot=before_snapshot)
        return Response(self.get_serializer(requisition).data)

    @action(detail=True, methods=["post"])
    def approve(self, request, pk=None):
        return self._decide(request, services.approve_requisition, "requisition.approve")

    @action(detail=True, methods=["post"])
    def reject(self, request, pk=None):
        return self._decide(request, services.reject_requisition, "requisition.reject")
