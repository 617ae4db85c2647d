from rest_framework import status, viewsets
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from common.utils import parse_uuid
from core.views import resolve_branch_for_user, scoped_queryset_for_user
from inventory.ledger import receive_stock, with_sellable_quantity
from inventory.models import Product, StockRow
from inventory.serializers import (
    InventoryBatchSerializer,
    ProductSerializer,
    SellableStockSerializer,
    StockReceiveSerializer,
    StockRowSerializer,
)


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Product.objects.filter(is_active=True)
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}

    def get_queryset(self):
        queryset = super().get_queryset()
        search = self.request.query_params.get("search")
        if search:
            queryset = queryset.filter(name__icontains=search) | queryset.filter(generic_name__icontains=search)
        category = self.request.query_params.get("category")
        if category:
            queryset = queryset.filter(category__iexact=category)
        return queryset


class AdminProductViewSet(viewsets.ModelViewSet):
    queryset = Product.objects.all()
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "products.manage",
        "retrieve": "products.manage",
        "create": "products.manage",
        "update": "products.manage",
        "partial_update": "products.manage",
        "destroy": "products.manage",
    }

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity="product",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            branch=getattr(self.request.user, "branch", None),
        )

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action="product.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action="product.update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        # Stock rows and transfer items reference products; retire them instead.
        before_snapshot = self.get_serializer(instance).data
        instance.is_active = False
        instance.save(update_fields=["is_active", "updated_at"])
        self._audit(
            action="product.deactivate",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )


class StockRowViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockRow.objects.select_related("branch", "product").prefetch_related("batches")
    serializer_class = StockRowSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}

    def get_queryset(self):
        queryset = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        branch_id = self.request.query_params.get("branch")
        if branch_id:
            queryset = queryset.filter(branch_id=resolve_branch_for_user(self.request.user, branch_id).id)
        product_id = self.request.query_params.get("product")
        if product_id:
            queryset = queryset.filter(product_id=parse_uuid(product_id))
        return with_sellable_quantity(queryset).order_by("product__name")


class SellableStockView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "inventory.view"}

    def get(self, request):
        branch = resolve_branch_for_user(request.user, request.query_params.get("branch"))
        rows = with_sellable_quantity(StockRow.objects.filter(branch=branch).select_related("product"))
        product_id = request.query_params.get("product")
        if product_id:
            rows = rows.filter(product_id=parse_uuid(product_id))
        return Response(
            {
                "branch": str(branch.id),
                "results": SellableStockSerializer(rows.order_by("product__name"), many=True).data,
            }
        )


class StockReceiveView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "stock.receive"}

    def post(self, request):
        serializer = StockReceiveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        branch = resolve_branch_for_user(request.user, data.get("branch"))

        batch = receive_stock(
            branch.id,
            data["product"].id,
            batch_number=data["batch_number"],
            expiry_date=data.get("expiry_date"),
            quantity=data["quantity"],
        )
        payload = InventoryBatchSerializer(batch).data
        create_audit_log_from_request(
            request,
            action="stock.receive",
            entity="inventory_batch",
            entity_id=None,
            after_snapshot={**payload, "branch": str(branch.id), "product": str(data["product"].id)},
            branch=branch,
        )
        return Response(payload, status=status.HTTP_201_CREATED)
