from rest_framework import serializers

from requisitions.models import StockRequisition, StockRequisitionItem


class StockRequisitionItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = StockRequisitionItem
        fields = ["id", "product", "product_name", "quantity_requested", "current_stock", "notes", "position"]
        read_only_fields = fields


class StockRequisitionSerializer(serializers.ModelSerializer):
    branch_name = serializers.CharField(source="branch.name", read_only=True)
    requested_by_username = serializers.CharField(source="requested_by.username", read_only=True, default=None)
    approved_by_username = serializers.CharField(source="approved_by.username", read_only=True, default=None)
    items = StockRequisitionItemSerializer(many=True, read_only=True)
    total_items = serializers.SerializerMethodField()
    transfers = serializers.SerializerMethodField()

    class Meta:
        model = StockRequisition
        fields = [
            "id",
            "reference",
            "branch",
            "branch_name",
            "status",
            "priority",
            "notes",
            "items",
            "total_items",
            "requested_by_username",
            "approved_by_username",
            "approved_at",
            "decision_note",
            "transfers",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_total_items(self, obj):
        return len(obj.items.all())

    def get_transfers(self, obj):
        return [
            {"id": str(transfer.id), "reference": transfer.reference, "status": transfer.status}
            for transfer in obj.transfers.all()
        ]


class RequisitionItemInputSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)
    notes = serializers.CharField(required=False, allow_blank=True, max_length=255, default="")


class CreateRequisitionSerializer(serializers.Serializer):
    branch = serializers.UUIDField(required=False)
    priority = serializers.ChoiceField(choices=StockRequisition.Priority.choices, default=StockRequisition.Priority.NORMAL)
    items = RequisitionItemInputSerializer(many=True, allow_empty=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class RequisitionDecisionSerializer(serializers.Serializer):
    note = serializers.CharField(required=False, allow_blank=True, max_length=500, default="")
