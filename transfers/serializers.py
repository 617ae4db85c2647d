from rest_framework import serializers

from transfers.models import StockTransfer, StockTransferItem, TransferLog


class StockTransferItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = StockTransferItem
        fields = ["id", "product", "product_name", "quantity", "batch_number", "expiry_date", "position"]
        read_only_fields = fields


class TransferLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = TransferLog
        fields = ["role", "action", "timestamp", "user"]
        read_only_fields = fields


class StockTransferSerializer(serializers.ModelSerializer):
    """Read shape of a transfer.

    Verification codes are included only when the view puts
    ``include_codes`` in the context for the caller.
    """

    source_branch_name = serializers.CharField(source="source_branch.name", read_only=True)
    target_branch_name = serializers.CharField(source="target_branch.name", read_only=True)
    items = StockTransferItemSerializer(many=True, read_only=True)
    workflow = serializers.SerializerMethodField()

    class Meta:
        model = StockTransfer
        fields = [
            "id",
            "reference",
            "source_branch",
            "source_branch_name",
            "target_branch",
            "target_branch_name",
            "date_sent",
            "status",
            "items",
            "keeper_code",
            "controller_code",
            "notes",
            "requisition",
            "workflow",
            "keeper_verified_at",
            "controller_verified_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_workflow(self, obj):
        return {
            "step": obj.workflow_step,
            "logs": TransferLogSerializer(obj.logs.all(), many=True).data,
        }

    def to_representation(self, instance):
        data = super().to_representation(instance)
        include_codes = self.context.get("include_codes")
        if callable(include_codes):
            include_codes = include_codes(instance)
        if not include_codes:
            data.pop("keeper_code", None)
            data.pop("controller_code", None)
        return data


class TransferItemInputSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)
    batch_number = serializers.CharField(max_length=64)
    expiry_date = serializers.DateField(required=False, allow_null=True)


class DispatchTransferSerializer(serializers.Serializer):
    source_branch = serializers.UUIDField(required=False)
    target_branch = serializers.UUIDField()
    items = TransferItemInputSerializer(many=True, allow_empty=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    requisition = serializers.UUIDField(required=False, allow_null=True)

    def validate(self, attrs):
        source_branch = attrs.get("source_branch")
        if source_branch and source_branch == attrs["target_branch"]:
            raise serializers.ValidationError({"target_branch": "Target branch must differ from the source branch."})
        return attrs


class VerificationCodeSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=32, trim_whitespace=True)
