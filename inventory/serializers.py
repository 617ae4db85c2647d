from rest_framework import serializers

from inventory.models import InventoryBatch, Product, StockRow


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = [
            "id",
            "name",
            "generic_name",
            "category",
            "unit",
            "min_stock_level",
            "requires_prescription",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Product name is required.")
        return value


class InventoryBatchSerializer(serializers.ModelSerializer):
    class Meta:
        model = InventoryBatch
        fields = [
            "id",
            "batch_number",
            "expiry_date",
            "quantity",
            "status",
            "source_ref_type",
            "source_ref_id",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class StockRowSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    branch_code = serializers.CharField(source="branch.code", read_only=True)
    sellable_quantity = serializers.IntegerField(read_only=True)
    batches = InventoryBatchSerializer(many=True, read_only=True)

    class Meta:
        model = StockRow
        fields = [
            "id",
            "branch",
            "branch_code",
            "product",
            "product_name",
            "quantity",
            "sellable_quantity",
            "batches",
            "updated_at",
        ]
        read_only_fields = fields


class SellableStockSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    sellable_quantity = serializers.IntegerField(read_only=True)

    class Meta:
        model = StockRow
        fields = ["product", "product_name", "sellable_quantity"]
        read_only_fields = fields


class StockReceiveSerializer(serializers.Serializer):
    branch = serializers.UUIDField(required=False)
    product = serializers.PrimaryKeyRelatedField(queryset=Product.objects.filter(is_active=True))
    batch_number = serializers.CharField(max_length=64)
    expiry_date = serializers.DateField(required=False, allow_null=True)
    quantity = serializers.IntegerField(min_value=1)

    def validate_batch_number(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Batch number is required.")
        return value
