from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import (
    AdminProductViewSet,
    ProductViewSet,
    SellableStockView,
    StockReceiveView,
    StockRowViewSet,
)

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")
router.register(r"admin/products", AdminProductViewSet, basename="admin-product")
router.register(r"inventory/stock", StockRowViewSet, basename="stock-row")

urlpatterns = router.urls + [
    path("inventory/sellable/", SellableStockView.as_view(), name="sellable-stock"),
    path("inventory/receive/", StockReceiveView.as_view(), name="stock-receive"),
]
