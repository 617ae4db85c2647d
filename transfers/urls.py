from rest_framework.routers import DefaultRouter

from transfers.views import StockTransferViewSet

router = DefaultRouter()
router.register(r"transfers", StockTransferViewSet, basename="transfer")

urlpatterns = router.urls
