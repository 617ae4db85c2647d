from rest_framework.routers import DefaultRouter

from requisitions.views import StockRequisitionViewSet

router = DefaultRouter()
router.register(r"requisitions", StockRequisitionViewSet, basename="requisition")

urlpatterns = router.urls
