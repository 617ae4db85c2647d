from rest_framework.routers import DefaultRouter

from core.views import AuditLogViewSet, BranchViewSet

router = DefaultRouter()
router.register(r"branches", BranchViewSet, basename="branch")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls
