from io import StringIO

from django.contrib.auth import get_user_model
from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.management import call_command
from django.http import Http404
from django.test import TestCase
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from common.audit import create_audit_log
from common.exceptions import custom_exception_handler
from common.permissions import user_has_capability, user_sees_all_branches
from core.models import AuditLog, Branch
from inventory.ledger import sellable_quantity
from inventory.models import Product


class BranchAccessRoleTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="BR001", name="Branch A")
        self.branch_b = Branch.objects.create(code="BR002", name="Branch B")
        self.closed = Branch.objects.create(code="BR009", name="Closed Branch", is_active=False)

        self.admin = self.user_model.objects.create_user(
            username="branch-admin",
            password="pass1234",
            branch=self.branch_a,
            role="super_admin",
        )
        self.cashier = self.user_model.objects.create_user(
            username="branch-cashier",
            password="pass1234",
            branch=self.branch_a,
            role="cashier",
        )

    def test_admin_lists_every_branch_including_inactive(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        ids = {item["id"] for item in payload["results"]}
        self.assertEqual(ids, {str(self.branch_a.id), str(self.branch_b.id), str(self.closed.id)})

    def test_branch_staff_see_active_branches_only(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.branch_a.id), ids)
        self.assertIn(str(self.branch_b.id), ids)
        self.assertNotIn(str(self.closed.id), ids)

    def test_cashier_cannot_create_branch_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/branches/", {"code": "br003", "name": "Branch C"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_creates_branch_with_normalized_code(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/branches/",
            {"code": " br003 ", "name": "Branch C"},
            format="json",
            HTTP_X_REQUEST_ID="req-branch-create",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["code"], "BR003")
        self.assertTrue(
            AuditLog.objects.filter(action="branch.create", entity="branch", request_id="req-branch-create").exists()
        )

    def test_destroy_deactivates_branch(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/branches/{self.branch_b.id}/")

        self.assertEqual(response.status_code, 204)
        self.branch_b.refresh_from_db()
        self.assertFalse(self.branch_b.is_active)
        self.assertTrue(AuditLog.objects.filter(action="branch.deactivate", entity_id=self.branch_b.id).exists())


class HeadOfficeVisibilityTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.head_office = Branch.objects.create(code="HEAD_OFFICE", name="Head Office")
        self.branch = Branch.objects.create(code="BR001", name="Branch A")

    def test_head_office_staff_see_all_branches(self):
        manager = self.user_model.objects.create_user(
            username="ho-manager", password="pass1234", branch=self.head_office, role="branch_manager"
        )
        self.assertTrue(self.head_office.is_head_office)
        self.assertTrue(user_sees_all_branches(manager))

    def test_branch_staff_are_scoped(self):
        manager = self.user_model.objects.create_user(
            username="br-manager", password="pass1234", branch=self.branch, role="branch_manager"
        )
        self.assertFalse(user_sees_all_branches(manager))

    def test_capability_matrix_separates_keeper_and_controller(self):
        keeper = self.user_model.objects.create_user(
            username="keeper", password="pass1234", branch=self.branch, role="store_keeper"
        )
        controller = self.user_model.objects.create_user(
            username="controller", password="pass1234", branch=self.branch, role="inventory_controller"
        )

        self.assertTrue(user_has_capability(keeper, "transfer.verify.keeper"))
        self.assertFalse(user_has_capability(keeper, "transfer.verify.controller"))
        self.assertTrue(user_has_capability(controller, "transfer.verify.controller"))
        self.assertFalse(user_has_capability(controller, "transfer.verify.keeper"))


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="AL", name="Audit")
        self.other_branch = Branch.objects.create(code="AO", name="Audit Other")
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            branch=self.branch,
            role="super_admin",
        )
        self.auditor = self.user_model.objects.create_user(
            username="auditor",
            password="pass1234",
            branch=self.branch,
            role="auditor",
        )

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", branch=self.branch, actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_auditor_sees_only_own_branch_logs(self):
        own = AuditLog.objects.create(action="test.action", entity="test", branch=self.branch)
        other = AuditLog.objects.create(action="test.action", entity="test", branch=self.other_branch)
        self.client.force_authenticate(user=self.auditor)

        response = self.client.get("/api/v1/admin/audit-logs/", {"action": "test.action"})

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(own.id), ids)
        self.assertNotIn(str(other.id), ids)

    def test_export_returns_csv(self):
        AuditLog.objects.create(action="transfer.dispatch", entity="stock_transfer", branch=self.branch, actor=self.admin)
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        content = response.content.decode()
        self.assertIn("transfer.dispatch", content)
        self.assertIn("audit-admin", content)


class TokenAndEnvelopeTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.branch = Branch.objects.create(code="TK", name="Token Branch")
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="Token.User@Example.com",
            password="pass1234",
            branch=self.branch,
            role="store_keeper",
        )

    def test_token_carries_role_and_branch_claims(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token.user@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["role"], "store_keeper")
        self.assertEqual(token["branch_id"], str(self.branch.id))

    def test_unauthenticated_request_uses_error_envelope(self):
        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["status"], 401)
        self.assertIsNone(payload["errors"])

    def test_healthz_echoes_request_id(self):
        response = self.client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "request_id": "req-health"})
        self.assertEqual(response["X-Request-ID"], "req-health")


class SeedDemoDataTests(TestCase):
    def test_seed_is_idempotent(self):
        call_command("seed_demo_data", stdout=StringIO())
        call_command("seed_demo_data", stdout=StringIO())

        self.assertEqual(set(Branch.objects.values_list("code", flat=True)), {"HEAD_OFFICE", "BR001", "BR002"})
        self.assertTrue(get_user_model().objects.get(username="admin").is_superuser)
        branch = Branch.objects.get(code="BR001")
        for product in Product.objects.all():
            self.assertEqual(sellable_quantity(branch.id, product.id), 200)


class AuditSnapshotTests(TestCase):
    def test_secret_fields_are_stripped_at_any_depth(self):
        log = create_audit_log(
            action="transfer.dispatch",
            entity="stock_transfer",
            after={"reference": "TR-1", "keeper_code": "123456", "items": [{"controller_code": "654321", "quantity": 3}]},
        )

        log.refresh_from_db()
        self.assertEqual(log.after_snapshot, {"reference": "TR-1", "items": [{"quantity": 3}]})
        self.assertIsNone(log.before_snapshot)


class ExceptionHandlerTests(TestCase):
    def test_django_not_found_and_permission_errors_keep_stable_codes(self):
        not_found = custom_exception_handler(Http404("No StockTransfer matches the given query."), {})
        denied = custom_exception_handler(DjangoPermissionDenied(), {})

        self.assertEqual(not_found.status_code, 404)
        self.assertEqual(not_found.data["code"], "not_found")
        self.assertEqual(not_found.data["message"], "No StockTransfer matches the given query.")
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.data["code"], "permission_denied")

    def test_model_validation_error_becomes_validation_envelope(self):
        response = custom_exception_handler(DjangoValidationError({"code": ["Branch code is taken."]}), {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "validation_error")
        self.assertEqual(response.data["errors"], {"code": ["Branch code is taken."]})
