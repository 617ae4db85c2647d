from datetime import date

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APIClient

from core.models import AuditLog, Branch
from inventory.ledger import receive_stock
from inventory.models import Product
from requisitions.exceptions import RequisitionAlreadyDecidedError
from requisitions.models import StockRequisition
from requisitions.services import approve_requisition, create_requisition, reject_requisition
from transfers.workflow import dispatch_transfer


class RequisitionFixtureMixin:
    def setUp(self):
        self.user_model = get_user_model()
        self.head_office = Branch.objects.create(code="HEAD_OFFICE", name="Head Office")
        self.branch = Branch.objects.create(code="BR001", name="Kariakoo Branch")
        self.other = Branch.objects.create(code="BR002", name="Mikocheni Branch")
        self.amoxicillin = Product.objects.create(name="Amoxicillin 500mg", unit="box")
        self.paracetamol = Product.objects.create(name="Paracetamol 500mg", unit="strip")
        receive_stock(
            self.branch.id,
            self.amoxicillin.id,
            batch_number="AMX-1",
            expiry_date=date(2030, 1, 31),
            quantity=4,
        )
        receive_stock(
            self.head_office.id,
            self.amoxicillin.id,
            batch_number="AMX-HO",
            expiry_date=date(2030, 1, 31),
            quantity=100,
        )

        self.manager = self._user("req-manager", self.branch, "branch_manager")
        self.ho_manager = self._user("ho-manager", self.head_office, "branch_manager")

    def _user(self, username, branch, role):
        return self.user_model.objects.create_user(username=username, password="pass1234", branch=branch, role=role)

    def _items(self):
        return [
            {"product_id": self.amoxicillin.id, "quantity": 40, "notes": "Flu season"},
            {"product_id": self.paracetamol.id, "quantity": 25},
        ]


class RequisitionServiceTests(RequisitionFixtureMixin, TestCase):
    def test_create_opens_pending_requisition_with_stock_snapshot(self):
        requisition = create_requisition(self.branch, self._items(), priority="urgent", notes="Running low", actor=self.manager)

        day = timezone.localdate().strftime("%Y%m%d")
        self.assertEqual(requisition.reference, f"REQ-{day}-0001")
        self.assertEqual(requisition.status, StockRequisition.Status.PENDING)
        self.assertEqual(requisition.priority, StockRequisition.Priority.URGENT)
        self.assertEqual(requisition.requested_by, self.manager)
        items = list(requisition.items.all())
        self.assertEqual(
            [(item.product_id, item.quantity_requested, item.current_stock) for item in items],
            [(self.amoxicillin.id, 40, 4), (self.paracetamol.id, 25, 0)],
        )
        self.assertEqual(items[0].notes, "Flu season")

    def test_create_rejects_empty_duplicate_and_unknown_items(self):
        with self.assertRaises(ValidationError):
            create_requisition(self.branch, [])

        duplicate = [{"product_id": self.amoxicillin.id, "quantity": 1}, {"product_id": self.amoxicillin.id, "quantity": 2}]
        with self.assertRaises(ValidationError) as ctx:
            create_requisition(self.branch, duplicate)
        self.assertIn("product_id", ctx.exception.detail["items"][1])

        with self.assertRaises(ValidationError):
            create_requisition(self.branch, [{"product_id": "0b7b4c1e-8d8f-4b39-9d55-2f4f3a3e6a10", "quantity": 1}])
        with self.assertRaises(ValidationError):
            create_requisition(self.branch, [{"product_id": self.amoxicillin.id, "quantity": 0}])
        with self.assertRaises(ValidationError):
            create_requisition(self.branch, self._items(), priority="CRITICAL")

        self.assertFalse(StockRequisition.objects.exists())

    def test_approval_records_decider_and_is_final(self):
        requisition = create_requisition(self.branch, self._items())

        approved = approve_requisition(requisition.id, actor=self.ho_manager, note="Ship from head office")

        self.assertEqual(approved.status, StockRequisition.Status.APPROVED)
        self.assertEqual(approved.approved_by, self.ho_manager)
        self.assertIsNotNone(approved.approved_at)
        self.assertEqual(approved.decision_note, "Ship from head office")
        with self.assertRaises(RequisitionAlreadyDecidedError):
            reject_requisition(requisition.id, actor=self.ho_manager)
        requisition.refresh_from_db()
        self.assertEqual(requisition.status, StockRequisition.Status.APPROVED)

    def test_rejection_is_final(self):
        requisition = create_requisition(self.branch, self._items())

        reject_requisition(requisition.id, actor=self.ho_manager)

        with self.assertRaises(RequisitionAlreadyDecidedError):
            approve_requisition(requisition.id, actor=self.ho_manager)

    def test_unknown_requisition_raises_not_found(self):
        with self.assertRaises(NotFound):
            approve_requisition("0b7b4c1e-8d8f-4b39-9d55-2f4f3a3e6a10")
        with self.assertRaises(NotFound):
            reject_requisition("not-a-uuid")

    def test_transfer_fulfils_approved_requisition_of_its_target(self):
        requisition = create_requisition(self.branch, self._items())
        approve_requisition(requisition.id, actor=self.ho_manager)
        items = [{"product_id": self.amoxicillin.id, "quantity": 40, "batch_number": "AMX-HO", "expiry_date": "2030-01-31"}]

        transfer = dispatch_transfer(self.head_office, self.branch, items, requisition=requisition.id)

        self.assertEqual(transfer.requisition_id, requisition.id)
        self.assertEqual(list(requisition.transfers.all()), [transfer])

    def test_transfer_refuses_pending_or_foreign_requisition(self):
        pending = create_requisition(self.branch, self._items())
        items = [{"product_id": self.amoxicillin.id, "quantity": 5, "batch_number": "AMX-HO", "expiry_date": "2030-01-31"}]

        with self.assertRaises(ValidationError):
            dispatch_transfer(self.head_office, self.branch, items, requisition=pending)

        approve_requisition(pending.id, actor=self.ho_manager)
        with self.assertRaises(ValidationError) as ctx:
            dispatch_transfer(self.head_office, self.other, items, requisition=pending)

        self.assertIn("requisition", ctx.exception.detail)
        self.assertFalse(pending.transfers.exists())


class RequisitionApiTests(RequisitionFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.other_manager = self._user("other-manager", self.other, "branch_manager")
        self.cashier = self._user("req-cashier", self.branch, "cashier")

    def _payload(self):
        return {
            "priority": "URGENT",
            "notes": "Weekend cover",
            "items": [{"product_id": str(self.amoxicillin.id), "quantity": 40}],
        }

    def _create(self, user=None):
        self.client.force_authenticate(user=user or self.manager)
        return self.client.post("/api/v1/requisitions/", self._payload(), format="json", HTTP_X_REQUEST_ID="req-create")

    def test_branch_manager_raises_requisition_for_own_branch(self):
        response = self._create()

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["branch"], str(self.branch.id))
        self.assertEqual(payload["status"], "PENDING")
        self.assertEqual(payload["priority"], "URGENT")
        self.assertEqual(payload["total_items"], 1)
        self.assertEqual(payload["items"][0]["current_stock"], 4)
        self.assertEqual(payload["requested_by_username"], "req-manager")
        self.assertIsNone(payload["approved_by_username"])
        self.assertTrue(AuditLog.objects.filter(action="requisition.create", request_id="req-create").exists())

    def test_branch_user_cannot_raise_for_another_branch(self):
        self.client.force_authenticate(user=self.manager)
        payload = self._payload() | {"branch": str(self.other.id)}

        response = self.client.post("/api/v1/requisitions/", payload, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_cashier_cannot_raise_requisition(self):
        response = self._create(user=self.cashier)

        self.assertEqual(response.status_code, 403)

    def test_branches_see_only_their_own_requisitions(self):
        own_id = self._create().json()["id"]
        self._create(user=self.other_manager)

        self.client.force_authenticate(user=self.manager)
        listing = self.client.get("/api/v1/requisitions/")
        self.client.force_authenticate(user=self.ho_manager)
        head_office_listing = self.client.get("/api/v1/requisitions/", {"status": "pending"})

        self.assertEqual([item["id"] for item in listing.json()["results"]], [own_id])
        self.assertEqual(head_office_listing.json()["count"], 2)

    def test_head_office_approves_and_decision_is_audited(self):
        requisition_id = self._create().json()["id"]
        self.client.force_authenticate(user=self.ho_manager)

        response = self.client.post(f"/api/v1/requisitions/{requisition_id}/approve/", {"note": "OK"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "APPROVED")
        self.assertEqual(response.json()["approved_by_username"], "ho-manager")
        audit = AuditLog.objects.get(action="requisition.approve")
        self.assertEqual(audit.branch_id, self.branch.id)
        self.assertEqual(audit.before_snapshot["status"], "PENDING")
        self.assertEqual(audit.after_snapshot["status"], "APPROVED")

    def test_second_decision_returns_conflict(self):
        requisition_id = self._create().json()["id"]
        self.client.force_authenticate(user=self.ho_manager)
        self.client.post(f"/api/v1/requisitions/{requisition_id}/reject/", {}, format="json")

        response = self.client.post(f"/api/v1/requisitions/{requisition_id}/approve/", {}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_state")
        self.assertFalse(AuditLog.objects.filter(action="requisition.approve").exists())

    def test_branch_manager_cannot_decide_own_requisition(self):
        requisition_id = self._create().json()["id"]

        response = self.client.post(f"/api/v1/requisitions/{requisition_id}/approve/", {}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(StockRequisition.objects.get(id=requisition_id).status, StockRequisition.Status.PENDING)

    def test_unknown_requisition_returns_not_found(self):
        self.client.force_authenticate(user=self.ho_manager)

        response = self.client.post("/api/v1/requisitions/0b7b4c1e-8d8f-4b39-9d55-2f4f3a3e6a10/approve/", {}, format="json")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_dispatch_over_http_links_approved_requisition(self):
        requisition_id = self._create().json()["id"]
        self.client.force_authenticate(user=self.ho_manager)
        self.client.post(f"/api/v1/requisitions/{requisition_id}/approve/", {}, format="json")

        response = self.client.post(
            "/api/v1/transfers/",
            {
                "target_branch": str(self.branch.id),
                "requisition": requisition_id,
                "items": [
                    {
                        "product_id": str(self.amoxicillin.id),
                        "quantity": 40,
                        "batch_number": "AMX-HO",
                        "expiry_date": "2030-01-31",
                    }
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["requisition"], requisition_id)
        detail = self.client.get(f"/api/v1/requisitions/{requisition_id}/")
        self.assertEqual([item["reference"] for item in detail.json()["transfers"]], [response.json()["reference"]])
