import uuid
from datetime import date
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from core.models import AuditLog, Branch
from inventory.exceptions import BatchNotFoundError, InvalidBatchTransitionError
from inventory.ledger import (
    add_batch,
    expire_batches,
    get_stock_row,
    receive_stock,
    sellable_quantity,
    sellable_stock,
    set_batch_status,
)
from inventory.models import InventoryBatch, Product, StockRow

Status = InventoryBatch.Status


class LedgerTests(TestCase):
    def setUp(self):
        self.branch = Branch.objects.create(code="BR001", name="Branch One")
        self.product = Product.objects.create(name="Amoxicillin 500mg", unit="box")

    def _add(self, batch_number, quantity, status, expiry_date=date(2030, 1, 31)):
        return add_batch(
            self.branch.id,
            self.product.id,
            batch_number=batch_number,
            expiry_date=expiry_date,
            quantity=quantity,
            status=status,
        )

    def _add_from(self, batch_number, quantity, source_ref_id):
        return add_batch(
            self.branch.id,
            self.product.id,
            batch_number=batch_number,
            quantity=quantity,
            status=Status.ON_HOLD,
            source_ref_type="transfers.stock_transfer",
            source_ref_id=source_ref_id,
        )

    def test_add_batch_creates_row_and_keeps_aggregate_equal_to_batch_sum(self):
        self.assertIsNone(get_stock_row(self.branch.id, self.product.id))

        self._add("B1", 10, Status.ACTIVE)
        self._add("B2", 5, Status.ON_HOLD)
        self._add("B3", 3, Status.EXPIRED)

        row = get_stock_row(self.branch.id, self.product.id)
        self.assertEqual(row.quantity, 18)
        self.assertEqual(row.batches.count(), 3)
        self.assertEqual(StockRow.objects.filter(branch=self.branch, product=self.product).count(), 1)

    def test_on_hold_and_expired_batches_are_not_sellable(self):
        self._add("B1", 10, Status.ACTIVE)
        self._add("B2", 7, Status.ON_HOLD)
        self._add("B3", 4, Status.EXPIRED)

        self.assertEqual(sellable_quantity(self.branch.id, self.product.id), 10)
        self.assertEqual(sellable_stock(self.branch.id), {self.product.id: 10})

    def test_sellable_quantity_is_zero_without_stock(self):
        self.assertEqual(sellable_quantity(self.branch.id, self.product.id), 0)
        self.assertEqual(sellable_stock(self.branch.id), {})

    def test_set_batch_status_picks_most_recent_match(self):
        older = self._add("B1", 4, Status.ON_HOLD)
        newer = self._add("B1", 6, Status.ON_HOLD)

        updated = set_batch_status(self.branch.id, self.product.id, "B1", Status.ACTIVE)

        older.refresh_from_db()
        newer.refresh_from_db()
        self.assertEqual(updated.id, newer.id)
        self.assertEqual(newer.status, Status.ACTIVE)
        self.assertEqual(older.status, Status.ON_HOLD)
        self.assertEqual(sellable_quantity(self.branch.id, self.product.id), 6)

    def test_from_status_skips_newer_batches_in_other_states(self):
        held = self._add("B1", 4, Status.ON_HOLD)
        self._add("B1", 9, Status.ACTIVE)

        updated = set_batch_status(self.branch.id, self.product.id, "B1", Status.ACTIVE, from_status=Status.ON_HOLD)

        self.assertEqual(updated.id, held.id)
        self.assertEqual(sellable_quantity(self.branch.id, self.product.id), 13)

    def test_source_reference_limits_the_match_to_one_document(self):
        first_ref, second_ref = uuid.uuid4(), uuid.uuid4()
        first = self._add_from("B1", 4, first_ref)
        second = self._add_from("B1", 6, second_ref)

        updated = set_batch_status(
            self.branch.id,
            self.product.id,
            "B1",
            Status.ACTIVE,
            from_status=Status.ON_HOLD,
            source_ref_type="transfers.stock_transfer",
            source_ref_id=first_ref,
        )

        second.refresh_from_db()
        self.assertEqual(updated.id, first.id)
        self.assertEqual(second.status, Status.ON_HOLD)
        self.assertEqual(sellable_quantity(self.branch.id, self.product.id), 4)

        with self.assertRaises(BatchNotFoundError):
            set_batch_status(self.branch.id, self.product.id, "B1", Status.ACTIVE, source_ref_id=uuid.uuid4())

    def test_releasing_expired_held_stock_marks_it_expired(self):
        self._add("B1", 4, Status.ON_HOLD, expiry_date=date(2024, 5, 31))

        updated = set_batch_status(self.branch.id, self.product.id, "B1", Status.ACTIVE)

        self.assertEqual(updated.status, Status.EXPIRED)
        self.assertEqual(sellable_quantity(self.branch.id, self.product.id), 0)

    def test_batch_status_never_moves_backwards(self):
        self._add("B1", 4, Status.ACTIVE)

        with self.assertRaises(InvalidBatchTransitionError):
            set_batch_status(self.branch.id, self.product.id, "B1", Status.ON_HOLD)

        self.assertEqual(InventoryBatch.objects.get(batch_number="B1").status, Status.ACTIVE)

    def test_set_batch_status_without_stock_row_raises_not_found(self):
        with self.assertRaises(BatchNotFoundError):
            set_batch_status(self.branch.id, self.product.id, "B1", Status.ACTIVE)

    def test_set_batch_status_unknown_batch_raises_not_found(self):
        self._add("B1", 4, Status.ON_HOLD)

        with self.assertRaises(BatchNotFoundError):
            set_batch_status(self.branch.id, self.product.id, "B2", Status.ACTIVE)

    def test_add_batch_rejects_negative_quantity_and_unknown_status(self):
        with self.assertRaises(ValidationError):
            self._add("B1", -1, Status.ACTIVE)
        with self.assertRaises(ValidationError):
            self._add("B1", 1, "QUARANTINE")
        self.assertFalse(StockRow.objects.exists())

    def test_receive_stock_adds_active_batch(self):
        batch = receive_stock(self.branch.id, self.product.id, batch_number="SUP-1", quantity=12)

        self.assertEqual(batch.status, Status.ACTIVE)
        self.assertEqual(batch.source_ref_type, "inventory.receipt")
        self.assertEqual(get_stock_row(self.branch.id, self.product.id).quantity, 12)

    def test_receive_stock_rejects_zero_quantity(self):
        with self.assertRaises(ValidationError):
            receive_stock(self.branch.id, self.product.id, batch_number="SUP-1", quantity=0)

    def test_expire_batches_only_touches_active_batches_past_expiry(self):
        stale = self._add("OLD", 3, Status.ACTIVE, expiry_date=date(2024, 5, 31))
        held = self._add("HELD", 2, Status.ON_HOLD, expiry_date=date(2024, 5, 31))
        fresh = self._add("NEW", 8, Status.ACTIVE, expiry_date=date(2024, 6, 1))

        with self.assertLogs("inventory.ledger", level="INFO") as cm:
            count = expire_batches(as_of=date(2024, 6, 1))

        self.assertEqual(count, 1)
        stale.refresh_from_db()
        held.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(stale.status, Status.EXPIRED)
        self.assertEqual(held.status, Status.ON_HOLD)
        self.assertEqual(fresh.status, Status.ACTIVE)
        self.assertEqual(get_stock_row(self.branch.id, self.product.id).quantity, 13)
        self.assertTrue(any("batches_expired" in message for message in cm.output))

    def test_expire_batches_can_be_limited_to_one_branch(self):
        other = Branch.objects.create(code="BR002", name="Branch Two")
        self._add("OLD", 3, Status.ACTIVE, expiry_date=date(2024, 5, 31))
        add_batch(other.id, self.product.id, batch_number="OLD", expiry_date=date(2024, 5, 31), quantity=1, status=Status.ACTIVE)

        count = expire_batches(as_of=date(2024, 6, 1), branch_id=other.id)

        self.assertEqual(count, 1)
        self.assertEqual(sellable_quantity(self.branch.id, self.product.id), 3)
        self.assertEqual(sellable_quantity(other.id, self.product.id), 0)

    def test_expire_batches_command(self):
        self._add("OLD", 3, Status.ACTIVE, expiry_date=date(2024, 5, 31))
        out = StringIO()

        call_command("expire_batches", "--as-of", "2024-06-01", "--branch-id", str(self.branch.id), stdout=out)

        self.assertIn("Expired 1 batches.", out.getvalue())
        self.assertEqual(sellable_quantity(self.branch.id, self.product.id), 0)


class InventoryApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="BR001", name="Branch A")
        self.branch_b = Branch.objects.create(code="BR002", name="Branch B")
        self.product = Product.objects.create(name="Paracetamol 500mg", category="Analgesic")
        self.retired = Product.objects.create(name="Old Syrup", is_active=False)

        self.controller_a = self.user_model.objects.create_user(
            username="controller-a",
            password="pass1234",
            branch=self.branch_a,
            role="inventory_controller",
        )
        self.cashier_a = self.user_model.objects.create_user(
            username="cashier-a",
            password="pass1234",
            branch=self.branch_a,
            role="cashier",
        )

        add_batch(self.branch_a.id, self.product.id, batch_number="A1", quantity=10, status=Status.ACTIVE)
        add_batch(self.branch_a.id, self.product.id, batch_number="A2", quantity=4, status=Status.ON_HOLD)
        add_batch(self.branch_b.id, self.product.id, batch_number="B1", quantity=20, status=Status.ACTIVE)

    def test_products_list_hides_retired_products(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.get("/api/v1/products/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.product.id), ids)
        self.assertNotIn(str(self.retired.id), ids)

    def test_stock_rows_are_scoped_to_user_branch(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.get("/api/v1/inventory/stock/")

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual(len(results), 1)
        row = results[0]
        self.assertEqual(row["branch"], str(self.branch_a.id))
        self.assertEqual(row["quantity"], 14)
        self.assertEqual(row["sellable_quantity"], 10)
        self.assertEqual([batch["status"] for batch in row["batches"]], ["ACTIVE", "ON_HOLD"])

    def test_stock_rows_reject_other_branch_filter(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.get("/api/v1/inventory/stock/", {"branch": str(self.branch_b.id)})

        self.assertEqual(response.status_code, 403)

    def test_sellable_endpoint_excludes_on_hold_stock(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.get("/api/v1/inventory/sellable/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["branch"], str(self.branch_a.id))
        self.assertEqual(
            payload["results"],
            [{"product": str(self.product.id), "product_name": "Paracetamol 500mg", "sellable_quantity": 10}],
        )

    def test_controller_receives_stock_and_audit_is_written(self):
        self.client.force_authenticate(user=self.controller_a)

        response = self.client.post(
            "/api/v1/inventory/receive/",
            {"product": str(self.product.id), "batch_number": "SUP-9", "expiry_date": "2030-06-30", "quantity": 6},
            format="json",
            HTTP_X_REQUEST_ID="req-receive",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["status"], "ACTIVE")
        self.assertEqual(sellable_quantity(self.branch_a.id, self.product.id), 16)
        self.assertTrue(AuditLog.objects.filter(action="stock.receive", request_id="req-receive").exists())

    def test_cashier_cannot_receive_stock(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.post(
            "/api/v1/inventory/receive/",
            {"product": str(self.product.id), "batch_number": "SUP-9", "quantity": 6},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(sellable_quantity(self.branch_a.id, self.product.id), 10)

    def test_receive_rejects_non_positive_quantity(self):
        self.client.force_authenticate(user=self.controller_a)

        response = self.client.post(
            "/api/v1/inventory/receive/",
            {"product": str(self.product.id), "batch_number": "SUP-9", "quantity": 0},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("quantity", response.json()["errors"])

    def test_admin_product_lifecycle_is_audited(self):
        self.client.force_authenticate(user=self.controller_a)

        created = self.client.post(
            "/api/v1/admin/products/",
            {"name": "Ibuprofen 200mg", "category": "Analgesic", "requires_prescription": False},
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        product_id = created.json()["id"]

        deleted = self.client.delete(f"/api/v1/admin/products/{product_id}/")

        self.assertEqual(deleted.status_code, 204)
        self.assertFalse(Product.objects.get(id=product_id).is_active)
        self.assertEqual(
            set(AuditLog.objects.filter(entity="product").values_list("action", flat=True)),
            {"product.create", "product.deactivate"},
        )

    def test_cashier_cannot_manage_products(self):
        self.client.force_authenticate(user=self.cashier_a)

        response = self.client.post("/api/v1/admin/products/", {"name": "Nope"}, format="json")

        self.assertEqual(response.status_code, 403)
