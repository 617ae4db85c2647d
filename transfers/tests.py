import re
import threading
from datetime import date
from unittest import skipUnless
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import connection, connections
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APIClient

from common.logging import JsonFormatter
from core.models import AuditLog, Branch
from inventory.ledger import add_batch, get_stock_row, sellable_quantity
from inventory.models import InventoryBatch, Product
from transfers.codes import CODE_MAX, CODE_MIN, codes_match, generate_code, generate_verification_codes
from transfers.exceptions import InvalidCodeError, InvalidStateError
from transfers.models import StockTransfer, TransferLog
from transfers.workflow import dispatch_transfer, verify_controller, verify_keeper

KEEPER_CODE = "123456"
CONTROLLER_CODE = "654321"


def fixed_codes():
    return patch("transfers.workflow.generate_verification_codes", return_value=(KEEPER_CODE, CONTROLLER_CODE))


class TransferFixtureMixin:
    def setUp(self):
        self.head_office = Branch.objects.create(code="HEAD_OFFICE", name="Head Office")
        self.source = Branch.objects.create(code="BR001", name="Kariakoo Branch")
        self.target = Branch.objects.create(code="BR002", name="Mikocheni Branch")
        self.product = Product.objects.create(name="Amoxicillin 500mg", unit="box")
        add_batch(
            self.source.id,
            self.product.id,
            batch_number="SRC-1",
            expiry_date=date(2030, 1, 31),
            quantity=50,
            status=InventoryBatch.Status.ACTIVE,
        )

    def _items(self, quantity=10, batch_number="B1"):
        return [
            {
                "product_id": self.product.id,
                "quantity": quantity,
                "batch_number": batch_number,
                "expiry_date": "2030-12-31",
            }
        ]

    def _dispatch(self, **kwargs):
        with fixed_codes():
            return dispatch_transfer(self.source, self.target, kwargs.pop("items", None) or self._items(), **kwargs)

    def _target_batches(self):
        row = get_stock_row(self.target.id, self.product.id)
        return list(row.batches.order_by("id")) if row else []


class CodeGeneratorTests(TestCase):
    def test_codes_are_six_digits_in_range(self):
        for _ in range(200):
            code = generate_code()
            self.assertRegex(code, r"^\d{6}$")
            self.assertTrue(CODE_MIN <= int(code) <= CODE_MAX)

    def test_generator_returns_two_codes(self):
        keeper_code, controller_code = generate_verification_codes()

        self.assertRegex(keeper_code, r"^\d{6}$")
        self.assertRegex(controller_code, r"^\d{6}$")

    def test_codes_match_ignores_surrounding_whitespace_only(self):
        self.assertTrue(codes_match("123456", " 123456 "))
        self.assertFalse(codes_match("123456", "123457"))
        self.assertFalse(codes_match("123456", None))
        self.assertFalse(codes_match("123456", "１２３４５６"))


class TransferWorkflowTests(TransferFixtureMixin, TestCase):
    def test_dispatch_creates_in_transit_transfer_without_touching_ledgers(self):
        transfer = self._dispatch(notes="Urgent restock")

        self.assertEqual(transfer.status, StockTransfer.Status.IN_TRANSIT)
        self.assertEqual(transfer.workflow_step, StockTransfer.Step.KEEPER_CHECK)
        self.assertEqual((transfer.keeper_code, transfer.controller_code), (KEEPER_CODE, CONTROLLER_CODE))
        self.assertEqual(transfer.date_sent, timezone.localdate())
        self.assertEqual(transfer.notes, "Urgent restock")
        self.assertEqual(list(transfer.logs.values_list("role", "action")), [("Kariakoo Branch", "Dispatched")])

        item = transfer.items.get()
        self.assertEqual((item.product_id, item.quantity, item.batch_number), (self.product.id, 10, "B1"))
        self.assertEqual(item.expiry_date, date(2030, 12, 31))

        self.assertIsNone(get_stock_row(self.target.id, self.product.id))
        self.assertEqual(sellable_quantity(self.source.id, self.product.id), 50)

    def test_dispatch_generates_two_six_digit_codes(self):
        transfer = dispatch_transfer(self.source.id, self.target.id, self._items())

        self.assertRegex(transfer.keeper_code, r"^\d{6}$")
        self.assertRegex(transfer.controller_code, r"^\d{6}$")

    @override_settings(TRANSFER_REFERENCE_PREFIX="TR")
    def test_references_are_sequential_per_day(self):
        first = self._dispatch()
        second = self._dispatch()

        day = timezone.localdate().strftime("%Y%m%d")
        self.assertEqual(first.reference, f"TR-{day}-0001")
        self.assertEqual(second.reference, f"TR-{day}-0002")

    def test_dispatch_rejects_empty_items(self):
        with self.assertRaises(ValidationError):
            dispatch_transfer(self.source, self.target, [])

        self.assertFalse(StockTransfer.objects.exists())

    def test_dispatch_rejects_non_positive_quantity(self):
        with self.assertRaises(ValidationError) as ctx:
            self._dispatch(items=self._items(quantity=0))

        self.assertIn("quantity", ctx.exception.detail["items"][0])
        self.assertFalse(StockTransfer.objects.exists())

    def test_dispatch_rejects_same_source_and_target(self):
        with self.assertRaises(ValidationError):
            dispatch_transfer(self.source, self.source, self._items())

        self.assertFalse(StockTransfer.objects.exists())

    def test_dispatch_rejects_quantity_above_sellable_source_stock(self):
        add_batch(
            self.source.id,
            self.product.id,
            batch_number="HELD",
            quantity=100,
            status=InventoryBatch.Status.ON_HOLD,
        )

        with self.assertRaises(ValidationError) as ctx:
            self._dispatch(items=self._items(quantity=51))

        self.assertEqual(ctx.exception.detail["shortages"][0]["available"], "50")
        self.assertFalse(StockTransfer.objects.exists())

    def test_dispatch_sums_items_of_the_same_product(self):
        items = self._items(quantity=30, batch_number="B1") + self._items(quantity=30, batch_number="B2")

        with self.assertRaises(ValidationError):
            self._dispatch(items=items)

    def test_wrong_keeper_code_changes_nothing(self):
        transfer = self._dispatch()

        with self.assertRaises(InvalidCodeError) as ctx:
            verify_keeper(transfer.id, "000000")

        self.assertEqual(str(ctx.exception.detail), "Invalid Keeper Code")
        transfer.refresh_from_db()
        self.assertEqual(transfer.status, StockTransfer.Status.IN_TRANSIT)
        self.assertEqual(transfer.workflow_step, StockTransfer.Step.KEEPER_CHECK)
        self.assertEqual(transfer.logs.count(), 1)
        self.assertEqual(self._target_batches(), [])

    def test_keeper_verification_books_on_hold_stock(self):
        transfer = self._dispatch()

        transfer = verify_keeper(transfer.id, KEEPER_CODE)

        self.assertEqual(transfer.status, StockTransfer.Status.RECEIVED_KEEPER)
        self.assertEqual(transfer.workflow_step, StockTransfer.Step.CONTROLLER_VERIFY)
        self.assertIsNotNone(transfer.keeper_verified_at)
        batches = self._target_batches()
        self.assertEqual(len(batches), 1)
        self.assertEqual(batches[0].batch_number, "B1")
        self.assertEqual(batches[0].quantity, 10)
        self.assertEqual(batches[0].status, InventoryBatch.Status.ON_HOLD)
        self.assertEqual(batches[0].source_ref_id, transfer.id)
        self.assertEqual(get_stock_row(self.target.id, self.product.id).quantity, 10)
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 0)
        self.assertEqual(transfer.logs.count(), 2)

    def test_controller_verification_releases_stock_for_sale(self):
        transfer = self._dispatch()
        verify_keeper(transfer.id, KEEPER_CODE)

        transfer = verify_controller(transfer.id, CONTROLLER_CODE)

        self.assertEqual(transfer.status, StockTransfer.Status.COMPLETED)
        self.assertEqual(transfer.workflow_step, StockTransfer.Step.DONE)
        self.assertEqual(self._target_batches()[0].status, InventoryBatch.Status.ACTIVE)
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 10)
        self.assertEqual(
            list(transfer.logs.values_list("role", "action")),
            [
                ("Kariakoo Branch", "Dispatched"),
                ("Store Keeper", "Confirmed Receipt"),
                ("Inventory Controller", "Verified & Made Available for Sale"),
            ],
        )

    def test_round_trip_adds_exactly_the_dispatched_quantity(self):
        add_batch(self.target.id, self.product.id, batch_number="OLD", quantity=7, status=InventoryBatch.Status.ACTIVE)
        items = self._items(quantity=10, batch_number="B1") + self._items(quantity=15, batch_number="B2")
        transfer = self._dispatch(items=items)

        verify_keeper(transfer.id, KEEPER_CODE)
        verify_controller(transfer.id, CONTROLLER_CODE)

        self.assertEqual(get_stock_row(self.target.id, self.product.id).quantity, 32)
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 32)
        self.assertEqual(TransferLog.objects.filter(transfer=transfer).count(), 3)

    def test_wrong_controller_code_keeps_stock_on_hold(self):
        transfer = self._dispatch()
        verify_keeper(transfer.id, KEEPER_CODE)

        with self.assertRaises(InvalidCodeError) as ctx:
            verify_controller(transfer.id, KEEPER_CODE)

        self.assertEqual(str(ctx.exception.detail), "Invalid Controller Code")
        transfer.refresh_from_db()
        self.assertEqual(transfer.status, StockTransfer.Status.RECEIVED_KEEPER)
        self.assertEqual(self._target_batches()[0].status, InventoryBatch.Status.ON_HOLD)
        self.assertEqual(transfer.logs.count(), 2)

    def test_controller_before_keeper_is_rejected(self):
        transfer = self._dispatch()

        with self.assertRaises(InvalidStateError):
            verify_controller(transfer.id, CONTROLLER_CODE)

        transfer.refresh_from_db()
        self.assertEqual(transfer.status, StockTransfer.Status.IN_TRANSIT)
        self.assertEqual(transfer.logs.count(), 1)
        self.assertEqual(self._target_batches(), [])

    def test_second_keeper_verification_does_not_double_credit(self):
        transfer = self._dispatch()
        verify_keeper(transfer.id, KEEPER_CODE)

        with self.assertRaises(InvalidStateError):
            verify_keeper(transfer.id, KEEPER_CODE)

        self.assertEqual(get_stock_row(self.target.id, self.product.id).quantity, 10)
        self.assertEqual(len(self._target_batches()), 1)

    def test_completed_transfer_is_immutable(self):
        transfer = self._dispatch()
        verify_keeper(transfer.id, KEEPER_CODE)
        verify_controller(transfer.id, CONTROLLER_CODE)

        with self.assertRaises(InvalidStateError):
            verify_keeper(transfer.id, KEEPER_CODE)
        with self.assertRaises(InvalidStateError):
            verify_controller(transfer.id, CONTROLLER_CODE)

        transfer.refresh_from_db()
        self.assertEqual(transfer.status, StockTransfer.Status.COMPLETED)
        self.assertEqual(transfer.logs.count(), 3)

    def test_duplicate_batch_numbers_release_every_held_batch(self):
        items = self._items(quantity=4, batch_number="B1") + self._items(quantity=6, batch_number="B1")
        transfer = self._dispatch(items=items)
        verify_keeper(transfer.id, KEEPER_CODE)

        verify_controller(transfer.id, CONTROLLER_CODE)

        self.assertEqual([batch.status for batch in self._target_batches()], ["ACTIVE", "ACTIVE"])
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 10)

    def test_controller_releases_only_its_own_transfers_batches(self):
        first = self._dispatch(items=self._items(quantity=10, batch_number="B1"))
        second = self._dispatch(items=self._items(quantity=5, batch_number="B1"))
        verify_keeper(first.id, KEEPER_CODE)
        verify_keeper(second.id, KEEPER_CODE)

        verify_controller(first.id, CONTROLLER_CODE)

        statuses = {batch.source_ref_id: batch.status for batch in self._target_batches()}
        self.assertEqual(statuses[first.id], InventoryBatch.Status.ACTIVE)
        self.assertEqual(statuses[second.id], InventoryBatch.Status.ON_HOLD)
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 10)

        verify_controller(second.id, CONTROLLER_CODE)

        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 15)

    def test_already_expired_stock_is_released_as_expired(self):
        items = [{"product_id": self.product.id, "quantity": 10, "batch_number": "OLD", "expiry_date": "2024-01-31"}]
        transfer = self._dispatch(items=items)
        verify_keeper(transfer.id, KEEPER_CODE)

        transfer = verify_controller(transfer.id, CONTROLLER_CODE)

        self.assertEqual(transfer.status, StockTransfer.Status.COMPLETED)
        self.assertEqual(self._target_batches()[0].status, InventoryBatch.Status.EXPIRED)
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 0)
        self.assertEqual(get_stock_row(self.target.id, self.product.id).quantity, 10)

    @override_settings(TRANSFER_REFERENCE_PREFIX="TR")
    def test_reference_collision_retries_with_next_number(self):
        first = self._dispatch()
        day = timezone.localdate().strftime("%Y%m%d")

        with patch(
            "common.utils.next_daily_reference",
            side_effect=[first.reference, f"TR-{day}-0002"],
        ) as next_reference:
            second = self._dispatch()

        self.assertEqual(next_reference.call_count, 2)
        self.assertEqual(second.reference, f"TR-{day}-0002")
        self.assertEqual(StockTransfer.objects.count(), 2)

    def test_unknown_transfer_raises_not_found(self):
        with self.assertRaises(NotFound):
            verify_keeper("0b7b4c1e-8d8f-4b39-9d55-2f4f3a3e6a10", KEEPER_CODE)
        with self.assertRaises(NotFound):
            verify_controller("not-a-uuid", CONTROLLER_CODE)

    def test_codes_never_reach_the_logs(self):
        formatter = JsonFormatter()
        with self.assertLogs("transfers.workflow", level="INFO") as cm:
            transfer = self._dispatch()
            with self.assertRaises(InvalidCodeError):
                verify_keeper(transfer.id, "000000")
            verify_keeper(transfer.id, KEEPER_CODE)

        rendered = [formatter.format(record) for record in cm.records]
        self.assertEqual(
            [record.getMessage() for record in cm.records],
            ["transfer_dispatched", "transfer_code_rejected", "transfer_keeper_verified"],
        )
        for line in rendered:
            self.assertNotIn(KEEPER_CODE, line)
            self.assertNotIn(CONTROLLER_CODE, line)


class TransferApiTests(TransferFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.user_model = get_user_model()
        self.other = Branch.objects.create(code="BR003", name="Sinza Branch")

        self.manager_source = self._user("manager-src", self.source, "branch_manager")
        self.keeper_source = self._user("keeper-src", self.source, "store_keeper")
        self.keeper_target = self._user("keeper-tgt", self.target, "store_keeper")
        self.controller_target = self._user("controller-tgt", self.target, "inventory_controller")
        self.cashier_target = self._user("cashier-tgt", self.target, "cashier")
        self.manager_other = self._user("manager-oth", self.other, "branch_manager")
        self.auditor_head_office = self._user("auditor-ho", self.head_office, "auditor")

    def _user(self, username, branch, role):
        return self.user_model.objects.create_user(username=username, password="pass1234", branch=branch, role=role)

    def _payload(self, **overrides):
        payload = {
            "target_branch": str(self.target.id),
            "items": [
                {
                    "product_id": str(self.product.id),
                    "quantity": 10,
                    "batch_number": "B1",
                    "expiry_date": "2030-12-31",
                }
            ],
            "notes": "Weekly restock",
        }
        payload.update(overrides)
        return payload

    def _post_dispatch(self, **overrides):
        self.client.force_authenticate(user=self.manager_source)
        with fixed_codes():
            return self.client.post("/api/v1/transfers/", self._payload(**overrides), format="json")

    def _verify(self, user, transfer_id, step, code):
        self.client.force_authenticate(user=user)
        return self.client.post(f"/api/v1/transfers/{transfer_id}/{step}/", {"code": code}, format="json")

    def test_dispatch_returns_codes_to_the_source_branch(self):
        self.client.force_authenticate(user=self.manager_source)
        with fixed_codes():
            response = self.client.post(
                "/api/v1/transfers/", self._payload(), format="json", HTTP_X_REQUEST_ID="req-dispatch"
            )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "IN_TRANSIT")
        self.assertEqual(payload["source_branch"], str(self.source.id))
        self.assertEqual(payload["keeper_code"], KEEPER_CODE)
        self.assertEqual(payload["controller_code"], CONTROLLER_CODE)
        self.assertEqual(payload["workflow"]["step"], "KEEPER_CHECK")
        self.assertEqual(len(payload["workflow"]["logs"]), 1)
        self.assertEqual(payload["workflow"]["logs"][0]["user"], "manager-src")

        audit = AuditLog.objects.get(action="transfer.dispatch")
        self.assertEqual(audit.request_id, "req-dispatch")
        self.assertEqual(audit.branch_id, self.source.id)
        self.assertNotIn("keeper_code", audit.after_snapshot)
        self.assertNotIn("controller_code", audit.after_snapshot)

    def test_receiving_branch_never_sees_codes(self):
        transfer_id = self._post_dispatch().json()["id"]
        self.client.force_authenticate(user=self.keeper_target)

        detail = self.client.get(f"/api/v1/transfers/{transfer_id}/")
        listing = self.client.get("/api/v1/transfers/")

        self.assertEqual(detail.status_code, 200)
        self.assertNotIn("keeper_code", detail.json())
        self.assertNotIn("controller_code", detail.json())
        self.assertEqual(listing.status_code, 200)
        self.assertNotIn("keeper_code", listing.json()["results"][0])

    def test_head_office_sees_codes(self):
        transfer_id = self._post_dispatch().json()["id"]
        self.client.force_authenticate(user=self.auditor_head_office)

        response = self.client.get(f"/api/v1/transfers/{transfer_id}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["keeper_code"], KEEPER_CODE)

    def test_full_workflow_over_http(self):
        transfer_id = self._post_dispatch().json()["id"]

        keeper = self._verify(self.keeper_target, transfer_id, "verify-keeper", KEEPER_CODE)
        self.assertEqual(keeper.status_code, 200)
        self.assertEqual(keeper.json()["status"], "RECEIVED_KEEPER")
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 0)

        controller = self._verify(self.controller_target, transfer_id, "verify-controller", CONTROLLER_CODE)
        self.assertEqual(controller.status_code, 200)
        payload = controller.json()
        self.assertEqual(payload["status"], "COMPLETED")
        self.assertEqual(payload["workflow"]["step"], "DONE")
        self.assertEqual(
            [log["action"] for log in payload["workflow"]["logs"]],
            ["Dispatched", "Confirmed Receipt", "Verified & Made Available for Sale"],
        )
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 10)
        self.assertEqual(
            set(AuditLog.objects.values_list("action", flat=True)),
            {"transfer.dispatch", "transfer.verify_keeper", "transfer.verify_controller"},
        )

    def test_wrong_code_returns_invalid_code_envelope(self):
        transfer_id = self._post_dispatch().json()["id"]

        response = self._verify(self.keeper_target, transfer_id, "verify-keeper", "000000")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json(),
            {"code": "invalid_code", "message": "Invalid Keeper Code", "errors": None, "status": 400},
        )
        self.assertFalse(AuditLog.objects.filter(action="transfer.verify_keeper").exists())

    def test_out_of_order_verification_returns_conflict(self):
        transfer_id = self._post_dispatch().json()["id"]

        response = self._verify(self.controller_target, transfer_id, "verify-controller", CONTROLLER_CODE)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_state")

    def test_repeated_keeper_verification_returns_conflict(self):
        transfer_id = self._post_dispatch().json()["id"]
        self._verify(self.keeper_target, transfer_id, "verify-keeper", KEEPER_CODE)

        response = self._verify(self.keeper_target, transfer_id, "verify-keeper", KEEPER_CODE)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(get_stock_row(self.target.id, self.product.id).quantity, 10)

    def test_source_branch_cannot_verify_its_own_dispatch(self):
        transfer_id = self._post_dispatch().json()["id"]

        response = self._verify(self.keeper_source, transfer_id, "verify-keeper", KEEPER_CODE)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(StockTransfer.objects.get(id=transfer_id).status, StockTransfer.Status.IN_TRANSIT)

    def test_controller_role_cannot_perform_keeper_step(self):
        transfer_id = self._post_dispatch().json()["id"]

        response = self._verify(self.controller_target, transfer_id, "verify-keeper", KEEPER_CODE)

        self.assertEqual(response.status_code, 403)

    def test_unrelated_branch_cannot_see_transfer(self):
        transfer_id = self._post_dispatch().json()["id"]
        self.client.force_authenticate(user=self.manager_other)

        detail = self.client.get(f"/api/v1/transfers/{transfer_id}/")
        listing = self.client.get("/api/v1/transfers/")

        self.assertEqual(detail.status_code, 404)
        self.assertEqual(detail.json()["code"], "not_found")
        self.assertEqual(listing.json()["count"], 0)

    def test_unknown_transfer_returns_not_found(self):
        response = self._verify(
            self.keeper_target, "0b7b4c1e-8d8f-4b39-9d55-2f4f3a3e6a10", "verify-keeper", KEEPER_CODE
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_cashier_cannot_list_transfers(self):
        self.client.force_authenticate(user=self.cashier_target)

        response = self.client.get("/api/v1/transfers/")

        self.assertEqual(response.status_code, 403)

    def test_direction_filter_is_relative_to_caller_branch(self):
        self._post_dispatch()
        self.client.force_authenticate(user=self.keeper_target)

        incoming = self.client.get("/api/v1/transfers/", {"direction": "incoming"})
        outgoing = self.client.get("/api/v1/transfers/", {"direction": "outgoing"})
        in_transit = self.client.get("/api/v1/transfers/", {"status": "in_transit"})

        self.assertEqual(incoming.json()["count"], 1)
        self.assertEqual(outgoing.json()["count"], 0)
        self.assertEqual(in_transit.json()["count"], 1)

    def test_dispatch_with_empty_items_is_rejected(self):
        response = self._post_dispatch(items=[])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("items", response.json()["errors"])
        self.assertFalse(StockTransfer.objects.exists())

    def test_dispatch_to_own_branch_is_rejected(self):
        response = self._post_dispatch(target_branch=str(self.source.id))

        self.assertEqual(response.status_code, 400)
        self.assertFalse(StockTransfer.objects.exists())

    def test_branch_staff_cannot_dispatch_from_another_branch(self):
        response = self._post_dispatch(source_branch=str(self.other.id))

        self.assertEqual(response.status_code, 403)
        self.assertFalse(StockTransfer.objects.exists())

    def test_codes_are_six_digits_when_not_patched(self):
        self.client.force_authenticate(user=self.manager_source)

        response = self.client.post("/api/v1/transfers/", self._payload(), format="json")

        self.assertEqual(response.status_code, 201)
        self.assertTrue(re.fullmatch(r"\d{6}", response.json()["keeper_code"]))
        self.assertTrue(re.fullmatch(r"\d{6}", response.json()["controller_code"]))


@skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL")
class ConcurrentVerificationTests(TransferFixtureMixin, TransactionTestCase):
    def _race(self, step, transfer_id, code, callers=2):
        barrier = threading.Barrier(callers)
        outcomes = []

        def attempt():
            try:
                barrier.wait()
                step(transfer_id, code)
                outcomes.append("ok")
            except InvalidStateError:
                outcomes.append("invalid_state")
            finally:
                connections.close_all()

        threads = [threading.Thread(target=attempt) for _ in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return sorted(outcomes)

    def test_only_one_of_two_simultaneous_keeper_verifications_wins(self):
        transfer = self._dispatch()

        outcomes = self._race(verify_keeper, transfer.id, KEEPER_CODE)

        self.assertEqual(outcomes, ["invalid_state", "ok"])
        self.assertEqual(get_stock_row(self.target.id, self.product.id).quantity, 10)
        self.assertEqual(len(self._target_batches()), 1)
        self.assertEqual(TransferLog.objects.filter(transfer=transfer).count(), 2)

    def test_only_one_of_two_simultaneous_controller_verifications_wins(self):
        transfer = self._dispatch()
        verify_keeper(transfer.id, KEEPER_CODE)

        outcomes = self._race(verify_controller, transfer.id, CONTROLLER_CODE)

        self.assertEqual(outcomes, ["invalid_state", "ok"])
        self.assertEqual(sellable_quantity(self.target.id, self.product.id), 10)
        self.assertEqual(TransferLog.objects.filter(transfer=transfer).count(), 3)
