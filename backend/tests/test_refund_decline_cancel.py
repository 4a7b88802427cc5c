from __future__ import annotations

import os
import unittest
import uuid
from datetime import datetime, timedelta

from app import create_app
from app.extensions import db
from app.integrations.common import GatewayError, GatewayFailure
from app.integrations.courier.base import CancelResult
from app.integrations.courier.mock_provider import MockCourierClient
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.jobs.commit_expiry_runner import AUTO_EXPIRE_REASON, run_commit_expiry
from app.models import Book, JobRun, Notification, Order, RefundTransaction, User
from app.services.cancel_service import cancel_order
from app.services.container import override
from app.services.decline_service import decline_commit
from app.services.errors import ErrorKind, WorkflowError
from app.services.refund_service import process_refund


class CountingPayments(MockPaymentsProvider):
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.refund_calls = 0

    def refund(self, *, transaction_reference: str, amount: float, reason: str):
        self.refund_calls += 1
        if self.fail:
            raise GatewayError(GatewayFailure.SERVER_ERROR, "gateway unavailable", provider="fake", status_code=503)
        return super().refund(transaction_reference=transaction_reference, amount=amount, reason=reason)


class TooLateCourier(MockCourierClient):
    def cancel_shipment(self, tracking_number: str, *, reason: str = "") -> CancelResult:
        return CancelResult(cancelled=False, too_late=True, message="parcel already collected")


class RefundDeclineCancelTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._db_env = {k: os.environ.get(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL")}
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._db_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self.payments = CountingPayments()
        with self.app.app_context():
            override(payments=self.payments, courier=MockCourierClient())

    def _seed_order(self, *, status: str = "pending_commit", created_at: datetime | None = None, payment_reference: str | None = "auto") -> Order:
        suffix = uuid.uuid4().hex[:10]
        seller = User(name="Seller", email=f"seller-{suffix}@rebooked.test", role="seller")
        buyer = User(name="Buyer", email=f"buyer-{suffix}@rebooked.test", role="buyer")
        db.session.add_all([seller, buyer])
        db.session.flush()
        book = Book(seller_id=seller.id, title="Linear Algebra Done Right", price=250.0, sold=True)
        db.session.add(book)
        db.session.flush()
        order = Order(
            buyer_id=buyer.id,
            seller_id=seller.id,
            book_id=book.id,
            status=status,
            amount=250.0,
            delivery_fee=50.0,
            total_amount=300.0,
            payment_reference=f"PAY-{suffix}" if payment_reference == "auto" else payment_reference,
            escrow_status="HELD",
            created_at=created_at or datetime.utcnow(),
        )
        db.session.add(order)
        db.session.commit()
        return order

    def test_refund_is_issued_once(self):
        with self.app.app_context():
            order = self._seed_order()
            first = process_refund(order.id, "buyer asked", mark_order_refunded=False)
            second = process_refund(order.id, "buyer asked again", mark_order_refunded=False)

            self.assertTrue(first.success)
            self.assertTrue(second.success)
            self.assertTrue(second.already_processed)
            self.assertEqual(first.refund_reference, second.refund_reference)
            self.assertEqual(self.payments.refund_calls, 1)
            self.assertEqual(RefundTransaction.query.filter_by(order_id=order.id).count(), 1)
            row = db.session.get(Order, order.id)
            self.assertEqual(row.refund_status, "success")
            self.assertEqual(row.status, "pending_commit")

    def test_refund_marks_order_refunded_and_escrow(self):
        with self.app.app_context():
            order = self._seed_order(status="completed")
            outcome = process_refund(order.id, "admin refund", amount=100.0)
            self.assertTrue(outcome.success)
            row = db.session.get(Order, order.id)
            self.assertEqual(row.status, "refunded")
            self.assertEqual(row.escrow_status, "REFUNDED")
            self.assertEqual(float(outcome.refund.amount), 100.0)

    def test_refund_over_total_is_rejected(self):
        with self.app.app_context():
            order = self._seed_order()
            with self.assertRaises(WorkflowError) as ctx:
                process_refund(order.id, "too much", amount=301.0)
            self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION_ERROR)
            self.assertEqual(self.payments.refund_calls, 0)

    def test_decline_refunds_cancels_and_relists(self):
        with self.app.app_context():
            order = self._seed_order()
            outcome = decline_commit(order.id, order.seller_id, "Book damaged")

            row = db.session.get(Order, order.id)
            self.assertEqual(row.status, "cancelled")
            self.assertIsNotNone(row.declined_at)
            self.assertEqual(row.decline_reason, "Book damaged")
            self.assertEqual(row.refund_status, "success")
            self.assertEqual(row.escrow_status, "REFUNDED")
            self.assertFalse(db.session.get(Book, order.book_id).sold)
            self.assertTrue(outcome.to_dict()["success"])
            self.assertEqual(Notification.query.filter_by(order_id=order.id, type="order_declined").count(), 2)

    def test_decline_with_failed_refund_leaves_order_pending(self):
        with self.app.app_context():
            self.payments.fail = True
            order = self._seed_order()
            with self.assertRaises(WorkflowError) as ctx:
                decline_commit(order.id, order.seller_id, "Out of stock")
            self.assertEqual(ctx.exception.kind, ErrorKind.GATEWAY_ERROR)

            row = db.session.get(Order, order.id)
            self.assertEqual(row.status, "pending_commit")
            self.assertEqual(row.escrow_status, "HELD")
            failed = RefundTransaction.query.filter_by(order_id=order.id).one()
            self.assertEqual(failed.status, "failed")

            # a later retry goes back to the gateway
            self.payments.fail = False
            decline_commit(order.id, order.seller_id, "Out of stock")
            self.assertEqual(db.session.get(Order, order.id).status, "cancelled")
            self.assertEqual(self.payments.refund_calls, 2)

    def test_decline_without_payment_needs_no_refund(self):
        with self.app.app_context():
            order = self._seed_order(payment_reference=None)
            outcome = decline_commit(order.id, order.seller_id, "Changed my mind")
            self.assertEqual(outcome.to_dict()["refund_status"], "not_required")
            self.assertEqual(self.payments.refund_calls, 0)

    def test_decline_requires_reason(self):
        with self.app.app_context():
            order = self._seed_order()
            with self.assertRaises(WorkflowError) as ctx:
                decline_commit(order.id, order.seller_id, "  ")
            self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION_ERROR)

    def test_buyer_cancel_before_collection(self):
        with self.app.app_context():
            order = self._seed_order(status="courier_scheduled")
            order.tracking_number = "MOCK123"
            db.session.commit()
            result = cancel_order(order.id, order.buyer_id, "Found it cheaper")
            self.assertTrue(result["success"])
            row = db.session.get(Order, order.id)
            self.assertEqual(row.status, "cancelled")
            self.assertEqual(row.refund_status, "success")

    def test_buyer_cancel_after_collection_is_rejected(self):
        with self.app.app_context():
            order = self._seed_order(status="shipped")
            order.collected_at = datetime.utcnow()
            db.session.commit()
            with self.assertRaises(WorkflowError) as ctx:
                cancel_order(order.id, order.buyer_id, "Too slow")
            self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_STATUS)
            self.assertEqual(self.payments.refund_calls, 0)

    def test_buyer_cancel_when_courier_says_too_late(self):
        with self.app.app_context():
            override(courier=TooLateCourier())
            order = self._seed_order(status="courier_scheduled")
            order.tracking_number = "MOCK999"
            db.session.commit()
            with self.assertRaises(WorkflowError) as ctx:
                cancel_order(order.id, order.buyer_id, "Too slow")
            self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_STATUS)
            self.assertEqual(db.session.get(Order, order.id).status, "courier_scheduled")
            self.assertEqual(self.payments.refund_calls, 0)

    def test_commit_expiry_job_declines_stale_orders(self):
        with self.app.app_context():
            now = datetime.utcnow()
            stale = self._seed_order(created_at=now - timedelta(hours=50))
            fresh = self._seed_order(created_at=now - timedelta(hours=10))
            result = run_commit_expiry(now=now)

            self.assertGreaterEqual(result["expired"], 1)
            self.assertEqual(result["errors"], 0)
            row = db.session.get(Order, stale.id)
            self.assertEqual(row.status, "cancelled")
            self.assertEqual(row.decline_reason, AUTO_EXPIRE_REASON)
            self.assertEqual(db.session.get(Order, fresh.id).status, "pending_commit")
            self.assertGreaterEqual(JobRun.query.filter_by(job_name="commit_expiry").count(), 1)


if __name__ == "__main__":
    unittest.main()
