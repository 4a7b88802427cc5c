from __future__ import annotations

import hashlib
import hmac
import json
import os
import unittest
import uuid

from app import create_app
from app.extensions import db
from app.integrations.common import GatewayError, GatewayFailure
from app.integrations.courier.mock_provider import MockCourierClient
from app.integrations.payments.base import RefundResult
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.models import Book, Notification, Order, PlatformEvent, RefundTransaction, User, WebhookEvent
from app.services.container import override
from app.services.decline_service import decline_commit
from app.services.refund_service import apply_refund_event, check_refund_status, process_refund


class SlowRefundPayments(MockPaymentsProvider):
    """Gateway that accepts refunds without settling them straight away."""

    def __init__(self, *, refund_status: str = "pending", fetch_status: str = "pending", fail: bool = False):
        self.refund_status = refund_status
        self.fetch_status = fetch_status
        self.fail = fail
        self.fetch_calls = 0

    def refund(self, *, transaction_reference: str, amount: float, reason: str) -> RefundResult:
        if self.fail:
            raise GatewayError(GatewayFailure.SERVER_ERROR, "gateway unavailable", provider="fake", status_code=503)
        return RefundResult(
            refund_reference=f"RF-{uuid.uuid4().hex[:10]}",
            status=self.refund_status,
            amount=float(amount),
            raw={"transaction": transaction_reference},
        )

    def fetch_refund(self, refund_reference: str) -> RefundResult:
        self.fetch_calls += 1
        return RefundResult(refund_reference=refund_reference, status=self.fetch_status, amount=0.0, raw={"id": refund_reference})


class RefundSettlementTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._db_env = {k: os.environ.get(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL")}
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._db_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self.payments = SlowRefundPayments()
        with self.app.app_context():
            override(payments=self.payments, courier=MockCourierClient())

    def _seed_order(self, *, status: str = "pending_commit", tracking_number: str | None = None) -> Order:
        suffix = uuid.uuid4().hex[:10]
        seller = User(name="Seller", email=f"seller-{suffix}@rebooked.test", role="seller")
        buyer = User(name="Buyer", email=f"buyer-{suffix}@rebooked.test", role="buyer")
        db.session.add_all([seller, buyer])
        db.session.flush()
        book = Book(seller_id=seller.id, title="Introduction to Algorithms", price=250.0, sold=True)
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
            payment_reference=f"PAY-{suffix}",
            tracking_number=tracking_number,
            escrow_status="HELD",
        )
        db.session.add(order)
        db.session.commit()
        return order

    def _declined_with_pending_refund(self) -> tuple[str, str, str]:
        with self.app.app_context():
            order = self._seed_order()
            outcome = decline_commit(order.id, order.seller_id, "Book was damaged", actor_user_id=order.seller_id)
            self.assertEqual(outcome.refund_status, "pending")
            return order.id, outcome.refund_reference, order.payment_reference

    def _post_paystack(self, payload: dict, secret: str = "sk_test_hook"):
        body = json.dumps(payload).encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
        return self.client.post(
            "/api/webhooks/paystack",
            data=body,
            headers={"Content-Type": "application/json", "X-Paystack-Signature": signature},
        )

    def test_pending_refund_keeps_escrow_held_until_confirmed(self):
        order_id, refund_reference, _ = self._declined_with_pending_refund()
        with self.app.app_context():
            row = db.session.get(Order, order_id)
            self.assertEqual(row.status, "cancelled")
            self.assertEqual(row.refund_status, "pending")
            self.assertEqual(row.escrow_status, "HELD")
            self.assertIsNone(row.refunded_at)
            note = Notification.query.filter_by(order_id=order_id, user_id=row.buyer_id, type="order_declined").one()
            self.assertIn("is being processed", note.message)

            refund = apply_refund_event("refund.processed", {"id": refund_reference, "status": "processed"})
            self.assertEqual(refund.status, "success")
            row = db.session.get(Order, order_id)
            self.assertEqual(row.refund_status, "success")
            self.assertEqual(row.escrow_status, "REFUNDED")
            self.assertIsNotNone(row.refunded_at)

    def test_failed_refund_after_decline_alerts_and_keeps_escrow(self):
        order_id, refund_reference, _ = self._declined_with_pending_refund()
        with self.app.app_context():
            refund = apply_refund_event("refund.failed", {"id": refund_reference, "status": "failed"})
            self.assertEqual(refund.status, "failed")
            self.assertIsNotNone(refund.completed_at)

            row = db.session.get(Order, order_id)
            self.assertEqual(row.status, "cancelled")
            self.assertEqual(row.refund_status, "failed")
            self.assertEqual(row.escrow_status, "HELD")

            alert = PlatformEvent.query.filter_by(event_type="refund_failed_after_close", subject_id=order_id).one()
            self.assertEqual(alert.severity, "CRITICAL")
            self.assertEqual(Notification.query.filter_by(order_id=order_id, type="refund_failed").count(), 1)

            # a fresh attempt is allowed once the earlier one failed
            self.payments.refund_status = "success"
            retry = process_refund(order_id, "Retry after bank rejection")
            self.assertTrue(retry.success)
            self.assertFalse(retry.already_processed)
            self.assertEqual(RefundTransaction.query.filter_by(order_id=order_id).count(), 2)
            row = db.session.get(Order, order_id)
            self.assertEqual(row.status, "cancelled")
            self.assertEqual(row.refund_status, "success")
            self.assertEqual(row.escrow_status, "REFUNDED")

    def test_status_poll_settles_in_flight_refund(self):
        order_id, _, _ = self._declined_with_pending_refund()
        with self.app.app_context():
            self.payments.fetch_status = "processing"
            row = check_refund_status(order_id)
            self.assertEqual(row.status, "processing")
            self.assertEqual(db.session.get(Order, order_id).escrow_status, "HELD")

            self.payments.fetch_status = "success"
            row = check_refund_status(order_id)
            self.assertEqual(row.status, "success")
            self.assertEqual(db.session.get(Order, order_id).escrow_status, "REFUNDED")

            again = check_refund_status(order_id)
            self.assertEqual(again.status, "success")
            self.assertEqual(self.payments.fetch_calls, 2)

    def test_status_poll_without_refund_returns_nothing(self):
        with self.app.app_context():
            order = self._seed_order()
            self.assertIsNone(check_refund_status(order.id))
            self.assertEqual(self.payments.fetch_calls, 0)

    def test_refund_event_matches_by_transaction_reference(self):
        order_id, _, payment_reference = self._declined_with_pending_refund()
        with self.app.app_context():
            refund = apply_refund_event("refund.processed", {"transaction": {"reference": payment_reference}})
            self.assertIsNotNone(refund)
            self.assertEqual(refund.status, "success")
            self.assertEqual(db.session.get(Order, order_id).escrow_status, "REFUNDED")

            self.assertIsNone(apply_refund_event("refund.processed", {"id": "RF-unknown"}))
            self.assertIsNone(apply_refund_event("refund.processed", {}))

    def test_gateway_failure_records_failed_row_and_leaves_order(self):
        self.payments.fail = True
        with self.app.app_context():
            order = self._seed_order(status="completed")
            outcome = process_refund(order.id, "Admin refund")
            self.assertFalse(outcome.success)
            self.assertIn("gateway unavailable", outcome.error)

            failed = RefundTransaction.query.filter_by(order_id=order.id).one()
            self.assertEqual(failed.status, "failed")
            self.assertEqual(failed.error_message, "gateway unavailable")
            self.assertIsNone(failed.refund_reference)

            row = db.session.get(Order, order.id)
            self.assertEqual(row.status, "completed")
            self.assertIsNone(row.refund_status)
            self.assertEqual(row.escrow_status, "HELD")
            self.assertEqual(PlatformEvent.query.filter_by(event_type="refund_failed", subject_id=order.id).count(), 1)

    def test_paystack_webhook_rejects_bad_signature(self):
        self.app.config["PAYSTACK_SECRET_KEY"] = "sk_test_hook"
        try:
            res = self._post_paystack({"event": "refund.processed", "data": {"id": "RF-x"}}, secret="wrong")
            self.assertEqual(res.status_code, 401)
            self.assertEqual((res.get_json() or {}).get("error"), "INVALID_SIGNATURE")
        finally:
            self.app.config.pop("PAYSTACK_SECRET_KEY", None)

    def test_paystack_refund_events_update_refund_and_escrow(self):
        self.app.config["PAYSTACK_SECRET_KEY"] = "sk_test_hook"
        try:
            order_id, refund_reference, _ = self._declined_with_pending_refund()

            pending = self._post_paystack({"event": "refund.pending", "data": {"id": refund_reference, "status": "pending"}})
            self.assertEqual(pending.status_code, 200)
            self.assertEqual(((pending.get_json() or {}).get("refund") or {}).get("status"), "pending")

            processed = {"event": "refund.processed", "data": {"id": refund_reference, "status": "processed"}}
            res = self._post_paystack(processed)
            self.assertEqual(res.status_code, 200)
            self.assertEqual(((res.get_json() or {}).get("refund") or {}).get("status"), "success")

            replay = self._post_paystack(processed)
            self.assertTrue((replay.get_json() or {}).get("replayed"))

            ignored = self._post_paystack({"event": "charge.success", "data": {"reference": "PAY-other"}})
            self.assertTrue((ignored.get_json() or {}).get("ignored"))

            with self.app.app_context():
                row = db.session.get(Order, order_id)
                self.assertEqual(row.refund_status, "success")
                self.assertEqual(row.escrow_status, "REFUNDED")
                self.assertGreaterEqual(WebhookEvent.query.filter_by(provider="paystack", status="processed").count(), 2)
        finally:
            self.app.config.pop("PAYSTACK_SECRET_KEY", None)

    def test_paystack_refund_failed_event_after_decline(self):
        self.app.config["PAYSTACK_SECRET_KEY"] = "sk_test_hook"
        try:
            order_id, refund_reference, _ = self._declined_with_pending_refund()
            res = self._post_paystack({"event": "refund.failed", "data": {"id": refund_reference, "status": "failed"}})
            self.assertEqual(res.status_code, 200)
            self.assertEqual(((res.get_json() or {}).get("refund") or {}).get("status"), "failed")
            with self.app.app_context():
                row = db.session.get(Order, order_id)
                self.assertEqual(row.refund_status, "failed")
                self.assertEqual(row.escrow_status, "HELD")
                self.assertEqual(PlatformEvent.query.filter_by(event_type="refund_failed_after_close", subject_id=order_id).count(), 1)
        finally:
            self.app.config.pop("PAYSTACK_SECRET_KEY", None)

    def test_courier_cancellation_refunds_and_relists(self):
        self.payments.refund_status = "success"
        tracking = f"TRK{uuid.uuid4().hex[:8].upper()}"
        with self.app.app_context():
            order = self._seed_order(status="courier_scheduled", tracking_number=tracking)
            order_id, book_id = order.id, order.book_id

        res = self.client.post(
            "/api/webhooks/courier",
            json={"id": f"evt-cancel-{order_id}", "event": "shipment.cancelled", "data": {"tracking_number": tracking}},
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual((res.get_json() or {}).get("status"), "cancelled")

        with self.app.app_context():
            row = db.session.get(Order, order_id)
            self.assertEqual(row.status, "cancelled")
            self.assertEqual(row.delivery_status, "cancelled")
            self.assertEqual(row.refund_status, "success")
            self.assertEqual(row.escrow_status, "REFUNDED")
            self.assertFalse(db.session.get(Book, book_id).sold)
            self.assertEqual(RefundTransaction.query.filter_by(order_id=order_id, status="success").count(), 1)
            self.assertEqual(Notification.query.filter_by(order_id=order_id, type="order_cancelled").count(), 1)


if __name__ == "__main__":
    unittest.main()
