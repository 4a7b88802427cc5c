from __future__ import annotations

import os
import unittest
import uuid
from unittest.mock import patch

from flask import Flask

from app import create_app
from app.extensions import db
from app.integrations.courier.mock_provider import MockCourierClient
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.models import Book, Notification, Order, User
from app.services.container import override
from app.utils.jwt_utils import create_access_token
from app.utils.observability import init_sentry


class FunctionsApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._db_env = {k: os.environ.get(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL", "PICKUP_QUEUE")}
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        os.environ.pop("PICKUP_QUEUE", None)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
            override(payments=MockPaymentsProvider(), courier=MockCourierClient())
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._db_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _user(self, role: str) -> tuple[str, str]:
        with self.app.app_context():
            user = User(name=role.title(), email=f"{role}-{uuid.uuid4().hex[:10]}@rebooked.test", role=role)
            db.session.add(user)
            db.session.commit()
            return user.id, create_access_token(user.id)

    def _book(self, seller_id: str, price: float = 250.0) -> str:
        with self.app.app_context():
            book = Book(seller_id=seller_id, title="Organic Chemistry", price=price)
            db.session.add(book)
            db.session.commit()
            return book.id

    @staticmethod
    def _auth(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def test_unknown_routes_return_json_error_shape(self):
        for path in ("/api/does-not-exist", "/functions/v1/does-not-exist"):
            res = self.client.get(path)
            self.assertEqual(res.status_code, 404)
            self.assertTrue(res.is_json)
            body = res.get_json(force=True) or {}
            self.assertFalse(bool(body.get("ok", True)))
            self.assertFalse(bool(body.get("success", True)))
            self.assertTrue(str(body.get("message") or "").strip())
            self.assertEqual(int(body.get("status") or 0), 404)
            self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_request_id_is_generated_and_echoed(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        uuid.UUID((res.headers.get("X-Request-ID") or "").strip())

        echoed = self.client.get("/api/health", headers={"X-Request-ID": "rid-test-123"})
        self.assertEqual(echoed.headers.get("X-Request-ID"), "rid-test-123")

    def test_workflow_error_payload_carries_trace_id(self):
        res = self.client.post("/functions/v1/commit-to-sale", json={"order_id": "x"})
        self.assertEqual(res.status_code, 401)
        body = res.get_json(force=True) or {}
        self.assertEqual(body.get("error"), "UNAUTHORIZED")
        self.assertEqual((body.get("trace_id") or "").strip(), (res.headers.get("X-Request-ID") or "").strip())

    def test_health_test_reports_database(self):
        res = self.client.get("/functions/v1/health-test")
        self.assertEqual(res.status_code, 200)
        self.assertTrue((res.get_json() or {}).get("success"))

    def test_checkout_commit_and_inline_pickup(self):
        seller_id, seller_token = self._user("seller")
        _, buyer_token = self._user("buyer")
        book_id = self._book(seller_id)

        created = self.client.post(
            "/functions/v1/create-order",
            json={"book_id": book_id, "payment_reference": f"PAY-{uuid.uuid4().hex[:8]}", "delivery_fee": 85},
            headers=self._auth(buyer_token),
        )
        self.assertEqual(created.status_code, 201)
        order = (created.get_json() or {}).get("order") or {}
        self.assertEqual(order.get("status"), "pending_commit")
        order_id = order["id"]

        committed = self.client.post(
            "/functions/v1/commit-to-sale",
            json={"order_id": order_id, "seller_id": seller_id},
            headers=self._auth(seller_token),
        )
        self.assertEqual(committed.status_code, 200)
        body = committed.get_json() or {}
        self.assertTrue(body.get("success"))
        self.assertEqual((body.get("data") or {}).get("status"), "committed")

        again = self.client.post(
            "/functions/v1/commit-to-sale",
            json={"order_id": order_id},
            headers=self._auth(seller_token),
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual((again.get_json() or {}).get("error"), "ALREADY_COMMITTED")

        with self.app.app_context():
            row = db.session.get(Order, order_id)
            self.assertEqual(row.status, "courier_scheduled")
            self.assertTrue(row.tracking_number)
            self.assertEqual(row.escrow_status, "HELD")
            self.assertEqual(row.seller_amount_minor, 22500)
            self.assertEqual(row.platform_fee_minor, 2500)
            self.assertEqual(Notification.query.filter_by(order_id=order_id, type="pickup_scheduled").count(), 1)

        detail = self.client.get(f"/api/orders/{order_id}", headers=self._auth(buyer_token))
        self.assertEqual(detail.status_code, 200)
        split = self.client.get(f"/api/orders/{order_id}/split", headers=self._auth(seller_token))
        self.assertEqual(split.status_code, 200)

    def _pending_order(self, buyer_token: str, book_id: str, **extra) -> str:
        created = self.client.post(
            "/functions/v1/create-order",
            json={"book_id": book_id, "payment_reference": f"PAY-{uuid.uuid4().hex[:8]}", **extra},
            headers=self._auth(buyer_token),
        )
        self.assertEqual(created.status_code, 201)
        return ((created.get_json() or {}).get("order") or {})["id"]

    def test_commit_keeps_locker_delivery_chosen_at_checkout(self):
        seller_id, seller_token = self._user("seller")
        _, buyer_token = self._user("buyer")
        order_id = self._pending_order(buyer_token, self._book(seller_id), delivery_method="locker", locker_id="LKR-CPT-04")

        committed = self.client.post("/functions/v1/commit-to-sale", json={"order_id": order_id}, headers=self._auth(seller_token))
        self.assertEqual(committed.status_code, 200)
        data = (committed.get_json() or {}).get("data") or {}
        self.assertEqual(data.get("status"), "committed")
        self.assertEqual(data.get("delivery_method"), "locker")

        with self.app.app_context():
            row = db.session.get(Order, order_id)
            self.assertEqual(row.status, "committed")
            self.assertEqual(row.delivery_method, "locker")
            self.assertEqual(row.locker_id, "LKR-CPT-04")
            self.assertEqual(row.delivery_status, "awaiting_locker_dropoff")
            self.assertEqual(Notification.query.filter_by(order_id=order_id, type="pickup_scheduled").count(), 0)

    def test_enhanced_commit_requires_delivery_method(self):
        seller_id, seller_token = self._user("seller")
        _, buyer_token = self._user("buyer")
        order_id = self._pending_order(buyer_token, self._book(seller_id))

        res = self.client.post("/functions/v1/enhanced-commit-to-sale", json={"order_id": order_id}, headers=self._auth(seller_token))
        self.assertEqual(res.status_code, 400)
        body = res.get_json() or {}
        self.assertEqual(body.get("error"), "VALIDATION_ERROR")
        self.assertIn("delivery_method", body.get("message") or "")

        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "pending_commit")

        ok = self.client.post(
            "/functions/v1/enhanced-commit-to-sale",
            json={"order_id": order_id, "delivery_method": "home"},
            headers=self._auth(seller_token),
        )
        self.assertEqual(ok.status_code, 200)

    def test_seller_cannot_act_for_another_seller(self):
        seller_id, _ = self._user("seller")
        _, intruder_token = self._user("seller")
        res = self.client.post(
            "/functions/v1/commit-to-sale",
            json={"order_id": "any", "seller_id": seller_id},
            headers=self._auth(intruder_token),
        )
        self.assertEqual(res.status_code, 403)
        self.assertEqual((res.get_json() or {}).get("error"), "FORBIDDEN")

    def test_refund_management_requires_admin(self):
        _, buyer_token = self._user("buyer")
        res = self.client.post("/functions/v1/refund-management", json={"order_id": "any"}, headers=self._auth(buyer_token))
        self.assertEqual(res.status_code, 403)

    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            init_sentry(app)


if __name__ == "__main__":
    unittest.main()
