from __future__ import annotations

import os
import unittest
import uuid
from datetime import datetime, timedelta

from app import create_app
from app.extensions import db
from app.integrations.courier.mock_provider import MockCourierClient
from app.models import Book, Notification, Order, OrderEvent, PlatformEvent, User
from app.services.commit_handler import CommitCommandHandler, CommitTransport, DirectCommitTransport
from app.services.commit_service import CommitCommand, CommitOutcome, commit_to_sale
from app.services.container import override
from app.services.errors import ErrorKind, WorkflowError
from app.services.stores import SqlOrderStore


class LosingRaceStore(SqlOrderStore):
    """Another request commits the order between our read and our update."""

    def transition(self, order_id, from_statuses, to_status, values=None):
        super().transition(order_id, from_statuses, to_status, values)
        super().commit()
        return super().transition(order_id, from_statuses, to_status, values)


class DownPrimary(CommitTransport):
    name = "primary"

    def __init__(self):
        self.calls = 0

    def is_available(self) -> bool:
        return False

    def commit(self, command):
        self.calls += 1
        raise AssertionError("primary must not be used when its probe fails")


class UpPrimary(CommitTransport):
    name = "primary"

    def commit(self, command):
        return CommitOutcome(order={"id": command.order_id, "status": "committed"}, via=self.name)


class CommitWorkflowTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._db_env = {k: os.environ.get(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL")}
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
            override(courier=MockCourierClient())

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._db_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _seed_order(self, *, created_at: datetime | None = None, method: str = "home") -> Order:
        suffix = uuid.uuid4().hex[:10]
        seller = User(name="Seller", email=f"seller-{suffix}@rebooked.test", role="seller")
        buyer = User(name="Buyer", email=f"buyer-{suffix}@rebooked.test", role="buyer")
        db.session.add_all([seller, buyer])
        db.session.flush()
        book = Book(seller_id=seller.id, title="Organic Chemistry 9th Ed", price=100.0, sold=True)
        db.session.add(book)
        db.session.flush()
        order = Order(
            buyer_id=buyer.id,
            seller_id=seller.id,
            book_id=book.id,
            status="pending_commit",
            delivery_method=method,
            amount=100.0,
            delivery_fee=60.0,
            total_amount=160.0,
            payment_reference=f"PAY-{suffix}",
            escrow_status="HELD",
            created_at=created_at or datetime.utcnow(),
        )
        db.session.add(order)
        db.session.commit()
        return order

    def test_home_commit_moves_to_committed_with_one_buyer_notification(self):
        with self.app.app_context():
            now = datetime.utcnow()
            order = self._seed_order(created_at=now - timedelta(hours=2))
            outcome = commit_to_sale(CommitCommand(order_id=order.id, seller_id=order.seller_id), now=now)

            self.assertEqual(outcome.order["status"], "committed")
            self.assertEqual(outcome.warnings, [])
            row = db.session.get(Order, order.id)
            self.assertEqual(row.status, "committed")
            self.assertEqual(row.committed_at, now)
            self.assertEqual(row.estimated_payment_date, now + timedelta(days=7))
            self.assertEqual(row.version, 2)
            notes = Notification.query.filter_by(order_id=order.id, type="order_committed").all()
            self.assertEqual(len(notes), 1)
            self.assertEqual(notes[0].user_id, order.buyer_id)
            self.assertEqual(OrderEvent.query.filter_by(order_id=order.id, event="committed").count(), 1)

    def test_second_commit_reports_already_committed(self):
        with self.app.app_context():
            order = self._seed_order()
            command = CommitCommand(order_id=order.id, seller_id=order.seller_id)
            commit_to_sale(command)
            with self.assertRaises(WorkflowError) as ctx:
                commit_to_sale(command)
            self.assertEqual(ctx.exception.kind, ErrorKind.ALREADY_COMMITTED)
            self.assertEqual(Notification.query.filter_by(order_id=order.id, type="order_committed").count(), 1)

    def test_lost_race_reports_already_committed_without_side_effects(self):
        with self.app.app_context():
            order = self._seed_order()
            with self.assertRaises(WorkflowError) as ctx:
                commit_to_sale(CommitCommand(order_id=order.id, seller_id=order.seller_id), store=LosingRaceStore())
            self.assertEqual(ctx.exception.kind, ErrorKind.ALREADY_COMMITTED)
            self.assertEqual(db.session.get(Order, order.id).status, "committed")
            self.assertEqual(Notification.query.filter_by(order_id=order.id, type="order_committed").count(), 0)

    def test_locker_commit_books_shipment_and_accelerates_payment(self):
        with self.app.app_context():
            now = datetime.utcnow()
            order = self._seed_order(created_at=now - timedelta(hours=1), method="locker")
            command = CommitCommand(order_id=order.id, seller_id=order.seller_id, delivery_method="locker", locker_id="LKR-MOCK-001")
            outcome = commit_to_sale(command, now=now)

            self.assertIsNotNone(outcome.shipment)
            row = db.session.get(Order, order.id)
            self.assertEqual(row.estimated_payment_date, now + timedelta(days=4))
            self.assertEqual(row.locker_id, "LKR-MOCK-001")
            self.assertTrue(row.tracking_number.startswith("MOCK"))
            self.assertTrue(row.qr_code_url)

    def test_commit_after_window_is_rejected(self):
        with self.app.app_context():
            now = datetime.utcnow()
            order = self._seed_order(created_at=now - timedelta(hours=49))
            with self.assertRaises(WorkflowError) as ctx:
                commit_to_sale(CommitCommand(order_id=order.id, seller_id=order.seller_id), now=now)
            self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_STATUS)
            self.assertEqual(db.session.get(Order, order.id).status, "pending_commit")

    def test_other_seller_cannot_commit(self):
        with self.app.app_context():
            order = self._seed_order()
            with self.assertRaises(WorkflowError) as ctx:
                commit_to_sale(CommitCommand(order_id=order.id, seller_id=str(uuid.uuid4())))
            self.assertEqual(ctx.exception.kind, ErrorKind.NOT_FOUND)

    def test_locker_commit_requires_locker_id(self):
        with self.app.app_context():
            order = self._seed_order(method="locker")
            with self.assertRaises(WorkflowError) as ctx:
                commit_to_sale(CommitCommand(order_id=order.id, seller_id=order.seller_id, delivery_method="locker"))
            self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION_ERROR)

    def test_handler_uses_fallback_when_probe_fails(self):
        with self.app.app_context():
            order = self._seed_order(method="locker")
            primary = DownPrimary()
            handler = CommitCommandHandler(primary, DirectCommitTransport())
            command = CommitCommand(order_id=order.id, seller_id=order.seller_id, delivery_method="locker", locker_id="LKR-7")
            outcome = handler.handle(command)

            self.assertEqual(primary.calls, 0)
            self.assertEqual(outcome.via, "fallback")
            self.assertIn("locker_shipment_not_created", outcome.warnings)
            row = db.session.get(Order, order.id)
            self.assertEqual(row.status, "committed")
            self.assertIsNone(row.tracking_number)
            self.assertEqual(
                PlatformEvent.query.filter_by(event_type="commit_fallback_used", subject_id=order.id).count(),
                1,
            )

    def test_handler_prefers_primary_and_treats_probe_errors_as_down(self):
        with self.app.app_context():
            order = self._seed_order()
            command = CommitCommand(order_id=order.id, seller_id=order.seller_id)
            up = CommitCommandHandler(UpPrimary(), DirectCommitTransport())
            self.assertEqual(up.handle(command).via, "primary")

            def broken_probe():
                raise RuntimeError("dns failure")

            down = CommitCommandHandler(UpPrimary(), DirectCommitTransport(), probe=broken_probe)
            self.assertIsInstance(down.select(), DirectCommitTransport)


if __name__ == "__main__":
    unittest.main()
