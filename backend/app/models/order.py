from datetime import datetime

from app.extensions import db
from app.models.user import _uuid


def _iso(value):
    return value.isoformat() if value else None


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)

    buyer_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=False, index=True)
    seller_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=False, index=True)
    book_id = db.Column(db.String(36), db.ForeignKey("books.id"), nullable=True, index=True)

    # pending_commit | committed | courier_scheduled | shipped | completed | cancelled | refunded
    status = db.Column(db.String(32), nullable=False, default="pending_commit", index=True)
    delivery_method = db.Column(db.String(16), nullable=False, default="home")  # home | locker

    amount = db.Column(db.Float, nullable=False, default=0.0)
    delivery_fee = db.Column(db.Float, nullable=False, default=0.0)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    payment_reference = db.Column(db.String(128), nullable=True, index=True)

    committed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    declined_at = db.Column(db.DateTime, nullable=True)
    decline_reason = db.Column(db.String(500), nullable=True)
    cancellation_reason = db.Column(db.String(500), nullable=True)

    locker_id = db.Column(db.String(64), nullable=True)
    tracking_number = db.Column(db.String(128), nullable=True, index=True)
    shipment_id = db.Column(db.String(128), nullable=True, index=True)
    waybill_url = db.Column(db.String(1024), nullable=True)
    qr_code_url = db.Column(db.String(1024), nullable=True)
    delivery_status = db.Column(db.String(64), nullable=True)
    tracking_data_json = db.Column(db.Text, nullable=True)
    estimated_payment_date = db.Column(db.DateTime, nullable=True)
    collected_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)

    refund_status = db.Column(db.String(24), nullable=True)
    refund_reference = db.Column(db.String(128), nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    # NONE | HELD | RELEASED | REFUNDED | DISPUTED
    escrow_status = db.Column(db.String(16), nullable=False, default="NONE")
    escrow_held_at = db.Column(db.DateTime, nullable=True)
    escrow_released_at = db.Column(db.DateTime, nullable=True)
    seller_amount_minor = db.Column(db.Integer, nullable=False, default=0)
    platform_fee_minor = db.Column(db.Integer, nullable=False, default=0)
    payout_reference = db.Column(db.String(128), nullable=True)

    dispute_status = db.Column(db.String(16), nullable=True)  # open | resolved_refund | resolved_release
    dispute_reason = db.Column(db.String(500), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "book_id": self.book_id,
            "status": self.status or "pending_commit",
            "delivery_method": self.delivery_method or "home",
            "amount": float(self.amount or 0.0),
            "delivery_fee": float(self.delivery_fee or 0.0),
            "total_amount": float(self.total_amount or 0.0),
            "payment_reference": self.payment_reference or "",
            "committed_at": _iso(self.committed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "declined_at": _iso(self.declined_at),
            "decline_reason": self.decline_reason or "",
            "cancellation_reason": self.cancellation_reason or "",
            "locker_id": self.locker_id,
            "tracking_number": self.tracking_number,
            "shipment_id": self.shipment_id,
            "waybill_url": self.waybill_url,
            "qr_code_url": self.qr_code_url,
            "delivery_status": self.delivery_status,
            "estimated_payment_date": _iso(self.estimated_payment_date),
            "collected_at": _iso(self.collected_at),
            "delivered_at": _iso(self.delivered_at),
            "refund_status": self.refund_status,
            "refund_reference": self.refund_reference,
            "refunded_at": _iso(self.refunded_at),
            "escrow_status": self.escrow_status or "NONE",
            "seller_amount_minor": int(self.seller_amount_minor or 0),
            "platform_fee_minor": int(self.platform_fee_minor or 0),
            "payout_reference": self.payout_reference,
            "dispute_status": self.dispute_status,
            "version": int(self.version or 1),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
