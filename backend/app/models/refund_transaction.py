import json
from datetime import datetime

from app.extensions import db


class RefundTransaction(db.Model):
    __tablename__ = "refund_transactions"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)

    transaction_reference = db.Column(db.String(128), nullable=True)
    refund_reference = db.Column(db.String(128), nullable=True, index=True)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    reason = db.Column(db.String(500), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending")  # pending | processing | success | failed
    error_message = db.Column(db.Text, nullable=True)
    gateway_response = db.Column(db.Text, nullable=True)  # JSON string

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    def gateway_dict(self) -> dict:
        raw = (self.gateway_response or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": self.order_id,
            "transaction_reference": self.transaction_reference or "",
            "refund_reference": self.refund_reference or "",
            "amount": float(self.amount or 0.0),
            "reason": self.reason or "",
            "status": self.status or "pending",
            "error_message": self.error_message or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
