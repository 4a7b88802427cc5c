from datetime import datetime

from app.extensions import db


class SellerFine(db.Model):
    __tablename__ = "seller_fines"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=False, index=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, unique=True)

    offense_number = db.Column(db.Integer, nullable=False, default=1)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    reason = db.Column(db.String(240), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending | collected | waived

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": self.seller_id,
            "order_id": self.order_id,
            "offense_number": int(self.offense_number or 1),
            "amount": float(self.amount or 0.0),
            "reason": self.reason or "",
            "status": self.status or "pending",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
