from datetime import datetime

from app.extensions import db


class OrderEvent(db.Model):
    __tablename__ = "order_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    actor_user_id = db.Column(db.String(36), nullable=True)

    event = db.Column(db.String(64), nullable=False)
    note = db.Column(db.String(240), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=True, unique=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": self.order_id,
            "actor_user_id": self.actor_user_id,
            "event": self.event,
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
