from datetime import datetime

from app.extensions import db
from app.models.user import _uuid


class Book(db.Model):
    __tablename__ = "books"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    seller_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False, default="")
    author = db.Column(db.String(255), nullable=True)
    price = db.Column(db.Float, nullable=False, default=0.0)

    sold = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "title": self.title or "",
            "author": self.author or "",
            "price": float(self.price or 0.0),
            "sold": bool(self.sold),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
