import uuid
from datetime import datetime

from app.extensions import db


def _uuid() -> str:
    return str(uuid.uuid4())


class User(db.Model):
    __tablename__ = "profiles"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    role = db.Column(db.String(32), nullable=False, default="buyer")  # buyer | seller | admin

    # Set once a third fine is issued; cleared by an admin after review.
    suspension_review = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_admin(self) -> bool:
        return (self.role or "").strip().lower() == "admin"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone or "",
            "role": self.role or "buyer",
            "suspension_review": bool(self.suspension_review),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
