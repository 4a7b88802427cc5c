from datetime import datetime

from app.extensions import db


class BankingSubaccount(db.Model):
    __tablename__ = "banking_subaccounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=False, index=True)

    business_name = db.Column(db.String(160), nullable=False, default="")
    email = db.Column(db.String(255), nullable=True)

    # base64(iv + AES-GCM ciphertext), see app.utils.crypto
    encrypted_account_number = db.Column(db.Text, nullable=True)
    encrypted_bank_code = db.Column(db.Text, nullable=True)
    encrypted_bank_name = db.Column(db.Text, nullable=True)
    encrypted_subaccount_code = db.Column(db.Text, nullable=True)
    encryption_salt = db.Column(db.String(64), nullable=True)
    encryption_key_hash = db.Column(db.String(64), nullable=True)

    subaccount_code = db.Column(db.String(64), nullable=True, index=True)
    recipient_code = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="active")  # active | inactive

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deactivated_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        # Never exposes ciphertext or key material.
        return {
            "id": int(self.id),
            "user_id": self.user_id,
            "business_name": self.business_name or "",
            "email": self.email or "",
            "subaccount_code": self.subaccount_code or "",
            "has_recipient": bool(self.recipient_code),
            "status": self.status or "active",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
