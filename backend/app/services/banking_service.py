from __future__ import annotations

import re
from datetime import datetime

from flask import current_app

from app.extensions import db
from app.integrations.common import GatewayError
from app.integrations.payments.base import PaymentsProvider
from app.models import BankingSubaccount, User
from app.services.container import get_payments
from app.services.errors import ErrorKind, WorkflowError
from app.utils.crypto import BankingCipher, BankingCipherError
from app.utils.events import log_event
from app.utils.settings import get_settings

ACCOUNT_NUMBER_RE = re.compile(r"^\d{9,11}$")


def mask_account_number(account_number: str | None) -> str:
    digits = (account_number or "").strip()
    if len(digits) <= 4:
        return digits
    return "*" * (len(digits) - 4) + digits[-4:]


def _clean(fields: dict) -> dict:
    out = {
        "business_name": str(fields.get("business_name") or "").strip(),
        "bank_code": str(fields.get("bank_code") or "").strip(),
        "bank_name": str(fields.get("bank_name") or "").strip(),
        "account_number": re.sub(r"\s+", "", str(fields.get("account_number") or "")),
        "email": str(fields.get("email") or "").strip(),
    }
    missing = [k for k in ("business_name", "bank_code", "account_number") if not out[k]]
    if missing:
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, f"Missing required fields: {', '.join(missing)}", details={"missing": missing})
    if not ACCOUNT_NUMBER_RE.match(out["account_number"]):
        raise WorkflowError(ErrorKind.VALIDATION_ERROR, "Account number must be 9 to 11 digits")
    return out


def get_subaccount(user_id: str) -> BankingSubaccount | None:
    return (
        BankingSubaccount.query.filter_by(user_id=str(user_id), status="active")
        .order_by(BankingSubaccount.id.desc())
        .first()
    )


def _seal(row: BankingSubaccount, fields: dict, subaccount_code: str) -> None:
    # fresh salt on every write
    cipher = BankingCipher.for_new_record()
    row.encryption_salt = cipher.salt
    row.encryption_key_hash = cipher.key_hash
    row.encrypted_account_number = cipher.encrypt(fields["account_number"])
    row.encrypted_bank_code = cipher.encrypt(fields["bank_code"])
    row.encrypted_bank_name = cipher.encrypt(fields["bank_name"])
    row.encrypted_subaccount_code = cipher.encrypt(subaccount_code)


def setup_subaccount(user_id: str, fields: dict, *, payments: PaymentsProvider | None = None) -> BankingSubaccount:
    if get_subaccount(user_id) is not None:
        return update_subaccount(user_id, fields, payments=payments)
    data = _clean(fields)
    user = User.query.get(str(user_id))
    if user is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "User not found")

    payments = payments or get_payments()
    commission_pct = get_settings().platform_commission_bps / 100.0
    try:
        sub = payments.create_subaccount(
            business_name=data["business_name"],
            bank_code=data["bank_code"],
            account_number=data["account_number"],
            percentage_charge=commission_pct,
            email=data["email"] or user.email or "",
        )
        recipient_code = payments.create_transfer_recipient(
            name=data["business_name"],
            account_number=data["account_number"],
            bank_code=data["bank_code"],
        )
    except GatewayError as e:
        current_app.logger.warning("subaccount_create_failed user_id=%s failure=%s", user_id, e.failure.value)
        raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Payment provider rejected banking details: {e.message}", details=e.to_dict()) from e

    row = BankingSubaccount(
        user_id=str(user_id),
        business_name=data["business_name"],
        email=data["email"] or user.email,
        subaccount_code=sub.subaccount_code,
        recipient_code=recipient_code,
        status="active",
    )
    _seal(row, data, sub.subaccount_code)
    db.session.add(row)
    db.session.flush()
    log_event("banking_subaccount_created", actor_user_id=user_id, subject_type="banking_subaccount", subject_id=row.id)
    db.session.commit()
    current_app.logger.info("subaccount_created user_id=%s code=%s", user_id, sub.subaccount_code)
    return row


def update_subaccount(user_id: str, fields: dict, *, payments: PaymentsProvider | None = None) -> BankingSubaccount:
    row = get_subaccount(user_id)
    if row is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "No active banking details")
    current = decrypt_banking_details(user_id)
    merged = {
        "business_name": fields.get("business_name") or row.business_name,
        "bank_code": fields.get("bank_code") or current["bank_code"],
        "bank_name": fields.get("bank_name") or current["bank_name"],
        "account_number": fields.get("account_number") or current["account_number"],
        "email": fields.get("email") or row.email,
    }
    data = _clean(merged)

    payments = payments or get_payments()
    try:
        sub = payments.update_subaccount(
            row.subaccount_code,
            business_name=data["business_name"],
            bank_code=data["bank_code"],
            account_number=data["account_number"],
        )
        if data["account_number"] != current["account_number"] or data["bank_code"] != current["bank_code"]:
            row.recipient_code = payments.create_transfer_recipient(
                name=data["business_name"],
                account_number=data["account_number"],
                bank_code=data["bank_code"],
            )
    except GatewayError as e:
        db.session.rollback()
        raise WorkflowError(ErrorKind.GATEWAY_ERROR, f"Payment provider rejected banking details: {e.message}", details=e.to_dict()) from e

    row.business_name = data["business_name"]
    row.email = data["email"] or row.email
    row.subaccount_code = sub.subaccount_code or row.subaccount_code
    _seal(row, data, row.subaccount_code)
    row.updated_at = datetime.utcnow()
    log_event("banking_subaccount_updated", actor_user_id=user_id, subject_type="banking_subaccount", subject_id=row.id)
    db.session.commit()
    return row


def decrypt_banking_details(user_id: str) -> dict:
    """Plain banking fields of the user's own active record."""
    row = get_subaccount(user_id)
    if row is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "No active banking details")
    cipher = BankingCipher(row.encryption_salt, expected_key_hash=row.encryption_key_hash)
    return {
        "business_name": row.business_name,
        "email": row.email or "",
        "account_number": cipher.decrypt(row.encrypted_account_number) or "",
        "bank_code": cipher.decrypt(row.encrypted_bank_code) or "",
        "bank_name": cipher.decrypt(row.encrypted_bank_name) or "",
        "subaccount_code": cipher.decrypt(row.encrypted_subaccount_code) or row.subaccount_code or "",
    }


def deactivate_subaccount(user_id: str) -> BankingSubaccount:
    row = get_subaccount(user_id)
    if row is None:
        raise WorkflowError(ErrorKind.NOT_FOUND, "No active banking details")
    row.status = "inactive"
    row.deactivated_at = datetime.utcnow()
    log_event("banking_subaccount_deactivated", actor_user_id=user_id, subject_type="banking_subaccount", subject_id=row.id)
    db.session.commit()
    return row


def subaccount_summary(row: BankingSubaccount) -> dict:
    out = row.to_dict()
    try:
        cipher = BankingCipher(row.encryption_salt, expected_key_hash=row.encryption_key_hash)
        out["account_number_masked"] = mask_account_number(cipher.decrypt(row.encrypted_account_number))
        out["bank_name"] = cipher.decrypt(row.encrypted_bank_name) or ""
    except BankingCipherError as e:
        current_app.logger.warning("banking_summary_decrypt_failed id=%s err=%s", row.id, e)
        out["account_number_masked"] = ""
    return out
