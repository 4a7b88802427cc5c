from __future__ import annotations

import os

from app.integrations.http import JsonHttpClient
from app.integrations.payments.base import (
    PaymentsProvider,
    PaymentInitializeResult,
    PaymentVerifyResult,
    RefundResult,
    SubaccountResult,
    TransferResult,
)

PAYSTACK_BASE_URL = "https://api.paystack.co"

_REFUND_STATUS = {
    "pending": "pending",
    "processing": "processing",
    "processed": "success",
    "success": "success",
    "failed": "failed",
    "needs-attention": "failed",
    "reversed": "failed",
}


def map_refund_status(raw_status: str) -> str:
    return _REFUND_STATUS.get((raw_status or "").strip().lower(), "pending")


def _to_minor(amount: float) -> int:
    return int(round(float(amount) * 100))


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, timeout: float = 30.0, retries: int = 2, retry_delay: float = 1.0, client: JsonHttpClient | None = None):
        self.secret_key = secret_key
        self.client = client or JsonHttpClient(
            provider=self.name,
            base_url=PAYSTACK_BASE_URL,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            retries=retries,
            retry_delay=retry_delay,
        )

    def _call(self, method: str, path: str, payload: dict | None = None) -> dict:
        j = self.client.request(method, path, json=payload, check_status_flag=True)
        data = j.get("data")
        return data if isinstance(data, dict) else {"items": data}

    def initialize(self, *, order_id: str | None, amount: float, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        payload = {
            "email": email,
            "amount": _to_minor(amount),
            "reference": reference,
            "currency": "ZAR",
            "metadata": dict(metadata or {}, order_id=order_id),
        }
        callback_url = (os.getenv("PAYSTACK_CALLBACK_URL") or "").strip()
        if callback_url:
            payload["callback_url"] = callback_url
        data = self._call("POST", "/transaction/initialize", payload)
        return PaymentInitializeResult(
            authorization_url=(data.get("authorization_url") or "").strip(),
            reference=(data.get("reference") or reference).strip(),
            provider=self.name,
            raw=data,
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        data = self._call("GET", f"/transaction/verify/{(reference or '').strip()}")
        customer_email = ((data.get("customer") or {}).get("email") or "").strip()
        return PaymentVerifyResult(
            status=(data.get("status") or "").strip().lower(),
            amount=float(data.get("amount") or 0) / 100.0,
            currency=(data.get("currency") or "ZAR").strip().upper(),
            customer=customer_email,
            raw=data,
        )

    def refund(self, *, transaction_reference: str, amount: float, reason: str) -> RefundResult:
        data = self._call(
            "POST",
            "/refund",
            {
                "transaction": transaction_reference,
                "amount": _to_minor(amount),
                "merchant_note": (reason or "")[:240],
            },
        )
        return self._refund_result(data, fallback_amount=amount)

    def fetch_refund(self, refund_reference: str) -> RefundResult:
        data = self._call("GET", f"/refund/{refund_reference}")
        return self._refund_result(data, fallback_amount=0.0)

    def _refund_result(self, data: dict, *, fallback_amount: float) -> RefundResult:
        amount_minor = data.get("amount")
        return RefundResult(
            refund_reference=str(data.get("id") or data.get("refund_reference") or ""),
            status=map_refund_status(data.get("status") or ""),
            amount=float(amount_minor) / 100.0 if amount_minor is not None else float(fallback_amount),
            raw=data,
        )

    def create_subaccount(self, *, business_name: str, bank_code: str, account_number: str, percentage_charge: float, email: str = "") -> SubaccountResult:
        payload = {
            "business_name": business_name,
            "settlement_bank": bank_code,
            "account_number": account_number,
            "percentage_charge": percentage_charge,
        }
        if email:
            payload["primary_contact_email"] = email
        data = self._call("POST", "/subaccount", payload)
        return SubaccountResult(subaccount_code=(data.get("subaccount_code") or "").strip(), raw=data)

    def update_subaccount(self, subaccount_code: str, *, business_name: str, bank_code: str, account_number: str) -> SubaccountResult:
        data = self._call(
            "PUT",
            f"/subaccount/{subaccount_code}",
            {"business_name": business_name, "settlement_bank": bank_code, "account_number": account_number},
        )
        return SubaccountResult(subaccount_code=(data.get("subaccount_code") or subaccount_code).strip(), raw=data)

    def create_transfer_recipient(self, *, name: str, account_number: str, bank_code: str) -> str:
        data = self._call(
            "POST",
            "/transferrecipient",
            {"type": "basa", "name": name, "account_number": account_number, "bank_code": bank_code, "currency": "ZAR"},
        )
        return (data.get("recipient_code") or "").strip()

    def transfer(self, *, amount_minor: int, recipient_code: str, reference: str, reason: str) -> TransferResult:
        data = self._call(
            "POST",
            "/transfer",
            {
                "source": "balance",
                "amount": int(amount_minor),
                "recipient": recipient_code,
                "reference": reference,
                "reason": (reason or "")[:240],
                "currency": "ZAR",
            },
        )
        return TransferResult(
            transfer_code=(data.get("transfer_code") or "").strip(),
            status=(data.get("status") or "pending").strip().lower(),
            raw=data,
        )

    def ping(self) -> bool:
        self.client.request("GET", "/bank", params={"country": "south africa", "perPage": 1}, check_status_flag=True)
        return True
