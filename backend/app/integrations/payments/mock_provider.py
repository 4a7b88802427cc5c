from __future__ import annotations

import hashlib

from app.integrations.payments.base import (
    PaymentsProvider,
    PaymentInitializeResult,
    PaymentVerifyResult,
    RefundResult,
    SubaccountResult,
    TransferResult,
)


def _short(*parts) -> str:
    return hashlib.sha1(":".join(str(p) for p in parts).encode("utf-8")).hexdigest()[:12]


class MockPaymentsProvider(PaymentsProvider):
    name = "mock"

    def initialize(self, *, order_id: str | None, amount: float, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        url = f"https://example.com/mock/pay?reference={reference}&order_id={order_id or ''}"
        return PaymentInitializeResult(
            authorization_url=url,
            reference=reference,
            provider=self.name,
            raw={"order_id": order_id, "amount": amount, "email": email, "metadata": metadata or {}},
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        return PaymentVerifyResult(
            status="success",
            amount=0.0,
            currency="ZAR",
            customer="mock",
            raw={"reference": reference, "provider": self.name},
        )

    def refund(self, *, transaction_reference: str, amount: float, reason: str) -> RefundResult:
        return RefundResult(
            refund_reference=f"mock_refund_{_short(transaction_reference, amount)}",
            status="success",
            amount=float(amount),
            raw={"transaction": transaction_reference, "reason": reason, "provider": self.name},
        )

    def fetch_refund(self, refund_reference: str) -> RefundResult:
        return RefundResult(refund_reference=refund_reference, status="success", amount=0.0, raw={"provider": self.name})

    def create_subaccount(self, *, business_name: str, bank_code: str, account_number: str, percentage_charge: float, email: str = "") -> SubaccountResult:
        return SubaccountResult(subaccount_code=f"ACCT_mock{_short(business_name, account_number)}", raw={"provider": self.name})

    def update_subaccount(self, subaccount_code: str, *, business_name: str, bank_code: str, account_number: str) -> SubaccountResult:
        return SubaccountResult(subaccount_code=subaccount_code, raw={"provider": self.name})

    def create_transfer_recipient(self, *, name: str, account_number: str, bank_code: str) -> str:
        return f"RCP_mock{_short(name, account_number, bank_code)}"

    def transfer(self, *, amount_minor: int, recipient_code: str, reference: str, reason: str) -> TransferResult:
        return TransferResult(transfer_code=f"TRF_mock{_short(reference)}", status="success", raw={"amount": amount_minor})
