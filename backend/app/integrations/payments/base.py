from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentInitializeResult:
    authorization_url: str
    reference: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    status: str
    amount: float
    currency: str
    customer: str
    raw: dict | None = None


@dataclass
class RefundResult:
    refund_reference: str
    status: str  # pending | processing | success | failed
    amount: float
    raw: dict | None = None


@dataclass
class SubaccountResult:
    subaccount_code: str
    raw: dict | None = None


@dataclass
class TransferResult:
    transfer_code: str
    status: str
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def initialize(self, *, order_id: str | None, amount: float, email: str, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        raise NotImplementedError

    def verify(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def refund(self, *, transaction_reference: str, amount: float, reason: str) -> RefundResult:
        raise NotImplementedError

    def fetch_refund(self, refund_reference: str) -> RefundResult:
        raise NotImplementedError

    def create_subaccount(self, *, business_name: str, bank_code: str, account_number: str, percentage_charge: float, email: str = "") -> SubaccountResult:
        raise NotImplementedError

    def update_subaccount(self, subaccount_code: str, *, business_name: str, bank_code: str, account_number: str) -> SubaccountResult:
        raise NotImplementedError

    def create_transfer_recipient(self, *, name: str, account_number: str, bank_code: str) -> str:
        raise NotImplementedError

    def transfer(self, *, amount_minor: int, recipient_code: str, reference: str, reason: str) -> TransferResult:
        raise NotImplementedError

    def ping(self) -> bool:
        return True
