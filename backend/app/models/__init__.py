from app.models.user import User
from app.models.book import Book
from app.models.order import Order
from app.models.order_event import OrderEvent
from app.models.refund_transaction import RefundTransaction
from app.models.banking_subaccount import BankingSubaccount
from app.models.notification import Notification
from app.models.escrow_transition import EscrowTransition
from app.models.seller_fine import SellerFine
from app.models.platform_event import PlatformEvent
from app.models.job_run import JobRun
from app.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "Book",
    "Order",
    "OrderEvent",
    "RefundTransaction",
    "BankingSubaccount",
    "Notification",
    "EscrowTransition",
    "SellerFine",
    "PlatformEvent",
    "JobRun",
    "WebhookEvent",
]
