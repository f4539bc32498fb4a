from .enums import CreditPool, LedgerKind, ReservationStatus, SubscriptionStatus
from .user import User
from .credit_account import CreditAccount
from .reservation import Reservation
from .ledger_transaction import LedgerTransaction
from .subscription import Subscription
from .webhook_event import WebhookEvent

__all__ = [
    "CreditPool",
    "LedgerKind",
    "ReservationStatus",
    "SubscriptionStatus",
    "User",
    "CreditAccount",
    "Reservation",
    "LedgerTransaction",
    "Subscription",
    "WebhookEvent",
]
