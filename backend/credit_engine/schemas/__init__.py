from .credits import (
    CreditAccountSnapshot,
    CreditPackage,
    CreditPurchaseRequest,
    CreditPurchaseResponse,
    LedgerTransactionRead,
    MonthlyPool,
    PurchasedPool,
    ReservationRead,
    RolloverPool,
    TransactionPage,
)
from .subscription import SubscriptionRead, WebhookAck

__all__ = [
    "CreditAccountSnapshot",
    "CreditPackage",
    "CreditPurchaseRequest",
    "CreditPurchaseResponse",
    "LedgerTransactionRead",
    "MonthlyPool",
    "PurchasedPool",
    "ReservationRead",
    "RolloverPool",
    "TransactionPage",
    "SubscriptionRead",
    "WebhookAck",
]
