import enum

from sqlalchemy import Enum


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLEDBACK = "rolledback"
    EXPIRED = "expired"


class LedgerKind(str, enum.Enum):
    GRANT = "grant"
    MONTHLY_RESET = "monthly_reset"
    ROLLOVER = "rollover"
    EXPIRE = "expire"
    PURCHASE = "purchase"
    SPEND = "spend"
    REFUND = "refund"
    ADMIN = "admin"


class CreditPool(str, enum.Enum):
    MONTHLY = "monthly"
    ROLLOVER = "rollover"
    PURCHASED = "purchased"


class SubscriptionStatus(str, enum.Enum):
    NONE = "none"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


def value_enum(enum_cls) -> Enum:
    """Store enum values (not member names) in a portable VARCHAR column."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )
