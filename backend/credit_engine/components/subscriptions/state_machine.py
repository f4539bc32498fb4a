"""Subscription billing status per account.

Only the transitions listed in ``resolve_transition`` exist; anything else
raises ``InvalidTransition``. Events created before the subscription's
``last_event_at`` watermark are ignored as stale, which makes out-of-order
delivery safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.enums import SubscriptionStatus
from ...models.subscription import Subscription
from ...schemas.subscription import SubscriptionRead
from ...shared.utils import add_one_month, ensure_utc, to_epoch, utcnow
from ..ledger.errors import InvalidTransition
from ..ledger.store import LedgerStore, subscription_period_key
from .plans import monthly_allocation_for

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED, PAYMENT_SUCCEEDED, PAYMENT_FAILED}
)

OUTCOME_APPLIED = "applied"
OUTCOME_STALE = "stale"

S = SubscriptionStatus


class SideEffect(str, Enum):
    NONE = "none"
    GRANT = "grant"
    REVOKE = "revoke"


@dataclass(frozen=True)
class SubscriptionEvent:
    """Billing event normalized away from the processor's payload shape."""

    type: str
    account_id: int
    occurred_at: datetime
    event_id: str | None = None
    status: str | None = None
    external_subscription_id: str | None = None
    external_customer_id: str | None = None
    price_id: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool | None = None


_CANCELED_STATUSES = {"canceled", "incomplete_expired"}


def resolve_transition(current: SubscriptionStatus, event_type: str, status: str | None) -> tuple[SubscriptionStatus, SideEffect]:
    """Return ``(next_state, side_effect)`` for a known pair or raise ``InvalidTransition``."""
    status = (status or "").strip().lower() or None

    if event_type == SUBSCRIPTION_DELETED:
        return S.CANCELED, SideEffect.REVOKE

    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        if status == "active":
            return S.ACTIVE, SideEffect.GRANT
        if status in _CANCELED_STATUSES:
            return S.CANCELED, SideEffect.REVOKE
        if status in ("incomplete", "trialing") and current in (S.NONE, S.INCOMPLETE, S.TRIALING, S.CANCELED):
            return S(status), SideEffect.NONE
        if status == "past_due" and current in (S.ACTIVE, S.PAST_DUE):
            return S.PAST_DUE, SideEffect.NONE
        if status == "unpaid" and current in (S.PAST_DUE, S.UNPAID):
            return S.UNPAID, SideEffect.NONE
        raise InvalidTransition(current.value, event_type, f"status={status}")

    if event_type == PAYMENT_FAILED and current in (S.ACTIVE, S.PAST_DUE):
        return S.PAST_DUE, SideEffect.NONE

    if event_type == PAYMENT_SUCCEEDED and current in (S.PAST_DUE, S.UNPAID, S.ACTIVE):
        return S.ACTIVE, SideEffect.GRANT

    raise InvalidTransition(current.value, event_type)


class SubscriptionStateMachine:
    def __init__(self, store: LedgerStore | None = None, session_factory: Callable[[], Session] | None = None):
        self.store = store or LedgerStore()
        self.session_factory = session_factory or self.store.session_factory

    def _ensure_row(self, account_id: int) -> None:
        db = self.session_factory()
        try:
            if db.get(Subscription, account_id) is not None:
                return
            db.add(
                Subscription(
                    account_id=account_id,
                    status=S.NONE,
                    monthly_allocation=0,
                    cancel_at_period_end=False,
                )
            )
            db.commit()
        except IntegrityError:
            db.rollback()
        finally:
            db.close()

    def _lock(self, db: Session, account_id: int) -> Subscription:
        stmt = select(Subscription).where(Subscription.account_id == account_id).with_for_update()
        subscription = db.execute(stmt).scalar_one_or_none()
        if subscription is None:
            self._ensure_row(account_id)
            subscription = db.execute(stmt).scalar_one()
        return subscription

    def get(self, account_id: int) -> SubscriptionRead:
        db = self.session_factory()
        try:
            subscription = db.get(Subscription, account_id)
            if subscription is None:
                return SubscriptionRead(account_id=account_id, status=S.NONE)
            return SubscriptionRead.model_validate(subscription)
        finally:
            db.close()

    def find_account_id(
        self,
        *,
        external_subscription_id: str | None = None,
        external_customer_id: str | None = None,
    ) -> int | None:
        db = self.session_factory()
        try:
            if external_subscription_id:
                account_id = db.execute(
                    select(Subscription.account_id).where(
                        Subscription.external_subscription_id == external_subscription_id
                    )
                ).scalar_one_or_none()
                if account_id is not None:
                    return int(account_id)
            if external_customer_id:
                account_id = db.execute(
                    select(Subscription.account_id)
                    .where(Subscription.external_customer_id == external_customer_id)
                    .limit(1)
                ).scalar_one_or_none()
                if account_id is not None:
                    return int(account_id)
            return None
        finally:
            db.close()

    def _grant_period_end(self, event: SubscriptionEvent, subscription: Subscription) -> datetime:
        period_end = ensure_utc(event.current_period_end) or ensure_utc(subscription.current_period_end)
        if period_end is None:
            period_end = add_one_month(event.occurred_at)
        return period_end

    def apply(self, event: SubscriptionEvent) -> str:
        """Apply one normalized event. Returns ``"applied"`` or ``"stale"``."""
        occurred_at = ensure_utc(event.occurred_at)
        db = self.session_factory()
        try:
            subscription = self._lock(db, event.account_id)
            watermark = ensure_utc(subscription.last_event_at)
            if watermark is not None and occurred_at < watermark:
                logger.info(
                    "Ignoring stale %s created=%s watermark=%s",
                    event.type,
                    occurred_at.isoformat(),
                    watermark.isoformat(),
                    extra={"account_id": event.account_id},
                )
                db.rollback()
                return OUTCOME_STALE

            current = subscription.status or S.NONE
            target, effect = resolve_transition(current, event.type, event.status)

            if event.price_id:
                subscription.plan_price_id = event.price_id
            allocation = monthly_allocation_for(subscription.plan_price_id)

            if effect == SideEffect.GRANT:
                period_end = self._grant_period_end(event, subscription)
                self.store.grant_monthly(
                    event.account_id,
                    allocation,
                    period_end,
                    subscription_period_key(event.account_id, period_end),
                )
                subscription.current_period_end = period_end
                subscription.monthly_allocation = allocation
            elif effect == SideEffect.REVOKE and current != S.CANCELED:
                self.store.revoke_monthly(
                    event.account_id,
                    f"subscription-canceled:{event.account_id}:{event.event_id or to_epoch(occurred_at)}",
                )
                subscription.monthly_allocation = 0
                subscription.cancel_at_period_end = False

            if event.current_period_end is not None and effect != SideEffect.REVOKE:
                subscription.current_period_end = ensure_utc(event.current_period_end)
            if event.external_subscription_id:
                subscription.external_subscription_id = event.external_subscription_id
            if event.external_customer_id:
                subscription.external_customer_id = event.external_customer_id
            if event.cancel_at_period_end is not None and target != S.CANCELED:
                subscription.cancel_at_period_end = bool(event.cancel_at_period_end)

            subscription.status = target
            subscription.last_event_at = occurred_at
            subscription.updated_at = utcnow()
            db.commit()
            logger.info(
                "Subscription %s -> %s on %s effect=%s",
                current.value,
                target.value,
                event.type,
                effect.value,
                extra={"account_id": event.account_id},
            )
            return OUTCOME_APPLIED
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def set_cancel_at_period_end(self, account_id: int, flag: bool) -> SubscriptionRead:
        """User toggle; only an active subscription can be scheduled to cancel or resumed."""
        db = self.session_factory()
        try:
            subscription = self._lock(db, account_id)
            current = subscription.status or S.NONE
            if current != S.ACTIVE:
                raise InvalidTransition(
                    current.value, "cancel_at_period_end" if flag else "resume"
                )
            subscription.cancel_at_period_end = bool(flag)
            subscription.updated_at = utcnow()
            db.commit()
            logger.info("cancel_at_period_end=%s", bool(flag), extra={"account_id": account_id})
            return SubscriptionRead.model_validate(subscription)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
