"""Authenticated, deduplicated intake for Stripe webhook deliveries.

Two idempotency layers apply: the ``webhook_events`` table skips a delivery
that was already processed, and the ledger's uniqueness constraints keep the
effect single even when that check is raced or bypassed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.user import User
from ...models.webhook_event import WebhookEvent
from ...platform.config import settings
from ...platform.request_context import reset_webhook_event_id, set_webhook_event_id
from ...shared.utils import from_epoch, utcnow
from ..ledger.errors import (
    DuplicateWebhookEvent,
    InvalidTransition,
    InvalidWebhookSignature,
    UnknownAccount,
)
from ..ledger.store import LedgerStore
from ..subscriptions.state_machine import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_EVENT_TYPES,
    SUBSCRIPTION_UPDATED,
    SubscriptionEvent,
    SubscriptionStateMachine,
)
from .purchases import apply_charge_refund, apply_credit_purchase

logger = logging.getLogger(__name__)

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
CHARGE_REFUNDED = "charge.refunded"

STRIPE_EVENT_TYPES = {
    "customer.subscription.created": SUBSCRIPTION_CREATED,
    "customer.subscription.updated": SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": SUBSCRIPTION_DELETED,
    "invoice.paid": PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": PAYMENT_SUCCEEDED,
    "invoice.payment_failed": PAYMENT_FAILED,
}

OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_REJECTED = "rejected"


def normalize_event_type(raw_type: str) -> str:
    raw_type = str(raw_type or "").strip()
    return STRIPE_EVENT_TYPES.get(raw_type, raw_type)


def _nested_get(payload: Any, *path: Any) -> Any:
    current: Any = payload
    for key in path:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int):
            current = current[key] if -len(current) <= key < len(current) else None
        else:
            return None
    return current


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    event_type: str
    status: str
    outcome: str | None = None

    @property
    def duplicate(self) -> bool:
        return self.status == OUTCOME_DUPLICATE


class WebhookGateway:
    def __init__(
        self,
        store: LedgerStore | None = None,
        state_machine: SubscriptionStateMachine | None = None,
        *,
        session_factory: Callable[[], Session] | None = None,
        webhook_secret: str | None = None,
        tolerance_seconds: int | None = None,
    ):
        self.store = store or LedgerStore(session_factory)
        self.state_machine = state_machine or SubscriptionStateMachine(self.store)
        self.session_factory = session_factory or self.store.session_factory
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, signature_header: str) -> dict[str, Any]:
        """Check the ``Stripe-Signature`` header and return the decoded event."""
        secret = self.webhook_secret if self.webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        tolerance = (
            self.tolerance_seconds if self.tolerance_seconds is not None else settings.WEBHOOK_TOLERANCE_SECONDS
        )
        if not secret:
            raise InvalidWebhookSignature("webhook secret is not configured")
        if not signature_header:
            raise InvalidWebhookSignature("missing signature header")
        try:
            stripe.Webhook.construct_event(payload, signature_header, secret, tolerance=tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhookSignature(str(exc)) from exc
        except ValueError as exc:
            raise InvalidWebhookSignature("invalid payload") from exc

        event = json.loads(payload)
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidWebhookSignature("payload is not an event")
        return event

    # ------------------------------------------------------------------
    # Dedup bookkeeping
    # ------------------------------------------------------------------

    def _claim(self, external_event_id: str, event_type: str) -> None:
        """Record the delivery; raise ``DuplicateWebhookEvent`` if it was already handled."""
        db = self.session_factory()
        try:
            row = db.execute(
                select(WebhookEvent).where(WebhookEvent.external_event_id == external_event_id)
            ).scalar_one_or_none()
            if row is not None:
                if row.processed_at is not None:
                    raise DuplicateWebhookEvent(external_event_id)
                row.attempts = int(row.attempts or 0) + 1
                db.commit()
                return
            db.add(
                WebhookEvent(
                    external_event_id=external_event_id,
                    type=event_type,
                    received_at=utcnow(),
                    attempts=1,
                )
            )
            try:
                db.commit()
            except IntegrityError as exc:
                # A concurrent delivery of the same event claimed it first.
                db.rollback()
                raise DuplicateWebhookEvent(external_event_id) from exc
        finally:
            db.close()

    def _finish(self, external_event_id: str, outcome: str) -> None:
        db = self.session_factory()
        try:
            row = db.execute(
                select(WebhookEvent).where(WebhookEvent.external_event_id == external_event_id)
            ).scalar_one()
            row.processed_at = utcnow()
            row.outcome = outcome
            row.last_error = None
            db.commit()
        finally:
            db.close()

    def _fail(self, external_event_id: str, exc: BaseException) -> None:
        db = self.session_factory()
        try:
            row = db.execute(
                select(WebhookEvent).where(WebhookEvent.external_event_id == external_event_id)
            ).scalar_one_or_none()
            if row is not None:
                row.last_error = f"{type(exc).__name__}: {exc}"[:2000]
                db.commit()
        finally:
            db.close()

    def _outcome_of(self, external_event_id: str) -> str | None:
        db = self.session_factory()
        try:
            return db.execute(
                select(WebhookEvent.outcome).where(WebhookEvent.external_event_id == external_event_id)
            ).scalar_one_or_none()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _resolve_account_id(
        self,
        metadata: dict[str, Any] | None,
        external_subscription_id: str | None,
        external_customer_id: str | None,
    ) -> int:
        raw = (metadata or {}).get("account_id")
        if raw not in (None, ""):
            try:
                return int(raw)
            except (TypeError, ValueError) as exc:
                raise UnknownAccount(raw) from exc
        account_id = self.state_machine.find_account_id(
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
        )
        if account_id is not None:
            return account_id
        if external_customer_id:
            db = self.session_factory()
            try:
                user_id = db.execute(
                    select(User.id).where(User.stripe_customer_id == external_customer_id)
                ).scalar_one_or_none()
            finally:
                db.close()
            if user_id is not None:
                return int(user_id)
        raise UnknownAccount(external_subscription_id or external_customer_id)

    def _subscription_event(self, event: dict[str, Any], event_type: str) -> SubscriptionEvent:
        obj = _nested_get(event, "data", "object") or {}
        occurred_at = from_epoch(event.get("created")) or utcnow()

        if event_type in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
            subscription_id = obj.get("subscription") or _nested_get(
                obj, "parent", "subscription_details", "subscription"
            )
            metadata = (
                _nested_get(obj, "subscription_details", "metadata")
                or _nested_get(obj, "parent", "subscription_details", "metadata")
                or obj.get("metadata")
            )
            line = _nested_get(obj, "lines", "data", 0) or {}
            period_end = from_epoch(_nested_get(line, "period", "end"))
            price_id = _nested_get(line, "price", "id") or _nested_get(
                line, "pricing", "price_details", "price"
            )
            status = None
            cancel_at_period_end = None
        else:
            subscription_id = obj.get("id")
            metadata = obj.get("metadata")
            item = _nested_get(obj, "items", "data", 0) or {}
            period_end = from_epoch(obj.get("current_period_end") or item.get("current_period_end"))
            price_id = _nested_get(item, "price", "id")
            status = obj.get("status")
            cancel_at_period_end = obj.get("cancel_at_period_end")

        customer_id = obj.get("customer")
        account_id = self._resolve_account_id(metadata, subscription_id, customer_id)
        return SubscriptionEvent(
            type=event_type,
            account_id=account_id,
            occurred_at=occurred_at,
            event_id=str(event.get("id")),
            status=status,
            external_subscription_id=subscription_id,
            external_customer_id=customer_id,
            price_id=price_id,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
        )

    def dispatch(self, event: dict[str, Any]) -> str:
        """Route a verified event to its handler and return the outcome label."""
        event_type = normalize_event_type(event.get("type"))
        obj = _nested_get(event, "data", "object") or {}

        if event_type in SUBSCRIPTION_EVENT_TYPES:
            try:
                return self.state_machine.apply(self._subscription_event(event, event_type))
            except (InvalidTransition, UnknownAccount) as exc:
                logger.warning("Rejected %s: %s", event_type, exc)
                return OUTCOME_REJECTED
        if event_type == PAYMENT_INTENT_SUCCEEDED:
            return apply_credit_purchase(self.store, obj)
        if event_type == CHARGE_REFUNDED:
            return apply_charge_refund(self.store, obj)

        logger.info("Ignoring unhandled webhook type=%s", event_type)
        return OUTCOME_IGNORED

    # ------------------------------------------------------------------

    def process_event(self, event: dict[str, Any]) -> IngestResult:
        """Dedup and dispatch an already-authenticated event."""
        external_event_id = str(event["id"])
        event_type = normalize_event_type(event.get("type"))
        try:
            self._claim(external_event_id, event_type)
        except DuplicateWebhookEvent:
            logger.info("Duplicate webhook delivery event_id=%s type=%s", external_event_id, event_type)
            return IngestResult(
                event_id=external_event_id,
                event_type=event_type,
                status=OUTCOME_DUPLICATE,
                outcome=self._outcome_of(external_event_id),
            )

        token = set_webhook_event_id(external_event_id)
        try:
            outcome = self.dispatch(event)
        except Exception as exc:
            logger.exception("Webhook processing failed event_id=%s type=%s", external_event_id, event_type)
            self._fail(external_event_id, exc)
            raise
        finally:
            reset_webhook_event_id(token)

        self._finish(external_event_id, outcome)
        logger.info("Processed webhook event_id=%s type=%s outcome=%s", external_event_id, event_type, outcome)
        return IngestResult(
            event_id=external_event_id,
            event_type=event_type,
            status="processed",
            outcome=outcome,
        )

    def ingest(self, payload: bytes, signature_header: str) -> IngestResult:
        event = self.verify(payload, signature_header)
        return self.process_event(event)
