"""One-off credit package purchases and their refunds."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select

from ...models.enums import CreditPool, LedgerKind
from ...models.ledger_transaction import LedgerTransaction
from ...platform.config import settings
from ..ledger.store import LedgerStore

logger = logging.getLogger(__name__)

CREDIT_PURCHASE_TYPES = {"credit_purchase", "credits"}


def credit_package_catalog() -> dict[str, dict[str, Any]]:
    try:
        raw = json.loads(settings.CREDIT_PACKAGES_JSON or "{}")
    except ValueError:
        logger.error("CREDIT_PACKAGES_JSON is not valid JSON; no packages offered")
        raw = {}
    if not isinstance(raw, dict):
        return {}
    output: dict[str, dict[str, Any]] = {}
    for package_id, package in raw.items():
        if not isinstance(package, dict):
            continue
        credits = int(package.get("credits") or 0)
        amount_minor = int(package.get("amount_minor") or 0)
        if credits <= 0 or amount_minor <= 0:
            continue
        output[str(package_id)] = {
            "package_id": str(package_id),
            "credits": credits,
            "amount_minor": amount_minor,
            "currency": str(package.get("currency") or settings.CREDIT_CURRENCY),
            "label": str(package.get("label") or package_id),
        }
    return output


def resolve_package(package_id: str) -> dict[str, Any] | None:
    return credit_package_catalog().get(str(package_id or "").strip())


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def apply_credit_purchase(store: LedgerStore, payment_intent: dict[str, Any]) -> str:
    """Credit the purchased pool for a succeeded PaymentIntent. Returns an outcome label."""
    metadata = payment_intent.get("metadata") or {}
    if str(metadata.get("type") or "") not in CREDIT_PURCHASE_TYPES:
        return "ignored"

    payment_intent_id = str(payment_intent.get("id") or "")
    account_id = _int_or_none(metadata.get("account_id"))
    credits = _int_or_none(metadata.get("credits"))
    package_id = metadata.get("package_id")
    if credits is None and package_id:
        package = resolve_package(package_id)
        if package:
            credits = int(package["credits"])
    if not payment_intent_id or account_id is None or not credits or credits <= 0:
        logger.warning("Credit purchase %s missing account or credits", payment_intent_id or "?")
        return "rejected"

    store.credit(
        account_id,
        credits,
        CreditPool.PURCHASED,
        LedgerKind.PURCHASE,
        related_event_id=payment_intent_id,
        description=f"Purchased {credits} credits",
        metadata={
            "package_id": package_id,
            "amount_minor": payment_intent.get("amount"),
            "currency": payment_intent.get("currency"),
        },
    )
    return "applied"


def apply_charge_refund(store: LedgerStore, charge: dict[str, Any]) -> str:
    """Remove credits for a refunded purchase, proportional to the refunded amount.

    Stripe reports ``amount_refunded`` as a running total, so a second partial
    refund of the same charge arrives with the larger cumulative figure.
    """
    payment_intent_id = str(charge.get("payment_intent") or "")
    if not payment_intent_id:
        return "ignored"

    db = store.session_factory()
    try:
        purchase = db.execute(
            select(LedgerTransaction).where(
                LedgerTransaction.kind == LedgerKind.PURCHASE,
                LedgerTransaction.related_event_id == payment_intent_id,
            )
        ).scalars().first()
        if purchase is None:
            logger.info("Refund for %s does not match a credit purchase", payment_intent_id)
            return "ignored"
        account_id = int(purchase.account_id)
        purchased_credits = int(purchase.delta)
    finally:
        db.close()

    amount = _int_or_none(charge.get("amount")) or 0
    refunded = _int_or_none(charge.get("amount_refunded"))
    if amount > 0 and refunded is not None and refunded < amount:
        credits = (purchased_credits * refunded) // amount
    else:
        credits = purchased_credits

    store.refund_purchase(account_id, credits, payment_intent_id)
    return "applied"
