"""Credit balance, history and package purchases for the signed-in user."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...components.billing_events.purchases import credit_package_catalog, resolve_package
from ...components.integrations.stripe.service import StripeService
from ...components.ledger.store import LedgerStore
from ...deps import get_current_user, get_ledger_store, get_stripe_service
from ...models.enums import LedgerKind
from ...models.user import User
from ...platform.database import get_db
from ...schemas.credits import (
    CreditAccountSnapshot,
    CreditPackage,
    CreditPurchaseRequest,
    CreditPurchaseResponse,
    TransactionPage,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.get("/balance", response_model=CreditAccountSnapshot)
def get_balance(
    current_user: User = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    return store.snapshot(current_user.id)


@router.get("/transactions", response_model=TransactionPage)
def list_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    kind: Optional[LedgerKind] = Query(default=None),
    current_user: User = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    items, total = store.list_transactions(current_user.id, limit=limit, offset=offset, kind=kind)
    return TransactionPage(items=items, total=total, limit=limit, offset=offset)


@router.get("/packages", response_model=list[CreditPackage])
def list_packages():
    return [CreditPackage(**package) for package in credit_package_catalog().values()]


@router.post("/purchase", response_model=CreditPurchaseResponse)
def purchase_credits(
    data: CreditPurchaseRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    stripe_service: Optional[StripeService] = Depends(get_stripe_service),
):
    """Start a credit package purchase; credits land when Stripe confirms the payment."""
    package = resolve_package(data.package_id)
    if package is None:
        raise HTTPException(status_code=404, detail="Unknown credit package")
    if stripe_service is None:
        raise HTTPException(status_code=503, detail="Stripe integration is disabled for MVP")

    user = db.get(User, current_user.id)
    customer_id = user.stripe_customer_id if user else None
    if not customer_id:
        created = stripe_service.create_customer(current_user.id, current_user.email)
        if created["success"]:
            customer_id = created["customer_id"]
            if user is not None:
                user.stripe_customer_id = customer_id
                db.commit()

    result = stripe_service.create_credit_payment_intent(current_user.id, package, customer_id=customer_id)
    if not result["success"]:
        raise HTTPException(status_code=502, detail="Payment provider error")
    logger.info(
        "Credit purchase started package=%s payment_intent=%s",
        package["package_id"],
        result["payment_intent_id"],
        extra={"account_id": current_user.id},
    )
    return CreditPurchaseResponse(
        package=CreditPackage(**package),
        payment_intent_id=result["payment_intent_id"],
        client_secret=result["client_secret"],
    )
