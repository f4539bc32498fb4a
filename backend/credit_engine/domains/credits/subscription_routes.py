"""Subscription status and the cancel-at-period-end toggle."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ...components.integrations.stripe.service import StripeService
from ...components.subscriptions.state_machine import SubscriptionStateMachine
from ...deps import get_current_user, get_state_machine, get_stripe_service
from ...models.user import User
from ...schemas.subscription import SubscriptionRead

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.get("/me", response_model=SubscriptionRead)
def get_my_subscription(
    current_user: User = Depends(get_current_user),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    return machine.get(current_user.id)


def _toggle_cancel(
    account_id: int,
    flag: bool,
    machine: SubscriptionStateMachine,
    stripe_service: Optional[StripeService],
) -> SubscriptionRead:
    previous = machine.get(account_id)
    updated = machine.set_cancel_at_period_end(account_id, flag)
    if stripe_service is not None and updated.external_subscription_id:
        result = stripe_service.set_cancel_at_period_end(updated.external_subscription_id, flag)
        if not result["success"]:
            machine.set_cancel_at_period_end(account_id, previous.cancel_at_period_end)
            raise HTTPException(status_code=502, detail="Payment provider error")
    return updated


@router.post("/me/cancel", response_model=SubscriptionRead)
def cancel_at_period_end(
    current_user: User = Depends(get_current_user),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
    stripe_service: Optional[StripeService] = Depends(get_stripe_service),
):
    """Keep the subscription active until the current period ends, then cancel."""
    return _toggle_cancel(current_user.id, True, machine, stripe_service)


@router.post("/me/resume", response_model=SubscriptionRead)
def resume_subscription(
    current_user: User = Depends(get_current_user),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
    stripe_service: Optional[StripeService] = Depends(get_stripe_service),
):
    return _toggle_cancel(current_user.id, False, machine, stripe_service)
