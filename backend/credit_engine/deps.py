"""
Shared dependencies. Re-exports get_current_user from FastAPI-Users and
provides the credit engine services to route handlers.
"""

from .api.v1.users_fastapi import current_active_user as get_current_user
from .components.billing_events.gateway import WebhookGateway
from .components.integrations.stripe.service import StripeService
from .components.ledger.store import LedgerStore
from .components.subscriptions.state_machine import SubscriptionStateMachine
from .platform.config import settings


def get_ledger_store() -> LedgerStore:
    return LedgerStore()


def get_state_machine() -> SubscriptionStateMachine:
    return SubscriptionStateMachine(LedgerStore())


def get_webhook_gateway() -> WebhookGateway:
    return WebhookGateway(LedgerStore())


def get_stripe_service() -> StripeService | None:
    if settings.mvp_flags.disable_stripe or not settings.STRIPE_API_KEY:
        return None
    return StripeService(api_key=settings.STRIPE_API_KEY)


__all__ = [
    "get_current_user",
    "get_ledger_store",
    "get_state_machine",
    "get_webhook_gateway",
    "get_stripe_service",
]
