"""
Stripe client calls made on behalf of a credit account.

Covers customer creation, PaymentIntents for one-off credit packages, and
toggling a subscription's cancel-at-period-end flag. Webhook verification
lives in the billing events gateway.
"""

import logging

import stripe

from ....platform.config import settings

logger = logging.getLogger(__name__)


class StripeService:
    """Thin wrapper over the Stripe API returning plain result dicts."""

    def __init__(self, api_key: str):
        """
        Initialise the Stripe service.

        Args:
            api_key: Stripe secret API key.
        """
        stripe.api_key = api_key

    def create_customer(self, account_id: int, email: str) -> dict:
        """
        Create a Stripe customer tagged with the credit account id.

        Returns:
            Dict with keys: success, customer_id.
        """
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"account_id": str(account_id)},
            )
            logger.info("Stripe customer created (customer_id=%s)", customer.id, extra={"account_id": account_id})
            return {"success": True, "customer_id": customer.id}
        except stripe.StripeError as e:
            logger.error("Stripe error creating customer: %s", str(e), extra={"account_id": account_id})
            return {"success": False, "customer_id": ""}

    def create_credit_payment_intent(
        self,
        account_id: int,
        package: dict,
        customer_id: str | None = None,
    ) -> dict:
        """
        Create a PaymentIntent for a credit package.

        The webhook for ``payment_intent.succeeded`` reads the metadata set
        here to credit the purchased pool.

        Args:
            account_id: Credit account being topped up.
            package: Catalog entry with package_id, credits, amount_minor, currency.
            customer_id: Optional Stripe customer to attach.

        Returns:
            Dict with keys: success, payment_intent_id, client_secret.
        """
        try:
            currency_code = (package.get("currency") or settings.CREDIT_CURRENCY or "usd").lower()
            params = {
                "amount": int(package["amount_minor"]),
                "currency": currency_code,
                "description": package.get("label") or f"{package['credits']} credits",
                "metadata": {
                    "type": "credit_purchase",
                    "account_id": str(account_id),
                    "package_id": str(package["package_id"]),
                    "credits": str(package["credits"]),
                },
                "automatic_payment_methods": {"enabled": True},
            }
            if customer_id:
                params["customer"] = customer_id
            payment_intent = stripe.PaymentIntent.create(**params)
            logger.info(
                "Credit PaymentIntent created (id=%s, package=%s)",
                payment_intent.id,
                package["package_id"],
                extra={"account_id": account_id},
            )
            return {
                "success": True,
                "payment_intent_id": payment_intent.id,
                "client_secret": payment_intent.client_secret,
            }
        except stripe.StripeError as e:
            logger.error("Stripe error creating credit PaymentIntent: %s", str(e), extra={"account_id": account_id})
            return {"success": False, "payment_intent_id": "", "client_secret": ""}

    def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> dict:
        """
        Schedule (or clear) cancellation at the end of the current period.

        Returns:
            Dict with keys: success, subscription_id.
        """
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=bool(flag))
            logger.info(
                "Subscription cancel_at_period_end=%s (id=%s)", bool(flag), subscription.id
            )
            return {"success": True, "subscription_id": subscription.id}
        except stripe.StripeError as e:
            logger.error("Stripe error updating subscription %s: %s", subscription_id, str(e))
            return {"success": False, "subscription_id": subscription_id}
