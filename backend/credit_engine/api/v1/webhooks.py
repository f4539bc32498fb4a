from ...domains.billing_webhooks.webhook_routes import router

__all__ = ["router"]
