from ...domains.credits.subscription_routes import router

__all__ = ["router"]
