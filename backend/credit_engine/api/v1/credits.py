from ...domains.credits.credit_routes import router

__all__ = ["router"]
