from __future__ import annotations

import json
import logging
from typing import Any

from ...platform.config import settings

logger = logging.getLogger(__name__)


def subscription_plan_catalog() -> dict[str, dict[str, Any]]:
    try:
        raw = json.loads(settings.SUBSCRIPTION_PLANS_JSON or "{}")
    except ValueError:
        logger.error("SUBSCRIPTION_PLANS_JSON is not valid JSON; using the default allocation only")
        raw = {}
    if not isinstance(raw, dict):
        return {}
    output: dict[str, dict[str, Any]] = {}
    for price_id, plan in raw.items():
        if not isinstance(plan, dict):
            continue
        credits = int(plan.get("credits") or 0)
        if credits <= 0:
            continue
        output[str(price_id)] = {
            "credits": credits,
            "label": str(plan.get("label") or price_id),
        }
    return output


def monthly_allocation_for(price_id: str | None) -> int:
    """Credits granted per period for a Stripe price; unknown prices get the default allocation."""
    if price_id:
        plan = subscription_plan_catalog().get(str(price_id))
        if plan:
            return int(plan["credits"])
    return int(settings.MONTHLY_CREDIT_ALLOCATION)
