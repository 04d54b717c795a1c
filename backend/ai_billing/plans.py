"""
Plan Catalog - static mapping of plan ids to price and token grant

Rules:
- Lookups are pure; unknown ids return None (callers answer 400)
- The first plan ("free") is what cancelled subscriptions fall back to
- Stripe price ids can be overridden per plan with STRIPE_PRICE_<PLAN>
"""

import math
import os
from typing import Dict, Any, List, Optional

from pydantic import BaseModel

from .config import TOP_UP_TOKENS_PER_USD, LOW_BALANCE_THRESHOLD
from .models import TokenUsage


class Plan(BaseModel):
    id: str
    name: str
    description: str
    price: int  # USD per interval
    interval: str
    tokens: int
    features: List[str]
    stripe_price_id: Optional[str] = None
    team_enabled: bool = False
    priority_support: bool = False
    upload_size_limit: int  # MB


SUBSCRIPTION_PLANS: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free",
        "description": "For personal projects and exploration",
        "price": 0,
        "interval": "month",
        "tokens": 200000,
        "features": [
            "Access to basic AI models",
            "Up to 200k tokens per month",
            "Single user access",
            "Basic support",
            "Standard response times",
        ],
        "stripe_price_id": None,
        "team_enabled": False,
        "priority_support": False,
        "upload_size_limit": 5,
    },
    "pro": {
        "name": "Pro",
        "description": "For individual developers",
        "price": 20,
        "interval": "month",
        "tokens": 10000000,
        "features": [
            "Access to all AI models",
            "Up to 10M tokens per month",
            "Single user access",
            "Standard support",
            "Faster response times",
        ],
        "stripe_price_id": "price_pro_monthly_id",
        "team_enabled": False,
        "priority_support": False,
        "upload_size_limit": 20,
    },
    "pro-50": {
        "name": "Pro 50",
        "description": "For small teams",
        "price": 50,
        "interval": "month",
        "tokens": 26000000,
        "features": [
            "Access to all AI models",
            "Up to 26M tokens per month",
            "Team collaboration (up to 3)",
            "Priority support",
            "Faster response times",
        ],
        "stripe_price_id": "price_pro_50_monthly_id",
        "team_enabled": True,
        "priority_support": True,
        "upload_size_limit": 50,
    },
    "pro-100": {
        "name": "Pro 100",
        "description": "For growing teams",
        "price": 100,
        "interval": "month",
        "tokens": 55000000,
        "features": [
            "Access to all AI models",
            "Up to 55M tokens per month",
            "Team collaboration (up to 5)",
            "Priority support",
            "Rapid response times",
        ],
        "stripe_price_id": "price_pro_100_monthly_id",
        "team_enabled": True,
        "priority_support": True,
        "upload_size_limit": 100,
    },
    "pro-200": {
        "name": "Pro 200",
        "description": "For professional teams",
        "price": 200,
        "interval": "month",
        "tokens": 120000000,
        "features": [
            "Access to all AI models",
            "Up to 120M tokens per month",
            "Team collaboration (up to 10)",
            "Priority support",
            "Instant response times",
        ],
        "stripe_price_id": "price_pro_200_monthly_id",
        "team_enabled": True,
        "priority_support": True,
        "upload_size_limit": 200,
    },
}

FREE_PLAN_ID = "free"


def _price_env_key(plan_id: str) -> str:
    return "STRIPE_PRICE_" + plan_id.upper().replace("-", "_")


def get_plan_by_id(plan_id: Optional[str]) -> Optional[Plan]:
    """Look up a plan. Returns None for unknown ids."""
    if not plan_id:
        return None
    plan = SUBSCRIPTION_PLANS.get(plan_id)
    if plan is None:
        return None
    data = dict(plan)
    data["stripe_price_id"] = os.environ.get(_price_env_key(plan_id), plan["stripe_price_id"])
    return Plan(id=plan_id, **data)


def list_plans() -> List[Plan]:
    return [get_plan_by_id(plan_id) for plan_id in SUBSCRIPTION_PLANS]


def get_free_plan() -> Plan:
    return get_plan_by_id(FREE_PLAN_ID)


def top_up_price(token_amount: int) -> int:
    """USD price for a top-up: 1 USD per 100k tokens, rounded up, minimum 1."""
    return max(1, math.ceil(token_amount / TOP_UP_TOKENS_PER_USD))


def usage_percentage(usage: TokenUsage) -> float:
    if usage.tokens_total == 0:
        return 0.0
    return (usage.tokens_used / usage.tokens_total) * 100


def is_low_on_tokens(usage: TokenUsage) -> bool:
    if usage.tokens_total == 0:
        return True
    return (usage.tokens_remaining / usage.tokens_total) < LOW_BALANCE_THRESHOLD


def get_plan_by_stripe_price(price_id: Optional[str]) -> Optional[Plan]:
    """Reverse lookup used when a subscription changes price in the portal."""
    if not price_id:
        return None
    for plan in list_plans():
        if plan.stripe_price_id == price_id:
            return plan
    return None
