"""Paid plan catalog: prices, validity windows and token budgets."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List

from services.timeutils import isoformat


PLAN_TYPES = ("hourly", "daily", "monthly")

PLAN_CATALOG: Dict[str, Dict[str, Any]] = {
    "hourly": {
        "label": "Hourly",
        "amount": 2500,
        "duration": timedelta(hours=1),
        "input_tokens": 5_000,
        "output_tokens": 9_000,
    },
    "daily": {
        "label": "Daily",
        "amount": 15000,
        "duration": timedelta(days=1),
        "input_tokens": 60_000,
        "output_tokens": 108_000,
    },
    "monthly": {
        "label": "Monthly",
        "amount": 299900,
        "duration": timedelta(days=30),
        "input_tokens": 1_800_000,
        "output_tokens": 3_240_000,
    },
}


def normalize_plan_type(value: Any) -> str:
    return str(value or "").strip().lower()


def is_valid_plan_type(value: Any) -> bool:
    return normalize_plan_type(value) in PLAN_CATALOG


def get_plan_definition(plan_type: str) -> Dict[str, Any]:
    """Return the catalog entry for a plan, raising KeyError for unknown plans."""
    return PLAN_CATALOG[normalize_plan_type(plan_type)]


def plan_price(plan_type: str) -> int:
    """Price in minor currency units (paise)."""
    return int(get_plan_definition(plan_type)["amount"])


def plan_duration(plan_type: str) -> timedelta:
    return get_plan_definition(plan_type)["duration"]


def get_plan_catalog() -> List[Dict[str, Any]]:
    return [
        {
            "plan_type": plan_type,
            "label": plan["label"],
            "amount": plan["amount"],
            "duration_seconds": int(plan["duration"].total_seconds()),
            "input_tokens": plan["input_tokens"],
            "output_tokens": plan["output_tokens"],
        }
        for plan_type, plan in PLAN_CATALOG.items()
    ]


def plan_to_dict(plan: Any) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "user_id": plan.user_id,
        "plan_type": plan.plan_type,
        "status": plan.status,
        "start_time": isoformat(plan.start_time),
        "end_time": isoformat(plan.end_time),
        "remaining_input_tokens": int(plan.remaining_input_tokens or 0),
        "remaining_output_tokens": int(plan.remaining_output_tokens or 0),
        "order_id": plan.order_id,
        "payment_id": plan.payment_id,
        "amount_paid": int(plan.amount_paid or 0),
    }
