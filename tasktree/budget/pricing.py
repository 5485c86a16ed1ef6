"""
Cost Estimation

Pre-call estimates per cost class and per-model pricing used to turn
provider usage into dollars when a provider does not report cost itself.
"""

from typing import Any

from tasktree.core.types import CostClass
from tasktree.observability.logging import get_logger

logger = get_logger("tasktree.budget.pricing")


# Conservative per-call estimates in USD, reserved before a call runs.
COST_CLASS_ESTIMATES: dict[CostClass, float] = {
    CostClass.FREE: 0.0,
    CostClass.LOOKUP: 0.001,
    CostClass.TEXT: 0.02,
    CostClass.IMAGE: 0.06,
    CostClass.VIDEO: 0.30,
    CostClass.DELEGATION: 0.0,
}


# Per 1M tokens for text models, per unit for image/video models.
MODEL_PRICING: dict[str, dict[str, float]] = {
    "claude-sonnet-4-6": {"input_per_1m": 3.00, "output_per_1m": 15.00},
    "claude-haiku-4-5": {"input_per_1m": 0.80, "output_per_1m": 4.00},
    "claude-opus-4-6": {"input_per_1m": 15.00, "output_per_1m": 75.00},
    "gemini-3.0-flash": {"input_per_1m": 0.15, "output_per_1m": 0.60},
    "gemini-3.0-pro": {"input_per_1m": 1.25, "output_per_1m": 10.00},
    "flux-2-pro": {"per_image": 0.06},
    "flux-2-dev": {"per_image": 0.03},
    "gpt-image-1.5": {"per_image": 0.06},
    "ideogram-v3": {"per_image": 0.06},
    "gemini-3-pro-image": {"per_image": 0.05},
    "veo-3": {"per_video": 0.30},
}


def estimate_for(cost_class: CostClass, explicit: float | None = None) -> float:
    """Estimate to reserve for a call; an explicit estimate wins."""
    if explicit is not None:
        return max(0.0, explicit)
    return COST_CLASS_ESTIMATES.get(cost_class, COST_CLASS_ESTIMATES[CostClass.TEXT])


def calculate_cost(model: str, usage: dict[str, Any]) -> float:
    """
    Dollar cost of one call from its usage numbers.

    Unknown models cost 0.0 and log a warning.
    """
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        logger.warning("Unknown model for cost calculation", model=model)
        return 0.0

    cost = 0.0
    if "input_per_1m" in pricing:
        cost += usage.get("input_tokens", 0) / 1_000_000 * pricing["input_per_1m"]
    if "output_per_1m" in pricing:
        cost += usage.get("output_tokens", 0) / 1_000_000 * pricing["output_per_1m"]
    if "per_image" in pricing:
        cost += usage.get("image_count", 0) * pricing["per_image"]
    if "per_video" in pricing:
        cost += usage.get("video_count", 0) * pricing["per_video"]

    return round(cost, 6)
