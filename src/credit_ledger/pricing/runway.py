from __future__ import annotations

from typing import Any, Mapping

from ..errors import UnsupportedModel
from .base import PricingResult, ceil_cost
from .credit_distribution import find_credits


RUNWAY_PRICING_VERSION = "runway-v1"

_IMAGE_MODELS = {
    "gen4_image": "Runway Gen 4 Image 720p",
    "gen4_image_turbo": "Runway Gen 4 Image Turbo",
}


def compute_runway_cost_from_sku(sku: str) -> PricingResult:
    base = find_credits(sku)
    if base is None:
        raise UnsupportedModel(f"Unsupported Runway SKU: {sku}")
    return PricingResult(
        cost=ceil_cost(base), pricing_version=RUNWAY_PRICING_VERSION, meta={"model": sku}
    )


def compute_runway_image_cost(params: Mapping[str, Any]) -> PricingResult:
    sku = params.get("sku")
    model = params.get("model")
    if isinstance(sku, str) and sku:
        display = sku
    elif isinstance(model, str):
        display = _IMAGE_MODELS.get(model, "")
    else:
        display = ""
    if not display:
        raise UnsupportedModel("Unsupported Runway image model")
    return compute_runway_cost_from_sku(display)


def compute_runway_video_cost(params: Mapping[str, Any]) -> PricingResult:
    sku = params.get("sku")
    if not isinstance(sku, str) or not sku:
        raise UnsupportedModel("sku is required for Runway video pricing")
    return compute_runway_cost_from_sku(sku)
