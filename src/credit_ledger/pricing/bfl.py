from __future__ import annotations

from typing import Any, Mapping

from ..errors import UnsupportedModel
from .base import PricingResult, ceil_cost, clamp_count
from .credit_distribution import PRICING_VERSION, find_credits


def compute_bfl_cost(params: Mapping[str, Any]) -> PricingResult:
    model = params.get("model")
    base = find_credits(model)
    if base is None:
        raise UnsupportedModel(f"Unsupported model: {model}")

    count = clamp_count(params.get("n", 1))
    meta = {
        "model": model,
        "n": count,
        "frameSize": params.get("frameSize"),
        "width": params.get("width"),
        "height": params.get("height"),
        "output_format": params.get("output_format"),
    }
    return PricingResult(cost=ceil_cost(base, count), pricing_version=PRICING_VERSION, meta=meta)


def _fixed_model_cost(model: str) -> PricingResult:
    base = find_credits(model)
    if base is None:
        raise UnsupportedModel(f"Unsupported model: {model}")
    return PricingResult(
        cost=ceil_cost(base), pricing_version=PRICING_VERSION, meta={"model": model, "n": 1}
    )


def compute_bfl_fill_cost(params: Mapping[str, Any]) -> PricingResult:
    return _fixed_model_cost("flux-pro-1.0-fill")


def compute_bfl_expand_cost(params: Mapping[str, Any]) -> PricingResult:
    return _fixed_model_cost("flux-pro-1.0-expand")


def compute_bfl_canny_cost(params: Mapping[str, Any]) -> PricingResult:
    return _fixed_model_cost("flux-pro-1.0-canny")


def compute_bfl_depth_cost(params: Mapping[str, Any]) -> PricingResult:
    return _fixed_model_cost("flux-pro-1.0-depth")
