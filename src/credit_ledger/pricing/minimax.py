from __future__ import annotations

from typing import Any, Mapping, Optional

from ..errors import UnsupportedModel
from .base import PricingResult, ceil_cost, clamp_count
from .credit_distribution import find_credits


MINIMAX_PRICING_VERSION = "minimax-v1"

# (resolution, duration) pairs sold for Hailuo-02
_HAILUO_02_SKUS = {("512P", "6"), ("512P", "10"), ("768P", "6"), ("768P", "10"), ("1080P", "6")}
_DIRECTOR_MODELS = {"T2V-01-Director", "I2V-01-Director", "S2V-01"}


def compute_minimax_image_cost(params: Mapping[str, Any]) -> PricingResult:
    model = "Minimax Image-01"
    base = find_credits(model)
    if base is None:
        raise UnsupportedModel("Unsupported Minimax image")
    count = clamp_count(params.get("n", 1))
    return PricingResult(
        cost=ceil_cost(base, count),
        pricing_version=MINIMAX_PRICING_VERSION,
        meta={"model": model, "n": count},
    )


def compute_minimax_music_cost(params: Mapping[str, Any]) -> PricingResult:
    # Music 2 first; 1.5 for older catalogues
    base = find_credits("MiniMax Music 2")
    if base is None:
        base = find_credits("Music 1.5 (Up to 90s)")
    if base is None:
        raise UnsupportedModel("Unsupported Minimax music")
    return PricingResult(
        cost=ceil_cost(base), pricing_version=MINIMAX_PRICING_VERSION, meta={"model": "music-2.0"}
    )


def _video_sku(model: Any, duration: Any, resolution: Any) -> Optional[str]:
    if not isinstance(model, str):
        return None
    if model in _DIRECTOR_MODELS:
        return model
    if model == "MiniMax-Hailuo-02":
        dur = str(duration or "").strip()
        res = str(resolution or "").upper()
        if (res, dur) in _HAILUO_02_SKUS:
            return f"Minimax-Hailuo-02 {res} {dur}s"
    return None


def compute_minimax_video_cost(params: Mapping[str, Any]) -> PricingResult:
    model = params.get("model")
    display = _video_sku(model, params.get("duration"), params.get("resolution"))
    base = find_credits(display) if display else None
    if base is None:
        raise UnsupportedModel(f"Unsupported Minimax video model: {model}")
    return PricingResult(
        cost=ceil_cost(base),
        pricing_version=MINIMAX_PRICING_VERSION,
        meta={
            "model": display,
            "duration": params.get("duration"),
            "resolution": params.get("resolution"),
        },
    )
