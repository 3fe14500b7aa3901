from __future__ import annotations

from .base import PricingRegistry
from .bfl import (
    compute_bfl_canny_cost,
    compute_bfl_cost,
    compute_bfl_depth_cost,
    compute_bfl_expand_cost,
    compute_bfl_fill_cost,
)
from .minimax import (
    compute_minimax_image_cost,
    compute_minimax_music_cost,
    compute_minimax_video_cost,
)
from .runway import compute_runway_image_cost, compute_runway_video_cost


def default_registry() -> PricingRegistry:
    registry = PricingRegistry()
    registry.register("bfl", "generate", compute_bfl_cost)
    registry.register("bfl", "fill", compute_bfl_fill_cost)
    registry.register("bfl", "expand", compute_bfl_expand_cost)
    registry.register("bfl", "canny", compute_bfl_canny_cost)
    registry.register("bfl", "depth", compute_bfl_depth_cost)
    registry.register("runway", "image", compute_runway_image_cost)
    registry.register("runway", "video", compute_runway_video_cost)
    registry.register("minimax", "image", compute_minimax_image_cost)
    registry.register("minimax", "music", compute_minimax_music_cost)
    registry.register("minimax", "video", compute_minimax_video_cost)
    return registry
