"""
Credits charged per generation, keyed by the provider's display name.

Lookups are case-insensitive and exact; a missing row means the request
cannot be priced.
"""

from __future__ import annotations

from typing import Dict, Optional


PRICING_VERSION = "v1"

CREDITS_PER_GENERATION: Dict[str, int] = {
    # Black Forest Labs
    "flux-kontext-pro": 90,
    "flux-kontext-max": 180,
    "flux-pro-1.1": 90,
    "flux-pro-1.1-ultra": 130,
    "flux-pro": 110,
    "flux-dev": 60,
    "flux-pro-1.0-fill": 110,
    "flux-pro-1.0-expand": 110,
    "flux-pro-1.0-canny": 110,
    "flux-pro-1.0-depth": 110,
    # Runway
    "Runway Gen 4 Image 720p": 110,
    "Runway Gen 4 Image Turbo": 50,
    "gen4_turbo 5s": 560,
    "gen4_turbo 10s": 1060,
    "gen4_aleph 5s": 1560,
    "gen4_aleph 10s": 3060,
    # MiniMax
    "Minimax Image-01": 40,
    "MiniMax Music 2": 360,
    "Music 1.5 (Up to 90s)": 360,
    "Minimax-Hailuo-02 512P 6s": 260,
    "Minimax-Hailuo-02 512P 10s": 460,
    "Minimax-Hailuo-02 768P 6s": 620,
    "Minimax-Hailuo-02 768P 10s": 1160,
    "Minimax-Hailuo-02 1080P 6s": 1020,
    "T2V-01-Director": 960,
    "I2V-01-Director": 960,
    "S2V-01": 1460,
}

_LOWERED = {name.lower(): credits for name, credits in CREDITS_PER_GENERATION.items()}


def find_credits(name: str) -> Optional[int]:
    if not isinstance(name, str) or not name:
        return None
    return _LOWERED.get(name.lower())
