from __future__ import annotations

import math
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from ..errors import UnsupportedModel


class PricingResult(BaseModel):
    cost: int = Field(ge=0)
    pricing_version: str
    meta: Dict[str, Any] = Field(default_factory=dict)


class PricedRequest(BaseModel):
    """A paid operation to be priced: which provider/operation, with what parameters."""

    provider: str
    operation: str
    params: Dict[str, Any] = Field(default_factory=dict)


CostComputer = Callable[[Mapping[str, Any]], PricingResult]


def clamp_count(value: Any, lower: int = 1, upper: int = 10) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError, OverflowError):
        n = lower
    return max(lower, min(upper, n))


def ceil_cost(base: float, count: int = 1) -> int:
    return int(math.ceil(base * count))


class PricingRegistry:
    """
    Maps `(provider, operation)` to a pure pricing function.
    """

    def __init__(self) -> None:
        self._computers: Dict[Tuple[str, str], CostComputer] = {}

    def register(self, provider: str, operation: str, computer: CostComputer) -> None:
        self._computers[(provider, operation)] = computer

    def get(self, provider: str, operation: str) -> Optional[CostComputer]:
        return self._computers.get((provider, operation))

    def compute(self, request: PricedRequest) -> PricingResult:
        computer = self.get(request.provider, request.operation)
        if computer is None:
            raise UnsupportedModel(
                f"no pricing for {request.provider}.{request.operation}"
            )
        return computer(request.params)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._computers
