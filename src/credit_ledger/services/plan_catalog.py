from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import UnknownPlan
from ..models.plan import Plan


logger = logging.getLogger(__name__)

FREE_PLAN_CODE = "FREE"
PLANS_PRICING_VERSION = "plans-v1"

# code -> (name, monthly credits, active, sort order)
DEFAULT_PLANS: Dict[str, tuple[str, int, bool, int]] = {
    "FREE": ("Free", 4120, True, 0),
    "PLAN_A": ("Plan A", 12360, False, 1),
    "PLAN_B": ("Plan B", 50000, False, 2),
    "PLAN_C": ("Plan C", 100000, False, 3),
    "PLAN_D": ("Plan D", 200000, False, 4),
}


class PlanCatalog:
    """
    Static plan reference data, seeded into the `plans` collection.

    FREE always resolves to the built-in allotment so new accounts get a
    sane default even when the seed row is missing or edited.
    """

    def __init__(
        self,
        db: BaseDBManager,
        cache: Optional[AsyncCacheBackend] = None,
        free_plan_credits: int = DEFAULT_PLANS[FREE_PLAN_CODE][1],
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds
        self._builtin: Dict[str, Plan] = {
            code: Plan(
                code=code,
                name=name,
                credits=free_plan_credits if code == FREE_PLAN_CODE else credits,
                active=active,
                sort_order=sort_order,
            )
            for code, (name, credits, active, sort_order) in DEFAULT_PLANS.items()
        }

    @property
    def free_plan_credits(self) -> int:
        return self._builtin[FREE_PLAN_CODE].credits

    async def ensure_seeded(self) -> List[Plan]:
        """
        Merge-upsert every built-in plan row. Safe to call repeatedly and
        concurrently; the last writer wins with identical data.
        """
        seeded = [await self._db.upsert_plan(plan.model_copy()) for plan in self._builtin.values()]
        if self._cache:
            await self._cache.delete_many(self._plan_cache_key(p.code) for p in seeded)
        logger.info("Plans seeded", extra={"plans": [p.code for p in seeded]})
        return seeded

    async def get_plan(self, code: str) -> Optional[Plan]:
        if self._cache is None:
            return await self._db.get_plan(code)
        return await self._cache.get_or_load(
            self._plan_cache_key(code),
            lambda: self._db.get_plan(code),
            ttl_seconds=self._cache_ttl_seconds,
        )

    async def list_plans(self) -> Iterable[Plan]:
        stored = {p.code: p for p in await self._db.get_all_plans()}
        merged = {**self._builtin, **stored}
        return sorted(merged.values(), key=lambda p: p.sort_order)

    async def lookup(self, code: str) -> Optional[int]:
        """
        Monthly credits for `code`, or None when the plan is unknown.
        """
        if code == FREE_PLAN_CODE:
            return self.free_plan_credits
        plan = await self.get_plan(code)
        if plan is not None and plan.credits > 0:
            return plan.credits
        builtin = self._builtin.get(code)
        return builtin.credits if builtin else None

    async def require_credits(self, code: str) -> int:
        credits = await self.lookup(code)
        if credits is None:
            raise UnknownPlan(code)
        return credits

    @staticmethod
    def _plan_cache_key(code: str) -> str:
        return f"credit:plan:{code}"
