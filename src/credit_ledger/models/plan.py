from __future__ import annotations

from datetime import datetime
from typing import ClassVar

from pydantic import Field

from .base import DBSerializableModel, utcnow


class Plan(DBSerializableModel):
    """
    Reference data: a plan and its monthly credit allotment.
    """

    collection_name: ClassVar[str] = "plans"
    primary_key: ClassVar[str] = "code"

    code: str
    name: str
    credits: int = Field(ge=0, description="Credits granted on switch and on every monthly reroll.")
    active: bool = True
    sort_order: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
