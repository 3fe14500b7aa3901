from __future__ import annotations

import enum
import types
import typing
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for documents persisted by a `BaseDBManager`.

    - `serialize_for_db()` is the single place that controls how a model is
      stored; DB adapters may post-process the result (e.g. add `_id`).
    - `db_schema()` describes the document in backend-agnostic terms for the
      schema generator. It never touches a database.
    """

    # Logical collection / table name; subclasses override
    collection_name: ClassVar[str]

    # Field used as the document key
    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        return self.model_dump(mode="python", exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            annotation, optional = cls._unwrap_optional(field.annotation)
            properties[name] = {
                "type": cls._map_type(annotation),
                "nullable": optional,
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
        origin = typing.get_origin(annotation)
        if origin is typing.Union or origin is types.UnionType:
            args = [a for a in typing.get_args(annotation) if a is not type(None)]
            if len(args) == 1:
                return args[0], True
        return annotation, False

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a type annotation to a logical type; the schema generator turns
        these into dialect-specific types.
        """
        origin: Any = typing.get_origin(annotation)
        if origin in (list, tuple, set):
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        if isinstance(annotation, type) and issubclass(annotation, enum.Enum):
            return "string"
        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"
        if annotation is datetime:
            return "datetime"

        name = getattr(annotation, "__name__", "object")
        return name.lower()
