from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields,
      including the indexes the ledger relies on

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; the Mongo backend reuses `indexes` to build
    its collection indexes at startup.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # Each index: {"fields": [(name, 1 | -1), ...], "unique": bool, "sparse": bool}
    indexes: ClassVar[List[Dict[str, Any]]] = []

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Nullable fields are dropped so sparse unique indexes (idempotency
        keys) only see documents that actually carry a value.
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required(),
                "default": field.default if field.default is not None else None,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [dict(index) for index in cls.indexes],
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        # Optional[X] arrives as Union[X, None]
        args = [a for a in getattr(annotation, "__args__", ()) if a is not type(None)]
        if origin is not None and len(args) == 1:
            return DBSerializableModel._map_type(args[0])

        if annotation in (int,):
            return "integer"
        if annotation in (float,):
            return "number"
        if annotation in (bool,):
            return "boolean"
        if annotation in (str,):
            return "string"
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-backed enums
            return "string"

        # Fallback for datetime, UUID, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()


class PaginatedResult(BaseModel):
    items: list[Any] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
