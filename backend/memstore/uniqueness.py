"""Composite-key uniqueness for record types that declare ``unique_by``."""

from __future__ import annotations

import hashlib
import json
from typing import Any, List, Optional

from .errors import ConflictError, ValidationError
from .records import MemoryRecord


class UniquenessEnforcer:
    def __init__(self, adapter: Any) -> None:
        self._adapter = adapter

    @staticmethod
    def key_values(record: MemoryRecord) -> Optional[List[Any]]:
        fields = record.rules.unique_by
        if not fields:
            return None
        values: List[Any] = []
        missing: List[str] = []
        for name in fields:
            value = record.field_value(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
            values.append(value)
        if missing:
            raise ValidationError(
                f"{record.type} records are unique by {', '.join(fields)}; "
                f"missing {', '.join(missing)}"
            )
        return values

    @classmethod
    def composite_key(cls, record: MemoryRecord) -> Optional[str]:
        values = cls.key_values(record)
        if values is None:
            return None
        canonical = json.dumps([record.type, *values], sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    async def check_and_reserve(
        self,
        conn: Any,
        record: MemoryRecord,
        *,
        exclude_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Raise ``ConflictError`` when the record's id or key is already taken.

        Returns the composite key to store with the record. Inside a write
        transaction the check and the following insert see the same data; the
        unique index backs it up against writers on other connections.
        """
        if exclude_id is None and record.id:
            existing = await self._adapter.get_by_id(conn, record.id)
            if existing is not None:
                raise ConflictError(
                    f"memory {record.id} already exists", existing_id=record.id
                )
            if await self._adapter.is_id_issued(conn, record.id):
                raise ConflictError(
                    f"memory id {record.id} was used before and cannot be reused",
                    existing_id=record.id,
                )

        unique_key = self.composite_key(record)
        if unique_key is None:
            return None
        existing_id = await self._adapter.find_by_unique_key(conn, record.type, unique_key)
        if existing_id is not None and existing_id != exclude_id:
            raise ConflictError(
                f"a {record.type} record with the same "
                f"{', '.join(record.rules.unique_by)} already exists",
                existing_id=existing_id,
            )
        return unique_key
