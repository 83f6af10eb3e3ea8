"""Room (partition) assignment for memory records."""

from __future__ import annotations

from typing import Iterable, Optional

from .errors import ValidationError
from .records import GLOBAL_TYPES

AGENT_PARTITION_PREFIX = "agent:"


def agent_partition(agent_id: str) -> str:
    return f"{AGENT_PARTITION_PREFIX}{agent_id}"


class RoomPartitioner:
    """
    Maps ``(type, agent_id)`` to a room.

    Global types share one room so every agent observes the same ledger; all
    other types live in the owning agent's room. Privileged operations name
    their room explicitly and it is used verbatim.
    """

    def __init__(
        self,
        global_partition: str = "global",
        global_types: Optional[Iterable[str]] = None,
    ) -> None:
        if not global_partition:
            raise ValueError("global partition name must not be empty")
        self.global_partition = global_partition
        self.global_types = frozenset(
            GLOBAL_TYPES if global_types is None else global_types
        )

    def is_global(self, record_type: str) -> bool:
        return record_type in self.global_types

    def default_partition(self, record_type: str, agent_id: str) -> str:
        if self.is_global(record_type):
            return self.global_partition
        if not agent_id:
            raise ValidationError(f"{record_type} records need an agent_id to pick a room")
        return agent_partition(agent_id)

    def assign(
        self,
        record_type: str,
        agent_id: str,
        *,
        override: Optional[str] = None,
        privileged: bool = False,
    ) -> str:
        if privileged:
            if not override:
                raise ValidationError("privileged writes must name their partition")
            return override
        computed = self.default_partition(record_type, agent_id)
        if override and override != computed:
            raise ValidationError(
                f"partition {override!r} does not match {computed!r} for "
                f"{record_type}; pass privileged=True to pin a partition"
            )
        return computed
