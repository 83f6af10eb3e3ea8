"""
Record, event and payload types for the memory store.

Payloads are a tagged union keyed by the record ``type``. Each variant carries
its own typed fields plus the class-level rules the store consults:

- ``unique_by``: fields forming the composite uniqueness key
- ``versioned``: whether ``update`` may touch records of this type
- ``global_scope``: shared partition instead of a per-agent one
- ``system``: system/error noise excluded from fallback retrieval
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Type

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError

EVENT_KINDS = ("created", "updated", "deleted")
RECORD_FIELDS = ("agent_id", "owner_id")
IMMUTABLE_FIELDS = frozenset(
    {
        "id",
        "type",
        "agent_id",
        "owner_id",
        "partition",
        "version",
        "embedding",
        "created_at",
        "updated_at",
    }
)

_RECORD_ID_NAMESPACE = uuid.UUID("6f1c0a52-8c1e-4c55-9a0e-3f1f0e6f5b7d")


# =============================================================================
# Payload variants
# =============================================================================


class BasePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_type: ClassVar[str] = ""
    unique_by: ClassVar[Tuple[str, ...]] = ()
    versioned: ClassVar[bool] = True
    global_scope: ClassVar[bool] = False
    system: ClassVar[bool] = False

    text: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class GenericPayload(BasePayload):
    """Payload for any type without a declared variant."""

    model_config = ConfigDict(extra="allow")


class MessagePayload(BasePayload):
    record_type: ClassVar[str] = "message"

    source: Optional[str] = None
    in_reply_to: Optional[str] = None


class SystemMessagePayload(BasePayload):
    record_type: ClassVar[str] = "system_message"
    versioned: ClassVar[bool] = False
    system: ClassVar[bool] = True


class MemoryErrorPayload(BasePayload):
    record_type: ClassVar[str] = "memory_error"
    versioned: ClassVar[bool] = False
    system: ClassVar[bool] = True

    error: str = ""
    operation: Optional[str] = None


class AgentLogPayload(BasePayload):
    record_type: ClassVar[str] = "agent_log"
    versioned: ClassVar[bool] = False
    system: ClassVar[bool] = True

    level: str = "info"


class AgentStatePayload(BasePayload):
    record_type: ClassVar[str] = "agent_state"
    unique_by: ClassVar[Tuple[str, ...]] = ("agent_id",)

    status: str = "active"
    capabilities: List[str] = Field(default_factory=list)


class UserProfilePayload(BasePayload):
    record_type: ClassVar[str] = "user_profile"
    unique_by: ClassVar[Tuple[str, ...]] = ("owner_id",)

    display_name: Optional[str] = None


class ProposalPayload(BasePayload):
    record_type: ClassVar[str] = "proposal"
    unique_by: ClassVar[Tuple[str, ...]] = ("proposal_id",)
    global_scope: ClassVar[bool] = True

    proposal_id: str
    title: str = ""
    status: str = "open"


class VotePayload(BasePayload):
    record_type: ClassVar[str] = "vote"
    unique_by: ClassVar[Tuple[str, ...]] = ("owner_id", "proposal_id")
    global_scope: ClassVar[bool] = True

    proposal_id: str
    choice: str
    weight: float = 1.0


class TreasuryOperationPayload(BasePayload):
    record_type: ClassVar[str] = "treasury_operation"
    unique_by: ClassVar[Tuple[str, ...]] = ("reference",)
    global_scope: ClassVar[bool] = True

    reference: str
    operation: str = ""
    amount: Optional[float] = None
    status: str = "pending"


class WalletRegistrationPayload(BasePayload):
    record_type: ClassVar[str] = "wallet_registration"
    unique_by: ClassVar[Tuple[str, ...]] = ("agent_id", "address")
    global_scope: ClassVar[bool] = True

    address: str
    status: str = "pending"


PAYLOAD_TYPES: Dict[str, Type[BasePayload]] = {
    cls.record_type: cls
    for cls in (
        MessagePayload,
        SystemMessagePayload,
        MemoryErrorPayload,
        AgentLogPayload,
        AgentStatePayload,
        UserProfilePayload,
        ProposalPayload,
        VotePayload,
        TreasuryOperationPayload,
        WalletRegistrationPayload,
    )
}
GLOBAL_TYPES = frozenset(
    name for name, cls in PAYLOAD_TYPES.items() if cls.global_scope
)


def payload_class_for(record_type: str) -> Type[BasePayload]:
    return PAYLOAD_TYPES.get(record_type, GenericPayload)


def parse_payload(record_type: str, data: Any) -> BasePayload:
    """Build the payload variant for ``record_type`` from a mapping or model."""
    expected = payload_class_for(record_type)
    if isinstance(data, BasePayload):
        if type(data) is not expected:
            raise ValidationError(
                f"payload {type(data).__name__} does not match type {record_type!r}"
            )
        return data
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValidationError(f"payload for {record_type!r} must be a mapping")
    try:
        return expected.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        raise ValidationError(f"invalid payload for {record_type!r}: {problems}") from exc


def merge_payload(
    record_type: str, payload: BasePayload, patch: Mapping[str, Any]
) -> BasePayload:
    """
    Apply a patch to a payload and re-validate.

    Top-level keys replace payload fields; ``metadata`` merges shallowly so
    degradation flags and other annotations survive unrelated patches.
    """
    if not isinstance(patch, Mapping) or not patch:
        raise ValidationError("patch must be a non-empty mapping")
    blocked = sorted(IMMUTABLE_FIELDS.intersection(patch))
    if blocked:
        raise ValidationError(f"patch may not modify: {', '.join(blocked)}")

    data = payload.model_dump()
    for key, value in patch.items():
        if key == "metadata":
            if not isinstance(value, Mapping):
                raise ValidationError("metadata patch must be a mapping")
            merged = dict(data.get("metadata") or {})
            merged.update(value)
            data["metadata"] = merged
        else:
            data[key] = value
    return parse_payload(record_type, data)


def derive_record_id(record_type: str, created_at: int) -> str:
    return str(uuid.uuid5(_RECORD_ID_NAMESPACE, f"{record_type}-{created_at}"))


# =============================================================================
# Records
# =============================================================================


@dataclass
class MemoryRecord:
    type: str
    agent_id: str
    payload: BasePayload
    id: Optional[str] = None
    owner_id: Optional[str] = None
    partition: Optional[str] = None
    embedding: Optional[List[float]] = None
    version: int = 1
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def new(
        cls,
        record_type: str,
        *,
        agent_id: str,
        payload: Any = None,
        **fields: Any,
    ) -> "MemoryRecord":
        if not record_type or not str(record_type).strip():
            raise ValidationError("record type is required")
        return cls(
            type=str(record_type).strip(),
            agent_id=agent_id,
            payload=parse_payload(str(record_type).strip(), payload),
            **fields,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MemoryRecord":
        record_type = str(data.get("type") or "").strip()
        if not record_type:
            raise ValidationError("record type is required")
        embedding = data.get("embedding")
        return cls(
            type=record_type,
            agent_id=str(data.get("agent_id") or ""),
            payload=parse_payload(record_type, data.get("payload")),
            id=data.get("id"),
            owner_id=data.get("owner_id"),
            partition=data.get("partition"),
            embedding=[float(v) for v in embedding] if embedding is not None else None,
            version=int(data.get("version") or 1),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    @property
    def rules(self) -> Type[BasePayload]:
        return type(self.payload)

    @property
    def text(self) -> str:
        return self.payload.text or ""

    @property
    def is_system(self) -> bool:
        return self.rules.system

    @property
    def is_user_authored(self) -> bool:
        return bool(self.owner_id) and self.owner_id != self.agent_id and not self.is_system

    def field_value(self, name: str) -> Any:
        if name in RECORD_FIELDS:
            return getattr(self, name)
        return getattr(self.payload, name, None)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "agent_id": self.agent_id,
            "owner_id": self.owner_id,
            "partition": self.partition,
            "payload": self.payload.snapshot(),
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


@dataclass
class VersionHistoryEntry:
    record_id: str
    version: int
    payload: Dict[str, Any]
    created_at: int
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "version": self.version,
            "payload": self.payload,
            "created_at": self.created_at,
            "reason": self.reason,
        }


@dataclass
class MemoryEvent:
    kind: str
    type: str
    partition: str
    agent_id: str
    timestamp: int
    record_id: str
    version: int = 1
    origin_process_id: Optional[str] = None
    record: Optional[Dict[str, Any]] = None

    @property
    def topic(self) -> str:
        return f"memory.{self.kind}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "type": self.type,
            "partition": self.partition,
            "agent_id": self.agent_id,
            "timestamp": self.timestamp,
            "record_id": self.record_id,
            "version": self.version,
            "origin_process_id": self.origin_process_id,
            "record": self.record,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MemoryEvent":
        kind = str(data.get("kind") or "")
        if kind not in EVENT_KINDS:
            raise ValidationError(f"unknown event kind: {kind!r}")
        return cls(
            kind=kind,
            type=str(data.get("type") or ""),
            partition=str(data.get("partition") or ""),
            agent_id=str(data.get("agent_id") or ""),
            timestamp=int(data.get("timestamp") or 0),
            record_id=str(data.get("record_id") or ""),
            version=int(data.get("version") or 1),
            origin_process_id=data.get("origin_process_id"),
            record=data.get("record"),
        )


@dataclass
class Page:
    items: List[MemoryRecord]
    has_more: bool
    next_cursor: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "has_more": self.has_more,
            "next_cursor": self.next_cursor,
        }


@dataclass
class SearchQuery:
    partition: str
    text: str = ""
    limit: Optional[int] = None
    threshold: Optional[float] = None
    embedding: Optional[List[float]] = None
    types: Optional[Sequence[str]] = None
