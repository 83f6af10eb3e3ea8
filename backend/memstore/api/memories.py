"""
Memories API - CRUD, history, search and paging over the memory store.

Every route is guarded by the shared API key. The key is read from
``X-Memory-API-Key`` or an ``Authorization: Bearer`` header.
"""

import hmac
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..config import StoreSettings
from ..errors import ConflictError, NotFoundError, TransientStorageError, ValidationError
from ..records import MemoryRecord, SearchQuery
from ..store import MemoryStore

_API_KEY_HEADER = "X-Memory-API-Key"
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _settings_for(request: Request) -> StoreSettings:
    return getattr(request.app.state, "settings", None) or StoreSettings()


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


async def require_memory_api_key(
    request: Request,
    x_memory_api_key: Optional[str] = Header(default=None, alias=_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    settings = _settings_for(request)
    configured = settings.api_key.strip()
    if not configured:
        if settings.allow_insecure_local and _is_loopback_request(request):
            return
        reason = (
            "insecure_local_override_requires_loopback"
            if settings.allow_insecure_local
            else "api_key_not_configured"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "memory_auth_failed", "reason": reason},
            headers={"WWW-Authenticate": "Bearer"},
        )

    provided = str(x_memory_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "memory_auth_failed",
                "reason": "invalid_or_missing_api_key",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_store(request: Request) -> MemoryStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "store_unavailable"},
        )
    return store


router = APIRouter(
    prefix="/memories",
    tags=["memories"],
    dependencies=[Depends(require_memory_api_key)],
)


class MemoryCreate(BaseModel):
    type: str = Field(min_length=1, max_length=64)
    agent_id: str = Field(min_length=1, max_length=255)
    owner_id: Optional[str] = Field(default=None, max_length=255)
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    partition: Optional[str] = Field(default=None, max_length=255)
    payload: Dict[str, Any] = Field(default_factory=dict)
    embedding: Optional[List[float]] = None
    privileged: bool = False


class MemoryPatch(BaseModel):
    patch: Dict[str, Any] = Field(min_length=1)
    expected_version: int = Field(ge=1)
    reason: Optional[str] = Field(default=None, max_length=200)


class MemorySearch(BaseModel):
    partition: str = Field(min_length=1)
    text: str = ""
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    types: Optional[List[str]] = None


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(
            status_code=409,
            detail={
                "error": "conflict",
                "existing_id": exc.existing_id,
                "message": str(exc),
            },
        ) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if isinstance(exc, TransientStorageError):
        raise HTTPException(
            status_code=503,
            detail={"error": "storage_busy", "message": str(exc)},
            headers={"Retry-After": "1"},
        ) from exc
    raise exc


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_memory(body: MemoryCreate, store: MemoryStore = Depends(get_store)):
    try:
        record = MemoryRecord.new(
            body.type,
            agent_id=body.agent_id,
            payload=body.payload,
            id=body.id,
            owner_id=body.owner_id,
            partition=body.partition,
            embedding=body.embedding,
        )
        record_id = await store.create(record, privileged=body.privileged)
    except (ValidationError, ConflictError, TransientStorageError) as exc:
        _raise_http(exc)
    return {"id": record_id, "version": record.version}


@router.post("/search")
async def search_memories(body: MemorySearch, store: MemoryStore = Depends(get_store)):
    try:
        results = await store.search(
            SearchQuery(
                partition=body.partition,
                text=body.text,
                limit=body.limit,
                threshold=body.threshold,
                types=body.types,
            )
        )
    except ValidationError as exc:
        _raise_http(exc)
    return {"items": [record.to_dict() for record in results], "count": len(results)}


@router.get("/partitions/{partition}")
async def list_partition(
    partition: str,
    cursor: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1),
    store: MemoryStore = Depends(get_store),
):
    try:
        page = await store.paginate(partition, cursor=cursor, limit=limit)
    except (ValidationError, TransientStorageError) as exc:
        _raise_http(exc)
    return page.to_dict()


@router.get("/{record_id}")
async def get_memory(record_id: str, store: MemoryStore = Depends(get_store)):
    try:
        record = await store.get(record_id)
    except (NotFoundError, TransientStorageError) as exc:
        _raise_http(exc)
    return record.to_dict()


@router.patch("/{record_id}")
async def update_memory(
    record_id: str, body: MemoryPatch, store: MemoryStore = Depends(get_store)
):
    try:
        ok = await store.update(
            record_id, body.patch, body.expected_version, reason=body.reason
        )
        # Report the stored version either way so a loser can retry from it.
        current = await store.get(record_id)
    except (NotFoundError, ConflictError, ValidationError, TransientStorageError) as exc:
        _raise_http(exc)
    return {"ok": ok, "version": current.version}


@router.delete("/{record_id}")
async def delete_memory(record_id: str, store: MemoryStore = Depends(get_store)):
    try:
        await store.remove(record_id)
    except (NotFoundError, TransientStorageError) as exc:
        _raise_http(exc)
    return {"ok": True}


@router.get("/{record_id}/history")
async def memory_history(record_id: str, store: MemoryStore = Depends(get_store)):
    try:
        entries = await store.history(record_id)
    except (NotFoundError, TransientStorageError) as exc:
        _raise_http(exc)
    return {"record_id": record_id, "items": [entry.to_dict() for entry in entries]}
