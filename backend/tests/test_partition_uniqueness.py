from pathlib import Path

import pytest

from memstore.config import StoreSettings
from memstore.db.sqlite_adapter import SQLiteAdapter
from memstore.errors import ConflictError, ValidationError
from memstore.partition import RoomPartitioner, agent_partition
from memstore.records import MemoryRecord, parse_payload
from memstore.store import MemoryStore
from memstore.uniqueness import UniquenessEnforcer


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _make_store(tmp_path: Path, **overrides) -> MemoryStore:
    settings = StoreSettings(
        database_url=_sqlite_url(tmp_path / "memory.db"), vector_dimension=8, **overrides
    )
    store = MemoryStore(SQLiteAdapter(settings.database_url), settings=settings)
    await store.start()
    return store


def test_partitioner_routes_by_type() -> None:
    partitioner = RoomPartitioner("commons")

    assert partitioner.assign("message", "agent-1") == agent_partition("agent-1")
    assert partitioner.assign("message", "agent-1") == "agent:agent-1"
    assert partitioner.assign("vote", "agent-1") == "commons"
    assert partitioner.assign("custom_note", "agent-2") == "agent:agent-2"
    # Matching override is accepted as-is.
    assert partitioner.assign("message", "agent-1", override="agent:agent-1") == (
        "agent:agent-1"
    )


def test_partitioner_rejects_unprivileged_override() -> None:
    partitioner = RoomPartitioner()

    with pytest.raises(ValidationError):
        partitioner.assign("message", "agent-1", override="agent:agent-2")
    with pytest.raises(ValidationError):
        partitioner.assign("message", "")


def test_partitioner_privileged_override_is_untouched() -> None:
    partitioner = RoomPartitioner()

    assert (
        partitioner.assign("message", "agent-1", override="ops:audit", privileged=True)
        == "ops:audit"
    )
    with pytest.raises(ValidationError):
        partitioner.assign("message", "agent-1", privileged=True)


def _record(record_type: str, payload: dict, **fields) -> MemoryRecord:
    return MemoryRecord(
        type=record_type,
        agent_id=fields.pop("agent_id", "agent-1"),
        payload=parse_payload(record_type, payload),
        **fields,
    )


def test_composite_key_depends_on_type_and_values() -> None:
    vote = _record("vote", {"proposal_id": "p-1", "choice": "yes"}, owner_id="user-1")
    same_vote = _record("vote", {"proposal_id": "p-1", "choice": "no"}, owner_id="user-1")
    other_voter = _record("vote", {"proposal_id": "p-1", "choice": "yes"}, owner_id="user-2")

    assert UniquenessEnforcer.composite_key(vote) == UniquenessEnforcer.composite_key(same_vote)
    assert UniquenessEnforcer.composite_key(vote) != UniquenessEnforcer.composite_key(
        other_voter
    )
    assert UniquenessEnforcer.composite_key(_record("message", {"text": "x"})) is None


def test_composite_key_requires_every_field() -> None:
    vote = _record("vote", {"proposal_id": "p-1", "choice": "yes"})

    with pytest.raises(ValidationError, match="owner_id"):
        UniquenessEnforcer.composite_key(vote)


@pytest.mark.asyncio
async def test_unique_types_conflict_on_second_create(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        profile_id = await store.create(
            MemoryRecord.new(
                "user_profile", agent_id="agent-1", owner_id="user-1", payload={}
            )
        )
        with pytest.raises(ConflictError) as excinfo:
            await store.create(
                MemoryRecord.new(
                    "user_profile", agent_id="agent-2", owner_id="user-1", payload={}
                )
            )
        assert excinfo.value.existing_id == profile_id

        # Another owner is a different key.
        await store.create(
            MemoryRecord.new("user_profile", agent_id="agent-1", owner_id="user-2", payload={})
        )
        assert await store.count("agent:agent-1", type="user_profile") == 2
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_votes_are_unique_per_owner_and_proposal(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:

        def vote(owner: str, proposal: str) -> MemoryRecord:
            return MemoryRecord.new(
                "vote",
                agent_id="agent-1",
                owner_id=owner,
                payload={"proposal_id": proposal, "choice": "yes"},
            )

        await store.create(vote("user-1", "p-1"))
        await store.create(vote("user-1", "p-2"))
        await store.create(vote("user-2", "p-1"))
        with pytest.raises(ConflictError):
            await store.create(vote("user-1", "p-1"))

        assert await store.count("global", type="vote") == 3
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_update_cannot_move_onto_taken_key(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:

        def wallet(address: str) -> MemoryRecord:
            return MemoryRecord.new(
                "wallet_registration", agent_id="agent-1", payload={"address": address}
            )

        first_id = await store.create(wallet("0x1"))
        second_id = await store.create(wallet("0x2"))

        with pytest.raises(ConflictError) as excinfo:
            await store.update(second_id, {"address": "0x1"}, 1)
        assert excinfo.value.existing_id == first_id
        assert (await store.get(second_id)).payload.address == "0x2"

        # Moving to a free key works and frees the old one.
        assert await store.update(second_id, {"address": "0x3"}, 1)
        await store.create(wallet("0x2"))
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_privileged_create_uses_named_partition(tmp_path: Path) -> None:
    store = await _make_store(tmp_path, global_partition="commons")
    try:
        pinned_id = await store.create(
            MemoryRecord.new(
                "message", agent_id="agent-1", payload={"text": "audit"}, partition="ops:audit"
            ),
            privileged=True,
        )
        proposal_id = await store.create(
            MemoryRecord.new(
                "proposal", agent_id="agent-1", payload={"proposal_id": "p-9", "title": "x"}
            )
        )

        assert (await store.get(pinned_id)).partition == "ops:audit"
        assert (await store.get(proposal_id)).partition == "commons"
        with pytest.raises(ValidationError):
            await store.create(
                MemoryRecord.new(
                    "message",
                    agent_id="agent-1",
                    payload={"text": "sneaky"},
                    partition="ops:audit",
                )
            )
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_create_validates_before_writing(tmp_path: Path) -> None:
    store = await _make_store(tmp_path)
    try:
        with pytest.raises(ValidationError):
            await store.create({"type": "message", "agent_id": "", "payload": {"text": "x"}})
        with pytest.raises(ValidationError):
            await store.create(
                {"type": "wallet_registration", "agent_id": "agent-1", "payload": {}}
            )
        with pytest.raises(ValidationError):
            await store.create(
                {"type": "message", "agent_id": "agent-1", "payload": {"colour": "red"}}
            )

        generic_id = await store.create(
            {"type": "scratchpad", "agent_id": "agent-1", "payload": {"colour": "red"}}
        )
        assert (await store.get(generic_id)).payload.model_dump()["colour"] == "red"
        assert await store.count("agent:agent-1") == 1
    finally:
        await store.close()
