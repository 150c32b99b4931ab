"""
Tests for GridSession writes: slot/take updates, ownership rules,
upload degradation and the completion path.
"""

from unittest.mock import MagicMock

import pytest

from models.grid import SLOT_COUNT, User
from runtime.change_channel import GridEventType
from runtime.errors import SlotLockedError, UploadFailure, ValidationError
from runtime.grid_session import GridSession, finalize_job_trigger
from runtime.grid_state_store import GridStateStore


@pytest.fixture
def session(store, policy):
    return GridSession(store, policy=policy)


@pytest.mark.asyncio
async def test_first_contribution_claims_slot(session, alice):
    grid = await session.update_slot(alice, 1, "videos/clipA.webm")

    assert grid.slots[1].video == "videos/clipA.webm"
    assert [(c.slot_index, c.owner_email) for c in grid.contributions] == [(1, "a@x")]
    assert session.owned_slot(alice) == 1


@pytest.mark.asyncio
async def test_filled_slots_match_contribution_log(session, alice, bob):
    await session.update_slot(alice, 1, "videos/a.webm")
    await session.update_slot(bob, 4, "videos/b.webm")
    await session.update_slot(alice, 1, "videos/a2.webm")

    grid = session.store.state
    filled = {i for i, v in enumerate(grid.videos) if v is not None}
    assert filled == {c.slot_index for c in grid.contributions}
    assert len(grid.contributions) == 2


@pytest.mark.asyncio
async def test_other_users_slot_is_locked(session, alice, bob):
    await session.update_slot(alice, 1, "videos/a.webm")
    before = session.store.version

    with pytest.raises(SlotLockedError):
        await session.update_slot(bob, 1, "videos/b.webm")

    assert session.store.version == before
    assert not session.can_contribute(bob, 1)


@pytest.mark.asyncio
async def test_second_slot_for_same_user_is_locked(session, alice):
    await session.update_slot(alice, 1, "videos/a.webm")

    with pytest.raises(SlotLockedError):
        await session.update_slot(alice, 2, "videos/a.webm")


@pytest.mark.asyncio
@pytest.mark.parametrize("index", [-1, 16, True, "3", None])
async def test_bad_index_rejected_without_mutation(session, alice, index):
    before = session.store.version

    with pytest.raises(ValidationError):
        await session.update_slot(alice, index, "videos/a.webm")

    assert session.store.version == before
    assert session.store.state.contributions == []


@pytest.mark.asyncio
async def test_update_takes_requires_a_take(session, alice):
    with pytest.raises(ValidationError):
        await session.update_takes(alice, 0)


@pytest.mark.asyncio
async def test_full_triad_sets_canonical_to_third_take(session, alice):
    grid = await session.update_takes(
        alice, 2, take1="videos/t1.webm", take2="videos/t2.webm", take3="videos/t3.webm"
    )

    slot = grid.slots[2]
    assert slot.takes.to_dict() == {
        "take1": "videos/t1.webm",
        "take2": "videos/t2.webm",
        "take3": "videos/t3.webm",
    }
    assert slot.video == "videos/t3.webm"
    assert session.owned_slot(alice) == 2


@pytest.mark.asyncio
async def test_rerecorded_take_becomes_canonical(session, alice):
    await session.update_takes(alice, 2, take1="videos/t1.webm", take2="videos/t2.webm", take3="videos/t3.webm")
    grid = await session.update_takes(alice, 2, take2="videos/t2b.webm")

    assert grid.slots[2].takes.take2 == "videos/t2b.webm"
    assert grid.slots[2].takes.take3 == "videos/t3.webm"
    assert grid.slots[2].video == "videos/t2b.webm"


@pytest.mark.asyncio
async def test_local_media_is_uploaded(store, policy, alice):
    object_store = MagicMock()
    object_store.upload_file.side_effect = lambda path, key, content_type: key
    session = GridSession(store, object_store=object_store, policy=policy)

    grid = await session.update_slot(alice, 0, "/tmp/recording.webm")

    key = grid.slots[0].video
    assert key.startswith("videos/grid_test_0_video_")
    assert key.endswith(".webm")
    object_store.upload_file.assert_called_once()


@pytest.mark.asyncio
async def test_upload_failure_keeps_raw_reference(store, policy, alice):
    object_store = MagicMock()
    object_store.upload_file.side_effect = UploadFailure("bucket unreachable")
    session = GridSession(store, object_store=object_store, policy=policy)

    grid = await session.update_slot(alice, 0, "/tmp/recording.webm")

    assert grid.slots[0].video == "/tmp/recording.webm"
    assert session.owned_slot(alice) == 0


@pytest.mark.asyncio
async def test_remote_references_are_not_reuploaded(store, policy, alice):
    object_store = MagicMock()
    session = GridSession(store, object_store=object_store, policy=policy)

    await session.update_slot(alice, 0, "https://cdn.example.com/a.webm")

    object_store.upload_file.assert_not_called()


@pytest.mark.asyncio
async def test_write_reconciles_before_applying(backend, scheduler, policy, alice, bob):
    mine = GridSession(GridStateStore(backend, scheduler, generation_id="grid_test"), policy=policy)
    theirs = GridSession(GridStateStore(backend, scheduler, generation_id="grid_test"), policy=policy)
    mine.store.load()

    await theirs.update_slot(bob, 3, "videos/b.webm")
    grid = await mine.update_slot(alice, 1, "videos/a.webm")

    assert grid.slots[3].video == "videos/b.webm"
    assert grid.slots[1].video == "videos/a.webm"
    assert {c.owner_email for c in grid.contributions} == {"a@x", "b@x"}


@pytest.mark.asyncio
async def test_sixteenth_slot_fires_one_completion(store, backend, policy):
    on_complete = MagicMock()
    session = GridSession(store, policy=policy, on_complete=on_complete)
    events = []
    store.subscribe(events.append)

    for i in range(SLOT_COUNT - 1):
        await session.update_slot(User(f"u{i}", f"user{i}@x"), i, f"videos/{i}.webm")
    on_complete.assert_not_called()

    grid = await session.update_slot(User("u15", "user15@x"), 15, "videos/15.webm")

    on_complete.assert_called_once()
    finished = on_complete.call_args[0][0]
    assert finished.is_complete
    assert finished.generation_id == "grid_test"

    assert grid.generation_id != "grid_test"
    assert grid.videos == [None] * SLOT_COUNT
    assert grid.contributions == []
    assert [e.type for e in events].count(GridEventType.COMPLETED) == 1
    assert backend.current == grid.generation_id
    assert backend.completed[0]["grid"]["generationId"] == "grid_test"


@pytest.mark.asyncio
async def test_completion_queues_finalize_job(store, backend, policy):
    session = GridSession(store, policy=policy, on_complete=finalize_job_trigger(backend))

    for i in range(SLOT_COUNT):
        await session.update_slot(User(f"u{i}", f"User{i}@X"), i, f"videos/{i}.webm")

    assert len(backend.jobs) == 1
    job = backend.jobs[0]
    assert job["generation_id"] == "grid_test"
    assert job["recipients"] == [f"user{i}@x" for i in range(SLOT_COUNT)]
    assert job["grid"]["videos"] == [f"videos/{i}.webm" for i in range(SLOT_COUNT)]


@pytest.mark.asyncio
async def test_failed_trigger_is_retried_on_next_write(store, backend, policy):
    on_complete = MagicMock(side_effect=[ConnectionError("redis down"), None])
    session = GridSession(store, policy=policy, on_complete=on_complete)
    last = User("u15", "user15@x")

    for i in range(SLOT_COUNT - 1):
        await session.update_slot(User(f"u{i}", f"user{i}@x"), i, f"videos/{i}.webm")
    with pytest.raises(ConnectionError):
        await session.update_slot(last, 15, "videos/15.webm")

    assert store.generation_id == "grid_test"
    assert store.state.is_complete
    assert backend.completed == []

    grid = await session.update_slot(last, 15, "videos/15b.webm")

    assert on_complete.call_count == 2
    assert on_complete.call_args[0][0].videos[15] == "videos/15b.webm"
    assert grid.generation_id != "grid_test"
    assert grid.videos == [None] * SLOT_COUNT
    assert backend.completed[0]["grid"]["generationId"] == "grid_test"


@pytest.mark.asyncio
async def test_async_completion_trigger_is_awaited(store, policy):
    seen = []

    async def trigger(grid):
        seen.append(grid.generation_id)

    session = GridSession(store, policy=policy, on_complete=trigger)
    for i in range(SLOT_COUNT):
        await session.update_slot(User(f"u{i}", f"user{i}@x"), i, f"videos/{i}.webm")

    assert seen == ["grid_test"]


@pytest.mark.asyncio
async def test_clear_wipes_current_generation(session, alice):
    await session.update_takes(alice, 4, take1="videos/1.webm")

    grid = session.clear()

    assert grid.generation_id == "grid_test"
    assert session.store.state.videos == [None] * SLOT_COUNT
    assert session.store.state.contributions == []
    assert session.owned_slot(alice) is None


@pytest.mark.asyncio
async def test_force_sync_reads_remote_state(backend, scheduler, policy, bob):
    mine = GridSession(GridStateStore(backend, scheduler, generation_id="grid_test"), policy=policy)
    theirs = GridSession(GridStateStore(backend, scheduler, generation_id="grid_test"), policy=policy)
    mine.store.load()

    await theirs.update_slot(bob, 8, "videos/b.webm")

    assert mine.force_sync() is True
    assert mine.owned_slot(bob) == 8
    assert mine.force_sync() is False
