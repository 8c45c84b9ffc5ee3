import pytest

from orchestrator_library.errors import InvalidTransitionError
from orchestrator_library.models import GenerationKind, GenerationRecord, GenerationStatus
from orchestrator_library.persistence import JsonStateFile, MemoryStateFile
from orchestrator_library.store import GenerationStore, SelectionProjection


def make_record(clock, **kwargs) -> GenerationRecord:
    kwargs.setdefault("provider_id", "custom")
    kwargs.setdefault("kind", GenerationKind.IMAGE)
    return GenerationRecord(created_at=clock.now(), **kwargs)


@pytest.mark.asyncio
async def test_add_keeps_newest_first_and_rejects_duplicates(clock):
    store = GenerationStore()
    first = await store.add(make_record(clock))
    second = await store.add(make_record(clock))

    assert [r.id for r in store.snapshot()] == [second.id, first.id]
    with pytest.raises(ValueError):
        await store.add(first)


@pytest.mark.asyncio
async def test_reads_return_copies(clock):
    store = GenerationStore()
    record = await store.add(make_record(clock))

    copy = store.get(record.id)
    copy.status = GenerationStatus.FAILED

    assert store.get(record.id).status is GenerationStatus.GENERATING


@pytest.mark.asyncio
async def test_update_of_absent_record_is_a_no_op(clock):
    state = MemoryStateFile()
    store = GenerationStore(state_file=state)

    result = await store.update("missing", lambda r: r.mark_success(result_url="u"))

    assert result is None
    assert state.save_count == 0


@pytest.mark.asyncio
async def test_terminal_status_is_immutable(clock):
    store = GenerationStore()
    record = await store.add(make_record(clock))
    await store.update(record.id, lambda r: r.mark_failed("boom"))

    with pytest.raises(InvalidTransitionError):
        await store.update(record.id, lambda r: r.mark_success(result_url="late"))

    stored = store.get(record.id)
    assert stored.status is GenerationStatus.FAILED
    assert stored.result_url is None
    assert stored.error_message == "boom"


def test_defer_poll_never_rewinds(clock):
    record = make_record(clock)
    record.attach_task("t1", eligible_at=100.0)

    assert record.defer_poll(50.0) is False
    assert record.next_poll_eligible_at == 100.0
    assert record.defer_poll(150.0) is True
    assert record.next_poll_eligible_at == 150.0


def test_load_drops_malformed_and_expired_entries(clock):
    now = clock.now()
    good = make_record(clock, status=GenerationStatus.SUCCESS, result_url="https://x/1.png")
    old = GenerationRecord(
        provider_id="hf", kind=GenerationKind.IMAGE, created_at=now - 25 * 3600,
        status=GenerationStatus.SUCCESS, result_url="https://x/old.png",
    )
    half_written = make_record(clock).to_dict()
    half_written["status"] = "success"
    state = MemoryStateFile(
        {
            "schema_version": 1,
            "records": [good.to_dict(), old.to_dict(), half_written, {"id": "x"}],
        }
    )

    store = GenerationStore(state_file=state, retention_seconds=24 * 3600, now=now)

    assert [r.id for r in store.snapshot()] == [good.id]


@pytest.mark.parametrize("records", [None, 5, "records", {"id": "x"}])
def test_load_tolerates_records_of_the_wrong_shape(clock, records):
    state = MemoryStateFile({"schema_version": 1, "records": records})

    store = GenerationStore(state_file=state, retention_seconds=24 * 3600, now=clock.now())

    assert store.snapshot() == []


def test_load_drops_entries_that_are_not_objects(clock):
    good = make_record(clock)
    state = MemoryStateFile({"records": ["junk", 3, None, [1, 2], good.to_dict()]})

    store = GenerationStore(state_file=state)

    assert [r.id for r in store.snapshot()] == [good.id]


@pytest.mark.asyncio
async def test_evict_older_than_keeps_generating_records(clock):
    store = GenerationStore()
    done = make_record(clock, status=GenerationStatus.SUCCESS, result_url="u")
    running = make_record(clock)
    running.attach_task("t1")
    await store.add(done)
    await store.add(running)

    removed = await store.evict_older_than(clock.now() + 1)

    assert removed == 1
    assert running.id in store
    assert done.id not in store


@pytest.mark.asyncio
async def test_history_persists_whole_records(tmp_path, clock):
    path = tmp_path / "generation_history.json"
    store = GenerationStore(state_file=JsonStateFile(path))
    record = await store.add(make_record(clock, params={"prompt": "a cat"}))
    await store.update(record.id, lambda r: r.mark_success(result_url="https://x/cat.png"))

    reloaded = GenerationStore(state_file=JsonStateFile(path))
    stored = reloaded.get(record.id)
    assert stored.status is GenerationStatus.SUCCESS
    assert stored.result_url == "https://x/cat.png"
    assert stored.params == {"prompt": "a cat"}


# =============================================================================
# SELECTION
# =============================================================================


@pytest.mark.asyncio
async def test_select_unknown_record_raises(clock):
    selection = SelectionProjection(GenerationStore())
    with pytest.raises(KeyError):
        selection.select("nope")
    assert selection.record_id is None


@pytest.mark.asyncio
async def test_selection_clears_when_record_is_gone(clock):
    store = GenerationStore()
    selection = SelectionProjection(store)
    record = await store.add(make_record(clock))
    selection.select(record.id)

    await store.delete(record.id)

    assert selection.current() is None
    assert selection.record_id is None


@pytest.mark.asyncio
async def test_selection_resolves_fresh_state(clock):
    store = GenerationStore()
    selection = SelectionProjection(store)
    record = await store.add(make_record(clock))
    selection.select(record.id)

    await store.update(record.id, lambda r: r.mark_success(result_url="https://x/done.png"))

    assert selection.current().result_url == "https://x/done.png"


@pytest.mark.asyncio
async def test_refresh_if_current_only_for_selected_record(clock):
    store = GenerationStore()
    selection = SelectionProjection(store)
    a = await store.add(make_record(clock))
    b = await store.add(make_record(clock))
    seen = []
    selection.subscribe(seen.append)
    selection.select(a.id)

    assert selection.refresh_if_current(store.get(b.id)) is False
    assert selection.refresh_if_current(store.get(a.id)) is True
    assert [r.id for r in seen] == [a.id, a.id]


@pytest.mark.asyncio
async def test_listener_errors_are_isolated(clock):
    store = GenerationStore()
    selection = SelectionProjection(store)
    record = await store.add(make_record(clock))
    seen = []

    def broken(_):
        raise RuntimeError("listener blew up")

    selection.subscribe(broken)
    unsubscribe = selection.subscribe(seen.append)
    selection.select(record.id)
    unsubscribe()
    selection.select(record.id)

    assert len(seen) == 1
