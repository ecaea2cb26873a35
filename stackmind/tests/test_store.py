"""Tests for the record store."""

import json

import pytest

from stackmind.daemon.errors import DuplicateIdentifier, InvalidRequest, NotFound, PersistenceFailure
from stackmind.daemon.models import Record
from stackmind.daemon.store import RecordStore


def make_record(text="some captured text", **kwargs):
    return Record(text=text, **kwargs)


@pytest.mark.asyncio
async def test_put_and_get(store):
    record = await store.put(make_record(title="Title", tags=["Python", " asyncio "]))

    fetched = await store.get(record.id)
    assert fetched.title == "Title"
    assert fetched.tags == ["python", "asyncio"]
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_put_duplicate_id_fails(store):
    await store.put(make_record(id="r1"))

    with pytest.raises(DuplicateIdentifier):
        await store.put(make_record(text="other", id="r1"))

    assert (await store.get("r1")).text == "some captured text"


@pytest.mark.asyncio
async def test_returned_records_are_copies(store):
    record = await store.put(make_record(id="r1", tags=["a"]))
    record.tags.append("mutated")

    fetched = await store.get("r1")
    fetched.title = "changed"

    assert (await store.get("r1")).tags == ["a"]
    assert (await store.get("r1")).title is None


@pytest.mark.asyncio
async def test_list_newest_first(store):
    await store.put(make_record(id="old", timestamp=1000))
    await store.put(make_record(id="new", timestamp=3000))
    await store.put(make_record(id="mid", timestamp=2000))

    assert [r.id for r in await store.list()] == ["new", "mid", "old"]


@pytest.mark.asyncio
async def test_get_missing_returns_none(store):
    assert await store.get("nope") is None


@pytest.mark.asyncio
async def test_search_matches_any_text_field(store):
    await store.put(make_record("plain body", id="by-title", title="Asyncio gather"))
    await store.put(make_record("plain body", id="by-notes", notes="see ASYNCIO docs"))
    await store.put(make_record("plain body", id="by-tag", tags=["asyncio"]))
    await store.put(make_record("unrelated", id="miss"))

    found = {r.id for r in await store.search("asyncio")}
    assert found == {"by-title", "by-notes", "by-tag"}


@pytest.mark.asyncio
async def test_blank_search_returns_everything(store):
    await store.put(make_record(id="a"))
    await store.put(make_record(id="b"))

    assert len(await store.search("   ")) == 2


@pytest.mark.asyncio
async def test_advanced_search_tags_are_anded(store):
    await store.put(make_record(id="a", tags=["a"]))
    await store.put(make_record(id="b", tags=["b"]))
    await store.put(make_record(id="ab", tags=["a", "b"]))
    await store.put(make_record(id="none"))

    assert [r.id for r in await store.advanced_search(tags=["a", "b"])] == ["ab"]
    assert {r.id for r in await store.advanced_search(tags=["A"])} == {"a", "ab"}
    assert len(await store.advanced_search(tags=[])) == 4
    assert await store.advanced_search(tags=["missing"]) == []


@pytest.mark.asyncio
async def test_advanced_search_date_range_inclusive(store):
    await store.put(make_record(id="t1", timestamp=1000))
    await store.put(make_record(id="t2", timestamp=2000))
    await store.put(make_record(id="t3", timestamp=3000))

    in_range = await store.advanced_search(start_time=2000, end_time=3000)
    assert [r.id for r in in_range] == ["t3", "t2"]

    # A zero bound is still a bound
    assert await store.advanced_search(end_time=0) == []
    assert len(await store.advanced_search(start_time=0)) == 3


@pytest.mark.asyncio
async def test_advanced_search_combines_filters(store):
    await store.put(make_record("flexbox centering", id="css-old", tags=["css"], timestamp=1000))
    await store.put(make_record("flexbox gap", id="css-new", tags=["css"], timestamp=5000))
    await store.put(make_record("flexbox in qt", id="qt", tags=["qt"], timestamp=5000))

    results = await store.advanced_search(text_query="flexbox", tags=["css"], start_time=2000)
    assert [r.id for r in results] == ["css-new"]


@pytest.mark.asyncio
async def test_all_tags_sorted_and_pruned(store):
    await store.put(make_record(id="r1", tags=["rust", "async"]))
    await store.put(make_record(id="r2", tags=["css"]))
    assert await store.all_tags() == ["async", "css", "rust"]

    await store.remove("r2")
    assert await store.all_tags() == ["async", "rust"]
    assert await store.find_by_tag("css") == []


@pytest.mark.asyncio
async def test_replace_merges_and_keeps_identity(store):
    original = await store.put(make_record(id="r1", timestamp=1234, tags=["a"]))

    updated = await store.replace("r1", {
        "notes": "remember",
        "tags": ["B"],
        "id": "hijack",
        "timestamp": 1,
    })

    assert updated.id == "r1"
    assert updated.timestamp == original.timestamp
    assert updated.notes == "remember"
    assert updated.tags == ["b"]
    assert [r.id for r in await store.find_by_tag("b")] == ["r1"]
    assert await store.find_by_tag("a") == []


@pytest.mark.asyncio
async def test_replace_missing_and_invalid(store):
    with pytest.raises(NotFound):
        await store.replace("missing", {"notes": "x"})

    await store.put(make_record(id="r1"))
    with pytest.raises(InvalidRequest):
        await store.replace("r1", {"colour": "blue"})
    with pytest.raises(InvalidRequest):
        await store.replace("r1", {"text": "  "})


@pytest.mark.asyncio
@pytest.mark.parametrize("updates", [
    {"title": 123},
    {"summary": {"a": 1}},
    {"tags": "react"},
    {"tags": ["ok", 3]},
    {"url": 5},
    {"embedding": ["x"]},
])
async def test_replace_rejects_mistyped_fields(store, updates):
    await store.put(make_record("hello world", id="r1", title="Title", tags=["a"]))

    with pytest.raises(InvalidRequest):
        await store.replace("r1", updates)

    record = await store.get("r1")
    assert record.title == "Title"
    assert record.tags == ["a"]
    assert [r.id for r in await store.search("hello")] == ["r1"]


@pytest.mark.asyncio
async def test_import_rejects_mistyped_record(store):
    with pytest.raises(InvalidRequest):
        await store.import_all([{"id": "r1", "text": "body", "title": 1}])

    assert await store.count() == 0


@pytest.mark.asyncio
async def test_editing_embedded_fields_drops_cached_vector(store):
    await store.put(make_record(id="r1", embedding=[1.0, 0.0]))

    kept = await store.replace("r1", {"notes": "unrelated edit"})
    assert kept.embedding == [1.0, 0.0]

    dropped = await store.replace("r1", {"title": "New title"})
    assert dropped.embedding is None


@pytest.mark.asyncio
async def test_remove_is_idempotent(store):
    await store.put(make_record(id="r1"))

    assert await store.remove("r1") is True
    assert await store.remove("r1") is False
    assert await store.count() == 0


@pytest.mark.asyncio
async def test_remove_all(store):
    for i in range(3):
        await store.put(make_record(id=f"r{i}", tags=["x"]))

    assert await store.remove_all() == 3
    assert await store.list() == []
    assert await store.all_tags() == []


@pytest.mark.asyncio
async def test_import_upserts(store):
    await store.put(make_record("old text", id="x"))

    imported = await store.import_all([
        {"id": "x", "text": "new text", "pageTitle": "Page", "questionId": "42", "timestamp": 5},
        {"id": "y", "text": "fresh", "timestamp": 6},
    ])

    assert imported == 2
    assert await store.count() == 2
    x = await store.get("x")
    assert x.text == "new text"
    assert x.page_title == "Page"
    assert x.question_id == "42"
    assert await store.import_all([]) == 0


@pytest.mark.asyncio
async def test_wal_replay_after_reopen(data_path):
    store = RecordStore(data_path)
    await store.initialize()
    await store.put(make_record(id="keep", tags=["a"]))
    await store.put(make_record(id="gone"))
    await store.replace("keep", {"summary": "edited"})
    await store.remove("gone")
    await store.close()

    reopened = RecordStore(data_path)
    await reopened.initialize()
    try:
        assert [r.id for r in await reopened.list()] == ["keep"]
        assert (await reopened.get("keep")).summary == "edited"
        assert [r.id for r in await reopened.find_by_tag("a")] == ["keep"]
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_corrupt_wal_line_is_skipped(data_path, caplog_loguru):
    store = RecordStore(data_path)
    await store.initialize()
    await store.put(make_record(id="r1"))
    await store.close()

    with open(store.wal_path, "a", encoding="utf-8") as f:
        f.write("{not json\n")

    reopened = RecordStore(data_path)
    await reopened.initialize()
    try:
        assert await reopened.count() == 1
        assert "Invalid WAL record skipped" in caplog_loguru.text
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_compaction_writes_snapshot(data_path):
    store = RecordStore(data_path, compact_after=3)
    await store.initialize()
    for i in range(3):
        await store.put(make_record(id=f"r{i}"))

    snapshot = json.loads(store.snapshot_path.read_text())
    assert len(snapshot["records"]) == 3
    assert store.wal_path.stat().st_size == 0

    await store.put(make_record(id="r3"))
    await store.close()

    reopened = RecordStore(data_path)
    await reopened.initialize()
    try:
        assert await reopened.count() == 4
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_failed_write_is_not_applied(store, monkeypatch):
    await store.put(make_record(id="before"))

    def broken_fsync(fd):
        raise OSError("disk full")

    monkeypatch.setattr("stackmind.daemon.store.os.fsync", broken_fsync)
    with pytest.raises(PersistenceFailure):
        await store.put(make_record(id="lost"))
    with pytest.raises(PersistenceFailure):
        await store.remove("before")

    assert await store.get("lost") is None
    assert await store.get("before") is not None
    monkeypatch.undo()

    await store.put(make_record(id="after"))
    wal_ops = [json.loads(line)["op"] for line in store.wal_path.read_text().splitlines()]
    assert wal_ops == ["put", "put"]


@pytest.mark.asyncio
async def test_write_before_initialize_fails(data_path):
    store = RecordStore(data_path)

    with pytest.raises(PersistenceFailure):
        await store.put(make_record())
