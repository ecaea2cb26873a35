"""Tests for message decoding and routing."""

import pytest

from stackmind.daemon.errors import InvalidRequest, UnknownAction
from stackmind.daemon.messages import (
    ACTIONS,
    GetSolution,
    MessageRouter,
    ProcessInBackground,
    SemanticSearch,
    parse_request,
    record_to_wire,
)
from stackmind.daemon.models import Record
from stackmind.daemon.search import SemanticSearchEngine
from stackmind.tests.fakes import FakeEmbedder, FakeGenerator


@pytest.fixture
def router(store, pipeline, generator, embedder):
    return MessageRouter(store, pipeline, SemanticSearchEngine(store, embedder), generator)


async def settle(router, bus):
    await router.pipeline.drain()
    await bus.wait_idle()


def test_every_action_is_known():
    assert set(ACTIONS) == {
        "getSolutions", "getSolution", "deleteSolution", "updateSolution",
        "clearAllSolutions", "getAllTags", "getCount", "searchSolutions",
        "advancedSearch", "semanticSearch", "exportSolutions", "importSolutions",
        "generateTags", "generateTitle", "summarizeText", "formatText",
        "processInBackground", "getTaskStatus", "getActiveTasks", "updateTaskNotes",
        "finalizeTask", "cancelTask",
    }


def test_parse_camel_and_snake_keys():
    request = parse_request({
        "action": "processInBackground",
        "selectedText": "code",
        "page_title": "Page",
        "currentTags": ["a"],
        "isFormatted": True,
    })

    assert isinstance(request, ProcessInBackground)
    assert request.selected_text == "code"
    assert request.page_title == "Page"
    assert request.current_tags == ["a"]
    assert request.is_formatted is True
    assert request.current_title is None

    assert parse_request({"action": "semanticSearch", "query": "q", "topK": 3}) == SemanticSearch("q", 3)


@pytest.mark.parametrize("payload,error", [
    ({"action": "launchRockets"}, UnknownAction),
    ({"id": "r1"}, UnknownAction),
    ("getSolutions", InvalidRequest),
    ({"action": "getSolution"}, InvalidRequest),
    ({"action": "getSolution", "id": None}, InvalidRequest),
    ({"action": "getSolution", "id": 5}, InvalidRequest),
    ({"action": "processInBackground", "selectedText": "x", "currentTags": "a,b"}, InvalidRequest),
])
def test_parse_rejects(payload, error):
    with pytest.raises(error):
        parse_request(payload)


def test_record_wire_keys():
    record = Record(text="x", page_title="P", formatted_text="f", question_id="9", embedding=[1.0])

    wire = record_to_wire(record)
    assert {"pageTitle", "formattedText", "questionId"} <= set(wire)
    assert "embedding" not in wire
    assert record_to_wire(record, include_embedding=True)["embedding"] == [1.0]


@pytest.mark.asyncio
async def test_unknown_action_is_a_failure_payload(router):
    result = await router.handle({"action": "nope"})

    assert result["success"] is False
    assert result["code"] == "unknown_action"


@pytest.mark.asyncio
async def test_record_actions(router, store):
    await store.put(Record(text="asyncio gather", id="r1", tags=["python"], timestamp=1000))
    await store.put(Record(text="css grid", id="r2", tags=["css"], timestamp=2000))

    listed = await router.handle({"action": "getSolutions"})
    assert [s["id"] for s in listed["solutions"]] == ["r2", "r1"]

    one = await router.handle({"action": "getSolution", "id": "r1"})
    assert one["solution"]["text"] == "asyncio gather"

    missing = await router.handle({"action": "getSolution", "id": "zz"})
    assert missing == {"success": False, "error": "record zz not found", "code": "not_found"}

    updated = await router.handle({
        "action": "updateSolution", "id": "r1", "updates": {"pageTitle": "New page", "notes": "n"},
    })
    assert updated["solution"]["pageTitle"] == "New page"
    assert updated["solution"]["notes"] == "n"

    bad = await router.handle({"action": "updateSolution", "id": "r1", "updates": {"colour": 1}})
    assert bad["code"] == "invalid_request"

    assert (await router.handle({"action": "getAllTags"}))["tags"] == ["css", "python"]
    assert (await router.handle({"action": "getCount"}))["count"] == 2

    found = await router.handle({"action": "searchSolutions", "query": "GATHER"})
    assert [s["id"] for s in found["solutions"]] == ["r1"]

    filtered = await router.handle({
        "action": "advancedSearch",
        "filters": {"tags": ["css"], "startDate": 1500, "endDate": 2000},
    })
    assert [s["id"] for s in filtered["solutions"]] == ["r2"]

    deleted = await router.handle({"action": "deleteSolution", "id": "r2"})
    assert deleted == {"success": True, "deleted": True}
    again = await router.handle({"action": "deleteSolution", "id": "r2"})
    assert again == {"success": True, "deleted": False}

    cleared = await router.handle({"action": "clearAllSolutions"})
    assert cleared == {"success": True, "removed": 1}


@pytest.mark.asyncio
async def test_advanced_search_rejects_tag_string(router):
    result = await router.handle({"action": "advancedSearch", "filters": {"tags": "css"}})

    assert result["code"] == "invalid_request"


@pytest.mark.asyncio
@pytest.mark.parametrize("filters", [
    {"startDate": "2024-01-01"},
    {"endDate": 1.5e12},
    {"startDate": True},
    {"query": 7},
])
async def test_advanced_search_rejects_mistyped_filters(router, filters):
    result = await router.handle({"action": "advancedSearch", "filters": filters})

    assert result["code"] == "invalid_request"


@pytest.mark.asyncio
async def test_mistyped_update_leaves_record_searchable(router, store):
    await store.put(Record(text="hello world", id="r1", title="Greeting", tags=["demo"]))

    for updates in ({"title": 123}, {"tags": "react"}, {"notes": ["a"]}, {"questionId": 5}):
        result = await router.handle({"action": "updateSolution", "id": "r1", "updates": updates})
        assert result["code"] == "invalid_request"

    record = await store.get("r1")
    assert record.title == "Greeting"
    assert record.tags == ["demo"]

    found = await router.handle({"action": "searchSolutions", "query": "hello"})
    assert [s["id"] for s in found["solutions"]] == ["r1"]
    filtered = await router.handle({"action": "advancedSearch", "filters": {"query": "hello"}})
    assert [s["id"] for s in filtered["solutions"]] == ["r1"]


@pytest.mark.asyncio
async def test_import_rejects_mistyped_fields(router, store):
    result = await router.handle({"action": "importSolutions", "solutions": [
        {"id": "ok", "text": "fine"},
        {"id": "bad", "text": "body", "tags": "react"},
    ]})

    assert result["code"] == "invalid_request"
    assert await store.count() == 0


@pytest.mark.asyncio
async def test_export_then_import(router, store):
    await store.put(Record(text="body", id="r1", page_title="P", embedding=[0.5, 0.5]))

    exported = await router.handle({"action": "exportSolutions"})
    assert exported["solutions"][0]["embedding"] == [0.5, 0.5]

    await router.handle({"action": "clearAllSolutions"})
    imported = await router.handle({"action": "importSolutions", "solutions": exported["solutions"]})

    assert imported == {"success": True, "imported": 1}
    restored = await store.get("r1")
    assert restored.page_title == "P"
    assert restored.embedding == [0.5, 0.5]

    broken = await router.handle({"action": "importSolutions", "solutions": [{"title": "no text"}]})
    assert broken["code"] == "invalid_request"


@pytest.mark.asyncio
async def test_semantic_search_reports_mode(router, store):
    await store.put(Record(text="python async", id="py"))
    await store.put(Record(text="sql join", id="sql"))

    result = await router.handle({"action": "semanticSearch", "query": "sql", "topK": 1})
    assert result["mode"] == "semantic"
    assert [s["id"] for s in result["solutions"]] == ["sql"]
    assert len(result["scores"]) == 1


@pytest.mark.asyncio
async def test_semantic_search_falls_back(store, pipeline, generator):
    router = MessageRouter(store, pipeline, SemanticSearchEngine(store, FakeEmbedder(fail=True)), generator)
    await store.put(Record(text="sql join", id="sql"))

    result = await router.handle({"action": "semanticSearch", "query": "join"})

    assert result["success"] is True
    assert result["mode"] == "keyword"
    assert [s["id"] for s in result["solutions"]] == ["sql"]


@pytest.mark.asyncio
async def test_generation_actions(router):
    assert (await router.handle({"action": "generateTags", "text": "x"}))["tags"] == ["python", "asyncio"]
    assert (await router.handle({"action": "generateTitle", "text": "x"}))["title"] == "Generated title"
    assert (await router.handle({"action": "summarizeText", "text": "x"}))["summary"] == "Short summary."
    assert (await router.handle({"action": "formatText", "text": "x"}))["formatted"].startswith("```")


@pytest.mark.asyncio
async def test_generation_failure_is_reported(store, pipeline):
    router = MessageRouter(store, pipeline, SemanticSearchEngine(store, FakeEmbedder()),
                           FakeGenerator(fail={"summarize"}))

    result = await router.handle({"action": "summarizeText", "text": "x"})

    assert result["success"] is False
    assert result["code"] == "capability_unavailable"


@pytest.mark.asyncio
async def test_background_task_actions(router, bus, generator):
    gate = generator.gate("summarize")
    started = await router.handle({
        "action": "processInBackground",
        "selectedText": "await asyncio.sleep(1)",
        "pageTitle": "Sleep",
        "taskId": "task-1",
    })
    assert started == {"success": True, "taskId": "task-1"}

    active = await router.handle({"action": "getActiveTasks"})
    assert [t["id"] for t in active["tasks"]] == ["task-1"]

    assert await router.handle({"action": "updateTaskNotes", "taskId": "task-1", "notes": "n"}) is None

    gate.set()
    await settle(router, bus)

    status = await router.handle({"action": "getTaskStatus", "taskId": "task-1"})
    assert status["task"]["status"] == "completed"
    assert status["task"]["pageTitle"] == "Sleep"
    assert status["task"]["progress"] == {
        "reformatted": True, "titled": True, "tagged": True, "summarized": True,
    }

    finalized = await router.handle({"action": "finalizeTask", "taskId": "task-1"})
    assert finalized["solution"]["notes"] == "n"
    assert finalized["solution"]["id"] == status["task"]["recordId"]

    assert await router.handle({"action": "cancelTask", "taskId": "task-1"}) == {"success": False}
    unknown = await router.handle({"action": "getTaskStatus", "taskId": "nope"})
    assert unknown == {"success": True, "task": None}


@pytest.mark.asyncio
async def test_update_notes_unknown_task_reports_failure(router):
    result = await router.handle({"action": "updateTaskNotes", "taskId": "nope", "notes": "x"})

    assert result["code"] == "not_found"


@pytest.mark.asyncio
async def test_dispatch_of_decoded_request(router, store):
    await store.put(Record(text="x", id="r1"))

    result = await router.dispatch(GetSolution(id="r1"))

    assert result["solution"]["id"] == "r1"
