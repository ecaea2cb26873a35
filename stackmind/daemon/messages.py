"""Request messages and their dispatch.

Observers (popup, page) talk to the daemon with ``{"action": ..., ...}``
payloads using camelCase keys. Each action decodes into one request
dataclass; the router holds exactly one handler per request type and
refuses to start if any type is left unhandled.
"""

import re
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from loguru import logger

from .errors import (
    CapabilityUnavailable,
    InvalidRequest,
    NotFound,
    StackMindError,
    UnknownAction,
    error_payload,
)
from .models import Record, Task
from .pipeline import EnrichmentPipeline
from .providers import TextGenerator
from .search import SemanticSearchEngine
from .store import RecordStore

_CAMEL_BOUNDARY = re.compile(r"_([a-z])")
_SNAKE_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_camel(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


def to_snake(name: str) -> str:
    return _SNAKE_BOUNDARY.sub("_", name).lower()


def record_to_wire(record: Record, include_embedding: bool = False) -> Dict[str, Any]:
    data = record.to_dict()
    if not include_embedding:
        data.pop("embedding", None)
    return {to_camel(k): v for k, v in data.items()}


def task_to_wire(task: Task) -> Dict[str, Any]:
    return {to_camel(k): v for k, v in task.to_dict().items()}


# ---- request types ------------------------------------------------------

@dataclass
class GetSolutions:
    ACTION = "getSolutions"


@dataclass
class GetSolution:
    ACTION = "getSolution"
    id: str


@dataclass
class DeleteSolution:
    ACTION = "deleteSolution"
    id: str


@dataclass
class UpdateSolution:
    ACTION = "updateSolution"
    id: str
    updates: Dict[str, Any]


@dataclass
class ClearAllSolutions:
    ACTION = "clearAllSolutions"


@dataclass
class GetAllTags:
    ACTION = "getAllTags"


@dataclass
class GetCount:
    ACTION = "getCount"


@dataclass
class SearchSolutions:
    ACTION = "searchSolutions"
    query: str = ""


@dataclass
class AdvancedSearch:
    ACTION = "advancedSearch"
    filters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SemanticSearch:
    ACTION = "semanticSearch"
    query: str = ""
    top_k: Optional[int] = None


@dataclass
class ExportSolutions:
    ACTION = "exportSolutions"


@dataclass
class ImportSolutions:
    ACTION = "importSolutions"
    solutions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class GenerateTags:
    ACTION = "generateTags"
    text: str
    title: str = ""


@dataclass
class GenerateTitle:
    ACTION = "generateTitle"
    text: str
    page_title: str = ""


@dataclass
class SummarizeText:
    ACTION = "summarizeText"
    text: str


@dataclass
class FormatText:
    ACTION = "formatText"
    text: str


@dataclass
class ProcessInBackground:
    ACTION = "processInBackground"
    selected_text: str
    url: str = ""
    page_title: str = ""
    current_tags: List[str] = field(default_factory=list)
    current_title: Optional[str] = None
    current_summary: Optional[str] = None
    is_formatted: bool = False
    notes: str = ""
    task_id: Optional[str] = None


@dataclass
class GetTaskStatus:
    ACTION = "getTaskStatus"
    task_id: str


@dataclass
class GetActiveTasks:
    ACTION = "getActiveTasks"


@dataclass
class UpdateTaskNotes:
    ACTION = "updateTaskNotes"
    task_id: str
    notes: str = ""


@dataclass
class FinalizeTask:
    ACTION = "finalizeTask"
    task_id: str


@dataclass
class CancelTask:
    ACTION = "cancelTask"
    task_id: str


REQUEST_TYPES = (
    GetSolutions, GetSolution, DeleteSolution, UpdateSolution, ClearAllSolutions,
    GetAllTags, GetCount, SearchSolutions, AdvancedSearch, SemanticSearch,
    ExportSolutions, ImportSolutions, GenerateTags, GenerateTitle, SummarizeText,
    FormatText, ProcessInBackground, GetTaskStatus, GetActiveTasks, UpdateTaskNotes,
    FinalizeTask, CancelTask,
)

ACTIONS: Dict[str, Type] = {cls.ACTION: cls for cls in REQUEST_TYPES}

# Actions whose sender does not wait for a reply
FIRE_AND_FORGET = frozenset({ProcessInBackground, UpdateTaskNotes})


def parse_request(payload: Dict[str, Any]):
    """
    Decode a message payload into its request dataclass.

    Raises:
        UnknownAction: If the action is missing or not recognized
        InvalidRequest: If a required field is missing or malformed
    """
    if not isinstance(payload, dict):
        raise InvalidRequest("message must be a JSON object")
    action = payload.get("action")
    cls = ACTIONS.get(action)
    if cls is None:
        raise UnknownAction(f"unknown action: {action!r}")

    kwargs = {}
    for f in fields(cls):
        wire_key = to_camel(f.name)
        if wire_key in payload:
            value = payload[wire_key]
        elif f.name in payload:
            value = payload[f.name]
        elif f.default is MISSING and f.default_factory is MISSING:
            raise InvalidRequest(f"{action}: '{wire_key}' is required")
        else:
            continue
        if value is None and f.default is MISSING and f.default_factory is MISSING:
            raise InvalidRequest(f"{action}: '{wire_key}' is required")
        kwargs[f.name] = value

    request = cls(**kwargs)
    _check_types(request)
    return request


def _check_types(request) -> None:
    for f in fields(request):
        value = getattr(request, f.name)
        if value is None:
            continue
        expected = {str: str, bool: bool, int: int}.get(f.type)
        if f.type == Dict[str, Any]:
            expected = dict
        elif f.type in (List[str], List[Dict[str, Any]]):
            expected = list
        elif f.type == Optional[int]:
            expected = int
        elif f.type == Optional[str]:
            expected = str
        if expected and not isinstance(value, expected):
            raise InvalidRequest(
                f"{request.ACTION}: '{to_camel(f.name)}' must be {expected.__name__}"
            )


# ---- dispatch -----------------------------------------------------------

Handler = Callable[[Any], Awaitable[Optional[Dict[str, Any]]]]


class MessageRouter:
    """Routes decoded requests to the store, pipeline and search engine."""

    def __init__(self, store: RecordStore, pipeline: EnrichmentPipeline,
                 search_engine: SemanticSearchEngine, generator: TextGenerator):
        self.store = store
        self.pipeline = pipeline
        self.search_engine = search_engine
        self.generator = generator

        self._handlers: Dict[Type, Handler] = {
            GetSolutions: self._get_solutions,
            GetSolution: self._get_solution,
            DeleteSolution: self._delete_solution,
            UpdateSolution: self._update_solution,
            ClearAllSolutions: self._clear_all,
            GetAllTags: self._get_all_tags,
            GetCount: self._get_count,
            SearchSolutions: self._search,
            AdvancedSearch: self._advanced_search,
            SemanticSearch: self._semantic_search,
            ExportSolutions: self._export,
            ImportSolutions: self._import,
            GenerateTags: self._generate_tags,
            GenerateTitle: self._generate_title,
            SummarizeText: self._summarize,
            FormatText: self._format,
            ProcessInBackground: self._process_in_background,
            GetTaskStatus: self._get_task_status,
            GetActiveTasks: self._get_active_tasks,
            UpdateTaskNotes: self._update_task_notes,
            FinalizeTask: self._finalize_task,
            CancelTask: self._cancel_task,
        }
        missing = [cls.__name__ for cls in REQUEST_TYPES if cls not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler for: {', '.join(missing)}")

    async def handle(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Decode and dispatch; failures come back as payloads, never raise."""
        try:
            request = parse_request(payload)
        except StackMindError as e:
            logger.warning(f"Rejected message: {e}")
            return error_payload(e)
        return await self.dispatch(request)

    async def dispatch(self, request) -> Optional[Dict[str, Any]]:
        handler = self._handlers[type(request)]
        try:
            return await handler(request)
        except StackMindError as e:
            if type(request) in FIRE_AND_FORGET:
                logger.warning(f"{request.ACTION} failed: {e}")
            return error_payload(e)
        except Exception as e:
            logger.exception(f"Unhandled error in {request.ACTION}: {e}")
            return error_payload(e)

    # ---- records ----

    async def _get_solutions(self, request: GetSolutions):
        records = await self.store.list()
        return {"success": True, "solutions": [record_to_wire(r) for r in records]}

    async def _get_solution(self, request: GetSolution):
        record = await self.store.get(request.id)
        if record is None:
            raise NotFound(f"record {request.id} not found")
        return {"success": True, "solution": record_to_wire(record)}

    async def _delete_solution(self, request: DeleteSolution):
        deleted = await self.store.remove(request.id)
        return {"success": True, "deleted": deleted}

    async def _update_solution(self, request: UpdateSolution):
        updates = {to_snake(k): v for k, v in request.updates.items()}
        record = await self.store.replace(request.id, updates)
        return {"success": True, "solution": record_to_wire(record)}

    async def _clear_all(self, request: ClearAllSolutions):
        removed = await self.store.remove_all()
        return {"success": True, "removed": removed}

    async def _get_all_tags(self, request: GetAllTags):
        return {"success": True, "tags": await self.store.all_tags()}

    async def _get_count(self, request: GetCount):
        return {"success": True, "count": await self.store.count()}

    async def _search(self, request: SearchSolutions):
        records = await self.store.search(request.query)
        return {"success": True, "solutions": [record_to_wire(r) for r in records]}

    async def _advanced_search(self, request: AdvancedSearch):
        filters = request.filters
        tags = filters.get("tags")
        if tags is not None and not isinstance(tags, list):
            raise InvalidRequest("advancedSearch: 'filters.tags' must be a list")
        if filters.get("query") is not None and not isinstance(filters["query"], str):
            raise InvalidRequest("advancedSearch: 'filters.query' must be a string")
        for bound in ("startDate", "endDate"):
            value = filters.get(bound)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                raise InvalidRequest(f"advancedSearch: 'filters.{bound}' must be epoch milliseconds")
        records = await self.store.advanced_search(
            text_query=filters.get("query"),
            tags=tags,
            start_time=filters.get("startDate"),
            end_time=filters.get("endDate"),
        )
        return {"success": True, "solutions": [record_to_wire(r) for r in records]}

    async def _semantic_search(self, request: SemanticSearch):
        outcome = await self.search_engine.search(request.query, request.top_k)
        return {
            "success": True,
            "solutions": [record_to_wire(r) for r in outcome.records],
            "mode": outcome.mode,
            "scores": outcome.scores,
        }

    async def _export(self, request: ExportSolutions):
        records = await self.store.export_all()
        return {
            "success": True,
            "solutions": [record_to_wire(r, include_embedding=True) for r in records],
        }

    async def _import(self, request: ImportSolutions):
        try:
            records = [Record.from_dict(item) for item in request.solutions]
        except (TypeError, ValueError, AttributeError) as e:
            raise InvalidRequest(f"importSolutions: invalid record: {e}") from e
        imported = await self.store.import_all(records)
        return {"success": True, "imported": imported}

    # ---- one-shot generation ----

    async def _generate_tags(self, request: GenerateTags):
        tags = await self.generator.generate_tags(request.title, request.text)
        return {"success": True, "tags": tags}

    async def _generate_title(self, request: GenerateTitle):
        title = await self.generator.generate_title(request.page_title, request.text)
        return {"success": True, "title": title}

    async def _summarize(self, request: SummarizeText):
        summary = await self.generator.summarize(request.text)
        return {"success": True, "summary": summary}

    async def _format(self, request: FormatText):
        formatted = await self.generator.format_text(request.text)
        if not formatted.strip():
            raise CapabilityUnavailable("formatter returned empty output")
        return {"success": True, "formatted": formatted}

    # ---- background tasks ----

    async def _process_in_background(self, request: ProcessInBackground):
        task_id = await self.pipeline.start_task(
            captured_text=request.selected_text,
            url=request.url,
            page_title=request.page_title,
            initial_tags=request.current_tags,
            initial_title=request.current_title,
            initial_summary=request.current_summary,
            already_formatted=request.is_formatted,
            notes=request.notes,
            task_id=request.task_id,
        )
        return {"success": True, "taskId": task_id}

    async def _get_task_status(self, request: GetTaskStatus):
        task = self.pipeline.get_task_status(request.task_id)
        return {"success": True, "task": task_to_wire(task) if task else None}

    async def _get_active_tasks(self, request: GetActiveTasks):
        return {"success": True, "tasks": [task_to_wire(t) for t in self.pipeline.active_tasks()]}

    async def _update_task_notes(self, request: UpdateTaskNotes):
        await self.pipeline.update_task_notes(request.task_id, request.notes)
        return None

    async def _finalize_task(self, request: FinalizeTask):
        record = await self.pipeline.finalize_task(request.task_id)
        return {"success": True, "solution": record_to_wire(record)}

    async def _cancel_task(self, request: CancelTask):
        cancelled = await self.pipeline.cancel_task(request.task_id)
        return {"success": cancelled}
