"""Data models for StackMind: captured records and enrichment tasks."""

import re
import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import ulid

from .errors import InvalidTransition

_last_timestamp_ms = 0

# Keys written by the browser extension's own export format
_CAMEL_ALIASES = {
    "pageTitle": "page_title",
    "formattedText": "formatted_text",
    "questionId": "question_id",
}

_QUESTION_ID = re.compile(r"questions/(\d+)")

# Task ids name files under tasks/, so only plain tokens are allowed
_TASK_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_TEXT_FIELDS = frozenset({"url", "page_title"})
_OPTIONAL_TEXT_FIELDS = frozenset({"title", "formatted_text", "summary", "notes", "question_id"})


def now_ms() -> int:
    """Wall clock in epoch milliseconds, strictly increasing within a process."""
    global _last_timestamp_ms
    ts = int(time.time() * 1000)
    if ts <= _last_timestamp_ms:
        ts = _last_timestamp_ms + 1
    _last_timestamp_ms = ts
    return ts


def new_id() -> str:
    return str(ulid.ULID())


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Lowercase, trim and de-duplicate tags, keeping first-seen order."""
    seen = []
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        tag = tag.strip().lower()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def question_id_from_url(url: str) -> Optional[str]:
    match = _QUESTION_ID.search(url or "")
    return match.group(1) if match else None


def is_valid_task_id(task_id: Any) -> bool:
    return isinstance(task_id, str) and _TASK_ID.match(task_id) is not None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def clean_record_field(name: str, value: Any) -> Any:
    """
    Check one Record field value and return it in stored form.

    Raises:
        ValueError: If the value has the wrong type for the field
    """
    if name == "text":
        if not isinstance(value, str) or not value.strip():
            raise ValueError("record text must not be empty")
        return value
    if name in _TEXT_FIELDS:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError(f"record field '{name}' must be a string")
        return value
    if name in _OPTIONAL_TEXT_FIELDS:
        if value is not None and not isinstance(value, str):
            raise ValueError(f"record field '{name}' must be a string or null")
        return value
    if name == "tags":
        if value is None:
            return []
        if not isinstance(value, (list, tuple)) or not all(isinstance(t, str) for t in value):
            raise ValueError("record field 'tags' must be a list of strings")
        return normalize_tags(value)
    if name == "embedding":
        if value is None:
            return None
        if not isinstance(value, (list, tuple)) or not all(_is_number(x) for x in value):
            raise ValueError("record field 'embedding' must be a list of numbers")
        return [float(x) for x in value]
    return value


@dataclass
class Record:
    """A captured snippet and its enrichment fields."""
    text: str
    url: str = ""
    page_title: str = ""
    title: Optional[str] = None
    formatted_text: Optional[str] = None
    summary: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    embedding: Optional[List[float]] = None
    question_id: Optional[str] = None
    id: str = ""
    timestamp: int = 0

    def __post_init__(self):
        for name in MUTABLE_RECORD_FIELDS:
            setattr(self, name, clean_record_field(name, getattr(self, name)))
        if not isinstance(self.id, str):
            raise ValueError("record id must be a string")
        if not _is_number(self.timestamp):
            raise ValueError("record timestamp must be epoch milliseconds")
        self.timestamp = int(self.timestamp)
        if not self.id:
            self.id = new_id()
        if not self.timestamp:
            self.timestamp = now_ms()

    @property
    def display_text(self) -> str:
        return self.formatted_text or self.text

    def searchable_text(self) -> str:
        """Lowercased haystack for keyword search."""
        parts = [
            self.title or "",
            self.text,
            self.summary or "",
            self.notes or "",
            *self.tags,
        ]
        return " ".join(parts).lower()

    def embedding_text(self) -> str:
        """Text a vector for this record is derived from."""
        if self.title:
            return f"{self.title}\n{self.display_text}"
        return self.display_text

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            key = _CAMEL_ALIASES.get(key, key)
            if key in known:
                kwargs[key] = value
        return cls(**kwargs)


# Fields an edit or enrichment step may replace
MUTABLE_RECORD_FIELDS = frozenset({
    "text", "url", "page_title", "title", "formatted_text", "summary",
    "tags", "notes", "embedding", "question_id",
})

# Changing any of these makes a cached vector stale
EMBEDDED_FIELDS = frozenset({"text", "formatted_text", "title"})


class TaskStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


STEPS = ("reformatted", "titled", "tagged", "summarized")


@dataclass
class TaskProgress:
    """Per-step completion flags. Flags only ever go from False to True."""
    reformatted: bool = False
    titled: bool = False
    tagged: bool = False
    summarized: bool = False

    def mark(self, step: str) -> None:
        if step not in STEPS:
            raise ValueError(f"unknown step: {step}")
        setattr(self, step, True)

    def pending(self) -> List[str]:
        return [step for step in STEPS if not getattr(self, step)]

    @property
    def all_done(self) -> bool:
        return not self.pending()

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass
class Task:
    """Bookkeeping for one capture's background enrichment."""
    id: str
    captured_text: str
    url: str = ""
    page_title: str = ""
    progress: TaskProgress = field(default_factory=TaskProgress)
    status: TaskStatus = TaskStatus.PROCESSING
    notes: str = ""
    started_at: int = 0
    title: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    formatted_text: Optional[str] = None
    record_id: Optional[str] = None
    error: Optional[str] = None
    finished_at: Optional[int] = None

    def __post_init__(self):
        if not self.id:
            self.id = new_id()
        if not self.started_at:
            self.started_at = now_ms()
        if isinstance(self.progress, dict):
            self.progress = TaskProgress(**self.progress)
        self.status = TaskStatus(self.status)
        self.tags = normalize_tags(self.tags)

    @property
    def is_terminal(self) -> bool:
        return self.status != TaskStatus.PROCESSING

    def transition(self, status: TaskStatus, error: Optional[str] = None) -> None:
        """Move forward out of processing; terminal states are final."""
        status = TaskStatus(status)
        if self.is_terminal:
            raise InvalidTransition(
                f"task {self.id} is {self.status.value}, cannot become {status.value}"
            )
        if status == TaskStatus.PROCESSING:
            return
        self.status = status
        self.error = error
        self.finished_at = now_ms()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
