"""
Background enrichment pipeline.

A capture becomes a Task with four independent steps (reformat, title,
tags, summary). Steps run concurrently, each under a timeout; a step that
fails or times out completes with fallback content instead of leaving the
task stuck. When every step is done the task is finalized into a Record.

Observers learn about progress through bus events (task.update,
task.review, task.complete, task.error). An observer that attaches late
reconciles with get_task_status() instead of replaying events.
"""

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Dict, List, Optional, Set

from loguru import logger

from .bus import Event, EventBus
from .config import PipelineConfig
from .errors import (
    CapabilityUnavailable,
    DuplicateIdentifier,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
)
from .models import (
    Record,
    Task,
    TaskStatus,
    is_valid_task_id,
    new_id,
    normalize_tags,
    question_id_from_url,
)
from .providers import EmbeddingProvider, TextGenerator
from .store import RecordStore
from .tasks import TaskTable

# Progress flag -> task field the step fills in
STEP_FIELDS = {
    "reformatted": "formatted_text",
    "titled": "title",
    "tagged": "tags",
    "summarized": "summary",
}

FALLBACK_TITLE_LENGTH = 80


def fallback_title(task: Task) -> str:
    """Page title if there is one, otherwise the snippet's first line."""
    if task.page_title and task.page_title.strip():
        return task.page_title.strip()
    first_line = task.captured_text.strip().splitlines()[0]
    return first_line[:FALLBACK_TITLE_LENGTH]


class EnrichmentPipeline:
    """Drives enrichment tasks from capture to persisted record."""

    def __init__(
        self,
        store: RecordStore,
        tasks: TaskTable,
        generator: TextGenerator,
        bus: EventBus,
        config: Optional[PipelineConfig] = None,
        embedder: Optional[EmbeddingProvider] = None,
        embed_on_capture: bool = False,
    ):
        self.store = store
        self.tasks = tasks
        self.generator = generator
        self.bus = bus
        self.config = config or PipelineConfig()
        self.embedder = embedder
        self.embed_on_capture = embed_on_capture and embedder is not None

        self._running: Dict[str, Dict[str, asyncio.Task]] = defaultdict(dict)
        self._finalizing: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._purges: Set[asyncio.Task] = set()

        self.stats = defaultdict(int)

    # ---- public operations ---------------------------------------------

    async def start_task(
        self,
        captured_text: str,
        url: str = "",
        page_title: str = "",
        initial_tags: Optional[List[str]] = None,
        initial_title: Optional[str] = None,
        initial_summary: Optional[str] = None,
        already_formatted: bool = False,
        notes: str = "",
        task_id: Optional[str] = None,
    ) -> str:
        """
        Register a task and launch whichever steps are not already done.

        Values the foreground flow already produced (title, tags, summary,
        formatted text) seed the matching progress flags so those steps
        are not run again.

        Returns:
            The task id
        """
        if not captured_text or not captured_text.strip():
            raise InvalidRequest("captured text must not be empty")
        if task_id and not is_valid_task_id(task_id):
            raise InvalidRequest(f"task id must be 1-64 letters, digits, '_' or '-': {task_id!r}")

        task = Task(
            id=task_id or new_id(),
            captured_text=captured_text,
            url=url or "",
            page_title=page_title or "",
            notes=notes or "",
            title=(initial_title or "").strip() or None,
            tags=normalize_tags(initial_tags),
            summary=(initial_summary or "").strip() or None,
        )
        if already_formatted:
            task.progress.mark("reformatted")
        if task.title:
            task.progress.mark("titled")
        if task.tags:
            task.progress.mark("tagged")
        if task.summary:
            task.progress.mark("summarized")

        await self.tasks.add(task)
        self.stats["started"] += 1
        logger.info(
            f"Started task {task.id} ({len(task.progress.pending())} steps pending)"
        )
        self._launch(task)
        return task.id

    def get_task_status(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    def active_tasks(self) -> List[Task]:
        return self.tasks.active()

    async def update_task_notes(self, task_id: str, notes: str) -> None:
        """
        Overwrite a task's notes. Once the task has been finalized the
        notes go to its record instead.
        """
        task = self.tasks.get(task_id)
        if task is None:
            raise NotFound(f"task {task_id} not found")

        if task.status == TaskStatus.COMPLETED and task.record_id:
            await self.store.replace(task.record_id, {"notes": notes or None})
            return
        if task.is_terminal:
            raise InvalidTransition(f"task {task_id} is {task.status.value}")

        def set_notes(t: Task) -> None:
            t.notes = notes or ""

        await self.tasks.update(task_id, set_notes)
        logger.debug(f"Updated notes for task {task_id}")

    async def finalize_task(self, task_id: str) -> Record:
        """
        Turn a task into a persisted record.

        Steps still running are cancelled and complete with their fallback
        content. Concurrent calls share one finalization.

        Raises:
            NotFound: Unknown task
            InvalidTransition: Task already failed or was cancelled
            PersistenceFailure: The record could not be saved
        """
        task = self.tasks.get(task_id)
        if task is None:
            raise NotFound(f"task {task_id} not found")
        if task.status == TaskStatus.COMPLETED:
            record = await self.store.get(task.record_id) if task.record_id else None
            if record is None:
                raise NotFound(f"record for task {task_id} no longer exists")
            return record
        if task.status == TaskStatus.ERROR:
            raise InvalidTransition(f"task {task_id} ended in error: {task.error}")

        job = self._finalizing.get(task_id)
        if job is None:
            job = asyncio.create_task(self._finalize(task_id))
            self._finalizing[task_id] = job
            job.add_done_callback(lambda _: self._finalizing.pop(task_id, None))
        return await asyncio.shield(job)

    async def cancel_task(self, task_id: str) -> bool:
        """Abandon a processing task. Returns False if it is not processing or already finalizing."""
        task = self.tasks.get(task_id)
        if task is None or task.is_terminal or task_id in self._finalizing:
            return False
        await self._cancel_steps(task_id)
        await self._fail(task_id, "cancelled")
        self.stats["cancelled"] += 1
        return True

    async def resume(self) -> int:
        """Relaunch unfinished tasks persisted by a previous run."""
        pending = await self.tasks.load()
        for task in pending:
            logger.info(f"Resuming task {task.id}: {task.progress.pending()}")
            self._launch(task)
        return len(pending)

    async def drain(self) -> None:
        """Wait for every in-flight step, finalization and embedding job."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        jobs = list(self._background) + list(self._purges)
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        self._running.clear()
        logger.info("Enrichment pipeline stopped")

    # ---- step execution -------------------------------------------------

    def _spawn(self, coro: Awaitable[Any], purge: bool = False) -> asyncio.Task:
        job = asyncio.ensure_future(coro)
        bucket = self._purges if purge else self._background
        bucket.add(job)
        job.add_done_callback(bucket.discard)
        job.add_done_callback(self._log_job_failure)
        return job

    @staticmethod
    def _log_job_failure(job: asyncio.Task) -> None:
        if job.cancelled():
            return
        error = job.exception()
        if error is not None and not isinstance(error, (PersistenceFailure, InvalidTransition)):
            logger.error(f"Background pipeline job failed: {error!r}")

    def _launch(self, task: Task) -> None:
        pending = task.progress.pending()
        if not pending:
            self._spawn(self._on_all_steps_done(task.id))
            return
        running = self._running[task.id]
        for step in pending:
            if step in running:
                continue
            running[step] = self._spawn(self._run_step(task.id, step))

    async def _run_step(self, task_id: str, step: str) -> None:
        task = self.tasks.get(task_id)
        if task is None or task.is_terminal:
            return
        try:
            value = await asyncio.wait_for(
                self._produce(step, task), timeout=self.config.step_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Task {task_id}: {step} timed out after "
                f"{self.config.step_timeout_s}s, using fallback"
            )
            self.stats["step_timeouts"] += 1
            value = self._fallback(step, task)
        except CapabilityUnavailable as e:
            logger.warning(f"Task {task_id}: {step} unavailable ({e}), using fallback")
            self.stats["step_fallbacks"] += 1
            value = self._fallback(step, task)
        except Exception as e:
            logger.warning(f"Task {task_id}: {step} failed ({e!r}), using fallback")
            self.stats["step_fallbacks"] += 1
            value = self._fallback(step, task)
        finally:
            self._running.get(task_id, {}).pop(step, None)

        await self._record_step(task_id, step, value)

    async def _produce(self, step: str, task: Task) -> Any:
        text = task.captured_text
        if step == "reformatted":
            formatted = await self.generator.format_text(text)
            return formatted if formatted and formatted.strip() else None
        if step == "titled":
            title = await self.generator.generate_title(task.page_title, text)
            return title.strip() or fallback_title(task)
        if step == "tagged":
            generated = await self.generator.generate_tags(task.title or task.page_title, text)
            return normalize_tags(list(task.tags) + list(generated or []))
        if step == "summarized":
            summary = await self.generator.summarize(text)
            return summary.strip() or None
        raise ValueError(f"unknown step: {step}")

    @staticmethod
    def _fallback(step: str, task: Task) -> Any:
        if step == "reformatted":
            return None
        if step == "titled":
            return task.title or fallback_title(task)
        if step == "tagged":
            return list(task.tags)
        return task.summary

    async def _record_step(self, task_id: str, step: str, value: Any) -> None:
        def apply(t: Task) -> None:
            if t.is_terminal or getattr(t.progress, step):
                return
            setattr(t, STEP_FIELDS[step], value)
            t.progress.mark(step)

        try:
            updated = await self.tasks.update(task_id, apply)
        except NotFound:
            return
        except PersistenceFailure as e:
            await self._fail(task_id, str(e))
            return

        if updated.is_terminal:
            return
        self.bus.publish(Event(
            type="task.update",
            data={
                "taskId": task_id,
                "step": step,
                "progress": updated.progress.to_dict(),
                "status": updated.status.value,
            },
            source="pipeline",
        ))
        logger.debug(f"Task {task_id}: {step} done")

        if updated.progress.all_done:
            await self._on_all_steps_done(task_id)

    async def _on_all_steps_done(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is None or task.is_terminal:
            return
        self.bus.publish(Event(type="task.review", data={"taskId": task_id}, source="pipeline"))
        if self.config.auto_finalize:
            try:
                await self.finalize_task(task_id)
            except (PersistenceFailure, DuplicateIdentifier, InvalidTransition, NotFound):
                # Already reported through _fail / the task's state
                pass

    # ---- finalization ---------------------------------------------------

    async def _cancel_steps(self, task_id: str) -> None:
        running = self._running.pop(task_id, {})
        for job in running.values():
            job.cancel()
        if running:
            await asyncio.gather(*running.values(), return_exceptions=True)

    async def _finalize(self, task_id: str) -> Record:
        await self._cancel_steps(task_id)

        def fill_missing(t: Task) -> None:
            for step in t.progress.pending():
                setattr(t, STEP_FIELDS[step], self._fallback(step, t))
                t.progress.mark(step)

        task = self.tasks.get(task_id)
        if task is None:
            raise NotFound(f"task {task_id} not found")
        if task.progress.pending():
            logger.info(f"Task {task_id}: forcing completion of {task.progress.pending()}")
            try:
                task = await self.tasks.update(task_id, fill_missing)
            except PersistenceFailure as e:
                await self._fail(task_id, str(e))
                raise

        record = Record(
            text=task.captured_text,
            url=task.url,
            page_title=task.page_title,
            title=task.title or fallback_title(task),
            formatted_text=task.formatted_text,
            summary=task.summary,
            tags=task.tags,
            notes=task.notes or None,
            question_id=question_id_from_url(task.url),
            timestamp=task.started_at,
        )
        try:
            stored = await self.store.put(record)
        except (PersistenceFailure, DuplicateIdentifier) as e:
            logger.error(f"Task {task_id}: could not save record: {e}")
            await self._fail(task_id, f"could not save record: {e}")
            raise

        def complete(t: Task) -> None:
            t.record_id = stored.id
            t.transition(TaskStatus.COMPLETED)

        try:
            await self.tasks.update(task_id, complete)
        except PersistenceFailure as e:
            # The record is durable; the task file is purged below regardless
            logger.error(f"Task {task_id}: record saved but task state not persisted: {e}")

        self.stats["completed"] += 1
        self.bus.publish(Event(
            type="task.complete",
            data={"taskId": task_id, "pageTitle": task.page_title, "recordId": stored.id},
            source="pipeline",
        ))
        logger.info(f"Task {task_id} completed as record {stored.id}")

        self._schedule_purge(task_id)
        if self.embed_on_capture:
            self._spawn(self._embed_record(stored.id))
        return stored

    async def _fail(self, task_id: str, message: str) -> None:
        def mark_error(t: Task) -> None:
            t.transition(TaskStatus.ERROR, error=message)

        task = self.tasks.get(task_id)
        if task is None or task.is_terminal:
            return
        try:
            await self.tasks.update(task_id, mark_error)
        except (PersistenceFailure, InvalidTransition, NotFound) as e:
            logger.error(f"Task {task_id}: could not record failure: {e}")

        self.stats["failed"] += 1
        self.bus.publish(Event(
            type="task.error",
            data={"taskId": task_id, "pageTitle": task.page_title, "error": message},
            source="pipeline",
        ))
        logger.warning(f"Task {task_id} failed: {message}")
        self._schedule_purge(task_id)

    def _schedule_purge(self, task_id: str) -> None:
        self._spawn(self._purge_later(task_id), purge=True)

    async def _purge_later(self, task_id: str) -> None:
        await asyncio.sleep(self.config.grace_period_s)
        self._running.pop(task_id, None)
        await self.tasks.remove(task_id)

    async def _embed_record(self, record_id: str) -> None:
        record = await self.store.get(record_id)
        if record is None:
            return
        try:
            vector = await self.embedder.embed(record.embedding_text())
            await self.store.set_embedding(record_id, vector)
        except (CapabilityUnavailable, NotFound, PersistenceFailure) as e:
            logger.warning(f"Could not embed record {record_id}: {e}")

