"""Active enrichment task table.

Each task is persisted as its own JSON file under ``tasks/`` and
rewritten atomically (temp file + rename) on every change. Mutations go
through ``update()``, which serializes read-modify-write per task so two
steps finishing together never lose each other's flag.
"""

import asyncio
import copy
import json
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

import aiofiles
from loguru import logger

from .errors import DuplicateIdentifier, InvalidRequest, NotFound, PersistenceFailure
from .models import Task, is_valid_task_id


class TaskTable:
    """Owns the set of tracked tasks and their on-disk state."""

    def __init__(self, data_path: Path):
        self.tasks_path = Path(data_path) / "tasks"
        self.tasks_path.mkdir(parents=True, exist_ok=True)
        self._tasks: Dict[str, Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def load(self) -> List[Task]:
        """
        Load persisted tasks.

        Returns tasks still processing; terminal leftovers from a previous
        run are purged.
        """
        pending = []
        for task_file in sorted(self.tasks_path.glob("*.json")):
            try:
                async with aiofiles.open(task_file, 'r', encoding='utf-8') as f:
                    task = Task.from_dict(json.loads(await f.read()))
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"Failed to load task file {task_file}: {e}")
                continue
            if task.id != task_file.stem or not is_valid_task_id(task.id):
                logger.error(f"Task file {task_file.name} holds mismatched id {task.id!r}, skipped")
                continue

            if task.is_terminal:
                task_file.unlink(missing_ok=True)
                continue
            self._tasks[task.id] = task
            pending.append(copy.deepcopy(task))

        if pending:
            logger.info(f"Loaded {len(pending)} unfinished tasks")
        return pending

    def get(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    def active(self) -> List[Task]:
        tasks = sorted(self._tasks.values(), key=lambda t: t.started_at, reverse=True)
        return [copy.deepcopy(t) for t in tasks]

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    async def add(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise DuplicateIdentifier(f"task {task.id} is already tracked")
        await self._persist(task)
        self._tasks[task.id] = task
        logger.debug(f"Tracking task {task.id}")
        return copy.deepcopy(task)

    async def update(self, task_id: str, mutate: Callable[[Task], None]) -> Task:
        """
        Apply mutate to a working copy, persist it, then publish it.

        Raises:
            NotFound: If the task is not tracked
            PersistenceFailure: If the task file could not be written
        """
        async with self._lock_for(task_id):
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFound(f"task {task_id} not found")
            working = copy.deepcopy(current)
            mutate(working)
            await self._persist(working)
            self._tasks[task_id] = working
            return copy.deepcopy(working)

    async def remove(self, task_id: str) -> bool:
        async with self._lock_for(task_id):
            task = self._tasks.pop(task_id, None)
            if task is not None:
                self._path_for(task_id).unlink(missing_ok=True)
        self._locks.pop(task_id, None)
        if task:
            logger.debug(f"Purged task {task_id}")
        return task is not None

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    def _path_for(self, task_id: str) -> Path:
        """File holding task_id; refuses ids that would land outside tasks/."""
        if not is_valid_task_id(task_id):
            raise InvalidRequest(f"invalid task id: {task_id!r}")
        path = (self.tasks_path / f"{task_id}.json").resolve()
        if path.parent != self.tasks_path.resolve():
            raise InvalidRequest(f"invalid task id: {task_id!r}")
        return path

    async def _persist(self, task: Task) -> None:
        path = self._path_for(task.id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(task.to_dict()))
                await f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to persist task {task.id}: {e}")
            raise PersistenceFailure(f"could not persist task {task.id}: {e}") from e
