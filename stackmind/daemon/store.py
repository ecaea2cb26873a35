"""WAL-backed record store with timestamp and tag indices.

Write path:
1. Validate against current state (duplicate / missing id)
2. Append WAL record (newline-delimited JSON), flush + fsync
3. Apply to the in-memory records and indices

Nothing is applied in memory unless step 2 succeeded, so a failed write
surfaces as PersistenceFailure with no visible change. Startup loads the
last snapshot and replays the WAL on top of it.
"""

import asyncio
import copy
import json
import os
from bisect import bisect_left, insort
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import aiofiles
from loguru import logger

from .errors import DuplicateIdentifier, InvalidRequest, NotFound, PersistenceFailure
from .models import (
    EMBEDDED_FIELDS,
    MUTABLE_RECORD_FIELDS,
    Record,
    clean_record_field,
    normalize_tags,
)

SNAPSHOT_VERSION = 1


class RecordStore:
    """
    Durable keyed storage of captured records.

    Indices:
    - timestamp index: (timestamp, id) pairs kept sorted, read newest-first
    - tag index: tag -> ids carrying it (multi-valued)
    """

    def __init__(self, data_path: Path, compact_after: int = 500):
        self.store_path = Path(data_path) / "store"
        self.store_path.mkdir(parents=True, exist_ok=True)
        self.snapshot_path = self.store_path / "records.json"
        self.wal_path = self.store_path / "records.wal"
        self.compact_after = compact_after

        self._records: Dict[str, Record] = {}
        self._by_time: List[Tuple[int, str]] = []
        self._by_tag: Dict[str, Set[str]] = defaultdict(set)

        self._lock = asyncio.Lock()
        self._wal_file = None
        self._ops_since_compact = 0
        self._initialized = False

    async def initialize(self) -> None:
        """Load snapshot, replay WAL and open the WAL for appends."""
        if self._initialized:
            return
        await self._load_snapshot()
        replayed = await self._replay_wal()
        self._ops_since_compact = replayed
        self._wal_file = await aiofiles.open(self.wal_path, 'a', encoding='utf-8')
        self._initialized = True
        logger.info(
            f"Record store initialized: {len(self._records)} records "
            f"({replayed} WAL ops replayed)"
        )

    async def close(self) -> None:
        if self._wal_file:
            await self._wal_file.close()
            self._wal_file = None
        self._initialized = False
        logger.info("Record store closed")

    # ---- writes ---------------------------------------------------------

    async def put(self, record: Record) -> Record:
        """Insert a new record; fails if its id already exists."""
        async with self._lock:
            if record.id in self._records:
                raise DuplicateIdentifier(f"record {record.id} already exists")
            await self._commit({"op": "put", "record": record.to_dict()})
        logger.debug(f"Stored record: {record.id}")
        return self._copy(self._records[record.id])

    async def replace(self, record_id: str, updates: Dict[str, Any]) -> Record:
        """Merge updates into an existing record; id and timestamp never change."""
        async with self._lock:
            existing = self._records.get(record_id)
            if existing is None:
                raise NotFound(f"record {record_id} not found")

            changes = self._validate_updates(existing, updates)
            if not changes:
                return self._copy(existing)
            await self._commit({"op": "replace", "id": record_id, "fields": changes})
        logger.debug(f"Updated record {record_id}: {sorted(changes)}")
        return self._copy(self._records[record_id])

    async def set_embedding(self, record_id: str, vector: List[float]) -> Record:
        return await self.replace(record_id, {"embedding": [float(x) for x in vector]})

    async def remove(self, record_id: str) -> bool:
        """Remove a record. Returns False (not an error) if it was absent."""
        async with self._lock:
            if record_id not in self._records:
                return False
            await self._commit({"op": "remove", "id": record_id})
        logger.debug(f"Removed record: {record_id}")
        return True

    async def remove_all(self) -> int:
        async with self._lock:
            removed = len(self._records)
            await self._commit({"op": "clear"})
        logger.info(f"Cleared {removed} records")
        return removed

    async def import_all(self, records: Iterable[Union[Record, Dict[str, Any]]]) -> int:
        """Upsert a batch of records as a single WAL entry."""
        try:
            batch = [r if isinstance(r, Record) else Record.from_dict(r) for r in records]
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"invalid record in import: {e}") from e
        if not batch:
            return 0
        async with self._lock:
            await self._commit({"op": "import", "records": [r.to_dict() for r in batch]})
        logger.info(f"Imported {len(batch)} records")
        return len(batch)

    # ---- reads ----------------------------------------------------------

    async def get(self, record_id: str) -> Optional[Record]:
        record = self._records.get(record_id)
        return self._copy(record) if record else None

    async def list(self) -> List[Record]:
        """All records, newest first."""
        return [self._copy(self._records[rid]) for _, rid in reversed(self._by_time)]

    async def count(self) -> int:
        return len(self._records)

    async def find_by_tag(self, tag: str) -> List[Record]:
        ids = self._by_tag.get(tag.strip().lower(), set())
        return self._newest_first(ids)

    async def search(self, query: str) -> List[Record]:
        """Case-insensitive substring match; blank query returns everything."""
        needle = (query or "").strip().lower()
        if not needle:
            return await self.list()
        return [
            self._copy(self._records[rid])
            for _, rid in reversed(self._by_time)
            if needle in self._records[rid].searchable_text()
        ]

    async def advanced_search(
        self,
        text_query: Optional[str] = None,
        tags: Optional[List[str]] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Record]:
        """
        Intersection of the given filters.

        Args:
            text_query: Substring over title/text/summary/notes/tags
            tags: Every tag must be present (AND)
            start_time: Inclusive lower bound on timestamp (epoch ms)
            end_time: Inclusive upper bound on timestamp (epoch ms)
        """
        wanted_tags = normalize_tags(tags)
        if wanted_tags:
            candidates = set.intersection(
                *(self._by_tag.get(tag, set()) for tag in wanted_tags)
            )
        else:
            candidates = set(self._records)

        needle = (text_query or "").strip().lower()
        results = []
        for rid in candidates:
            record = self._records[rid]
            if needle and needle not in record.searchable_text():
                continue
            if start_time is not None and record.timestamp < start_time:
                continue
            if end_time is not None and record.timestamp > end_time:
                continue
            results.append(rid)
        return self._newest_first(results)

    async def all_tags(self) -> List[str]:
        return sorted(tag for tag, ids in self._by_tag.items() if ids)

    async def export_all(self) -> List[Record]:
        return await self.list()

    # ---- internals ------------------------------------------------------

    def _validate_updates(self, existing: Record, updates: Dict[str, Any]) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        for key, value in updates.items():
            if key in ("id", "timestamp"):
                logger.warning(f"Ignoring update to immutable field '{key}' on {existing.id}")
                continue
            if key not in MUTABLE_RECORD_FIELDS:
                raise InvalidRequest(f"unknown record field: {key}")
            try:
                changes[key] = clean_record_field(key, value)
            except ValueError as e:
                raise InvalidRequest(str(e)) from e

        if ("embedding" not in changes and EMBEDDED_FIELDS & changes.keys()
                and existing.embedding is not None):
            changes["embedding"] = None
        return changes

    async def _commit(self, op: Dict[str, Any]) -> None:
        """Make op durable, then apply it. Caller holds the lock."""
        await self._write_wal(op)
        self._apply(op)
        self._ops_since_compact += 1
        if self.compact_after and self._ops_since_compact >= self.compact_after:
            try:
                await self._compact_locked()
            except PersistenceFailure as e:
                # The WAL still holds every op; compaction can wait
                logger.error(f"Snapshot compaction failed: {e}")

    async def _write_wal(self, op: Dict[str, Any]) -> None:
        if self._wal_file is None:
            raise PersistenceFailure("record store is not initialized")

        line = json.dumps({"ts": datetime.utcnow().isoformat() + "Z", **op}) + "\n"
        offset = None
        try:
            offset = await self._wal_file.tell()
            await self._wal_file.write(line)
            await self._wal_file.flush()
            os.fsync(self._wal_file.fileno())
        except OSError as e:
            logger.error(f"WAL write failed ({op['op']}): {e}")
            if offset is not None:
                await self._rollback_wal(offset)
            raise PersistenceFailure(f"could not persist {op['op']}: {e}") from e

    async def _rollback_wal(self, offset: int) -> None:
        try:
            await self._wal_file.truncate(offset)
            await self._wal_file.flush()
        except OSError as e:
            logger.error(f"Could not roll back partial WAL write: {e}")

    def _apply(self, op: Dict[str, Any]) -> None:
        kind = op.get("op")
        if kind == "put":
            self._upsert(Record.from_dict(op["record"]))
        elif kind == "replace":
            existing = self._records.get(op["id"])
            if existing is None:
                logger.warning(f"WAL replace for unknown record {op['id']}, skipping")
                return
            merged = {**existing.to_dict(), **op["fields"]}
            self._upsert(Record.from_dict(merged))
        elif kind == "remove":
            record = self._records.pop(op["id"], None)
            if record:
                self._unindex(record)
        elif kind == "clear":
            self._records.clear()
            self._by_time.clear()
            self._by_tag.clear()
        elif kind == "import":
            for data in op["records"]:
                self._upsert(Record.from_dict(data))
        else:
            logger.error(f"Unknown WAL op: {kind}")

    def _upsert(self, record: Record) -> None:
        previous = self._records.get(record.id)
        if previous:
            self._unindex(previous)
        self._records[record.id] = record
        insort(self._by_time, (record.timestamp, record.id))
        for tag in record.tags:
            self._by_tag[tag].add(record.id)

    def _unindex(self, record: Record) -> None:
        key = (record.timestamp, record.id)
        pos = bisect_left(self._by_time, key)
        if pos < len(self._by_time) and self._by_time[pos] == key:
            del self._by_time[pos]
        for tag in record.tags:
            ids = self._by_tag.get(tag)
            if ids is not None:
                ids.discard(record.id)
                if not ids:
                    del self._by_tag[tag]

    def _newest_first(self, ids: Iterable[str]) -> List[Record]:
        records = [self._records[rid] for rid in ids]
        records.sort(key=lambda r: (r.timestamp, r.id), reverse=True)
        return [self._copy(r) for r in records]

    @staticmethod
    def _copy(record: Record) -> Record:
        return copy.deepcopy(record)

    async def compact(self) -> None:
        """Write a snapshot of the current state and truncate the WAL."""
        async with self._lock:
            await self._compact_locked()

    async def _compact_locked(self) -> None:
        snapshot = {
            "version": SNAPSHOT_VERSION,
            "records": [self._records[rid].to_dict() for _, rid in self._by_time],
        }
        tmp_path = self.snapshot_path.with_suffix(".json.tmp")
        try:
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(snapshot))
                await f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.snapshot_path)

            if self._wal_file:
                await self._wal_file.close()
            self._wal_file = await aiofiles.open(self.wal_path, 'w', encoding='utf-8')
        except OSError as e:
            raise PersistenceFailure(f"snapshot failed: {e}") from e

        self._ops_since_compact = 0
        logger.info(f"Compacted record store: {len(self._records)} records in snapshot")

    async def _load_snapshot(self) -> None:
        if not self.snapshot_path.exists():
            return
        async with aiofiles.open(self.snapshot_path, 'r', encoding='utf-8') as f:
            raw = await f.read()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceFailure(f"corrupt snapshot {self.snapshot_path}: {e}") from e
        for item in data.get("records", []):
            try:
                self._upsert(Record.from_dict(item))
            except (TypeError, ValueError) as e:
                logger.error(f"Invalid snapshot record skipped ({item.get('id')}): {e}")

    async def _replay_wal(self) -> int:
        """Replay WAL entries on startup for recovery."""
        if not self.wal_path.exists():
            return 0

        replayed = 0
        async with aiofiles.open(self.wal_path, 'r', encoding='utf-8') as f:
            async for line in f:
                if not line.strip():
                    continue
                try:
                    op = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.error(f"Invalid WAL record skipped: {e}")
                    continue
                try:
                    self._apply(op)
                except (KeyError, TypeError, ValueError) as e:
                    logger.error(f"Unappliable WAL record skipped ({op.get('op')}): {e}")
                    continue
                replayed += 1
        return replayed
