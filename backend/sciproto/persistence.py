"""
Persistence Adapter: JSON-file store for paper analyses and prototypes.

The database is one JSON document:

    {"analyses": {<hash>: AnalysisRecord}, "prototypes": {<id>: PrototypeRecord}}

Writes go through a temp file + os.replace so a crash never leaves a
half-written database. Saves coming from the agent loop are debounced
by DebouncedSaver and never fail the foreground operation.
"""

import asyncio
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class StoreError(Exception):
    """Raised when the store cannot be read or written."""
    pass


# Fields an agent session owns; everything else on a record belongs to the API
SESSION_FIELDS = ("paper_hash", "title", "code", "history")


class PrototypeRecord(BaseModel):
    """A saved prototype: latest code plus the conversation that produced it."""
    id: str
    paper_hash: Optional[str] = None
    title: str = "Untitled Prototype"
    description: str = ""
    code: str = ""
    algorithm_info: str = ""
    history: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @property
    def key(self) -> str:
        return self.id


class AnalysisRecord(BaseModel):
    """Cached analysis of an uploaded paper, keyed by content hash."""
    hash: str
    filename: str = ""
    raw_text: str = ""
    analysis: Any = None
    created_at: int = Field(default_factory=now_ms)

    @model_validator(mode="before")
    @classmethod
    def _accept_serialized_analysis(cls, data: Any) -> Any:
        # Older databases store the analysis as a JSON string
        if isinstance(data, dict) and "analysis" not in data and "analysis_json" in data:
            data = dict(data)
            raw = data.pop("analysis_json")
            try:
                data["analysis"] = json.loads(raw) if isinstance(raw, str) else raw
            except json.JSONDecodeError:
                data["analysis"] = raw
        return data


def _fsync_dir(dir_path: Path) -> None:
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Not every filesystem supports directory fsync
        pass


def atomic_write_text(path: Path, content: str) -> None:
    """Atomically replace path with content."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


class JsonFileStore:
    """Hash/id keyed store backed by a single JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Raw document access
    # -------------------------------------------------------------------------

    def _read(self) -> dict:
        if not self.path.exists():
            return {"analyses": {}, "prototypes": {}}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read store at {self.path}, starting empty: {e}")
            return {"analyses": {}, "prototypes": {}}

        if not isinstance(data, dict):
            return {"analyses": {}, "prototypes": {}}

        # Legacy layout: analyses stored at the root
        if "analyses" not in data and "prototypes" not in data:
            return {"analyses": data, "prototypes": {}}

        return {
            "analyses": data.get("analyses") or {},
            "prototypes": data.get("prototypes") or {},
        }

    def _write(self, data: dict) -> None:
        try:
            atomic_write_text(self.path, json.dumps(data, indent=2, ensure_ascii=False))
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write store at {self.path}: {e}") from e

    # -------------------------------------------------------------------------
    # Prototypes
    # -------------------------------------------------------------------------

    def get_prototype(self, prototype_id: str) -> Optional[PrototypeRecord]:
        with self._lock:
            raw = self._read()["prototypes"].get(prototype_id)
        if raw is None:
            return None
        try:
            return PrototypeRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid prototype record '{prototype_id}': {e}")
            return None

    def put_prototype(self, record: PrototypeRecord, fields: Optional[Iterable[str]] = None) -> PrototypeRecord:
        """
        Create or overwrite a prototype, keeping its original created_at.

        With fields, an existing record only takes those fields from
        record (None values are skipped); the rest of it is left as stored.
        """
        with self._lock:
            data = self._read()
            existing = data["prototypes"].get(record.id)
            created_at = record.created_at
            if isinstance(existing, dict) and existing.get("created_at"):
                created_at = existing["created_at"]

            base = record
            if fields is not None and isinstance(existing, dict):
                try:
                    stored = PrototypeRecord.model_validate(existing)
                except ValidationError as e:
                    logger.warning(f"Replacing invalid prototype record '{record.id}': {e}")
                else:
                    changes = {
                        name: getattr(record, name) for name in fields
                        if getattr(record, name) is not None
                    }
                    base = stored.model_copy(update=changes)

            saved = base.model_copy(update={"created_at": created_at, "updated_at": now_ms()})
            data["prototypes"][record.id] = saved.model_dump()
            self._write(data)
        return saved

    def list_prototypes(self) -> List[PrototypeRecord]:
        with self._lock:
            raw = self._read()["prototypes"]
        records = []
        for prototype_id, item in raw.items():
            try:
                records.append(PrototypeRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Ignoring invalid prototype record '{prototype_id}': {e}")
        return sorted(records, key=lambda r: r.updated_at, reverse=True)

    def delete_prototype(self, prototype_id: str) -> bool:
        with self._lock:
            data = self._read()
            if prototype_id not in data["prototypes"]:
                return False
            del data["prototypes"][prototype_id]
            self._write(data)
        return True

    # -------------------------------------------------------------------------
    # Analyses
    # -------------------------------------------------------------------------

    def get_analysis(self, content_hash: str) -> Optional[AnalysisRecord]:
        with self._lock:
            raw = self._read()["analyses"].get(content_hash)
        if raw is None:
            return None
        try:
            return AnalysisRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid analysis record '{content_hash}': {e}")
            return None

    def put_analysis(self, record: AnalysisRecord) -> AnalysisRecord:
        with self._lock:
            data = self._read()
            data["analyses"][record.hash] = record.model_dump()
            self._write(data)
        return record

    def list_analyses(self) -> List[AnalysisRecord]:
        with self._lock:
            raw = self._read()["analyses"]
        records = []
        for content_hash, item in raw.items():
            try:
                records.append(AnalysisRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Ignoring invalid analysis record '{content_hash}': {e}")
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    # -------------------------------------------------------------------------
    # Async wrappers
    # -------------------------------------------------------------------------

    async def aget_prototype(self, prototype_id: str) -> Optional[PrototypeRecord]:
        return await asyncio.to_thread(self.get_prototype, prototype_id)

    async def aput_prototype(
        self, record: PrototypeRecord, fields: Optional[Iterable[str]] = None
    ) -> PrototypeRecord:
        return await asyncio.to_thread(self.put_prototype, record, fields)

    async def alist_prototypes(self) -> List[PrototypeRecord]:
        return await asyncio.to_thread(self.list_prototypes)

    async def adelete_prototype(self, prototype_id: str) -> bool:
        return await asyncio.to_thread(self.delete_prototype, prototype_id)

    async def aget_analysis(self, content_hash: str) -> Optional[AnalysisRecord]:
        return await asyncio.to_thread(self.get_analysis, content_hash)

    async def aput_analysis(self, record: AnalysisRecord) -> AnalysisRecord:
        return await asyncio.to_thread(self.put_analysis, record)

    async def alist_analyses(self) -> List[AnalysisRecord]:
        return await asyncio.to_thread(self.list_analyses)


class DebouncedSaver:
    """
    Coalesces rapid prototype updates into one write per idle window.

    Each key has its own idle window, so a busy session never holds back
    the writes of another. Only the latest record per key is written, and
    only the session-owned fields are merged into an existing record.
    Write failures are logged and swallowed.
    """

    def __init__(
        self,
        store: JsonFileStore,
        delay: float = 1.5,
        fields: Optional[Iterable[str]] = SESSION_FIELDS,
    ):
        self.store = store
        self.delay = delay
        self.fields = tuple(fields) if fields is not None else None
        self._pending: Dict[str, PrototypeRecord] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self.write_count = 0

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def schedule(self, record: PrototypeRecord) -> None:
        """Queue a record; restarts the idle window for its key."""
        self._pending[record.id] = record
        timer = self._timers.get(record.id)
        if timer and not timer.done():
            timer.cancel()
        self._timers[record.id] = asyncio.create_task(self._fire_after_delay(record.id))

    async def _fire_after_delay(self, key: str) -> None:
        await asyncio.sleep(self.delay)
        self._timers.pop(key, None)
        await self._write(key)

    async def _write(self, key: str) -> None:
        record = self._pending.pop(key, None)
        if record is None:
            return
        try:
            await self.store.aput_prototype(record, self.fields)
            self.write_count += 1
            logger.debug(f"Saved prototype '{record.id}' ({len(record.history)} messages)")
        except Exception as e:
            logger.error(f"Failed to save prototype '{record.id}': {e}", exc_info=True)

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for timer in self._timers.values():
            if not timer.done() and timer is not current:
                timer.cancel()
        self._timers.clear()

    async def flush(self) -> None:
        """Write pending records now."""
        self._cancel_timers()
        for key in list(self._pending):
            await self._write(key)

    def cancel(self) -> None:
        """Drop pending records without writing them."""
        self._cancel_timers()
        self._pending.clear()
