"""
Keyed ProgressRecord persistence.

Two backends share the same initialize/merge/read contract:
  InMemoryProgressStore - dict guarded by a lock (single worker process)
  RedisProgressStore    - JSON string per job under `progress:{job_id}`, TTL'd

merge() is a shallow read-modify-write: None values never erase a field,
percent never goes backwards, and a terminal record is frozen.
"""

import os
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from .errors import NotFound
from .models import ProgressRecord

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

PROGRESS_KEY_PREFIX = "progress:"
DEFAULT_TTL_SECONDS = 86400  # PROGRESS_TTL_SECONDS


def merge_records(current: ProgressRecord, partial: dict) -> ProgressRecord:
    """Apply `partial` on top of `current` under the store invariants."""
    if current.is_terminal:
        logger.warning(f"Ignoring update to terminal record: {sorted(partial)}")
        return current

    updates = {k: v for k, v in partial.items() if v is not None}
    if "percent" in updates and updates["percent"] < current.percent:
        logger.warning(
            f"Refusing to lower percent {current.percent} → {updates['percent']}"
        )
        updates["percent"] = current.percent

    updates["updated_at"] = datetime.now(timezone.utc)
    return ProgressRecord.model_validate({**current.model_dump(), **updates})


class ProgressStore(ABC):
    """Abstract keyed store for job progress."""

    name = "abstract"

    @abstractmethod
    def initialize(self, job_id: str, seed: dict) -> ProgressRecord:
        """Create the record for `job_id` from `seed` unless one already exists."""
        ...

    @abstractmethod
    def merge(self, job_id: str, partial: dict) -> ProgressRecord:
        """Shallow-merge `partial` into the record and return the full result."""
        ...

    @abstractmethod
    def read(self, job_id: str) -> ProgressRecord:
        """Return the current record or raise NotFound."""
        ...


class InMemoryProgressStore(ProgressStore):
    """Process-local store. Safe across many job ids via a single lock."""

    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, ProgressRecord] = {}

    def initialize(self, job_id: str, seed: dict) -> ProgressRecord:
        with self._lock:
            existing = self._records.get(job_id)
            if existing is not None:
                return existing
            record = ProgressRecord.model_validate(seed)
            self._records[job_id] = record
            return record

    def merge(self, job_id: str, partial: dict) -> ProgressRecord:
        with self._lock:
            current = self._records.get(job_id) or ProgressRecord()
            updated = merge_records(current, partial)
            self._records[job_id] = updated
            return updated

    def read(self, job_id: str) -> ProgressRecord:
        with self._lock:
            record = self._records.get(job_id)
        if record is None:
            raise NotFound(job_id)
        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RedisProgressStore(ProgressStore):
    """
    Redis-backed store shared by several worker processes.

    One writer per job id is assumed (the orchestrator never runs two stages
    of the same job at once), so a plain GET → SET is sufficient.
    """

    name = "redis"

    def __init__(self, redis_client, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._redis = redis_client
        self._ttl = ttl_seconds

    @staticmethod
    def _key(job_id: str) -> str:
        return f"{PROGRESS_KEY_PREFIX}{job_id}"

    def _load(self, job_id: str) -> Optional[ProgressRecord]:
        raw = self._redis.get(self._key(job_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return ProgressRecord.model_validate_json(raw)

    def initialize(self, job_id: str, seed: dict) -> ProgressRecord:
        record = ProgressRecord.model_validate(seed)
        created = self._redis.set(
            self._key(job_id), record.model_dump_json(), ex=self._ttl, nx=True
        )
        if not created:
            return self._load(job_id) or record
        return record

    def merge(self, job_id: str, partial: dict) -> ProgressRecord:
        current = self._load(job_id) or ProgressRecord()
        updated = merge_records(current, partial)
        self._redis.set(self._key(job_id), updated.model_dump_json(), ex=self._ttl)
        return updated

    def read(self, job_id: str) -> ProgressRecord:
        record = self._load(job_id)
        if record is None:
            raise NotFound(job_id)
        return record


class ProgressReader:
    """Read-only view of a ProgressStore for polling consumers."""

    def __init__(self, store: ProgressStore):
        self._store = store

    def read(self, job_id: str) -> ProgressRecord:
        return self._store.read(job_id)


def create_progress_store(redis_url: Optional[str] = None) -> ProgressStore:
    """Pick the Redis backend when REDIS_URL is set and reachable, else memory."""
    if redis_url is None:
        redis_url = os.getenv("REDIS_URL", "")
    if redis_url:
        import redis

        try:
            client = redis.from_url(redis_url, decode_responses=False)
            client.ping()
            ttl = int(os.getenv("PROGRESS_TTL_SECONDS", DEFAULT_TTL_SECONDS))
            logger.info(f"Progress store: Redis at {redis_url[:30]}...")
            return RedisProgressStore(client, ttl_seconds=ttl)
        except (redis.exceptions.RedisError, ValueError) as e:
            logger.warning(f"Redis unavailable ({e}), falling back to in-memory progress store")
    logger.info("Progress store: in-memory")
    return InMemoryProgressStore()
