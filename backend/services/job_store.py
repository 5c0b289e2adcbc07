"""
Job store: in-memory index backed by a durable key/value store.

The durable copy is the source of truth across restarts; the memory
index is a cache that is filled lazily from disk on a miss and swept of
old entries periodically. Writes go to memory first, then to disk. A
failed disk write is logged and leaves the memory entry in place.

Usage:
    >>> store = JobStore(FileDurableStore("./data/jobs"))
    >>> await store.put(job)
    >>> job = await store.get(job.id)
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import aiofiles
import structlog
from pydantic import ValidationError as ModelValidationError

from config import settings
from models import GenerationJob, utc_now
from pipeline.error_handler import PersistenceError


logger = structlog.get_logger(__name__)


class DurableStore(ABC):
    """
    Abstract key -> JSON blob persistence.

    Implementations must replace whole records on write so a reader never
    observes a partially written blob.
    """

    @abstractmethod
    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Read a blob.

        Returns:
            The stored dict, or None if the key does not exist

        Raises:
            PersistenceError: If the record exists but cannot be read
        """

    @abstractmethod
    async def write(self, key: str, blob: Dict[str, Any]) -> None:
        """
        Replace the blob stored under key.

        Raises:
            PersistenceError: If the write fails
        """


class FileDurableStore(DurableStore):
    """One JSON file per key under a root directory"""

    def __init__(self, root: str = None):
        self.root = root or settings.JOBS_DIR

    def _path(self, key: str) -> str:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise PersistenceError(key, f"Invalid store key: {key!r}")
        return os.path.join(self.root, f"{key}.json")

    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        try:
            async with aiofiles.open(path, "r") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(key, f"Failed to read {path}: {e}") from e

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise PersistenceError(key, f"Corrupt record {path}: {e}") from e

    async def write(self, key: str, blob: Dict[str, Any]) -> None:
        path = self._path(key)
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(self.root, exist_ok=True)
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(blob, indent=2))
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(key, f"Failed to write {path}: {e}") from e


class InMemoryDurableStore(DurableStore):
    """Dict-backed durable store for tests and local runs"""

    def __init__(self):
        self.records: Dict[str, str] = {}

    async def read(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self.records.get(key)
        return json.loads(raw) if raw is not None else None

    async def write(self, key: str, blob: Dict[str, Any]) -> None:
        self.records[key] = json.dumps(blob)


class JobStore:
    """
    Write-through job store.

    Each job id is expected to be advanced by a single flow at a time;
    the store itself does no locking.
    """

    def __init__(
        self,
        durable: DurableStore,
        retention_seconds: Optional[int] = None,
        sweep_interval: Optional[float] = None,
    ):
        self.durable = durable
        self.retention = timedelta(
            seconds=retention_seconds if retention_seconds is not None else settings.JOB_RETENTION_SECONDS
        )
        self.sweep_interval = sweep_interval if sweep_interval is not None else settings.JOB_SWEEP_INTERVAL
        self._memory: Dict[str, GenerationJob] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self.logger = logger.bind(service="job_store")

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._memory

    async def get(self, job_id: str) -> Optional[GenerationJob]:
        """
        Fetch a job, rehydrating the memory index from disk on a miss.

        Returns None if neither memory nor disk has the job, or if the
        disk record cannot be read.
        """
        job = self._memory.get(job_id)
        if job is not None:
            return job

        try:
            blob = await self.durable.read(job_id)
        except PersistenceError as e:
            self.logger.error("job_read_failed", job_id=job_id, error=e.message)
            return None
        if blob is None:
            return None

        try:
            job = GenerationJob.model_validate(blob)
        except ModelValidationError as e:
            self.logger.error("job_record_invalid", job_id=job_id, error=str(e))
            return None

        self._memory[job_id] = job
        self.logger.info("job_rehydrated", job_id=job_id, status=job.status)
        return job

    async def put(self, job: GenerationJob) -> GenerationJob:
        """
        Store a job: memory first, then disk.

        Persistence failures are logged and not raised; the memory entry
        is kept either way.
        """
        job.updated_at = utc_now()
        self._memory[job.id] = job

        try:
            await self.durable.write(job.id, job.model_dump(mode="json"))
        except (PersistenceError, OSError) as e:
            self.logger.error(
                "job_persist_failed",
                job_id=job.id,
                status=job.status,
                error=str(e),
            )

        return job

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Evict memory entries older than the retention window.

        Disk records are untouched.

        Returns:
            Number of evicted entries
        """
        now = now or utc_now()
        expired = [
            job_id for job_id, job in self._memory.items()
            if now - job.created_at > self.retention
        ]
        for job_id in expired:
            del self._memory[job_id]

        if expired:
            self.logger.info("jobs_evicted_from_memory", count=len(expired))
        return len(expired)

    def clear_memory(self) -> None:
        """Drop the whole memory index, as a process restart would."""
        self._memory.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic memory sweep."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())
            self.logger.info("job_sweeper_started", interval=self.sweep_interval)

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
