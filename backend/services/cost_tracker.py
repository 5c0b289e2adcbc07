"""
Cost tracking - simple per-operation counters

Each generation that succeeds is charged its registry cost. Entries are
kept in memory (most recent COST_MAX_ENTRIES) and appended to a JSON log
on a best-effort basis; a failed write is logged and otherwise ignored.

Entries are tagged with the job_id bound in structlog's context, which the
orchestrator sets for each supervised job, so a job can report its own
spend.
"""

import json
import os
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

import aiofiles
import structlog

from config import settings
from services.model_registry import ModelRegistry, ModelTask


logger = structlog.get_logger(__name__)


class CostTracker:
    """In-memory cost counters with optional JSON persistence"""

    def __init__(self, log_path: Optional[str] = None, max_entries: Optional[int] = None):
        self.log_path = log_path
        self.entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries or settings.COST_MAX_ENTRIES)
        self.totals: Dict[str, float] = defaultdict(float)
        self.counts: Dict[str, int] = defaultdict(int)
        self.logger = logger.bind(service="cost_tracker")

    @property
    def total(self) -> float:
        return round(sum(self.totals.values()), 4)

    async def track(self, operation: str, amount: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        entry = {
            "operation": operation,
            "job_id": structlog.contextvars.get_contextvars().get("job_id"),
            "amount": amount,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata or {},
        }
        self.entries.append(entry)
        self.totals[operation] += amount
        self.counts[operation] += 1

        self.logger.info("cost_tracked", operation=operation, amount=amount, total=self.total)

        if self.log_path:
            await self._append(entry)

    async def track_model_run(self, task: ModelTask, model_name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Charge one run of a registry model."""
        model = ModelRegistry.find_model(model_name)
        amount = model.cost_per_run if model else ModelRegistry.estimate_cost(task)
        await self.track(task.value, amount, metadata)

    async def _append(self, entry: Dict[str, Any]) -> None:
        try:
            directory = os.path.dirname(self.log_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            async with aiofiles.open(self.log_path, "a") as f:
                await f.write(json.dumps(entry) + "\n")
        except OSError as e:
            self.logger.warning("cost_log_write_failed", path=self.log_path, error=str(e))

    def summary(self, job_id: Optional[str] = None) -> Dict[str, Any]:
        """Process-wide totals, or one job's spend when job_id is given."""
        if job_id is None:
            totals, counts = self.totals, self.counts
        else:
            totals, counts = defaultdict(float), defaultdict(int)
            for entry in self.entries:
                if entry["job_id"] == job_id:
                    totals[entry["operation"]] += entry["amount"]
                    counts[entry["operation"]] += 1
        return {
            "total": round(sum(totals.values()), 4),
            "by_operation": {op: round(amount, 4) for op, amount in totals.items()},
            "counts": dict(counts),
        }
