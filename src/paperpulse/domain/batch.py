"""Analysis batch states."""

from __future__ import annotations

from enum import Enum


class BatchStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BatchJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Batches still able to take job results
OPEN_BATCH_STATUSES = (BatchStatus.RUNNING.value, BatchStatus.PAUSED.value)
# Job states from which a terminal event may still be recorded
OPEN_JOB_STATUSES = (BatchJobStatus.PENDING.value, BatchJobStatus.RUNNING.value)
