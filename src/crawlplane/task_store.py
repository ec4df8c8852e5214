"""
In-process task store.

The real task store lives outside the control plane. This implementation
keeps the latest status and progress per task in memory so the consumer can
run locally and be exercised in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog

from crawlplane.protocols import TaskProgress, TaskState

logger = structlog.get_logger(__name__)


@dataclass
class TaskRecord:
    task_id: int
    status: Optional[TaskState] = None
    error_message: Optional[str] = None
    progress: Optional[TaskProgress] = None
    history: List[Tuple[TaskState, Optional[str]]] = field(default_factory=list)


class InMemoryTaskStore:
    def __init__(self) -> None:
        self.tasks: Dict[int, TaskRecord] = {}

    async def update_task_status(
        self, task_id: int, status: TaskState, error_message: Optional[str] = None
    ) -> None:
        record = self.tasks.setdefault(task_id, TaskRecord(task_id=task_id))
        record.status = status
        record.error_message = error_message
        record.history.append((status, error_message))
        logger.debug("Task status stored", task_id=task_id, status=status.value)

    async def update_task_progress(self, task_id: int, progress: TaskProgress) -> None:
        record = self.tasks.setdefault(task_id, TaskRecord(task_id=task_id))
        record.progress = progress

    def get(self, task_id: int) -> Optional[TaskRecord]:
        return self.tasks.get(task_id)
