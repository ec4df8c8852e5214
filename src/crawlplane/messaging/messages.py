"""
Task-status wire messages: validation, parsing and consumer settings.

Producers publish JSON objects shaped like::

    {"taskId": 1, "status": "running", "updatedAt": "2023-01-01T12:00:00.000Z",
     "currentCrawlTime": ..., "latestCrawlTime": ..., "nextRunAt": ...,
     "progress": 50, "errorMessage": "..."}

Dates may be ISO 8601 strings, ``datetime`` objects or epoch milliseconds.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

import structlog

from crawlplane.protocols import TaskProgress

if TYPE_CHECKING:
    from crawlplane.config.config import ConsumerConfig

logger = structlog.get_logger(__name__)

OPTIONAL_DATE_FIELDS = ("currentCrawlTime", "latestCrawlTime", "nextRunAt")


class TaskStatus(Enum):
    """Status values accepted on the wire."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class TaskStatusMessage:
    task_id: int
    status: TaskStatus
    updated_at: datetime
    current_crawl_time: Optional[datetime] = None
    latest_crawl_time: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    progress: Optional[float] = None
    error_message: Optional[str] = None

    def task_progress(self) -> TaskProgress:
        return TaskProgress(
            current_crawl_time=self.current_crawl_time,
            latest_crawl_time=self.latest_crawl_time,
            next_run_at=self.next_run_at,
            progress=self.progress,
        )

    def has_progress(self) -> bool:
        return not self.task_progress().is_empty()


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a wire date into an aware UTC datetime, or ``None`` if it is not a date."""
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_status_message(raw: Any) -> bool:
    """Return whether ``raw`` is a well-formed task-status message."""
    if not isinstance(raw, Mapping):
        return False

    task_id = raw.get("taskId")
    if not isinstance(task_id, int) or isinstance(task_id, bool) or task_id <= 0:
        return False

    if raw.get("status") not in {s.value for s in TaskStatus}:
        return False

    if parse_datetime(raw.get("updatedAt")) is None:
        return False

    for name in OPTIONAL_DATE_FIELDS:
        value = raw.get(name)
        if value is not None and parse_datetime(value) is None:
            return False

    progress = raw.get("progress")
    if progress is not None and not _is_number(progress):
        return False

    error_message = raw.get("errorMessage")
    if error_message is not None and not isinstance(error_message, str):
        return False

    return True


def parse_status_message(raw: Any) -> Optional[TaskStatusMessage]:
    """Validate and convert ``raw``. Returns ``None`` instead of raising."""
    if isinstance(raw, (bytes, bytearray, str)):
        return decode_status_message(raw)

    if not validate_status_message(raw):
        return None

    try:
        progress = raw.get("progress")
        return TaskStatusMessage(
            task_id=raw["taskId"],
            status=TaskStatus(raw["status"]),
            updated_at=parse_datetime(raw["updatedAt"]),  # type: ignore[arg-type]
            current_crawl_time=parse_datetime(raw.get("currentCrawlTime")),
            latest_crawl_time=parse_datetime(raw.get("latestCrawlTime")),
            next_run_at=parse_datetime(raw.get("nextRunAt")),
            progress=float(progress) if progress is not None else None,
            error_message=raw.get("errorMessage"),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Failed to parse task status message", error=str(e))
        return None


def decode_status_message(body: Union[bytes, bytearray, str]) -> Optional[TaskStatusMessage]:
    """Decode a JSON body and parse it as a task-status message."""
    try:
        raw = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Task status message is not valid JSON", error=str(e))
        return None
    return parse_status_message(raw) if isinstance(raw, Mapping) else None


@dataclass(frozen=True)
class ConsumerSettings:
    """Resolved queue settings for one consumer instance."""

    queue_url: str
    queue_name: str
    consumer_tag: str
    prefetch_count: int
    max_retries: int


def get_consumer_settings(config: ConsumerConfig) -> ConsumerSettings:
    """Build consumer settings with a unique consumer tag."""
    return ConsumerSettings(
        queue_url=config.queue_url,
        queue_name=config.queue_name,
        consumer_tag=f"{config.consumer_tag_prefix}-{uuid.uuid4().hex}",
        prefetch_count=config.prefetch_count,
        max_retries=config.max_retries,
    )
