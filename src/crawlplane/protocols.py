"""
Core contracts and data structures for the crawl control plane.

This module defines the records shared between the rate controller, the
account pool, the crawl worker and the task-status consumer, together with
the protocols for the external collaborators the control plane drives:

- ``Fetcher``: executes a single fetch (HTTP client or browser automation)
- ``TaskStore``: persists task status and progress
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol

# ============================================================================
# Enums
# ============================================================================


class AccountStatus(Enum):
    """Lifecycle states of a crawl identity."""

    ACTIVE = "active"
    RESTRICTED = "restricted"  # Needs re-validation before reuse
    EXPIRED = "expired"  # Credential invalid, terminal until re-auth
    BANNED = "banned"  # Terminal, external signal only


class ReviewReason(Enum):
    """Why an account was pulled for review after an authentication-class failure."""

    UNAUTHORIZED = "unauthorized"  # HTTP 401
    FORBIDDEN = "forbidden"  # HTTP 403
    NOT_LOGGED_IN = "not_logged_in"
    CREDENTIAL_EXPIRED = "credential_expired"


class TaskState(Enum):
    """Internal task states written to the task store."""

    RUNNING = "running"
    FAILED = "failed"
    TIMEOUT = "timeout"


class MessageProcessResult(Enum):
    """Outcome of processing one task-status message."""

    SUCCESS = "success"
    RETRY = "retry"
    FAILED = "failure"


# ============================================================================
# Records
# ============================================================================


@dataclass
class Account:
    """A crawl identity and its health bookkeeping."""

    id: int
    status: AccountStatus = AccountStatus.ACTIVE
    health_score: float = 100.0
    consecutive_failures: int = 0
    total_successes: int = 0
    total_failures: int = 0
    usage_count: int = 0
    last_used_at: Optional[float] = None
    cooldown_until: Optional[float] = None
    priority: int = 0
    nickname: Optional[str] = None
    review_reason: Optional[ReviewReason] = None

    # Issues since the last cooldown, used by the per-account usage cap
    uses_since_cooldown: int = 0

    def is_available(self, now: float) -> bool:
        """Eligible for selection: ACTIVE and not cooling down."""
        if self.status is not AccountStatus.ACTIVE:
            return False
        return self.cooldown_until is None or now >= self.cooldown_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "health_score": self.health_score,
            "consecutive_failures": self.consecutive_failures,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "usage_count": self.usage_count,
            "last_used_at": self.last_used_at,
            "cooldown_until": self.cooldown_until,
            "priority": self.priority,
            "nickname": self.nickname,
            "review_reason": self.review_reason.value if self.review_reason else None,
        }


@dataclass
class FetchResult:
    """Outcome of an external fetch as reported by a Fetcher."""

    status_code: int = 0
    text: str = ""
    duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status_code < 400


@dataclass
class TaskProgress:
    """Optional progress fields carried by a task-status message."""

    current_crawl_time: Optional[datetime] = None
    latest_crawl_time: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    progress: Optional[float] = None

    def is_empty(self) -> bool:
        return (
            self.current_crawl_time is None
            and self.latest_crawl_time is None
            and self.next_run_at is None
            and self.progress is None
        )


@dataclass
class ConsumerStats:
    """Durable counters for the task-status consumer."""

    total_messages: int = 0
    success_count: int = 0
    failure_count: int = 0
    retry_count: int = 0
    avg_processing_time_ms: float = 0.0
    last_processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_messages": self.total_messages,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "retry_count": self.retry_count,
            "avg_processing_time_ms": self.avg_processing_time_ms,
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
        }


@dataclass
class DetailedConsumerStats(ConsumerStats):
    processing_times: list[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["processing_times"] = list(self.processing_times)
        return data


# ============================================================================
# External collaborators
# ============================================================================


class Fetcher(Protocol):
    """Executes one fetch on behalf of a crawl worker."""

    async def fetch(self, url: str, account: Account) -> FetchResult:
        """Fetch ``url`` using ``account``'s credentials."""
        ...


class TaskStore(Protocol):
    """Persistent task storage updated by the task-status consumer."""

    async def update_task_status(
        self, task_id: int, status: TaskState, error_message: Optional[str] = None
    ) -> None:
        """Set the task's status."""
        ...

    async def update_task_progress(self, task_id: int, progress: TaskProgress) -> None:
        """Record crawl progress for the task."""
        ...
