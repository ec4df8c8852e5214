"""
Crawl identity pool.

Hands out accounts to crawl workers, tracks their health, and moves them
through the ACTIVE / RESTRICTED / EXPIRED / BANNED lifecycle. Every mutation
happens under one pool lock so that two concurrent callers can never be
issued an account in a way that breaks the cooldown or usage rules.
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import structlog

from crawlplane.config.config import AccountPoolConfig
from crawlplane.errors import AccountNotFoundError, InvalidAccountTransition
from crawlplane.observability.metrics import METRICS
from crawlplane.protocols import Account, AccountStatus, ReviewReason

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = frozenset({AccountStatus.EXPIRED, AccountStatus.BANNED})

REVIEW_TARGETS: Dict[ReviewReason, AccountStatus] = {
    ReviewReason.UNAUTHORIZED: AccountStatus.EXPIRED,
    ReviewReason.NOT_LOGGED_IN: AccountStatus.EXPIRED,
    ReviewReason.CREDENTIAL_EXPIRED: AccountStatus.EXPIRED,
    ReviewReason.FORBIDDEN: AccountStatus.RESTRICTED,
}


def _selection_key(account: Account):
    # priority desc, health desc, least recently used first (never used first of all)
    return (
        -account.priority,
        -account.health_score,
        account.last_used_at is not None,
        account.last_used_at or 0.0,
    )


class AccountPool:
    """Registry of crawl accounts with health tracking and cooldowns."""

    def __init__(self, config: AccountPoolConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self._clock = clock
        self._accounts: Dict[int, Account] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_account(self, account: Account) -> None:
        """Add or replace an account. The pool keeps its own copy."""
        stored = replace(account, health_score=min(account.health_score, self.config.max_health_score))
        with self._lock:
            self._accounts[account.id] = stored
        logger.info("Account registered", account_id=account.id, status=account.status.value)

    def add_account(self, account_id: int, priority: int = 0, nickname: Optional[str] = None) -> Account:
        """Register a fresh ACTIVE account with the configured initial health."""
        account = Account(
            id=account_id,
            health_score=self.config.initial_health_score,
            priority=priority,
            nickname=nickname,
        )
        self.register_account(account)
        return replace(account)

    def get_account(self, account_id: int) -> Account:
        with self._lock:
            return replace(self._get_locked(account_id))

    def list_accounts(self) -> List[Account]:
        with self._lock:
            return [replace(account) for account in self._accounts.values()]

    def _get_locked(self, account_id: int) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def get_available_account(self) -> Optional[Account]:
        """
        Issue the best eligible account, or ``None`` when none is eligible.

        Selection and the usage bookkeeping happen in one critical section.
        The returned value is a snapshot; later pool changes do not affect it.
        """
        with self._lock:
            now = self._clock()
            candidates = [a for a in self._accounts.values() if a.is_available(now)]
            if not candidates:
                METRICS["accounts_pool_empty_total"].inc()
                logger.warning("No available account", registered=len(self._accounts))
                return None

            account = min(candidates, key=_selection_key)
            account.usage_count += 1
            account.uses_since_cooldown += 1
            account.last_used_at = now

            cap = self.config.max_usage_per_account
            if cap is not None and account.uses_since_cooldown >= cap:
                self._start_cooldown_locked(account, now)
                logger.info("Account reached usage cap, cooling down", account_id=account.id, cap=cap)

            issued = replace(account)

        METRICS["accounts_issued_total"].inc()
        logger.debug("Account issued", account_id=issued.id, health_score=issued.health_score)
        return issued

    def _start_cooldown_locked(self, account: Account, now: float) -> None:
        account.cooldown_until = now + self.config.cooldown_seconds
        account.uses_since_cooldown = 0

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def record_account_success(self, account_id: int) -> None:
        with self._lock:
            account = self._get_locked(account_id)
            account.total_successes += 1
            account.consecutive_failures = 0
            account.health_score = min(self.config.max_health_score, account.health_score + self.config.success_reward)

    def record_account_failure(self, account_id: int) -> None:
        """
        Penalise an account after a failed fetch and put it on cooldown.

        An ACTIVE account that reaches ``failure_threshold`` consecutive
        failures is RESTRICTED. Failures never ban an account.
        """
        with self._lock:
            account = self._get_locked(account_id)
            account.consecutive_failures += 1
            account.total_failures += 1
            account.health_score = max(0.0, account.health_score - self.config.failure_penalty)
            self._start_cooldown_locked(account, self._clock())

            restricted = (
                account.status is AccountStatus.ACTIVE
                and account.consecutive_failures >= self.config.failure_threshold
            )
            if restricted:
                account.status = AccountStatus.RESTRICTED
            failures = account.consecutive_failures
            health = account.health_score

        logger.warning(
            "Account failure recorded",
            account_id=account_id,
            consecutive_failures=failures,
            health_score=health,
        )
        if restricted:
            METRICS["account_transitions_total"].labels(to_status=AccountStatus.RESTRICTED.value).inc()
            logger.warning("Account restricted after repeated failures", account_id=account_id, failures=failures)

    def mark_account_needs_review(self, account_id: int, reason: ReviewReason) -> None:
        """
        Pull an account after an authentication-class failure.

        Credential problems expire the account; a 403 restricts it. This
        applies whatever the health score is. EXPIRED and BANNED accounts keep
        their status.
        """
        target = REVIEW_TARGETS[reason]
        with self._lock:
            account = self._get_locked(account_id)
            previous = account.status
            if previous in TERMINAL_STATUSES or previous is target:
                changed = False
            else:
                account.status = target
                account.review_reason = reason
                changed = True

        if changed:
            METRICS["account_transitions_total"].labels(to_status=target.value).inc()
            logger.warning(
                "Account marked for review",
                account_id=account_id,
                reason=reason.value,
                from_status=previous.value,
                to_status=target.value,
            )
        else:
            logger.info("Account review ignored", account_id=account_id, reason=reason.value, status=previous.value)

    def reactivate_account(self, account_id: int) -> None:
        """Manual reset of a RESTRICTED account back to ACTIVE."""
        with self._lock:
            account = self._get_locked(account_id)
            if account.status is not AccountStatus.RESTRICTED:
                raise InvalidAccountTransition(
                    f"Account {account_id} cannot be reactivated from {account.status.value}"
                )
            account.status = AccountStatus.ACTIVE
            account.consecutive_failures = 0
            account.cooldown_until = None
            account.uses_since_cooldown = 0
            account.review_reason = None

        METRICS["account_transitions_total"].labels(to_status=AccountStatus.ACTIVE.value).inc()
        logger.info("Account reactivated", account_id=account_id)

    def ban_account(self, account_id: int) -> None:
        """Ban an account on an external signal. Banning twice is a no-op."""
        with self._lock:
            account = self._get_locked(account_id)
            if account.status is AccountStatus.BANNED:
                return
            if account.status is AccountStatus.EXPIRED:
                raise InvalidAccountTransition(f"Account {account_id} is expired and cannot be banned")
            account.status = AccountStatus.BANNED

        METRICS["account_transitions_total"].labels(to_status=AccountStatus.BANNED.value).inc()
        logger.warning("Account banned", account_id=account_id)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_pool_stats(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            accounts = list(self._accounts.values())
            by_status = {status.value: 0 for status in AccountStatus}
            for account in accounts:
                by_status[account.status.value] += 1
            return {
                "total": len(accounts),
                "available": sum(1 for a in accounts if a.is_available(now)),
                "by_status": by_status,
                "average_health": (sum(a.health_score for a in accounts) / len(accounts)) if accounts else 0.0,
            }
