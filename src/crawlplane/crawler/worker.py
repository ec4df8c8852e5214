"""
Crawl worker loop.

Ties the policy components together for a single fetch: robots check,
account issue, pacing, the external fetch, and reporting the outcome back
to the rate controller and the account pool.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence

import structlog

from crawlplane.config.config import AccountPoolConfig
from crawlplane.crawler.account_pool import AccountPool
from crawlplane.crawler.rate_controller import RateController
from crawlplane.crawler.robots_policy import RobotsPolicyEngine
from crawlplane.protocols import Account, Fetcher, FetchResult, ReviewReason

logger = structlog.get_logger(__name__)


class CrawlOutcome(Enum):
    SKIPPED_ROBOTS = "skipped_robots"
    NO_ACCOUNT = "no_account"
    SUCCESS = "success"
    FAILED = "failed"
    AUTH_FAILED = "auth_failed"


@dataclass
class CrawlResult:
    url: str
    outcome: CrawlOutcome
    account_id: Optional[int] = None
    fetch: Optional[FetchResult] = None


def authentication_failure_reason(result: FetchResult, indicators: Sequence[str]) -> Optional[ReviewReason]:
    """Classify a fetch result as an authentication-class failure, if it is one."""
    if result.status_code == 401:
        return ReviewReason.UNAUTHORIZED
    if result.status_code == 403:
        return ReviewReason.FORBIDDEN
    body = (result.text or "").lower()
    if any(indicator.lower() in body for indicator in indicators):
        return ReviewReason.NOT_LOGGED_IN
    return None


def is_authentication_failure(result: FetchResult, indicators: Sequence[str]) -> bool:
    return authentication_failure_reason(result, indicators) is not None


class CrawlWorker:
    """Runs the politeness-controlled fetch loop against an external Fetcher."""

    def __init__(
        self,
        rate_controller: RateController,
        robots: RobotsPolicyEngine,
        accounts: AccountPool,
        fetcher: Fetcher,
        config: AccountPoolConfig,
    ):
        self.rate_controller = rate_controller
        self.robots = robots
        self.accounts = accounts
        self.fetcher = fetcher
        self.config = config

    async def crawl(self, url: str) -> CrawlResult:
        if not await self.robots.is_url_allowed(url):
            logger.info("Skipping URL disallowed by robots.txt", url=url)
            return CrawlResult(url=url, outcome=CrawlOutcome.SKIPPED_ROBOTS)

        account = self.accounts.get_available_account()
        if account is None:
            return CrawlResult(url=url, outcome=CrawlOutcome.NO_ACCOUNT)

        await self._wait_before_fetch(url)

        result = await self._fetch(url, account)
        self.rate_controller.record_request(
            url,
            success=result.ok,
            duration_ms=result.duration_ms,
            status_code=result.status_code or None,
            error_type=result.error,
        )

        reason = authentication_failure_reason(result, self.config.auth_failure_indicators)
        if reason is not None:
            self.accounts.record_account_failure(account.id)
            self.accounts.mark_account_needs_review(account.id, reason)
            logger.warning(
                "Authentication failure detected",
                url=url,
                account_id=account.id,
                reason=reason.value,
                status_code=result.status_code,
            )
            return CrawlResult(url=url, outcome=CrawlOutcome.AUTH_FAILED, account_id=account.id, fetch=result)

        if result.ok:
            self.accounts.record_account_success(account.id)
            return CrawlResult(url=url, outcome=CrawlOutcome.SUCCESS, account_id=account.id, fetch=result)

        self.accounts.record_account_failure(account.id)
        return CrawlResult(url=url, outcome=CrawlOutcome.FAILED, account_id=account.id, fetch=result)

    async def _wait_before_fetch(self, url: str) -> None:
        crawl_delay = await self.robots.get_crawl_delay(url)
        if crawl_delay * 1000 > self.rate_controller.get_current_delay():
            await asyncio.sleep(crawl_delay)
        else:
            await self.rate_controller.wait_for_next_request()

    async def _fetch(self, url: str, account: Account) -> FetchResult:
        start = time.monotonic()
        try:
            return await self.fetcher.fetch(url, account)
        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.warning("Fetch raised", url=url, account_id=account.id, error=str(e))
            return FetchResult(status_code=0, text="", duration_ms=duration_ms, error=type(e).__name__)

    async def run(self, urls: Iterable[str], concurrency: int = 1) -> List[CrawlResult]:
        """Crawl ``urls`` with at most ``concurrency`` fetches in flight."""
        semaphore = asyncio.Semaphore(concurrency)

        async def _bounded(url: str) -> CrawlResult:
            async with semaphore:
                return await self.crawl(url)

        results = await asyncio.gather(*(_bounded(url) for url in urls))
        counts = {outcome.value: 0 for outcome in CrawlOutcome}
        for result in results:
            counts[result.outcome.value] += 1
        logger.info("Crawl batch finished", total=len(results), **counts)
        return list(results)
