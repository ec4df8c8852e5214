"""
robots.txt policy engine.

Fetches, parses and caches robots.txt per host and answers two questions for
a crawl worker: may this URL be fetched, and how long should the worker wait
between requests to its host. Lookups fail open: when the policy cannot be
obtained the URL is treated as allowed and the fallback delay applies.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import structlog
from httpx import AsyncClient, HTTPError

from crawlplane.config.config import RobotsConfig
from crawlplane.observability.metrics import METRICS

logger = structlog.get_logger(__name__)

MAX_ROBOTS_SIZE = 1_000_000

# Statuses that mean "no robots.txt here": allow everything and cache it
MISSING_STATUSES = (404, 410)


@dataclass
class RobotsRule:
    """Directives of one User-agent group."""

    user_agent: str
    allow: List[str] = field(default_factory=list)
    disallow: List[str] = field(default_factory=list)
    crawl_delay_seconds: Optional[float] = None


@dataclass
class ParsedRobots:
    rules: List[RobotsRule] = field(default_factory=list)
    sitemaps: List[str] = field(default_factory=list)


@dataclass
class RobotsCacheEntry:
    content: ParsedRobots
    fetched_at: float
    url: str
    access_count: int = 0
    error_count: int = 0


@dataclass
class DomainStats:
    checked: int = 0
    blocked: int = 0


def parse_robots_txt(content: str) -> ParsedRobots:
    """
    Parse robots.txt text into rule groups.

    Keys are case-insensitive, ``#`` starts a comment, each ``User-agent``
    line opens a new group, empty Allow/Disallow values are ignored and a
    Crawl-delay counts only when it is a positive number. Sitemaps are
    collected regardless of group.
    """
    parsed = ParsedRobots()
    current: Optional[RobotsRule] = None

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "user-agent":
            current = RobotsRule(user_agent=value.lower())
            parsed.rules.append(current)
        elif key == "sitemap":
            if value:
                parsed.sitemaps.append(value)
        elif current is None:
            continue
        elif key == "disallow":
            if value:
                current.disallow.append(value)
        elif key == "allow":
            if value:
                current.allow.append(value)
        elif key == "crawl-delay":
            try:
                delay = float(value)
            except ValueError:
                continue
            if delay > 0:
                current.crawl_delay_seconds = delay

    return parsed


def path_matches(path: str, rule_path: str) -> bool:
    """
    Match a URL path against a robots path pattern.

    ``*`` matches any run of characters and ``?`` a single character; such
    patterns must match the whole path. A trailing ``$`` anchors the pattern
    at the end of the path. Plain patterns match by prefix, and ``/`` matches
    everything.
    """
    anchored = rule_path.endswith("$")
    if anchored:
        rule_path = rule_path[:-1]
    if "*" in rule_path:
        pattern = "".join(
            ".*" if ch == "*" else "." if ch == "?" else re.escape(ch) for ch in rule_path
        )
        return re.fullmatch(pattern, path) is not None
    if anchored:
        return path == rule_path
    if rule_path == "/":
        return True
    return path == rule_path or path.startswith(rule_path)


def find_matching_rule(rules: List[RobotsRule], user_agent: str) -> Optional[RobotsRule]:
    """Exact user-agent match first, then ``*``, then a partial match either way."""
    agent = user_agent.lower()
    for rule in rules:
        if rule.user_agent == agent:
            return rule
    for rule in rules:
        if rule.user_agent == "*":
            return rule
    for rule in rules:
        if rule.user_agent and (rule.user_agent in agent or agent in rule.user_agent):
            return rule
    return None


def is_path_allowed(rule: RobotsRule, path: str) -> bool:
    for disallow in sorted(rule.disallow, key=len, reverse=True):
        if path_matches(path, disallow):
            return any(path_matches(path, allow) for allow in sorted(rule.allow, key=len, reverse=True))
    return True


class RobotsPolicyEngine:
    """
    Manages fetching, parsing, and caching of robots.txt files.

    One entry is cached per host for ``cache_timeout_seconds``; stale entries
    are refetched and never served. Concurrent lookups for the same host share
    a single fetch through a per-host lock.
    """

    def __init__(
        self,
        config: RobotsConfig,
        client: AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            config: robots.txt settings.
            client: An optional httpx.AsyncClient. If not provided, one is
                    created and closed with the engine.
            clock: Source of wall-clock seconds, injectable for tests.
        """
        self.config = config
        self._owns_client = client is None
        self._client = client or AsyncClient(follow_redirects=True)
        self._clock = clock
        self._cache: Dict[str, RobotsCacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._domain_stats: Dict[str, DomainStats] = {}

    # ------------------------------------------------------------------
    # Policy queries
    # ------------------------------------------------------------------

    async def is_url_allowed(self, url: str) -> bool:
        """Return whether the configured user agent may fetch ``url``."""
        if not self.config.enabled:
            return True

        target = _split_url(url)
        if target is None:
            logger.warning("Could not parse URL for robots.txt check, allowing", url=url)
            return True
        host, path = target

        robots = await self._get_robots(host)
        if robots is None:
            return True

        stats = self._domain_stats.setdefault(host, DomainStats())
        stats.checked += 1

        rule = find_matching_rule(robots.rules, self.config.user_agent)
        allowed = rule is None or is_path_allowed(rule, path)

        if not allowed:
            stats.blocked += 1
            logger.debug("URL blocked by robots.txt", url=url, user_agent=self.config.user_agent)
        METRICS["robots_checks_total"].labels(decision="allowed" if allowed else "blocked").inc()
        return allowed

    async def get_crawl_delay(self, url: str) -> float:
        """Crawl delay in seconds for the host of ``url``."""
        fallback = self.config.fallback_delay_seconds
        if not self.config.enabled or not self.config.respect_crawl_delay:
            return fallback

        target = _split_url(url)
        if target is None:
            return fallback

        robots = await self._get_robots(target[0])
        if robots is None:
            return fallback

        rule = find_matching_rule(robots.rules, self.config.user_agent)
        if rule is None or rule.crawl_delay_seconds is None:
            return fallback
        return rule.crawl_delay_seconds

    async def get_sitemaps(self, url: str) -> List[str]:
        target = _split_url(url)
        if target is None:
            return []
        robots = await self._get_robots(target[0])
        return list(robots.sitemaps) if robots else []

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _fresh_entry(self, host: str) -> Optional[RobotsCacheEntry]:
        entry = self._cache.get(host)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.config.cache_timeout_seconds:
            return None
        return entry

    async def _get_robots(self, host: str) -> Optional[ParsedRobots]:
        entry = self._fresh_entry(host)
        if entry is None:
            lock = self._locks.setdefault(host, asyncio.Lock())
            async with lock:
                # Another task may have fetched it while we waited
                entry = self._fresh_entry(host)
                if entry is None:
                    entry = await self._refresh(host)
                    if entry is None:
                        return None
        entry.access_count += 1
        return entry.content

    async def _refresh(self, host: str) -> Optional[RobotsCacheEntry]:
        robots_url = f"https://{host}/robots.txt"
        content, cacheable = await self._fetch_robots_txt(robots_url)
        if not cacheable or content is None:
            previous = self._cache.get(host)
            if previous is not None:
                previous.error_count += 1
            METRICS["robots_fetch_failures_total"].inc()
            return None

        previous = self._cache.get(host)
        entry = RobotsCacheEntry(
            content=content,
            fetched_at=self._clock(),
            url=robots_url,
            error_count=previous.error_count if previous else 0,
        )
        self._cache[host] = entry
        logger.debug(
            "robots.txt cached",
            host=host,
            rules=len(content.rules),
            sitemaps=len(content.sitemaps),
        )
        return entry

    async def _fetch_robots_txt(self, robots_url: str) -> Tuple[Optional[ParsedRobots], bool]:
        """
        Fetch and parse one robots.txt.

        Returns:
            The parsed policy and whether it may be cached. A missing file
            yields an empty, cacheable policy; any other failure yields
            ``(None, False)``.
        """
        try:
            response = await self._client.get(
                robots_url,
                timeout=self.config.fetch_timeout_seconds,
                headers={"User-Agent": self.config.user_agent},
            )
        except HTTPError as e:
            logger.warning("Failed to fetch robots.txt, allowing", url=robots_url, error=str(e))
            return None, False

        if response.status_code in MISSING_STATUSES:
            logger.debug("No robots.txt found", url=robots_url, status=response.status_code)
            return ParsedRobots(), True

        if response.status_code != 200:
            logger.warning("Unexpected robots.txt status, allowing", url=robots_url, status=response.status_code)
            return None, False

        if len(response.content) > MAX_ROBOTS_SIZE:
            logger.warning("robots.txt is larger than 1MB, skipping", url=robots_url)
            return None, False

        return parse_robots_txt(response.text), True

    def _prune_locks(self) -> None:
        # A held lock belongs to a fetch in progress
        for host in [h for h, lock in self._locks.items() if h not in self._cache and not lock.locked()]:
            del self._locks[host]

    def clear_cache(self) -> None:
        cleared = len(self._cache)
        self._cache.clear()
        self._prune_locks()
        logger.info("robots.txt cache cleared", entries=cleared)

    def cleanup_expired(self) -> int:
        """Drop stale cache entries and return how many were removed."""
        expired = [host for host in self._cache if self._fresh_entry(host) is None]
        for host in expired:
            del self._cache[host]
        self._prune_locks()
        if expired:
            logger.debug("Expired robots.txt entries removed", count=len(expired))
        return len(expired)

    def get_cache_info(self) -> List[Dict[str, object]]:
        now = self._clock()
        return [
            {
                "host": host,
                "url": entry.url,
                "fetched_at": entry.fetched_at,
                "age_seconds": round(now - entry.fetched_at, 3),
                "access_count": entry.access_count,
                "error_count": entry.error_count,
            }
            for host, entry in self._cache.items()
        ]

    def get_domain_stats(self) -> Dict[str, Dict[str, int]]:
        return {host: {"checked": s.checked, "blocked": s.blocked} for host, s in self._domain_stats.items()}

    async def close(self) -> None:
        """Closes the underlying HTTP client if it was created internally."""
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()


def _split_url(url: str) -> Optional[Tuple[str, str]]:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return None
    if not parsed.host:
        return None
    return parsed.host, parsed.path or "/"
