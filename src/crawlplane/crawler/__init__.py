"""
crawlplane crawler policy components.

Key Features:
- Sliding-window request monitoring with an adaptive inter-request delay
- robots.txt fetching, parsing and per-host caching (fail-open)
- Crawl account rotation with health scores, cooldowns and review states
- A worker loop that applies all three around an external fetcher
"""

from .account_pool import AccountPool
from .rate_controller import HostRateControllers, RateController, RateWindow, RequestRecord
from .robots_policy import ParsedRobots, RobotsPolicyEngine, RobotsRule, parse_robots_txt
from .worker import CrawlOutcome, CrawlResult, CrawlWorker, is_authentication_failure

__all__ = [
    "AccountPool",
    "CrawlOutcome",
    "CrawlResult",
    "CrawlWorker",
    "HostRateControllers",
    "ParsedRobots",
    "RateController",
    "RateWindow",
    "RequestRecord",
    "RobotsPolicyEngine",
    "RobotsRule",
    "is_authentication_failure",
    "parse_robots_txt",
]
