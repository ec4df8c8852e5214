"""
Exception hierarchy for crawlplane.
"""

from __future__ import annotations


class CrawlPlaneError(Exception):
    """Base class for all crawlplane errors."""


class RetryableError(CrawlPlaneError):
    """Marks a collaborator failure as transient; the message will be requeued."""


class AccountNotFoundError(CrawlPlaneError, KeyError):
    """Raised when an account id is not registered in the pool."""

    def __init__(self, account_id: int):
        super().__init__(account_id)
        self.account_id = account_id

    def __str__(self) -> str:
        return f"Account {self.account_id} is not registered"


class InvalidAccountTransition(CrawlPlaneError):
    """Raised for a status change the account state machine does not allow."""


class DeliveryAlreadySettledError(CrawlPlaneError):
    """Raised when a delivery is acknowledged or rejected a second time."""
