"""
Unit tests for the crawl account pool.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from crawlplane.config import AccountPoolConfig
from crawlplane.crawler.account_pool import AccountPool
from crawlplane.errors import AccountNotFoundError, InvalidAccountTransition
from crawlplane.protocols import Account, AccountStatus, ReviewReason


@pytest.fixture
def pool(account_config, clock):
    return AccountPool(account_config, clock=clock)


@pytest.mark.unit
class TestAccountSelection:
    def test_empty_pool_returns_none(self, pool):
        assert pool.get_available_account() is None

    def test_only_active_accounts_issued(self, pool):
        pool.register_account(Account(id=1, status=AccountStatus.RESTRICTED))
        pool.register_account(Account(id=2, status=AccountStatus.EXPIRED))
        pool.register_account(Account(id=3, status=AccountStatus.BANNED))
        assert pool.get_available_account() is None

        pool.add_account(4)
        assert pool.get_available_account().id == 4

    def test_priority_then_health(self, pool):
        pool.register_account(Account(id=1, priority=0, health_score=100))
        pool.register_account(Account(id=2, priority=5, health_score=50))
        pool.register_account(Account(id=3, priority=5, health_score=80))

        assert pool.get_available_account().id == 3

    def test_least_recently_used_rotation(self, pool, clock):
        pool.add_account(1)
        pool.add_account(2)

        first = pool.get_available_account().id
        clock.advance(1)
        second = pool.get_available_account().id
        clock.advance(1)
        third = pool.get_available_account().id

        assert {first, second} == {1, 2}
        assert third == first

    def test_issue_updates_usage(self, pool, clock):
        pool.add_account(1)

        issued = pool.get_available_account()

        assert issued.usage_count == 1
        assert issued.last_used_at == clock()

    def test_returned_account_is_snapshot(self, pool):
        pool.add_account(1)
        issued = pool.get_available_account()

        issued.status = AccountStatus.BANNED
        issued.health_score = 0

        stored = pool.get_account(1)
        assert stored.status is AccountStatus.ACTIVE
        assert stored.health_score == 100

        pool.record_account_failure(1)
        assert issued.consecutive_failures == 0

    def test_registered_account_is_copied(self, pool):
        account = Account(id=1)
        pool.register_account(account)
        account.status = AccountStatus.BANNED

        assert pool.get_account(1).status is AccountStatus.ACTIVE

    def test_usage_cap_triggers_cooldown(self, clock):
        pool = AccountPool(AccountPoolConfig(max_usage_per_account=2, cooldown_seconds=30), clock=clock)
        pool.add_account(1)

        assert pool.get_available_account() is not None
        assert pool.get_available_account() is not None
        assert pool.get_available_account() is None

        clock.advance(30)
        assert pool.get_available_account().id == 1

    def test_concurrent_issue_respects_usage_cap(self, clock):
        pool = AccountPool(AccountPoolConfig(max_usage_per_account=1), clock=clock)
        for account_id in range(5):
            pool.add_account(account_id)

        with ThreadPoolExecutor(max_workers=8) as executor:
            issued = list(executor.map(lambda _: pool.get_available_account(), range(20)))

        ids = [account.id for account in issued if account is not None]
        assert sorted(ids) == [0, 1, 2, 3, 4]


@pytest.mark.unit
class TestAccountHealth:
    def test_success_rewards_and_caps_health(self, clock):
        pool = AccountPool(AccountPoolConfig(initial_health_score=99.5, success_reward=1.0), clock=clock)
        pool.add_account(1)

        pool.record_account_success(1)
        pool.record_account_success(1)

        account = pool.get_account(1)
        assert account.health_score == 100
        assert account.total_successes == 2

    def test_failure_penalises_and_cools_down(self, pool, clock):
        pool.add_account(1)

        pool.record_account_failure(1)

        account = pool.get_account(1)
        assert account.health_score == 90
        assert account.consecutive_failures == 1
        assert account.cooldown_until == clock() + 60
        assert pool.get_available_account() is None

        clock.advance(60)
        assert pool.get_available_account().id == 1

    def test_health_never_negative(self, clock):
        pool = AccountPool(AccountPoolConfig(failure_penalty=70, failure_threshold=10), clock=clock)
        pool.add_account(1)

        pool.record_account_failure(1)
        pool.record_account_failure(1)

        assert pool.get_account(1).health_score == 0

    def test_success_resets_consecutive_failures(self, pool):
        pool.add_account(1)
        pool.record_account_failure(1)
        pool.record_account_failure(1)

        pool.record_account_success(1)

        assert pool.get_account(1).consecutive_failures == 0
        assert pool.get_account(1).total_failures == 2

    def test_failure_threshold_restricts(self, pool):
        pool.add_account(1)

        for _ in range(3):
            pool.record_account_failure(1)

        assert pool.get_account(1).status is AccountStatus.RESTRICTED

    def test_failures_never_ban(self, pool):
        pool.add_account(1)

        for _ in range(20):
            pool.record_account_failure(1)

        account = pool.get_account(1)
        assert account.status is AccountStatus.RESTRICTED
        assert account.health_score == 0

    def test_unknown_account(self, pool):
        with pytest.raises(AccountNotFoundError):
            pool.record_account_success(42)
        with pytest.raises(KeyError):
            pool.get_account(42)


@pytest.mark.unit
class TestAccountLifecycle:
    @pytest.mark.parametrize(
        "reason,expected",
        [
            (ReviewReason.UNAUTHORIZED, AccountStatus.EXPIRED),
            (ReviewReason.NOT_LOGGED_IN, AccountStatus.EXPIRED),
            (ReviewReason.CREDENTIAL_EXPIRED, AccountStatus.EXPIRED),
            (ReviewReason.FORBIDDEN, AccountStatus.RESTRICTED),
        ],
    )
    def test_review_reason_mapping(self, pool, reason, expected):
        pool.add_account(1)

        pool.mark_account_needs_review(1, reason)

        account = pool.get_account(1)
        assert account.status is expected
        assert account.review_reason is reason

    def test_review_applies_regardless_of_health(self, pool):
        pool.register_account(Account(id=1, health_score=100))

        pool.mark_account_needs_review(1, ReviewReason.UNAUTHORIZED)

        assert pool.get_account(1).status is AccountStatus.EXPIRED

    def test_review_keeps_terminal_status(self, pool):
        pool.register_account(Account(id=1, status=AccountStatus.BANNED))
        pool.register_account(Account(id=2, status=AccountStatus.EXPIRED))

        pool.mark_account_needs_review(1, ReviewReason.UNAUTHORIZED)
        pool.mark_account_needs_review(2, ReviewReason.FORBIDDEN)

        assert pool.get_account(1).status is AccountStatus.BANNED
        assert pool.get_account(2).status is AccountStatus.EXPIRED

    def test_restricted_can_expire(self, pool):
        pool.register_account(Account(id=1, status=AccountStatus.RESTRICTED))

        pool.mark_account_needs_review(1, ReviewReason.NOT_LOGGED_IN)

        assert pool.get_account(1).status is AccountStatus.EXPIRED

    def test_reactivate_restricted(self, pool, clock):
        pool.add_account(1)
        for _ in range(3):
            pool.record_account_failure(1)

        pool.reactivate_account(1)

        account = pool.get_account(1)
        assert account.status is AccountStatus.ACTIVE
        assert account.consecutive_failures == 0
        assert pool.get_available_account().id == 1

    @pytest.mark.parametrize("status", [AccountStatus.ACTIVE, AccountStatus.EXPIRED, AccountStatus.BANNED])
    def test_reactivate_rejects_other_statuses(self, pool, status):
        pool.register_account(Account(id=1, status=status))

        with pytest.raises(InvalidAccountTransition):
            pool.reactivate_account(1)

    def test_ban(self, pool):
        pool.add_account(1)
        pool.register_account(Account(id=2, status=AccountStatus.RESTRICTED))

        pool.ban_account(1)
        pool.ban_account(1)
        pool.ban_account(2)

        assert pool.get_account(1).status is AccountStatus.BANNED
        assert pool.get_account(2).status is AccountStatus.BANNED

    def test_expired_cannot_be_banned(self, pool):
        pool.register_account(Account(id=1, status=AccountStatus.EXPIRED))

        with pytest.raises(InvalidAccountTransition):
            pool.ban_account(1)

    def test_pool_stats(self, pool):
        pool.add_account(1)
        pool.register_account(Account(id=2, status=AccountStatus.RESTRICTED, health_score=50))

        stats = pool.get_pool_stats()

        assert stats["total"] == 2
        assert stats["available"] == 1
        assert stats["by_status"]["active"] == 1
        assert stats["by_status"]["restricted"] == 1
        assert stats["average_health"] == 75
