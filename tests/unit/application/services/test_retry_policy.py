"""Tests for RetryPolicy classification, backoff and in-place retries."""

import random
from datetime import UTC, datetime, timedelta

import pytest

from syncabull.application.services.retry_policy import RetryAction, RetryPolicy
from syncabull.domain.entities import SyncErrorCode
from syncabull.domain.exceptions import (
    AuthError,
    DatabaseError,
    DownloadInterrupted,
    NetworkError,
    NotFound,
    RateLimited,
    ReauthorizationRequired,
    StorageError,
    ValidationException,
    VerificationError,
)


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=4, base_delay=1.0, max_delay=30.0, rng=random.Random(42))


class TestClassify:
    """Exception -> SyncErrorCode."""

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (NotFound("gone"), SyncErrorCode.NOT_FOUND),
            (AuthError("401 after refresh"), SyncErrorCode.AUTH_ERROR),
            (ReauthorizationRequired(), SyncErrorCode.REAUTH_REQUIRED),
            (StorageError("disk full"), SyncErrorCode.STORAGE_ERROR),
            (VerificationError(expected=10, actual=7), SyncErrorCode.SIZE_MISMATCH),
            (ValidationException("both metadata"), SyncErrorCode.INVALID_ITEM),
            (RateLimited(retry_after=3), SyncErrorCode.RATE_LIMITED),
            (NetworkError("slow", is_timeout=True), SyncErrorCode.TIMEOUT),
            (NetworkError("bad gateway", http_status=502), SyncErrorCode.SERVER_ERROR),
            (NetworkError("connection reset"), SyncErrorCode.NETWORK_ERROR),
            (TimeoutError(), SyncErrorCode.TIMEOUT),
            (ConnectionResetError(), SyncErrorCode.NETWORK_ERROR),
            (DatabaseError("locked"), SyncErrorCode.DATABASE_ERROR),
            (DownloadInterrupted(), SyncErrorCode.INTERRUPTED),
            (RuntimeError("surprise"), SyncErrorCode.UNKNOWN),
        ],
    )
    def test_classify(self, policy: RetryPolicy, error: Exception, code: str) -> None:
        assert policy.classify(error) == code


class TestBackoff:
    """Exponential backoff with equal jitter."""

    def test_backoff_stays_within_jitter_bounds(self, policy: RetryPolicy) -> None:
        for attempt, raw in [(1, 1.0), (2, 2.0), (3, 4.0), (4, 8.0)]:
            delay = policy.backoff(attempt)
            assert raw * 0.5 <= delay <= raw

    def test_backoff_is_capped(self, policy: RetryPolicy) -> None:
        assert policy.backoff(50) <= 30.0
        assert policy.backoff(10_000) <= 30.0

    def test_zero_base_means_no_delay(self) -> None:
        assert RetryPolicy(base_delay=0.0, max_delay=0.0).backoff(3) == 0.0


class TestDecide:
    """Retry / give up / defer decisions."""

    def test_transient_error_is_retried(self, policy: RetryPolicy) -> None:
        decision = policy.decide(NetworkError("reset"), attempts_made=1)
        assert decision.action is RetryAction.RETRY
        assert decision.should_retry

    def test_transient_error_gives_up_at_max_attempts(self, policy: RetryPolicy) -> None:
        decision = policy.decide(NetworkError("reset"), attempts_made=4)
        assert decision.action is RetryAction.GIVE_UP
        assert decision.error_code == SyncErrorCode.NETWORK_ERROR

    def test_fatal_error_gives_up_immediately(self, policy: RetryPolicy) -> None:
        decision = policy.decide(NotFound("gone"), attempts_made=1)
        assert decision.action is RetryAction.GIVE_UP

    def test_reauthorization_is_deferred(self, policy: RetryPolicy) -> None:
        decision = policy.decide(ReauthorizationRequired(), attempts_made=1)
        assert decision.action is RetryAction.DEFER

    def test_rate_limit_uses_retry_after(self, policy: RetryPolicy) -> None:
        decision = policy.decide(RateLimited(retry_after=17.0), attempts_made=1)
        assert decision.should_retry
        assert decision.delay_seconds == 17.0

    def test_unknown_error_is_retryable(self, policy: RetryPolicy) -> None:
        assert policy.decide(RuntimeError("?"), attempts_made=1).should_retry


class TestOutcomeFor:
    """Failed download attempt -> AttemptOutcome."""

    def test_retryable_outcome_sets_next_attempt(self, policy: RetryPolicy) -> None:
        now = datetime(2024, 1, 1, tzinfo=UTC)
        outcome = policy.outcome_for(NetworkError("reset"), attempts_made=1, now=now)
        assert not outcome.success
        assert not outcome.terminal
        assert outcome.counts_attempt
        assert now <= outcome.next_attempt_at <= now + timedelta(seconds=1)

    def test_fatal_outcome_is_terminal(self, policy: RetryPolicy) -> None:
        outcome = policy.outcome_for(NotFound("gone"), attempts_made=1)
        assert outcome.terminal
        assert outcome.error_code == SyncErrorCode.NOT_FOUND
        assert outcome.error_message == "gone"

    def test_deferred_outcome_does_not_count(self, policy: RetryPolicy) -> None:
        outcome = policy.outcome_for(ReauthorizationRequired(), attempts_made=1)
        assert not outcome.counts_attempt
        assert not outcome.terminal

    def test_database_error_is_retried_without_counting(self, policy: RetryPolicy) -> None:
        """Test a failing store never exhausts the item, even past max_attempts."""
        now = datetime(2024, 1, 1, tzinfo=UTC)
        outcome = policy.outcome_for(DatabaseError("locked"), attempts_made=9, now=now)
        assert not outcome.counts_attempt
        assert not outcome.terminal
        assert outcome.error_code == SyncErrorCode.DATABASE_ERROR
        assert outcome.next_attempt_at is not None and outcome.next_attempt_at > now

    def test_interrupted_download_is_due_immediately(self, policy: RetryPolicy) -> None:
        now = datetime(2024, 1, 1, tzinfo=UTC)
        outcome = policy.outcome_for(DownloadInterrupted(), attempts_made=1, now=now)
        assert not outcome.counts_attempt
        assert not outcome.terminal
        assert outcome.next_attempt_at == now


class TestRun:
    """In-place retry loop used for page fetches and token refreshes."""

    @pytest.fixture
    def sleeps(self) -> list[float]:
        return []

    @pytest.fixture
    def fast_policy(self, sleeps: list[float]) -> RetryPolicy:
        async def record_sleep(delay: float) -> None:
            sleeps.append(delay)

        return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, sleep=record_sleep)

    async def test_retries_until_success(
        self, fast_policy: RetryPolicy, sleeps: list[float]
    ) -> None:
        calls = 0

        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise NetworkError("reset")
            return "ok"

        assert await fast_policy.run(flaky, what="flaky op") == "ok"
        assert calls == 3
        assert len(sleeps) == 2

    async def test_raises_after_max_attempts(self, fast_policy: RetryPolicy) -> None:
        calls = 0

        async def always_down() -> None:
            nonlocal calls
            calls += 1
            raise NetworkError("down", http_status=503)

        with pytest.raises(NetworkError):
            await fast_policy.run(always_down, what="down op")
        assert calls == 3

    async def test_fatal_error_is_not_retried(
        self, fast_policy: RetryPolicy, sleeps: list[float]
    ) -> None:
        calls = 0

        async def missing() -> None:
            nonlocal calls
            calls += 1
            raise NotFound("gone")

        with pytest.raises(NotFound):
            await fast_policy.run(missing, what="missing op")
        assert calls == 1
        assert sleeps == []
