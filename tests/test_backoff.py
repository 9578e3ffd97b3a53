"""Tests for the retry/backoff policy."""

import random

import pytest

from hm_crawler.errors import ErrorType
from hm_crawler.ingest.backoff import BackoffPolicy


@pytest.fixture
def policy():
    return BackoffPolicy(rng=random.Random(7))


@pytest.mark.parametrize("retry_count", [0, 1, 2, 3])
def test_blocking_delay_bounds(policy, retry_count):
    decision = policy.decide(ErrorType.BLOCKING, retry_count)
    low = 10 * 2 ** retry_count
    assert decision.retry is True
    assert low <= decision.delay <= low * 1.1
    assert decision.rotate_identity is True


def test_delay_capped():
    policy = BackoffPolicy(max_delay=15.0, max_retries=10)
    assert policy.decide(ErrorType.BLOCKING, 5).delay == 15.0


@pytest.mark.parametrize("error_type", [ErrorType.PARSING, ErrorType.VALIDATION])
def test_payload_failures_not_retried(policy, error_type):
    decision = policy.decide(error_type, 0)
    assert decision.retry is False
    assert decision.delay == 0.0


def test_non_retryable_not_retried(policy):
    assert policy.decide(ErrorType.NETWORK, 0, retryable=False).retry is False


def test_gives_up_after_max_retries(policy):
    assert policy.decide(ErrorType.NETWORK, 3).retry is True
    decision = policy.decide(ErrorType.NETWORK, 4)
    assert decision.retry is False
    assert "gave up" in decision.reason


def test_retry_after_honored(policy):
    decision = policy.decide(ErrorType.RATE_LIMIT, 0, retry_after=30)
    assert decision.delay == 30.0
    assert decision.rotate_identity is False

    # Server hint never pushes past the cap
    assert policy.decide(ErrorType.RATE_LIMIT, 0, retry_after=600).delay == policy.max_delay


def test_only_blocking_rotates(policy):
    for error_type in (ErrorType.RATE_LIMIT, ErrorType.NETWORK, ErrorType.UNKNOWN):
        assert policy.decide(error_type, 0).rotate_identity is False


def test_base_delay_ordering():
    policy = BackoffPolicy(jitter=0.0)
    delays = [policy.delay_for(t, 0) for t in (
        ErrorType.BLOCKING, ErrorType.RATE_LIMIT, ErrorType.NETWORK, ErrorType.UNKNOWN,
    )]
    assert delays == [10.0, 5.0, 2.0, 1.0]
    assert policy.delay_for(ErrorType.NETWORK, 2) == 8.0
