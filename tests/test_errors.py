"""Tests for error classification."""

import httpx

from hm_crawler.errors import (
    BlockingError,
    ErrorType,
    ParsingError,
    PermanentURLError,
    RateLimitError,
    Severity,
    classify_error,
)


def test_typed_errors_map_directly():
    classified = classify_error(RateLimitError("HTTP 429", retry_after=12))
    assert classified.error_type == ErrorType.RATE_LIMIT
    assert classified.retryable is True
    assert classified.retry_after == 12

    assert classify_error(BlockingError("captcha")).severity == Severity.CRITICAL
    assert classify_error(ParsingError("bad payload")).retryable is False
    assert classify_error(PermanentURLError("HTTP 404")).retryable is False


def test_transport_errors_are_network():
    classified = classify_error(httpx.ConnectTimeout("connect timed out"))
    assert classified.error_type == ErrorType.NETWORK
    assert classified.retryable is True


def test_keyword_rules():
    assert classify_error(RuntimeError("ECONNRESET while reading")).error_type == ErrorType.NETWORK
    assert classify_error(RuntimeError("Too Many Requests")).error_type == ErrorType.RATE_LIMIT
    assert classify_error(RuntimeError("Request blocked by captcha")).error_type == ErrorType.BLOCKING
    assert classify_error(ValueError("malformed payload")).error_type == ErrorType.PARSING
    assert classify_error(KeyError("required field price")).error_type == ErrorType.VALIDATION


def test_unknown_errors_are_retryable():
    classified = classify_error(RuntimeError("something odd"))
    assert classified.error_type == ErrorType.UNKNOWN
    assert classified.retryable is True
