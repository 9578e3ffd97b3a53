"""Error taxonomy for the crawler and classification of arbitrary failures."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorType(str, Enum):
    """Failure classes driving retry and backoff decisions."""
    NETWORK = "network"
    PARSING = "parsing"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    BLOCKING = "blocking"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ScrapingError(RuntimeError):
    """Base class for crawl failures."""

    error_type: ErrorType = ErrorType.UNKNOWN
    retryable: bool = True
    severity: Severity = Severity.MEDIUM

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class NetworkError(ScrapingError):
    """Transport failure or transient server error."""
    error_type = ErrorType.NETWORK
    retryable = True
    severity = Severity.MEDIUM


class ParsingError(ScrapingError):
    """Payload structure could not be parsed. Retrying will not help."""
    error_type = ErrorType.PARSING
    retryable = False
    severity = Severity.MEDIUM


class ValidationError(ScrapingError):
    """A record is missing required fields or holds out-of-range values."""
    error_type = ErrorType.VALIDATION
    retryable = False
    severity = Severity.LOW


class RateLimitError(ScrapingError):
    """The site asked us to slow down (429)."""
    error_type = ErrorType.RATE_LIMIT
    retryable = True
    severity = Severity.HIGH

    def __init__(
        self,
        message: str = "Rate limited",
        retry_after: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.retry_after = retry_after


class BlockingError(ScrapingError):
    """Access was blocked (403, captcha, bot wall)."""
    error_type = ErrorType.BLOCKING
    retryable = True
    severity = Severity.CRITICAL


class PermanentURLError(ScrapingError):
    """URL is permanently invalid (404/410)."""
    error_type = ErrorType.UNKNOWN
    retryable = False
    severity = Severity.MEDIUM


class ConfigurationError(RuntimeError):
    """Fatal startup misconfiguration, e.g. an unsupported market."""
    pass


@dataclass
class ClassifiedError:
    """Normalized view of any exception raised while crawling."""
    error_type: ErrorType
    message: str
    retryable: bool
    severity: Severity
    retry_after: Optional[int] = None
    context: dict[str, Any] = field(default_factory=dict)


# Checked in order; first match wins
_KEYWORD_RULES: list[tuple[tuple[str, ...], ErrorType, bool, Severity]] = [
    (("timeout", "econnreset", "connection reset", "connection refused"),
     ErrorType.NETWORK, True, Severity.MEDIUM),
    (("rate limit", "too many requests", "429"),
     ErrorType.RATE_LIMIT, True, Severity.HIGH),
    (("blocked", "captcha", "access denied", "forbidden", "403"),
     ErrorType.BLOCKING, True, Severity.CRITICAL),
    (("parse", "json", "invalid", "malformed"),
     ErrorType.PARSING, False, Severity.MEDIUM),
    (("validation", "required", "missing"),
     ErrorType.VALIDATION, False, Severity.LOW),
]

_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.TransportError,
)


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Classify an exception into the crawler's failure taxonomy.

    Typed crawler errors map directly; httpx transport errors are network
    failures; anything else falls back to keyword matching on the message.
    Unrecognized errors are treated as retryable.
    """
    message = str(error) or error.__class__.__name__

    if isinstance(error, ScrapingError):
        return ClassifiedError(
            error_type=error.error_type,
            message=message,
            retryable=error.retryable,
            severity=error.severity,
            retry_after=getattr(error, "retry_after", None),
            context=dict(error.context),
        )

    if isinstance(error, _TRANSPORT_ERRORS):
        return ClassifiedError(ErrorType.NETWORK, message, True, Severity.MEDIUM)

    lowered = message.lower()
    for keywords, error_type, retryable, severity in _KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            return ClassifiedError(error_type, message, retryable, severity)

    return ClassifiedError(ErrorType.UNKNOWN, message, True, Severity.MEDIUM)
