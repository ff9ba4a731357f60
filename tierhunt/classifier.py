"""
Error classifier for provisioning command output.

The provisioning command only gives us unstructured text and an exit status.
classify() maps that text onto a closed set of categories using an ordered,
first-match-wins rule table. Order matters: some categories are textual subsets
of others, so the more specific signal must be checked first (a "LimitExceeded"
code must not be read as generic capacity, a 429 must not be read as capacity
even when the message also says "capacity").

Exit code taxonomy (orchestrator contract with its invoker):
    0   success or expected non-error (capacity exhaustion, duplicate)
    1   general / unclassified failure
    2   capacity or rate-limit condition
    3   configuration / authentication failure (operator action required)
    4   network / internal failure that exhausted retries
    124 budget timeout
"""

import re
from enum import Enum
from typing import Callable, Optional


class Classification(str, Enum):
    """Categories a provisioning failure can fall into."""
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    RATE_LIMIT = "RATE_LIMIT"
    CAPACITY = "CAPACITY"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DUPLICATE = "DUPLICATE"
    AUTH = "AUTH"
    CONFIG = "CONFIG"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CAPACITY_ERROR = 2
EXIT_CONFIG_ERROR = 3
EXIT_NETWORK_ERROR = 4
EXIT_TIMEOUT = 124

# Expected outcomes: retrying on the next scheduled run is the right response.
EXPECTED = frozenset({
    Classification.CAPACITY,
    Classification.RATE_LIMIT,
    Classification.LIMIT_EXCEEDED,
    Classification.DUPLICATE,
})

CAPACITY_FAMILY = frozenset({
    Classification.CAPACITY,
    Classification.RATE_LIMIT,
    Classification.LIMIT_EXCEEDED,
})

# Retried locally by the retry policy.
TRANSIENT = frozenset({
    Classification.INTERNAL_ERROR,
    Classification.NETWORK,
})

# No retry, escalate immediately. UNKNOWN needs investigation, so it is fatal.
FATAL = frozenset({
    Classification.AUTH,
    Classification.CONFIG,
    Classification.UNKNOWN,
})

Predicate = Callable[[str], bool]


def _phrases(*phrases: str) -> Predicate:
    """Predicate matching any of the phrases as a substring of lowercased text."""
    lowered = tuple(p.lower() for p in phrases)

    def match(text: str) -> bool:
        return any(p in text for p in lowered)

    return match


def _status_codes(*codes: int) -> Predicate:
    """Predicate matching HTTP status codes as whole words only."""
    pattern = re.compile(r"(?<![\w.])(?:%s)(?!\w|\.\d)" % "|".join(str(c) for c in codes))

    def match(text: str) -> bool:
        return pattern.search(text) is not None

    return match


def _any(*predicates: Predicate) -> Predicate:
    def match(text: str) -> bool:
        return any(p(text) for p in predicates)

    return match


# Ordered rule table. First match wins.
RULES: list[tuple[Predicate, Classification]] = [
    (
        _phrases("limitexceeded", "service limit", "quota exceeded"),
        Classification.LIMIT_EXCEEDED,
    ),
    (
        _any(
            _phrases("too many requests", "toomanyrequests", "rate limit", "throttl"),
            _status_codes(429),
        ),
        Classification.RATE_LIMIT,
    ),
    (
        _phrases(
            "out of host capacity",
            "out of capacity",
            "insufficient capacity",
            "host capacity",
            "capacity",
            "resource unavailable",
        ),
        Classification.CAPACITY,
    ),
    (
        _any(
            _phrases(
                "internalerror",
                "internal error",
                "internal server error",
                "bad gateway",
                "service unavailable",
                "gateway timeout",
            ),
            _status_codes(500, 502, 503, 504),
        ),
        Classification.INTERNAL_ERROR,
    ),
    (
        _phrases("already exists", "duplicate"),
        Classification.DUPLICATE,
    ),
    (
        _any(
            _phrases(
                "notauthenticated",
                "notauthorized",
                "authentication",
                "authorization",
                "unauthorized",
                "forbidden",
            ),
            _status_codes(401, 403),
        ),
        Classification.AUTH,
    ),
    (
        _phrases(
            "network",
            "timeout",
            "timed out",
            "connection",
            "could not resolve",
            "name resolution",
            "unreachable",
        ),
        Classification.NETWORK,
    ),
    (
        _phrases("not found", "notfound", "does not exist", "invalidparameter", "invalid"),
        Classification.CONFIG,
    ),
]


def classify(raw_output: Optional[str]) -> Classification:
    """
    Classify raw provisioning command output.

    Args:
        raw_output: Combined stdout/stderr text of the command

    Returns:
        The first matching Classification, or UNKNOWN
    """
    if not isinstance(raw_output, str) or not raw_output:
        return Classification.UNKNOWN

    text = raw_output.lower()
    for predicate, classification in RULES:
        if predicate(text):
            return classification
    return Classification.UNKNOWN


def is_expected(classification: Optional[Classification]) -> bool:
    return classification in EXPECTED


def is_transient(classification: Optional[Classification]) -> bool:
    return classification in TRANSIENT


def is_fatal(classification: Optional[Classification]) -> bool:
    return classification in FATAL


def exit_code_for(classification: Optional[Classification]) -> int:
    """Map a classification (None meaning success) onto the exit code taxonomy."""
    if classification is None or classification is Classification.DUPLICATE:
        return EXIT_SUCCESS
    if classification in CAPACITY_FAMILY:
        return EXIT_CAPACITY_ERROR
    if classification in (Classification.AUTH, Classification.CONFIG):
        return EXIT_CONFIG_ERROR
    if classification in TRANSIENT:
        return EXIT_NETWORK_ERROR
    return EXIT_GENERAL_ERROR
