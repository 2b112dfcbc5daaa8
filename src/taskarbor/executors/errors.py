"""Classification of executor failure text."""

from __future__ import annotations

POLICY_BLOCK_PATTERNS: tuple[str, ...] = (
    "blocked by policy",
    "read-only sandbox",
    "approval_policy",
    "requires approval",
    "permission required",
)

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "usage limit",
    "quota",
    "429",
    "too many requests",
)

TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "network",
    "temporarily unavailable",
    "connection refused",
    "503",
    "502",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_policy_block(text: str) -> bool:
    """Return ``True`` when a failure needs a human, not a retry."""
    if not text:
        return False
    return _contains_any(text, POLICY_BLOCK_PATTERNS)


def looks_like_rate_limit(text: str) -> bool:
    if not text:
        return False
    return _contains_any(text, RATE_LIMIT_PATTERNS)


def looks_transient(text: str) -> bool:
    """Return ``True`` for infrastructural failures likely to pass on retry."""
    if not text:
        return False
    return looks_like_rate_limit(text) or _contains_any(text, TRANSIENT_PATTERNS)


def failure_class(text: str) -> str:
    """Short label recorded in the execution log: policy, rate_limit, transient or task."""
    if looks_like_policy_block(text):
        return "policy"
    if looks_like_rate_limit(text):
        return "rate_limit"
    if looks_transient(text):
        return "transient"
    return "task"
