"""Classification of analysis worker failures.

An analysis report counts as failed when it is the missing-output sentinel
or an ``[Error <partition>: ...]`` annotation. Failed reports are bucketed
by keyword heuristics so an aborted review can say why every worker failed.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable
from enum import StrEnum

MISSING_OUTPUT_SENTINEL = "[missing worker output]"
_SENTINEL_PHRASE = "missing worker output"
_ERROR_PREFIX_RE = re.compile(r"^\s*\[Error\b", re.IGNORECASE)
_RETRY_AFTER_RE = re.compile(r"retry[- ]after[:\s]+(\d+)", re.IGNORECASE)


class FailureReason(StrEnum):
    AUTH = "auth_failure"
    RATE_OR_TIMEOUT = "rate_or_timeout"
    CLI_EXIT = "cli_nonzero_exit"
    EMPTY_OUTPUT = "empty_output"
    UNKNOWN = "unknown"


_KEYWORDS: tuple[tuple[FailureReason, tuple[str, ...]], ...] = (
    (
        FailureReason.AUTH,
        ("not authenticated", "unauthorized", "authentication", "401", "403", "api key", "login"),
    ),
    (
        FailureReason.RATE_OR_TIMEOUT,
        (
            "rate limit",
            "too many requests",
            "429",
            "quota",
            "insufficient",
            "credit",
            "billing",
            "timeout",
            "timed out",
        ),
    ),
    (
        FailureReason.CLI_EXIT,
        ("exit code", "exited with", "non-zero", "terminated", "not found"),
    ),
)


def classify_report(report: str) -> FailureReason | None:
    """Return why a report failed, or None for a usable report."""
    stripped = report.strip()
    if not stripped or _SENTINEL_PHRASE in stripped.lower():
        return FailureReason.EMPTY_OUTPUT
    if not _ERROR_PREFIX_RE.match(stripped):
        return None

    lowered = stripped.lower()
    for reason, keywords in _KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return reason
    return FailureReason.UNKNOWN


def failure_breakdown(reports: Iterable[str]) -> dict[str, int]:
    """Count failed reports per reason, keyed by the reason's value."""
    counts: Counter[str] = Counter()
    for report in reports:
        reason = classify_report(report)
        if reason is not None:
            counts[reason.value] += 1
    return dict(counts)


def format_breakdown(breakdown: dict[str, int]) -> str:
    inner = ", ".join(f"{reason}: {count}" for reason, count in sorted(breakdown.items()))
    return "{" + inner + "}"


def retry_after_seconds(message: str) -> int | None:
    """Extract a ``retry-after`` hint in seconds from an error message."""
    match = _RETRY_AFTER_RE.search(message)
    return int(match.group(1)) if match else None


__all__ = [
    "MISSING_OUTPUT_SENTINEL",
    "FailureReason",
    "classify_report",
    "failure_breakdown",
    "format_breakdown",
    "retry_after_seconds",
]
