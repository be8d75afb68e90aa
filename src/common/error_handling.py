"""
Centralized error handling for the bulk operations pipeline.

Provides the exception types the batch runner uses to decide retry
behaviour, plus an error collector for failures that happen around a
run (persistence, callbacks) rather than inside it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


class PermanentItemError(Exception):
    """
    Failure that retrying cannot fix.

    Raised for items that lack required input (e.g. a company with no
    website) or that the remote function rejected outright. The batch
    runner records these after a single attempt.
    """


class OperationCancelledError(Exception):
    """Raised when a cancellation token fires at a wait point."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "Operation cancelled"
        super().__init__(self.reason)


def describe_error(error: Optional[BaseException], fallback: str) -> str:
    """
    Get a human-readable message for a failed attempt.

    Args:
        error: The exception from the last attempt (may be None)
        fallback: Message to use when the error carries no text

    Returns:
        The error's message, or the fallback
    """
    if error is None:
        return fallback
    message = str(error).strip()
    return message or fallback


@dataclass
class PipelineError:
    """
    Structured error information for failures around a bulk run.

    Used for problems the per-item results cannot carry, such as a
    failed database write after a successful analysis.
    """

    item_id: str
    operation: str  # e.g., "persist_analysis", "persist_search_marker"
    message: str
    severity: str = "medium"  # "critical", "high", "medium", "low"
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    exception_type: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "item_id": self.item_id,
            "operation": self.operation,
            "severity": self.severity,
            "message": self.message,
            "timestamp": self.timestamp,
            "exception_type": self.exception_type,
        }


class ErrorCollector:
    """Collects errors during a bulk run for the final report."""

    def __init__(self):
        self.errors: List[PipelineError] = []

    def add_error(
        self,
        item_id: str,
        operation: str,
        message: str,
        severity: str = "medium",
        exception: Optional[BaseException] = None,
    ) -> None:
        """Add an error with parameters."""
        self.errors.append(
            PipelineError(
                item_id=item_id,
                operation=operation,
                message=message,
                severity=severity,
                exception_type=type(exception).__name__ if exception else None,
            )
        )

    def for_item(self, item_id: str) -> List[PipelineError]:
        """Get errors recorded for a single item."""
        return [e for e in self.errors if e.item_id == item_id]

    def get_error_messages(self) -> List[str]:
        """Get list of error messages."""
        return [e.message for e in self.errors]

    def summary(self) -> dict:
        """Get error summary statistics."""
        by_severity = {"critical": 0, "high": 0, "medium": 0, "low": 0}
        for error in self.errors:
            if error.severity in by_severity:
                by_severity[error.severity] += 1
        return {
            "total": len(self.errors),
            "by_severity": by_severity,
            "items": sorted({e.item_id for e in self.errors}),
        }
