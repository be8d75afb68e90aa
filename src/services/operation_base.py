"""
Base class for bulk operation services.

Each bulk operation (writing-program discovery + analysis, blog analysis)
extends this to provide consistent execution, cost tracking, and persistence.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional
import logging
import time
import uuid

from src.common.repositories import (
    OperationRunsRepositoryInterface,
    get_operation_runs_repository,
)

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Result from a bulk operation execution."""

    success: bool
    run_id: str
    operation: str
    data: Dict[str, Any]
    cost_usd: float
    duration_ms: int
    error: Optional[str] = None
    item_count: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "run_id": self.run_id,
            "operation": self.operation,
            "data": self.data,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "item_count": self.item_count,
            "timestamp": self.timestamp.isoformat(),
        }


class OperationService(ABC):
    """Base class for bulk operations over companies."""

    operation_name: str  # Override in subclass

    @abstractmethod
    async def execute(
        self,
        companies: List[Dict[str, Any]],
        **kwargs,
    ) -> OperationResult:
        """
        Execute the operation. Override in subclass.

        Args:
            companies: Company documents to process
            **kwargs: Operation-specific arguments

        Returns:
            OperationResult with success status, data, and cost info
        """
        pass

    def create_run_id(self) -> str:
        """
        Generate unique run ID for tracking.

        Returns:
            Unique run ID string in format "op_{operation}_{random_hex}"
        """
        return f"op_{self.operation_name}_{uuid.uuid4().hex[:12]}"

    def create_success_result(
        self,
        run_id: str,
        data: Dict[str, Any],
        cost_usd: float,
        duration_ms: int,
        item_count: int = 0,
    ) -> OperationResult:
        """Create a successful operation result."""
        return OperationResult(
            success=True,
            run_id=run_id,
            operation=self.operation_name,
            data=data,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            error=None,
            item_count=item_count,
        )

    def create_error_result(
        self,
        run_id: str,
        error: str,
        duration_ms: int,
        cost_usd: float = 0.0,
        data: Optional[Dict[str, Any]] = None,
        item_count: int = 0,
    ) -> OperationResult:
        """
        Create a failed operation result.

        Args:
            run_id: The operation run ID
            error: Error message
            duration_ms: Duration in milliseconds
            cost_usd: Cost in USD (may be non-zero if the failure came after paid calls)
            data: Partial results gathered before the failure
            item_count: Number of items submitted

        Returns:
            OperationResult with success=False
        """
        return OperationResult(
            success=False,
            run_id=run_id,
            operation=self.operation_name,
            data=data or {},
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            error=error,
            item_count=item_count,
        )

    def persist_run(
        self,
        result: OperationResult,
        repository: Optional[OperationRunsRepositoryInterface] = None,
    ) -> bool:
        """
        Persist operation run details to MongoDB for tracking.

        Args:
            result: The OperationResult from execution
            repository: Optional repository. If not provided,
                        uses the global operation runs repository.

        Returns:
            True if persisted successfully, False otherwise
        """
        try:
            repo = repository or get_operation_runs_repository()
            summary = result.data.get("summary", {})
            repo.insert_one({
                "run_id": result.run_id,
                "operation": result.operation,
                "success": result.success,
                "item_count": result.item_count,
                "summary": summary,
                "cost_usd": result.cost_usd,
                "duration_ms": result.duration_ms,
                "error": result.error,
                "timestamp": result.timestamp,
                "created_at": datetime.utcnow(),
            })
            logger.info(
                f"Persisted operation run: {result.run_id} "
                f"({result.operation}, success={result.success})"
            )
            return True

        except Exception as e:
            logger.error(f"Failed to persist operation run: {e}")
            return False

    @contextmanager
    def timed_execution(self) -> Generator["OperationTimer", None, None]:
        """
        Context manager for timing operation execution.

        Usage:
            with self.timed_execution() as timer:
                # do work
                pass
            duration_ms = timer.duration_ms
        """
        timer = OperationTimer()
        try:
            yield timer
        finally:
            timer.stop()


@dataclass
class OperationTimer:
    """Timer utility for tracking operation duration."""

    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None

    @property
    def duration_ms(self) -> int:
        """Duration in milliseconds (elapsed so far if not stopped)."""
        if self.end_time is None:
            return int((time.perf_counter() - self.start_time) * 1000)
        return int((self.end_time - self.start_time) * 1000)

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000.0

    def stop(self) -> int:
        """Stop the timer and return duration in milliseconds."""
        self.end_time = time.perf_counter()
        return self.duration_ms
