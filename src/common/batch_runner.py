"""
Batch Operation Runner - bounded-concurrency bulk execution with retry.

Runs one asynchronous operation over many work items:
1. Items are split into consecutive batches of `batch_size` (input order kept)
2. Every item in a batch is marked pending, then the whole batch runs
   concurrently; the next batch starts only when all items have finished
3. Failed attempts are retried with linear backoff
   (delay before retry k = retry_delay_ms * k) via tenacity
4. A short pause separates batches so the hosted functions are not flooded

Every submitted item ends with exactly one BatchResult, success or error.
Item failures are isolated; run() never raises because some items failed.

Operations are retried blindly, so they must be safe to repeat (the
bulk call sites only read remote data or overwrite a single analysis).

Usage:
    runner = BatchOperationRunner(BatchOptions(batch_size=5, max_retries=2))
    results = await runner.run(
        [WorkItem("company-1", "example.com")],
        client.find_writing_program,
        on_progress=tracker,
        phase=ProgressPhase.FINDING,
    )
"""

import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from src.common.cancellation import CancellationToken
from src.common.config import Config
from src.common.error_handling import (
    OperationCancelledError,
    PermanentItemError,
    describe_error,
)
from src.common.progress import (
    ProgressCallback,
    ProgressEvent,
    ProgressPhase,
    ProgressStatus,
    emit_progress,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[Any], Union[Awaitable[T], T]]
SleepFn = Callable[[float], Awaitable[None]]

DEFAULT_FAILURE_MESSAGE = "Operation failed"
NOT_STARTED_MESSAGE = "Cancelled before processing started"


@dataclass(frozen=True)
class WorkItem:
    """One unit of work: an identifier plus the operation's input."""
    item_id: str
    payload: Any


@dataclass
class BatchOptions:
    """Tuning for a bulk run."""
    batch_size: int = 5
    max_retries: int = 2  # 3 attempts in total
    retry_delay_ms: int = 2000
    inter_batch_delay_ms: int = 1000

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative, got {self.max_retries}")
        if self.retry_delay_ms < 0 or self.inter_batch_delay_ms < 0:
            raise ValueError("Delays cannot be negative")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_config(cls, **overrides) -> "BatchOptions":
        """Build options from Config, with explicit overrides taking priority."""
        values = {
            "batch_size": Config.BULK_BATCH_SIZE,
            "max_retries": Config.BULK_MAX_RETRIES,
            "retry_delay_ms": Config.BULK_RETRY_DELAY_MS,
            "inter_batch_delay_ms": Config.BULK_INTER_BATCH_DELAY_MS,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class BatchResult(Generic[T]):
    """Terminal outcome for one work item."""
    item_id: str
    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    attempts: int = 0
    cost_usd: Optional[float] = None
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "success": self.success,
            "error": self.error,
            "attempts": self.attempts,
            "cost_usd": self.cost_usd,
            "cancelled": self.cancelled,
        }


def chunk_items(items: Sequence[T], size: int) -> List[List[T]]:
    """Split a sequence into consecutive chunks of at most `size` items."""
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def total_cost(results: Iterable[BatchResult]) -> float:
    """Sum the reported cost of a run's results."""
    return sum(r.cost_usd or 0.0 for r in results)


def summarize_results(results: Dict[str, BatchResult]) -> Dict[str, int]:
    """Count succeeded, failed and cancelled results."""
    succeeded = sum(1 for r in results.values() if r.success)
    cancelled = sum(1 for r in results.values() if r.cancelled)
    return {
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "cancelled": cancelled,
    }


def _is_retryable(error: BaseException) -> bool:
    # asyncio.CancelledError is a BaseException and must propagate, not retry
    return isinstance(error, Exception) and not isinstance(
        error, (PermanentItemError, OperationCancelledError)
    )


async def _invoke(operation: Operation, payload: Any) -> Any:
    """Call an operation that may be async or plain."""
    outcome = operation(payload)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def _read_value(reader: Optional[Callable[[Any], Any]], value: Any, label: str) -> Any:
    """Apply a caller-supplied reader to a success value; reader errors are logged."""
    if reader is None:
        return None
    try:
        return reader(value)
    except Exception as e:
        logger.warning(f"{label} failed: {e}")
        return None


class BatchOperationRunner:
    """
    Executes an operation over work items in sequential, fixed-size batches.

    At most `batch_size` operation calls are in flight at any time.
    """

    def __init__(
        self,
        options: Optional[BatchOptions] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        """
        Args:
            options: Batch tuning (defaults from Config)
            sleep: Sleep implementation used for backoff and batch pauses
        """
        self.options = options or BatchOptions.from_config()
        self._sleep = sleep

    async def run(
        self,
        items: Iterable[WorkItem],
        operation: Operation,
        on_progress: Optional[ProgressCallback] = None,
        phase: ProgressPhase = ProgressPhase.FINDING,
        cancel_token: Optional[CancellationToken] = None,
        cost_extractor: Optional[Callable[[Any], Optional[float]]] = None,
        success_message: Optional[Callable[[Any], Optional[str]]] = None,
    ) -> Dict[str, BatchResult]:
        """
        Run `operation` over every item.

        Args:
            items: Work items; identifiers must be unique
            operation: Callable taking an item's payload; may be async
            on_progress: Receives a ProgressEvent per state change
            phase: Phase tag for emitted events
            cancel_token: Optional cancellation signal
            cost_extractor: Reads a cost figure from a success value
            success_message: Builds the success event message from a value

        Returns:
            Dict of item_id -> BatchResult, in input order

        Raises:
            ValueError: If two items share an identifier
        """
        items = list(items)
        if not items:
            return {}

        duplicates = [i for i, n in Counter(item.item_id for item in items).items() if n > 1]
        if duplicates:
            raise ValueError(f"Duplicate work item ids: {', '.join(sorted(duplicates))}")

        batches = chunk_items(items, self.options.batch_size)
        results: Dict[str, BatchResult] = {}
        logger.info(
            f"[{phase.value}] Processing {len(items)} items in {len(batches)} batches "
            f"(batch_size={self.options.batch_size}, max_retries={self.options.max_retries})"
        )

        for index, batch in enumerate(batches):
            if cancel_token is not None and cancel_token.cancelled:
                remaining = [item for b in batches[index:] for item in b]
                self._record_not_started(remaining, results, on_progress, phase, cancel_token)
                break

            logger.debug(f"[{phase.value}] Batch {index + 1}/{len(batches)}: {[i.item_id for i in batch]}")
            for item in batch:
                emit_progress(
                    on_progress,
                    ProgressEvent(item.item_id, phase, ProgressStatus.PENDING),
                    logger,
                )

            outcomes = await asyncio.gather(*(
                self._run_item(item, operation, on_progress, phase, cancel_token,
                               cost_extractor, success_message)
                for item in batch
            ))
            for outcome in outcomes:
                results[outcome.item_id] = outcome

            if index < len(batches) - 1:
                try:
                    await self._pause(self.options.inter_batch_delay_ms / 1000, cancel_token)
                except OperationCancelledError:
                    # Remaining batches are recorded at the top of the next iteration
                    logger.info(f"[{phase.value}] Cancelled after batch {index + 1}/{len(batches)}")

        summary = summarize_results(results)
        logger.info(
            f"[{phase.value}] Complete: {summary['succeeded']} succeeded, "
            f"{summary['failed']} failed ({summary['cancelled']} cancelled)"
        )
        return {item.item_id: results[item.item_id] for item in items}

    async def _pause(self, seconds: float, cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is None:
            await self._sleep(seconds)
        else:
            await cancel_token.sleep(seconds, self._sleep)

    def _retrying(self, item: WorkItem, phase: ProgressPhase,
                  cancel_token: Optional[CancellationToken]) -> AsyncRetrying:
        delay_seconds = self.options.retry_delay_ms / 1000

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"[{phase.value}] Attempt {retry_state.attempt_number} failed for "
                f"{item.item_id}: {error}. Retrying in {wait:.1f}s"
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.options.max_attempts),
            wait=wait_incrementing(start=delay_seconds, increment=delay_seconds),
            retry=retry_if_exception(_is_retryable),
            sleep=lambda seconds: self._pause(seconds, cancel_token),
            before_sleep=log_retry,
            reraise=True,
        )

    async def _run_item(
        self,
        item: WorkItem,
        operation: Operation,
        on_progress: Optional[ProgressCallback],
        phase: ProgressPhase,
        cancel_token: Optional[CancellationToken],
        cost_extractor: Optional[Callable[[Any], Optional[float]]],
        success_message: Optional[Callable[[Any], Optional[str]]],
    ) -> BatchResult:
        attempts = 0
        value = None

        try:
            async for attempt in self._retrying(item, phase, cancel_token):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled()
                    value = await _invoke(operation, item.payload)
        except OperationCancelledError as e:
            result = BatchResult(
                item_id=item.item_id,
                success=False,
                error=e.reason,
                attempts=attempts,
                cancelled=True,
            )
            emit_progress(
                on_progress,
                ProgressEvent(item.item_id, phase, ProgressStatus.ERROR, result.error),
                logger,
            )
            return result
        except Exception as e:
            message = describe_error(e, DEFAULT_FAILURE_MESSAGE)
            logger.error(f"[{phase.value}] {item.item_id} failed after {attempts} attempt(s): {message}")
            emit_progress(
                on_progress,
                ProgressEvent(item.item_id, phase, ProgressStatus.ERROR, message),
                logger,
            )
            return BatchResult(item_id=item.item_id, success=False, error=message, attempts=attempts)

        cost = _read_value(cost_extractor, value, "cost extractor")
        message = _read_value(success_message, value, "success message")
        emit_progress(
            on_progress,
            ProgressEvent(item.item_id, phase, ProgressStatus.SUCCESS, message, cost),
            logger,
        )
        return BatchResult(
            item_id=item.item_id,
            success=True,
            value=value,
            attempts=attempts,
            cost_usd=cost,
        )

    def _record_not_started(
        self,
        items: List[WorkItem],
        results: Dict[str, BatchResult],
        on_progress: Optional[ProgressCallback],
        phase: ProgressPhase,
        cancel_token: CancellationToken,
    ) -> None:
        reason = cancel_token.reason or NOT_STARTED_MESSAGE
        logger.info(f"[{phase.value}] Cancelled: {len(items)} items not started ({reason})")
        for item in items:
            results[item.item_id] = BatchResult(
                item_id=item.item_id,
                success=False,
                error=f"{NOT_STARTED_MESSAGE}: {reason}",
                cancelled=True,
            )
            emit_progress(
                on_progress,
                ProgressEvent(item.item_id, phase, ProgressStatus.ERROR, results[item.item_id].error),
                logger,
            )
