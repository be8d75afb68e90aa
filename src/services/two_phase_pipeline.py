"""
Two-Phase Pipeline - discovery, external selection, analysis.

Pattern shared by the bulk analysis features:
1. Discovery: run a remote lookup per item that proposes zero or more
   candidates (e.g. writing-program URLs for a company website)
2. Selection: a person or a policy picks at most one candidate per item
3. Analysis: run the expensive remote analysis only for items that got
   a selection

Items without candidates or without a selection are skipped, not failed.

Per-item state machine:

    not_started -> discovering -> discovered | discovery_failed
    not_started -> discovered                  (preset candidates, e.g. mapped field)
    discovered  -> selected | skipped
    selected    -> analyzing | skipped         (skipped only on cancellation)
    analyzing   -> analyzed | analysis_failed

Terminal states: discovery_failed, analysis_failed, analyzed, skipped.

Usage:
    pipeline = TwoPhasePipeline(
        discover=client.find_writing_program,
        analyze=analyze_selected,
        candidates_of=lambda search: search.candidate_urls(),
    )
    outcome = await pipeline.run(items, selector=select_first_candidate)
    outcome.summary.to_dict()  # {"total": 3, "analyzed": 1, "skipped": 1, "failed": 1, ...}
"""

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from src.common.batch_runner import BatchOperationRunner, BatchResult, Operation, WorkItem
from src.common.cancellation import CancellationToken
from src.common.progress import (
    ProgressCallback,
    ProgressEvent,
    ProgressPhase,
    ProgressStatus,
    emit_progress,
)

logger = logging.getLogger(__name__)


class ItemState(str, Enum):
    NOT_STARTED = "not_started"
    DISCOVERING = "discovering"
    DISCOVERED = "discovered"
    DISCOVERY_FAILED = "discovery_failed"
    SELECTED = "selected"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    ANALYSIS_FAILED = "analysis_failed"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({
    ItemState.DISCOVERY_FAILED,
    ItemState.ANALYSIS_FAILED,
    ItemState.ANALYZED,
    ItemState.SKIPPED,
})

ALLOWED_TRANSITIONS: Dict[ItemState, frozenset] = {
    ItemState.NOT_STARTED: frozenset({ItemState.DISCOVERING, ItemState.DISCOVERED}),
    ItemState.DISCOVERING: frozenset({ItemState.DISCOVERED, ItemState.DISCOVERY_FAILED}),
    ItemState.DISCOVERED: frozenset({ItemState.SELECTED, ItemState.SKIPPED}),
    ItemState.SELECTED: frozenset({ItemState.ANALYZING, ItemState.SKIPPED}),
    ItemState.ANALYZING: frozenset({ItemState.ANALYZED, ItemState.ANALYSIS_FAILED}),
}


class SkipReason(str, Enum):
    NO_CANDIDATES = "no_candidates"
    NOT_SELECTED = "not_selected"
    CANCELLED = "cancelled"


class CandidateSource(str, Enum):
    SEARCHED = "searched"
    MAPPED = "mapped"


class InvalidTransitionError(ValueError):
    """Raised when an item is moved along an edge the state machine does not have."""


@dataclass
class PipelineItem:
    """Everything known about one item as it moves through the pipeline."""
    item_id: str
    payload: Any
    state: ItemState = ItemState.NOT_STARTED
    candidates: List[Any] = field(default_factory=list)
    candidate_source: Optional[CandidateSource] = None
    selected: Optional[Any] = None
    discovery: Optional[BatchResult] = None
    analysis: Optional[BatchResult] = None
    error: Optional[str] = None
    skip_reason: Optional[SkipReason] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: ItemState) -> None:
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransitionError(
                f"{self.item_id}: cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def skip(self, reason: SkipReason) -> None:
        self.transition(ItemState.SKIPPED)
        self.skip_reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "state": self.state.value,
            "candidates": [str(c) for c in self.candidates],
            "candidate_source": self.candidate_source.value if self.candidate_source else None,
            "selected": str(self.selected) if self.selected is not None else None,
            "error": self.error,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
        }


@dataclass(frozen=True)
class AnalysisInput:
    """Payload handed to the analysis operation."""
    item_id: str
    candidate: Any
    payload: Any


@dataclass
class PipelineSummary:
    """Counts shown after a run."""
    total: int
    analyzed: int
    skipped: int
    failed: int
    total_cost: float = 0.0
    skip_reasons: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_items(cls, items: Mapping[str, PipelineItem]) -> "PipelineSummary":
        skip_reasons: Dict[str, int] = {}
        cost = 0.0
        for item in items.values():
            if item.skip_reason:
                skip_reasons[item.skip_reason.value] = skip_reasons.get(item.skip_reason.value, 0) + 1
            for result in (item.discovery, item.analysis):
                if result is not None and result.cost_usd:
                    cost += result.cost_usd
        states = [item.state for item in items.values()]
        return cls(
            total=len(states),
            analyzed=states.count(ItemState.ANALYZED),
            skipped=states.count(ItemState.SKIPPED),
            failed=states.count(ItemState.DISCOVERY_FAILED) + states.count(ItemState.ANALYSIS_FAILED),
            total_cost=cost,
            skip_reasons=skip_reasons,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "analyzed": self.analyzed,
            "skipped": self.skipped,
            "failed": self.failed,
            "total_cost": round(self.total_cost, 6),
            "skip_reasons": dict(self.skip_reasons),
        }


@dataclass
class PipelineOutcome:
    items: Dict[str, PipelineItem]
    summary: PipelineSummary


Selection = Mapping[str, Optional[Any]]
CandidateSelector = Callable[[Dict[str, PipelineItem]], Union[Selection, Awaitable[Selection]]]


def select_first_candidate(items: Dict[str, PipelineItem]) -> Dict[str, Optional[Any]]:
    """Pick the first candidate of every item (pattern matches rank first)."""
    return {item_id: (item.candidates[0] if item.candidates else None) for item_id, item in items.items()}


def select_none(items: Dict[str, PipelineItem]) -> Dict[str, Optional[Any]]:
    """Pick nothing; every discovered item is skipped."""
    return {}


def describe_candidates(count: int, label: str = "candidate") -> str:
    """Progress text for a discovery result, e.g. "Found 2 URLs"."""
    if count == 0:
        return f"No {label}s found"
    return f"Found {count} {label}{'s' if count > 1 else ''}"


class TwoPhasePipeline:
    """Runs discovery and analysis through the batch runner with a selection step between."""

    def __init__(
        self,
        discover: Operation,
        analyze: Operation,
        candidates_of: Callable[[Any], Sequence[Any]],
        runner: Optional[BatchOperationRunner] = None,
        analysis_runner: Optional[BatchOperationRunner] = None,
        candidate_label: str = "candidate",
        discovery_cost: Optional[Callable[[Any], Optional[float]]] = None,
        analysis_cost: Optional[Callable[[Any], Optional[float]]] = None,
        analysis_message: Optional[Callable[[Any], Optional[str]]] = None,
    ):
        """
        Args:
            discover: Operation taking an item payload, returning a discovery value
            analyze: Operation taking an AnalysisInput
            candidates_of: Extracts the candidate list from a discovery value
            runner: Batch runner for discovery (default options from Config)
            analysis_runner: Batch runner for analysis (defaults to `runner`)
            candidate_label: Noun used in discovery progress messages
            discovery_cost: Reads a cost figure from a discovery value
            analysis_cost: Reads a cost figure from an analysis value
            analysis_message: Builds the analysis success message
        """
        self._discover = discover
        self._analyze = analyze
        self._candidates_of = candidates_of
        self.runner = runner or BatchOperationRunner()
        self.analysis_runner = analysis_runner or self.runner
        self._candidate_label = candidate_label
        self._discovery_cost = discovery_cost
        self._analysis_cost = analysis_cost
        self._analysis_message = analysis_message

    def _candidates(self, value: Any) -> List[Any]:
        return list(self._candidates_of(value) or [])

    async def discover(
        self,
        items: Sequence[WorkItem],
        preset_candidates: Optional[Mapping[str, Sequence[Any]]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, PipelineItem]:
        """
        Phase one. Items with preset candidates skip the remote lookup.

        Returns:
            Dict of item_id -> PipelineItem, each discovered or discovery_failed
        """
        records: Dict[str, PipelineItem] = {}
        for item in items:
            if item.item_id in records:
                raise ValueError(f"Duplicate work item id: {item.item_id}")
            records[item.item_id] = PipelineItem(item.item_id, item.payload)

        preset_candidates = preset_candidates or {}
        to_search: List[WorkItem] = []
        for item in items:
            record = records[item.item_id]
            preset = list(preset_candidates.get(item.item_id) or [])
            if preset:
                record.candidates = preset
                record.candidate_source = CandidateSource.MAPPED
                record.transition(ItemState.DISCOVERED)
                emit_progress(on_progress, ProgressEvent(item.item_id, ProgressPhase.FINDING, ProgressStatus.PENDING))
                emit_progress(
                    on_progress,
                    ProgressEvent(
                        item.item_id,
                        ProgressPhase.FINDING,
                        ProgressStatus.SUCCESS,
                        f"Found {self._candidate_label} in mapped field",
                    ),
                )
            else:
                record.transition(ItemState.DISCOVERING)
                to_search.append(item)

        logger.info(
            f"Discovery: {len(to_search)} to search, {len(items) - len(to_search)} preset"
        )

        results = await self.runner.run(
            to_search,
            self._discover,
            on_progress=on_progress,
            phase=ProgressPhase.FINDING,
            cancel_token=cancel_token,
            cost_extractor=self._discovery_cost,
            success_message=lambda value: describe_candidates(
                len(self._candidates(value)), self._candidate_label
            ),
        )

        for item_id, result in results.items():
            record = records[item_id]
            record.discovery = result
            if result.success:
                record.candidates = self._candidates(result.value)
                record.candidate_source = CandidateSource.SEARCHED
                record.transition(ItemState.DISCOVERED)
            else:
                record.error = result.error
                record.transition(ItemState.DISCOVERY_FAILED)

        return records

    async def apply_selection(
        self,
        records: Dict[str, PipelineItem],
        selector: CandidateSelector,
    ) -> Dict[str, PipelineItem]:
        """
        The external choice between the phases.

        The selector sees discovered items that have candidates and returns
        item_id -> chosen candidate (None or absent = skip). A chosen value
        that is not among the candidates is accepted as a manual entry.
        """
        for record in records.values():
            if record.state == ItemState.DISCOVERED and not record.candidates:
                record.skip(SkipReason.NO_CANDIDATES)

        choosable = {
            item_id: record
            for item_id, record in records.items()
            if record.state == ItemState.DISCOVERED
        }
        if not choosable:
            return records

        choices = selector(choosable)
        if inspect.isawaitable(choices):
            choices = await choices
        choices = choices or {}

        unknown = set(choices) - set(choosable)
        if unknown:
            logger.warning(f"Ignoring selections for items not awaiting a choice: {sorted(unknown)}")

        for item_id, record in choosable.items():
            choice = choices.get(item_id)
            if choice is None:
                record.skip(SkipReason.NOT_SELECTED)
                continue
            if choice not in record.candidates:
                logger.info(f"{item_id}: manual selection {choice} (not among discovered candidates)")
            record.selected = choice
            record.transition(ItemState.SELECTED)

        return records

    async def analyze(
        self,
        records: Dict[str, PipelineItem],
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, PipelineItem]:
        """Phase two, only for selected items."""
        selected = [record for record in records.values() if record.state == ItemState.SELECTED]
        if not selected:
            return records

        if cancel_token is not None and cancel_token.cancelled:
            for record in selected:
                record.skip(SkipReason.CANCELLED)
            return records

        work = []
        for record in selected:
            record.transition(ItemState.ANALYZING)
            work.append(WorkItem(record.item_id, AnalysisInput(record.item_id, record.selected, record.payload)))

        results = await self.analysis_runner.run(
            work,
            self._analyze,
            on_progress=on_progress,
            phase=ProgressPhase.ANALYZING,
            cancel_token=cancel_token,
            cost_extractor=self._analysis_cost,
            success_message=self._analysis_message,
        )

        for item_id, result in results.items():
            record = records[item_id]
            record.analysis = result
            if result.success:
                record.transition(ItemState.ANALYZED)
            else:
                record.error = result.error
                record.transition(ItemState.ANALYSIS_FAILED)

        return records

    async def run(
        self,
        items: Sequence[WorkItem],
        selector: CandidateSelector = select_first_candidate,
        preset_candidates: Optional[Mapping[str, Sequence[Any]]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineOutcome:
        """Discovery, selection and analysis back to back."""
        records = await self.discover(items, preset_candidates, on_progress, cancel_token)

        if cancel_token is not None and cancel_token.cancelled:
            for record in records.values():
                if record.state == ItemState.DISCOVERED:
                    record.skip(SkipReason.CANCELLED)
        else:
            await self.apply_selection(records, selector)
            await self.analyze(records, on_progress, cancel_token)

        summary = PipelineSummary.from_items(records)
        logger.info(
            f"Pipeline complete: {summary.analyzed} analyzed, {summary.skipped} skipped, "
            f"{summary.failed} failed (cost ${summary.total_cost:.4f})"
        )
        return PipelineOutcome(items=records, summary=summary)
