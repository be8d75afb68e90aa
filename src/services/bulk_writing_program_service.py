"""
Bulk Writing Program Service.

Finds and analyzes "write for us" / community writing programs for many
companies at once:
1. Discovery - findWritingProgramCloud proposes candidate program URLs per
   company website (checking common URL patterns, then an AI fallback)
2. Selection - the caller (CLI prompt or auto-select) picks one URL per company
3. Analysis - analyzeWritingProgramDetailsCloud reads payment, open status and
   requirements from the selected page

Results are stored on the company document as `writingProgramAnalysis`.
Companies where nothing was found get a "searched but not found" marker so
they are not searched again by accident.

Usage:
    async with CloudFunctionsClient() as client:
        service = WritingProgramBulkService(client)
        result = await service.execute(companies, selector=select_first_candidate)
        print(result.data["summary"])
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from src.common.batch_runner import BatchOperationRunner, BatchOptions, WorkItem
from src.common.cancellation import CancellationToken
from src.common.cloud_functions import (
    CloudFunctionsClient,
    WritingProgramAnalysis,
    WritingProgramSearch,
)
from src.common.error_handling import ErrorCollector, PermanentItemError
from src.common.field_mapping import (
    FieldMapping,
    extract_domain_from_url,
    get_company_program_url,
    get_company_website,
)
from src.common.logger import get_logger
from src.common.progress import (
    ProgressCallback,
    ProgressEvent,
    ProgressPhase,
    ProgressStatus,
    emit_progress,
)
from src.common.repositories import (
    CompanyRepositoryInterface,
    OperationRunsRepositoryInterface,
    get_company_repository,
)
from src.services.operation_base import OperationResult, OperationService
from src.services.two_phase_pipeline import (
    AnalysisInput,
    CandidateSource,
    CandidateSelector,
    ItemState,
    PipelineItem,
    SkipReason,
    TwoPhasePipeline,
    describe_candidates,
    select_first_candidate,
)

logger = logging.getLogger(__name__)

NO_WEBSITE_MESSAGE = "No website found. Please add a website to this company."
ANALYSIS_FIELD = "writingProgramAnalysis"


@dataclass
class FindProgramResult:
    """Discovery outcome for one company."""
    company_id: str
    company_name: str
    website: Optional[str]
    success: bool
    candidate_urls: List[str] = field(default_factory=list)
    search: Optional[WritingProgramSearch] = None
    error: Optional[str] = None
    attempts: int = 0
    cost_usd: Optional[float] = None
    url_source: CandidateSource = CandidateSource.SEARCHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_id": self.company_id,
            "company_name": self.company_name,
            "website": self.website,
            "success": self.success,
            "candidate_urls": list(self.candidate_urls),
            "used_ai_fallback": self.search.used_ai_fallback if self.search else False,
            "error": self.error,
            "attempts": self.attempts,
            "cost_usd": self.cost_usd,
            "url_source": self.url_source.value,
        }


@dataclass
class AnalyzeProgramResult:
    """Analysis outcome for one company's selected program URL."""
    company_id: str
    company_name: str
    program_url: str
    success: bool
    analysis: Optional[WritingProgramAnalysis] = None
    error: Optional[str] = None
    attempts: int = 0
    cost_usd: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_id": self.company_id,
            "company_name": self.company_name,
            "program_url": self.program_url,
            "success": self.success,
            "summary": self.analysis.summary_message() if self.analysis else None,
            "error": self.error,
            "attempts": self.attempts,
            "cost_usd": self.cost_usd,
        }


# ===== HELPERS =====

def _company_id(company: Dict[str, Any]) -> str:
    return str(company["id"])


def _company_name(company: Optional[Dict[str, Any]], fallback: str) -> str:
    if not company:
        return fallback
    return company.get("name") or fallback


def resolve_search_website(
    company: Dict[str, Any],
    mapping: Optional[FieldMapping] = None,
) -> Optional[str]:
    """
    Website to search for a company.

    Uses the mapped website field, then the domain of a previously stored
    program URL.
    """
    website = get_company_website(company, mapping)
    if website:
        return website
    existing = company.get(ANALYSIS_FIELD) or {}
    return extract_domain_from_url(existing.get("programUrl"))


def _search_cost(search: WritingProgramSearch) -> Optional[float]:
    return search.cost_info.total_cost if search.cost_info else None


def _analysis_cost(analysis: WritingProgramAnalysis) -> Optional[float]:
    return analysis.cost_info.total_cost if analysis.cost_info else None


def _found_message(search: WritingProgramSearch) -> str:
    return describe_candidates(len(search.candidate_urls()), "URL")


def _search_operation(client: CloudFunctionsClient, mapping: Optional[FieldMapping]):
    async def search(company: Dict[str, Any]) -> WritingProgramSearch:
        website = resolve_search_website(company, mapping)
        if not website:
            raise PermanentItemError(NO_WEBSITE_MESSAGE)
        return await client.find_writing_program(website, use_ai_fallback=True)

    return search


def _analysis_operation(client: CloudFunctionsClient):
    async def analyze(target: AnalysisInput) -> WritingProgramAnalysis:
        return await client.analyze_writing_program_details(target.candidate, company_id=target.item_id)

    return analyze


def build_analysis_document(analysis: WritingProgramAnalysis, program_url: str) -> Dict[str, Any]:
    """The `writingProgramAnalysis` value stored on the company."""
    document = analysis.to_document()
    document["programUrl"] = program_url
    document["lastAnalyzedAt"] = datetime.utcnow()
    return document


def build_not_found_marker() -> Dict[str, Any]:
    """The `writingProgramAnalysis` value for a company searched without results."""
    now = datetime.utcnow()
    return {
        "hasProgram": False,
        "programUrl": None,
        "isOpen": None,
        "openDates": None,
        "payment": {
            "amount": None,
            "method": None,
            "details": None,
            "sourceSnippet": None,
            "historical": None,
        },
        "lastAnalyzedAt": now,
        "lastSearchedAt": now,
    }


# ===== STANDALONE PHASES =====

async def find_writing_programs(
    companies: Sequence[Dict[str, Any]],
    client: CloudFunctionsClient,
    on_progress: Optional[ProgressCallback] = None,
    options: Optional[BatchOptions] = None,
    field_mapping: Optional[FieldMapping] = None,
    cancel_token: Optional[CancellationToken] = None,
    runner: Optional[BatchOperationRunner] = None,
    use_mapped_field: bool = False,
) -> Dict[str, FindProgramResult]:
    """
    Discovery phase on its own.

    Args:
        companies: Company documents (must carry "id")
        client: Cloud functions client
        on_progress: Receives "finding" progress events
        options: Batch tuning (ignored when `runner` is given)
        field_mapping: Where to read the website and program URL (defaults to Config)
        cancel_token: Optional cancellation signal
        runner: Pre-built batch runner
        use_mapped_field: Take the mapped program-URL field instead of
            searching when it is set

    Returns:
        Dict of company_id -> FindProgramResult, in input order
    """
    mapping = field_mapping or FieldMapping.from_config()
    runner = runner or BatchOperationRunner(options)
    by_id = {_company_id(company): company for company in companies}
    if len(by_id) != len(companies):
        ids = [_company_id(company) for company in companies]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        raise ValueError(f"Duplicate work item ids: {', '.join(duplicates)}")

    mapped = {}
    if use_mapped_field:
        for company in companies:
            url = get_company_program_url(company, mapping)
            if url:
                mapped[_company_id(company)] = url

    for company_id, url in mapped.items():
        emit_progress(on_progress, ProgressEvent(company_id, ProgressPhase.FINDING, ProgressStatus.PENDING))
        emit_progress(
            on_progress,
            ProgressEvent(company_id, ProgressPhase.FINDING, ProgressStatus.SUCCESS, "Found URL in mapped field"),
            logger,
        )

    results = await runner.run(
        [WorkItem(_company_id(company), company) for company in companies if _company_id(company) not in mapped],
        _search_operation(client, mapping),
        on_progress=on_progress,
        phase=ProgressPhase.FINDING,
        cancel_token=cancel_token,
        cost_extractor=_search_cost,
        success_message=_found_message,
    )

    found = {}
    for company_id, company in by_id.items():
        if company_id in mapped:
            found[company_id] = FindProgramResult(
                company_id=company_id,
                company_name=_company_name(company, company_id),
                website=resolve_search_website(company, mapping),
                success=True,
                candidate_urls=[mapped[company_id]],
                url_source=CandidateSource.MAPPED,
            )
            continue
        result = results[company_id]
        search = result.value if result.success else None
        found[company_id] = FindProgramResult(
            company_id=company_id,
            company_name=_company_name(company, company_id),
            website=resolve_search_website(company, mapping),
            success=result.success,
            candidate_urls=search.candidate_urls() if search else [],
            search=search,
            error=result.error,
            attempts=result.attempts,
            cost_usd=result.cost_usd,
        )
    return found


async def analyze_writing_programs(
    selections: Mapping[str, str],
    client: CloudFunctionsClient,
    companies: Optional[Sequence[Dict[str, Any]]] = None,
    on_progress: Optional[ProgressCallback] = None,
    options: Optional[BatchOptions] = None,
    cancel_token: Optional[CancellationToken] = None,
    runner: Optional[BatchOperationRunner] = None,
) -> Dict[str, AnalyzeProgramResult]:
    """
    Analysis phase on its own.

    Args:
        selections: company_id -> program URL to analyze
        client: Cloud functions client
        companies: Company documents, used for names in the results
        on_progress: Receives "analyzing" progress events
        options: Batch tuning (ignored when `runner` is given)
        cancel_token: Optional cancellation signal
        runner: Pre-built batch runner

    Returns:
        Dict of company_id -> AnalyzeProgramResult, in selection order
    """
    runner = runner or BatchOperationRunner(options)
    by_id = {_company_id(company): company for company in companies or []}

    results = await runner.run(
        [
            WorkItem(company_id, AnalysisInput(company_id, url, by_id.get(company_id)))
            for company_id, url in selections.items()
        ],
        _analysis_operation(client),
        on_progress=on_progress,
        phase=ProgressPhase.ANALYZING,
        cancel_token=cancel_token,
        cost_extractor=_analysis_cost,
        success_message=lambda analysis: analysis.summary_message(),
    )

    return {
        company_id: AnalyzeProgramResult(
            company_id=company_id,
            company_name=_company_name(by_id.get(company_id), company_id),
            program_url=selections[company_id],
            success=result.success,
            analysis=result.value if result.success else None,
            error=result.error,
            attempts=result.attempts,
            cost_usd=result.cost_usd,
        )
        for company_id, result in results.items()
    }


# ===== SERVICE =====

class WritingProgramBulkService(OperationService):
    """
    Discovery, selection and analysis of writing programs, with persistence.

    Persistence failures are collected per company; they never fail the run.
    """

    operation_name: str = "bulk-writing-programs"

    def __init__(
        self,
        client: CloudFunctionsClient,
        repository: Optional[CompanyRepositoryInterface] = None,
        options: Optional[BatchOptions] = None,
        field_mapping: Optional[FieldMapping] = None,
        runner: Optional[BatchOperationRunner] = None,
        runs_repository: Optional[OperationRunsRepositoryInterface] = None,
        track_runs: bool = True,
    ):
        """
        Args:
            client: Cloud functions client
            repository: Company repository (defaults to the global one)
            options: Batch tuning (ignored when `runner` is given)
            field_mapping: Website / program URL field mapping (defaults to Config)
            runner: Pre-built batch runner shared by both phases
            runs_repository: Where run records go (defaults to the global one)
            track_runs: Persist a run record after each execution
        """
        self.client = client
        self._repository = repository
        self.field_mapping = field_mapping or FieldMapping.from_config()
        self.runner = runner or BatchOperationRunner(options)
        self._runs_repository = runs_repository
        self._track_runs = track_runs

    def _get_repository(self) -> CompanyRepositoryInterface:
        if self._repository is not None:
            return self._repository
        return get_company_repository()

    def _pipeline(self) -> TwoPhasePipeline:
        return TwoPhasePipeline(
            discover=_search_operation(self.client, self.field_mapping),
            analyze=_analysis_operation(self.client),
            candidates_of=lambda search: search.candidate_urls(),
            runner=self.runner,
            candidate_label="URL",
            discovery_cost=_search_cost,
            analysis_cost=_analysis_cost,
            analysis_message=lambda analysis: analysis.summary_message(),
        )

    def mapped_program_urls(self, companies: Sequence[Dict[str, Any]]) -> Dict[str, List[str]]:
        """Companies whose mapped program-URL field already names the page."""
        preset = {}
        for company in companies:
            url = get_company_program_url(company, self.field_mapping)
            if url:
                preset[_company_id(company)] = [url]
        return preset

    def _save_analysis(self, record: PipelineItem, errors: ErrorCollector, log) -> bool:
        try:
            document = build_analysis_document(record.analysis.value, record.selected)
            self._get_repository().update_company(record.item_id, {ANALYSIS_FIELD: document})
            return True
        except Exception as e:
            log.error(f"Failed to save writing program analysis for {record.item_id}: {e}")
            errors.add_error(record.item_id, "persist_analysis", str(e), severity="high", exception=e)
            return False

    def _save_not_found_marker(self, record: PipelineItem, errors: ErrorCollector, log) -> bool:
        existing = record.payload.get(ANALYSIS_FIELD) or {}
        if existing.get("hasProgram"):
            log.debug(f"Keeping existing program for {record.item_id}")
            return False
        try:
            self._get_repository().update_company(record.item_id, {ANALYSIS_FIELD: build_not_found_marker()})
            return True
        except Exception as e:
            log.error(f"Failed to save search marker for {record.item_id}: {e}")
            errors.add_error(record.item_id, "persist_search_marker", str(e), exception=e)
            return False

    def _company_record(self, record: PipelineItem, errors: ErrorCollector) -> Dict[str, Any]:
        data = record.to_dict()
        data["company_name"] = _company_name(record.payload, record.item_id)
        data["website"] = resolve_search_website(record.payload, self.field_mapping)
        if record.analysis is not None and record.analysis.success:
            data["summary"] = record.analysis.value.summary_message()
        persist_errors = errors.for_item(record.item_id)
        if persist_errors:
            data["persist_error"] = persist_errors[-1].message
        return data

    async def execute(
        self,
        companies: List[Dict[str, Any]],
        selector: CandidateSelector = select_first_candidate,
        use_mapped_field: bool = True,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        **kwargs,
    ) -> OperationResult:
        """
        Find, select and analyze writing programs for the given companies.

        Args:
            companies: Company documents (must carry "id")
            selector: Picks one URL per company (sync or async)
            use_mapped_field: Use the mapped program-URL field instead of searching
            on_progress: Receives progress events for both phases
            cancel_token: Optional cancellation signal

        Returns:
            OperationResult whose data holds "summary", "companies" and "errors"
        """
        run_id = self.create_run_id()
        log = get_logger(__name__, run_id=run_id, layer="writing_programs")
        log.info(f"Starting writing program run for {len(companies)} companies")

        with self.timed_execution() as timer:
            try:
                preset = self.mapped_program_urls(companies) if use_mapped_field else {}
                if preset:
                    log.info(f"{len(preset)} companies use the mapped program URL field")

                outcome = await self._pipeline().run(
                    [WorkItem(_company_id(company), company) for company in companies],
                    selector=selector,
                    preset_candidates=preset,
                    on_progress=on_progress,
                    cancel_token=cancel_token,
                )

                errors = ErrorCollector()
                saved = markers = 0
                for record in outcome.items.values():
                    if record.state == ItemState.ANALYZED:
                        saved += self._save_analysis(record, errors, log)
                    elif record.skip_reason == SkipReason.NO_CANDIDATES:
                        markers += self._save_not_found_marker(record, errors, log)

                summary = outcome.summary.to_dict()
                summary["saved"] = saved
                summary["marked_not_found"] = markers
                summary["persist_errors"] = len(errors.errors)

                log.info(
                    f"Completed: {summary['analyzed']} analyzed, {summary['skipped']} skipped, "
                    f"{summary['failed']} failed, {saved} saved (cost ${outcome.summary.total_cost:.4f})"
                )

                result = self.create_success_result(
                    run_id=run_id,
                    data={
                        "summary": summary,
                        "companies": [self._company_record(r, errors) for r in outcome.items.values()],
                        "errors": [e.to_dict() for e in errors.errors],
                    },
                    cost_usd=outcome.summary.total_cost,
                    duration_ms=timer.duration_ms,
                    item_count=len(companies),
                )
                if self._track_runs:
                    self.persist_run(result, self._runs_repository)
                return result

            except Exception as e:
                log.exception(f"Writing program run failed: {e}")
                error_result = self.create_error_result(
                    run_id=run_id,
                    error=str(e),
                    duration_ms=timer.duration_ms,
                    item_count=len(companies),
                )
                if self._track_runs:
                    self.persist_run(error_result, self._runs_repository)
                return error_result
