"""
Bulk Blog Analysis Service.

Runs the blog qualification function (activity, authors, content quality)
for many companies and stores the result on each company as `blogAnalysis`.

Companies analyzed within the last `skip_recent_days` days are skipped and
keep their existing analysis.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from src.common.batch_runner import BatchOperationRunner, BatchOptions, WorkItem
from src.common.cancellation import CancellationToken
from src.common.cloud_functions import BlogQualification, CloudFunctionsClient
from src.common.config import Config
from src.common.error_handling import PermanentItemError
from src.common.field_mapping import FieldMapping, get_company_blog_url, get_company_website
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

logger = logging.getLogger(__name__)

ANALYSIS_FIELD = "blogAnalysis"
NO_WEBSITE_MESSAGE = "No website found"
NOTHING_FOUND_MESSAGE = "Unable to analyze blog - no RSS feed or content found"


def transform_blog_result(result: BlogQualification, url_analyzed: str) -> Dict[str, Any]:
    """
    Map a qualification result to the `blogAnalysis` shape stored on companies.

    Args:
        result: Response from qualifyCompanyBlog
        url_analyzed: The URL that was sent for analysis

    Returns:
        camelCase dict ready for the company document
    """
    author_names = result.author_names.split(", ") if result.author_names else []
    employment = result.authors_are_employees

    rating = result.content_quality_rating
    if not rating:
        if result.is_developer_b2b_saas and result.covers_ai_topics:
            rating = "high"
        elif result.is_developer_b2b_saas or result.covers_ai_topics:
            rating = "medium"
        else:
            rating = "low"

    analysis = {
        "lastActivePost": result.last_blog_created_at or None,
        "monthlyFrequency": result.blog_post_count,
        "writers": {
            "count": result.author_count,
            "areEmployees": employment in ("employees", "mixed"),
            "areFreelancers": employment in ("freelancers", "mixed"),
            "list": author_names,
        },
        "blogNature": {
            "isAIWritten": bool(result.is_ai_written),
            "isTechnical": result.technical_depth in ("advanced", "intermediate"),
            "rating": rating,
            "reasoning": result.content_quality_reasoning or "No detailed reasoning provided by analysis",
            "hasCodeExamples": bool(result.has_code_examples),
            "codeExamplesCount": result.code_examples_count or 0,
            "codeLanguages": list(result.code_languages),
            "hasDiagrams": bool(result.has_diagrams),
            "diagramsCount": result.diagrams_count or 0,
            "exampleQuotes": list(result.example_quotes),
            "aiWrittenConfidence": result.ai_written_confidence or None,
            "aiWrittenEvidence": result.ai_written_evidence or None,
            "technicalDepth": result.technical_depth or None,
            "funnelStage": result.funnel_stage or None,
        },
        "isDeveloperB2BSaas": result.is_developer_b2b_saas,
        "contentSummary": result.content_summary,
        "blogUrl": url_analyzed,
        "lastPostUrl": result.last_post_url or None,
        "rssFeedUrl": result.rss_feed_url or None,
        "analysisMethod": result.analysis_method or "Unknown",
        "lastAnalyzedAt": datetime.utcnow(),
    }

    if result.cost_info:
        analysis["costInfo"] = {
            "totalCost": result.cost_info.total_cost,
            "totalTokens": result.cost_info.total_tokens,
        }

    return analysis


def resolve_blog_url(company: Dict[str, Any], mapping: Optional[FieldMapping] = None) -> Optional[str]:
    """Blog URL mapping, then website mapping, then the top-level website."""
    return (
        get_company_blog_url(company, mapping)
        or get_company_website(company, mapping)
        or (company.get("website") or "").strip()
        or None
    )


def _as_utc_naive(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def was_recently_analyzed(
    company: Dict[str, Any],
    skip_days: int,
    now: Optional[datetime] = None,
) -> bool:
    """True when the stored blog analysis is younger than `skip_days` days."""
    analyzed_at = _as_utc_naive((company.get(ANALYSIS_FIELD) or {}).get("lastAnalyzedAt"))
    if analyzed_at is None:
        return False
    return (now or datetime.utcnow()) - analyzed_at < timedelta(days=skip_days)


class BulkBlogAnalysisService(OperationService):
    """Blog qualification over many companies, with skip-recent and persistence."""

    operation_name: str = "bulk-blog-analysis"

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

    def _operation(self, on_progress: Optional[ProgressCallback]):
        started = set()

        async def analyze(company: Dict[str, Any]) -> Dict[str, Any]:
            url = resolve_blog_url(company, self.field_mapping)
            if not url:
                raise PermanentItemError(NO_WEBSITE_MESSAGE)

            # Retries re-enter here; report RUNNING on the first attempt only
            company_id = str(company["id"])
            if company_id not in started:
                started.add(company_id)
                emit_progress(
                    on_progress,
                    ProgressEvent(company_id, ProgressPhase.BLOG_ANALYSIS, ProgressStatus.RUNNING,
                                  "Analyzing blog..."),
                    logger,
                )
            result = await self.client.qualify_company_blog(company.get("name") or "", url)
            if result.found_nothing():
                raise ValueError(NOTHING_FOUND_MESSAGE)

            analysis = transform_blog_result(result, url)
            self._get_repository().update_company(str(company["id"]), {ANALYSIS_FIELD: analysis})
            return analysis

        return analyze

    async def execute(
        self,
        companies: List[Dict[str, Any]],
        skip_recent_days: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        **kwargs,
    ) -> OperationResult:
        """
        Analyze blogs for the given companies.

        Args:
            companies: Company documents (must carry "id")
            skip_recent_days: Skip companies analyzed this recently; 0 disables
                (defaults to Config.BLOG_SKIP_RECENT_DAYS)
            on_progress: Receives "blog_analysis" progress events
            cancel_token: Optional cancellation signal

        Returns:
            OperationResult whose data holds "summary" and "companies"
        """
        if skip_recent_days is None:
            skip_recent_days = Config.BLOG_SKIP_RECENT_DAYS

        run_id = self.create_run_id()
        log = get_logger(__name__, run_id=run_id, layer="blog_analysis")
        log.info(f"Starting blog analysis for {len(companies)} companies (skip_recent_days={skip_recent_days})")

        with self.timed_execution() as timer:
            try:
                records: Dict[str, Dict[str, Any]] = {}
                to_process: List[WorkItem] = []

                for company in companies:
                    company_id = str(company["id"])
                    if skip_recent_days > 0 and was_recently_analyzed(company, skip_recent_days):
                        existing = company.get(ANALYSIS_FIELD) or {}
                        frequency = existing.get("monthlyFrequency") or 0
                        records[company_id] = {
                            "company_id": company_id,
                            "company_name": company.get("name") or company_id,
                            "status": "skipped",
                            "success": True,
                            "monthly_frequency": frequency,
                            "analysis": existing,
                        }
                        emit_progress(
                            on_progress,
                            ProgressEvent(company_id, ProgressPhase.BLOG_ANALYSIS, ProgressStatus.SKIPPED,
                                          f"Already analyzed ({frequency} posts/mo)"),
                            log.logger,
                        )
                        continue
                    records[company_id] = {"company_id": company_id, "company_name": company.get("name") or company_id}
                    to_process.append(WorkItem(company_id, company))

                log.info(f"{len(companies) - len(to_process)} recently analyzed, {len(to_process)} to analyze")

                results = await self.runner.run(
                    to_process,
                    self._operation(on_progress),
                    on_progress=on_progress,
                    phase=ProgressPhase.BLOG_ANALYSIS,
                    cancel_token=cancel_token,
                    cost_extractor=lambda analysis: (analysis.get("costInfo") or {}).get("totalCost"),
                    success_message=lambda analysis: f"{analysis['monthlyFrequency']} posts/mo",
                )

                total_cost = 0.0
                for company_id, result in results.items():
                    record = records[company_id]
                    record["success"] = result.success
                    record["status"] = "analyzed" if result.success else "failed"
                    record["attempts"] = result.attempts
                    if result.success:
                        record["monthly_frequency"] = result.value["monthlyFrequency"]
                        record["blog_url"] = result.value["blogUrl"]
                    else:
                        record["error"] = result.error
                    if result.cost_usd:
                        record["cost_usd"] = result.cost_usd
                        total_cost += result.cost_usd

                statuses = [record["status"] for record in records.values()]
                summary = {
                    "total": len(statuses),
                    "analyzed": statuses.count("analyzed"),
                    "skipped": statuses.count("skipped"),
                    "failed": statuses.count("failed"),
                    "total_cost": round(total_cost, 6),
                }
                log.info(
                    f"Completed: {summary['analyzed']} analyzed, {summary['skipped']} skipped, "
                    f"{summary['failed']} failed (cost ${total_cost:.4f})"
                )

                result = self.create_success_result(
                    run_id=run_id,
                    data={"summary": summary, "companies": list(records.values())},
                    cost_usd=total_cost,
                    duration_ms=timer.duration_ms,
                    item_count=len(companies),
                )
                if self._track_runs:
                    self.persist_run(result, self._runs_repository)
                return result

            except Exception as e:
                log.exception(f"Blog analysis run failed: {e}")
                error_result = self.create_error_result(
                    run_id=run_id,
                    error=str(e),
                    duration_ms=timer.duration_ms,
                    item_count=len(companies),
                )
                if self._track_runs:
                    self.persist_run(error_result, self._runs_repository)
                return error_result
