"""
Client for the hosted analysis functions.

The LLM-backed analyses (writing-program discovery and analysis, blog
qualification) run as HTTPS callable functions. This client speaks the
callable protocol over httpx:

    POST {base_url}/{function_name}   {"data": {...}}
    200 -> {"result": {...}}
    4xx/5xx -> {"error": {"status": "INVALID_ARGUMENT", "message": "..."}}

Rejections that retrying cannot fix (bad arguments, missing resources,
auth failures) raise PermanentCloudFunctionError so the batch runner
records them after one attempt. Timeouts, transport errors and server
errors raise CloudFunctionError and are retried.

Usage:
    async with CloudFunctionsClient() as client:
        search = await client.find_writing_program("example.com")
        urls = search.candidate_urls()
"""

import logging
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.common.config import Config
from src.common.error_handling import PermanentItemError

logger = logging.getLogger(__name__)

FIND_WRITING_PROGRAM = "findWritingProgramCloud"
ANALYZE_WRITING_PROGRAM = "analyzeWritingProgramDetailsCloud"
QUALIFY_COMPANY_BLOG = "qualifyCompanyBlog"

PERMANENT_STATUSES = frozenset({
    "INVALID_ARGUMENT",
    "NOT_FOUND",
    "PERMISSION_DENIED",
    "UNAUTHENTICATED",
    "FAILED_PRECONDITION",
})
PERMANENT_HTTP_CODES = frozenset({400, 401, 403, 404})


class CloudFunctionError(Exception):
    """A hosted function call failed (retryable)."""

    def __init__(
        self,
        function_name: str,
        message: str,
        status: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        self.function_name = function_name
        self.status = status
        self.http_status = http_status
        super().__init__(message)


class PermanentCloudFunctionError(CloudFunctionError, PermanentItemError):
    """A hosted function rejected the call; retrying will not help."""


# ===== RESPONSE MODELS =====

class _CallableModel(BaseModel):
    """Base for camelCase function payloads."""
    model_config = ConfigDict(populate_by_name=True)


class CostInfo(_CallableModel):
    """Token usage and cost reported by an LLM-backed function."""
    input_tokens: int = Field(default=0, alias="inputTokens")
    output_tokens: int = Field(default=0, alias="outputTokens")
    total_tokens: int = Field(default=0, alias="totalTokens")
    input_cost: float = Field(default=0.0, alias="inputCost")
    output_cost: float = Field(default=0.0, alias="outputCost")
    total_cost: float = Field(default=0.0, alias="totalCost")


class CandidateUrl(_CallableModel):
    """A pattern-matched URL that was requested on the company's site."""
    url: str
    exists: bool = True
    status: Optional[int] = None
    final_url: Optional[str] = Field(default=None, alias="finalUrl")


class AISuggestion(_CallableModel):
    """A URL proposed by the LLM fallback."""
    url: str
    confidence: Literal["high", "medium", "low"] = "low"
    reasoning: str = ""
    verified: bool = False
    verification_error: Optional[str] = Field(default=None, alias="verificationError")


class WritingProgramSearch(_CallableModel):
    """Result of findWritingProgramCloud."""
    website: str = ""
    total_checked: int = Field(default=0, alias="totalChecked")
    valid_urls: List[CandidateUrl] = Field(default_factory=list, alias="validUrls")
    patterns_found: List[str] = Field(default_factory=list, alias="patternsFound")
    used_ai_fallback: bool = Field(default=False, alias="usedAiFallback")
    ai_suggestions: List[AISuggestion] = Field(default_factory=list, alias="aiSuggestions")
    ai_reasoning: Optional[str] = Field(default=None, alias="aiReasoning")
    cost_info: Optional[CostInfo] = Field(default=None, alias="costInfo")

    @field_validator("valid_urls", "patterns_found", "ai_suggestions", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return [] if value is None else value

    def candidate_urls(self) -> List[str]:
        """Pattern matches first, then AI suggestions, without duplicates."""
        urls: List[str] = []
        for url in [u.url for u in self.valid_urls] + [s.url for s in self.ai_suggestions]:
            if url not in urls:
                urls.append(url)
        return urls


class PaymentInfo(_CallableModel):
    amount: Optional[str] = None  # e.g. "$300 to $500"
    method: Optional[str] = None  # e.g. "PayPal"
    details: Optional[str] = None
    source_snippet: Optional[str] = Field(default=None, alias="sourceSnippet")
    historical: Optional[str] = None


class WritingProgramAnalysis(_CallableModel):
    """Result of analyzeWritingProgramDetailsCloud. Unknown fields are kept."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    program_url: Optional[str] = Field(default=None, alias="programUrl")
    has_program: bool = Field(default=False, alias="hasProgram")
    is_open: Optional[bool] = Field(default=None, alias="isOpen")
    open_dates: Optional[Dict[str, Any]] = Field(default=None, alias="openDates")
    payment: PaymentInfo = Field(default_factory=PaymentInfo)
    requirements: List[str] = Field(default_factory=list)
    program_details: str = Field(default="", alias="programDetails")
    ai_reasoning: str = Field(default="", alias="aiReasoning")
    cost_info: Optional[CostInfo] = Field(default=None, alias="costInfo")

    @field_validator("payment", mode="before")
    @classmethod
    def _payment_or_empty(cls, value):
        return {} if value is None else value

    @field_validator("requirements", mode="before")
    @classmethod
    def _requirements_or_empty(cls, value):
        return [] if value is None else value

    def status_label(self) -> str:
        if self.is_open is True:
            return "Open"
        if self.is_open is False:
            return "Closed"
        return "Unknown status"

    def summary_message(self) -> str:
        """Short text for progress display, e.g. "$300 - Open"."""
        return f"{self.payment.amount or 'Unknown payment'} - {self.status_label()}"

    def to_document(self) -> Dict[str, Any]:
        """camelCase dict for storing on the company document."""
        return self.model_dump(by_alias=True)


class BlogQualification(_CallableModel):
    """Result of qualifyCompanyBlog. Unknown fields are kept."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    company_name: str = Field(default="", alias="companyName")
    website: str = ""
    has_active_blog: bool = Field(default=False, alias="hasActiveBlog")
    blog_post_count: int = Field(default=0, alias="blogPostCount")
    last_blog_created_at: Optional[str] = Field(default=None, alias="lastBlogCreatedAt")
    author_count: int = Field(default=0, alias="authorCount")
    author_names: str = Field(default="", alias="authorNames")
    is_developer_b2b_saas: bool = Field(default=False, alias="isDeveloperB2BSaas")
    authors_are_employees: str = Field(default="unknown", alias="authorsAreEmployees")
    covers_ai_topics: bool = Field(default=False, alias="coversAiTopics")
    content_summary: str = Field(default="", alias="contentSummary")
    rss_feed_url: Optional[str] = Field(default=None, alias="rssFeedUrl")
    analysis_method: Optional[str] = Field(default=None, alias="analysisMethod")
    content_quality_rating: Optional[Literal["low", "medium", "high"]] = Field(
        default=None, alias="contentQualityRating"
    )
    content_quality_reasoning: Optional[str] = Field(default=None, alias="contentQualityReasoning")
    last_post_url: Optional[str] = Field(default=None, alias="lastPostUrl")
    is_ai_written: Optional[bool] = Field(default=None, alias="isAIWritten")
    ai_written_confidence: Optional[str] = Field(default=None, alias="aiWrittenConfidence")
    ai_written_evidence: Optional[str] = Field(default=None, alias="aiWrittenEvidence")
    has_code_examples: Optional[bool] = Field(default=None, alias="hasCodeExamples")
    code_examples_count: Optional[int] = Field(default=None, alias="codeExamplesCount")
    code_languages: List[str] = Field(default_factory=list, alias="codeLanguages")
    has_diagrams: Optional[bool] = Field(default=None, alias="hasDiagrams")
    diagrams_count: Optional[int] = Field(default=None, alias="diagramsCount")
    technical_depth: Optional[str] = Field(default=None, alias="technicalDepth")
    funnel_stage: Optional[str] = Field(default=None, alias="funnelStage")
    example_quotes: List[str] = Field(default_factory=list, alias="exampleQuotes")
    cost_info: Optional[CostInfo] = Field(default=None, alias="costInfo")

    @field_validator("code_languages", "example_quotes", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return [] if value is None else value

    def found_nothing(self) -> bool:
        """True when the function found neither a feed, posts, nor any analysis path."""
        return (
            not self.rss_feed_url
            and self.blog_post_count == 0
            and (not self.analysis_method or self.analysis_method == "None")
        )


# ===== CLIENT =====

class CloudFunctionsClient:
    """Async client for the hosted callable functions."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: Functions base URL (defaults to Config.CLOUD_FUNCTIONS_BASE_URL)
            auth_token: Bearer token sent with every call (optional)
            timeout: Per-call timeout in seconds
            http_client: Pre-built httpx client (not closed by this client)
        """
        self.base_url = (base_url or Config.CLOUD_FUNCTIONS_BASE_URL).rstrip("/")
        if not self.base_url:
            raise ValueError("Cloud functions base URL is required (CLOUD_FUNCTIONS_BASE_URL)")
        self._auth_token = auth_token if auth_token is not None else Config.CLOUD_FUNCTIONS_AUTH_TOKEN
        self._timeout = timeout or Config.CLOUD_FUNCTIONS_TIMEOUT_SECONDS
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "CloudFunctionsClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def call(self, function_name: str, data: Dict[str, Any]) -> Any:
        """
        Invoke a callable function and return its `result` payload.

        Raises:
            PermanentCloudFunctionError: The function rejected the call
            CloudFunctionError: Transport failure, timeout or server error
        """
        url = f"{self.base_url}/{function_name}"
        payload = {k: v for k, v in data.items() if v is not None}

        try:
            response = await self._client().post(url, json={"data": payload}, headers=self._headers())
        except httpx.TimeoutException as e:
            raise CloudFunctionError(function_name, f"{function_name} timed out") from e
        except httpx.HTTPError as e:
            raise CloudFunctionError(function_name, f"{function_name} request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get("error"):
            error = body["error"] if isinstance(body["error"], dict) else {"message": str(body["error"])}
            status = error.get("status")
            message = error.get("message") or f"{function_name} failed ({status or response.status_code})"
            error_cls = PermanentCloudFunctionError if status in PERMANENT_STATUSES else CloudFunctionError
            raise error_cls(function_name, message, status=status, http_status=response.status_code)

        if response.status_code >= 400:
            error_cls = (
                PermanentCloudFunctionError
                if response.status_code in PERMANENT_HTTP_CODES
                else CloudFunctionError
            )
            raise error_cls(
                function_name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                http_status=response.status_code,
            )

        if not isinstance(body, dict) or "result" not in body:
            raise CloudFunctionError(function_name, f"{function_name} returned a malformed response")

        return body["result"]

    async def _call_model(self, function_name: str, data: Dict[str, Any], model: type):
        result = await self.call(function_name, data)
        try:
            return model.model_validate(result or {})
        except ValidationError as e:
            logger.warning(f"{function_name} response failed validation: {e}")
            raise CloudFunctionError(function_name, f"{function_name} returned unexpected data") from e

    async def find_writing_program(self, website: str, use_ai_fallback: bool = True) -> WritingProgramSearch:
        """Find candidate writing-program URLs for a website."""
        return await self._call_model(
            FIND_WRITING_PROGRAM,
            {"website": website, "useAiFallback": use_ai_fallback},
            WritingProgramSearch,
        )

    async def analyze_writing_program_details(
        self,
        program_url: str,
        company_id: Optional[str] = None,
        lead_id: Optional[str] = None,
    ) -> WritingProgramAnalysis:
        """Analyze a writing-program page (payment, open status, requirements)."""
        return await self._call_model(
            ANALYZE_WRITING_PROGRAM,
            {"programUrl": program_url, "companyId": company_id, "leadId": lead_id},
            WritingProgramAnalysis,
        )

    async def qualify_company_blog(self, company_name: str, website: str) -> BlogQualification:
        """Run the blog activity and quality analysis for a company."""
        return await self._call_model(
            QUALIFY_COMPANY_BLOG,
            {"companyName": company_name, "website": website},
            BlogQualification,
        )
