"""
Unit tests for src/services/bulk_blog_analysis_service.py
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.common.batch_runner import BatchOperationRunner
from src.common.cloud_functions import BlogQualification
from src.common.field_mapping import FieldMapping
from src.common.progress import ProgressPhase, ProgressStatus
from src.services.bulk_blog_analysis_service import (
    ANALYSIS_FIELD,
    NO_WEBSITE_MESSAGE,
    NOTHING_FOUND_MESSAGE,
    BulkBlogAnalysisService,
    resolve_blog_url,
    transform_blog_result,
    was_recently_analyzed,
)

QUALIFICATIONS = {
    "acme.com": {
        "companyName": "Acme",
        "website": "acme.com",
        "hasActiveBlog": True,
        "blogPostCount": 6,
        "lastBlogCreatedAt": "2025-02-20T10:00:00Z",
        "authorCount": 2,
        "authorNames": "Ada Lovelace, Grace Hopper",
        "authorsAreEmployees": "employees",
        "isDeveloperB2BSaas": True,
        "coversAiTopics": True,
        "contentSummary": "Deep dives on query engines",
        "rssFeedUrl": "https://acme.com/rss.xml",
        "analysisMethod": "RSS",
        "technicalDepth": "advanced",
        "costInfo": {"totalCost": 0.004, "totalTokens": 1800},
    },
    "globex.com": {
        "companyName": "Globex",
        "website": "globex.com",
        "blogPostCount": 4,
        "rssFeedUrl": "https://globex.com/feed",
        "analysisMethod": "RSS",
    },
    "hooli.com": {"companyName": "Hooli", "website": "hooli.com", "blogPostCount": 0},
}


async def fake_qualify(company_name, website):
    return BlogQualification.model_validate(QUALIFICATIONS.get(website, {"website": website}))


@pytest.fixture
def client():
    mock = MagicMock()
    mock.qualify_company_blog = AsyncMock(side_effect=fake_qualify)
    return mock


@pytest.fixture
def repository():
    return MagicMock()


@pytest.fixture
def runs_repository():
    return MagicMock()


@pytest.fixture
def service(client, repository, runs_repository, fast_options, recording_sleep):
    return BulkBlogAnalysisService(
        client,
        repository=repository,
        field_mapping=FieldMapping(),
        runner=BatchOperationRunner(fast_options, sleep=recording_sleep),
        runs_repository=runs_repository,
    )


@pytest.fixture
def companies():
    recent = datetime.utcnow() - timedelta(days=2)
    return [
        {"id": "acme", "name": "Acme", "website": "acme.com"},
        {
            "id": "globex",
            "name": "Globex",
            "website": "globex.com",
            ANALYSIS_FIELD: {"lastAnalyzedAt": recent, "monthlyFrequency": 4},
        },
        {"id": "initech", "name": "Initech", "website": ""},
        {"id": "hooli", "name": "Hooli", "website": "hooli.com"},
    ]


class TestTransformBlogResult:
    """Tests for transform_blog_result."""

    def test_full_result(self):
        result = BlogQualification.model_validate(QUALIFICATIONS["acme.com"])

        analysis = transform_blog_result(result, "https://acme.com/blog")

        assert analysis["monthlyFrequency"] == 6
        assert analysis["lastActivePost"] == "2025-02-20T10:00:00Z"
        assert analysis["writers"] == {
            "count": 2,
            "areEmployees": True,
            "areFreelancers": False,
            "list": ["Ada Lovelace", "Grace Hopper"],
        }
        assert analysis["blogNature"]["isTechnical"] is True
        assert analysis["blogNature"]["rating"] == "high"
        assert analysis["blogUrl"] == "https://acme.com/blog"
        assert analysis["analysisMethod"] == "RSS"
        assert analysis["costInfo"] == {"totalCost": 0.004, "totalTokens": 1800}
        assert isinstance(analysis["lastAnalyzedAt"], datetime)

    @pytest.mark.parametrize("b2b,ai,expected", [
        (True, True, "high"),
        (True, False, "medium"),
        (False, True, "medium"),
        (False, False, "low"),
    ])
    def test_rating_fallback(self, b2b, ai, expected):
        """Without a quality rating, the B2B and AI flags decide it."""
        result = BlogQualification(isDeveloperB2BSaas=b2b, coversAiTopics=ai)
        assert transform_blog_result(result, "x.com")["blogNature"]["rating"] == expected

    def test_explicit_rating_wins(self):
        result = BlogQualification(contentQualityRating="low", isDeveloperB2BSaas=True, coversAiTopics=True)
        assert transform_blog_result(result, "x.com")["blogNature"]["rating"] == "low"

    def test_defaults_for_sparse_result(self):
        """Missing fields fall back to safe defaults."""
        analysis = transform_blog_result(BlogQualification(authorsAreEmployees="mixed"), "x.com")

        assert analysis["analysisMethod"] == "Unknown"
        assert analysis["writers"]["list"] == []
        assert analysis["writers"]["areEmployees"] is True
        assert analysis["writers"]["areFreelancers"] is True
        assert analysis["blogNature"]["reasoning"] == "No detailed reasoning provided by analysis"
        assert analysis["rssFeedUrl"] is None
        assert "costInfo" not in analysis


class TestResolveBlogUrl:
    """Tests for resolve_blog_url priority."""

    @pytest.fixture
    def company(self):
        return {
            "id": "acme",
            "website": "acme.io",
            "customFields": {"Blog": "https://acme.com/engineering", "Site": "https://acme.com"},
        }

    def test_blog_field_first(self, company):
        mapping = FieldMapping(website_custom_field="Site", blog_url_field="Blog")
        assert resolve_blog_url(company, mapping) == "https://acme.com/engineering"

    def test_then_mapped_website(self, company):
        assert resolve_blog_url(company, FieldMapping(website_custom_field="Site")) == "https://acme.com"

    def test_then_top_level_website(self, company):
        """A blank mapped website falls back to the top-level field."""
        company["customFields"]["Site"] = " "
        assert resolve_blog_url(company, FieldMapping(website_custom_field="Site")) == "acme.io"

    def test_nothing(self):
        assert resolve_blog_url({"id": "x", "website": " "}) is None


class TestWasRecentlyAnalyzed:
    """Tests for the skip-recent check."""

    NOW = datetime(2025, 3, 10, 12, 0)

    @pytest.mark.parametrize("analyzed_at,expected", [
        (datetime(2025, 3, 8, 12, 0), True),
        (datetime(2025, 3, 1, 12, 0), False),
        ("2025-03-09T00:00:00Z", True),
        (datetime(2025, 3, 9, 12, 0, tzinfo=timezone.utc), True),
        ("not a date", False),
        (None, False),
    ])
    def test_recent(self, analyzed_at, expected):
        company = {"id": "a", ANALYSIS_FIELD: {"lastAnalyzedAt": analyzed_at}}
        assert was_recently_analyzed(company, 7, now=self.NOW) is expected

    def test_never_analyzed(self):
        assert was_recently_analyzed({"id": "a"}, 7, now=self.NOW) is False


class TestExecute:
    """Tests for BulkBlogAnalysisService.execute."""

    @pytest.mark.asyncio
    async def test_mixed_run(self, service, client, repository, runs_repository, companies, event_log,
                             recording_sleep):
        """Analyzed, recently analyzed, no website and nothing-found companies."""
        result = await service.execute(companies, on_progress=event_log)

        assert result.success is True
        assert result.operation == "bulk-blog-analysis"
        assert result.data["summary"] == {
            "total": 4,
            "analyzed": 1,
            "skipped": 1,
            "failed": 2,
            "total_cost": 0.004,
        }
        assert result.cost_usd == pytest.approx(0.004)

        records = {r["company_id"]: r for r in result.data["companies"]}
        assert records["acme"]["status"] == "analyzed"
        assert records["acme"]["monthly_frequency"] == 6
        assert records["acme"]["blog_url"] == "acme.com"
        assert records["globex"] == {
            "company_id": "globex",
            "company_name": "Globex",
            "status": "skipped",
            "success": True,
            "monthly_frequency": 4,
            "analysis": companies[1][ANALYSIS_FIELD],
        }
        assert records["initech"]["error"] == NO_WEBSITE_MESSAGE
        assert records["initech"]["attempts"] == 1
        assert records["hooli"]["error"] == NOTHING_FOUND_MESSAGE
        assert records["hooli"]["attempts"] == 3
        assert sorted(recording_sleep.calls) == [0.1, 0.2]

        # Only the successful analysis is stored
        repository.update_company.assert_called_once()
        company_id, fields = repository.update_company.call_args.args
        assert company_id == "acme"
        assert fields[ANALYSIS_FIELD]["monthlyFrequency"] == 6

        called_sites = sorted(call.args[1] for call in client.qualify_company_blog.await_args_list)
        assert called_sites == ["acme.com", "hooli.com", "hooli.com", "hooli.com"]

        runs_repository.insert_one.assert_called_once()

        by_company = {}
        for e in event_log.events:
            assert e.phase == ProgressPhase.BLOG_ANALYSIS
            by_company.setdefault(e.item_id, []).append(e)
        assert [(e.status, e.message) for e in by_company["globex"]] == [
            (ProgressStatus.SKIPPED, "Already analyzed (4 posts/mo)")
        ]
        assert [e.status for e in by_company["acme"]] == [
            ProgressStatus.PENDING, ProgressStatus.RUNNING, ProgressStatus.SUCCESS,
        ]
        assert by_company["acme"][1].message == "Analyzing blog..."
        assert by_company["acme"][-1].message == "6 posts/mo"
        assert by_company["acme"][-1].cost_usd == pytest.approx(0.004)

    @pytest.mark.asyncio
    async def test_running_reported_once_across_retries(self, service, client, companies, event_log):
        """A company retried three times still gets a single RUNNING event."""
        await service.execute([companies[3]], on_progress=event_log)

        assert client.qualify_company_blog.await_count == 3
        running = [e for e in event_log.events if e.status == ProgressStatus.RUNNING]
        assert [(e.item_id, e.message) for e in running] == [("hooli", "Analyzing blog...")]

    @pytest.mark.asyncio
    async def test_skip_recent_disabled(self, service, client, companies):
        """skip_recent_days=0 analyzes every company."""
        result = await service.execute(companies[:2], skip_recent_days=0)

        assert result.data["summary"]["skipped"] == 0
        assert result.data["summary"]["analyzed"] == 2
        assert client.qualify_company_blog.await_count == 2

    @pytest.mark.asyncio
    async def test_skip_recent_default_from_config(self, service, client, companies):
        """The Config default (7 days) applies when no value is passed."""
        result = await service.execute([companies[1]])

        assert result.data["summary"]["skipped"] == 1
        client.qualify_company_blog.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persist_failure_is_retried(self, service, repository, companies):
        """Saving happens inside the operation, so a database error is retried and reported."""
        repository.update_company.side_effect = Exception("db down")

        result = await service.execute(companies[:1])

        record = result.data["companies"][0]
        assert record["status"] == "failed"
        assert record["error"] == "db down"
        assert record["attempts"] == 3
        assert repository.update_company.call_count == 3

    @pytest.mark.asyncio
    async def test_blog_url_mapping_used(self, client, repository, runs_repository, fast_options, recording_sleep):
        """The mapped blog URL is what gets analyzed."""
        service = BulkBlogAnalysisService(
            client,
            repository=repository,
            field_mapping=FieldMapping(blog_url_field="Blog"),
            runner=BatchOperationRunner(fast_options, sleep=recording_sleep),
            runs_repository=runs_repository,
        )
        company = {"id": "acme", "name": "Acme", "website": "acme.com",
                   "customFields": {"Blog": "acme.com"}}

        await service.execute([company])

        client.qualify_company_blog.assert_awaited_once_with("Acme", "acme.com")
