"""
Unit tests for src/services/bulk_writing_program_service.py

The cloud functions client is a MagicMock with AsyncMock methods returning
real response models; repositories are MagicMocks.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.common.batch_runner import BatchOperationRunner
from src.common.cancellation import CancellationToken
from src.common.cloud_functions import WritingProgramAnalysis, WritingProgramSearch
from src.common.field_mapping import FieldMapping
from src.common.progress import ProgressPhase, ProgressStatus
from src.services.bulk_writing_program_service import (
    ANALYSIS_FIELD,
    NO_WEBSITE_MESSAGE,
    WritingProgramBulkService,
    analyze_writing_programs,
    build_not_found_marker,
    find_writing_programs,
    resolve_search_website,
)
from src.services.two_phase_pipeline import select_none

SEARCH_RESULTS = {
    "acme.com": {
        "website": "acme.com",
        "validUrls": [{"url": "https://acme.com/write-for-us", "exists": True, "status": 200}],
        "aiSuggestions": [{"url": "https://acme.com/community", "confidence": "high"}],
        "usedAiFallback": True,
        "costInfo": {"totalCost": 0.002},
    },
    "globex.com": {"website": "globex.com", "costInfo": {"totalCost": 0.001}},
}


async def fake_find(website, use_ai_fallback=True):
    return WritingProgramSearch.model_validate(SEARCH_RESULTS.get(website, {"website": website}))


async def fake_analyze(program_url, company_id=None, lead_id=None):
    return WritingProgramAnalysis.model_validate({
        "programUrl": program_url,
        "hasProgram": True,
        "isOpen": True,
        "payment": {"amount": "$300", "method": "PayPal"},
        "requirements": ["Original content"],
        "costInfo": {"totalCost": 0.01},
    })


@pytest.fixture
def client():
    mock = MagicMock()
    mock.find_writing_program = AsyncMock(side_effect=fake_find)
    mock.analyze_writing_program_details = AsyncMock(side_effect=fake_analyze)
    return mock


@pytest.fixture
def repository():
    return MagicMock()


@pytest.fixture
def runs_repository():
    return MagicMock()


@pytest.fixture
def runner(fast_options, recording_sleep):
    return BatchOperationRunner(fast_options, sleep=recording_sleep)


@pytest.fixture
def companies():
    return [
        {"id": "acme", "name": "Acme", "website": "acme.com"},
        {"id": "globex", "name": "Globex", "website": "globex.com"},
        {"id": "initech", "name": "Initech", "website": ""},
        {
            "id": "umbrella",
            "name": "Umbrella",
            "website": "umbrella.com",
            "customFields": {"Community Program": "https://umbrella.com/contributors"},
        },
    ]


@pytest.fixture
def service(client, repository, runs_repository, runner):
    return WritingProgramBulkService(
        client,
        repository=repository,
        field_mapping=FieldMapping(program_url_field="Community Program"),
        runner=runner,
        runs_repository=runs_repository,
    )


def saved_fields(repository):
    """company_id -> fields passed to update_company."""
    return {call.args[0]: call.args[1] for call in repository.update_company.call_args_list}


class TestResolveSearchWebsite:
    """Tests for resolve_search_website."""

    def test_prefers_website(self):
        assert resolve_search_website({"id": "a", "website": "acme.com"}) == "acme.com"

    def test_falls_back_to_stored_program_url(self):
        """The domain of a stored program URL is used when there is no website."""
        company = {"id": "a", "website": "", ANALYSIS_FIELD: {"programUrl": "https://www.acme.com/write"}}
        assert resolve_search_website(company) == "acme.com"

    def test_nothing_available(self):
        assert resolve_search_website({"id": "a"}) is None


class TestExecute:
    """Tests for WritingProgramBulkService.execute."""

    @pytest.mark.asyncio
    async def test_full_run(self, service, client, repository, runs_repository, companies, event_log):
        """Analyzed, not-found, no-website and mapped companies in one run."""
        result = await service.execute(companies, on_progress=event_log)

        assert result.success is True
        assert result.operation == "bulk-writing-programs"
        assert result.item_count == 4
        summary = result.data["summary"]
        assert summary["total"] == 4
        assert summary["analyzed"] == 2
        assert summary["skipped"] == 1
        assert summary["failed"] == 1
        assert summary["saved"] == 2
        assert summary["marked_not_found"] == 1
        assert summary["persist_errors"] == 0
        assert result.cost_usd == pytest.approx(0.023)

        # The mapped company is never searched
        searched = [call.args[0] for call in client.find_writing_program.await_args_list]
        assert sorted(searched) == ["acme.com", "globex.com"]

        fields = saved_fields(repository)
        acme_doc = fields["acme"][ANALYSIS_FIELD]
        assert acme_doc["programUrl"] == "https://acme.com/write-for-us"
        assert acme_doc["hasProgram"] is True
        assert "lastAnalyzedAt" in acme_doc
        assert fields["umbrella"][ANALYSIS_FIELD]["programUrl"] == "https://umbrella.com/contributors"
        marker = fields["globex"][ANALYSIS_FIELD]
        assert marker["hasProgram"] is False
        assert marker["programUrl"] is None
        assert "lastSearchedAt" in marker
        assert "initech" not in fields

        records = {r["item_id"]: r for r in result.data["companies"]}
        assert records["acme"]["summary"] == "$300 - Open"
        assert records["umbrella"]["candidate_source"] == "mapped"
        assert records["initech"]["state"] == "discovery_failed"
        assert records["initech"]["error"] == NO_WEBSITE_MESSAGE
        assert records["globex"]["skip_reason"] == "no_candidates"

        runs_repository.insert_one.assert_called_once()
        run_doc = runs_repository.insert_one.call_args.args[0]
        assert run_doc["operation"] == "bulk-writing-programs"
        assert run_doc["summary"]["analyzed"] == 2

        finding = {e.item_id: e.message for e in event_log.events
                   if e.phase == ProgressPhase.FINDING and e.status == ProgressStatus.SUCCESS}
        assert finding["acme"] == "Found 2 URLs"
        assert finding["globex"] == "No URLs found"
        assert finding["umbrella"] == "Found URL in mapped field"

    @pytest.mark.asyncio
    async def test_missing_website_is_not_retried(self, service, client, companies):
        """A company without a website fails once, without a search call."""
        result = await service.execute([companies[2]])

        record = result.data["companies"][0]
        assert record["state"] == "discovery_failed"
        assert record["error"] == NO_WEBSITE_MESSAGE
        client.find_writing_program.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mapped_field_can_be_ignored(self, service, client, companies):
        """use_mapped_field=False searches every company."""
        await service.execute([companies[3]], use_mapped_field=False)

        client.find_writing_program.assert_awaited_once_with("umbrella.com", use_ai_fallback=True)

    @pytest.mark.asyncio
    async def test_existing_program_not_overwritten_by_marker(self, service, repository):
        """A company that already has a program keeps it when a search finds nothing."""
        company = {
            "id": "globex",
            "name": "Globex",
            "website": "globex.com",
            ANALYSIS_FIELD: {"hasProgram": True, "programUrl": "https://globex.com/old-program"},
        }

        result = await service.execute([company])

        assert result.data["summary"]["marked_not_found"] == 0
        repository.update_company.assert_not_called()

    @pytest.mark.asyncio
    async def test_persist_failure_does_not_fail_run(self, service, repository, companies):
        """Database errors are collected per company."""
        repository.update_company.side_effect = Exception("write conflict")

        result = await service.execute(companies[:2])

        assert result.success is True
        assert result.data["summary"]["saved"] == 0
        assert result.data["summary"]["persist_errors"] == 2
        records = {r["item_id"]: r for r in result.data["companies"]}
        assert records["acme"]["persist_error"] == "write conflict"
        operations = {e["item_id"]: e["operation"] for e in result.data["errors"]}
        assert operations == {"acme": "persist_analysis", "globex": "persist_search_marker"}

    @pytest.mark.asyncio
    async def test_select_none_skips_analysis(self, service, client, companies):
        result = await service.execute(companies[:1], selector=select_none)

        assert result.data["summary"]["skip_reasons"] == {"not_selected": 1}
        client.analyze_writing_program_details.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_selector_error_fails_run(self, service, runs_repository, companies):
        """An exception outside item processing produces an error result, still recorded."""
        def broken_selector(items):
            raise RuntimeError("selector crashed")

        result = await service.execute(companies[:1], selector=broken_selector)

        assert result.success is False
        assert result.error == "selector crashed"
        runs_repository.insert_one.assert_called_once()

    @pytest.mark.asyncio
    async def test_track_runs_disabled(self, client, repository, runs_repository, runner, companies):
        service = WritingProgramBulkService(
            client, repository=repository, runner=runner,
            runs_repository=runs_repository, track_runs=False,
        )

        await service.execute(companies[:1])

        runs_repository.insert_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_run(self, service, client, companies):
        """A pre-cancelled token stops the run before any remote call."""
        token = CancellationToken()
        token.cancel("User closed the dialog")

        result = await service.execute(companies[:2], cancel_token=token)

        assert result.success is True
        assert result.data["summary"]["failed"] == 2
        client.find_writing_program.assert_not_awaited()


class TestStandalonePhases:
    """Tests for find_writing_programs and analyze_writing_programs."""

    @pytest.mark.asyncio
    async def test_find_writing_programs(self, client, runner, companies):
        found = await find_writing_programs(companies[:3], client, field_mapping=FieldMapping(), runner=runner)

        assert list(found) == ["acme", "globex", "initech"]
        assert found["acme"].candidate_urls == ["https://acme.com/write-for-us", "https://acme.com/community"]
        assert found["acme"].to_dict()["used_ai_fallback"] is True
        assert found["acme"].cost_usd == pytest.approx(0.002)
        assert found["globex"].success is True
        assert found["globex"].candidate_urls == []
        assert found["initech"].success is False
        assert found["initech"].error == NO_WEBSITE_MESSAGE
        assert found["initech"].attempts == 1

    @pytest.mark.asyncio
    async def test_find_uses_mapped_field(self, client, runner, companies, event_log):
        """A mapped program URL is taken as found without a search."""
        found = await find_writing_programs(
            [companies[0], companies[3]],
            client,
            on_progress=event_log,
            field_mapping=FieldMapping(program_url_field="Community Program"),
            runner=runner,
            use_mapped_field=True,
        )

        assert list(found) == ["acme", "umbrella"]
        assert found["umbrella"].candidate_urls == ["https://umbrella.com/contributors"]
        assert found["umbrella"].to_dict()["url_source"] == "mapped"
        assert found["umbrella"].attempts == 0
        assert found["acme"].to_dict()["url_source"] == "searched"
        client.find_writing_program.assert_awaited_once()
        umbrella = [(e.status, e.message) for e in event_log.events if e.item_id == "umbrella"]
        assert umbrella[-1] == (ProgressStatus.SUCCESS, "Found URL in mapped field")

    @pytest.mark.asyncio
    async def test_find_rejects_duplicates(self, client, runner, companies):
        with pytest.raises(ValueError, match="Duplicate"):
            await find_writing_programs([companies[0], companies[0]], client, runner=runner)

    @pytest.mark.asyncio
    async def test_analyze_writing_programs(self, client, runner, companies):
        analyzed = await analyze_writing_programs(
            {"acme": "https://acme.com/write-for-us"}, client, companies=companies, runner=runner
        )

        result = analyzed["acme"]
        assert result.success is True
        assert result.company_name == "Acme"
        assert result.to_dict()["summary"] == "$300 - Open"
        client.analyze_writing_program_details.assert_awaited_once_with(
            "https://acme.com/write-for-us", company_id="acme"
        )

    @pytest.mark.asyncio
    async def test_analyze_failure_is_retried(self, client, runner, recording_sleep):
        """Retryable errors are retried up to max_retries before failing."""
        client.analyze_writing_program_details = AsyncMock(side_effect=RuntimeError("upstream timeout"))

        analyzed = await analyze_writing_programs({"acme": "https://acme.com/x"}, client, runner=runner)

        assert analyzed["acme"].success is False
        assert analyzed["acme"].error == "upstream timeout"
        assert analyzed["acme"].attempts == 3
        assert analyzed["acme"].company_name == "acme"
        assert recording_sleep.calls == [0.1, 0.2]


class TestNotFoundMarker:
    def test_marker_shape(self):
        marker = build_not_found_marker()
        assert marker["hasProgram"] is False
        assert marker["payment"]["amount"] is None
        assert marker["lastAnalyzedAt"] == marker["lastSearchedAt"]
