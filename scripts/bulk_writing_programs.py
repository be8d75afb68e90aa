"""
Find and analyze writing programs for companies in MongoDB.

Usage:
    python scripts/bulk_writing_programs.py acme globex            # Pick URLs interactively
    python scripts/bulk_writing_programs.py acme globex --auto-select
    python scripts/bulk_writing_programs.py acme --find-only       # Discovery only, nothing saved
    python scripts/bulk_writing_programs.py acme --program-url-field "Community URL"
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.common.batch_runner import BatchOptions
from src.common.cancellation import CancellationToken
from src.common.cloud_functions import CloudFunctionsClient
from src.common.config import Config
from src.common.field_mapping import (
    FieldMapping,
    get_potential_program_url_fields,
    get_potential_website_fields,
)
from src.common.logger import setup_logging
from src.common.progress import ProgressEvent, ProgressStatus
from src.common.repositories import get_company_repository
from src.services.bulk_writing_program_service import (
    WritingProgramBulkService,
    find_writing_programs,
)
from src.services.two_phase_pipeline import select_first_candidate

STATUS_ICONS = {
    ProgressStatus.PENDING: "…",
    ProgressStatus.RUNNING: "▶",
    ProgressStatus.SUCCESS: "✓",
    ProgressStatus.ERROR: "✗",
    ProgressStatus.SKIPPED: "–",
}


def print_progress(event: ProgressEvent) -> None:
    """Print one progress line per terminal event."""
    if event.status == ProgressStatus.PENDING:
        return
    cost = f" (${event.cost_usd:.4f})" if event.cost_usd else ""
    print(f"  {STATUS_ICONS[event.status]} [{event.phase.value}] {event.item_id}: {event.message or ''}{cost}")


async def prompt_selection(items: dict) -> dict:
    """
    Ask for one URL per company.

    Enter = first URL, a number = that URL, s = skip, or paste any URL.
    Input is read on a worker thread so Ctrl+C still reaches the loop.
    """
    loop = asyncio.get_running_loop()
    choices = {}
    print("\n" + "=" * 70)
    print("SELECT PROGRAM URLS")
    print("=" * 70)
    for item_id, item in items.items():
        print(f"\n{item.payload.get('name') or item_id}:")
        for index, url in enumerate(item.candidates, 1):
            print(f"  {index}. {url}")
        prompt = f"Select [1-{len(item.candidates)}], s to skip, or paste a URL (default 1): "
        answer = (await loop.run_in_executor(None, input, prompt)).strip()

        if not answer:
            choices[item_id] = item.candidates[0]
        elif answer.lower() == "s":
            choices[item_id] = None
        elif answer.isdigit() and 1 <= int(answer) <= len(item.candidates):
            choices[item_id] = item.candidates[int(answer) - 1]
        elif answer.startswith("http"):
            choices[item_id] = answer
        else:
            print("  Unrecognized answer, skipping")
            choices[item_id] = None
    return choices


async def run(args) -> int:
    companies = get_company_repository().find_by_ids(args.company_ids)
    missing = set(args.company_ids) - {company["id"] for company in companies}
    if missing:
        print(f"⚠️  Companies not found: {', '.join(sorted(missing))}")
    if not companies:
        print("❌ No companies to process.")
        return 1

    if args.suggest_fields:
        print(f"Website fields: {', '.join(get_potential_website_fields(companies)) or 'none'}")
        print(f"Program URL fields: {', '.join(get_potential_program_url_fields(companies)) or 'none'}")
        return 0

    mapping = FieldMapping(
        website_custom_field=args.website_field or Config.WEBSITE_CUSTOM_FIELD,
        program_url_field=args.program_url_field or Config.PROGRAM_URL_FIELD,
        blog_url_field=Config.BLOG_URL_FIELD,
    )
    options = BatchOptions.from_config(batch_size=args.batch_size)

    cancel_token = CancellationToken()
    asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel_token.cancel, "Interrupted by user")

    print(f"🔍 Processing {len(companies)} companies (batch size {options.batch_size})\n")

    async with CloudFunctionsClient() as client:
        if args.find_only:
            found = await find_writing_programs(
                companies, client, on_progress=print_progress, options=options,
                field_mapping=mapping, cancel_token=cancel_token, use_mapped_field=not args.no_mapped_field,
            )
            print("\n" + "=" * 70)
            for result in found.values():
                print(f"{result.company_name}: {', '.join(result.candidate_urls) or result.error or 'No URLs found'}")
            return 0

        service = WritingProgramBulkService(client, options=options, field_mapping=mapping)
        result = await service.execute(
            companies,
            selector=select_first_candidate if args.auto_select else prompt_selection,
            use_mapped_field=not args.no_mapped_field,
            on_progress=print_progress,
            cancel_token=cancel_token,
        )

    print("\n" + "=" * 70)
    if not result.success:
        print(f"❌ Run failed: {result.error}")
        return 1

    summary = result.data["summary"]
    print(f"📊 {summary['analyzed']} analyzed, {summary['skipped']} skipped, {summary['failed']} failed")
    print(f"   Saved: {summary['saved']}, marked not found: {summary['marked_not_found']}")
    print(f"   Cost: ${result.cost_usd:.4f}, duration: {result.duration_ms / 1000:.1f}s")
    for company in result.data["companies"]:
        detail = company.get("summary") or company.get("error") or company.get("skip_reason") or ""
        print(f"   {company['company_name']:<30} {company['state']:<16} {detail}")
    return 0


def main():
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Find and analyze writing programs for companies"
    )
    parser.add_argument("company_ids", nargs="+", help="Company IDs to process")
    parser.add_argument(
        "--auto-select",
        action="store_true",
        help="Use the first URL found for every company instead of prompting"
    )
    parser.add_argument(
        "--find-only",
        action="store_true",
        help="Only search for program URLs; nothing is analyzed or saved"
    )
    parser.add_argument(
        "--no-mapped-field",
        action="store_true",
        help="Search even when the mapped program URL field is set"
    )
    parser.add_argument(
        "--suggest-fields",
        action="store_true",
        help="List custom fields that look like website or program URL fields, then exit"
    )
    parser.add_argument("--website-field", help="Custom field holding the website")
    parser.add_argument("--program-url-field", help="Custom field holding a known program URL")
    parser.add_argument("--batch-size", type=int, help="Companies per batch")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    setup_logging(debug=args.debug)

    try:
        Config.validate()
    except ValueError as e:
        print(f"❌ {e}")
        sys.exit(1)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
