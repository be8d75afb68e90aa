"""
Analyze company blogs in bulk.

Usage:
    python scripts/bulk_blog_analysis.py acme globex
    python scripts/bulk_blog_analysis.py acme --skip-recent-days 0   # Re-analyze everything
    python scripts/bulk_blog_analysis.py acme --blog-url-field "Blog"
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
from src.common.field_mapping import FieldMapping
from src.common.logger import setup_logging
from src.common.progress import ProgressEvent, ProgressStatus
from src.common.repositories import get_company_repository
from src.services.bulk_blog_analysis_service import BulkBlogAnalysisService


def print_progress(event: ProgressEvent) -> None:
    if event.status in (ProgressStatus.PENDING, ProgressStatus.RUNNING):
        return
    icon = {"success": "✓", "error": "✗", "skipped": "–"}[event.status.value]
    cost = f" (${event.cost_usd:.4f})" if event.cost_usd else ""
    print(f"  {icon} {event.item_id}: {event.message or ''}{cost}")


async def run(args) -> int:
    companies = get_company_repository().find_by_ids(args.company_ids)
    if not companies:
        print("❌ No companies found.")
        return 1

    mapping = FieldMapping(
        website_custom_field=args.website_field or Config.WEBSITE_CUSTOM_FIELD,
        program_url_field=Config.PROGRAM_URL_FIELD,
        blog_url_field=args.blog_url_field or Config.BLOG_URL_FIELD,
    )

    cancel_token = CancellationToken()
    asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel_token.cancel, "Interrupted by user")

    print(f"📝 Analyzing blogs for {len(companies)} companies\n")
    async with CloudFunctionsClient() as client:
        service = BulkBlogAnalysisService(
            client,
            options=BatchOptions.from_config(batch_size=args.batch_size),
            field_mapping=mapping,
        )
        result = await service.execute(
            companies,
            skip_recent_days=args.skip_recent_days,
            on_progress=print_progress,
            cancel_token=cancel_token,
        )

    print("\n" + "=" * 70)
    if not result.success:
        print(f"❌ Run failed: {result.error}")
        return 1
    summary = result.data["summary"]
    print(f"📊 {summary['analyzed']} analyzed, {summary['skipped']} skipped, {summary['failed']} failed")
    print(f"   Cost: ${result.cost_usd:.4f}, duration: {result.duration_ms / 1000:.1f}s")
    return 0


def main():
    """Main CLI function."""
    parser = argparse.ArgumentParser(description="Analyze company blogs in bulk")
    parser.add_argument("company_ids", nargs="+", help="Company IDs to process")
    parser.add_argument(
        "--skip-recent-days",
        type=int,
        default=Config.BLOG_SKIP_RECENT_DAYS,
        help="Skip companies analyzed within this many days (0 = analyze all)"
    )
    parser.add_argument("--website-field", help="Custom field holding the website")
    parser.add_argument("--blog-url-field", help="Custom field holding the blog URL")
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
