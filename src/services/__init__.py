"""
Services module for bulk company operations.

Each service extends OperationService to provide consistent
execution, cost tracking, and persistence for bulk runs.
"""

from src.services.operation_base import OperationResult, OperationService, OperationTimer
from src.services.two_phase_pipeline import (
    PipelineItem,
    PipelineOutcome,
    PipelineSummary,
    TwoPhasePipeline,
    select_first_candidate,
    select_none,
)
from src.services.bulk_writing_program_service import (
    WritingProgramBulkService,
    analyze_writing_programs,
    find_writing_programs,
)
from src.services.bulk_blog_analysis_service import (
    BulkBlogAnalysisService,
    transform_blog_result,
)

__all__ = [
    # Base classes
    "OperationResult",
    "OperationService",
    "OperationTimer",
    # Two-phase pipeline
    "PipelineItem",
    "PipelineOutcome",
    "PipelineSummary",
    "TwoPhasePipeline",
    "select_first_candidate",
    "select_none",
    # Services
    "WritingProgramBulkService",
    "find_writing_programs",
    "analyze_writing_programs",
    "BulkBlogAnalysisService",
    "transform_blog_result",
]
