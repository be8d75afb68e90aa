"""
Repository Pattern for MongoDB Operations

Provides an abstraction layer over MongoDB for the bulk services.

Public API:
- get_company_repository(): Factory to get the companies repository
- get_operation_runs_repository(): Factory to get the operation_runs repository
- CompanyRepositoryInterface: Abstract interface for the companies collection
- WriteResult: Result dataclass for write operations

Usage:
    from src.common.repositories import get_company_repository

    repo = get_company_repository()
    companies = repo.find_by_ids(["acme", "globex"])
    repo.update_company("acme", {"blogAnalysis": {...}})
"""

from .base import CompanyRepositoryInterface, WriteResult
from .company_repository import (
    AtlasCompanyRepository,
    get_company_repository,
    reset_company_repository,
)
from .operation_runs_repository import (
    AtlasOperationRunsRepository,
    OperationRunsRepositoryInterface,
    get_operation_runs_repository,
    reset_operation_runs_repository,
)

__all__ = [
    # Companies
    "CompanyRepositoryInterface",
    "AtlasCompanyRepository",
    "get_company_repository",
    "reset_company_repository",
    # Operation runs
    "OperationRunsRepositoryInterface",
    "AtlasOperationRunsRepository",
    "get_operation_runs_repository",
    "reset_operation_runs_repository",
    # Shared
    "WriteResult",
]
