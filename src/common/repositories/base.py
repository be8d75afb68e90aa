"""
Repository Interface Definitions

Defines the abstract interface for company repository operations so the
bulk services can be run against MongoDB or an in-memory fake without
changing consumer code.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence


@dataclass
class WriteResult:
    """
    Result of a write operation.

    Attributes:
        matched_count: Number of documents that matched the filter
        modified_count: Number of documents actually modified
        upserted_id: ID of upserted/inserted document (if any)
    """
    matched_count: int
    modified_count: int
    upserted_id: Optional[str] = None


class CompanyRepositoryInterface(ABC):
    """
    Abstract interface for the companies collection.

    Company documents carry at least `id` (string), `name` and optionally
    `website`, `customFields`, `writingProgramAnalysis` and `blogAnalysis`.

    All methods follow fail-fast semantics: errors propagate to the caller.
    """

    @abstractmethod
    def find_by_id(self, company_id: str) -> Optional[Dict[str, Any]]:
        """
        Find a single company.

        Args:
            company_id: Company identifier

        Returns:
            Company dict if found, None otherwise
        """
        pass

    @abstractmethod
    def find_by_ids(self, company_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """
        Find several companies, in the order of `company_ids`.

        Missing ids are left out of the result.
        """
        pass

    @abstractmethod
    def update_company(self, company_id: str, fields: Dict[str, Any]) -> WriteResult:
        """
        Set fields on a company document.

        Args:
            company_id: Company identifier
            fields: Top-level fields to set (e.g. {"blogAnalysis": {...}})

        Returns:
            WriteResult with match/modify counts

        Raises:
            Exception: If the database write fails (fail-fast behavior)
        """
        pass
