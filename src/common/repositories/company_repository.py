"""
Company Repository

MongoDB implementation of the companies collection used by the bulk
services to load companies and store analysis results.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pymongo import MongoClient
from pymongo.collection import Collection

from src.common.config import Config

from .base import CompanyRepositoryInterface, WriteResult

logger = logging.getLogger(__name__)


def _to_company(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Expose the Mongo `_id` as a string `id`."""
    if document is None:
        return None
    company = dict(document)
    company["id"] = str(company.pop("_id"))
    return company


class AtlasCompanyRepository(CompanyRepositoryInterface):
    """
    Atlas MongoDB implementation of CompanyRepository.

    Connection Management:
    - Uses a class-level MongoClient shared by all instances
    - PyMongo handles connection pooling internally
    """

    _client: Optional[MongoClient] = None

    def __init__(
        self,
        mongodb_uri: Optional[str] = None,
        database: Optional[str] = None,
        collection: str = "companies",
    ):
        """
        Initialize the repository.

        Args:
            mongodb_uri: MongoDB connection string (defaults to Config.MONGODB_URI)
            database: Database name (defaults to Config.MONGODB_DATABASE)
            collection: Collection name
        """
        self._mongodb_uri = mongodb_uri or Config.MONGODB_URI
        self._database = database or Config.MONGODB_DATABASE
        self._collection_name = collection

        if not self._mongodb_uri:
            raise ValueError("MongoDB URI is required")

    def _get_client(self) -> MongoClient:
        """Get or create the MongoDB client (singleton)."""
        if AtlasCompanyRepository._client is None:
            AtlasCompanyRepository._client = MongoClient(self._mongodb_uri)
            logger.info("Created new MongoDB client for companies repository")
        return AtlasCompanyRepository._client

    def _get_collection(self) -> Collection:
        return self._get_client()[self._database][self._collection_name]

    @classmethod
    def reset_connection(cls) -> None:
        """Reset the MongoDB client connection."""
        if cls._client is not None:
            cls._client.close()
            cls._client = None
            logger.info("Companies repository connection reset")

    def find_by_id(self, company_id: str) -> Optional[Dict[str, Any]]:
        return _to_company(self._get_collection().find_one({"_id": company_id}))

    def find_by_ids(self, company_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not company_ids:
            return []
        documents = self._get_collection().find({"_id": {"$in": list(company_ids)}})
        by_id = {company["id"]: company for company in map(_to_company, documents)}
        return [by_id[company_id] for company_id in company_ids if company_id in by_id]

    def update_company(self, company_id: str, fields: Dict[str, Any]) -> WriteResult:
        update = dict(fields)
        update["updatedAt"] = datetime.utcnow()
        result = self._get_collection().update_one({"_id": company_id}, {"$set": update})
        if result.matched_count == 0:
            logger.warning(f"Company {company_id} not found; nothing updated")
        return WriteResult(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
        )


# Singleton instance
_company_repository_instance: Optional[CompanyRepositoryInterface] = None


def get_company_repository() -> CompanyRepositoryInterface:
    """
    Get the company repository instance (singleton).

    Returns:
        CompanyRepositoryInterface implementation

    Raises:
        ValueError: If MongoDB URI is not configured
    """
    global _company_repository_instance

    if _company_repository_instance is None:
        _company_repository_instance = AtlasCompanyRepository()
        logger.info("Initialized company repository")

    return _company_repository_instance


def reset_company_repository() -> None:
    """Reset the repository singleton."""
    global _company_repository_instance

    if isinstance(_company_repository_instance, AtlasCompanyRepository):
        AtlasCompanyRepository.reset_connection()

    _company_repository_instance = None
    logger.info("Company repository singleton reset")
