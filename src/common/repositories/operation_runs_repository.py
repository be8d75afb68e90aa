"""
Operation Runs Repository

Repository interface for the operation_runs collection.
Stores bulk run records for cost tracking and auditing.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pymongo import MongoClient

from src.common.config import Config

from .base import WriteResult

logger = logging.getLogger(__name__)


class OperationRunsRepositoryInterface(ABC):
    """
    Abstract interface for operation runs collection.

    The operation_runs collection stores one record per bulk run
    (run_id, operation, item counts, success, cost, duration).
    """

    @abstractmethod
    def insert_one(self, document: Dict[str, Any]) -> WriteResult:
        """
        Insert a new operation run record.

        Args:
            document: The operation run document

        Returns:
            WriteResult with upserted_id set to the new document's _id
        """
        pass

    @abstractmethod
    def find_by_run_id(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Find a specific operation run by run ID."""
        pass

    @abstractmethod
    def find_recent(self, operation: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Find the most recent runs, newest first.

        Args:
            operation: Only runs of this operation (all if None)
            limit: Maximum number of records to return
        """
        pass


class AtlasOperationRunsRepository(OperationRunsRepositoryInterface):
    """
    Atlas MongoDB implementation of OperationRunsRepository.
    """

    _client: Optional[MongoClient] = None

    def __init__(
        self,
        mongodb_uri: Optional[str] = None,
        database: Optional[str] = None,
        collection: str = "operation_runs",
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
        if AtlasOperationRunsRepository._client is None:
            AtlasOperationRunsRepository._client = MongoClient(self._mongodb_uri)
            logger.info("Created new MongoDB client for operation_runs repository")
        return AtlasOperationRunsRepository._client

    def _get_collection(self):
        """Get the operation_runs collection."""
        client = self._get_client()
        return client[self._database][self._collection_name]

    @classmethod
    def reset_connection(cls) -> None:
        """Reset the MongoDB client connection."""
        if cls._client is not None:
            cls._client.close()
            cls._client = None
            logger.info("Operation runs repository connection reset")

    def insert_one(self, document: Dict[str, Any]) -> WriteResult:
        """Insert a new operation run record."""
        try:
            collection = self._get_collection()
            result = collection.insert_one(document)
            return WriteResult(
                matched_count=0,
                modified_count=0,
                upserted_id=str(result.inserted_id),
            )
        except Exception as e:
            logger.error(f"Error inserting operation run: {e}")
            raise

    def find_by_run_id(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._get_collection().find_one({"run_id": run_id})

    def find_recent(self, operation: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = {"operation": operation} if operation else {}
        cursor = self._get_collection().find(query).sort([("timestamp", -1)])
        if limit > 0:
            cursor = cursor.limit(limit)
        return list(cursor)


# Singleton instance
_operation_runs_repository_instance: Optional[OperationRunsRepositoryInterface] = None


def get_operation_runs_repository() -> OperationRunsRepositoryInterface:
    """
    Get the operation runs repository instance (singleton).

    Returns:
        OperationRunsRepositoryInterface implementation
    """
    global _operation_runs_repository_instance

    if _operation_runs_repository_instance is None:
        _operation_runs_repository_instance = AtlasOperationRunsRepository()
        logger.info("Initialized operation runs repository")

    return _operation_runs_repository_instance


def reset_operation_runs_repository() -> None:
    """Reset the repository singleton."""
    global _operation_runs_repository_instance

    if isinstance(_operation_runs_repository_instance, AtlasOperationRunsRepository):
        AtlasOperationRunsRepository.reset_connection()

    _operation_runs_repository_instance = None
    logger.info("Operation runs repository singleton reset")
