"""
Document store base - shared plumbing for the MongoDB-backed stores.

Stores receive the database handle explicitly; storage failures (including the
client-side timeout configured in database.py) surface as StorageUnavailable and
are not retried here.
"""
import logging
from contextlib import asynccontextmanager

from pymongo.errors import PyMongoError

from services.errors import StorageUnavailable

logger = logging.getLogger(__name__)


class DocumentStore:
    collection_name: str = ""

    def __init__(self, db):
        self.db = db

    @property
    def collection(self):
        return getattr(self.db, self.collection_name)

    @asynccontextmanager
    async def guarded(self, operation: str):
        """Translate driver errors for one storage call."""
        try:
            yield
        except PyMongoError as e:
            logger.error(f"Storage failure during {self.collection_name}.{operation}: {e}")
            raise StorageUnavailable(
                "Storage is temporarily unavailable",
                details={"operation": operation},
            ) from e
