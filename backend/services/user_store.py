"""User Store - persistence for User documents (identity + subscription fields)."""
import logging
from typing import Optional

from pymongo.errors import DuplicateKeyError

from models import User, utc_now
from services.document_store import DocumentStore
from services.errors import ConflictError

logger = logging.getLogger(__name__)


class UserStore(DocumentStore):
    collection_name = "users"

    async def get(self, user_id: str) -> Optional[User]:
        async with self.guarded("get"):
            doc = await self.collection.find_one({"user_id": user_id, "is_active": True}, {"_id": 0})
        return User(**doc) if doc else None

    async def get_by_email(self, email: str) -> Optional[User]:
        async with self.guarded("get_by_email"):
            doc = await self.collection.find_one(
                {"email": (email or "").strip().lower(), "is_active": True},
                {"_id": 0},
            )
        return User(**doc) if doc else None

    async def insert(self, user: User) -> User:
        user = user.model_copy(update={"email": user.email.lower()})
        async with self.guarded("insert"):
            try:
                await self.collection.insert_one(user.model_dump())
            except DuplicateKeyError as e:
                raise ConflictError("An account with this email already exists") from e
        return user

    async def save(self, user: User) -> User:
        saved = user.model_copy(update={"version": user.version + 1, "updated_at": utc_now()})
        doc = saved.model_dump()
        doc.pop("user_id", None)
        doc.pop("created_at", None)

        async with self.guarded("save"):
            result = await self.collection.update_one(
                {"user_id": user.user_id, "version": user.version},
                {"$set": doc},
            )
        if result.matched_count == 0:
            logger.warning(f"User save conflict user_id={user.user_id} expected_version={user.version}")
            raise ConflictError("User was modified by another request", details={"user_id": user.user_id})
        return saved
