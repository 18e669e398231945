from __future__ import annotations
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from newsfeed.core.errors import StorageError
from newsfeed.domain.models import User, UserId

log = logging.getLogger("newsfeed.adapters.db.user_directory")


class MongoUserDirectory:
    """
    只读访问用户管理系统维护的 `users` 集合：
      {_id: "<uuid>", name, email, is_active}
    本服务从不写这个集合。
    """
    def __init__(self, db: AsyncIOMotorDatabase, col_name: str = "users"):
        self.db = db
        self.col = db[col_name]   # 这里只拿句柄，不做 IO

    @classmethod
    def from_uri(cls, uri: str, db_name: str, max_pool_size: int = 20) -> "MongoUserDirectory":
        client = AsyncIOMotorClient(uri, serverSelectionTimeoutMS=5000, maxPoolSize=max_pool_size)
        return cls(client[db_name])

    @staticmethod
    def _to_user(doc) -> Optional[User]:
        if not doc:
            return None
        return User(
            id=doc["_id"],
            name=doc.get("name", ""),
            email=doc.get("email", ""),
            is_active=doc.get("is_active", True),
        )

    async def get_user(self, user_id: UserId) -> Optional[User]:
        try:
            doc = await self.col.find_one({"_id": str(user_id)}, {"name": 1, "email": 1, "is_active": 1})
        except PyMongoError as e:
            log.warning("user lookup failed: %s", e)
            raise StorageError("user directory unavailable", stage="auth.directory") from e
        return self._to_user(doc)

    async def ping_detail(self) -> tuple[bool, str | None]:
        try:
            await self.db.command("ping")
            return True, None
        except Exception as e:
            return False, f"{type(e).__name__}: {e}"

    def close(self) -> None:
        self.db.client.close()
