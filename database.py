"""
Room persistence.

MongoRoomStore keeps one document per main room in the "room" collection,
with the breakout rooms embedded. MemoryRoomStore is the non-persistent
fallback used when no database is configured.

Both guard writes with an integer revision: put() only succeeds when the
caller's copy carries the revision currently stored, and bumps it.
"""
import asyncio
import copy
import logging
from typing import Dict, List, Optional, Sequence

from pymongo import AsyncMongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from errors import ConflictError, PersistenceError, RoomError, RoomNotFound
from schemas import MainRoom, WriteResult

logger = logging.getLogger(__name__)

COLLECTION = "room"


class RoomStore:
    """Async contract shared by the store implementations."""

    async def get(self, room_id: str) -> MainRoom:
        raise NotImplementedError

    async def insert(self, room: MainRoom) -> MainRoom:
        raise NotImplementedError

    async def put(self, room: MainRoom) -> MainRoom:
        raise NotImplementedError

    async def find_by_archived(self, archived: bool) -> List[MainRoom]:
        raise NotImplementedError

    async def find_parent_of(self, breakout_id: str) -> Optional[MainRoom]:
        raise NotImplementedError

    async def bulk_put(self, rooms: Sequence[MainRoom]) -> List[WriteResult]:
        """Write every room independently; one failure never aborts the rest."""
        outcomes = await asyncio.gather(*(self.put(room) for room in rooms), return_exceptions=True)
        results = []
        for room, outcome in zip(rooms, outcomes):
            if isinstance(outcome, RoomError):
                results.append(WriteResult(room_id=room.id, ok=False, error=str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(WriteResult(room_id=room.id, ok=True))
        return results

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class MemoryRoomStore(RoomStore):
    def __init__(self):
        self._rooms: Dict[str, dict] = {}

    async def _round_trip(self) -> None:
        # Yield like a network call so concurrent callers interleave
        await asyncio.sleep(0)

    async def get(self, room_id: str) -> MainRoom:
        await self._round_trip()
        doc = self._rooms.get(room_id)
        if doc is None:
            raise RoomNotFound(room_id)
        return MainRoom.model_validate(copy.deepcopy(doc))

    async def insert(self, room: MainRoom) -> MainRoom:
        await self._round_trip()
        if room.id in self._rooms:
            raise ConflictError(f"Room '{room.id}' already exists")
        stored = room.model_copy(update={"revision": 1}, deep=True)
        self._rooms[room.id] = stored.to_document()
        return stored

    async def put(self, room: MainRoom) -> MainRoom:
        await self._round_trip()
        current = self._rooms.get(room.id)
        if current is None:
            raise RoomNotFound(room.id)
        if current["revision"] != room.revision:
            raise ConflictError(
                f"Room '{room.id}' changed (revision {current['revision']}, write based on {room.revision})"
            )
        stored = room.model_copy(update={"revision": room.revision + 1}, deep=True)
        self._rooms[room.id] = stored.to_document()
        return stored

    async def find_by_archived(self, archived: bool) -> List[MainRoom]:
        await self._round_trip()
        return [
            MainRoom.model_validate(copy.deepcopy(doc))
            for doc in list(self._rooms.values())
            if doc["archived"] == archived
        ]

    async def find_parent_of(self, breakout_id: str) -> Optional[MainRoom]:
        await self._round_trip()
        for doc in list(self._rooms.values()):
            if any(b["_id"] == breakout_id for b in doc["breakouts"]):
                return MainRoom.model_validate(copy.deepcopy(doc))
        return None


class MongoRoomStore(RoomStore):
    def __init__(self, client: AsyncMongoClient, database_name: str):
        self._client = client
        self._collection = client[database_name][COLLECTION]

    async def ensure_indexes(self) -> None:
        try:
            await self._collection.create_index("archived")
            await self._collection.create_index("breakouts._id")
        except PyMongoError as e:
            raise PersistenceError(f"Index creation failed: {e}") from e

    async def get(self, room_id: str) -> MainRoom:
        try:
            doc = await self._collection.find_one({"_id": room_id})
        except PyMongoError as e:
            raise PersistenceError(f"Read of room '{room_id}' failed: {e}") from e
        if doc is None:
            raise RoomNotFound(room_id)
        return MainRoom.model_validate(doc)

    async def insert(self, room: MainRoom) -> MainRoom:
        stored = room.model_copy(update={"revision": 1}, deep=True)
        try:
            await self._collection.insert_one(stored.to_document())
        except DuplicateKeyError as e:
            raise ConflictError(f"Room '{room.id}' already exists") from e
        except PyMongoError as e:
            raise PersistenceError(f"Insert of room '{room.id}' failed: {e}") from e
        return stored

    async def put(self, room: MainRoom) -> MainRoom:
        stored = room.model_copy(update={"revision": room.revision + 1}, deep=True)
        try:
            result = await self._collection.replace_one(
                {"_id": room.id, "revision": room.revision}, stored.to_document()
            )
            if result.matched_count:
                return stored
            exists = await self._collection.count_documents({"_id": room.id}, limit=1)
        except PyMongoError as e:
            raise PersistenceError(f"Write of room '{room.id}' failed: {e}") from e
        if not exists:
            raise RoomNotFound(room.id)
        raise ConflictError(f"Room '{room.id}' changed since revision {room.revision}")

    async def find_by_archived(self, archived: bool) -> List[MainRoom]:
        try:
            return [MainRoom.model_validate(doc) async for doc in self._collection.find({"archived": archived})]
        except PyMongoError as e:
            raise PersistenceError(f"Room query failed: {e}") from e

    async def find_parent_of(self, breakout_id: str) -> Optional[MainRoom]:
        try:
            doc = await self._collection.find_one({"breakouts._id": breakout_id})
        except PyMongoError as e:
            raise PersistenceError(f"Room query failed: {e}") from e
        return MainRoom.model_validate(doc) if doc else None

    async def ping(self) -> bool:
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.warning("Database ping failed: %s", e)
            return False

    async def close(self) -> None:
        await self._client.close()


async def create_store(settings: Settings) -> RoomStore:
    """Mongo when DATABASE_URL is set, otherwise the in-memory fallback."""
    if not settings.database_url:
        logger.warning("DATABASE_URL not set; rooms are kept in memory and lost on restart")
        return MemoryRoomStore()
    store = MongoRoomStore(AsyncMongoClient(settings.database_url), settings.database_name)
    await store.ensure_indexes()
    return store
