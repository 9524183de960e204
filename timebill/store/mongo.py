"""MongoDB Data Store backed by Motor."""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from timebill.errors import NotFoundError, StoreError
from timebill.models.events import ChangeEvent, ChangeType
from timebill.models.pagination import Page, Pagination
from timebill.store.base import DataStore, Filter, Record, Sort, Subscription

logger = logging.getLogger(__name__)

_CHANGE_TYPES = {
    "insert": ChangeType.CREATED,
    "update": ChangeType.UPDATED,
    "replace": ChangeType.UPDATED,
    "delete": ChangeType.DELETED,
}


def _object_id(record_id: str) -> ObjectId:
    try:
        return ObjectId(record_id)
    except (InvalidId, TypeError):
        raise NotFoundError(f"Invalid id format: {record_id}")


def _doc_to_record(doc: dict) -> Record:
    record = dict(doc)
    if "_id" in record:
        record["id"] = str(record.pop("_id"))
    return record


def _translate_id(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            op: [_object_id(v) for v in arg] if isinstance(arg, list) else _object_id(arg)
            for op, arg in value.items()
        }
    return _object_id(value)


def _translate_filter(filter: Optional[Filter]) -> dict:
    """Map the record-level ``id`` key onto MongoDB's ``_id``."""
    translated = {}
    for field, condition in (filter or {}).items():
        if field == "id":
            translated["_id"] = _translate_id(condition)
        elif field == "$or":
            translated["$or"] = [_translate_filter(sub) for sub in condition]
        else:
            translated[field] = condition
    return translated


class ChangeStreamSubscription(Subscription):
    """Subscription over a MongoDB change stream."""

    def __init__(self, collection: str, stream):
        self.collection = collection
        self._stream = stream
        self._closed = False

    def _to_event(self, change: dict) -> ChangeEvent:
        change_type = _CHANGE_TYPES[change["operationType"]]
        record_id = str(change["documentKey"]["_id"])

        if change["operationType"] == "update":
            description = change.get("updateDescription", {})
            record = dict(description.get("updatedFields", {}))
            for field in description.get("removedFields", []):
                record[field] = None
        elif change_type is ChangeType.DELETED:
            record = {}
        else:
            record = _doc_to_record(change.get("fullDocument") or {})

        # Same clock as local writes; wallTime only when the write carried no stamp
        timestamp = record.get("updated_at") or change.get("wallTime") or datetime.now(timezone.utc)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        return ChangeEvent(
            type=change_type,
            collection=self.collection,
            record_id=record_id,
            record=record,
            timestamp=timestamp,
        )

    async def __anext__(self) -> ChangeEvent:
        while not self._closed:
            try:
                change = await self._stream.next()
            except StopAsyncIteration:
                self._closed = True
                break
            except PyMongoError as e:
                if self._closed:
                    break
                raise StoreError(f"Change stream failed: {e}")

            if change["operationType"] in _CHANGE_TYPES:
                return self._to_event(change)

            # drop, rename, invalidate: the stream cannot continue
            logger.warning("Change stream on %s ended by %s", self.collection, change["operationType"])
            await self.close()
        raise StopAsyncIteration

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stream.close()


class MongoDataStore(DataStore):
    """Data Store over a Motor database; one collection per record kind."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def create(self, collection: str, record: Record) -> Record:
        doc = {k: v for k, v in record.items() if k != "id"}
        try:
            result = await self.db[collection].insert_one(doc)
        except PyMongoError as e:
            raise StoreError(f"Insert into {collection} failed: {e}")

        doc["_id"] = result.inserted_id
        return _doc_to_record(doc)

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        try:
            oid = _object_id(record_id)
        except NotFoundError:
            return None

        try:
            doc = await self.db[collection].find_one({"_id": oid})
        except PyMongoError as e:
            raise StoreError(f"Read from {collection} failed: {e}")

        return _doc_to_record(doc) if doc else None

    async def update(self, collection: str, record_id: str, patch: Record) -> Record:
        changes = {k: v for k, v in patch.items() if k != "id"}
        try:
            doc = await self.db[collection].find_one_and_update(
                {"_id": _object_id(record_id)},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise StoreError(f"Update in {collection} failed: {e}")

        if not doc:
            raise NotFoundError(f"Record {record_id} not found in {collection}")
        return _doc_to_record(doc)

    async def delete(self, collection: str, record_id: str) -> bool:
        try:
            result = await self.db[collection].delete_one({"_id": _object_id(record_id)})
        except PyMongoError as e:
            raise StoreError(f"Delete from {collection} failed: {e}")

        if result.deleted_count == 0:
            raise NotFoundError(f"Record {record_id} not found in {collection}")
        return True

    async def query(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        page: int = 1,
        per_page: Optional[int] = None,
    ) -> Page[Record]:
        query = _translate_filter(filter)
        try:
            total = await self.db[collection].count_documents(query)
            cursor = self.db[collection].find(query)
            if sort:
                cursor = cursor.sort(sort)
            if per_page is not None:
                cursor = cursor.skip((page - 1) * per_page).limit(per_page)
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise StoreError(f"Query on {collection} failed: {e}")

        if per_page is None:
            pagination = Pagination.build(1, max(total, 1), total)
        else:
            pagination = Pagination.build(page, per_page, total)

        return Page[Record](items=[_doc_to_record(doc) for doc in docs], pagination=pagination)

    async def subscribe(self, collection: str, filter: Optional[Filter] = None) -> Subscription:
        """
        Watch ``collection`` for changes.

        Deletes are delivered unfiltered, since the deleted document is no
        longer available to match against.
        """
        match = {f"fullDocument.{field}": value for field, value in _translate_filter(filter).items()}
        pipeline = [{"$match": {"$or": [{"operationType": "delete"}, match]}}] if match else []

        try:
            stream = self.db[collection].watch(pipeline, full_document="updateLookup")
        except PyMongoError as e:
            raise StoreError(f"Cannot watch {collection}: {e}")

        logger.info("Watching %s for changes", collection)
        return ChangeStreamSubscription(collection, stream)
