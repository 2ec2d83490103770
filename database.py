"""
Document store on top of MongoDB.

Every write stamps createdAt/updatedAt the way the collections expect.
Documents are returned as plain dicts with their ObjectId still in "_id";
to_str_id in main.py turns them into response shapes.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)

SINGLETON_KEY = "singleton"


def to_object_id(doc_id: str) -> Optional[ObjectId]:
    if isinstance(doc_id, ObjectId):
        return doc_id
    if not ObjectId.is_valid(doc_id):
        return None
    return ObjectId(doc_id)


def mask_uri(uri: str) -> str:
    return re.sub(r"//([^:/@]+):([^@]+)@", r"//\1:****@", uri)


class DocumentStore:
    def __init__(self, db: Database, client: Optional[MongoClient] = None):
        self.db = db
        self.client = client

    @classmethod
    def connect(cls, url: str, name: str) -> "DocumentStore":
        logger.info(f"Connecting to MongoDB at {mask_uri(url)}")
        client = MongoClient(url, serverSelectionTimeoutMS=5000, socketTimeoutMS=45000, tz_aware=True)
        return cls(client[name], client)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            logger.info("MongoDB connection closed")

    def ready_state(self) -> int:
        """
        1 when a writable server is known, 0 otherwise.

        With a real client this reads the topology the driver's monitor
        keeps up to date, so it never waits on server selection.
        """
        if self.client is not None:
            return 1 if self.client.topology_description.has_writable_server() else 0
        try:
            self.db.command("ping")
            return 1
        except PyMongoError as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return 0

    def is_ready(self) -> bool:
        return self.ready_state() == 1

    def ensure_indexes(self) -> None:
        self.db["product"].create_index([("uploadDate", DESCENDING)])
        self.db["product"].create_index([("status", ASCENDING)])
        self.db["siteconfig"].create_index(SINGLETON_KEY, unique=True)

    # ------------- Single documents -------------

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> dict:
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = dict(data)
        now = datetime.now(timezone.utc)
        data_dict["createdAt"] = now
        data_dict["updatedAt"] = now
        inserted_id = self.db[collection_name].insert_one(data_dict).inserted_id
        return self.db[collection_name].find_one({"_id": inserted_id})

    def get_document(self, collection_name: str, doc_id: str) -> Optional[dict]:
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        return self.db[collection_name].find_one({"_id": oid})

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        cursor = self.db[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def update_document(self, collection_name: str, doc_id: str, changes: Dict[str, Any]) -> Optional[dict]:
        """Overwrite the given fields and return the updated document, or None if it does not exist."""
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        return self.db[collection_name].find_one_and_update(
            {"_id": oid},
            {"$set": {**changes, "updatedAt": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )

    def delete_document(self, collection_name: str, doc_id: str) -> bool:
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        return self.db[collection_name].delete_one({"_id": oid}).deleted_count == 1

    # ------------- Singleton documents -------------

    def get_or_create_singleton(self, collection_name: str, defaults: Dict[str, Any]) -> dict:
        return self.update_singleton(collection_name, defaults, {})

    def update_singleton(self, collection_name: str, defaults: Dict[str, Any], changes: Dict[str, Any]) -> dict:
        """
        Upsert the one document of a collection.

        The filter is a fixed key backed by a unique index, so two requests
        racing to create the document end up with a single one: the loser
        gets DuplicateKeyError and simply retries against the winner's copy.
        """
        now = datetime.now(timezone.utc)
        on_insert = {k: v for k, v in defaults.items() if k not in changes}
        on_insert["createdAt"] = now
        update: Dict[str, Any] = {"$setOnInsert": on_insert}
        if changes:
            update["$set"] = {**changes, "updatedAt": now}
        else:
            on_insert["updatedAt"] = now
        for attempt in range(2):
            try:
                return self.db[collection_name].find_one_and_update(
                    {SINGLETON_KEY: True},
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                if attempt:
                    raise
                logger.info(f"Concurrent creation of {collection_name} detected, retrying")
