"""
Document store for the NGO Project API.

``DocumentStore`` wraps a pymongo ``Database``. Route handlers receive it
through the ``get_store`` dependency, so tests can hand in a store built
over any pymongo-compatible database.
"""
import logging
import re
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Type, Union

from bson import ObjectId
from pymongo import MongoClient, ReturnDocument
from pymongo.database import Database

import config
from schemas import SCHEMAS, Document, utcnow
from validation import check_document

logger = logging.getLogger(__name__)

Identifier = Union[str, ObjectId]

# Never writable through update_by_id
PROTECTED_FIELDS = ("_id", "createdAt", "updatedAt")


def to_object_id(value: Identifier) -> ObjectId:
    """Raises ``bson.errors.InvalidId`` for malformed strings."""
    return value if isinstance(value, ObjectId) else ObjectId(value)


def mask_credentials(url: str) -> str:
    return re.sub(r"//.*@", "//***:***@", url)


class DocumentStore:
    def __init__(self, db: Database, schemas: Optional[Dict[str, Type[Document]]] = None):
        self.db = db
        self.schemas = SCHEMAS if schemas is None else schemas

    @classmethod
    def from_url(cls, url: str, name: str, timeout_ms: int = 5000) -> "DocumentStore":
        client = MongoClient(url, serverSelectionTimeoutMS=timeout_ms)
        return cls(client[name])

    @property
    def name(self) -> str:
        return self.db.name

    def ensure_indexes(self) -> None:
        self.db["user"].create_index("email", unique=True)
        self.db["donation"].create_index([("donorId", 1), ("date", -1)])
        self.db["donation"].create_index("projectId")
        self.db["project"].create_index([("status", 1), ("category", 1)])
        self.db["project"].create_index("managerId")
        self.db["event"].create_index([("status", 1), ("type", 1)])
        self.db["event"].create_index("organizerId")

    def list_collection_names(self) -> List[str]:
        return self.db.list_collection_names()

    def _check(self, collection: str, document: Dict[str, Any], written=None) -> Dict[str, Any]:
        model = self.schemas.get(collection)
        if model is None:
            return dict(document)
        return check_document(model, document, written)

    def create(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        doc = self._check(collection, document)
        now = utcnow()
        doc["createdAt"] = now
        doc["updatedAt"] = now
        doc["_id"] = self.db[collection].insert_one(doc).inserted_id
        return doc

    def find_by_id(self, collection: str, id: Identifier) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one({"_id": to_object_id(id)})

    def find_one(self, collection: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one(filter)

    def find_many(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return list(self.db[collection].find(filter or {}))

    def update_by_id(self, collection: str, id: Identifier, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a partial update; ``None`` values unset the field.

        Returns the updated document, or None if it does not exist.
        """
        oid = to_object_id(id)
        existing = self.db[collection].find_one({"_id": oid})
        if existing is None:
            return None
        changes = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}

        # updatedAt is stored at millisecond precision and must move forward
        updated_at = utcnow()
        previous = existing.get("updatedAt")
        if isinstance(previous, datetime) and updated_at <= previous:
            updated_at = previous + timedelta(milliseconds=1)

        merged = {k: v for k, v in {**existing, **changes}.items() if v is not None}
        validated = self._check(collection, merged, set(changes))
        changes = {k: validated.get(k, v) if v is not None else None for k, v in changes.items()}

        update: Dict[str, Any] = {"$set": {k: v for k, v in changes.items() if v is not None}}
        update["$set"]["updatedAt"] = updated_at
        unset = {k: "" for k, v in changes.items() if v is None}
        if unset:
            update["$unset"] = unset
        return self.db[collection].find_one_and_update(
            {"_id": oid}, update, return_document=ReturnDocument.AFTER
        )

    def delete_by_id(self, collection: str, id: Identifier) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one_and_delete({"_id": to_object_id(id)})

    def populate(self, documents: Iterable[Dict[str, Any]], field: str,
                 collection: str = "user", projection=("name", "email")) -> List[Dict[str, Any]]:
        """Replace ``field`` ids with ``{_id, name, email}`` of the referenced document.

        Ids that no longer resolve populate as None.
        """
        documents = list(documents)
        ids = {d[field] for d in documents if isinstance(d.get(field), ObjectId)}
        found = {}
        if ids:
            cursor = self.db[collection].find({"_id": {"$in": list(ids)}}, {p: 1 for p in projection})
            found = {ref["_id"]: ref for ref in cursor}
        populated = []
        for d in documents:
            d = dict(d)
            if field in d:
                d[field] = found.get(d[field])
            populated.append(d)
        return populated


@lru_cache(maxsize=None)
def default_store() -> DocumentStore:
    logger.info("Using MongoDB at %s (database %s)", mask_credentials(config.DATABASE_URL), config.DATABASE_NAME)
    return DocumentStore.from_url(config.DATABASE_URL, config.DATABASE_NAME, config.DATABASE_TIMEOUT_MS)


def get_store() -> DocumentStore:
    return default_store()
