"""MongoDB record store."""

from __future__ import annotations

import datetime
import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from commonlib.storage import StoreError
from harvest.models import (
    FERTILIZER_GROUP,
    PESTICIDE_GROUP,
    Product,
    ProductQuery,
    sort_by_recency,
)
from harvest.services.product_store import Clock, RecordStore, prepare_fields

logger = logging.getLogger(__name__)

_FERTILIZER_PATTERN = re.compile(re.escape(FERTILIZER_GROUP), re.IGNORECASE)


def _object_id(product_id: Any) -> Optional[ObjectId]:
    try:
        return ObjectId(str(product_id))
    except (InvalidId, TypeError):
        return None


def _to_record(document: Mapping[str, Any]) -> dict[str, Any]:
    record = dict(document)
    record["id"] = str(record.pop("_id"))
    return record


def filter_document(query: ProductQuery) -> dict[str, Any]:
    clauses: list[dict[str, Any]] = []
    if query.text:
        pattern = re.compile(re.escape(query.text), re.IGNORECASE)
        clauses.append({"$or": [{"name": pattern}, {"active_ingredient": pattern}]})
    if query.category == FERTILIZER_GROUP:
        clauses.append({"category": _FERTILIZER_PATTERN})
    elif query.category == PESTICIDE_GROUP:
        clauses.append({"category": {"$not": _FERTILIZER_PATTERN}})
    elif query.category:
        clauses.append({"category": query.category})
    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class MongoRecordStore(RecordStore):
    """``products``, ``admins`` and ``settings`` collections of one database."""

    def __init__(self, database, *, clock: Optional[Clock] = None, client=None) -> None:
        super().__init__(clock=clock)
        self._client = client
        self._products = database["products"]
        self._admins = database["admins"]
        self._settings = database["settings"]

    @classmethod
    def connect(
        cls,
        uri: str,
        db_name: str,
        *,
        timeout_ms: int = 5000,
        clock: Optional[Clock] = None,
    ) -> "MongoRecordStore":
        """Open a client and ping the server; unreachable servers raise ``StoreError``."""

        client = MongoClient(uri, serverSelectionTimeoutMS=timeout_ms, tz_aware=True)
        try:
            client.admin.command("ping")
        except PyMongoError as exc:
            client.close()
            raise StoreError(f"MongoDB unreachable: {exc}") from exc
        logger.info("Connected to MongoDB database %s", db_name)
        return cls(client[db_name], clock=clock, client=client)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except PyMongoError as exc:
            logger.error("MongoDB operation failed: %s", exc)
            raise StoreError(str(exc)) from exc

    def now(self) -> datetime.datetime:
        # BSON dates carry millisecond precision.
        stamp = super().now()
        return stamp.replace(microsecond=stamp.microsecond // 1000 * 1000)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    def list_products(self, query: Optional[ProductQuery] = None) -> list[Product]:
        with self._guard():
            documents = list(self._products.find(filter_document(query or ProductQuery())))
        return sort_by_recency([Product.from_record(_to_record(doc)) for doc in documents])

    def get_product(self, product_id: str) -> Optional[Product]:
        oid = _object_id(product_id)
        if oid is None:
            return None
        with self._guard():
            document = self._products.find_one({"_id": oid})
        return Product.from_record(_to_record(document)) if document else None

    def create_product(self, fields: Mapping[str, Any]) -> Product:
        document = prepare_fields(fields, partial=False)
        now = self.now()
        document.update(created_at=now, updated_at=now)
        with self._guard():
            result = self._products.insert_one(document)
        document["_id"] = result.inserted_id
        return Product.from_record(_to_record(document))

    def update_product(self, product_id: str, fields: Mapping[str, Any]) -> Optional[Product]:
        cleaned = prepare_fields(fields, partial=True)
        oid = _object_id(product_id)
        if oid is None:
            return None
        cleaned["updated_at"] = self.now()
        with self._guard():
            document = self._products.find_one_and_update(
                {"_id": oid},
                {"$set": cleaned},
                return_document=ReturnDocument.AFTER,
            )
        return Product.from_record(_to_record(document)) if document else None

    def delete_product(self, product_id: str) -> bool:
        oid = _object_id(product_id)
        if oid is None:
            return False
        with self._guard():
            result = self._products.delete_one({"_id": oid})
        return result.deleted_count > 0

    # ------------------------------------------------------------------
    # Settings / admin
    # ------------------------------------------------------------------
    def get_setting(self, key: str) -> Optional[str]:
        with self._guard():
            document = self._settings.find_one({"key": key})
        return document.get("value") if document else None

    def set_setting(self, key: str, value: Optional[str]) -> None:
        with self._guard():
            self._settings.update_one({"key": key}, {"$set": {"value": value}}, upsert=True)

    def _load_admin_hash(self, username: str) -> Optional[str]:
        with self._guard():
            document = self._admins.find_one({"username": username})
        return document.get("password_hash") if document else None

    def _save_admin_hash(self, username: str, password_hash: str) -> bool:
        with self._guard():
            result = self._admins.update_one(
                {"username": username},
                {"$set": {"password_hash": password_hash, "role": "admin"}},
                upsert=True,
            )
        return result.upserted_id is not None

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
