"""Record store contract and the JSON-file adapter.

Products, the bootstrap admin and settings live behind :class:`RecordStore`.
The catalog service only talks to this interface; the backing medium is
picked once at startup by :func:`build_store`.
"""

from __future__ import annotations

import abc
import datetime
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from werkzeug.security import check_password_hash, generate_password_hash

from commonlib.config import CatalogConfig
from commonlib.storage import EncryptedJsonStore, JsonStore, ListStore
from harvest.errors import RecordValidationError
from harvest.models import (
    PRODUCT_FIELDS,
    Admin,
    Product,
    ProductQuery,
    coerce_price,
    coerce_stock,
    encode_ingredients,
    parse_date,
    sort_by_recency,
    utcnow,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime.datetime]


def prepare_fields(fields: Mapping[str, Any], *, partial: bool) -> dict[str, Any]:
    """Normalise submitted product fields into their persisted shape.

    Unknown keys (including ``id`` and timestamps) are dropped. Price and
    stock never fail; they fall back to zero.
    """

    cleaned: dict[str, Any] = {}
    for key in PRODUCT_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if key == "price":
            cleaned[key] = coerce_price(value)
        elif key == "stock":
            cleaned[key] = coerce_stock(value)
        elif key == "active_ingredient":
            cleaned[key] = encode_ingredients(value)
        elif key == "expiration_date":
            try:
                parsed = parse_date(value)
            except ValueError as exc:
                raise RecordValidationError(str(exc)) from exc
            cleaned[key] = parsed.isoformat() if parsed else None
        elif key in ("name", "category"):
            cleaned[key] = "" if value is None else str(value).strip()
        else:
            text = "" if value is None else str(value).strip()
            cleaned[key] = text or None

    if not partial or "name" in cleaned:
        if not cleaned.get("name"):
            raise RecordValidationError("Product name is required")
    if not partial:
        cleaned.setdefault("category", "")
        cleaned.setdefault("price", 0.0)
        cleaned.setdefault("stock", 0)
    return cleaned


class RecordStore(abc.ABC):
    """Durable CRUD and query primitives for products, the admin and settings."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utcnow

    def now(self) -> datetime.datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def list_products(self, query: Optional[ProductQuery] = None) -> list[Product]:
        """Products matching ``query``, most recently updated first."""

    @abc.abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]:
        ...

    @abc.abstractmethod
    def create_product(self, fields: Mapping[str, Any]) -> Product:
        ...

    @abc.abstractmethod
    def update_product(self, product_id: str, fields: Mapping[str, Any]) -> Optional[Product]:
        """Merge ``fields`` into an existing product; ``None`` if it is unknown."""

    @abc.abstractmethod
    def delete_product(self, product_id: str) -> bool:
        ...

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def get_setting(self, key: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    def set_setting(self, key: str, value: Optional[str]) -> None:
        ...

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def _load_admin_hash(self, username: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    def _save_admin_hash(self, username: str, password_hash: str) -> bool:
        """Upsert the admin row; True when it had to be created."""

    def ensure_admin(self, username: str, password: str) -> None:
        """Create the admin if missing, otherwise resync its password."""

        created = self._save_admin_hash(username, generate_password_hash(password))
        if created:
            logger.info("Created admin account %r", username)
        else:
            logger.info("Synchronised password for admin account %r", username)

    def verify_admin(self, username: str, password: str) -> Optional[Admin]:
        if not username or not password:
            return None
        password_hash = self._load_admin_hash(username)
        if not password_hash or not check_password_hash(password_hash, password):
            return None
        return Admin(username=username)

    def close(self) -> None:
        pass


class JsonRecordStore(RecordStore):
    """Flat JSON files under ``data_dir``.

    ``products.json`` holds a list of product records, ``settings.json`` a
    key/value mapping and ``admins.enc`` the Fernet-encrypted admin mapping.
    """

    def __init__(
        self,
        data_dir: str | Path,
        secret: str,
        backups: int = 2,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(clock=clock)
        data_dir = Path(data_dir)
        self._products = ListStore(
            data_dir / "products.json", backups=backups, recovery_label="product catalog"
        )
        self._settings = JsonStore(data_dir / "settings.json", backups=backups)
        self._admins = EncryptedJsonStore(data_dir / "admins.enc", secret, backups=backups)

    @staticmethod
    def _to_product(record: Mapping[str, Any]) -> Optional[Product]:
        try:
            return Product.from_record(record)
        except ValueError as exc:
            logger.warning("Skipping unreadable product record %r: %s", record.get("id"), exc)
            return None

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    def list_products(self, query: Optional[ProductQuery] = None) -> list[Product]:
        query = query or ProductQuery()
        products = []
        for record in self._products.load():
            if not query.matches(record):
                continue
            product = self._to_product(record)
            if product is not None:
                products.append(product)
        return sort_by_recency(products)

    def get_product(self, product_id: str) -> Optional[Product]:
        target = str(product_id)
        for record in self._products.load():
            if str(record.get("id")) == target:
                return self._to_product(record)
        return None

    def create_product(self, fields: Mapping[str, Any]) -> Product:
        record = prepare_fields(fields, partial=False)
        now = self.now().isoformat()
        record.update(id=str(uuid4()), created_at=now, updated_at=now)

        def mutator(items: list[dict]) -> None:
            items.append(record)

        self._products.mutate(mutator)
        return Product.from_record(record)

    def update_product(self, product_id: str, fields: Mapping[str, Any]) -> Optional[Product]:
        target = str(product_id)
        cleaned = prepare_fields(fields, partial=True)
        updated: Optional[dict] = None

        def mutator(items: list[dict]) -> None:
            nonlocal updated
            for item in items:
                if str(item.get("id")) == target:
                    item.update(cleaned)
                    item["updated_at"] = self.now().isoformat()
                    updated = item
                    break

        self._products.mutate(mutator)
        return Product.from_record(updated) if updated is not None else None

    def delete_product(self, product_id: str) -> bool:
        target = str(product_id)
        removed = False

        def mutator(items: list[dict]) -> list[dict]:
            nonlocal removed
            filtered = [item for item in items if str(item.get("id")) != target]
            removed = len(filtered) != len(items)
            return filtered

        self._products.mutate(mutator)
        return removed

    # ------------------------------------------------------------------
    # Settings / admin
    # ------------------------------------------------------------------
    def get_setting(self, key: str) -> Optional[str]:
        return self._settings.get(key)

    def set_setting(self, key: str, value: Optional[str]) -> None:
        self._settings.put(key, value)

    def _load_admin_hash(self, username: str) -> Optional[str]:
        record = self._admins.get(username) or {}
        return record.get("password_hash")

    def _save_admin_hash(self, username: str, password_hash: str) -> bool:
        created = self._admins.get(username) is None
        self._admins.put(username, {"username": username, "password_hash": password_hash, "role": "admin"})
        return created


def build_store(config: CatalogConfig, *, clock: Optional[Clock] = None) -> RecordStore:
    """Instantiate the adapter selected by ``STORE_BACKEND``."""

    if config.store_backend == "sql":
        from harvest.services.sql_store import SqlRecordStore

        return SqlRecordStore(config.database_url, clock=clock)
    if config.store_backend == "mongo":
        from harvest.services.mongo_store import MongoRecordStore

        return MongoRecordStore.connect(
            config.mongo_uri,
            config.mongo_db,
            timeout_ms=config.mongo_timeout_ms,
            clock=clock,
        )
    return JsonRecordStore(
        config.data_dir,
        config.secret_key,
        backups=config.store_backups,
        clock=clock,
    )
