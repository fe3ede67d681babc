"""Relational record store backed by SQLAlchemy (SQLite by default)."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional
from uuid import uuid4

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    event,
    func,
    not_,
    or_,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from commonlib.storage import StoreError
from harvest.models import (
    FERTILIZER_GROUP,
    PESTICIDE_GROUP,
    Product,
    ProductQuery,
    parse_date,
)
from harvest.services.product_store import Clock, RecordStore, prepare_fields

logger = logging.getLogger(__name__)

Base = declarative_base()


class ProductRow(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, default="", index=True)
    description = Column(Text)
    price = Column(Float, nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)
    expiration_date = Column(Date)
    active_ingredient = Column(Text)
    package_size = Column(String)
    carton_size = Column(String)
    origin = Column(String)
    unit_type = Column(String)
    image_url = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))

    def to_record(self) -> dict[str, Any]:
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}


class AdminRow(Base):
    __tablename__ = "admins"

    username = Column(String, primary_key=True)
    password_hash = Column(String, nullable=False)
    role = Column(String, nullable=False, default="admin")


class SettingRow(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _unicode_lower(value):
    return None if value is None else str(value).lower()


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return
    database = parsed.database
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


class SqlRecordStore(RecordStore):
    """Products, admins and settings as three tables."""

    def __init__(self, url: str, *, clock: Optional[Clock] = None, echo: bool = False) -> None:
        super().__init__(clock=clock)
        try:
            _ensure_sqlite_dir(url)
            self._engine = create_engine(url, echo=echo)
            self._lower = func.lower
            if self._engine.dialect.name == "sqlite":
                self._register_sqlite_functions()
                self._lower = func.unicode_lower
            Base.metadata.create_all(self._engine)
        except (OSError, SQLAlchemyError) as exc:
            raise StoreError(f"Database unavailable: {exc}") from exc
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)

    def _register_sqlite_functions(self) -> None:
        # SQLite's built-in lower() only folds ASCII letters.
        @event.listens_for(self._engine, "connect")
        def register(dbapi_connection, connection_record):
            dbapi_connection.create_function("unicode_lower", 1, _unicode_lower, deterministic=True)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Database operation failed: %s", exc)
            raise StoreError(str(exc)) from exc

    @staticmethod
    def _apply(row: ProductRow, cleaned: Mapping[str, Any]) -> None:
        for key, value in cleaned.items():
            if key == "expiration_date":
                value = parse_date(value)
            setattr(row, key, value)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    def list_products(self, query: Optional[ProductQuery] = None) -> list[Product]:
        query = query or ProductQuery()
        stmt = select(ProductRow)
        if query.text:
            pattern = f"%{_escape_like(query.text.lower())}%"
            stmt = stmt.where(
                or_(
                    self._lower(ProductRow.name).like(pattern, escape="\\"),
                    self._lower(func.coalesce(ProductRow.active_ingredient, "")).like(
                        pattern, escape="\\"
                    ),
                )
            )
        fertilizer = self._lower(func.coalesce(ProductRow.category, "")).like(
            f"%{FERTILIZER_GROUP.lower()}%"
        )
        if query.category == FERTILIZER_GROUP:
            stmt = stmt.where(fertilizer)
        elif query.category == PESTICIDE_GROUP:
            stmt = stmt.where(not_(fertilizer))
        elif query.category:
            stmt = stmt.where(ProductRow.category == query.category)
        stmt = stmt.order_by(func.coalesce(ProductRow.updated_at, ProductRow.created_at).desc())

        with self._transaction() as session:
            records = [row.to_record() for row in session.scalars(stmt)]
        return [Product.from_record(record) for record in records]

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._transaction() as session:
            row = session.get(ProductRow, str(product_id))
            record = row.to_record() if row is not None else None
        return Product.from_record(record) if record is not None else None

    def create_product(self, fields: Mapping[str, Any]) -> Product:
        cleaned = prepare_fields(fields, partial=False)
        now = self.now()
        row = ProductRow(id=str(uuid4()), created_at=now, updated_at=now)
        self._apply(row, cleaned)
        with self._transaction() as session:
            session.add(row)
            session.flush()
            record = row.to_record()
        record.update(created_at=now, updated_at=now)
        return Product.from_record(record)

    def update_product(self, product_id: str, fields: Mapping[str, Any]) -> Optional[Product]:
        cleaned = prepare_fields(fields, partial=True)
        now = self.now()
        with self._transaction() as session:
            row = session.get(ProductRow, str(product_id))
            if row is None:
                return None
            self._apply(row, cleaned)
            row.updated_at = now
            session.flush()
            record = row.to_record()
        record["updated_at"] = now
        return Product.from_record(record)

    def delete_product(self, product_id: str) -> bool:
        with self._transaction() as session:
            row = session.get(ProductRow, str(product_id))
            if row is None:
                return False
            session.delete(row)
        return True

    # ------------------------------------------------------------------
    # Settings / admin
    # ------------------------------------------------------------------
    def get_setting(self, key: str) -> Optional[str]:
        with self._transaction() as session:
            row = session.get(SettingRow, key)
            return row.value if row is not None else None

    def set_setting(self, key: str, value: Optional[str]) -> None:
        with self._transaction() as session:
            row = session.get(SettingRow, key)
            if row is None:
                session.add(SettingRow(key=key, value=value))
            else:
                row.value = value

    def _load_admin_hash(self, username: str) -> Optional[str]:
        with self._transaction() as session:
            row = session.get(AdminRow, username)
            return row.password_hash if row is not None else None

    def _save_admin_hash(self, username: str, password_hash: str) -> bool:
        with self._transaction() as session:
            row = session.get(AdminRow, username)
            if row is None:
                session.add(AdminRow(username=username, password_hash=password_hash, role="admin"))
                return True
            row.password_hash = password_hash
            return False

    def close(self) -> None:
        self._engine.dispose()
