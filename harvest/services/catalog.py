"""Request-facing catalog operations.

The service is stateless: it normalises input, checks the admin capability
handed over by the HTTP layer, moves uploads into the blob store and shapes
products for output. Persistence is delegated to a :class:`RecordStore`.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Mapping, Optional

from harvest.errors import RecordNotFound, RecordValidationError, Unauthorized
from harvest.models import FERTILIZER_GROUP, Product, ProductQuery
from harvest.services.product_store import RecordStore
from harvest.services.uploads import Upload, UploadStore

logger = logging.getLogger(__name__)

STOCK_PDF_SETTING = "stock_pdf_url"

CATEGORY_LABELS = {
    "Insecticide": "مبيد حشري",
    "Fungicide": "مبيد فطري",
    "Acaricide": "مبيد اكاروسي",
    "Herbicide": "مبيد حشائش",
    "Fertilizers": "أسمدة",
    "Fertilizers-NPK": "أسمدة NPK",
    "Fertilizers-Specialized": "أسمدة متخصصة",
    "Fertilizers-GrowthRegulator": "منظم نمو",
    "Fertilizers-SoilConditioner": "محسنات تربة",
}
COMPOSITION_LABEL = "التركيب"
ACTIVE_INGREDIENT_LABEL = "المادة الفعالة"


def _require_admin(is_admin: bool) -> None:
    if not is_admin:
        raise Unauthorized()


class CatalogService:
    def __init__(self, store: RecordStore, uploads: UploadStore) -> None:
        self.store = store
        self.uploads = uploads

    # ------------------------------------------------------------------
    # Public reads
    # ------------------------------------------------------------------
    def search(self, text: Optional[str] = None, category: Optional[str] = None) -> list[Product]:
        return self.store.list_products(ProductQuery(text=text, category=category))

    def get_detail(self, product_id: str) -> Product:
        product = self.store.get_product(product_id)
        if product is None:
            raise RecordNotFound()
        return product

    def last_updated_timestamp(self) -> Optional[datetime.datetime]:
        products = self.store.list_products()
        if not products:
            return None
        return max(product.recency for product in products)

    def get_stock_document_url(self) -> Optional[str]:
        return self.store.get_setting(STOCK_PDF_SETTING) or None

    # ------------------------------------------------------------------
    # Admin writes
    # ------------------------------------------------------------------
    def create_from_submission(
        self,
        fields: Mapping[str, Any],
        image: Optional[Upload] = None,
        *,
        is_admin: bool,
    ) -> Product:
        _require_admin(is_admin)
        payload = dict(fields)
        if not str(payload.get("name") or "").strip():
            raise RecordValidationError("Product name is required")
        stored_url = self._store_upload(image)
        if stored_url:
            payload["image_url"] = stored_url
        try:
            return self.store.create_product(payload)
        except Exception:
            self._release(stored_url)
            raise

    def update_from_submission(
        self,
        product_id: str,
        fields: Mapping[str, Any],
        image: Optional[Upload] = None,
        *,
        is_admin: bool,
    ) -> Product:
        _require_admin(is_admin)
        existing = self.get_detail(product_id)
        payload = dict(fields)
        stored_url = self._store_upload(image)
        if stored_url:
            payload["image_url"] = stored_url
        try:
            updated = self.store.update_product(product_id, payload)
        except Exception:
            self._release(stored_url)
            raise
        if updated is None:
            self._release(stored_url)
            raise RecordNotFound()
        if existing.image_url and existing.image_url != updated.image_url:
            self._release(existing.image_url)
        return updated

    def remove(self, product_id: str, *, is_admin: bool) -> bool:
        _require_admin(is_admin)
        existing = self.store.get_product(product_id)
        if existing is None:
            return False
        deleted = self.store.delete_product(product_id)
        if deleted:
            self._release(existing.image_url)
        return deleted

    def set_stock_document(self, upload: Optional[Upload], *, is_admin: bool) -> str:
        _require_admin(is_admin)
        if upload is None or not upload.content:
            raise RecordValidationError("No file uploaded")
        previous = self.get_stock_document_url()
        url = self.uploads.save(upload.content, upload.extension)
        try:
            self.store.set_setting(STOCK_PDF_SETTING, url)
        except Exception:
            self._release(url)
            raise
        if previous and previous != url:
            self._release(previous)
        return url

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _store_upload(self, upload: Optional[Upload]) -> Optional[str]:
        if upload is None or not upload.content:
            return None
        return self.uploads.save(upload.content, upload.extension)

    def _release(self, url: Optional[str]) -> None:
        if not url or not self.uploads.is_managed(url):
            return
        if not self.uploads.delete(url):
            logger.warning("Upload %s was not removed", url)

    @staticmethod
    def present(product: Product, today: Optional[datetime.date] = None) -> dict[str, Any]:
        """JSON-ready product with display-only derived fields."""

        data = product.model_dump(mode="json")
        fertilizer = product.category_group == FERTILIZER_GROUP
        data.update(
            category_group=product.category_group,
            category_label=CATEGORY_LABELS.get(product.category, product.category),
            ingredient_label=COMPOSITION_LABEL if fertilizer else ACTIVE_INGREDIENT_LABEL,
            stock_status=product.stock_status,
            is_expired=product.is_expired(today),
        )
        return data
