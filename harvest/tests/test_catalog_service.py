import datetime

import pytest

from harvest.errors import RecordNotFound, RecordValidationError, Unauthorized
from harvest.services.catalog import STOCK_PDF_SETTING, CatalogService
from harvest.services.uploads import Upload


def uploaded_files(uploads):
    return sorted(path.name for path in uploads.root.iterdir())


def test_round_trip_from_submission(catalog, clock):
    created = catalog.create_from_submission(
        {"name": "X", "price": "12.5", "stock": "3", "category": "Insecticide"},
        is_admin=True,
    )
    detail = catalog.get_detail(created.id)
    assert detail.price == 12.5
    assert detail.stock == 3
    assert detail.created_at == detail.updated_at == clock()


def test_get_detail_unknown_raises(catalog):
    with pytest.raises(RecordNotFound):
        catalog.get_detail("missing")


def test_search_normalises_text_and_category(catalog):
    catalog.create_from_submission({"name": "Neem Shield", "category": "Insecticide"}, is_admin=True)
    catalog.create_from_submission({"name": "Root Boost", "category": "Fertilizers"}, is_admin=True)

    assert [p.name for p in catalog.search(text="  NEEM ")] == ["Neem Shield"]
    assert len(catalog.search(text="   ", category="All")) == 2
    assert len(catalog.search()) == 2
    assert [p.name for p in catalog.search(category=" Fertilizers ")] == ["Root Boost"]


def test_partial_update_keeps_origin(catalog, clock):
    product = catalog.create_from_submission(
        {"name": "Abamax", "price": "10", "origin": "Egypt"}, is_admin=True
    )
    later = clock.advance(minutes=30)
    updated = catalog.update_from_submission(product.id, {"price": "20"}, is_admin=True)

    assert updated.origin == "Egypt"
    assert updated.price == 20
    assert updated.updated_at == later
    assert updated.model_dump(exclude={"price", "updated_at"}) == product.model_dump(
        exclude={"price", "updated_at"}
    )


def test_update_unknown_raises_and_keeps_no_upload(catalog, uploads):
    with pytest.raises(RecordNotFound):
        catalog.update_from_submission(
            "missing", {"price": "1"}, Upload(b"img", "photo.png"), is_admin=True
        )
    assert uploaded_files(uploads) == []


def test_create_with_image_injects_url(catalog, uploads):
    product = catalog.create_from_submission(
        {"name": "Pictured"}, Upload(b"\x89PNG data", "Photo.PNG"), is_admin=True
    )
    assert product.image_url.startswith("/uploads/")
    assert product.image_url.endswith(".png")
    assert uploads.path_for(product.image_url).read_bytes() == b"\x89PNG data"


def test_create_without_name_stores_nothing(catalog, uploads):
    with pytest.raises(RecordValidationError):
        catalog.create_from_submission({"name": " "}, Upload(b"img", "a.jpg"), is_admin=True)
    assert catalog.search() == []
    assert uploaded_files(uploads) == []


def test_replacing_image_releases_previous_file(catalog, uploads):
    product = catalog.create_from_submission({"name": "Swap"}, Upload(b"old", "a.jpg"), is_admin=True)
    old_path = uploads.path_for(product.image_url)

    updated = catalog.update_from_submission(product.id, {}, Upload(b"new", "b.jpg"), is_admin=True)
    assert updated.image_url != product.image_url
    assert not old_path.exists()
    assert uploads.path_for(updated.image_url).read_bytes() == b"new"


def test_remove_releases_image_and_is_idempotent(catalog, uploads):
    product = catalog.create_from_submission({"name": "Temp"}, Upload(b"img", "a.webp"), is_admin=True)
    assert uploaded_files(uploads)

    assert catalog.remove(product.id, is_admin=True) is True
    assert uploaded_files(uploads) == []
    assert catalog.remove(product.id, is_admin=True) is False


def test_remove_succeeds_when_image_is_already_gone(catalog, uploads):
    product = catalog.create_from_submission({"name": "Temp"}, Upload(b"img", "a.jpg"), is_admin=True)
    uploads.path_for(product.image_url).unlink()
    assert catalog.remove(product.id, is_admin=True) is True


def test_remove_survives_failing_file_layer(catalog, uploads, monkeypatch):
    product = catalog.create_from_submission({"name": "Sticky"}, Upload(b"img", "a.jpg"), is_admin=True)

    def refuse(url):
        return False

    monkeypatch.setattr(uploads, "delete", refuse)
    assert catalog.remove(product.id, is_admin=True) is True
    assert catalog.search() == []


def test_remove_ignores_external_image_urls(catalog):
    product = catalog.create_from_submission(
        {"name": "Linked", "image_url": "https://cdn.example.com/p.jpg"}, is_admin=True
    )
    assert catalog.remove(product.id, is_admin=True) is True


def test_last_updated_timestamp(catalog, clock):
    assert catalog.last_updated_timestamp() is None
    first = clock()
    product = catalog.create_from_submission({"name": "Only"}, is_admin=True)
    assert catalog.last_updated_timestamp() == first

    second = clock.advance(days=1)
    catalog.update_from_submission(product.id, {"stock": "12"}, is_admin=True)
    assert catalog.last_updated_timestamp() == second


def test_stock_document_replaces_previous(catalog, uploads):
    assert catalog.get_stock_document_url() is None
    first = catalog.set_stock_document(Upload(b"%PDF-1", "stock.pdf"), is_admin=True)
    assert first.endswith(".pdf")
    assert catalog.get_stock_document_url() == first

    second = catalog.set_stock_document(Upload(b"%PDF-2", "stock.pdf"), is_admin=True)
    assert catalog.get_stock_document_url() == second
    assert catalog.store.get_setting(STOCK_PDF_SETTING) == second
    assert not uploads.path_for(first).exists()
    assert uploads.path_for(second).read_bytes() == b"%PDF-2"


def test_stock_document_requires_file(catalog):
    with pytest.raises(RecordValidationError):
        catalog.set_stock_document(None, is_admin=True)


def test_unauthorized_callers_change_nothing(catalog, uploads):
    product = catalog.create_from_submission({"name": "Stable", "price": "5"}, is_admin=True)
    before = catalog.search()

    with pytest.raises(Unauthorized):
        catalog.create_from_submission({"name": "Intruder"}, Upload(b"x", "x.png"), is_admin=False)
    with pytest.raises(Unauthorized):
        catalog.update_from_submission(product.id, {"price": "99"}, is_admin=False)
    with pytest.raises(Unauthorized):
        catalog.remove(product.id, is_admin=False)
    with pytest.raises(Unauthorized):
        catalog.set_stock_document(Upload(b"%PDF", "s.pdf"), is_admin=False)

    assert catalog.search() == before
    assert catalog.get_stock_document_url() is None
    assert uploaded_files(uploads) == []


@pytest.mark.parametrize(
    "stock, status",
    [(0, "out"), (1, "low"), (9, "low"), (10, "in"), (250, "in")],
)
def test_present_stock_status(catalog, stock, status):
    product = catalog.create_from_submission({"name": "Count", "stock": stock}, is_admin=True)
    assert CatalogService.present(product)["stock_status"] == status


def test_present_derived_fields(catalog):
    product = catalog.create_from_submission(
        {
            "name": "Grow",
            "category": "Fertilizers-NPK",
            "active_ingredient": "N 20% + P 20%",
            "expiration_date": "2025-01-31",
        },
        is_admin=True,
    )
    shaped = CatalogService.present(product, today=datetime.date(2025, 2, 1))
    assert shaped["category_group"] == "Fertilizers"
    assert shaped["category_label"] == "أسمدة NPK"
    assert shaped["ingredient_label"] == "التركيب"
    assert shaped["is_expired"] is True
    assert shaped["active_ingredient"] == ["N 20%", "P 20%"]
    assert shaped["expiration_date"] == "2025-01-31"

    fresh = CatalogService.present(product, today=datetime.date(2025, 1, 31))
    assert fresh["is_expired"] is False


def test_present_unknown_category_falls_back_to_tag(catalog):
    product = catalog.create_from_submission({"name": "Odd", "category": "Rodenticide"}, is_admin=True)
    shaped = CatalogService.present(product)
    assert shaped["category_label"] == "Rodenticide"
    assert shaped["category_group"] == "Pesticides"
    assert shaped["ingredient_label"] == "المادة الفعالة"
    assert shaped["is_expired"] is False


def test_expiry_uses_utc_date(catalog, monkeypatch):
    from harvest import models

    product = catalog.create_from_submission(
        {"name": "Dated", "expiration_date": "2025-01-31"}, is_admin=True
    )
    monkeypatch.setattr(
        models, "utcnow", lambda: datetime.datetime(2025, 2, 1, 0, 30, tzinfo=datetime.UTC)
    )
    assert CatalogService.present(product)["is_expired"] is True

    monkeypatch.setattr(
        models, "utcnow", lambda: datetime.datetime(2025, 1, 31, 23, 30, tzinfo=datetime.UTC)
    )
    assert CatalogService.present(product)["is_expired"] is False
