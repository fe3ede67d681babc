"""Flask API for the Harvest product catalog.

- The storefront reads products (search + category filter, newest first),
  the catalog's last-updated timestamp and the stock balance PDF link.
- A single admin, bootstrapped from configuration at startup, signs in with
  a username/password and manages products and the stock PDF through the
  same JSON API. The admin flag lives in Flask's signed session cookie.
- Persistence is pluggable (JSON files, SQL, MongoDB) and chosen with
  ``STORE_BACKEND``; uploads are kept on local disk and served under
  ``/uploads``.
"""

from __future__ import annotations

import datetime
import logging
import threading
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, request, send_from_directory, session
from flask_cors import CORS
from flask_talisman import Talisman
from werkzeug.middleware.proxy_fix import ProxyFix

from commonlib.config import configure_logging, load_catalog_config
from commonlib.storage import StoreError
from harvest.errors import RecordValidationError, register_error_handlers
from harvest.models import PRODUCT_FIELDS
from harvest.services.catalog import CatalogService
from harvest.services.product_store import build_store
from harvest.services.uploads import Upload, UploadStore

BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Config / Secrets
# ---------------------------------------------------------------------------
CONFIG = load_catalog_config(BASE_DIR)

# Form fields where an empty value means "leave unchanged" on update.
KEEP_WHEN_BLANK = ("name", "category", "price", "stock")

# ---------------------------------------------------------------------------
# Flask app
# ---------------------------------------------------------------------------
app = Flask(__name__)
app.config.update(
    SECRET_KEY=CONFIG.secret_key,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=CONFIG.force_tls,
    PERMANENT_SESSION_LIFETIME=datetime.timedelta(hours=CONFIG.session_max_hours),
    MAX_CONTENT_LENGTH=CONFIG.max_content_length,
)
app.json.ensure_ascii = False

CORS(
    app,
    resources={r"/api/*": {"origins": list(CONFIG.allowed_origins)}},
    supports_credentials=True,
)
Talisman(
    app,
    content_security_policy=None,
    force_https=CONFIG.force_tls,
    session_cookie_secure=CONFIG.force_tls,
)

if CONFIG.trust_proxy_headers:
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore[assignment]

register_error_handlers(app)

# ---------------------------------------------------------------------------
# Catalog bootstrap
# ---------------------------------------------------------------------------
_CATALOG: Optional[CatalogService] = None
_CATALOG_LOCK = threading.Lock()


def bootstrap(config=CONFIG) -> CatalogService:
    """Open the configured store, sync the admin account and wire the service.

    Raises ``StoreError`` when the backing medium cannot be reached.
    """

    store = build_store(config)
    store.ensure_admin(config.admin_username, config.admin_password)
    logger.info("Catalog ready (%s store)", config.store_backend)
    return CatalogService(store, UploadStore(config.upload_dir))


def get_catalog() -> CatalogService:
    global _CATALOG
    if _CATALOG is None:
        with _CATALOG_LOCK:
            if _CATALOG is None:
                _CATALOG = bootstrap()
    return _CATALOG


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------
def current_admin() -> Optional[dict]:
    user = session.get("user")
    if isinstance(user, dict) and user.get("role") == "admin":
        return user
    return None


def is_admin() -> bool:
    return current_admin() is not None


def _request_payload() -> dict:
    if request.is_json:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise RecordValidationError("Expected a JSON object")
        return payload
    return {key: request.form.get(key) for key in request.form}


def _upload_from_request(*names: str) -> Optional[Upload]:
    for name in names:
        storage = request.files.get(name)
        if storage and storage.filename:
            return Upload(content=storage.read(), filename=storage.filename)
    return None


def _product_fields(*, partial: bool) -> dict:
    """Collect product fields from a JSON body or a multipart form."""

    if request.is_json:
        payload = _request_payload()
        return {key: value for key, value in payload.items() if key in PRODUCT_FIELDS}

    fields: dict = {}
    for key in PRODUCT_FIELDS:
        if key not in request.form:
            continue
        if key == "active_ingredient":
            # One input per ingredient, or a single pre-joined value.
            fields[key] = [value for value in request.form.getlist(key) if value.strip()]
            continue
        value = request.form.get(key, "")
        if partial and key in KEEP_WHEN_BLANK and not value.strip():
            continue
        fields[key] = value
    return fields


# ---------------------------------------------------------------------------
# Auth routes
# ---------------------------------------------------------------------------
@app.route("/api/login", methods=["POST"])
def login():
    payload = _request_payload()
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")
    if not username or not password:
        return jsonify({"error": "Username and password are required"}), 400
    admin = get_catalog().store.verify_admin(username, password)
    if admin is None:
        app.logger.info("Rejected login for %r", username)
        return jsonify({"error": "Invalid credentials"}), 401
    session.clear()
    session.permanent = True
    session["user"] = {"username": admin.username, "role": admin.role}
    return jsonify({"success": True, "role": admin.role})


@app.route("/api/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"success": True})


@app.route("/api/session", methods=["GET"])
def session_info():
    return jsonify({"user": current_admin()})


# ---------------------------------------------------------------------------
# Routes: products
# ---------------------------------------------------------------------------
@app.route("/api/products", methods=["GET"])
def list_products():
    text = request.args.get("text")
    if text is None:
        text = request.args.get("search")
    products = get_catalog().search(text=text, category=request.args.get("category"))
    return jsonify([CatalogService.present(product) for product in products])


@app.route("/api/products/<product_id>", methods=["GET"])
def get_product(product_id):
    product = get_catalog().get_detail(product_id)
    return jsonify(CatalogService.present(product))


@app.route("/api/products", methods=["POST"])
def create_product():
    catalog = get_catalog()
    allowed = is_admin()
    fields = _product_fields(partial=False) if allowed else {}
    product = catalog.create_from_submission(
        fields,
        _upload_from_request("image") if allowed else None,
        is_admin=allowed,
    )
    return jsonify(CatalogService.present(product)), 201


@app.route("/api/products/<product_id>", methods=["PUT"])
def update_product(product_id):
    catalog = get_catalog()
    allowed = is_admin()
    fields = _product_fields(partial=True) if allowed else {}
    product = catalog.update_from_submission(
        product_id,
        fields,
        _upload_from_request("image") if allowed else None,
        is_admin=allowed,
    )
    return jsonify(CatalogService.present(product))


@app.route("/api/products/<product_id>", methods=["DELETE"])
def delete_product(product_id):
    deleted = get_catalog().remove(product_id, is_admin=is_admin())
    return jsonify({"success": True, "deleted": deleted})


@app.route("/api/last-updated", methods=["GET"])
def last_updated():
    stamp = get_catalog().last_updated_timestamp()
    return jsonify({"last_updated": stamp.isoformat() if stamp else None})


# ---------------------------------------------------------------------------
# Routes: stock balance PDF and uploads
# ---------------------------------------------------------------------------
@app.route("/api/stock-pdf", methods=["GET"])
def get_stock_pdf():
    return jsonify({"url": get_catalog().get_stock_document_url()})


@app.route("/api/stock-pdf", methods=["POST"])
def upload_stock_pdf():
    allowed = is_admin()
    upload = _upload_from_request("file", "pdf") if allowed else None
    url = get_catalog().set_stock_document(upload, is_admin=allowed)
    return jsonify({"success": True, "url": url})


@app.route("/uploads/<path:filename>")
def serve_upload(filename: str):
    return send_from_directory(get_catalog().uploads.root, filename)


# ---------------------------------------------------------------------------
# Security headers
# ---------------------------------------------------------------------------
@app.after_request
def secure_headers(resp):
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["X-Frame-Options"] = "DENY"
    return resp


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    configure_logging(CONFIG.log_level)
    try:
        _CATALOG = bootstrap()
    except StoreError as exc:
        logger.critical("Cannot open the %s store: %s", CONFIG.store_backend, exc)
        raise SystemExit(1) from exc
    app.run(host=CONFIG.api_host, port=CONFIG.api_port)
