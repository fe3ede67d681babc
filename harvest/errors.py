"""Catalog error taxonomy and the Flask handlers that render it."""

from __future__ import annotations

from flask import jsonify
from pydantic import ValidationError

from commonlib.storage import StoreError


class CatalogError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 400
    default_message = "Request rejected"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self.args[0])


class RecordValidationError(CatalogError):
    status_code = 400
    default_message = "Invalid product data"


class RecordNotFound(CatalogError):
    status_code = 404
    default_message = "Product not found"


class Unauthorized(CatalogError):
    status_code = 401
    default_message = "Unauthorized"


def register_error_handlers(app):
    @app.errorhandler(CatalogError)
    def catalog_error(exc: CatalogError):
        return jsonify({"error": exc.message}), exc.status_code

    @app.errorhandler(ValidationError)
    def invalid_payload(exc: ValidationError):
        return jsonify({"error": exc.errors(include_url=False, include_context=False)}), 400

    @app.errorhandler(StoreError)
    def storage_failure(exc: StoreError):
        app.logger.exception("Storage failure: %s", exc)
        return jsonify({"error": "Storage failure"}), 500

    @app.errorhandler(404)
    def not_found(exc):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(413)
    def too_large(exc):
        return jsonify({"error": "Upload too large"}), 413
