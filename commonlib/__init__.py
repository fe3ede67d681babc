"""Common helpers shared across the Harvest catalog."""

from .storage import JsonStore, ListStore, EncryptedJsonStore, StoreError  # noqa: F401
from .config import CatalogConfig, load_catalog_config, configure_logging  # noqa: F401

__all__ = [
    "JsonStore",
    "ListStore",
    "EncryptedJsonStore",
    "StoreError",
    "CatalogConfig",
    "load_catalog_config",
    "configure_logging",
]
