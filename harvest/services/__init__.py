"""Record stores, uploads and the catalog service."""
