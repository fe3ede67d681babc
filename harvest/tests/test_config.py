from pathlib import Path

import pytest

from commonlib.config import env_bool, load_catalog_config


def test_defaults(tmp_path):
    config = load_catalog_config(tmp_path, {})
    assert config.store_backend == "json"
    assert config.admin_username == "admin"
    assert config.admin_password == "admin123"
    assert config.data_dir == tmp_path / "data"
    assert config.upload_dir == tmp_path / "uploads"
    assert config.database_url == f"sqlite:///{tmp_path / 'data' / 'harvest.db'}"
    assert config.api_port == 3000
    assert config.force_tls is False
    assert config.max_content_length == 16 * 1024 * 1024
    assert "http://localhost" in config.allowed_origins


def test_backend_is_case_insensitive(tmp_path):
    assert load_catalog_config(tmp_path, {"STORE_BACKEND": " SQL "}).store_backend == "sql"


def test_invalid_backend_rejected(tmp_path):
    with pytest.raises(ValueError):
        load_catalog_config(tmp_path, {"STORE_BACKEND": "redis"})


def test_paths_resolve_against_base_dir(tmp_path):
    absolute = tmp_path / "elsewhere"
    config = load_catalog_config(
        tmp_path, {"DATA_DIR": "var/db", "UPLOAD_DIR": str(absolute)}
    )
    assert config.data_dir == tmp_path / "var" / "db"
    assert config.upload_dir == absolute
    assert isinstance(config.base_dir, Path)


def test_explicit_values(tmp_path):
    config = load_catalog_config(
        tmp_path,
        {
            "DATABASE_URL": "postgresql://catalog@db/harvest",
            "ALLOWED_ORIGINS": "https://shop.example, ,https://admin.example",
            "FORCE_TLS": "yes",
            "LOG_LEVEL": "debug",
            "MAX_UPLOAD_MB": "2",
        },
    )
    assert config.database_url == "postgresql://catalog@db/harvest"
    assert config.allowed_origins == ("https://shop.example", "https://admin.example")
    assert config.force_tls is True
    assert config.log_level == "DEBUG"
    assert config.max_content_length == 2 * 1024 * 1024


def test_unknown_log_level_falls_back(tmp_path):
    assert load_catalog_config(tmp_path, {"LOG_LEVEL": "chatty"}).log_level == "INFO"


@pytest.mark.parametrize(
    "raw, default, expected",
    [(None, True, True), (None, False, False), ("On", False, True), ("0", True, False)],
)
def test_env_bool(raw, default, expected):
    assert env_bool(raw, default) is expected
