import pytest

from dotalog.config import DB_PATH_ENV, PROJECT_ROOT, ConfigError, load_config
from dotalog.opendota import DEFAULT_BASE_URL, DEFAULT_MIN_INTERVAL_SECONDS


def test_missing_db_path_fails_fast():
    with pytest.raises(ConfigError):
        load_config({})
    with pytest.raises(ConfigError):
        load_config({DB_PATH_ENV: "   "})


def test_defaults():
    config = load_config({DB_PATH_ENV: "/tmp/dotalog.db"})

    assert config.db_path == "/tmp/dotalog.db"
    assert config.opendota_base_url == DEFAULT_BASE_URL
    assert config.opendota_api_key is None
    assert config.opendota_min_interval == DEFAULT_MIN_INTERVAL_SECONDS


def test_relative_db_path_is_anchored_to_project_root():
    config = load_config({DB_PATH_ENV: "data/dotalog.db"})
    assert config.db_path == str(PROJECT_ROOT / "data" / "dotalog.db")


def test_opendota_overrides():
    config = load_config({
        DB_PATH_ENV: "/tmp/dotalog.db",
        "OPENDOTA_BASE_URL": "http://localhost:9000/api",
        "OPENDOTA_API_KEY": "abc",
        "OPENDOTA_MIN_INTERVAL": "2.5",
    })

    assert config.opendota_base_url == "http://localhost:9000/api"
    assert config.opendota_api_key == "abc"
    assert config.opendota_min_interval == 2.5


def test_bad_interval_rejected():
    with pytest.raises(ConfigError):
        load_config({DB_PATH_ENV: "/tmp/dotalog.db", "OPENDOTA_MIN_INTERVAL": "fast"})
