"""Tests for run configuration."""

import pytest

from reposync.config import ConvertConfig, load_config
from reposync.errors import FatalConfigurationError


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Run each test away from any real .env file and REPOSYNC_* variables."""
    monkeypatch.chdir(tmp_path)
    for name in ("REPOSYNC_MAX_BATCH_ITEMS", "REPOSYNC_MAX_RECORD_BYTES", "REPOSYNC_DATABASE_URL"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


def test_defaults():
    config = ConvertConfig()

    assert config.max_batch_bytes == 4500 * 1024
    assert config.max_batch_items == 500
    assert config.max_record_bytes == 950 * 1024
    assert config.retry_backoff == 30
    assert config.retry_budget == 600
    assert config.sweep_every == 5
    assert config.queue_depth == 100


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("REPOSYNC_MAX_BATCH_ITEMS", "50")
    monkeypatch.setenv("REPOSYNC_DATABASE_URL", "sqlite:///other.db")

    config = ConvertConfig()

    assert config.max_batch_items == 50
    assert config.database_url == "sqlite:///other.db"


def test_non_integer_environment_value_is_fatal(monkeypatch):
    monkeypatch.setenv("REPOSYNC_MAX_BATCH_ITEMS", "lots")

    with pytest.raises(FatalConfigurationError, match="REPOSYNC_MAX_BATCH_ITEMS"):
        ConvertConfig()


def test_load_config_reads_dotenv(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("REPOSYNC_MAX_RECORD_BYTES=1000\n")

    config = load_config()

    assert config.max_record_bytes == 1000


def test_load_config_applies_overrides():
    config = load_config({"max_batch_items": 7, "search_endpoint": None, "unknown": 1})

    assert config.max_batch_items == 7


def test_record_cap_must_fit_in_batch():
    config = ConvertConfig(max_batch_bytes=100, max_record_bytes=200)

    with pytest.raises(FatalConfigurationError, match="exceeds"):
        config.validate()


def test_non_positive_caps_are_rejected():
    with pytest.raises(FatalConfigurationError, match="max_batch_items"):
        ConvertConfig(max_batch_items=0).validate()


def test_from_dict_ignores_unknown_keys():
    config = ConvertConfig.from_dict({"s3_bucket": "assets", "neo4j_uri": "bolt://x"})

    assert config.s3_bucket == "assets"


def test_xsl_for_dialects():
    config = ConvertConfig(etd_xsl="etd.xsl", biomed_xsl="biomed.xsl", springer_xsl=None)

    assert config.xsl_for("ETD") == "etd.xsl"
    assert config.xsl_for("BioMed") == "biomed.xsl"
    assert config.xsl_for("Springer") is None
    assert config.xsl_for("UCIngest") is None
