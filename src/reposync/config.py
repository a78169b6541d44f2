"""Run configuration for conversion commands."""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv

from reposync.errors import FatalConfigurationError


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise FatalConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass
class ConvertConfig:
    """Configuration for a conversion run.

    Every field defaults from an environment variable so a ``.env`` file in the
    working directory is enough to point the converter at a deployment.
    """

    database_url: str = field(
        default_factory=lambda: os.getenv("REPOSYNC_DATABASE_URL", "sqlite:///reposync.db")
    )
    queue_db_url: str = field(
        default_factory=lambda: os.getenv("REPOSYNC_QUEUE_DB_URL", "sqlite:///queues.db")
    )
    data_root: str = field(default_factory=lambda: os.getenv("REPOSYNC_DATA_ROOT", "./data"))
    normalized_dir: str = field(
        default_factory=lambda: os.getenv("REPOSYNC_NORMALIZED_DIR", "./normalized")
    )
    etd_xsl: Optional[str] = field(default_factory=lambda: os.getenv("REPOSYNC_ETD_XSL"))
    biomed_xsl: Optional[str] = field(default_factory=lambda: os.getenv("REPOSYNC_BIOMED_XSL"))
    springer_xsl: Optional[str] = field(
        default_factory=lambda: os.getenv("REPOSYNC_SPRINGER_XSL")
    )
    hierarchy_path: str = field(
        default_factory=lambda: os.getenv("REPOSYNC_HIERARCHY", "./data/allStruct.xml")
    )
    brand_dir: str = field(default_factory=lambda: os.getenv("REPOSYNC_BRAND_DIR", "./brand"))
    issue_covers_dir: str = field(
        default_factory=lambda: os.getenv("REPOSYNC_ISSUE_COVERS_DIR", "./issueCovers")
    )
    s3_bucket: Optional[str] = field(default_factory=lambda: os.getenv("REPOSYNC_S3_BUCKET"))
    s3_prefix: str = field(default_factory=lambda: os.getenv("REPOSYNC_S3_PREFIX", "reposync"))
    s3_region: Optional[str] = field(default_factory=lambda: os.getenv("REPOSYNC_S3_REGION"))
    search_endpoint: Optional[str] = field(
        default_factory=lambda: os.getenv("REPOSYNC_SEARCH_ENDPOINT")
    )
    max_batch_bytes: int = field(
        default_factory=lambda: _env_int("REPOSYNC_MAX_BATCH_BYTES", 4500 * 1024)
    )
    max_batch_items: int = field(default_factory=lambda: _env_int("REPOSYNC_MAX_BATCH_ITEMS", 500))
    max_record_bytes: int = field(
        default_factory=lambda: _env_int("REPOSYNC_MAX_RECORD_BYTES", 950 * 1024)
    )
    retry_backoff: int = field(default_factory=lambda: _env_int("REPOSYNC_RETRY_BACKOFF", 30))
    retry_budget: int = field(default_factory=lambda: _env_int("REPOSYNC_RETRY_BUDGET", 600))
    sweep_every: int = field(default_factory=lambda: _env_int("REPOSYNC_SWEEP_EVERY", 5))
    queue_depth: int = field(default_factory=lambda: _env_int("REPOSYNC_QUEUE_DEPTH", 100))
    lock_path: str = field(
        default_factory=lambda: os.getenv("REPOSYNC_LOCK_PATH", "/tmp/reposync_convert.lock")
    )

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ConvertConfig":
        """Create config from dictionary, ignoring unknown keys."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config.items() if k in names})

    def validate(self) -> None:
        """Check that the size caps and intervals are usable.

        Raises:
            FatalConfigurationError: If any cap is non-positive or the record
                cap does not fit inside a batch
        """
        for name in ("max_batch_bytes", "max_batch_items", "max_record_bytes", "sweep_every",
                     "queue_depth"):
            if getattr(self, name) <= 0:
                raise FatalConfigurationError(f"{name} must be positive")
        if self.max_record_bytes > self.max_batch_bytes:
            raise FatalConfigurationError(
                f"max_record_bytes ({self.max_record_bytes}) exceeds "
                f"max_batch_bytes ({self.max_batch_bytes})"
            )
        if self.retry_backoff < 0 or self.retry_budget < 0:
            raise FatalConfigurationError("retry settings must not be negative")

    def xsl_for(self, dialect_name: str) -> Optional[str]:
        """Return the configured XSLT normalizer for a foreign dialect."""
        return {
            "ETD": self.etd_xsl,
            "BioMed": self.biomed_xsl,
            "Springer": self.springer_xsl,
        }.get(dialect_name)


def load_config(overrides: Optional[Dict[str, Any]] = None) -> ConvertConfig:
    """Load configuration from environment variables and an optional .env file.

    Args:
        overrides: Values that take precedence over the environment

    Returns:
        Validated ConvertConfig
    """
    load_dotenv(find_dotenv(usecwd=True))
    config = ConvertConfig()
    for key, value in (overrides or {}).items():
        if value is not None and hasattr(config, key):
            setattr(config, key, value)
    config.validate()
    return config
