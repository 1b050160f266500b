"""
Central configuration for the material & supplier analytics pipeline.

All paths, thresholds, and store settings are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. Environment variables
  2. config/pipeline_settings.json  (admin-editable, persisted)
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

# Default data locations (relative to project root)
DEFAULT_OUTPUT_DIR     = PROJECT_ROOT / "output"
DEFAULT_DB_PATH        = DEFAULT_OUTPUT_DIR / "matlytics.db"
DEFAULT_EXPORT_DIR     = DEFAULT_OUTPUT_DIR / "export"
DEFAULT_UPLOAD_DIR     = DEFAULT_OUTPUT_DIR / "uploads"

# Settings that pipeline_settings.json may set, and the env var that outranks it
_ENV_VARS = {
    "price_alert_threshold":        "PRICE_ALERT_THRESHOLD",
    "transaction_timeout_seconds":  "TRANSACTION_TIMEOUT",
    "tax_id_country_prefix":        "TAX_ID_COUNTRY_PREFIX",
}


@dataclass
class Config:
    # --- Store ---
    db_path:      Path = field(
        default_factory=lambda: Path(os.getenv("DB_PATH", str(DEFAULT_DB_PATH)))
    )
    # SQLite busy timeout for one invoice transaction. A batch may run for a
    # long time overall; this only bounds how long one invoice waits for the
    # write lock held by a concurrent batch job.
    transaction_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("TRANSACTION_TIMEOUT", "120"))
    )

    # --- Output settings ---
    output_dir:   Path = field(default_factory=lambda: DEFAULT_OUTPUT_DIR)
    export_dir:   Path = field(
        default_factory=lambda: Path(os.getenv("EXPORT_DIR", str(DEFAULT_EXPORT_DIR)))
    )
    upload_dir:   Path = field(
        default_factory=lambda: Path(os.getenv("UPLOAD_DIR", str(DEFAULT_UPLOAD_DIR)))
    )

    # --- Tenancy ---
    tenant_id: str = field(
        default_factory=lambda: os.getenv("TENANT_ID", "default")
    )

    # --- Price history ---
    price_alert_threshold: float = field(
        default_factory=lambda: float(os.getenv("PRICE_ALERT_THRESHOLD", "5"))
    )
    # Percentage increase over the last known price that raises a PriceAlert.

    # --- Provider matching ---
    tax_id_country_prefix: str = field(
        default_factory=lambda: os.getenv("TAX_ID_COUNTRY_PREFIX", "ES")
    )

    # --- Material matching ---
    name_match_min_score: int = 0    # rapidfuzz floor when ranking name candidates (0-100)

    # --- Analytics ---
    default_page_size: int = 50
    max_page_size:     int = 500

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from pipeline_settings.json if present."""
        config_dir = Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
        settings_file = config_dir / "pipeline_settings.json"
        if not settings_file.exists():
            return
        _type_map: dict[str, type] = {
            "price_alert_threshold":        float,
            "transaction_timeout_seconds":  float,
            "tax_id_country_prefix":        str,
            "name_match_min_score":         int,
            "default_page_size":            int,
            "max_page_size":                int,
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key in _ENV_VARS and os.getenv(_ENV_VARS[key]) is not None:
                    continue
                if key in _type_map and hasattr(self, key):
                    setattr(self, key, _type_map[key](val))
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to load pipeline_settings.json: %s", exc)

    def ensure_output_dir(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.export_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
