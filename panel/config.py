# panel/config.py
import logging
import os
from pathlib import Path
from typing import Any, Dict

import commentjson
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)


# --- Metadata store ---
DATABASE_URL        = os.getenv("DATABASE_URL", "")
DB_HOST             = os.getenv("DB_HOST", "localhost")
DB_PORT             = int(os.getenv("DB_PORT", "5432"))
DB_NAME             = os.getenv("DB_NAME", "universal_panel")
DB_USER             = os.getenv("DB_USER", "postgres")
DB_PASSWORD         = os.getenv("DB_PASSWORD", "")
DB_SECRET_ID        = os.getenv("DB_SECRET_ID", "")
PROJECT_ID          = os.getenv("GOOGLE_CLOUD_PROJECT", "")

# --- External db-access service ---
DB_ACCESS_SERVICE_URL = os.getenv("DB_ACCESS_SERVICE_URL", "http://localhost:9081")
SAMPLER_TIMEOUT       = float(os.getenv("SAMPLER_TIMEOUT", "30"))
MUTATION_TIMEOUT      = float(os.getenv("MUTATION_TIMEOUT", "15"))

# --- Inference / share-link heuristics ---
_DEFAULT_SETTINGS: Dict[str, Any] = {
    "SAMPLE_SIZE": int(os.getenv("SAMPLE_SIZE", "100")),
    "MAX_EXAMPLES": int(os.getenv("MAX_EXAMPLES", "5")),
    "MAX_UNIQUE_VALUES": 10,
    "SHARE_TOKEN_PREFIX": "share_",
    "SHARE_TOKEN_LENGTH": int(os.getenv("SHARE_TOKEN_LENGTH", "32")),
    "IDENTITY_FIELD": "_id",
}


def _load_settings() -> Dict[str, Any]:
    """
    Defaults overridden by the optional JSON-with-comments file at PANEL_SETTINGS_PATH.
    Unknown keys are rejected so typos fail fast.
    """
    settings = dict(_DEFAULT_SETTINGS)
    path = os.getenv("PANEL_SETTINGS_PATH")
    if not path:
        return settings

    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Panel settings file not found at '{cfg_path}'.")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    if not isinstance(data, dict):
        raise ValueError("Panel settings file must contain a JSON object")

    for key, value in data.items():
        if key not in settings:
            raise ValueError(f"Unknown panel setting: {key}")
        settings[key] = value
    return settings


SETTINGS = _load_settings()
SAMPLE_SIZE: int = SETTINGS["SAMPLE_SIZE"]
MAX_EXAMPLES: int = SETTINGS["MAX_EXAMPLES"]
MAX_UNIQUE_VALUES: int = SETTINGS["MAX_UNIQUE_VALUES"]
SHARE_TOKEN_PREFIX: str = SETTINGS["SHARE_TOKEN_PREFIX"]
SHARE_TOKEN_LENGTH: int = SETTINGS["SHARE_TOKEN_LENGTH"]
IDENTITY_FIELD: str = SETTINGS["IDENTITY_FIELD"]
