"""
Configuration loader
"""
import logging
import os
from pathlib import Path

import yaml

from fightcard.models import Settings


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"


def load_config(config_path: str = None) -> Settings:
    """
    Load server settings from YAML, then apply environment overrides

    Args:
        config_path: Path to config file (default: $FIGHTCARD_CONFIG or
                     config/settings.yaml). A missing file means defaults.

    Returns:
        Settings object

    Environment overrides:
        ADMIN_TOKEN, PUBLIC_BASE_URL, DATABASE_URL, START_EMPTY
    """
    path = Path(config_path or os.getenv("FIGHTCARD_CONFIG", DEFAULT_CONFIG_PATH))

    data = {}
    if path.exists():
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    else:
        logger.warning(f"⚠️ Config file not found: {path}, using defaults")

    if os.getenv("ADMIN_TOKEN"):
        data["admin_token"] = os.environ["ADMIN_TOKEN"]
    if os.getenv("PUBLIC_BASE_URL"):
        data["public_base_url"] = os.environ["PUBLIC_BASE_URL"]
    if os.getenv("START_EMPTY"):
        data["start_empty"] = os.environ["START_EMPTY"].strip().lower() in ("1", "true", "yes", "on")
    if os.getenv("DATABASE_URL"):
        data.setdefault("mirror", {})["database_url"] = os.environ["DATABASE_URL"]

    return Settings(**data)
