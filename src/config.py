"""
Centralized configuration module for Account Guard.
Reads configuration from env.properties file.
"""

import os
from pathlib import Path
from typing import Optional

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.absolute()

CONFIG_FILE = PROJECT_ROOT / "env.properties"

_config_cache: dict = {}


def _load_config() -> dict:
    """Load configuration from env.properties file."""
    global _config_cache
    if _config_cache:
        return _config_cache

    config = {}
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    config[key.strip()] = value.strip()

    _config_cache = config
    return config


def get(key: str, default: Optional[str] = None) -> str:
    """Get a configuration value by key."""
    config = _load_config()
    # Environment variables take precedence
    env_value = os.environ.get(key)
    if env_value is not None:
        return env_value
    return config.get(key, default or "")


def get_int(key: str, default: int = 0) -> int:
    """Get a configuration value as integer."""
    value = get(key, str(default))
    try:
        return int(value)
    except ValueError:
        return default


def get_float(key: str, default: float = 0.0) -> float:
    """Get a configuration value as float."""
    value = get(key, str(default))
    try:
        return float(value)
    except ValueError:
        return default


def get_bool(key: str, default: bool = False) -> bool:
    """Get a configuration value as boolean."""
    value = get(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


# Server Configuration
BACKEND_HOST = get("BACKEND_HOST", "0.0.0.0")
BACKEND_PORT = get_int("BACKEND_PORT", 7000)

# Database Configuration
DATABASE_NAME = get("DATABASE_NAME", "account_guard.db")
DATA_DIR = PROJECT_ROOT / get("DATA_DIR", "data")
DATABASE_PATH = DATA_DIR / DATABASE_NAME

# Logging Configuration
LOGS_DIR = PROJECT_ROOT / get("LOGS_DIR", "logs")

# Application Settings
APP_NAME = get("APP_NAME", "Account Guard")
APP_VERSION = get("APP_VERSION", "1.0.0")
ENVIRONMENT = get("ENVIRONMENT", "development")  # development, staging, production

# Lockout policy
LOCKOUT_THRESHOLD = get_int("LOCKOUT_THRESHOLD", 3)  # failures inside the window that lock
LOCKOUT_WINDOW_HOURS = get_int("LOCKOUT_WINDOW_HOURS", 24)
DEDUP_TOLERANCE_SECONDS = get_int("DEDUP_TOLERANCE_SECONDS", 1)
EVENT_RETENTION_DAYS = get_int("EVENT_RETENTION_DAYS", 30)

# Provider reconciliation
RECONCILE_ENABLED = get_bool("RECONCILE_ENABLED", True)
RECONCILE_INTERVAL_MINUTES = get_int("RECONCILE_INTERVAL_MINUTES", 15)
RECONCILE_WINDOW_HOURS = get_int("RECONCILE_WINDOW_HOURS", 24)
PROPAGATION_TIMEOUT_SECONDS = get_float("PROPAGATION_TIMEOUT_SECONDS", 5.0)

# Auth0 Management API
AUTH0_DOMAIN = get("AUTH0_DOMAIN", "")
AUTH0_MANAGEMENT_CLIENT_ID = get("AUTH0_MANAGEMENT_CLIENT_ID", "")
AUTH0_MANAGEMENT_CLIENT_SECRET = get("AUTH0_MANAGEMENT_CLIENT_SECRET", "")
AUTH0_LOG_PAGE_SIZE = get_int("AUTH0_LOG_PAGE_SIZE", 100)
AUTH0_MAX_LOG_PAGES = get_int("AUTH0_MAX_LOG_PAGES", 10)

# Security Settings
INGEST_API_KEY = get("INGEST_API_KEY", "")  # Shared key for login-flow callers; empty disables the check
ALLOWED_ORIGINS = get(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000",
)  # Comma-separated CORS origins

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)
