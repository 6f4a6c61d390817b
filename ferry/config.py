"""Single source of truth for all configuration and secrets.

All modules import from here — never from os.environ directly.

Settings are read from secrets/internal.env (or secrets/internal.env.enc when
FERRY_USE_SOPS=true). Process environment variables take precedence, which is
how container deployments inject the target host and SSH key.
"""

import os
from pathlib import Path

from ferry.secrets import load_dotenv_fallback, load_secrets

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Toggle SOPS vs plain .env (default: plain .env)
USE_SOPS = os.environ.get("FERRY_USE_SOPS", "false").lower() == "true"


def _load(scope: str) -> dict[str, str | None]:
    """Load secrets for a given scope."""
    if USE_SOPS:
        return load_secrets(PROJECT_ROOT / f"secrets/{scope}.env.enc")
    return load_dotenv_fallback(PROJECT_ROOT / f"secrets/{scope}.env")


_internal = _load("internal")


def _get(key: str, default: str) -> str:
    value = os.environ.get(key)
    if value is None:
        value = _internal.get(key)
    return default if value is None else value


# --- Source side ---
REPLICATION_WATCH_DIR: str = _get("REPLICATION_WATCH_DIR", "/mnt/ferry/files")
REPLICATION_SOURCE_REGION: str = _get("REPLICATION_SOURCE_REGION", "EastUS2")
REPLICATION_TARGET_REGION: str = _get("REPLICATION_TARGET_REGION", "CentralUS")

# --- Remote host (SFTP over SSH) ---
REPLICATION_TARGET_HOST: str = _get("REPLICATION_TARGET_HOST", "")
REPLICATION_TARGET_PORT: int = int(_get("REPLICATION_TARGET_PORT", "22"))
REPLICATION_TARGET_USER: str = _get("REPLICATION_TARGET_USER", "ferry")
REPLICATION_TARGET_BASE_PATH: str = _get("REPLICATION_TARGET_BASE_PATH", "/mnt/ferry/files")
REPLICATION_SSH_PRIVATE_KEY_BASE64: str = _get("REPLICATION_SSH_PRIVATE_KEY_BASE64", "")
REPLICATION_SSH_KEY_PASSPHRASE: str = _get("REPLICATION_SSH_KEY_PASSPHRASE", "")
REPLICATION_KNOWN_HOSTS_PATH: str = _get("REPLICATION_KNOWN_HOSTS_PATH", "")
REPLICATION_CONNECT_TIMEOUT_SECONDS: float = float(
    _get("REPLICATION_CONNECT_TIMEOUT_SECONDS", "300")
)
REPLICATION_OPERATION_TIMEOUT_SECONDS: float = float(
    _get("REPLICATION_OPERATION_TIMEOUT_SECONDS", "600")
)

# --- Retry / dedup / cadence ---
REPLICATION_MAX_RETRIES: int = int(_get("REPLICATION_MAX_RETRIES", "3"))
REPLICATION_RETRY_INTERVAL_SECONDS: float = float(_get("REPLICATION_RETRY_INTERVAL_SECONDS", "10"))
REPLICATION_DEDUP_HIGH_WATER_MARK: int = int(_get("REPLICATION_DEDUP_HIGH_WATER_MARK", "10000"))
REPLICATION_TICK_INTERVAL_SECONDS: float = float(_get("REPLICATION_TICK_INTERVAL_SECONDS", "10"))

# --- Durable store ---
REPLICATION_STORE_DB_PATH: str = _get(
    "REPLICATION_STORE_DB_PATH", str(PROJECT_ROOT / "data" / "replication.db")
)
