"""Settings, credential resolution and logging setup."""

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values, set_key

lib_logger = logging.getLogger("firmware_quota")

API_KEY_ENV = "FIRMWARE_API_KEY"
QUOTA_URL = "https://app.firmware.ai/api/v1/quota"
CONFIG_DIR = Path.home() / ".config" / "firmware-quota"
ENV_FILE_PATH = CONFIG_DIR / "env"
DEFAULT_LOG_FILE = "show_quota.log"
REQUEST_TIMEOUT_S = 15

# Per-surface refresh intervals, in seconds
TERMINAL_DEFAULT_INTERVAL_S = 60
TERMINAL_MIN_INTERVAL_S = 5
WIDGET_DEFAULT_INTERVAL_S = 30
WIDGET_MIN_INTERVAL_S = 15
WIDGET_INTERVAL_CHOICES = (15, 30, 60, 120)


def env_int(name: str, default: int) -> int:
    """Parse an integer from an environment variable with fallback to default."""
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        lib_logger.warning(f"Invalid {name} value, using default {default}")
        return default


def clamp_refresh_interval(seconds: int | None, minimum: int, default: int) -> int:
    """Non-positive or missing intervals fall back to default; others clamp up to minimum."""
    if seconds is None or seconds <= 0:
        return default
    return max(minimum, seconds)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def read_key_from_env_file(path: Path = ENV_FILE_PATH) -> str:
    try:
        values = dotenv_values(path, interpolate=False)
    except (OSError, UnicodeDecodeError) as e:
        lib_logger.warning(f"Could not read key file {path}: {e}")
        return ""
    return (values.get(API_KEY_ENV) or "").strip()


def load_api_key(path: Path = ENV_FILE_PATH) -> str:
    """Resolve the API key from the environment, then from the env file."""
    key = os.environ.get(API_KEY_ENV, "").strip()
    if key:
        return key
    return read_key_from_env_file(path)


def save_api_key(api_key: str, path: Path = ENV_FILE_PATH) -> bool:
    if not api_key:
        return False
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        if not path.is_file():
            path.touch(mode=0o600)
            path.write_text("# Managed by firmware-quota (plaintext key file)\n")
        set_key(str(path), API_KEY_ENV, api_key)
        os.chmod(path, 0o600)
    except OSError as e:
        lib_logger.warning(f"Could not write key file {path}: {e}")
        return False
    return True


def delete_api_key_file(path: Path = ENV_FILE_PATH) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        lib_logger.warning(f"Could not remove key file {path}: {e}")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    api_key: str = ""
    quota_url: str = QUOTA_URL
    request_timeout: int = REQUEST_TIMEOUT_S
    refresh_interval: int = TERMINAL_DEFAULT_INTERVAL_S
    log_file: str | None = DEFAULT_LOG_FILE


def load_settings(
    api_key: str | None = None,
    refresh_interval: int | None = None,
    minimum_interval: int = TERMINAL_MIN_INTERVAL_S,
    default_interval: int = TERMINAL_DEFAULT_INTERVAL_S,
    log_file: str | None = DEFAULT_LOG_FILE,
) -> Settings:
    return Settings(
        api_key=(api_key or "").strip() or load_api_key(),
        quota_url=os.environ.get("FIRMWARE_QUOTA_URL", QUOTA_URL),
        request_timeout=max(1, env_int("FIRMWARE_QUOTA_TIMEOUT", REQUEST_TIMEOUT_S)),
        refresh_interval=clamp_refresh_interval(
            refresh_interval, minimum_interval, default_interval
        ),
        log_file=log_file,
    )


def setup_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    lib_logger.handlers.clear()
    lib_logger.addHandler(handler)
    lib_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    lib_logger.propagate = False
