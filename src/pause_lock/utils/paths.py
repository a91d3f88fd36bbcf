import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir, user_log_dir

APP_DIR_NAME = "pause_lock"
SERVICE_NAME = "pauselock.service"


def get_checkout_root() -> Path | None:
    """The source checkout this module runs from, if it is one (pyproject.toml and .git)."""
    root = Path(__file__).resolve().parents[3]
    if (root / "pyproject.toml").exists() and (root / ".git").exists():
        return root
    return None


def get_default_data_dir() -> Path:
    """Tags, profiles, selections and daemon state; `outputs/` inside a checkout."""
    root = get_checkout_root()
    return root / "outputs" if root else Path(user_data_dir(appname=APP_DIR_NAME))


def get_default_log_dir() -> Path:
    root = get_checkout_root()
    return root / "outputs" / "logs" if root else Path(user_log_dir(appname=APP_DIR_NAME))


def get_service_file() -> Path:
    """Where the systemd user unit for the daemon is expected."""
    config_home = os.environ.get("XDG_CONFIG_HOME") or user_config_dir()
    return Path(config_home) / "systemd" / "user" / SERVICE_NAME
