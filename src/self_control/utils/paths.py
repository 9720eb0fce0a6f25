import os
import sys
from pathlib import Path

from platformdirs import user_data_dir, user_log_dir

APP_DIR_NAME = "selfcontrol"

# src/self_control/utils/paths.py -> repository root
_CHECKOUT_ROOT = Path(__file__).resolve().parents[3]


def dev_checkout() -> Path | None:
    """Repository root when running from a git checkout; state then lives in outputs/."""
    markers = ("pyproject.toml", ".git")
    if all((_CHECKOUT_ROOT / m).exists() for m in markers):
        return _CHECKOUT_ROOT
    return None


def get_default_data_dir() -> Path:
    root = dev_checkout()
    if root:
        return root / "outputs"
    return Path(user_data_dir(appname=APP_DIR_NAME, appauthor=False))


def get_default_log_dir() -> Path:
    root = dev_checkout()
    if root:
        return root / "outputs" / "logs"
    return Path(user_log_dir(appname=APP_DIR_NAME, appauthor=False))


def get_default_hosts_file() -> Path:
    if sys.platform == "win32":
        system_root = Path(os.environ.get("SystemRoot", r"C:\Windows"))
        return system_root / "System32" / "drivers" / "etc" / "hosts"
    return Path("/etc/hosts")
