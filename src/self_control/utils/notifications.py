import subprocess
import sys

from loguru import logger

from self_control.settings import settings


def _applescript_string(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _command(summary: str, body: str) -> list[str] | None:
    if sys.platform == "darwin":
        script = (
            f"display notification {_applescript_string(body)} "
            f"with title {_applescript_string(summary)}"
        )
        return ["osascript", "-e", script]
    if sys.platform.startswith("linux"):
        return ["notify-send", "-a", settings.app_name, summary, body]
    return None


def send_notification(summary: str, body: str):
    """Best-effort desktop notification when a block ends. Never raises."""
    logger.info(f"Notification: {summary} | {body}")
    cmd = _command(summary, body)
    if cmd is None:
        return
    try:
        subprocess.run(cmd, check=False, capture_output=True, timeout=5)
    except FileNotFoundError:
        # Headless machines and the background instance often have no notifier
        logger.debug(f"{cmd[0]} not found, notification skipped")
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Failed to send notification: {e}")
