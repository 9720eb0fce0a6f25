import hashlib
import hmac
import re
import secrets
from pathlib import Path

from loguru import logger

from self_control.errors import ConfigError, InvalidInputError
from self_control.settings import settings

ITERATIONS = 600_000

_RULES = [
    (r"[A-Z]", "password must contain at least one uppercase letter"),
    (r"[a-z]", "password must contain at least one lowercase letter"),
    (r"[0-9]", "password must contain at least one digit"),
    (r"[!@#$%^&*(),.?\":{}|<>]", "password must contain at least one special character"),
]


def _password_file(path: Path | None) -> Path:
    return Path(path) if path else settings.password_file


def _hash(password: str, salt: bytes) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, ITERATIONS)
    return f"{salt.hex()}${digest.hex()}"


def validate_password(password: str) -> None:
    if len(password) < 8:
        raise InvalidInputError("password must be at least 8 characters long")
    for pattern, message in _RULES:
        if not re.search(pattern, password):
            raise InvalidInputError(message)


def has_password(path: Path | None = None) -> bool:
    return _password_file(path).exists()


def set_password(password: str, path: Path | None = None) -> None:
    validate_password(password)
    target = _password_file(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(_hash(password, secrets.token_bytes(16)))
    target.chmod(0o600)
    logger.info("Password updated.")


def verify_password(password: str, path: Path | None = None) -> bool:
    target = _password_file(path)
    try:
        stored = target.read_text().strip()
        salt_hex, _ = stored.split("$", 1)
        return hmac.compare_digest(stored, _hash(password, bytes.fromhex(salt_hex)))
    except FileNotFoundError:
        return True  # No password set yet
    except (OSError, ValueError) as e:
        raise ConfigError(f"Unreadable password file {target}: {e}") from e


def change_password(current: str, new: str, path: Path | None = None) -> None:
    if not verify_password(current, path):
        raise InvalidInputError("Current password is incorrect")
    set_password(new, path)
