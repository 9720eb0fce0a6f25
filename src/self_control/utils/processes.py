import os
from pathlib import Path

import psutil
from loguru import logger

from self_control.errors import ProcessControlError


def is_process_alive(pid: int) -> bool:
    """True if a non-zombie process with this PID exists."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True  # It exists, we just cannot inspect it


def stop_process(pid: int, timeout: float) -> None:
    """
    Terminates a process and waits for it to exit, escalating to SIGKILL.
    Raises ProcessControlError if it is still alive after both attempts.
    """
    try:
        proc = psutil.Process(pid)
        logger.info(f"Terminating background instance (PID: {pid})")
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
            return
        except psutil.TimeoutExpired:
            logger.warning(f"PID {pid} ignored SIGTERM for {timeout}s, killing it")
        proc.kill()
        proc.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return
    except psutil.AccessDenied as e:
        raise ProcessControlError(f"Not allowed to stop process {pid}: {e}") from e
    except psutil.TimeoutExpired as e:
        raise ProcessControlError(f"Process {pid} did not exit after SIGKILL") from e


def read_pid(lock_file: Path) -> int | None:
    """PID recorded in the lock file; None when missing or empty."""
    try:
        text = lock_file.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise ProcessControlError(f"Error reading lock file {lock_file}: {e}") from e
    if not text:
        return None
    try:
        return int(text)
    except ValueError as e:
        raise ProcessControlError(f"Error parsing PID from lock file {lock_file}: {text!r}") from e


def write_pid(lock_file: Path, pid: int | None = None) -> None:
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock_file.write_text(str(pid if pid is not None else os.getpid()))


def remove_lock(lock_file: Path) -> None:
    lock_file.unlink(missing_ok=True)
