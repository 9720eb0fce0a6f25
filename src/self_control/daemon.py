import os
import subprocess
import sys
from pathlib import Path

from loguru import logger

from self_control.engine import BlockEngine
from self_control.errors import ProcessControlError
from self_control.settings import settings
from self_control.utils.processes import (
    is_process_alive,
    read_pid,
    remove_lock,
    stop_process,
    write_pid,
)

BACKGROUND_ENV = "SELFCONTROL_BACKGROUND"
STARTUP_ENV = "SELFCONTROL_STARTUP"


def cleanup_existing_instance(
    lock_file: Path | None = None, timeout: float | None = None
) -> bool:
    """
    Stops a background instance recorded in the lock file.

    Returns True if a live instance was stopped, False if there was none (no
    lock file, an empty one, or a stale PID). Raises ProcessControlError when
    the instance cannot be stopped.
    """
    lock_file = lock_file or settings.lock_file
    timeout = settings.stop_timeout if timeout is None else timeout

    try:
        pid = read_pid(lock_file)
    except ProcessControlError:
        logger.warning(f"Discarding unreadable lock file {lock_file}")
        remove_lock(lock_file)
        return False

    if pid is None:
        remove_lock(lock_file)
        return False
    if pid == os.getpid():
        return False
    if not is_process_alive(pid):
        logger.info(f"Removing stale lock file for dead PID {pid}")
        remove_lock(lock_file)
        return False

    stop_process(pid, timeout)
    remove_lock(lock_file)
    logger.info(f"Stopped background instance {pid}")
    return True


def start_background(lock_file: Path | None = None) -> int:
    """
    Re-launches this program headless with SELFCONTROL_BACKGROUND=1, records
    its PID in the lock file and returns it without waiting.
    """
    lock_file = lock_file or settings.lock_file
    cleanup_existing_instance(lock_file)

    settings.background_log.parent.mkdir(parents=True, exist_ok=True)
    env = {**os.environ, BACKGROUND_ENV: "1"}
    env.pop(STARTUP_ENV, None)

    with open(settings.background_log, "a") as out:
        proc = subprocess.Popen(
            [sys.executable, "-m", "self_control"],
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=out,
            start_new_session=True,
        )
    write_pid(lock_file, proc.pid)
    logger.info(f"Selfcontrol started in background (PID: {proc.pid})")
    return proc.pid


def run_background_loop(engine: BlockEngine, lock_file: Path | None = None) -> None:
    """
    Headless worker: resumes the saved block, keeps enforcing it until every
    timer has drained, then clears its bookkeeping and exits.
    """
    lock_file = lock_file or settings.lock_file
    write_pid(lock_file)
    logger.info(f"Background blocking started (PID: {os.getpid()})")

    try:
        engine.recover(background=True)
        if engine.registry.count():
            # This instance now owns the block; a reboot mid-block must resume it
            with engine.config_store.update() as config:
                config.current_status.block_on_restart = True
            logger.info(f"Waiting for {engine.registry.count()} blocks to expire")
            engine.registry.wait_idle(background_only=True)

        engine.hosts.remove_entries(None, all_entries=True)
        with engine.config_store.update() as config:
            config.current_status.block_on_restart = False
        logger.info("Background blocking completed")
    finally:
        if read_pid(lock_file) == os.getpid():
            remove_lock(lock_file)


def run_startup(engine: BlockEngine, lock_file: Path | None = None) -> bool:
    """OS-startup entry: only runs the background loop when a block should resume."""
    if not engine.config_store.load().current_status.block_on_restart:
        logger.info("Startup: no block to resume.")
        return False
    run_background_loop(engine, lock_file)
    return True


def resume_from_background(engine: BlockEngine, lock_file: Path | None = None):
    """
    Interactive start: takes over from a background instance, if one is
    running, and resumes whatever it was enforcing.
    """
    try:
        if cleanup_existing_instance(lock_file):
            logger.info("Background instance detected, continuing its block here.")
    except ProcessControlError as e:
        # Treat it as gone; the hosts entries are rebuilt from the config below
        logger.error(f"Could not stop background instance: {e}")

    expiry = engine.recover(background=False)
    if engine.registry.count() == 0:
        engine.check_access()
    return expiry
