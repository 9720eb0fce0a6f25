import os
import subprocess
import sys
from datetime import timedelta

import pytest

from self_control import daemon
from self_control.errors import ProcessControlError
from self_control.schema import CurrentStatus, Mode
from self_control.utils.processes import is_process_alive, read_pid, write_pid
from self_control.utils.time import format_timestamp, now

from conftest import ORIGINAL_HOSTS


@pytest.fixture
def lock_file(tmp_path):
    return tmp_path / "selfcontrol.lock"


def test_no_lock_file(lock_file):
    assert daemon.cleanup_existing_instance(lock_file) is False


def test_empty_lock_file_is_removed(lock_file):
    lock_file.write_text("")
    assert daemon.cleanup_existing_instance(lock_file) is False
    assert not lock_file.exists()


def test_garbage_lock_file_is_removed(lock_file):
    lock_file.write_text("not a pid")
    with pytest.raises(ProcessControlError):
        read_pid(lock_file)
    assert daemon.cleanup_existing_instance(lock_file) is False
    assert not lock_file.exists()


def test_stale_pid_is_removed(lock_file):
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    write_pid(lock_file, proc.pid)

    assert not is_process_alive(proc.pid)
    assert daemon.cleanup_existing_instance(lock_file) is False
    assert not lock_file.exists()


def test_own_pid_is_left_alone(lock_file):
    write_pid(lock_file)
    assert daemon.cleanup_existing_instance(lock_file) is False
    assert read_pid(lock_file) == os.getpid()


def test_live_instance_is_stopped(lock_file):
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    write_pid(lock_file, proc.pid)
    try:
        assert daemon.cleanup_existing_instance(lock_file, timeout=5) is True
        assert proc.wait(timeout=5) is not None
        assert not lock_file.exists()
    finally:
        if proc.poll() is None:
            proc.kill()


def test_unstoppable_instance_raises(lock_file, monkeypatch):
    write_pid(lock_file, 999999)
    monkeypatch.setattr(daemon, "is_process_alive", lambda pid: True)

    def refuse(pid, timeout):
        raise ProcessControlError(f"Process {pid} did not exit after SIGKILL")

    monkeypatch.setattr(daemon, "stop_process", refuse)
    with pytest.raises(ProcessControlError):
        daemon.cleanup_existing_instance(lock_file)
    assert lock_file.exists()


def test_background_loop_without_block_cleans_up(make_engine, hosts_path, lock_file):
    hosts_path.write_text(ORIGINAL_HOSTS + "\n# Added by selfcontrol\n127.0.0.1 reddit.com\n")
    engine = make_engine()

    daemon.run_background_loop(engine, lock_file)

    assert hosts_path.read_text() == ORIGINAL_HOSTS
    assert not lock_file.exists()
    assert engine.config_store.load().current_status.block_on_restart is False


def test_background_loop_enforces_until_expiry(make_engine, hosts_path, lock_file):
    ended_at = format_timestamp(now() + timedelta(seconds=2))
    status = CurrentStatus(
        mode=Mode.STRICT, block_on_restart=True, block_custom_time=True, ended_at=ended_at
    )
    engine = make_engine(status=status)

    daemon.run_background_loop(engine, lock_file)

    assert engine.registry.count() == 0
    assert hosts_path.read_text() == ORIGINAL_HOSTS
    assert not lock_file.exists()
    status = engine.config_store.load().current_status
    assert status.block_on_restart is False
    assert status.mode == Mode.NORMAL


def test_startup_without_flag_does_nothing(make_engine, lock_file):
    engine = make_engine()
    assert daemon.run_startup(engine, lock_file) is False
    assert not lock_file.exists()


def test_resume_from_background_takes_over(make_engine, lock_file):
    ended_at = format_timestamp(now() + timedelta(minutes=10))
    status = CurrentStatus(block_on_restart=True, block_custom_time=True, ended_at=ended_at)
    engine = make_engine(status=status)

    expiry = daemon.resume_from_background(engine, lock_file)

    assert format_timestamp(expiry) == ended_at
    assert engine.registry.count() == 1
