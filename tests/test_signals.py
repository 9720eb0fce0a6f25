import signal

import pytest

from self_control import hosts as hosts_module
from self_control.hosts import HostsFile
from self_control.utils.signals import critical_section, handle_exit_signals

from conftest import ORIGINAL_HOSTS


class Stopped(Exception):
    pass


def stop(signum, frame):
    raise Stopped(signum)


def test_signal_waits_for_critical_section():
    steps = []
    with handle_exit_signals(stop):
        with pytest.raises(Stopped):
            with critical_section():
                signal.raise_signal(signal.SIGTERM)
                steps.append("written")
            steps.append("after section")
    assert steps == ["written"]


def test_signal_outside_critical_section_runs_at_once():
    with handle_exit_signals(stop):
        with pytest.raises(Stopped):
            signal.raise_signal(signal.SIGINT)


def test_previous_handlers_are_restored():
    before = signal.getsignal(signal.SIGTERM)
    with handle_exit_signals(stop):
        assert signal.getsignal(signal.SIGTERM) is not before
    assert signal.getsignal(signal.SIGTERM) is before


def test_hosts_write_completes_before_exit(hosts_path, monkeypatch):
    def signalling_open(*args, **kwargs):
        f = open(*args, **kwargs)
        # Lands after the truncate, before the content is written
        signal.raise_signal(signal.SIGTERM)
        return f

    monkeypatch.setattr(hosts_module, "open", signalling_open, raising=False)
    hosts = HostsFile(hosts_path)
    with handle_exit_signals(stop):
        with pytest.raises(Stopped):
            hosts.add_entries(["reddit.com"])

    assert hosts_path.read_text().startswith(ORIGINAL_HOSTS)
    assert hosts.blocked_hosts() == ["reddit.com"]


def test_nested_sections_wait_for_the_outermost():
    steps = []
    with handle_exit_signals(stop):
        with pytest.raises(Stopped):
            with critical_section():
                with critical_section():
                    signal.raise_signal(signal.SIGTERM)
                steps.append("outer")
    assert steps == ["outer"]
