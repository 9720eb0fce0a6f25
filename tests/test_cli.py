import signal
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from self_control import cli
from self_control.cli import app
from self_control.engine import load_engine
from self_control.hosts import HostsFile
from self_control.registry import BlockRegistry
from self_control.schema import CurrentStatus, Mode
from self_control.settings import settings
from self_control.store import ConfigStore, ScheduleStore, SiteStore
from self_control.utils.time import format_timestamp, now

runner = CliRunner()


@pytest.fixture
def engines(monkeypatch):
    """Engines created by CLI commands; their timers are cancelled afterwards."""
    created = []

    def tracked_load_engine():
        engine = load_engine()
        created.append(engine)
        return engine

    monkeypatch.setattr(cli, "load_engine", tracked_load_engine)
    yield created
    for engine in created:
        engine.registry.cancel_all()


@pytest.fixture
def launches(monkeypatch):
    """Flag values seen by each background launch."""
    seen = []

    def fake_start_background():
        seen.append(ConfigStore().load().current_status.block_on_restart)
        return 4242

    monkeypatch.setattr(cli, "start_background", fake_start_background)
    return seen


def test_commands_fail_before_init():
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 1
    assert "init" in result.output


def test_init_creates_documents():
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert settings.config_file.exists()
    assert settings.sites_file.exists()
    assert settings.schedules_file.exists()

    # Running it again keeps what is there
    ConfigStore().add_site("reddit.com")
    assert runner.invoke(app, ["init"]).exit_code == 0
    assert ConfigStore().load().sites == ["reddit.com"]


def test_site_and_day_commands(hosts_path):
    runner.invoke(app, ["init"])

    result = runner.invoke(app, ["site", "add", "Reddit.com"])
    assert result.exit_code == 0, result.output
    assert ConfigStore().load().sites == ["reddit.com"]

    result = runner.invoke(app, ["day", "add", "monday", "09:00", "17:00"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(app, ["day", "edit", "monday", "1", "--end", "18:00"])
    assert result.exit_code == 0, result.output
    assert ConfigStore().load().schedules["monday"][0].end == "18:00"

    result = runner.invoke(app, ["day", "add", "monday", "10:00", "11:00"])
    assert result.exit_code == 1
    assert "already exists" in result.output

    result = runner.invoke(app, ["site", "list"])
    assert "reddit.com" in result.output


def test_schedule_commands():
    runner.invoke(app, ["init"])

    result = runner.invoke(
        app, ["schedule", "add", "work", "--days", "monday,friday", "--start", "09:00", "--end", "17:00"]
    )
    assert result.exit_code == 0, result.output
    assert [s.days for s in ScheduleStore().all()] == [["monday", "friday"]]

    result = runner.invoke(app, ["schedule", "edit", "work", "start_time", "18:00"])
    assert result.exit_code == 1

    result = runner.invoke(app, ["schedule", "list"])
    assert "work" in result.output

    assert runner.invoke(app, ["schedule", "delete", "work"]).exit_code == 0
    assert ScheduleStore().all() == []


def test_status_reports_mode(hosts_path):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "normal" in result.output
    assert "No block currently active" in result.output


def test_block_rejects_bad_duration():
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["block", "--duration", "soon"])
    assert result.exit_code == 1
    assert "Invalid duration" in result.output


def test_sigterm_while_waiting_hands_off(monkeypatch, hosts_path, engines, launches):
    runner.invoke(app, ["init"])
    ConfigStore().add_site("reddit.com")

    def terminated(self, timeout=None, background_only=False):
        signal.raise_signal(signal.SIGTERM)
        return False

    monkeypatch.setattr(BlockRegistry, "wait_idle", terminated)
    result = runner.invoke(app, ["block", "--duration", "1h", "--wait"])

    assert result.exit_code == 0, result.output
    assert launches == [True]
    assert "4242" in result.output
    assert HostsFile().blocked_hosts() == ["reddit.com"]


def test_strict_mode_refuses_site_commands(hosts_path, engines, launches):
    runner.invoke(app, ["init"])
    with ConfigStore().update() as config:
        config.sites = ["reddit.com"]
        config.current_status = CurrentStatus(
            mode=Mode.STRICT,
            block_on_restart=True,
            block_custom_time=True,
            ended_at=format_timestamp(now() + timedelta(hours=1)),
        )

    for args in (
        ["site", "add", "news.com"],
        ["site", "block", "news.com", "-d", "1m"],
        ["site", "block", "--all", "-d", "1m"],
        ["site", "expiry", "news.com", "-d", "1m"],
        ["site", "forget", "news.com"],
    ):
        result = runner.invoke(app, args)
        assert result.exit_code == 1, args
        assert "Cannot access" in result.output

    assert ConfigStore().load().sites == ["reddit.com"]
    assert SiteStore().all() == []
    # The resumed block was handed on after every refusal
    assert launches == [True] * 5


def test_per_site_commands(hosts_path, engines, launches):
    runner.invoke(app, ["init"])
    SiteStore().add("reddit.com")
    SiteStore().add("youtube.com")

    result = runner.invoke(app, ["site", "block", "--all", "-d", "1h"])
    assert result.exit_code == 0, result.output
    assert "Blocking 2 sites" in result.output
    assert all(site.currently_blocked for site in SiteStore().all())

    result = runner.invoke(app, ["site", "expiry", "reddit.com", "-d", "2h"])
    assert result.exit_code == 0, result.output
    assert engines[-1].registry.expiry_of("reddit.com") > now() + timedelta(minutes=90)

    result = runner.invoke(app, ["site", "forget", "reddit.com"])
    assert result.exit_code == 0, result.output
    assert [site.url for site in SiteStore().all()] == ["youtube.com"]
    assert HostsFile().blocked_hosts() == ["youtube.com"]


def test_site_block_needs_url_or_all():
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["site", "block", "-d", "1h"])
    assert result.exit_code == 1
    assert "--all" in result.output
