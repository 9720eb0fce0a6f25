import pytest

from self_control.engine import BlockEngine
from self_control.hosts import HostsFile
from self_control.registry import BlockRegistry
from self_control.schema import Config, CurrentStatus
from self_control.settings import settings
from self_control.store import ConfigStore, ScheduleStore, SiteStore
from self_control.utils.time import now

ORIGINAL_HOSTS = "127.0.0.1 localhost\n::1 localhost ip6-localhost\n"


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep every test away from the real data dir and /etc/hosts."""
    monkeypatch.setattr(settings, "data_dir", tmp_path / "data")
    monkeypatch.setattr(settings, "log_dir", tmp_path / "logs")
    monkeypatch.setattr(settings, "hosts_file", tmp_path / "hosts")
    monkeypatch.setattr(settings, "poll_interval", 0.01)


@pytest.fixture
def hosts_path(tmp_path):
    path = tmp_path / "hosts"
    path.write_text(ORIGINAL_HOSTS)
    return path


@pytest.fixture
def make_engine(tmp_path, hosts_path):
    engines = []

    def factory(
        sites=("reddit.com", "youtube.com"),
        schedules=None,
        status=None,
        clock=now,
        notify=lambda summary, body: None,
    ):
        config_store = ConfigStore(tmp_path / "config.yaml")
        config_store.save(
            Config(
                sites=list(sites),
                schedules=schedules or {},
                current_status=status or CurrentStatus(),
            )
        )
        site_store = SiteStore(tmp_path / "blocked-sites.yaml")
        site_store.create_default()
        engine = BlockEngine(
            config_store=config_store,
            site_store=site_store,
            schedule_store=ScheduleStore(tmp_path / "schedules.yaml"),
            hosts=HostsFile(hosts_path),
            registry=BlockRegistry(poll_interval=0.01, clock=clock),
            clock=clock,
            notify=notify,
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.registry.cancel_all()
