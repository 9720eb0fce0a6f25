import pytest

from self_control.errors import ConfigError, InvalidInputError
from self_control.schema import Mode, TimeRange
from self_control.store import ConfigStore, ScheduleStore, SiteStore


@pytest.fixture
def config_store(tmp_path):
    store = ConfigStore(tmp_path / "config.yaml")
    store.create_default()
    return store


def test_missing_document_raises(tmp_path):
    with pytest.raises(ConfigError):
        ConfigStore(tmp_path / "config.yaml").load()


def test_malformed_document_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("sites: [unclosed\n")
    with pytest.raises(ConfigError):
        ConfigStore(path).load()


def test_default_config(config_store):
    config = config_store.load()
    assert config.sites == []
    assert config.schedules == {}
    assert config.current_status.mode == Mode.NORMAL
    assert config.current_status.block_on_restart is False


def test_legacy_string_flags_are_accepted(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "sites:\n- reddit.com\n"
        "schedules:\n  monday:\n  - start: '09:00'\n    end: '17:00'\n"
        "current_status:\n"
        "  mode: strict\n"
        "  block_on_restart: 'true'\n"
        "  block_custom_time: ''\n"
        "  started_at: ''\n"
        "  ended_at:\n"
    )
    status = ConfigStore(path).load().current_status
    assert status.mode == Mode.STRICT
    assert status.block_on_restart is True
    assert status.block_custom_time is False
    assert status.ended_at == ""


def test_update_discards_changes_on_error(config_store):
    with pytest.raises(RuntimeError):
        with config_store.update() as config:
            config.sites.append("reddit.com")
            raise RuntimeError("abort")
    assert config_store.load().sites == []


def test_add_and_remove_site(config_store):
    assert config_store.add_site(" Reddit.com ") == "reddit.com"
    with pytest.raises(InvalidInputError):
        config_store.add_site("reddit.com")

    assert config_store.remove_site("REDDIT.COM") == "reddit.com"
    with pytest.raises(InvalidInputError):
        config_store.remove_site("reddit.com")


def test_weekly_ranges(config_store):
    config_store.add_day("Monday", [TimeRange(start="09:00", end="12:00")])
    config_store.add_time_range("monday", TimeRange(start="1300", end="1700"))
    assert config_store.load().schedules["monday"] == [
        TimeRange(start="09:00", end="12:00"),
        TimeRange(start="13:00", end="17:00"),
    ]

    with pytest.raises(InvalidInputError):
        config_store.add_day("monday", [TimeRange(start="09:00", end="10:00")])

    updated = config_store.edit_time("monday", 2, "18:00", start=False)
    assert updated == TimeRange(start="13:00", end="18:00")
    with pytest.raises(InvalidInputError):
        config_store.edit_time("monday", 1, "12:30", start=True)

    removed = config_store.delete_time_range("monday", 1)
    assert removed.start == "09:00"
    with pytest.raises(InvalidInputError):
        config_store.delete_time_range("monday", 5)

    config_store.delete_day("monday")
    assert config_store.load().schedules == {}


def test_invalid_range_is_rejected():
    with pytest.raises(InvalidInputError):
        TimeRange(start="17:00", end="09:00")


def test_site_store(tmp_path):
    store = SiteStore(tmp_path / "blocked-sites.yaml")
    store.create_default()

    site = store.add("www.reddit.com")
    assert site.name == "reddit"
    assert site.currently_blocked is False
    with pytest.raises(InvalidInputError):
        store.add("www.reddit.com")

    store.set_blocked("www.reddit.com", True)
    store.update_expiry("www.reddit.com", "2024-05-06 17:00:00 +0000")
    reloaded = store.get("www.reddit.com")
    assert reloaded.currently_blocked is True
    assert reloaded.duration == "2024-05-06 17:00:00 +0000"
    assert "currentlyBlocked: true" in store.path.read_text()

    assert store.remove("reddit").url == "www.reddit.com"
    assert store.all() == []


def test_schedule_store(tmp_path):
    store = ScheduleStore(tmp_path / "schedules.yaml")
    store.create_default()

    store.add("work", ["Monday", "tuesday"], "09:00", "17:00")
    with pytest.raises(InvalidInputError):
        store.add("work", ["monday"], "09:00", "17:00")
    with pytest.raises(InvalidInputError):
        store.add("evening", ["monday"], "20:00", "19:00")

    text = store.path.read_text()
    assert "startTime: 09:00" in text or "startTime: '09:00'" in text

    edited = store.edit("work", "days", "friday,saturday")
    assert edited.days == ["friday", "saturday"]
    edited = store.edit("work", "name", "office")
    assert [s.name for s in store.all()] == ["office"]

    with pytest.raises(InvalidInputError):
        store.edit("office", "end_time", "08:00")
    with pytest.raises(InvalidInputError):
        store.edit("office", "color", "blue")

    store.delete("office")
    assert store.all() == []
    with pytest.raises(InvalidInputError):
        store.delete("office")
