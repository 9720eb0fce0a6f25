import threading
from contextlib import contextmanager
from pathlib import Path

import yaml
from loguru import logger
from pydantic import ValidationError

from self_control.errors import ConfigError, InvalidInputError
from self_control.schema import Config, Schedule, Site, TimeRange
from self_control.settings import settings
from self_control.utils.signals import critical_section
from self_control.utils.time import (
    check_start_before_end,
    format_time,
    validate_days,
)
from self_control.utils.urls import format_string, name_from_url


class _YamlDocument:
    """Locked load/save of a single YAML document."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()

    def _read(self) -> dict:
        if not self.path.exists():
            raise ConfigError(
                f"{self.path} not found. Run `selfcontrol init` to create it."
            )
        try:
            with open(self.path) as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read {self.path}: {e}") from e

    def _write(self, data: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with critical_section(), open(self.path, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise ConfigError(f"Failed to write {self.path}: {e}") from e


class ConfigStore(_YamlDocument):
    """config.yaml: the site list, weekly ranges and the current status."""

    def __init__(self, path: Path | None = None):
        super().__init__(path or settings.config_file)

    def load(self) -> Config:
        with self._lock:
            data = self._read()
        try:
            return Config(**data)
        except (ValidationError, InvalidInputError, TypeError) as e:
            raise ConfigError(f"Malformed {self.path}: {e}") from e

    def save(self, config: Config) -> None:
        with self._lock:
            self._write(config.model_dump(mode="json"))

    @contextmanager
    def update(self):
        """Read-modify-write under the store lock. Nothing is saved if the body raises."""
        with self._lock:
            config = self.load()
            yield config
            self.save(config)

    def create_default(self) -> Config:
        config = Config()
        self.save(config)
        return config

    # --- Sites ---

    def add_site(self, url: str) -> str:
        url = format_string(url)
        if not url:
            raise InvalidInputError("Site URL cannot be empty")
        with self.update() as config:
            if any(s.lower() == url for s in config.sites):
                raise InvalidInputError(f"{url} is already in the configuration")
            config.sites.append(url)
        logger.info(f"Added site {url}")
        return url

    def remove_site(self, url: str) -> str:
        url = format_string(url)
        with self.update() as config:
            match = next((s for s in config.sites if s.lower() == url), None)
            if match is None:
                raise InvalidInputError(f"Site {url} not found in the config")
            config.sites.remove(match)
        logger.info(f"Removed site {match}")
        return match

    # --- Weekly ranges ---

    def add_day(self, day: str, ranges: list[TimeRange]) -> None:
        [day] = validate_days([day])
        if not ranges:
            raise InvalidInputError("A day needs at least one time range")
        with self.update() as config:
            if day in config.schedules:
                raise InvalidInputError(f"{day} already exists in the schedule")
            config.schedules[day] = list(ranges)

    def delete_day(self, day: str) -> None:
        day = format_string(day)
        with self.update() as config:
            if day not in config.schedules:
                raise InvalidInputError(f"{day} does not exist in the schedule")
            del config.schedules[day]

    def add_time_range(self, day: str, time_range: TimeRange) -> None:
        day = format_string(day)
        with self.update() as config:
            if day not in config.schedules:
                raise InvalidInputError(f"{day} does not exist in the schedule")
            config.schedules[day].append(time_range)

    def delete_time_range(self, day: str, index: int) -> TimeRange:
        """Removes the range at a 1-based index."""
        day = format_string(day)
        with self.update() as config:
            ranges = self._ranges_for(config, day, index)
            return ranges.pop(index - 1)

    def edit_time(self, day: str, index: int, new_time: str, start: bool) -> TimeRange:
        """Changes the start or end of the range at a 1-based index."""
        day = format_string(day)
        new_time = format_time(new_time)
        with self.update() as config:
            ranges = self._ranges_for(config, day, index)
            current = ranges[index - 1]
            if start:
                check_start_before_end(new_time, current.end)
                updated = TimeRange(start=new_time, end=current.end)
            else:
                check_start_before_end(current.start, new_time)
                updated = TimeRange(start=current.start, end=new_time)
            ranges[index - 1] = updated
        return updated

    @staticmethod
    def _ranges_for(config: Config, day: str, index: int) -> list[TimeRange]:
        if day not in config.schedules:
            raise InvalidInputError(f"{day} does not exist in the schedule")
        ranges = config.schedules[day]
        if index < 1 or index > len(ranges):
            raise InvalidInputError(f"Index {index} is out of range")
        return ranges


class SiteStore(_YamlDocument):
    """blocked-sites.yaml: per-site block entries used in normal mode."""

    def __init__(self, path: Path | None = None):
        super().__init__(path or settings.sites_file)

    def all(self) -> list[Site]:
        with self._lock:
            data = self._read()
        try:
            return [Site(**s) for s in data.get("sites") or []]
        except (ValidationError, TypeError) as e:
            raise ConfigError(f"Malformed {self.path}: {e}") from e

    def _save(self, sites: list[Site]) -> None:
        self._write({"sites": [s.model_dump(mode="json", by_alias=True) for s in sites]})

    @contextmanager
    def _update(self):
        with self._lock:
            sites = self.all()
            yield sites
            self._save(sites)

    def create_default(self) -> None:
        self._save([])

    def get(self, url: str) -> Site:
        url = format_string(url)
        site = next((s for s in self.all() if s.url == url), None)
        if site is None:
            raise InvalidInputError(f"Site {url} not found")
        return site

    def add(self, url: str, expiry: str = "", name: str | None = None) -> Site:
        url = format_string(url)
        if not url:
            raise InvalidInputError("Site URL cannot be empty")
        with self._update() as sites:
            if any(s.url == url for s in sites):
                raise InvalidInputError(f"{url} is already blocked")
            site = Site(
                name=format_string(name) if name else name_from_url(url),
                url=url,
                duration=expiry,
            )
            sites.append(site)
        return site

    def remove(self, key: str) -> Site:
        """Removes a site by URL or derived name."""
        key = format_string(key)
        with self._update() as sites:
            site = next((s for s in sites if key in (s.url, s.name)), None)
            if site is None:
                raise InvalidInputError(f"Site {key} not found")
            sites.remove(site)
        return site

    def set_blocked(self, url: str, blocked: bool) -> None:
        with self._update() as sites:
            for site in sites:
                if site.url == url:
                    site.currently_blocked = blocked
                    break

    def update_expiry(self, url: str, expiry: str) -> Site:
        with self._update() as sites:
            site = next((s for s in sites if s.url == url), None)
            if site is None:
                raise InvalidInputError(f"Site {url} not found")
            site.duration = expiry
        return site


class ScheduleStore(_YamlDocument):
    """schedules.yaml: named weekly schedules."""

    EDITABLE_FIELDS = ("name", "days", "start_time", "end_time")

    def __init__(self, path: Path | None = None):
        super().__init__(path or settings.schedules_file)

    def all(self) -> list[Schedule]:
        with self._lock:
            data = self._read()
        try:
            return [Schedule(**s) for s in data.get("schedules") or []]
        except (ValidationError, InvalidInputError, TypeError) as e:
            raise ConfigError(f"Malformed {self.path}: {e}") from e

    def _save(self, schedules: list[Schedule]) -> None:
        self._write(
            {"schedules": [s.model_dump(mode="json", by_alias=True) for s in schedules]}
        )

    @contextmanager
    def _update(self):
        with self._lock:
            schedules = self.all()
            yield schedules
            self._save(schedules)

    def create_default(self) -> None:
        self._save([])

    def add(self, name: str, days: list[str], start_time: str, end_time: str) -> Schedule:
        name = name.strip()
        if not name:
            raise InvalidInputError("Schedule name cannot be empty")
        schedule = Schedule(name=name, days=days, start_time=start_time, end_time=end_time)
        with self._update() as schedules:
            if any(s.name == name for s in schedules):
                raise InvalidInputError(f"Schedule {name} already exists")
            schedules.append(schedule)
        logger.info(f"Added schedule {name}")
        return schedule

    def edit(self, name: str, field: str, value) -> Schedule:
        """Changes one field of a schedule, re-validating the whole record."""
        if field not in self.EDITABLE_FIELDS:
            raise InvalidInputError(f"Unknown schedule field: {field}")
        with self._update() as schedules:
            index = next((i for i, s in enumerate(schedules) if s.name == name), None)
            if index is None:
                raise InvalidInputError(f"Schedule {name} not found")
            if field == "name" and any(s.name == value for s in schedules):
                raise InvalidInputError(f"Schedule {value} already exists")
            if field == "days" and isinstance(value, str):
                value = value.split(",")
            data = schedules[index].model_dump()
            data[field] = value
            schedules[index] = Schedule(**data)
        return schedules[index]

    def delete(self, name: str) -> None:
        with self._update() as schedules:
            remaining = [s for s in schedules if s.name != name]
            if len(remaining) == len(schedules):
                raise InvalidInputError(f"Schedule {name} not found")
            schedules[:] = remaining
