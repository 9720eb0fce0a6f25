from collections.abc import Callable
from datetime import datetime, timedelta

from loguru import logger

from self_control.errors import (
    ConfigError,
    HostsFileError,
    InvalidInputError,
    NoActiveScheduleError,
    StrictModeError,
)
from self_control.hosts import HostsFile
from self_control.registry import COMBINED, BlockRegistry
from self_control.schema import Config, Mode, Site
from self_control.store import ConfigStore, ScheduleStore, SiteStore
from self_control.utils.notifications import send_notification
from self_control.utils.time import (
    at_time_today,
    format_timestamp,
    is_time_in_range,
    now as local_now,
    parse_timestamp,
    weekday_name,
)
from self_control.utils.urls import format_string


class BlockEngine:
    """
    Decides what to block and until when, and drives the registry, the hosts
    file and the config store through the normal/strict mode state machine.

    Two kinds of block exist side by side:

    * a batch block over every site in config.yaml, keyed ``"combined"``,
      started from the current schedule range or for a custom duration;
    * normal-mode per-site blocks from blocked-sites.yaml, keyed by URL.

    In strict mode nothing that would lift or shorten a running block is
    allowed until every timer has drained.
    """

    def __init__(
        self,
        config_store: ConfigStore | None = None,
        site_store: SiteStore | None = None,
        schedule_store: ScheduleStore | None = None,
        hosts: HostsFile | None = None,
        registry: BlockRegistry | None = None,
        clock: Callable[[], datetime] = local_now,
        notify: Callable[[str, str], None] = send_notification,
    ):
        self.config_store = config_store or ConfigStore()
        self.site_store = site_store or SiteStore()
        self.schedule_store = schedule_store or ScheduleStore()
        self.hosts = hosts or HostsFile()
        self.registry = registry or BlockRegistry(clock=clock)
        self._clock = clock
        self._notify = notify
        # Keys being superseded by a new block; their cancel leaves the mode alone
        self._replacing: set[str] = set()

    # --- Mode state machine ---

    def mode(self) -> Mode:
        return self.config_store.load().current_status.mode

    def set_mode(self, mode: Mode) -> None:
        with self.config_store.update() as config:
            if config.current_status.mode == mode:
                return
            config.current_status.mode = mode
        logger.info(f"Switched mode to {mode.value}")

    def enter_strict(self) -> None:
        self.set_mode(Mode.STRICT)

    def leave_strict(self) -> None:
        if self.registry.count():
            raise StrictModeError(
                "Cannot turn off strict mode because sites are currently being blocked.",
                self.expiry_description(),
            )
        self.set_mode(Mode.NORMAL)

    def is_locked(self) -> bool:
        """True while strict mode holds at least one running block."""
        return self.registry.count() > 0 and self.mode() == Mode.STRICT

    def check_access(self) -> None:
        """
        Gate for the config-editing and normal-mode menus. Raises StrictModeError
        with the expiry while strict mode holds a block; a strict mode with no
        running timers drops back to normal.
        """
        config = self.config_store.load()
        if config.current_status.mode != Mode.STRICT:
            return
        if self.registry.count() == 0:
            logger.info("Strict mode has no active blocks left, returning to normal mode.")
            self.set_mode(Mode.NORMAL)
            return
        raise StrictModeError(
            "Cannot access this menu while in strict mode.",
            self.expiry_description(config),
        )

    def _refuse_if_locked(self, action: str = "Blocks cannot be lifted") -> None:
        if self.is_locked():
            raise StrictModeError(
                f"{action} while in strict mode.", self.expiry_description()
            )

    def expiry_description(self, config: Config | None = None) -> str:
        """When the current block ends: the custom end time, the active range's end, or the nearest timer."""
        config = config or self.config_store.load()
        status = config.current_status
        if status.block_custom_time and status.ended_at:
            return status.ended_at
        end = self.active_range_end(config)
        if end:
            return end
        earliest = self.registry.earliest_expiry()
        return format_timestamp(earliest) if earliest else ""

    # --- Schedules ---

    def active_range_end(
        self, config: Config | None = None, now: datetime | None = None
    ) -> str | None:
        """End ('HH:MM') of the first range for today that contains now, if any."""
        config = config or self.config_store.load()
        now = now or self._clock()
        today = weekday_name(now)

        ranges = [(r.start, r.end) for r in config.schedules.get(today, [])]
        if self.schedule_store.path.exists():
            ranges.extend(
                (s.start_time, s.end_time)
                for s in self.schedule_store.all()
                if today in s.days
            )
        for start, end in ranges:
            if is_time_in_range(now, start, end):
                return end
        return None

    # --- Batch blocks ---

    def block_by_schedule(self, background: bool = False) -> datetime:
        """Blocks every configured site until the end of the range active now."""
        self._refuse_if_locked("A new schedule cannot replace the running block")
        return self._block_by_schedule(background)

    def block_for_duration(self, duration: timedelta, background: bool = False) -> datetime:
        """Blocks every configured site for ``duration`` regardless of schedules."""
        self._refuse_if_locked("A new block cannot replace the running block")
        expiry = self._clock() + duration
        self._start_combined(expiry, custom=True, background=background)
        return expiry

    def _block_by_schedule(self, background: bool) -> datetime:
        config = self.config_store.load()
        now = self._clock()
        end = self.active_range_end(config, now)
        if end is None:
            raise NoActiveScheduleError(
                f"No schedule is active for {weekday_name(now)} at {now:%H:%M}"
            )
        expiry = at_time_today(now, end)
        self._start_combined(expiry, custom=False, background=background)
        return expiry

    def _start_combined(self, expiry: datetime, custom: bool, background: bool) -> None:
        # Supersede the other kind of batch block; its teardown runs before we continue
        self._replace(COMBINED)

        with self.config_store.update() as config:
            if not config.sites:
                raise InvalidInputError("No sites configured to block")
            previous = config.current_status.model_copy()
            sites = list(config.sites)
            status = config.current_status
            status.block_custom_time = custom
            status.started_at = format_timestamp(self._clock())
            status.ended_at = format_timestamp(expiry)

        try:
            self.hosts.add_entries(sites)
        except HostsFileError:
            with self.config_store.update() as config:
                config.current_status = previous
            raise

        self.registry.start(
            COMBINED,
            expiry,
            on_expire=self._expire_combined,
            on_cancel=self._cancel_combined,
            background=background,
        )
        logger.info(
            f"Blocking {len(sites)} sites until {format_timestamp(expiry)} "
            f"({'custom time' if custom else 'schedule'})"
        )

    def _teardown_combined(self) -> None:
        config = self.config_store.load()
        # A site with its own running block shares the line and keeps it
        own_blocks = set(self.registry.keys())
        urls = [url for url in config.sites if url not in own_blocks]
        self.hosts.remove_entries(urls, all_entries=not own_blocks)
        with self.config_store.update() as config:
            config.current_status.block_custom_time = False

    def _expire_combined(self, key: str) -> None:
        self._teardown_combined()
        if self.registry.count() == 0:
            self.set_mode(Mode.NORMAL)
        self._notify("Block finished", "Blocked sites are reachable again.")

    def _cancel_combined(self, key: str) -> None:
        self._teardown_combined()
        if key not in self._replacing:
            self._settle_mode()

    def unblock_all(self) -> list[str]:
        """Lifts every block, including stale entries left without a timer."""
        self._refuse_if_locked()
        cancelled = self.registry.cancel_all()
        self.hosts.remove_entries(None, all_entries=True)
        with self.config_store.update() as config:
            config.current_status.block_custom_time = False
        if self.site_store.path.exists():
            for site in self.site_store.all():
                if site.currently_blocked:
                    self.site_store.set_blocked(site.url, False)
        logger.info(f"Unblocked everything (cancelled timers: {cancelled or 'none'})")
        return cancelled

    # --- Site list edits ---

    def add_site_and_reblock(self, url: str) -> str:
        """Adds a site to config.yaml, extending a running batch block to it."""
        url = self.config_store.add_site(url)
        if self.registry.expiry_of(COMBINED) is not None:
            self.hosts.add_entries([url])
        return url

    def remove_site_and_unblock(self, url: str) -> str:
        self._refuse_if_locked("Sites cannot be removed")
        removed = self.config_store.remove_site(url)
        if self.registry.expiry_of(removed) is None:
            self.hosts.remove_entries([removed])
        return removed

    def edit_site(self, old: str, new: str) -> str:
        """Replaces a configured site, moving a running batch block's entry with it."""
        self._refuse_if_locked("Sites cannot be edited")
        removed = self.remove_site_and_unblock(old)
        try:
            return self.add_site_and_reblock(new)
        except InvalidInputError:
            self.add_site_and_reblock(removed)
            raise

    # --- Normal-mode per-site blocks ---

    def block_site(self, url: str, expiry: datetime, background: bool = False) -> None:
        url = format_string(url)
        current = self.registry.expiry_of(url)
        if current is not None and expiry < current:
            self._refuse_if_locked("A block cannot be shortened")
        self._start_site(url, expiry, background)

    def block_all_sites(self, expiry: datetime, background: bool = False) -> list[str]:
        urls = [site.url for site in self.site_store.all()]
        for url in urls:
            self.block_site(url, expiry, background)
        return urls

    def update_site_expiry(self, url: str, expiry: datetime, background: bool = False) -> None:
        """Moves a site's expiry; a running countdown is restarted with it."""
        url = format_string(url)
        if self.registry.expiry_of(url) is None:
            self.site_store.update_expiry(url, format_timestamp(expiry))
            return
        self.block_site(url, expiry, background)

    def unblock_site(self, url: str) -> None:
        self._refuse_if_locked()
        url = format_string(url)
        if not self.registry.cancel(url):
            self._teardown_site(url)

    def forget_site(self, key: str) -> Site:
        """Drops a per-site entry by URL or name, lifting its block first."""
        self._refuse_if_locked("Sites cannot be removed")
        site = self.site_store.remove(key)
        if not self.registry.cancel(site.url) and site.currently_blocked:
            self._teardown_site(site.url)
        return site

    def _start_site(self, url: str, expiry: datetime, background: bool) -> None:
        self.site_store.get(url)
        self._replace(url)
        self.site_store.update_expiry(url, format_timestamp(expiry))
        self.hosts.add_entries([url])
        self.site_store.set_blocked(url, True)
        self.registry.start(
            url,
            expiry,
            on_expire=self._expire_site,
            on_cancel=self._cancel_site,
            background=background,
        )

    def _teardown_site(self, url: str) -> None:
        # The batch block still covers its own sites
        batch_running = self.registry.expiry_of(COMBINED) is not None
        if not batch_running or url not in self.config_store.load().sites:
            self.hosts.remove_entries([url])
        self.site_store.set_blocked(url, False)

    def _expire_site(self, url: str) -> None:
        self._teardown_site(url)
        if self.registry.count() == 0:
            self.set_mode(Mode.NORMAL)
        self._notify("Block finished", f"{url} is reachable again.")

    def _cancel_site(self, url: str) -> None:
        if url in self._replacing:
            return  # The new block keeps the entry
        self._teardown_site(url)
        self._settle_mode()

    def _replace(self, key: str) -> None:
        self._replacing.add(key)
        try:
            self.registry.cancel(key)
        finally:
            self._replacing.discard(key)

    def _settle_mode(self) -> None:
        """After a cancellation: back to normal unless blocks or a schedule range remain."""
        if self.registry.count() == 0 and self.active_range_end() is None:
            self.set_mode(Mode.NORMAL)

    # --- Restart recovery ---

    def recover(self, background: bool = True) -> datetime | None:
        """
        Resumes the block that was running when the previous process exited, if
        ``block_on_restart`` says so. Returns the resumed batch expiry, or None.
        The flag is always cleared once acted upon.
        """
        config = self.config_store.load()
        status = config.current_status
        if not status.block_on_restart:
            logger.debug("Nothing to resume on restart.")
            return None

        expiry = None
        try:
            # Entries from the previous process are re-added below if still due
            self.hosts.remove_entries(None, all_entries=True)
            if status.block_custom_time:
                expiry = self._resume_custom(status.ended_at, background)
            else:
                try:
                    expiry = self._block_by_schedule(background)
                except NoActiveScheduleError as e:
                    logger.info(f"{e}; nothing to resume.")
            self._resume_sites(background)
        finally:
            with self.config_store.update() as config:
                config.current_status.block_on_restart = False
                if expiry is None:
                    config.current_status.block_custom_time = False
                    if self.registry.count() == 0:
                        config.current_status.mode = Mode.NORMAL
        return expiry

    def _resume_custom(self, ended_at: str, background: bool) -> datetime | None:
        try:
            expiry = parse_timestamp(ended_at)
        except InvalidInputError as e:
            logger.warning(f"Cannot resume custom-time block: {e}")
            return None
        if expiry <= self._clock():
            logger.info(f"Saved block ended at {ended_at}; nothing to resume.")
            return None
        logger.info(f"Resuming custom-time block until {ended_at}")
        self._start_combined(expiry, custom=True, background=background)
        return expiry

    def _resume_sites(self, background: bool) -> None:
        if not self.site_store.path.exists():
            return
        now = self._clock()
        for site in self.site_store.all():
            if not site.currently_blocked:
                continue
            try:
                expiry = parse_timestamp(site.duration)
            except InvalidInputError:
                expiry = None
            if expiry is None or expiry <= now:
                self.site_store.set_blocked(site.url, False)
                continue
            logger.info(f"Resuming block for {site.url} until {site.duration}")
            self._start_site(site.url, expiry, background)

    # --- Shutdown ---

    def hand_off(self, start_background: Callable[[], int]) -> int | None:
        """
        Passes running blocks to a background instance before this process
        exits. Returns the new PID, or None when nothing is running.
        """
        if self.registry.count() == 0:
            return None
        # Set before launching: the new instance reads it on start
        with self.config_store.update() as config:
            config.current_status.block_on_restart = True
        pid = start_background()
        logger.info(f"Handed off {self.registry.count()} active blocks to PID {pid}")
        return pid

    def status(self) -> dict:
        config = self.config_store.load()
        active = self.registry.keys()
        return {
            "mode": config.current_status.mode.value,
            "active": active,
            "custom_time": config.current_status.block_custom_time,
            "expires_at": self.expiry_description(config) if active else "",
            "sites": list(config.sites),
        }


def load_engine() -> BlockEngine:
    """Engine over the default data directory; fails early if config.yaml is missing."""
    engine = BlockEngine()
    if not engine.config_store.path.exists():
        raise ConfigError(
            f"{engine.config_store.path} not found. Run `selfcontrol init` to create it."
        )
    return engine
