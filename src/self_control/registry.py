import threading
import time
from collections.abc import Callable
from datetime import datetime

from loguru import logger

from self_control.settings import settings
from self_control.utils.time import now as local_now

# Key used for the single batch timer covering every configured site
COMBINED = "combined"

Teardown = Callable[[str], None]


class TimerHandle:
    """A running countdown for one block key. Owned by BlockRegistry."""

    def __init__(
        self,
        key: str,
        expiry: datetime,
        on_expire: Teardown,
        on_cancel: Teardown | None,
        background: bool,
    ):
        self.key = key
        self.expiry = expiry
        self.background = background
        self.on_expire = on_expire
        self.on_cancel = on_cancel
        self.done = False
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def __repr__(self):
        return f"TimerHandle(key={self.key!r}, expiry={self.expiry.isoformat()}, done={self.done})"


class BlockRegistry:
    """
    Maps block keys to running timers.

    Each timer runs on its own daemon thread, polling for expiry with a
    cancellable wait. On expiry the handle drops out of the map and runs its
    ``on_expire`` teardown; when cancelled it runs ``on_cancel`` instead. Exactly
    one of the two runs per handle.

    ``cancel`` joins the worker, so by the time it returns the teardown has
    finished and no second code path can race it on the hosts file.
    """

    def __init__(
        self,
        poll_interval: float | None = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.poll_interval = poll_interval or settings.poll_interval
        self._clock = clock
        self._timers: dict[str, TimerHandle] = {}
        self._running: set[TimerHandle] = set()
        self._lock = threading.Lock()
        self._drained = threading.Condition(self._lock)

    # --- Queries ---

    def count(self) -> int:
        """Number of keys with a live countdown."""
        with self._lock:
            return len(self._timers)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._timers)

    def expiry_of(self, key: str) -> datetime | None:
        with self._lock:
            handle = self._timers.get(key)
            return handle.expiry if handle else None

    def earliest_expiry(self) -> datetime | None:
        with self._lock:
            return min((h.expiry for h in self._timers.values()), default=None)

    def is_idle(self) -> bool:
        return self.count() == 0

    # --- Lifecycle ---

    def start(
        self,
        key: str,
        expiry: datetime,
        on_expire: Teardown,
        on_cancel: Teardown | None = None,
        background: bool = False,
    ) -> TimerHandle:
        """
        Starts a countdown for ``key``. Any timer already registered under the
        same key is cancelled, and its teardown awaited, before the new one is
        installed.
        """
        handle = TimerHandle(key, expiry, on_expire, on_cancel, background)
        handle._thread = threading.Thread(
            target=self._run, args=(handle,), name=f"timer-{key}", daemon=True
        )
        while True:
            with self._lock:
                if key not in self._timers:
                    self._timers[key] = handle
                    self._running.add(handle)
                    # Started under the lock so a concurrent cancel can always join it
                    handle._thread.start()
                    break
            logger.debug(f"Replacing existing timer for {key}")
            self.cancel(key)

        logger.info(f"Timer started for {key}, expires at {expiry.isoformat()}")
        return handle

    def cancel(self, key: str) -> bool:
        """
        Cancels the timer for ``key`` and waits until its teardown has run.
        Returns False (and does nothing) when no timer exists for the key.
        """
        with self._lock:
            handle = self._timers.pop(key, None)
        if handle is None:
            return False

        logger.info(f"Cancelling timer for {key}")
        handle.cancel()
        if handle._thread is not None and handle._thread is not threading.current_thread():
            handle._thread.join()
        return True

    def cancel_all(self) -> list[str]:
        cancelled = []
        for key in self.keys():
            if self.cancel(key):
                cancelled.append(key)
        return cancelled

    def wait_idle(self, timeout: float | None = None, background_only: bool = False) -> bool:
        """
        Blocks until every timer (or every background timer) has finished,
        teardown included. Returns False if the timeout elapsed first.
        """

        def drained() -> bool:
            if background_only:
                return not any(h.background for h in self._running)
            return not self._running

        with self._drained:
            return self._drained.wait_for(drained, timeout=timeout)

    # --- Worker ---

    def _release(self, handle: TimerHandle) -> bool:
        """Drops the handle from the map if it still owns its key."""
        with self._lock:
            if self._timers.get(handle.key) is handle:
                del self._timers[handle.key]
                return True
            return False

    def _wait_for_expiry(self, handle: TimerHandle) -> bool:
        """Polls until expiry (True) or cancellation (False)."""
        remaining = (handle.expiry - self._clock()).total_seconds()
        deadline = time.monotonic() + remaining

        while not handle.cancelled:
            if time.monotonic() >= deadline or self._clock() >= handle.expiry:
                return True
            wait = min(self.poll_interval, max(deadline - time.monotonic(), 0))
            handle._cancelled.wait(timeout=wait)
        return False

    def _run(self, handle: TimerHandle):
        try:
            expired = self._wait_for_expiry(handle)
            # A cancel that popped the key first wins over a simultaneous expiry
            if expired and self._release(handle):
                logger.info(f"Timer for {handle.key} expired")
                handle.on_expire(handle.key)
            elif handle.on_cancel is not None:
                logger.debug(f"Timer for {handle.key} cancelled")
                handle.on_cancel(handle.key)
        except Exception as e:
            logger.exception(f"Error in timer for {handle.key}: {e}")
        finally:
            with self._drained:
                handle.done = True
                self._running.discard(handle)
                self._drained.notify_all()
