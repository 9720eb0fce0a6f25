import signal
import threading
from collections.abc import Callable
from contextlib import contextmanager

from loguru import logger

EXIT_SIGNALS = (signal.SIGINT, signal.SIGTERM)

Handler = Callable[[int, object], None]

# Main-thread nesting depth of critical_section(), and a handler call held back by it
_depth = 0
_pending: tuple[Handler, int, object] | None = None


def _deferrable(handler: Handler) -> Handler:
    def wrapper(signum, frame):
        global _pending
        if _depth:
            logger.debug(f"Deferring {signal.Signals(signum).name} until the write finishes")
            _pending = (handler, signum, frame)
            return
        handler(signum, frame)

    return wrapper


@contextmanager
def critical_section():
    """
    Holds back handlers installed by handle_exit_signals() while the main
    thread rewrites a file, so an exit never lands between truncate and write.
    The held-back handler runs when the outermost section closes.
    """
    global _depth, _pending
    if threading.current_thread() is not threading.main_thread():
        # Python runs signal handlers on the main thread only
        yield
        return

    _depth += 1
    try:
        yield
    finally:
        _depth -= 1
    if _depth == 0 and _pending is not None:
        handler, signum, frame = _pending
        _pending = None
        handler(signum, frame)


@contextmanager
def handle_exit_signals(handler: Handler):
    """Routes SIGINT/SIGTERM to ``handler`` for the duration of the block."""
    global _pending
    previous = {signum: signal.signal(signum, _deferrable(handler)) for signum in EXIT_SIGNALS}
    try:
        yield
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)
        _pending = None
