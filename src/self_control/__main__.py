import sys

from loguru import logger

from self_control.cli import app
from self_control.daemon import run_background_loop, run_startup
from self_control.engine import load_engine
from self_control.errors import SelfControlError
from self_control.settings import settings
from self_control.utils.logging import setup_logging


def main():
    """Entry point: background worker, OS-startup hook, or the CLI."""
    if not (settings.background or settings.startup):
        app()
        return

    # stderr of a relaunched instance is redirected to background.log
    setup_logging()
    try:
        engine = load_engine()
        if settings.background:
            run_background_loop(engine)
        else:
            run_startup(engine)
    except SelfControlError as e:
        logger.error(f"Background instance stopped: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
