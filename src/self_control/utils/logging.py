import sys
from pathlib import Path

from loguru import logger

from self_control.settings import settings

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"
# Timer teardowns run on their own threads; the thread name is the block key
DEBUG_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{thread.name}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {process} | {thread.name} | {message}"


def setup_logging(verbose: bool = False, console: bool = True) -> Path:
    """
    Installs the loguru sinks and returns the log file path.

    verbose (or SELFCONTROL_DEBUG) switches both sinks to DEBUG. With
    console=False only the file sink is installed; the interactive menu uses
    it so timer threads do not write over prompts.
    """
    logger.remove()
    debug = verbose or settings.debug
    level = "DEBUG" if debug else "INFO"

    if console:
        logger.add(
            sys.stderr,
            level=level,
            format=DEBUG_CONSOLE_FORMAT if debug else CONSOLE_FORMAT,
        )

    # Foreground and background instances share the file; {process} tells them apart
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / f"{settings.app_name}.log"
    logger.add(
        log_file,
        level=level,
        format=FILE_FORMAT,
        rotation="10 MB",
        retention="10 days",
        compression="zip",
        enqueue=True,
    )

    logger.debug(f"Logging to {log_file}")
    return log_file
