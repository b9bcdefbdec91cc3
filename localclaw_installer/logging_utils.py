from __future__ import annotations

import logging
import os
from pathlib import Path

# Console.app shows files under ~/Library/Logs.
DEFAULT_LOG_PATH = "~/Library/Logs/localclaw-installer.log"
FALLBACK_LOG_NAME = "localclaw-installer.log"

_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
# Tool output reaches the terminal through ConsoleObserver.
_CONSOLE_FORMAT = "%(levelname)s %(message)s"


def _open_log_file(requested: str) -> tuple[logging.Handler, str]:
    try:
        Path(os.path.dirname(requested) or ".").mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(requested), requested
    except OSError:
        fallback = str(Path.cwd() / FALLBACK_LOG_NAME)
        return logging.FileHandler(fallback), fallback


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Send every installer decision and command to one log file.

    The file defaults to ~/Library/Logs. A sandboxed launch or a CI runner
    without a writable home gets a file in the working directory instead;
    both the requested and the actual path are logged and recorded in the
    install state. Safe to call repeatedly: only the first call adds handlers.

    Returns the actual file path being used.
    """

    root = logging.getLogger()
    root.setLevel(level)

    if getattr(root, "_localclaw_configured", False):
        return getattr(root, "_localclaw_log_path", log_path)

    file_handler, chosen_path = _open_log_file(os.path.expanduser(log_path))
    file_handler.setFormatter(logging.Formatter(fmt=_FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    root.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(fmt=_CONSOLE_FORMAT))
        root.addHandler(console)

    setattr(root, "_localclaw_configured", True)
    setattr(root, "_localclaw_log_path", chosen_path)

    logging.getLogger(__name__).info("Logging initialized (requested=%s, actual=%s)", log_path, chosen_path)
    return chosen_path
