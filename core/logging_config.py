"""Logging setup for the Classbook command line."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from core import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _has_handler(root: logging.Logger, handler_type: type, target: Optional[str] = None) -> bool:
    for handler in root.handlers:
        if type(handler) is not handler_type:
            continue
        if isinstance(handler, logging.FileHandler):
            if handler.baseFilename == target:
                return True
        elif getattr(handler, "stream", None) is sys.stderr:
            return True
    return False


def configure_logging(
    level: int = logging.INFO,
    *,
    path: Optional[Path] = None,
    verbose: bool = False,
) -> Path:
    """Send sync and repair activity to ``classbook.log``.

    With ``verbose`` the same records are echoed to stderr. Calling this more
    than once does not add duplicate handlers.
    """

    log_path = Path(path) if path is not None else app_paths.logs_path("classbook.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    target = str(log_path.resolve())

    root = logging.getLogger()
    root.setLevel(min(root.level, level) if root.handlers else level)
    formatter = logging.Formatter(LOG_FORMAT)

    if not _has_handler(root, logging.FileHandler, target):
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if verbose and not _has_handler(root, logging.StreamHandler):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        root.addHandler(console)

    root.debug("Logging to %s", log_path)
    return log_path


__all__ = ["LOG_FORMAT", "configure_logging"]
