from __future__ import annotations

import logging
import sys
from pathlib import Path

from storesync.core.config import Settings


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings, log_file: Path | None = None) -> None:
    root = logging.getLogger("storesync")
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    target = log_file if log_file is not None else settings.log_file
    if target is not None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(target, encoding="utf-8")
        except OSError as exc:
            root.warning("Could not open log file %s (%s); logging to stderr only", target, exc)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
    root.propagate = False
