from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from .config import AdvisorConfig


LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s %(message)s"

_HANDLER_TAG = "_advisor_handler"


def configure_logging(cfg: AdvisorConfig, *, log_to_file: bool = True) -> logging.Logger:
    """
    Install stderr + daily-rotating file handlers on the root logger.

    Safe to call more than once; handlers installed by a previous call are replaced.
    """

    root = logging.getLogger()
    root.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    for h in list(root.handlers):
        if getattr(h, _HANDLER_TAG, False):
            root.removeHandler(h)
            h.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    setattr(stream, _HANDLER_TAG, True)
    root.addHandler(stream)

    if log_to_file:
        log_dir = Path(cfg.log_dir)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = TimedRotatingFileHandler(
                str(log_dir / "app.log"),
                when="midnight",
                backupCount=14,
                encoding="utf-8",
            )
        except OSError as e:
            root.warning("File logging disabled: %s", e)
        else:
            file_handler.setFormatter(formatter)
            setattr(file_handler, _HANDLER_TAG, True)
            root.addHandler(file_handler)

    return logging.getLogger("advisor")
