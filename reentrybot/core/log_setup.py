from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_configured = False


def setup_logging(level: str = "INFO", log_dir: str | None = "logs") -> None:
    """
    Configure the `reentrybot` logger tree once:
      - console handler
      - daily rotating file handler (logs/reentrybot.log, 14 days kept)
    Safe to call more than once.
    """
    global _configured
    if _configured:
        return

    root = logging.getLogger("reentrybot")
    root.setLevel(getattr(logging, (level or "INFO").upper(), logging.INFO))
    formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            fh = TimedRotatingFileHandler(
                str(Path(log_dir) / "reentrybot.log"),
                when="midnight",
                backupCount=14,
                encoding="utf-8",
                utc=True,
            )
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except OSError as e:
            # console logging still works
            root.warning("file logging disabled: %s", e)

    _configured = True
