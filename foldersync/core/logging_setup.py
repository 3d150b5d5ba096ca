from __future__ import annotations

import logging
from pathlib import Path

NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def resolve_level(level: str | None) -> int:
    value = logging.getLevelName((level or "INFO").strip().upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: str, logfile: str, console: bool = True):
    Path(logfile).parent.mkdir(parents=True, exist_ok=True)

    log_level = resolve_level(level)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Reconfiguring (CLI then serve, reloads) must not stack handlers.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.FileHandler(logfile, encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(fmt)
        root.addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(log_level)
        logger.propagate = True

    logging.getLogger("urllib3").setLevel(max(log_level, logging.WARNING))

    root.info("logging initialized level=%s file=%s", logging.getLevelName(log_level), logfile)
