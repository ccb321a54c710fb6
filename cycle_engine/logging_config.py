"""Process-wide logging configuration."""

from __future__ import annotations

import logging
from pathlib import Path

from cycle_engine.config import settings


_DEFAULT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
_NOISY_LOGGERS = ('aiohttp.access', 'sqlalchemy.engine', 'uvicorn.access')

_configured = False


def _coerce_level(value: str | int | None, fallback: int) -> int:
    if value is None:
        return fallback
    if isinstance(value, int):
        return value
    candidate = value.strip().upper()
    if candidate.isdigit():
        return int(candidate)
    return getattr(logging, candidate, fallback)


def setup_logging(level: str | int | None = None, log_file: str | None = None) -> None:
    """Configure root handlers once; repeated calls only adjust the level."""

    global _configured

    root = logging.getLogger()
    resolved_level = _coerce_level(level if level is not None else settings.LOG_LEVEL, logging.INFO)
    root.setLevel(resolved_level)

    if _configured:
        return

    formatter = logging.Formatter(settings.LOG_FORMAT, datefmt=_DEFAULT_DATE_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    target = log_file or settings.LOG_FILE
    if target:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    _configured = True
