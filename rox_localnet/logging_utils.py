from __future__ import annotations

import contextlib
import json
import logging
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Mapping

DEFAULT_LOG_NAME = "localnet.log"
DEFAULT_MAX_BYTES = 5_000_000
DEFAULT_BACKUP_COUNT = 3
DEFAULT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s | %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_SENTINEL = "_rox_localnet_handler"


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - short summary sufficient
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "process": record.process,
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = value
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def _parse_log_level(value: str | int | None) -> int:
    if value is None or value == "":
        return logging.INFO
    if isinstance(value, int):
        return value
    level = value.strip().upper()
    if level.isdigit():
        return int(level)
    return getattr(logging, level, logging.INFO)


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_dir: Path,
    *,
    environ: Mapping[str, str] | None = None,
    level: str | int | None = None,
    json_logs: bool | None = None,
    console: bool = True,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
) -> Path:
    """Install the console and rotating-file handlers for the bootstrap.

    ``LOG_LEVEL`` and ``LOG_JSON`` from ``environ`` apply when the matching
    argument is not given.  Calling this again replaces the handlers it
    installed earlier and leaves foreign handlers alone.
    """

    env = environ or {}
    resolved_level = _parse_log_level(level if level is not None else env.get("LOG_LEVEL"))
    if json_logs is None:
        json_logs = _truthy(env.get("LOG_JSON"))

    log_path = (Path(log_dir) / DEFAULT_LOG_NAME).resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _SENTINEL, False):
            root.removeHandler(handler)
            with contextlib.suppress(Exception):
                handler.close()
    root.setLevel(resolved_level)

    def _formatter() -> logging.Formatter:
        if json_logs:
            return JsonFormatter()
        return _UTCFormatter(DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT)

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(resolved_level)
    file_handler.setFormatter(_formatter())
    setattr(file_handler, _SENTINEL, True)
    root.addHandler(file_handler)

    if console:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(resolved_level)
        stream_handler.setFormatter(_formatter())
        setattr(stream_handler, _SENTINEL, True)
        root.addHandler(stream_handler)

    # urllib3 logs every connection refused while the validator boots
    logging.getLogger("urllib3").setLevel(max(resolved_level, logging.WARNING))

    root.debug("Logging initialised", extra={"log_file": str(log_path)})
    return log_path


__all__ = ["JsonFormatter", "configure_logging"]
