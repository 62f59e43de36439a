"""Size-based rotation of the service log files.

Rotated files are renamed with a timestamp suffix and gzip-compressed; only
the newest ``max_backups`` are retained.  Nothing here is allowed to stop the
bootstrap, so :func:`rotate_logs` downgrades every failure to a warning.
"""

from __future__ import annotations

import gzip
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable

from .errors import LogRotationFailure

log = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H%M%S"


def _rotated_siblings(path: Path) -> list[Path]:
    prefix = f"{path.name}."
    return [p for p in path.parent.glob(f"{path.name}.*") if p.name.startswith(prefix) and p.is_file()]


def _compress(path: Path) -> Path:
    target = path.with_name(path.name + ".gz")
    with path.open("rb") as src, gzip.open(target, "wb", compresslevel=9) as dst:
        shutil.copyfileobj(src, dst)
    path.unlink()
    return target


def prune_backups(path: Path, max_backups: int) -> list[Path]:
    """Delete rotated copies of ``path`` beyond ``max_backups``, oldest first."""

    siblings = _rotated_siblings(path)
    siblings.sort(key=lambda p: (p.stat().st_mtime_ns, p.name), reverse=True)
    removed: list[Path] = []
    for stale in siblings[max(0, max_backups):]:
        stale.unlink(missing_ok=True)
        removed.append(stale)
    return removed


def rotate_log_if_big(
    path: Path,
    max_bytes: int,
    max_backups: int,
    *,
    now: datetime | None = None,
) -> Path | None:
    """Rotate ``path`` when it is larger than ``max_bytes``.

    Returns the compressed (or, if compression failed, the renamed) backup,
    or ``None`` when no rotation was needed.
    """

    path = Path(path)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise LogRotationFailure(f"cannot stat {path}: {exc}") from exc
    if size <= max_bytes:
        return None

    stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    rotated = path.with_name(f"{path.name}.{stamp}")
    counter = 1
    while rotated.exists() or rotated.with_name(rotated.name + ".gz").exists():
        rotated = path.with_name(f"{path.name}.{stamp}-{counter}")
        counter += 1

    try:
        path.rename(rotated)
    except OSError as exc:
        raise LogRotationFailure(f"cannot rotate {path}: {exc}") from exc

    backup = rotated
    try:
        backup = _compress(rotated)
    except OSError as exc:
        log.warning("Could not compress %s: %s", rotated, exc)

    try:
        removed = prune_backups(path, max_backups)
    except OSError as exc:
        raise LogRotationFailure(f"cannot prune backups of {path}: {exc}") from exc
    log.info(
        "Rotated %s (%d bytes) to %s; pruned %d old backup(s)",
        path,
        size,
        backup.name,
        len(removed),
    )
    return backup


def rotate_logs(paths: Iterable[Path], max_bytes: int, max_backups: int) -> list[Path]:
    """Best-effort rotation of every log in ``paths``."""

    rotated: list[Path] = []
    for path in paths:
        try:
            backup = rotate_log_if_big(path, max_bytes, max_backups)
        except LogRotationFailure as exc:
            log.warning("Log rotation skipped: %s", exc)
            continue
        if backup is not None:
            rotated.append(backup)
    return rotated


def remove_stray_logs(directory: Path, pattern: str = "solana-validator-*.log") -> int:
    """Delete leftover per-run validator logs; returns how many were removed."""

    count = 0
    for stray in Path(directory).glob(pattern):
        try:
            stray.unlink()
        except OSError as exc:
            log.warning("Could not remove stray log %s: %s", stray, exc)
            continue
        count += 1
    if count:
        log.debug("Removed %d stray log file(s) from %s", count, directory)
    return count


__all__ = [
    "TIMESTAMP_FORMAT",
    "prune_backups",
    "rotate_log_if_big",
    "rotate_logs",
    "remove_stray_logs",
]
