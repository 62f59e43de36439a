"""Free-space guard for the ledger volume."""

from __future__ import annotations

import enum
import logging
import shutil
from pathlib import Path
from typing import Callable

import psutil

from .config import NodeConfig
from .errors import InsufficientDiskSpace

log = logging.getLogger(__name__)


class DiskGuardDecision(enum.Enum):
    PROCEED = "proceed"
    REFUSE = "refuse"
    PROCEED_WITH_PURGE = "proceed-with-purge"


def decide(free_bytes: int, threshold_bytes: int, allow_purge: bool) -> DiskGuardDecision:
    """Pure decision table; purging is only ever chosen on explicit opt-in."""

    if free_bytes >= threshold_bytes:
        return DiskGuardDecision.PROCEED
    if allow_purge:
        return DiskGuardDecision.PROCEED_WITH_PURGE
    return DiskGuardDecision.REFUSE


def _existing_anchor(path: Path) -> Path:
    candidate = Path(path).absolute()
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return candidate


def measure_free_bytes(path: Path) -> int:
    """Free bytes on the volume holding ``path`` (or its nearest existing parent)."""

    return int(psutil.disk_usage(str(_existing_anchor(path))).free)


def purge_ledger(ledger_dir: Path) -> None:
    log.warning("Purging ledger directory %s to reclaim space", ledger_dir)
    if ledger_dir.exists():
        shutil.rmtree(ledger_dir)
    ledger_dir.mkdir(parents=True, exist_ok=True)


def enforce_disk_guard(
    cfg: NodeConfig,
    *,
    measure: Callable[[Path], int] = measure_free_bytes,
) -> DiskGuardDecision:
    """Apply :func:`decide` to the ledger volume and act on the result."""

    free = measure(cfg.ledger_dir)
    decision = decide(free, cfg.min_free_bytes, cfg.allow_purge)
    gib = 1024 ** 3
    if decision is DiskGuardDecision.PROCEED:
        log.info("Disk guard: %.2f GiB free (minimum %.2f GiB)", free / gib, cfg.min_free_bytes / gib)
        return decision
    log.warning("Low disk: %.2f GiB free < %.2f GiB", free / gib, cfg.min_free_bytes / gib)
    if decision is DiskGuardDecision.REFUSE:
        raise InsufficientDiskSpace(free, cfg.min_free_bytes)
    purge_ledger(cfg.ledger_dir)
    return decision


__all__ = [
    "DiskGuardDecision",
    "decide",
    "measure_free_bytes",
    "purge_ledger",
    "enforce_disk_guard",
]
