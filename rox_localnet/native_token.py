"""Conversions between ROX and its fractional lamports."""

from __future__ import annotations

LAMPORTS_PER_ROX = 1_000_000_000

# Fee charged for every transaction regardless of signatures or load.
CONSTANT_TRANSACTION_FEE_LAMPORTS = 10_000
DEFAULT_TARGET_SIGNATURES_PER_SLOT = 0
DEFAULT_BURN_PERCENT = 0


def lamports_to_rox(lamports: int) -> float:
    """Approximately convert ``lamports`` into ROX."""

    return lamports / LAMPORTS_PER_ROX


def rox_to_lamports(rox: float) -> int:
    """Approximately convert ``rox`` into lamports, truncating toward zero."""

    return int(rox * LAMPORTS_PER_ROX)


def format_rox(lamports: int) -> str:
    """Render ``lamports`` exactly, e.g. ``◎5000.000000000``."""

    whole, frac = divmod(int(lamports), LAMPORTS_PER_ROX)
    return f"◎{whole}.{frac:09d}"


__all__ = [
    "LAMPORTS_PER_ROX",
    "CONSTANT_TRANSACTION_FEE_LAMPORTS",
    "DEFAULT_TARGET_SIGNATURES_PER_SLOT",
    "DEFAULT_BURN_PERCENT",
    "lamports_to_rox",
    "rox_to_lamports",
    "format_rox",
]
