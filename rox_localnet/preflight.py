"""Read-only checks that run before the bootstrap mutates anything.

Each check raises on the first missing dependency so the operator gets one
precise message instead of a cascade of follow-up failures.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from .config import NodeConfig, iter_program_artifacts
from .errors import MissingArtifact, MissingBinary, MissingKeypair
from .keygen import Keygen

log = logging.getLogger(__name__)

GENESIS_TOOL = "solana-genesis"
VALIDATOR_TOOL = "solana-validator"
FAUCET_TOOL = "solana-faucet"
KEYGEN_TOOL = "solana-keygen"
CLIENT_TOOL = "solana"

REQUIRED_TOOLS: tuple[str, ...] = (
    CLIENT_TOOL,
    GENESIS_TOOL,
    VALIDATOR_TOOL,
    FAUCET_TOOL,
    KEYGEN_TOOL,
)


@dataclass(frozen=True)
class PreflightReport:
    """Resolved absolute paths of the external tools."""

    tools: Mapping[str, Path]

    def tool(self, name: str) -> Path:
        return self.tools[name]


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def check_binaries(names: Iterable[str], bin_dir: Path | None = None) -> dict[str, Path]:
    """Return ``{name: path}`` for every tool or raise :class:`MissingBinary`."""

    resolved: dict[str, Path] = {}
    for name in names:
        if bin_dir is not None:
            candidate = Path(bin_dir) / name
            if not _is_executable(candidate):
                raise MissingBinary(name, bin_dir)
            resolved[name] = candidate.resolve()
            continue
        found = shutil.which(name)
        if not found:
            raise MissingBinary(name)
        resolved[name] = Path(found)
    return resolved


def check_key_material(paths: Iterable[Path]) -> None:
    for path in paths:
        if not Path(path).is_file():
            raise MissingKeypair(path)


def check_program_artifacts(paths: Iterable[Path]) -> None:
    for path in paths:
        if not Path(path).is_file():
            raise MissingArtifact(path)


def run_preflight(cfg: NodeConfig) -> PreflightReport:
    """Run the tool, key and artifact checks in order."""

    tools = check_binaries(REQUIRED_TOOLS, cfg.bin_dir)
    log.info("External tools found: %s", ", ".join(sorted(tools)))
    check_key_material(cfg.bootstrap_keypairs)
    log.info("Bootstrap keypairs present in %s", cfg.secrets_dir)
    check_program_artifacts(iter_program_artifacts(cfg))
    if cfg.programs:
        log.info("Program artifacts present: %s", ", ".join(p.name for p in cfg.programs))
    return PreflightReport(tools=tools)


def ensure_upgrade_authority(cfg: NodeConfig, keygen: Keygen) -> list[Path]:
    """Create missing upgrade-authority key files for upgradeable programs.

    Returns the paths that were created.
    """

    created: list[Path] = []
    authorities = {p.upgrade_authority for p in cfg.programs if p.upgradeable and p.upgrade_authority}
    for path in sorted(authorities):
        if path.is_file():
            continue
        log.warning("Upgrade authority not found at %s; creating one", path)
        keygen.new(path)
        created.append(path)
    return created


__all__ = [
    "GENESIS_TOOL",
    "VALIDATOR_TOOL",
    "FAUCET_TOOL",
    "KEYGEN_TOOL",
    "CLIENT_TOOL",
    "REQUIRED_TOOLS",
    "PreflightReport",
    "check_binaries",
    "check_key_material",
    "check_program_artifacts",
    "run_preflight",
    "ensure_upgrade_authority",
]
