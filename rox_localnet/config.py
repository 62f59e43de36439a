"""Resolve the localnet configuration into a single immutable value.

Values are taken from the process environment first, then from an optional
TOML file, then from the built-in defaults.  :func:`resolve_config` is pure:
callers pass the environment mapping explicitly and every other component
receives the resulting :class:`NodeConfig` instead of reading ``os.environ``.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .config_schema import (
    BPF_LOADER2,
    BPF_UPGRADEABLE_LOADER,
    IMMUTABLE,
    UPGRADEABLE,
    ProgramEntry,
    collect_settings,
    validate_programs,
    validate_settings,
)
from .errors import ConfigError
from .native_token import (
    CONSTANT_TRANSACTION_FEE_LAMPORTS,
    DEFAULT_BURN_PERCENT,
    DEFAULT_TARGET_SIGNATURES_PER_SLOT,
    LAMPORTS_PER_ROX,
    rox_to_lamports,
)

DEFAULT_CONFIG_FILE = "localnet.toml"

SPL_TOKEN_PID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SPL_ATA_PID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
MPL_METADATA_PID = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"

_GIB = 1024 ** 3
_MIB = 1024 ** 2


@dataclass(frozen=True)
class ProgramDeployment:
    """A program binary baked into genesis at a fixed address."""

    name: str
    program_id: str
    loader: str
    artifact: Path
    upgrade_authority: Path | None = None

    @property
    def kind(self) -> str:
        return UPGRADEABLE if self.loader == BPF_UPGRADEABLE_LOADER else IMMUTABLE

    @property
    def upgradeable(self) -> bool:
        return self.kind == UPGRADEABLE


@dataclass(frozen=True)
class NodeConfig:
    """Everything one bootstrap invocation needs, resolved once."""

    ledger_dir: Path
    secrets_dir: Path
    programs_dir: Path
    bin_dir: Path | None
    run_dir: Path
    log_dir: Path

    identity_keypair: Path
    vote_keypair: Path
    stake_keypair: Path
    faucet_keypair: Path
    upgrade_authority_keypair: Path
    primordial_accounts: Path | None

    rpc_bind_host: str = "0.0.0.0"
    rpc_port: int = 8899
    public_ip: str | None = None
    gossip_host: str | None = None
    gossip_port: int = 8001
    faucet_host: str = "127.0.0.1"
    faucet_port: int = 9900

    bootstrap_lamports: int = 5000 * LAMPORTS_PER_ROX
    bootstrap_stake_lamports: int = 2000 * LAMPORTS_PER_ROX
    faucet_lamports: int = 10000 * LAMPORTS_PER_ROX

    target_lamports_per_signature: int = CONSTANT_TRANSACTION_FEE_LAMPORTS
    target_signatures_per_slot: int = DEFAULT_TARGET_SIGNATURES_PER_SLOT
    fee_burn_percentage: int = DEFAULT_BURN_PERCENT
    cluster_type: str = "development"
    hashes_per_tick: str = "auto"

    programs: tuple[ProgramDeployment, ...] = field(default_factory=tuple)

    min_free_bytes: int = 10 * _GIB
    max_log_bytes: int = 200 * _MIB
    max_log_backups: int = 5
    limit_ledger_size: int = 5_000_000
    full_snapshot_interval_slots: int = 2000
    incremental_snapshot_interval_slots: int = 1000
    validator_rust_log: str = "warn"

    health_attempts: int = 120
    health_interval: float = 0.5

    force_rebuild: bool = False
    allow_purge: bool = False

    @property
    def genesis_path(self) -> Path:
        return self.ledger_dir / "genesis.bin"

    @property
    def rpc_url(self) -> str:
        host = self.rpc_bind_host
        if host in {"0.0.0.0", "::"}:
            host = "127.0.0.1"
        return f"http://{host}:{self.rpc_port}"

    @property
    def faucet_address(self) -> str:
        return f"{self.faucet_host}:{self.faucet_port}"

    @property
    def public_rpc_address(self) -> str | None:
        if not self.public_ip:
            return None
        return f"{self.public_ip}:{self.rpc_port}"

    @property
    def faucet_log(self) -> Path:
        return self.log_dir / "faucet.log"

    @property
    def validator_log(self) -> Path:
        return self.log_dir / "validator.log"

    @property
    def bootstrap_keypairs(self) -> tuple[Path, ...]:
        return (
            self.identity_keypair,
            self.vote_keypair,
            self.stake_keypair,
            self.faucet_keypair,
        )

    @property
    def needs_upgrade_authority(self) -> bool:
        return any(p.upgradeable for p in self.programs)


def _lamports(lamports: int | None, rox: float | None, default: int) -> int:
    """Prefer an explicit lamport amount over the ROX-denominated one."""

    if lamports is not None:
        return lamports
    if rox is not None:
        return rox_to_lamports(rox)
    return default


def default_programs(programs_dir: Path, upgrade_authority: Path) -> tuple[ProgramDeployment, ...]:
    return (
        ProgramDeployment("spl_token", SPL_TOKEN_PID, BPF_LOADER2, programs_dir / "spl_token.so"),
        ProgramDeployment("spl_ata", SPL_ATA_PID, BPF_LOADER2, programs_dir / "spl_ata.so"),
        ProgramDeployment(
            "mpl_token_metadata",
            MPL_METADATA_PID,
            BPF_UPGRADEABLE_LOADER,
            programs_dir / "mpl_token_metadata.so",
            upgrade_authority,
        ),
    )


def _deployments(
    entries: Sequence[ProgramEntry],
    programs_dir: Path,
    upgrade_authority: Path,
) -> tuple[ProgramDeployment, ...]:
    deployments: list[ProgramDeployment] = []
    for entry in entries:
        artifact = Path(entry.artifact).expanduser()
        if not artifact.is_absolute():
            artifact = programs_dir / artifact
        authority: Path | None = None
        if entry.kind == UPGRADEABLE:
            authority = (
                Path(entry.upgrade_authority).expanduser()
                if entry.upgrade_authority
                else upgrade_authority
            )
        name = entry.name or artifact.stem
        deployments.append(
            ProgramDeployment(name, entry.program_id, entry.loader, artifact, authority)
        )
    return tuple(deployments)


def parse_program_deployments(
    raw: Sequence[Mapping[str, Any]],
    programs_dir: Path,
    upgrade_authority: Path,
) -> tuple[ProgramDeployment, ...]:
    """Parse ``[[programs]]`` tables into deployments, preserving order."""

    return _deployments(validate_programs(raw), programs_dir, upgrade_authority)


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Parse a TOML configuration file."""

    cfg_path = Path(path)
    try:
        with cfg_path.open("rb") as fh:
            return tomllib.load(fh)
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {cfg_path}") from None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {cfg_path}: {exc}") from exc


def resolve_config(
    environ: Mapping[str, str],
    file_data: Mapping[str, Any] | None = None,
) -> NodeConfig:
    """Build a :class:`NodeConfig` from ``environ`` and optional file data."""

    settings = validate_settings(collect_settings(environ, file_data or {}))

    def path(raw: str) -> Path:
        return Path(raw).expanduser()

    secrets_dir = path(settings.secrets_dir)
    programs_dir = path(settings.programs_dir)

    def key_path(raw: str | None, filename: str) -> Path:
        return path(raw) if raw is not None else secrets_dir / filename

    upgrade_authority = key_path(settings.upgrade_authority_keypair, "upgrade-authority.json")
    if settings.programs is None:
        programs = default_programs(programs_dir, upgrade_authority)
    else:
        programs = _deployments(settings.programs, programs_dir, upgrade_authority)

    public_ip = settings.public_ip.strip() if settings.public_ip else None
    gossip_host = settings.gossip_host.strip() if settings.gossip_host else public_ip

    return NodeConfig(
        ledger_dir=path(settings.ledger_dir),
        secrets_dir=secrets_dir,
        programs_dir=programs_dir,
        bin_dir=path(settings.bin_dir) if settings.bin_dir is not None else None,
        run_dir=path(settings.run_dir),
        log_dir=path(settings.log_dir),
        identity_keypair=key_path(settings.identity_keypair, "validator-identity.json"),
        vote_keypair=key_path(settings.vote_keypair, "validator-vote.json"),
        stake_keypair=key_path(settings.stake_keypair, "validator-stake.json"),
        faucet_keypair=key_path(settings.faucet_keypair, "faucet.json"),
        upgrade_authority_keypair=upgrade_authority,
        primordial_accounts=key_path(settings.primordial_accounts, "accounts.yaml"),
        rpc_bind_host=settings.rpc_host.strip(),
        rpc_port=settings.rpc_port,
        public_ip=public_ip,
        gossip_host=gossip_host,
        gossip_port=settings.gossip_port,
        faucet_host=settings.faucet_host.strip(),
        faucet_port=settings.faucet_port,
        bootstrap_lamports=_lamports(
            settings.bootstrap_lamports, settings.bootstrap_rox, 5000 * LAMPORTS_PER_ROX
        ),
        bootstrap_stake_lamports=_lamports(
            settings.bootstrap_stake_lamports, settings.bootstrap_stake_rox, 2000 * LAMPORTS_PER_ROX
        ),
        faucet_lamports=_lamports(
            settings.faucet_lamports, settings.faucet_rox, 10000 * LAMPORTS_PER_ROX
        ),
        target_lamports_per_signature=settings.target_lamports_per_signature,
        target_signatures_per_slot=settings.target_signatures_per_slot,
        fee_burn_percentage=settings.fee_burn_percentage,
        cluster_type=settings.cluster_type.strip(),
        hashes_per_tick=str(settings.hashes_per_tick).strip(),
        programs=programs,
        min_free_bytes=int(settings.min_free_gb * _GIB),
        max_log_bytes=int(settings.max_log_mb * _MIB),
        max_log_backups=settings.max_log_backups,
        limit_ledger_size=settings.limit_ledger_size,
        full_snapshot_interval_slots=settings.full_snapshot_interval_slots,
        incremental_snapshot_interval_slots=settings.incremental_snapshot_interval_slots,
        validator_rust_log=settings.validator_rust_log.strip(),
        health_attempts=settings.health_attempts,
        health_interval=settings.health_interval,
        force_rebuild=settings.force_rebuild,
        allow_purge=settings.allow_purge,
    )


def describe(cfg: NodeConfig) -> dict[str, object]:
    """Compact overview of ``cfg`` suitable for a single log line."""

    return {
        "ledger_dir": str(cfg.ledger_dir),
        "rpc_url": cfg.rpc_url,
        "faucet": cfg.faucet_address,
        "gossip": f"{cfg.gossip_host or '-'}:{cfg.gossip_port}",
        "programs": [p.name for p in cfg.programs],
        "force_rebuild": cfg.force_rebuild,
        "allow_purge": cfg.allow_purge,
    }


def iter_program_artifacts(cfg: NodeConfig) -> Iterable[Path]:
    return (p.artifact for p in cfg.programs)


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "BPF_LOADER2",
    "BPF_UPGRADEABLE_LOADER",
    "IMMUTABLE",
    "UPGRADEABLE",
    "ProgramDeployment",
    "NodeConfig",
    "default_programs",
    "parse_program_deployments",
    "load_config_file",
    "resolve_config",
    "describe",
    "iter_program_artifacts",
]
