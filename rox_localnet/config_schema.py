"""Schema for the localnet settings and the ``[[programs]]`` tables."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic import field_validator, model_validator
from solders.pubkey import Pubkey

from .errors import ConfigError

BPF_LOADER2 = "BPFLoader2111111111111111111111111111111111"
BPF_UPGRADEABLE_LOADER = "BPFLoaderUpgradeab1e11111111111111111111111"

IMMUTABLE = "immutable"
UPGRADEABLE = "upgradeable"

Port = Annotated[int, Field(ge=1, le=65535)]
Count = Annotated[int, Field(ge=0)]
Positive = Annotated[int, Field(ge=1)]
Percent = Annotated[int, Field(ge=0, le=100)]
Rox = Annotated[float, Field(ge=0, le=1e12, allow_inf_nan=False)]
Size = Annotated[float, Field(ge=0, le=1e6, allow_inf_nan=False)]
Seconds = Annotated[float, Field(ge=0, le=3600, allow_inf_nan=False)]

# Environment variable names per setting; anything missing here is ``KEY.upper()``.
ENV_ALIASES: Dict[str, tuple[str, ...]] = {
    "ledger_dir": ("LEDGER_DIR", "LEDGER"),
    "secrets_dir": ("SECRETS_DIR", "SECRETS"),
    "bin_dir": ("SOLANA_BIN", "BIN_DIR"),
    "limit_ledger_size": ("LIMIT_LEDGER_SIZE", "LEDGER_SHREDS_LIMIT"),
    "validator_rust_log": ("VALIDATOR_RUST_LOG", "RUST_LOG"),
    "force_rebuild": ("FORCE_REBUILD", "WIPE_LEDGER"),
    "allow_purge": ("ALLOW_LEDGER_PURGE",),
}

_PATH_FIELDS = (
    "ledger_dir",
    "secrets_dir",
    "programs_dir",
    "bin_dir",
    "run_dir",
    "log_dir",
    "identity_keypair",
    "vote_keypair",
    "stake_keypair",
    "faucet_keypair",
    "upgrade_authority_keypair",
    "primordial_accounts",
)


def _check_path(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    if not text or "\x00" in text:
        raise ValueError(f"invalid path {value!r}")
    return text


def _check_pubkey(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    try:
        Pubkey.from_string(text)
    except ValueError:
        raise ValueError(f"not a valid public key: {value!r}") from None
    return text


def _unique_program_ids(entries: List["ProgramEntry"]) -> List["ProgramEntry"]:
    seen: set[str] = set()
    for entry in entries:
        if entry.program_id in seen:
            raise ValueError(f"duplicate program id {entry.program_id}")
        seen.add(entry.program_id)
    return entries


class ProgramEntry(BaseModel):
    """One ``[[programs]]`` table."""

    model_config = ConfigDict(extra="forbid")

    program_id: str
    artifact: str
    name: Optional[str] = None
    kind: Literal["immutable", "upgradeable"] = IMMUTABLE
    loader: Optional[str] = None
    upgrade_authority: Optional[str] = None

    @field_validator("kind", mode="before")
    def _normalise_kind(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("program_id", "loader")
    def _base58(cls, value: Optional[str]) -> Optional[str]:
        return _check_pubkey(value)

    @field_validator("artifact", "upgrade_authority")
    def _paths(cls, value: Optional[str]) -> Optional[str]:
        return _check_path(value)

    @model_validator(mode="after")
    def _loader_matches_kind(self) -> "ProgramEntry":
        upgradeable = self.kind == UPGRADEABLE
        if self.loader is None:
            self.loader = BPF_UPGRADEABLE_LOADER if upgradeable else BPF_LOADER2
        if upgradeable != (self.loader == BPF_UPGRADEABLE_LOADER):
            raise ValueError(f"loader {self.loader} does not match kind {self.kind!r}")
        if not upgradeable and self.upgrade_authority is not None:
            raise ValueError("upgrade_authority is only valid for upgradeable programs")
        return self


class LocalnetSettings(BaseModel):
    """Every tunable of a localnet run, before paths are resolved."""

    model_config = ConfigDict(extra="forbid")

    ledger_dir: str = "./rox-ledger"
    secrets_dir: str = "./secrets"
    programs_dir: str = "./programs"
    bin_dir: Optional[str] = None
    run_dir: str = "./.localnet"
    log_dir: str = "."

    identity_keypair: Optional[str] = None
    vote_keypair: Optional[str] = None
    stake_keypair: Optional[str] = None
    faucet_keypair: Optional[str] = None
    upgrade_authority_keypair: Optional[str] = None
    primordial_accounts: Optional[str] = None

    rpc_host: str = "0.0.0.0"
    rpc_port: Port = 8899
    public_ip: Optional[str] = None
    gossip_host: Optional[str] = None
    gossip_port: Port = 8001
    faucet_host: str = "127.0.0.1"
    faucet_port: Port = 9900

    bootstrap_lamports: Optional[Count] = None
    bootstrap_rox: Optional[Rox] = None
    bootstrap_stake_lamports: Optional[Count] = None
    bootstrap_stake_rox: Optional[Rox] = None
    faucet_lamports: Optional[Count] = None
    faucet_rox: Optional[Rox] = None

    target_lamports_per_signature: Count = 10_000
    target_signatures_per_slot: Count = 0
    fee_burn_percentage: Percent = 0
    cluster_type: str = "development"
    hashes_per_tick: Union[str, int] = "auto"

    min_free_gb: Size = 10
    max_log_mb: Size = 200
    max_log_backups: Count = 5
    limit_ledger_size: Count = 5_000_000
    full_snapshot_interval_slots: Positive = 2000
    incremental_snapshot_interval_slots: Positive = 1000
    validator_rust_log: str = "warn"

    health_attempts: Positive = 120
    health_interval: Seconds = 0.5

    force_rebuild: bool = False
    allow_purge: bool = False

    programs: Optional[List[ProgramEntry]] = None

    @field_validator(*_PATH_FIELDS)
    def _paths(cls, value: Optional[str]) -> Optional[str]:
        return _check_path(value)

    @field_validator("programs")
    def _programs_unique(cls, value: Optional[List[ProgramEntry]]) -> Optional[List[ProgramEntry]]:
        return _unique_program_ids(value) if value is not None else None


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        where = ".".join(str(part) for part in error["loc"]) or "settings"
        parts.append(f"{where}: {error['msg']}")
    return "; ".join(parts)


def collect_settings(environ: Mapping[str, str], file_data: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge file values with their environment overrides."""

    raw = {
        key: value
        for key, value in file_data.items()
        if not (isinstance(value, str) and not value.strip())
    }
    for key in LocalnetSettings.model_fields:
        if key == "programs":
            continue
        for name in ENV_ALIASES.get(key, (key.upper(),)):
            value = environ.get(name)
            if value is not None and str(value).strip():
                raw[key] = str(value).strip()
                break
    return raw


def validate_settings(raw: Mapping[str, Any]) -> LocalnetSettings:
    try:
        return LocalnetSettings.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {_describe(exc)}") from exc


_PROGRAM_LIST = TypeAdapter(List[ProgramEntry])


def validate_programs(raw: Any) -> List[ProgramEntry]:
    """Validate a ``[[programs]]`` array on its own."""

    try:
        return _unique_program_ids(_PROGRAM_LIST.validate_python(raw))
    except ValidationError as exc:
        raise ConfigError(f"invalid programs: {_describe(exc)}") from exc
    except ValueError as exc:
        raise ConfigError(f"invalid programs: {exc}") from exc


__all__ = [
    "BPF_LOADER2",
    "BPF_UPGRADEABLE_LOADER",
    "IMMUTABLE",
    "UPGRADEABLE",
    "ENV_ALIASES",
    "ProgramEntry",
    "LocalnetSettings",
    "collect_settings",
    "validate_settings",
    "validate_programs",
]
