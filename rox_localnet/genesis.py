"""Deterministic genesis construction.

The genesis artifact (``<ledger>/genesis.bin``) doubles as the idempotency
marker: when it exists and no forced rebuild was requested the build is
skipped entirely.  The decision lives in the pure :func:`needs_rebuild`
predicate and the tool arguments are assembled by the pure
:func:`build_genesis_args`, so both can be tested without running the tool.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import subprocess
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

from .config import NodeConfig
from .errors import GenesisBuildFailure
from .keygen import Keygen

log = logging.getLogger(__name__)

GENESIS_FILENAME = "genesis.bin"


@dataclass(frozen=True)
class ArtifactState:
    path: Path
    exists: bool
    size: int = 0
    mtime_ns: int = 0


def inspect_artifact(ledger_dir: Path) -> ArtifactState:
    path = Path(ledger_dir) / GENESIS_FILENAME
    try:
        st = path.stat()
    except FileNotFoundError:
        return ArtifactState(path=path, exists=False)
    return ArtifactState(path=path, exists=path.is_file(), size=st.st_size, mtime_ns=st.st_mtime_ns)


def needs_rebuild(cfg: NodeConfig, state: ArtifactState) -> bool:
    return cfg.force_rebuild or not state.exists


@dataclass(frozen=True)
class GenesisProgram:
    program_id: str
    loader: str
    artifact: Path
    upgrade_authority_pubkey: str | None = None

    @property
    def upgradeable(self) -> bool:
        return self.upgrade_authority_pubkey is not None


@dataclass(frozen=True)
class GenesisInputs:
    """Every value that determines the genesis artifact."""

    cluster_type: str
    hashes_per_tick: str
    identity_pubkey: str
    vote_pubkey: str
    stake_pubkey: str
    bootstrap_lamports: int
    bootstrap_stake_lamports: int
    faucet_pubkey: str
    faucet_lamports: int
    ledger_dir: Path
    target_lamports_per_signature: int
    target_signatures_per_slot: int
    fee_burn_percentage: int
    programs: tuple[GenesisProgram, ...] = ()
    primordial_accounts: Path | None = None

    @classmethod
    def from_config(cls, cfg: NodeConfig, keygen: Keygen) -> "GenesisInputs":
        programs = []
        for program in cfg.programs:
            authority = None
            if program.upgradeable:
                authority = keygen.pubkey(program.upgrade_authority or cfg.upgrade_authority_keypair)
            programs.append(
                GenesisProgram(
                    program_id=program.program_id,
                    loader=program.loader,
                    artifact=program.artifact,
                    upgrade_authority_pubkey=authority,
                )
            )
        primordial = cfg.primordial_accounts
        if primordial is not None and not primordial.is_file():
            primordial = None
        return cls(
            cluster_type=cfg.cluster_type,
            hashes_per_tick=cfg.hashes_per_tick,
            identity_pubkey=keygen.pubkey(cfg.identity_keypair),
            vote_pubkey=keygen.pubkey(cfg.vote_keypair),
            stake_pubkey=keygen.pubkey(cfg.stake_keypair),
            bootstrap_lamports=cfg.bootstrap_lamports,
            bootstrap_stake_lamports=cfg.bootstrap_stake_lamports,
            faucet_pubkey=keygen.pubkey(cfg.faucet_keypair),
            faucet_lamports=cfg.faucet_lamports,
            ledger_dir=cfg.ledger_dir,
            target_lamports_per_signature=cfg.target_lamports_per_signature,
            target_signatures_per_slot=cfg.target_signatures_per_slot,
            fee_burn_percentage=cfg.fee_burn_percentage,
            programs=tuple(programs),
            primordial_accounts=primordial,
        )

    def fingerprint(self) -> str:
        """SHA-256 over the inputs, excluding the ledger location."""

        payload = asdict(self)
        payload.pop("ledger_dir")
        encoded = json.dumps(payload, default=str, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def build_genesis_args(inputs: GenesisInputs) -> list[str]:
    """Genesis tool arguments in a fixed order."""

    args = [
        "--cluster-type", inputs.cluster_type,
        "--hashes-per-tick", inputs.hashes_per_tick,
        "--bootstrap-validator", inputs.identity_pubkey, inputs.vote_pubkey, inputs.stake_pubkey,
        "--bootstrap-validator-lamports", str(inputs.bootstrap_lamports),
        "--bootstrap-validator-stake-lamports", str(inputs.bootstrap_stake_lamports),
        "--faucet-pubkey", inputs.faucet_pubkey,
        "--faucet-lamports", str(inputs.faucet_lamports),
        "--ledger", str(inputs.ledger_dir),
        "--target-lamports-per-signature", str(inputs.target_lamports_per_signature),
        "--target-signatures-per-slot", str(inputs.target_signatures_per_slot),
        "--fee-burn-percentage", str(inputs.fee_burn_percentage),
    ]
    for program in inputs.programs:
        if program.upgradeable:
            args += [
                "--upgradeable-program",
                program.program_id,
                program.loader,
                str(program.artifact),
                str(program.upgrade_authority_pubkey),
            ]
        else:
            args += ["--bpf-program", program.program_id, program.loader, str(program.artifact)]
    if inputs.primordial_accounts is not None:
        args += ["--primordial-accounts-file", str(inputs.primordial_accounts)]
    return args


def artifact_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class GenesisOutcome:
    built: bool
    state: ArtifactState
    inputs: GenesisInputs | None = None


Runner = Callable[..., subprocess.CompletedProcess]


class GenesisBuilder:
    """Run the external genesis tool when :func:`needs_rebuild` says so."""

    def __init__(
        self,
        tool: str | Path,
        keygen: Keygen,
        *,
        runner: Runner | None = None,
    ) -> None:
        self.tool = str(tool)
        self.keygen = keygen
        self.runner = runner or subprocess.run

    def ensure(self, cfg: NodeConfig) -> GenesisOutcome:
        state = inspect_artifact(cfg.ledger_dir)
        if not needs_rebuild(cfg, state):
            log.info("Reusing existing genesis at %s", state.path)
            log.info(
                "If genesis was built with different programs or fee settings, "
                "rerun with FORCE_REBUILD=1 to rebuild it."
            )
            return GenesisOutcome(built=False, state=state)

        if cfg.force_rebuild and cfg.ledger_dir.exists():
            log.warning("FORCE_REBUILD set: wiping %s", cfg.ledger_dir)
            shutil.rmtree(cfg.ledger_dir)
        cfg.ledger_dir.mkdir(parents=True, exist_ok=True)

        inputs = GenesisInputs.from_config(cfg, self.keygen)
        if inputs.primordial_accounts is not None:
            log.info("Including primordial accounts: %s", inputs.primordial_accounts)
        self.build(inputs)
        return GenesisOutcome(built=True, state=inspect_artifact(cfg.ledger_dir), inputs=inputs)

    def build(self, inputs: GenesisInputs) -> ArtifactState:
        cmd = [self.tool, *build_genesis_args(inputs)]
        log.info("Building genesis (inputs %s)", inputs.fingerprint()[:16])
        log.debug("Genesis command: %s", " ".join(cmd))
        artifact = Path(inputs.ledger_dir) / GENESIS_FILENAME
        try:
            result = self.runner(cmd, check=False, capture_output=True, text=True)
        except OSError as exc:
            self._discard(artifact)
            raise GenesisBuildFailure(None, str(exc)) from exc
        if result.stdout:
            for line in result.stdout.splitlines():
                log.debug("genesis: %s", line)
        if result.returncode != 0:
            self._discard(artifact)
            detail = (result.stderr or result.stdout or "").strip().splitlines()
            raise GenesisBuildFailure(result.returncode, detail[-1] if detail else "")
        state = inspect_artifact(inputs.ledger_dir)
        if not state.exists:
            raise GenesisBuildFailure(result.returncode, f"{artifact} was not created")
        log.info("Genesis written to %s (%d bytes)", state.path, state.size)
        return state

    @staticmethod
    def _discard(artifact: Path) -> None:
        if artifact.exists():
            log.warning("Removing partial genesis artifact %s", artifact)
            artifact.unlink()


__all__ = [
    "GENESIS_FILENAME",
    "ArtifactState",
    "inspect_artifact",
    "needs_rebuild",
    "GenesisProgram",
    "GenesisInputs",
    "build_genesis_args",
    "artifact_digest",
    "GenesisOutcome",
    "GenesisBuilder",
]
