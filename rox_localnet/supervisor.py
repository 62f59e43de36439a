"""Start and stop the faucet and validator services.

Every spawned service is recorded as a :class:`ProcessHandle` persisted under
the run directory (``<run_dir>/<role>.json``).  Stale instances from a
previous bootstrap are found through those records (pid plus process create
time) rather than by matching process names, so unrelated processes that
happen to share a name are never touched.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import psutil

from .config import NodeConfig
from .errors import ProcessExitedEarly, ProcessSpawnFailed
from .log_rotation import remove_stray_logs
from .preflight import FAUCET_TOOL, VALIDATOR_TOOL

log = logging.getLogger(__name__)

FAUCET = "faucet"
VALIDATOR = "validator"
ROLES: tuple[str, ...] = (FAUCET, VALIDATOR)

# Tolerance when comparing a recorded create time against the live process.
_CREATE_TIME_SLACK = 1.0


@dataclass(frozen=True)
class ProcessHandle:
    """A spawned service as recorded on disk."""

    role: str
    pid: int
    log_path: Path
    cmdline: tuple[str, ...]
    create_time: float | None = None
    started_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        payload = asdict(self)
        payload["log_path"] = str(self.log_path)
        payload["cmdline"] = list(self.cmdline)
        return json.dumps(payload, indent=2, sort_keys=True)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProcessHandle":
        create_time = data.get("create_time")
        return cls(
            role=str(data["role"]),
            pid=int(data["pid"]),
            log_path=Path(data["log_path"]),
            cmdline=tuple(str(part) for part in data.get("cmdline") or ()),
            create_time=float(create_time) if create_time is not None else None,
            started_at=float(data.get("started_at") or 0.0),
        )


class ProcessRegistry:
    """Pid records for the managed services, one JSON file per role."""

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = Path(run_dir)

    def path_for(self, role: str) -> Path:
        return self.run_dir / f"{role}.json"

    def record(self, handle: ProcessHandle) -> Path:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(handle.role)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(handle.to_json(), encoding="utf-8")
        tmp.replace(path)
        return path

    def load(self, role: str) -> ProcessHandle | None:
        path = self.path_for(role)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            log.warning("Ignoring unreadable process record %s: %s", path, exc)
            return None
        try:
            return ProcessHandle.from_mapping(data)
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("Ignoring malformed process record %s: %s", path, exc)
            return None

    def forget(self, role: str) -> None:
        self.path_for(role).unlink(missing_ok=True)


def _matching_process(handle: ProcessHandle) -> psutil.Process | None:
    """Return the live process for ``handle`` or ``None`` if it is gone or reused."""

    try:
        proc = psutil.Process(handle.pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        if handle.create_time is not None:
            if abs(proc.create_time() - handle.create_time) > _CREATE_TIME_SLACK:
                return None
        elif handle.cmdline:
            cmdline = proc.cmdline()
            if not cmdline or Path(cmdline[0]).name != Path(handle.cmdline[0]).name:
                return None
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied:
        log.warning("No permission to inspect pid %s (%s)", handle.pid, handle.role)
        return None
    return proc


def is_running(handle: ProcessHandle) -> bool:
    return _matching_process(handle) is not None


def terminate(handle: ProcessHandle, *, timeout: float = 5.0) -> bool:
    """Terminate the recorded process; returns ``True`` if it was running."""

    proc = _matching_process(handle)
    if proc is None:
        return False
    log.info("Stopping previous %s (pid %s)", handle.role, handle.pid)
    try:
        proc.terminate()
        _, alive = psutil.wait_procs([proc], timeout=timeout)
        for straggler in alive:
            log.warning("%s (pid %s) ignored SIGTERM; killing", handle.role, straggler.pid)
            straggler.kill()
        psutil.wait_procs(alive, timeout=timeout)
    except psutil.NoSuchProcess:
        pass
    return True


@dataclass
class SupervisedProcess:
    """A service started by this invocation."""

    handle: ProcessHandle
    popen: subprocess.Popen

    @property
    def role(self) -> str:
        return self.handle.role

    def poll(self) -> int | None:
        return self.popen.poll()


def faucet_command(cfg: NodeConfig, tool: str | Path) -> list[str]:
    return [
        str(tool),
        "--keypair", str(cfg.faucet_keypair),
        "--host", cfg.faucet_host,
        "--port", str(cfg.faucet_port),
        "--url", cfg.rpc_url,
    ]


def validator_command(cfg: NodeConfig, tool: str | Path) -> list[str]:
    cmd = [
        str(tool),
        "--identity", str(cfg.identity_keypair),
        "--vote-account", str(cfg.vote_keypair),
        "--ledger", str(cfg.ledger_dir),
    ]
    if cfg.gossip_host:
        cmd += ["--gossip-host", cfg.gossip_host]
    cmd += [
        "--gossip-port", str(cfg.gossip_port),
        "--rpc-bind-address", cfg.rpc_bind_host,
        "--rpc-port", str(cfg.rpc_port),
    ]
    if cfg.public_rpc_address:
        cmd += ["--public-rpc-address", cfg.public_rpc_address]
    cmd += [
        "--full-rpc-api",
        "--enable-rpc-transaction-history",
        "--rpc-faucet-address", cfg.faucet_address,
        "--no-wait-for-vote-to-start-leader",
        "--limit-ledger-size", str(cfg.limit_ledger_size),
        "--full-snapshot-interval-slots", str(cfg.full_snapshot_interval_slots),
        "--incremental-snapshot-interval-slots", str(cfg.incremental_snapshot_interval_slots),
        "--log", str(cfg.validator_log),
    ]
    return cmd


class Supervisor:
    """Spawn services detached from this process and keep their records."""

    def __init__(
        self,
        cfg: NodeConfig,
        tools: Mapping[str, Path],
        *,
        env: Mapping[str, str] | None = None,
        registry: ProcessRegistry | None = None,
        popen: Callable[..., subprocess.Popen] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        startup_grace: float = 0.5,
        stop_timeout: float = 5.0,
    ) -> None:
        self.cfg = cfg
        self.tools = dict(tools)
        self.env = dict(os.environ if env is None else env)
        self.registry = registry or ProcessRegistry(cfg.run_dir)
        self.popen = popen or subprocess.Popen
        self.sleep = sleep
        self.startup_grace = startup_grace
        self.stop_timeout = stop_timeout

    def terminate_stale(self) -> list[str]:
        """Stop services recorded by an earlier run; a missing record is fine."""

        stopped: list[str] = []
        # Validator first so it stops requesting airdrops from the faucet.
        for role in reversed(ROLES):
            handle = self.registry.load(role)
            if handle is None:
                continue
            if terminate(handle, timeout=self.stop_timeout):
                stopped.append(role)
            else:
                log.debug("Recorded %s (pid %s) is no longer running", role, handle.pid)
            self.registry.forget(role)
        if not stopped:
            log.info("No previous faucet/validator instances running")
        return stopped

    def _spawn(
        self,
        role: str,
        cmd: Sequence[str],
        log_path: Path,
        env: Mapping[str, str],
    ) -> SupervisedProcess:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log.info("Starting %s: %s", role, " ".join(cmd))
        log.info("%s output redirected to %s", role.capitalize(), log_path)
        with log_path.open("ab", buffering=0) as log_file:
            try:
                proc = self.popen(
                    list(cmd),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    env=dict(env),
                    start_new_session=True,
                )
            except OSError as exc:
                raise ProcessSpawnFailed(role, cmd[0], exc) from exc
        create_time: float | None
        try:
            create_time = psutil.Process(proc.pid).create_time()
        except psutil.Error:
            create_time = None
        handle = ProcessHandle(
            role=role,
            pid=proc.pid,
            log_path=log_path,
            cmdline=tuple(cmd),
            create_time=create_time,
        )
        self.registry.record(handle)

        self.sleep(self.startup_grace)
        code = proc.poll()
        if code is not None:
            self.registry.forget(role)
            raise ProcessExitedEarly(role, code, log_path)
        log.info("Launched %s pid=%s", role, proc.pid)
        return SupervisedProcess(handle=handle, popen=proc)

    def start_faucet(self) -> SupervisedProcess:
        cmd = faucet_command(self.cfg, self.tools[FAUCET_TOOL])
        return self._spawn(FAUCET, cmd, self.cfg.faucet_log, self.env)

    def start_validator(self) -> SupervisedProcess:
        remove_stray_logs(Path.cwd())
        cmd = validator_command(self.cfg, self.tools[VALIDATOR_TOOL])
        env = dict(self.env)
        env["RUST_LOG"] = self.cfg.validator_rust_log
        return self._spawn(VALIDATOR, cmd, self.cfg.validator_log, env)

    def stop(self, proc: SupervisedProcess) -> None:
        """Stop a service started by this invocation and drop its record."""

        if proc.poll() is None:
            log.info("Stopping %s (pid %s)", proc.role, proc.handle.pid)
            proc.popen.terminate()
            try:
                proc.popen.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                proc.popen.kill()
                proc.popen.wait(timeout=self.stop_timeout)
        self.registry.forget(proc.role)


__all__ = [
    "FAUCET",
    "VALIDATOR",
    "ROLES",
    "ProcessHandle",
    "ProcessRegistry",
    "SupervisedProcess",
    "is_running",
    "terminate",
    "faucet_command",
    "validator_command",
    "Supervisor",
]
