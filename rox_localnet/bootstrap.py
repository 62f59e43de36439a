"""Bring up a local ROX validator network.

The pipeline is strictly sequential:

1. Preflight checks (tools, keypairs, program artifacts).
2. Stop the faucet/validator recorded by a previous run.
3. Disk-space guard on the ledger volume.
4. Create the upgrade authority key if a deployment needs one.
5. Build genesis unless a valid artifact already exists.
6. Rotate oversized service logs.
7. Start the faucet, then the validator.
8. Wait for the validator RPC to report healthy.

Each step runs through :func:`run_stage` so the final summary shows exactly
where a failed bootstrap stopped.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import signal
import sys
import threading
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, TypeVar

import psutil

from .client import ClientTool
from .config import (
    DEFAULT_CONFIG_FILE,
    NodeConfig,
    describe,
    load_config_file,
    resolve_config,
)
from .disk_guard import DiskGuardDecision, enforce_disk_guard, measure_free_bytes
from .errors import BootstrapCancelled, BootstrapError, ConfigError, RunLockHeld
from .genesis import GenesisBuilder, GenesisOutcome
from .health import HealthGate, HealthStatus
from .keygen import Keygen
from .log_rotation import rotate_logs
from .logging_utils import configure_logging
from .native_token import format_rox
from .preflight import (
    CLIENT_TOOL,
    GENESIS_TOOL,
    KEYGEN_TOOL,
    PreflightReport,
    ensure_upgrade_authority,
    run_preflight,
)
from .supervisor import SupervisedProcess, Supervisor

log = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_NAME = "localnet.lock"


@dataclass
class StageResult:
    """Represents the outcome for a pipeline stage."""

    name: str
    success: bool
    duration: float
    error: str | None = None


@dataclass
class BootstrapResult:
    genesis: GenesisOutcome
    faucet: SupervisedProcess
    validator: SupervisedProcess
    health_attempts: int
    disk_decision: DiskGuardDecision
    tools: dict[str, Path] = field(default_factory=dict)
    stages: list[StageResult] = field(default_factory=list)


def run_stage(name: str, func: Callable[[], T], stage_results: list[StageResult]) -> T:
    """Execute a pipeline stage with structured logging."""

    log.info("▶ Starting stage: %s", name)
    started = time.perf_counter()
    try:
        result = func()
    except BaseException as exc:
        duration = time.perf_counter() - started
        stage_results.append(StageResult(name=name, success=False, duration=duration, error=str(exc)))
        log.error("✗ Stage %s failed after %.2fs", name, duration)
        raise
    duration = time.perf_counter() - started
    stage_results.append(StageResult(name=name, success=True, duration=duration))
    log.info("✓ Stage %s completed in %.2fs", name, duration)
    return result


def summarize_stages(stage_results: list[StageResult]) -> None:
    if not stage_results:
        log.warning("Bootstrap summary unavailable: no stages recorded")
        return
    log.info("Bootstrap summary:")
    for result in stage_results:
        status = "OK" if result.success else "FAIL"
        extra = f" — {result.error}" if result.error else ""
        log.info("  [%s] %s (%.2fs)%s", status, result.name, result.duration, extra)


def _process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    return psutil.pid_exists(pid)


@contextlib.contextmanager
def acquire_run_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive, pid-stamped lock file for the whole bootstrap."""

    path.parent.mkdir(parents=True, exist_ok=True)
    while True:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            try:
                existing_pid = int(path.read_text(encoding="utf-8").strip())
            except (OSError, ValueError):
                existing_pid = 0
            if existing_pid and existing_pid != os.getpid() and _process_alive(existing_pid):
                raise RunLockHeld(path, existing_pid) from None
            log.warning("Removing stale bootstrap lock %s (pid %s)", path, existing_pid or "?")
            path.unlink(missing_ok=True)
            continue
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(os.getpid()))
        break
    try:
        yield
    finally:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()


@contextlib.contextmanager
def cancel_on_signals(event: threading.Event) -> Iterator[threading.Event]:
    """Set ``event`` on SIGINT/SIGTERM while the block runs."""

    if threading.current_thread() is not threading.main_thread():
        yield event
        return

    def _handler(signum: int, _frame: Any) -> None:
        log.warning("Received %s; cancelling", signal.Signals(signum).name)
        event.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield event
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def bootstrap(
    cfg: NodeConfig,
    stage_results: list[StageResult],
    *,
    env: Mapping[str, str] | None = None,
    cancel: threading.Event | None = None,
    measure: Callable[[Path], int] = measure_free_bytes,
    supervisor_factory: Callable[..., Supervisor] = Supervisor,
    probe: Callable[[], HealthStatus] | None = None,
) -> BootstrapResult:
    """Run the pipeline against ``cfg``; raises :class:`BootstrapError` on failure."""

    def stage(name: str, func: Callable[[], T]) -> T:
        if cancel is not None and cancel.is_set():
            raise BootstrapCancelled(f"cancelled by operator before {name}")
        return run_stage(name, func, stage_results)

    report: PreflightReport = stage("preflight", lambda: run_preflight(cfg))
    supervisor = supervisor_factory(cfg, report.tools, env=env)
    stage("stop-previous", supervisor.terminate_stale)

    decision = stage(
        "disk-guard",
        lambda: enforce_disk_guard(cfg, measure=measure),
    )

    keygen = Keygen(report.tool(KEYGEN_TOOL))
    stage("upgrade-authority", lambda: ensure_upgrade_authority(cfg, keygen))

    builder = GenesisBuilder(report.tool(GENESIS_TOOL), keygen)
    genesis = stage("genesis", lambda: builder.ensure(cfg))

    stage(
        "log-rotation",
        lambda: rotate_logs(
            (cfg.faucet_log, cfg.validator_log),
            cfg.max_log_bytes,
            cfg.max_log_backups,
        ),
    )

    started: list[SupervisedProcess] = []
    try:
        faucet = stage("start-faucet", supervisor.start_faucet)
        started.append(faucet)
        validator = stage("start-validator", supervisor.start_validator)
        started.append(validator)

        gate = HealthGate(
            cfg.rpc_url,
            attempts=cfg.health_attempts,
            interval=cfg.health_interval,
            log_path=cfg.validator_log,
            probe=probe,
            watch=started,
            cancel=cancel,
        )
        attempts = stage("health-gate", gate.wait)
    except BaseException:
        for proc in reversed(started):
            supervisor.stop(proc)
        raise

    return BootstrapResult(
        genesis=genesis,
        faucet=faucet,
        validator=validator,
        health_attempts=attempts,
        disk_decision=decision,
        tools=dict(report.tools),
        stages=stage_results,
    )


def stop_services(cfg: NodeConfig) -> list[str]:
    """Stop the services recorded under ``cfg.run_dir``."""

    return Supervisor(cfg, {}).terminate_stale()


def report_ready(cfg: NodeConfig, client: ClientTool) -> None:
    """Post-ready conveniences; failures here are only logged."""

    client.set_default_url()
    genesis_hash = client.genesis_hash()
    if genesis_hash:
        log.info("Genesis Hash: %s", genesis_hash)
    for program in cfg.programs:
        shown = client.show_program(program.program_id)
        if shown is None:
            log.warning("Program %s (%s) not visible yet", program.name, program.program_id)
        else:
            log.info("Program %s (%s, %s) deployed", program.name, program.program_id, program.kind)


def usage_banner(cfg: NodeConfig) -> str:
    lines = [
        "",
        "✅ Localnet is up.",
        "",
        "Quick commands:",
        f"  solana airdrop <AMOUNT> <PUBKEY> --url {cfg.rpc_url}",
        f"  tail -f {cfg.validator_log}",
        f"  tail -f {cfg.faucet_log}",
        f"  curl -s {cfg.rpc_url} -H 'Content-Type: application/json' \\",
        "    -d '{\"jsonrpc\":\"2.0\",\"id\":1,\"method\":\"getSlot\"}'",
        "  solana cluster-version",
        "",
        "Notes:",
        f"  - Faucet balance: {format_rox(cfg.faucet_lamports)}",
        f"  - Transaction fee: {cfg.target_lamports_per_signature} lamports per signature",
    ]
    for program in cfg.programs:
        suffix = f"; authority {program.upgrade_authority}" if program.upgradeable else ""
        lines.append(f"  - {program.name} => {program.program_id} ({program.kind}{suffix})")
    lines += [
        "  - Changing programs or fees requires FORCE_REBUILD=1 (rebuilds genesis).",
        "  - Stop with: rox-localnet --stop",
        "",
    ]
    return "\n".join(lines)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bootstrap a local ROX validator network")
    parser.add_argument("--config", default=None, help=f"TOML config file (default: ./{DEFAULT_CONFIG_FILE} if present)")
    parser.add_argument("--force-rebuild", action="store_true", help="Wipe the ledger and rebuild genesis")
    parser.add_argument("--allow-purge", action="store_true", help="Permit purging the ledger when disk is low")
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit structured JSON logs")
    parser.add_argument("--stop", action="store_true", help="Stop the recorded faucet and validator, then exit")
    parser.add_argument("--skip-client-setup", action="store_true", help="Do not touch the client CLI config")
    return parser.parse_args(argv)


def load_node_config(args: argparse.Namespace, environ: Mapping[str, str]) -> NodeConfig:
    env = dict(environ)
    if args.force_rebuild:
        env["FORCE_REBUILD"] = "1"
    if args.allow_purge:
        env["ALLOW_LEDGER_PURGE"] = "1"
    file_data: dict[str, Any] | None = None
    if args.config:
        file_data = load_config_file(args.config)
    elif Path(DEFAULT_CONFIG_FILE).is_file():
        file_data = load_config_file(DEFAULT_CONFIG_FILE)
    return resolve_config(env, file_data)


def main(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    args = parse_args(argv)
    env = dict(os.environ if environ is None else environ)

    try:
        cfg = load_node_config(args, env)
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
        log.critical("Invalid configuration: %s", exc)
        return exc.exit_code

    configure_logging(cfg.log_dir, environ=env, level=args.log_level, json_logs=args.json_logs or None)
    log.info("Active configuration overview: %s", describe(cfg))

    stage_results: list[StageResult] = []
    exit_code = 0
    cancel = threading.Event()
    try:
        with acquire_run_lock(cfg.run_dir / LOCK_NAME), cancel_on_signals(cancel):
            if args.stop:
                stopped = run_stage("stop", lambda: stop_services(cfg), stage_results)
                log.info("Stopped: %s", ", ".join(stopped) or "nothing")
                return 0
            result = bootstrap(cfg, stage_results, env=env, cancel=cancel)
            if not args.skip_client_setup:
                report_ready(cfg, ClientTool(result.tools[CLIENT_TOOL], cfg.rpc_url))
        print(usage_banner(cfg))
    except BootstrapError as exc:
        exit_code = exc.exit_code
        log.critical("Bootstrap aborted: %s", exc)
        log.debug("Detailed traceback:\n%s", "".join(traceback.format_exception(exc)))
    except Exception as exc:
        exit_code = 1
        log.critical("Bootstrap aborted by unexpected error: %s", exc)
        log.debug("Detailed traceback:\n%s", "".join(traceback.format_exception(exc)))
    finally:
        summarize_stages(stage_results)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
