"""Failure taxonomy for the localnet bootstrap.

Every fatal condition derives from :class:`BootstrapError` so the orchestrator
can abort with one ``except`` clause and map the failure to an exit code.
:class:`LogRotationFailure` is the only member that callers are expected to
swallow.
"""

from __future__ import annotations

from pathlib import Path


class BootstrapError(RuntimeError):
    """Raised when the bootstrap cannot continue."""

    exit_code = 1


class ConfigError(BootstrapError):
    """Raised when configuration values are malformed."""


class MissingBinary(BootstrapError):
    def __init__(self, name: str, search: str | Path | None = None) -> None:
        self.name = name
        self.search = search
        where = f" in {search}" if search else " in PATH"
        super().__init__(f"missing executable {name}{where}")


class MissingKeypair(BootstrapError):
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        super().__init__(f"missing keypair: {self.path}")


class MissingArtifact(BootstrapError):
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        super().__init__(f"missing program artifact: {self.path}")


class InsufficientDiskSpace(BootstrapError):
    def __init__(self, free: int, threshold: int) -> None:
        self.free = int(free)
        self.threshold = int(threshold)
        gib = 1024 ** 3
        super().__init__(
            f"low disk: {self.free / gib:.2f} GiB free < {self.threshold / gib:.2f} GiB required. "
            "Free up space or rerun with ALLOW_LEDGER_PURGE=1."
        )


class KeygenFailure(BootstrapError):
    """Raised when the key tool cannot derive or create a key."""


class GenesisBuildFailure(BootstrapError):
    def __init__(self, returncode: int | None, detail: str = "") -> None:
        self.returncode = returncode
        self.detail = detail
        msg = f"genesis build failed (exit code {returncode})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ProcessExitedEarly(BootstrapError):
    def __init__(self, role: str, returncode: int | None, log_path: str | Path) -> None:
        self.role = role
        self.returncode = returncode
        self.log_path = Path(log_path)
        super().__init__(
            f"{role} exited with code {returncode} right after start. See {self.log_path}"
        )


class ProcessSpawnFailed(BootstrapError):
    def __init__(self, role: str, program: str, reason: OSError) -> None:
        self.role = role
        self.program = program
        self.reason = reason
        super().__init__(f"could not start {role} ({program}): {reason}")


class HealthTimeout(BootstrapError):
    def __init__(self, attempts: int, interval: float, log_path: str | Path | None = None) -> None:
        self.attempts = attempts
        self.interval = interval
        self.log_path = Path(log_path) if log_path else None
        msg = (
            f"validator failed to become healthy after {attempts} attempts "
            f"(~{attempts * interval:.1f}s)"
        )
        if self.log_path:
            msg += f". See {self.log_path}"
        super().__init__(msg)


class BootstrapCancelled(BootstrapError):
    """Raised when the operator interrupts a blocking wait."""

    exit_code = 130


class RunLockHeld(BootstrapError):
    def __init__(self, path: str | Path, pid: int) -> None:
        self.path = Path(path)
        self.pid = pid
        super().__init__(
            f"another bootstrap is running (pid {pid}); wait for it or remove {self.path}"
        )


class LogRotationFailure(RuntimeError):
    """Non-fatal: log hygiene must never block bootstrap."""


__all__ = [
    "BootstrapError",
    "ConfigError",
    "MissingBinary",
    "MissingKeypair",
    "MissingArtifact",
    "InsufficientDiskSpace",
    "KeygenFailure",
    "GenesisBuildFailure",
    "ProcessExitedEarly",
    "ProcessSpawnFailed",
    "HealthTimeout",
    "BootstrapCancelled",
    "RunLockHeld",
    "LogRotationFailure",
]
