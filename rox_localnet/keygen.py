"""Thin wrapper around the ``solana-keygen`` tool."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from solders.pubkey import Pubkey

from .errors import KeygenFailure

log = logging.getLogger(__name__)


class Keygen:
    """Derive public identifiers from key files, or create new key files.

    Key material stays on disk; only the public identifier printed by the
    tool ever reaches the orchestrator.
    """

    def __init__(self, executable: str | Path, *, timeout: float = 30.0) -> None:
        self.executable = str(executable)
        self.timeout = timeout
        self._cache: dict[Path, str] = {}

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        cmd = [self.executable, *args]
        try:
            return subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            raise KeygenFailure(
                f"{' '.join(cmd)} failed with code {exc.returncode}: {detail}"
            ) from exc
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise KeygenFailure(f"{' '.join(cmd)} failed: {exc}") from exc

    def pubkey(self, path: str | Path) -> str:
        """Return the base58 public key of the key file at ``path``."""

        key_path = Path(path)
        cached = self._cache.get(key_path)
        if cached is not None:
            return cached
        result = self._run(["pubkey", str(key_path)])
        text = (result.stdout or "").strip().splitlines()
        value = text[-1].strip() if text else ""
        try:
            Pubkey.from_string(value)
        except ValueError:
            raise KeygenFailure(f"unexpected pubkey output for {key_path}: {value!r}") from None
        self._cache[key_path] = value
        return value

    def new(self, path: str | Path) -> str:
        """Create a new key file at ``path`` and return its public key."""

        key_path = Path(path)
        key_path.parent.mkdir(parents=True, exist_ok=True)
        log.info("Creating keypair at %s", key_path)
        self._run(["new", "-o", str(key_path), "-f", "--no-bip39-passphrase", "--silent"])
        self._cache.pop(key_path, None)
        return self.pubkey(key_path)


__all__ = ["Keygen"]
