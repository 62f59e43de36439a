"""Best-effort calls to the ``solana`` client once the validator is up."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Callable

log = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


class ClientTool:
    def __init__(
        self,
        executable: str | Path,
        url: str,
        *,
        runner: Runner | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.executable = str(executable)
        self.url = url
        self.runner = runner or subprocess.run
        self.timeout = timeout

    def _run(self, *args: str) -> str | None:
        cmd = [self.executable, *args]
        try:
            result = self.runner(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            log.warning("%s failed (code %s): %s", " ".join(cmd), exc.returncode, detail)
            return None
        except (OSError, subprocess.TimeoutExpired) as exc:
            log.warning("%s failed: %s", " ".join(cmd), exc)
            return None
        return (result.stdout or "").strip()

    def set_default_url(self) -> bool:
        return self._run("config", "set", "--url", self.url) is not None

    def genesis_hash(self) -> str | None:
        out = self._run("genesis-hash", "--url", self.url)
        if not out:
            return None
        return out.splitlines()[-1].strip()

    def show_program(self, program_id: str) -> str | None:
        return self._run("program", "show", program_id, "--url", self.url)


__all__ = ["ClientTool"]
