"""Readiness gate for the validator RPC endpoint."""

from __future__ import annotations

import enum
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Iterable

import requests

from .errors import BootstrapCancelled, HealthTimeout, ProcessExitedEarly
from .supervisor import SupervisedProcess

log = logging.getLogger(__name__)

HEALTH_REQUEST = {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
HEALTHY_MARKER = '"ok"'


class HealthStatus(enum.Enum):
    UNKNOWN = "unknown"
    UNHEALTHY = "unhealthy"
    HEALTHY = "healthy"


def probe_health(
    url: str,
    session: requests.Session | None = None,
    *,
    timeout: float = 2.0,
) -> HealthStatus:
    """Issue one ``getHealth`` request; healthy iff the body carries ``"ok"``."""

    client = session or requests
    try:
        resp = client.post(
            url,
            json=HEALTH_REQUEST,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        log.debug("Health probe to %s failed: %s", url, exc)
        return HealthStatus.UNHEALTHY
    body = resp.text or ""
    if HEALTHY_MARKER in body:
        return HealthStatus.HEALTHY
    return HealthStatus.UNHEALTHY


class HealthGate:
    """Poll the validator until it reports healthy or the budget runs out.

    The wait between attempts happens on ``cancel`` so an operator interrupt
    ends the loop immediately.  Worst-case duration is
    ``attempts * interval`` plus the probe round-trips.
    """

    def __init__(
        self,
        url: str,
        *,
        attempts: int,
        interval: float,
        log_path: Path | None = None,
        probe: Callable[[], HealthStatus] | None = None,
        watch: Iterable[SupervisedProcess] = (),
        cancel: threading.Event | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.url = url
        self.attempts = attempts
        self.interval = interval
        self.log_path = log_path
        self.watch = tuple(watch)
        self.cancel = cancel or threading.Event()
        self._probe = probe or (lambda: probe_health(url, session))
        self.status = HealthStatus.UNKNOWN

    def _check_watched(self) -> None:
        for proc in self.watch:
            code = proc.poll()
            if code is not None:
                raise ProcessExitedEarly(proc.role, code, proc.handle.log_path)

    def wait(self) -> int:
        """Block until healthy; returns the number of probes issued."""

        log.info(
            "Waiting for RPC health at %s (attempts=%s, interval=%.2fs)",
            self.url,
            self.attempts,
            self.interval,
        )
        started = time.monotonic()
        for attempt in range(1, self.attempts + 1):
            if self.cancel.is_set():
                raise BootstrapCancelled("health wait cancelled by operator")
            self.status = self._probe()
            if self.status is HealthStatus.HEALTHY:
                log.info(
                    "Validator healthy after %d attempt(s) (%.1fs)",
                    attempt,
                    time.monotonic() - started,
                )
                return attempt
            self._check_watched()
            log.debug("Health probe %d/%d: %s", attempt, self.attempts, self.status.value)
            if self.cancel.wait(self.interval):
                raise BootstrapCancelled("health wait cancelled by operator")
        raise HealthTimeout(self.attempts, self.interval, self.log_path)


__all__ = [
    "HEALTH_REQUEST",
    "HEALTHY_MARKER",
    "HealthStatus",
    "probe_health",
    "HealthGate",
]
