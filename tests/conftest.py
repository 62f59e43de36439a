import hashlib
import stat
import subprocess
import sys
from pathlib import Path

import pytest
from solders.pubkey import Pubkey

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from rox_localnet.config import resolve_config  # noqa: E402
from rox_localnet.preflight import REQUIRED_TOOLS  # noqa: E402

KEY_FILES = (
    "validator-identity.json",
    "validator-vote.json",
    "validator-stake.json",
    "faucet.json",
    "upgrade-authority.json",
)
PROGRAM_FILES = ("spl_token.so", "spl_ata.so", "mpl_token_metadata.so")


def pubkey_for(path) -> str:
    """Deterministic stand-in for ``solana-keygen pubkey``."""
    digest = hashlib.sha256(str(Path(path).name).encode()).digest()
    return str(Pubkey(digest))


class FakeTools:
    """Answers ``subprocess.run`` for the external command-line tools."""

    def __init__(self):
        self.calls = []
        self.genesis_returncode = 0
        self.genesis_payload = b"genesis"

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        tool = Path(cmd[0]).name
        if tool == "solana-keygen":
            if cmd[1] == "pubkey":
                return subprocess.CompletedProcess(cmd, 0, stdout=pubkey_for(cmd[2]) + "\n", stderr="")
            if cmd[1] == "new":
                target = Path(cmd[cmd.index("-o") + 1])
                target.write_text("[1,2,3]")
                return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        if tool == "solana-genesis":
            ledger = Path(cmd[cmd.index("--ledger") + 1])
            if self.genesis_returncode != 0:
                (ledger / "genesis.bin").write_bytes(b"partial")
                return subprocess.CompletedProcess(cmd, self.genesis_returncode, stdout="", stderr="boom")
            (ledger / "genesis.bin").write_bytes(self.genesis_payload + " ".join(cmd[1:]).encode())
            return subprocess.CompletedProcess(cmd, 0, stdout="Creating genesis\n", stderr="")
        if tool == "solana":
            return subprocess.CompletedProcess(cmd, 0, stdout="4uhcVJyU9pJkvQyS88uRDiswHXSCkY3zQawwpjk2NsNY\n", stderr="")
        raise AssertionError(f"unexpected command {cmd}")

    def invoked(self, tool):
        return [c for c in self.calls if Path(c[0]).name == tool]


@pytest.fixture
def fake_tools(monkeypatch):
    tools = FakeTools()
    monkeypatch.setattr(subprocess, "run", tools)
    return tools


@pytest.fixture
def localnet_env(tmp_path):
    """A complete on-disk layout plus the environment pointing at it."""
    secrets = tmp_path / "secrets"
    programs = tmp_path / "programs"
    bin_dir = tmp_path / "bin"
    for directory in (secrets, programs, bin_dir):
        directory.mkdir()
    for name in KEY_FILES:
        (secrets / name).write_text("[0]")
    for name in PROGRAM_FILES:
        (programs / name).write_bytes(b"\x7fELF")
    for tool in REQUIRED_TOOLS:
        exe = bin_dir / tool
        exe.write_text("#!/bin/sh\nexit 0\n")
        exe.chmod(exe.stat().st_mode | stat.S_IXUSR)
    return {
        "LEDGER_DIR": str(tmp_path / "rox-ledger"),
        "SECRETS_DIR": str(secrets),
        "PROGRAMS_DIR": str(programs),
        "SOLANA_BIN": str(bin_dir),
        "RUN_DIR": str(tmp_path / "run"),
        "LOG_DIR": str(tmp_path / "logs"),
        "HEALTH_ATTEMPTS": "5",
        "HEALTH_INTERVAL": "0",
    }


@pytest.fixture
def make_config(localnet_env):
    def _make(**overrides):
        env = dict(localnet_env)
        env.update({k: str(v) for k, v in overrides.items()})
        return resolve_config(env)

    return _make


@pytest.fixture
def pubkey_of():
    return pubkey_for


class FakePopen:
    """Records spawn arguments; ``exit_code`` makes the process die at once."""

    instances: list = []
    exit_codes: dict = {}
    next_pid = 99_999_000

    def __init__(self, cmd, **kwargs):
        self.cmd = list(cmd)
        self.kwargs = kwargs
        FakePopen.next_pid += 1
        self.pid = FakePopen.next_pid
        self.returncode = FakePopen.exit_codes.get(Path(cmd[0]).name)
        self.terminated = False
        FakePopen.instances.append(self)

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


@pytest.fixture
def fake_popen():
    FakePopen.instances = []
    FakePopen.exit_codes = {}
    return FakePopen
