import os
import subprocess
import sys
import time

import psutil
import pytest

from rox_localnet import supervisor as supervisor_module
from rox_localnet.errors import BootstrapError, ProcessExitedEarly, ProcessSpawnFailed
from rox_localnet.preflight import FAUCET_TOOL, VALIDATOR_TOOL
from rox_localnet.supervisor import (
    FAUCET,
    ROLES,
    VALIDATOR,
    ProcessHandle,
    ProcessRegistry,
    Supervisor,
    faucet_command,
    is_running,
    validator_command,
)


@pytest.fixture
def tools(tmp_path):
    return {FAUCET_TOOL: tmp_path / "bin" / FAUCET_TOOL, VALIDATOR_TOOL: tmp_path / "bin" / VALIDATOR_TOOL}


@pytest.fixture
def make_supervisor(make_config, tools, fake_popen):
    def _make(cfg=None, **kwargs):
        kwargs.setdefault("popen", fake_popen)
        kwargs.setdefault("sleep", lambda _: None)
        return Supervisor(cfg or make_config(), tools, env={"PATH": "/usr/bin"}, **kwargs)

    return _make


@pytest.fixture
def sleeper():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield proc
    if proc.poll() is None:
        proc.kill()
        proc.wait()


def test_registry_round_trip(tmp_path):
    registry = ProcessRegistry(tmp_path / "run")
    handle = ProcessHandle(
        role=FAUCET,
        pid=1234,
        log_path=tmp_path / "faucet.log",
        cmdline=("solana-faucet", "--port", "9900"),
        create_time=1700000000.5,
    )

    path = registry.record(handle)

    assert path == tmp_path / "run" / "faucet.json"
    assert registry.load(FAUCET) == handle
    registry.forget(FAUCET)
    assert registry.load(FAUCET) is None
    registry.forget(FAUCET)


def test_registry_ignores_corrupt_records(tmp_path, caplog):
    registry = ProcessRegistry(tmp_path)
    registry.path_for(VALIDATOR).write_text("{not json")
    caplog.set_level("WARNING")

    assert registry.load(VALIDATOR) is None
    assert "unreadable process record" in caplog.text


def test_commands(make_config):
    cfg = make_config(PUBLIC_IP="192.168.1.20")

    faucet = faucet_command(cfg, "/bin/solana-faucet")
    validator = validator_command(cfg, "/bin/solana-validator")

    assert faucet == [
        "/bin/solana-faucet",
        "--keypair", str(cfg.faucet_keypair),
        "--host", "127.0.0.1",
        "--port", "9900",
        "--url", "http://127.0.0.1:8899",
    ]
    assert validator[validator.index("--identity") + 1] == str(cfg.identity_keypair)
    assert validator[validator.index("--gossip-host") + 1] == "192.168.1.20"
    assert validator[validator.index("--public-rpc-address") + 1] == "192.168.1.20:8899"
    assert validator[validator.index("--rpc-faucet-address") + 1] == "127.0.0.1:9900"
    assert validator[validator.index("--limit-ledger-size") + 1] == "5000000"
    assert validator[-2:] == ["--log", str(cfg.validator_log)]
    assert "--gossip-host" not in validator_command(make_config(), "v")


def test_start_faucet_records_handle(make_supervisor, fake_popen):
    supervisor = make_supervisor()

    proc = supervisor.start_faucet()

    (spawned,) = fake_popen.instances
    assert spawned.kwargs["start_new_session"] is True
    assert spawned.kwargs["stderr"] is subprocess.STDOUT
    assert spawned.kwargs["env"] == {"PATH": "/usr/bin"}
    assert supervisor.cfg.faucet_log.exists()
    assert supervisor.registry.load(FAUCET).pid == proc.handle.pid


def test_start_validator_sets_rust_log_and_clears_stray_logs(make_supervisor, fake_popen, monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "solana-validator-old.log").write_text("stale")
    supervisor = make_supervisor()

    supervisor.start_validator()

    (spawned,) = fake_popen.instances
    assert spawned.kwargs["env"]["RUST_LOG"] == "warn"
    assert not (tmp_path / "solana-validator-old.log").exists()


def test_immediate_exit_raises_and_forgets_record(make_supervisor, fake_popen):
    fake_popen.exit_codes[FAUCET_TOOL] = 1
    supervisor = make_supervisor()

    with pytest.raises(ProcessExitedEarly) as excinfo:
        supervisor.start_faucet()

    assert excinfo.value.role == FAUCET
    assert excinfo.value.returncode == 1
    assert excinfo.value.log_path == supervisor.cfg.faucet_log
    assert supervisor.registry.load(FAUCET) is None


def test_spawn_os_error_becomes_bootstrap_error(make_supervisor):
    def popen(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    supervisor = make_supervisor(popen=popen)

    with pytest.raises(ProcessSpawnFailed) as excinfo:
        supervisor.start_faucet()

    assert isinstance(excinfo.value, BootstrapError)
    assert excinfo.value.exit_code == 1
    assert excinfo.value.role == FAUCET
    assert excinfo.value.program.endswith(FAUCET_TOOL)
    assert supervisor.registry.load(FAUCET) is None


def test_terminate_stale_stops_validator_before_faucet(make_supervisor, monkeypatch):
    supervisor = make_supervisor()
    for role in ROLES:
        supervisor.registry.record(
            ProcessHandle(role=role, pid=4242, log_path=supervisor.cfg.faucet_log, cmdline=(role,))
        )
    order = []
    monkeypatch.setattr(supervisor_module, "terminate", lambda handle, timeout: order.append(handle.role) or True)

    assert supervisor.terminate_stale() == [VALIDATOR, FAUCET]
    assert order == [VALIDATOR, FAUCET]
    assert all(supervisor.registry.load(role) is None for role in ROLES)


def test_terminate_stale_stops_recorded_process(make_supervisor, sleeper):
    supervisor = make_supervisor(stop_timeout=5.0)
    handle = ProcessHandle(
        role=VALIDATOR,
        pid=sleeper.pid,
        log_path=supervisor.cfg.validator_log,
        cmdline=(sys.executable, "-c", "sleep"),
        create_time=psutil.Process(sleeper.pid).create_time(),
    )
    supervisor.registry.record(handle)
    assert is_running(handle)

    stopped = supervisor.terminate_stale()

    assert stopped == [VALIDATOR]
    deadline = time.monotonic() + 5
    while sleeper.poll() is None and time.monotonic() < deadline:
        time.sleep(0.05)
    assert sleeper.poll() is not None
    assert supervisor.registry.load(VALIDATOR) is None


def test_terminate_stale_leaves_reused_pid_alone(make_supervisor):
    supervisor = make_supervisor()
    me = psutil.Process(os.getpid())
    supervisor.registry.record(
        ProcessHandle(
            role=FAUCET,
            pid=me.pid,
            log_path=supervisor.cfg.faucet_log,
            cmdline=("solana-faucet",),
            create_time=me.create_time() - 3600,
        )
    )

    assert supervisor.terminate_stale() == []
    assert me.is_running()
    assert supervisor.registry.load(FAUCET) is None


def test_terminate_stale_without_records(make_supervisor, caplog):
    caplog.set_level("INFO")

    assert make_supervisor().terminate_stale() == []
    assert "No previous faucet/validator instances running" in caplog.text


def test_stop_terminates_and_forgets(make_supervisor):
    supervisor = make_supervisor()
    proc = supervisor.start_faucet()

    supervisor.stop(proc)

    assert proc.popen.terminated
    assert supervisor.registry.load(FAUCET) is None
