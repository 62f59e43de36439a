from pathlib import Path

import pytest

from rox_localnet.config import (
    BPF_LOADER2,
    BPF_UPGRADEABLE_LOADER,
    SPL_TOKEN_PID,
    describe,
    load_config_file,
    parse_program_deployments,
    resolve_config,
)
from rox_localnet.errors import ConfigError
from rox_localnet.native_token import LAMPORTS_PER_ROX


def test_defaults_match_local_cluster_layout():
    cfg = resolve_config({})

    assert cfg.ledger_dir == Path("rox-ledger")
    assert cfg.identity_keypair == Path("secrets/validator-identity.json")
    assert cfg.upgrade_authority_keypair == Path("secrets/upgrade-authority.json")
    assert cfg.rpc_url == "http://127.0.0.1:8899"
    assert cfg.faucet_address == "127.0.0.1:9900"
    assert cfg.gossip_port == 8001
    assert cfg.bootstrap_lamports == 5000 * LAMPORTS_PER_ROX
    assert cfg.bootstrap_stake_lamports == 2000 * LAMPORTS_PER_ROX
    assert cfg.faucet_lamports == 10000 * LAMPORTS_PER_ROX
    assert cfg.target_lamports_per_signature == 10_000
    assert cfg.target_signatures_per_slot == 0
    assert cfg.fee_burn_percentage == 0
    assert cfg.min_free_bytes == 10 * 1024 ** 3
    assert cfg.max_log_bytes == 200 * 1024 ** 2
    assert cfg.max_log_backups == 5
    assert (cfg.health_attempts, cfg.health_interval) == (120, 0.5)
    assert not cfg.force_rebuild and not cfg.allow_purge
    assert [p.kind for p in cfg.programs] == ["immutable", "immutable", "upgradeable"]
    assert cfg.needs_upgrade_authority


def test_environment_overrides_file_values():
    cfg = resolve_config(
        {"RPC_PORT": "9999", "WIPE_LEDGER": "yes"},
        {"rpc_port": 7000, "faucet_port": 9901, "max_log_backups": 0},
    )

    assert cfg.rpc_port == 9999
    assert cfg.faucet_port == 9901
    assert cfg.max_log_backups == 0
    assert cfg.force_rebuild is True


def test_balances_accept_rox_or_lamports():
    cfg = resolve_config({"FAUCET_ROX": "1.5", "BOOTSTRAP_LAMPORTS": "42"})

    assert cfg.faucet_lamports == 1_500_000_000
    assert cfg.bootstrap_lamports == 42


def test_public_ip_drives_gossip_and_public_rpc():
    cfg = resolve_config({"PUBLIC_IP": "10.0.0.5"})

    assert cfg.gossip_host == "10.0.0.5"
    assert cfg.public_rpc_address == "10.0.0.5:8899"
    assert resolve_config({}).public_rpc_address is None


@pytest.mark.parametrize(
    "env",
    [
        {"RPC_PORT": "0"},
        {"FAUCET_PORT": "70000"},
        {"RPC_PORT": "abc"},
        {"FEE_BURN_PERCENTAGE": "101"},
        {"TARGET_LAMPORTS_PER_SIGNATURE": "-1"},
        {"ALLOW_LEDGER_PURGE": "maybe"},
        {"LEDGER_DIR": "bad\x00path"},
        {"HEALTH_ATTEMPTS": "0"},
        {"MIN_FREE_GB": "inf"},
        {"MAX_LOG_MB": "inf"},
        {"BOOTSTRAP_ROX": "inf"},
        {"FAUCET_ROX": "nan"},
        {"HEALTH_INTERVAL": "nan"},
        {"HEALTH_INTERVAL": "-inf"},
    ],
)
def test_invalid_values_raise_config_error(env):
    with pytest.raises(ConfigError):
        resolve_config(env)


@pytest.mark.parametrize(
    "file_data",
    [
        {"min_free_gb": float("inf")},
        {"health_interval": float("nan")},
        {"rpc_prot": 8899},
        {"programs": {"program_id": SPL_TOKEN_PID}},
        {"programs": [{"program_id": SPL_TOKEN_PID, "artifact": "x.so", "loader_id": BPF_LOADER2}]},
    ],
)
def test_invalid_file_values_raise_config_error(file_data):
    with pytest.raises(ConfigError, match="invalid configuration"):
        resolve_config({}, file_data)


def test_config_error_names_the_offending_setting():
    with pytest.raises(ConfigError, match="min_free_gb"):
        resolve_config({"MIN_FREE_GB": "inf"})


def test_duplicate_program_ids_in_file_rejected():
    entry = {"program_id": SPL_TOKEN_PID, "artifact": "x.so"}
    with pytest.raises(ConfigError, match="duplicate program id"):
        resolve_config({}, {"programs": [entry, dict(entry)]})


def test_programs_table_replaces_defaults(tmp_path):
    cfg = resolve_config(
        {"PROGRAMS_DIR": str(tmp_path)},
        {
            "programs": [
                {"name": "token", "program_id": SPL_TOKEN_PID, "artifact": "token.so"},
                {
                    "program_id": "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s",
                    "kind": "upgradeable",
                    "artifact": "/abs/meta.so",
                    "upgrade_authority": "/keys/auth.json",
                },
            ]
        },
    )

    token, meta = cfg.programs
    assert token.loader == BPF_LOADER2
    assert token.artifact == tmp_path / "token.so"
    assert meta.loader == BPF_UPGRADEABLE_LOADER
    assert meta.name == "meta"
    assert meta.upgrade_authority == Path("/keys/auth.json")


def test_upgradeable_program_defaults_to_shared_authority(tmp_path):
    (program,) = parse_program_deployments(
        [{"program_id": SPL_TOKEN_PID, "kind": "upgradeable", "artifact": "x.so"}],
        tmp_path,
        tmp_path / "authority.json",
    )

    assert program.upgradeable
    assert program.upgrade_authority == tmp_path / "authority.json"


@pytest.mark.parametrize(
    "entry",
    [
        {"program_id": "not-a-key", "artifact": "x.so"},
        {"program_id": SPL_TOKEN_PID, "artifact": "x.so", "kind": "frozen"},
        {"program_id": SPL_TOKEN_PID, "artifact": "x.so", "loader": BPF_UPGRADEABLE_LOADER},
        {"program_id": SPL_TOKEN_PID, "artifact": "x.so", "upgrade_authority": "/keys/a.json"},
        {"program_id": SPL_TOKEN_PID},
    ],
)
def test_invalid_program_entries_rejected(tmp_path, entry):
    with pytest.raises(ConfigError):
        parse_program_deployments([entry], tmp_path, tmp_path / "auth.json")


def test_duplicate_program_ids_rejected(tmp_path):
    entry = {"program_id": SPL_TOKEN_PID, "artifact": "x.so"}
    with pytest.raises(ConfigError, match="duplicate"):
        parse_program_deployments([entry, dict(entry)], tmp_path, tmp_path / "auth.json")


def test_load_config_file(tmp_path):
    path = tmp_path / "localnet.toml"
    path.write_text('ledger_dir = "/data/ledger"\nrpc_port = 8900\n')

    data = load_config_file(path)
    cfg = resolve_config({}, data)

    assert cfg.ledger_dir == Path("/data/ledger")
    assert cfg.rpc_port == 8900


def test_load_config_file_errors(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config_file(tmp_path / "missing.toml")
    broken = tmp_path / "broken.toml"
    broken.write_text("rpc_port = = 1")
    with pytest.raises(ConfigError, match="invalid TOML"):
        load_config_file(broken)


def test_describe_is_compact():
    overview = describe(resolve_config({}))

    assert overview["rpc_url"] == "http://127.0.0.1:8899"
    assert overview["programs"] == ["spl_token", "spl_ata", "mpl_token_metadata"]
