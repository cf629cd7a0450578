"""
Configuration Test Suite

Coverage:
  - TOML loading of every section
  - environment overrides
  - missing file and invalid TOML
  - validation errors
"""

import pytest

from vaultdao.config import VaultConfig, load_config
from vaultdao.constants import DEFAULT_RPC_URL, PROPOSAL_EXPIRY_LEDGERS
from vaultdao.exceptions import ConfigurationError

from vault_fakes import CONTRACT

VAULT_TOML = f"""
[network]
rpc_url = "http://localhost:8000/rpc"
network_id = "STANDALONE"

[contract]
contract_id = "{CONTRACT}"

[ledger]
seconds_per_ledger = 6

[pipeline]
fee = 200
submit_timeout = 45.0

[feed]
page_size = 50

[policy]
threshold = 3
timelock_threshold = "100000000000000000000"
timelock_delay = 720
proposer_auto_approves = true
"""


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("VAULT_RPC_URL", "VAULT_NETWORK_PASSPHRASE", "VAULT_NETWORK_ID",
                 "VAULT_CONTRACT_ID", "VAULT_SECONDS_PER_LEDGER", "VAULT_SUBMIT_TIMEOUT",
                 "VAULT_THRESHOLD", "VAULT_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def toml_file(tmp_path):
    path = tmp_path / "vault.toml"
    path.write_text(VAULT_TOML)
    return path


class TestLoading:

    def test_all_sections(self, clean_env, toml_file):
        cfg = VaultConfig.from_file(str(toml_file))
        assert cfg.network.rpc_url == "http://localhost:8000/rpc"
        assert cfg.network.network_id == "STANDALONE"
        assert cfg.contract.contract_id == CONTRACT
        assert cfg.ledger.seconds_per_ledger == 6
        assert cfg.pipeline.fee == 200
        assert cfg.pipeline.submit_timeout == 45.0
        assert cfg.feed.page_size == 50
        assert cfg.policy.threshold == 3
        assert cfg.policy.timelock_threshold == 10 ** 20
        assert cfg.policy.proposer_auto_approves is True
        assert cfg.validate()

    def test_defaults_for_missing_keys(self, clean_env, tmp_path):
        path = tmp_path / "vault.toml"
        path.write_text("[contract]\ncontract_id = \"x\"\n")
        cfg = VaultConfig.from_file(str(path))
        assert cfg.network.rpc_url == DEFAULT_RPC_URL
        assert cfg.policy.expiry_ledgers == PROPOSAL_EXPIRY_LEDGERS

    def test_missing_file_uses_defaults(self, clean_env, tmp_path):
        clean_env.setenv("VAULT_CONTRACT_ID", CONTRACT)
        cfg = VaultConfig.from_file(str(tmp_path / "absent.toml"))
        assert cfg.network.rpc_url == DEFAULT_RPC_URL
        assert cfg.contract.contract_id == CONTRACT

    def test_invalid_toml(self, clean_env, tmp_path):
        path = tmp_path / "vault.toml"
        path.write_text("[network\nrpc_url = ")
        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            VaultConfig.from_file(str(path))

    def test_load_config_uses_env_path(self, clean_env, toml_file):
        clean_env.setenv("VAULT_CONFIG", str(toml_file))
        assert load_config().policy.threshold == 3


class TestEnvOverrides:

    def test_env_wins_over_file(self, clean_env, toml_file):
        clean_env.setenv("VAULT_RPC_URL", "http://rpc.internal")
        clean_env.setenv("VAULT_THRESHOLD", "4")
        clean_env.setenv("VAULT_SUBMIT_TIMEOUT", "12.5")
        clean_env.setenv("VAULT_SECONDS_PER_LEDGER", "7")
        cfg = VaultConfig.from_file(str(toml_file))
        assert cfg.network.rpc_url == "http://rpc.internal"
        assert cfg.policy.threshold == 4
        assert cfg.pipeline.submit_timeout == 12.5
        assert cfg.ledger.seconds_per_ledger == 7

    def test_empty_env_ignored(self, clean_env, toml_file):
        clean_env.setenv("VAULT_RPC_URL", "")
        cfg = VaultConfig.from_file(str(toml_file))
        assert cfg.network.rpc_url == "http://localhost:8000/rpc"


class TestValidation:

    def test_contract_required(self):
        with pytest.raises(ConfigurationError, match="contract_id"):
            VaultConfig().validate()

    @pytest.mark.parametrize("section,name,value", [
        ("ledger", "seconds_per_ledger", 0),
        ("policy", "threshold", 0),
        ("policy", "timelock_delay", -1),
        ("pipeline", "submit_timeout", -1.0),
        ("feed", "page_size", 0),
    ])
    def test_invalid_values(self, section, name, value):
        cfg = VaultConfig()
        cfg.contract.contract_id = CONTRACT
        setattr(getattr(cfg, section), name, value)
        with pytest.raises(ConfigurationError):
            cfg.validate()

    def test_to_dict_round_trips_sections(self, clean_env, toml_file):
        data = VaultConfig.from_file(str(toml_file)).to_dict()
        assert set(data) == {"network", "contract", "ledger", "pipeline", "feed", "policy"}
        assert data["policy"]["timelock_threshold"] == "100000000000000000000"
