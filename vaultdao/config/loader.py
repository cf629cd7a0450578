"""
VaultDAO TOML Configuration Loader

Loads every section of vault.toml with environment variable overrides.

Environment variable mapping:
    [network] rpc_url             → VAULT_RPC_URL
    [network] network_passphrase  → VAULT_NETWORK_PASSPHRASE
    [network] network_id          → VAULT_NETWORK_ID
    [contract] contract_id        → VAULT_CONTRACT_ID
    [ledger] seconds_per_ledger   → VAULT_SECONDS_PER_LEDGER
    [pipeline] submit_timeout     → VAULT_SUBMIT_TIMEOUT
    [policy] threshold            → VAULT_THRESHOLD
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from ..constants import (
    DEFAULT_BASE_FEE,
    DEFAULT_NETWORK_ID,
    DEFAULT_NETWORK_PASSPHRASE,
    DEFAULT_RPC_URL,
    DEFAULT_TX_TIMEOUT_SECONDS,
    FEED_FETCH_TIMEOUT,
    FEED_MAX_PAGES,
    FEED_PAGE_SIZE,
    PROPOSAL_EXPIRY_LEDGERS,
    SECONDS_PER_LEDGER,
    SIGN_TIMEOUT,
    SIMULATE_TIMEOUT,
    SUBMIT_POLL_INTERVAL,
    SUBMIT_TIMEOUT,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------


@dataclass
class NetworkConfig:
    """[network] section."""
    rpc_url: str = DEFAULT_RPC_URL
    network_passphrase: str = DEFAULT_NETWORK_PASSPHRASE
    network_id: str = DEFAULT_NETWORK_ID

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkConfig":
        return cls(
            rpc_url=data.get("rpc_url", DEFAULT_RPC_URL),
            network_passphrase=data.get("network_passphrase", DEFAULT_NETWORK_PASSPHRASE),
            network_id=data.get("network_id", DEFAULT_NETWORK_ID),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("VAULT_RPC_URL"):
            self.rpc_url = v
        if v := os.environ.get("VAULT_NETWORK_PASSPHRASE"):
            self.network_passphrase = v
        if v := os.environ.get("VAULT_NETWORK_ID"):
            self.network_id = v


@dataclass
class ContractConfig:
    """[contract] section."""
    contract_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContractConfig":
        return cls(contract_id=data.get("contract_id", ""))

    def apply_env(self) -> None:
        if v := os.environ.get("VAULT_CONTRACT_ID"):
            self.contract_id = v


@dataclass
class LedgerConfig:
    """[ledger] section."""
    seconds_per_ledger: int = SECONDS_PER_LEDGER

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        return cls(seconds_per_ledger=data.get("seconds_per_ledger", SECONDS_PER_LEDGER))

    def apply_env(self) -> None:
        if v := os.environ.get("VAULT_SECONDS_PER_LEDGER"):
            self.seconds_per_ledger = int(v)


@dataclass
class PipelineConfig:
    """[pipeline] section. Timeouts are in seconds."""
    fee: int = DEFAULT_BASE_FEE
    tx_timeout_seconds: int = DEFAULT_TX_TIMEOUT_SECONDS
    simulate_timeout: float = SIMULATE_TIMEOUT
    sign_timeout: float = SIGN_TIMEOUT
    submit_timeout: float = SUBMIT_TIMEOUT
    poll_interval: float = SUBMIT_POLL_INTERVAL

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        return cls(
            fee=data.get("fee", DEFAULT_BASE_FEE),
            tx_timeout_seconds=data.get("tx_timeout_seconds", DEFAULT_TX_TIMEOUT_SECONDS),
            simulate_timeout=data.get("simulate_timeout", SIMULATE_TIMEOUT),
            sign_timeout=data.get("sign_timeout", SIGN_TIMEOUT),
            submit_timeout=data.get("submit_timeout", SUBMIT_TIMEOUT),
            poll_interval=data.get("poll_interval", SUBMIT_POLL_INTERVAL),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("VAULT_SUBMIT_TIMEOUT"):
            self.submit_timeout = float(v)


@dataclass
class FeedConfig:
    """[feed] section."""
    page_size: int = FEED_PAGE_SIZE
    max_pages: int = FEED_MAX_PAGES
    fetch_timeout: float = FEED_FETCH_TIMEOUT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedConfig":
        return cls(
            page_size=data.get("page_size", FEED_PAGE_SIZE),
            max_pages=data.get("max_pages", FEED_MAX_PAGES),
            fetch_timeout=data.get("fetch_timeout", FEED_FETCH_TIMEOUT),
        )


@dataclass
class PolicyConfig:
    """
    [policy] section, mirroring the vault contract configuration.

    timelock_threshold: amount (smallest units) above which a timelock applies
    timelock_delay:     ledgers between creation and earliest execution
    expiry_ledgers:     ledgers after which a pending proposal expires
    """
    threshold: int = 1
    timelock_threshold: int = 0
    timelock_delay: int = 0
    expiry_ledgers: int = PROPOSAL_EXPIRY_LEDGERS
    proposer_auto_approves: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyConfig":
        return cls(
            threshold=data.get("threshold", 1),
            timelock_threshold=int(data.get("timelock_threshold", 0)),
            timelock_delay=data.get("timelock_delay", 0),
            expiry_ledgers=data.get("expiry_ledgers", PROPOSAL_EXPIRY_LEDGERS),
            proposer_auto_approves=data.get("proposer_auto_approves", False),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("VAULT_THRESHOLD"):
            self.threshold = int(v)


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


@dataclass
class VaultConfig:
    """Complete engine configuration."""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    contract: ContractConfig = field(default_factory=ContractConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultConfig":
        return cls(
            network=NetworkConfig.from_dict(data.get("network", {})),
            contract=ContractConfig.from_dict(data.get("contract", {})),
            ledger=LedgerConfig.from_dict(data.get("ledger", {})),
            pipeline=PipelineConfig.from_dict(data.get("pipeline", {})),
            feed=FeedConfig.from_dict(data.get("feed", {})),
            policy=PolicyConfig.from_dict(data.get("policy", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "VaultConfig":
        """
        Load configuration from a TOML file.

        A missing file yields defaults with environment overrides applied.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.network.apply_env()
        self.contract.apply_env()
        self.ledger.apply_env()
        self.pipeline.apply_env()
        self.policy.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        if not self.contract.contract_id:
            raise ConfigurationError("contract_id is required")
        if not self.network.rpc_url:
            raise ConfigurationError("rpc_url is required")
        if not self.network.network_passphrase:
            raise ConfigurationError("network_passphrase is required")
        if self.ledger.seconds_per_ledger < 1:
            raise ConfigurationError("seconds_per_ledger must be >= 1")
        if self.policy.threshold < 1:
            raise ConfigurationError("threshold must be >= 1")
        if self.policy.timelock_delay < 0 or self.policy.expiry_ledgers < 0:
            raise ConfigurationError("ledger deltas must be non-negative")
        for name in ("simulate_timeout", "sign_timeout", "submit_timeout", "poll_interval"):
            if getattr(self.pipeline, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative")
        if self.feed.page_size < 1 or self.feed.max_pages < 1:
            raise ConfigurationError("feed page_size and max_pages must be >= 1")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics)."""
        return {
            "network": {
                "rpc_url": self.network.rpc_url,
                "network_passphrase": self.network.network_passphrase,
                "network_id": self.network.network_id,
            },
            "contract": {"contract_id": self.contract.contract_id},
            "ledger": {"seconds_per_ledger": self.ledger.seconds_per_ledger},
            "pipeline": {
                "fee": self.pipeline.fee,
                "tx_timeout_seconds": self.pipeline.tx_timeout_seconds,
                "simulate_timeout": self.pipeline.simulate_timeout,
                "sign_timeout": self.pipeline.sign_timeout,
                "submit_timeout": self.pipeline.submit_timeout,
                "poll_interval": self.pipeline.poll_interval,
            },
            "feed": {
                "page_size": self.feed.page_size,
                "max_pages": self.feed.max_pages,
                "fetch_timeout": self.feed.fetch_timeout,
            },
            "policy": {
                "threshold": self.policy.threshold,
                "timelock_threshold": str(self.policy.timelock_threshold),
                "timelock_delay": self.policy.timelock_delay,
                "expiry_ledgers": self.policy.expiry_ledgers,
                "proposer_auto_approves": self.policy.proposer_auto_approves,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> VaultConfig:
    """
    Load engine configuration.

    Resolution order:
        1. Explicit *path* argument
        2. VAULT_CONFIG env var
        3. ./vault.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("VAULT_CONFIG", "vault.toml")

    return VaultConfig.from_file(path)
