"""
VaultDAO Configuration

Loads vault.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    ContractConfig,
    FeedConfig,
    LedgerConfig,
    NetworkConfig,
    PipelineConfig,
    PolicyConfig,
    VaultConfig,
    load_config,
)

__all__ = [
    "ContractConfig",
    "FeedConfig",
    "LedgerConfig",
    "NetworkConfig",
    "PipelineConfig",
    "PolicyConfig",
    "VaultConfig",
    "load_config",
]
