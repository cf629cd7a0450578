"""
VaultDAO Proposal Lifecycle Engine

Multi-signer treasury proposals: state machine, ledger-height timelocks,
the build → simulate → sign → submit pipeline, activity feed and exports.

Core imports are lazily loaded. For direct module access, import from
submodules:

    from vaultdao.governance.store import VaultStore, Approve, Execute
    from vaultdao.ledger import TransactionPipeline, JsonRpcLedgerClient
    from vaultdao.config import load_config
"""

__version__ = "0.4.0"


def __getattr__(name):
    """Lazy loading of the most used entry points."""
    if name in ("VaultStore", "Propose", "Approve", "Reject", "Execute"):
        from .governance import store
        return getattr(store, name)
    if name == "TransactionPipeline":
        from .ledger.pipeline import TransactionPipeline
        return TransactionPipeline
    if name == "load_config":
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'vaultdao' has no attribute {name!r}")


__all__ = [
    "Approve",
    "Execute",
    "Propose",
    "Reject",
    "TransactionPipeline",
    "VaultStore",
    "load_config",
]
