"""
VaultDAO Ledger Access

Provides:
  - operation / transaction / result types  (types.py)
  - LedgerRPC / JsonRpcLedgerClient          (rpc.py)
  - SigningAgent / HttpSigningAgent          (signing.py)
  - TransactionPipeline                      (pipeline.py)
"""

from .types import (
    ActionResult,
    ContractFunction,
    Outcome,
    PreparedTransaction,
    SignedTransaction,
    SimulationResult,
    SubmissionResult,
    TxStatus,
    UnsignedOperation,
)
from .rpc import JsonRpcLedgerClient, LedgerRPC
from .signing import HttpSigningAgent, SigningAgent
from .pipeline import TransactionPipeline

__all__ = [
    # Types
    "ActionResult",
    "ContractFunction",
    "Outcome",
    "PreparedTransaction",
    "SignedTransaction",
    "SimulationResult",
    "SubmissionResult",
    "TxStatus",
    "UnsignedOperation",
    # RPC
    "JsonRpcLedgerClient",
    "LedgerRPC",
    # Signing
    "HttpSigningAgent",
    "SigningAgent",
    # Pipeline
    "TransactionPipeline",
]
