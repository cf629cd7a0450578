"""
Ledger RPC client.

The engine needs only a narrow set of ledger operations:

    simulate(unsigned)         → SimulationResult
    submit(signed)             → SubmissionResult (admission status)
    get_transaction(hash)      → SubmissionResult (current status)
    get_account(identity)      → {"balances": [...]}
    get_events(contract, ...)  → {"events": [...], "latestLedger": n, "cursor": str}
    get_latest_ledger()        → int

`LedgerRPC` is the contract; `JsonRpcLedgerClient` speaks JSON-RPC 2.0
over HTTP with httpx.
"""

import base64
import itertools
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..constants import RPC_CONNECTION_TIMEOUT
from ..exceptions import LedgerRPCError
from ..logger import get_logger
from .types import SignedTransaction, SimulationResult, SubmissionResult, UnsignedOperation

logger = get_logger(__name__)


class LedgerRPC(ABC):
    """Operations the engine requires from the external ledger."""

    @abstractmethod
    async def simulate(self, operation: UnsignedOperation) -> SimulationResult:
        ...

    @abstractmethod
    async def submit(self, signed: SignedTransaction) -> SubmissionResult:
        ...

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> SubmissionResult:
        ...

    @abstractmethod
    async def get_account(self, identity: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_events(
        self,
        contract_id: str,
        cursor: Optional[str] = None,
        start_ledger: Optional[int] = None,
        limit: int = 100,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_latest_ledger(self) -> int:
        ...


class JsonRpcLedgerClient(LedgerRPC):
    """
    JSON-RPC 2.0 ledger client.

    Args:
        rpc_url: Endpoint URL
        client:  Optional shared httpx.AsyncClient (owned by the caller)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        rpc_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = RPC_CONNECTION_TIMEOUT,
    ):
        self.rpc_url = rpc_url
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "JsonRpcLedgerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            body["params"] = params
        try:
            response = await self._client.post(self.rpc_url, json=body, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise LedgerRPCError(f"{method} timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise LedgerRPCError(
                f"{method} returned HTTP {e.response.status_code}",
                code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise LedgerRPCError(f"{method} request failed: {e}") from e
        except ValueError as e:
            raise LedgerRPCError(f"{method} returned invalid JSON: {e}") from e

        if payload.get("error"):
            error = payload["error"]
            raise LedgerRPCError(
                f"{method}: {error.get('message', error)}",
                code=error.get("code"),
            )
        logger.debug(f"RPC {method} #{request_id} ok")
        return payload.get("result")

    @staticmethod
    def _encode(data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")

    async def simulate(self, operation: UnsignedOperation) -> SimulationResult:
        result = await self._call(
            "simulateTransaction",
            {"transaction": self._encode(operation.to_bytes())},
        )
        return SimulationResult.from_rpc(result or {})

    async def submit(self, signed: SignedTransaction) -> SubmissionResult:
        result = await self._call(
            "sendTransaction",
            {"transaction": self._encode(signed.envelope)},
        )
        return SubmissionResult.from_rpc(signed.hash, result or {})

    async def get_transaction(self, tx_hash: str) -> SubmissionResult:
        result = await self._call("getTransaction", {"hash": tx_hash})
        return SubmissionResult.from_rpc(tx_hash, result or {})

    async def get_account(self, identity: str) -> Dict[str, Any]:
        result = await self._call("getAccount", {"account": identity})
        return result or {"balances": []}

    async def get_events(
        self,
        contract_id: str,
        cursor: Optional[str] = None,
        start_ledger: Optional[int] = None,
        limit: int = 100,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "filters": [{"type": "contract", "contractIds": [contract_id]}],
            "pagination": {"limit": limit},
        }
        # The RPC rejects startLedger together with a cursor
        if cursor:
            params["pagination"]["cursor"] = cursor
        elif start_ledger is not None:
            params["startLedger"] = start_ledger
        result = await self._call("getEvents", params) or {}
        return {
            "events": result.get("events", []),
            "latestLedger": int(result.get("latestLedger", 0)),
            "cursor": result.get("cursor"),
        }

    async def get_latest_ledger(self) -> int:
        result = await self._call("getLatestLedger")
        return int((result or {}).get("sequence", 0))
