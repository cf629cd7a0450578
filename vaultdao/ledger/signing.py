"""
Signing agents.

The engine never holds keys. A signing agent receives the prepared
transaction bytes and either returns a signed envelope or refuses.
"""

import base64
import binascii
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ..constants import RPC_CONNECTION_TIMEOUT
from ..exceptions import SigningRejected
from ..logger import get_logger

logger = get_logger(__name__)


class SigningAgent(ABC):
    """Key-holding agent acting for the caller."""

    @abstractmethod
    async def sign(self, tx_bytes: bytes, network_id: str) -> bytes:
        """
        Return the signed envelope.

        Raises SigningRejected if the holder declines or cannot be reached.
        """


class HttpSigningAgent(SigningAgent):
    """
    Signing agent behind an HTTP endpoint (wallet bridge, custody service).

    POST {"xdr": <base64>, "network": <id>} → {"signedXdr": <base64>}
    A 4xx response or a missing envelope is a refusal.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = RPC_CONNECTION_TIMEOUT,
    ):
        self.url = url
        self._timeout = timeout
        self._client = client

    async def sign(self, tx_bytes: bytes, network_id: str) -> bytes:
        client = self._client or httpx.AsyncClient()
        should_close = self._client is None
        try:
            response = await client.post(
                self.url,
                json={"xdr": base64.b64encode(tx_bytes).decode("ascii"), "network": network_id},
                timeout=self._timeout,
            )
        except httpx.RequestError as e:
            raise SigningRejected(f"Signing agent unreachable: {e}") from e
        finally:
            if should_close:
                await client.aclose()

        if 400 <= response.status_code < 500:
            raise SigningRejected(f"Signing declined (HTTP {response.status_code})")
        if response.status_code != 200:
            raise SigningRejected(f"Signing agent error (HTTP {response.status_code})")

        try:
            signed = response.json().get("signedXdr")
        except ValueError as e:
            raise SigningRejected(f"Signing agent returned invalid JSON: {e}") from e
        if not signed:
            raise SigningRejected("Signing agent returned no envelope")
        try:
            return base64.b64decode(signed, validate=True)
        except (binascii.Error, TypeError) as e:
            raise SigningRejected(f"Signing agent returned a malformed envelope: {e}") from e
