"""Solana JSON-RPC client (read-only) over httpx."""

import logging
from typing import Any

import httpx

from config.settings import settings
from src.cl_common.errors import ChainRpcError

logger = logging.getLogger(__name__)


class SolanaRpcClient:
    """Implements TransactionFetcher for the payment verifier.

    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        rpc_url: str | None = None,
        timeout_seconds: float | None = None,
        commitment: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = rpc_url or settings.SOLANA_RPC_URL
        self._timeout = timeout_seconds or settings.SOLANA_RPC_TIMEOUT_SECONDS
        self._commitment = commitment or settings.SOLANA_COMMITMENT
        self._transport = transport

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """The transaction with metadata, or None if not yet visible."""
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getTransaction",
            "params": [
                signature,
                {
                    "encoding": "json",
                    "commitment": self._commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(self._url, json=payload)
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as exc:
            logger.warning("getTransaction failed: sig=%s err=%s", signature, exc)
            raise ChainRpcError(str(exc)) from exc
        except ValueError as exc:
            raise ChainRpcError("invalid JSON from RPC node") from exc

        if body.get("error"):
            error = body["error"]
            logger.warning("getTransaction RPC error: sig=%s err=%s", signature, error)
            raise ChainRpcError(str(error.get("message", error)))
        return body.get("result")
