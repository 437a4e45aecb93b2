"""Immutable ledger client used by the Settlement Bridge.

For development: SimulatedLedgerClient generates fake receipts, so the
settlement flow can run end to end without a ledger node.
In production, HttpLedgerClient POSTs the hash to the configured anchor
endpoint and returns the receipt it answers with.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from peer_escrow.config import get_settings
from peer_escrow.domain.exceptions import LedgerAnchorError
from peer_escrow.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LedgerReceipt:
    tx_receipt: str


@runtime_checkable
class LedgerClient(Protocol):
    async def anchor(self, content_hash: str) -> LedgerReceipt:
        """Record the hash. Raises LedgerAnchorError on any failure."""
        ...

    async def aclose(self) -> None: ...


class SimulatedLedgerClient:
    """Returns a fake transaction receipt for every anchor call."""

    async def anchor(self, content_hash: str) -> LedgerReceipt:
        receipt = "0x" + uuid.uuid4().hex + uuid.uuid4().hex
        logger.info("ledger.anchor_simulated", hash=content_hash, receipt=receipt)
        return LedgerReceipt(tx_receipt=receipt)

    async def aclose(self) -> None:
        return None


class HttpLedgerClient:
    """Anchors hashes through an HTTP endpoint in front of the ledger."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._url = url or settings.ledger_url
        headers = {}
        key = api_key if api_key is not None else settings.ledger_api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        self._client = client or httpx.AsyncClient(
            headers=headers,
            timeout=timeout or settings.ledger_timeout_seconds,
        )

    async def anchor(self, content_hash: str) -> LedgerReceipt:
        try:
            response = await self._client.post(self._url, json={"hash": content_hash})
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LedgerAnchorError(f"Ledger anchor failed: {exc}") from exc

        receipt = body.get("tx_receipt") or body.get("tx_hash")
        if not receipt:
            raise LedgerAnchorError("Ledger response did not include a receipt")
        logger.info("ledger.anchored", hash=content_hash, receipt=receipt)
        return LedgerReceipt(tx_receipt=str(receipt))

    async def aclose(self) -> None:
        await self._client.aclose()


def build_ledger_client() -> LedgerClient:
    """Pick the ledger implementation from settings."""
    settings = get_settings()
    if settings.ledger_simulate:
        return SimulatedLedgerClient()
    return HttpLedgerClient()
