"""Pay-only Nostr Wallet Connect wallet.

Requires the ``nwc`` extra: ``pip install albom-mcp[nwc]`` (nostr-sdk).
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any

from albom_mcp.constants import NWC_URL_SCHEME
from albom_mcp.errors import AlbomRuntimeError
from albom_mcp.l402 import L402Challenge, L402Credentials

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayInvoiceResult:
    preimage: str
    fees_paid_msat: int = 0


def _connect(nwc_url: str) -> Any:
    try:
        from nostr_sdk import NostrWalletConnectUri, Nwc
    except ImportError:
        raise AlbomRuntimeError(
            "nwc_unavailable",
            "NWC payments require nostr-sdk. Install with: pip install albom-mcp[nwc]",
            500,
        ) from None
    return Nwc(NostrWalletConnectUri.parse(nwc_url))


def _pay_request(bolt11: str) -> Any:
    from nostr_sdk import PayInvoiceRequest

    return PayInvoiceRequest(id=None, invoice=bolt11, amount=None)


class NwcWallet:
    """Pays BOLT-11 invoices through a Nostr Wallet Connect relay.

    *client* is any object with an async ``pay_invoice(request)`` returning
    an object with ``preimage`` and ``fees_paid``; when omitted a
    ``nostr_sdk.Nwc`` is built from *nwc_url*.
    """

    def __init__(self, nwc_url: str, client: Any | None = None) -> None:
        nwc_url = nwc_url.strip()
        if not nwc_url.startswith(NWC_URL_SCHEME):
            raise AlbomRuntimeError(
                "invalid_nwc_url",
                f"ALBOM_NWC_URL must start with {NWC_URL_SCHEME}",
                400,
            )
        self._client = client if client is not None else _connect(nwc_url)
        self._owns_sdk_request = client is None

    async def pay_invoice(self, bolt11: str) -> PayInvoiceResult:
        request: Any = _pay_request(bolt11) if self._owns_sdk_request else bolt11
        try:
            response = await self._client.pay_invoice(request)
        except Exception as exc:
            raise AlbomRuntimeError(
                "payment_failed", f"NWC payment failed: {exc}", 502,
            ) from exc

        preimage = getattr(response, "preimage", None)
        if not preimage:
            raise AlbomRuntimeError(
                "payment_failed", "NWC payment failed: wallet returned no preimage", 502,
            )
        return PayInvoiceResult(
            preimage=preimage,
            fees_paid_msat=getattr(response, "fees_paid", None) or 0,
        )

    async def close(self) -> None:
        """Release the relay connection. Errors are logged, never raised."""
        shutdown = getattr(self._client, "shutdown", None) or getattr(self._client, "close", None)
        if shutdown is None:
            return
        try:
            result = shutdown()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.debug("Ignoring NWC close error: %s", exc)


class WalletL402Handler:
    """Auto-pays L402 challenges from an ``NwcWallet``."""

    def __init__(self, wallet: NwcWallet) -> None:
        self._wallet = wallet

    async def handle_payment_required(self, challenge: L402Challenge) -> L402Credentials:
        logger.info(
            "Auto-paying L402 invoice (%s sats, hash %s).",
            challenge.amount_sats, challenge.payment_hash[:12] or "-",
        )
        result = await self._wallet.pay_invoice(challenge.invoice)
        return L402Credentials(macaroon=challenge.macaroon, preimage=result.preimage)
