"""L402 challenge parsing, proof-of-payment formatting and the macaroon cache.

The cache only saves a 402 round-trip: losing an entry means the caller asks
for a fresh quote, never a failed payment.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from albom_mcp.constants import (
    L402_CACHE_MAX_ENTRIES,
    L402_CACHE_PURGE_INTERVAL_SECS,
    L402_CACHE_TTL_SECS,
)
from albom_mcp.errors import AlbomRuntimeError

logger = logging.getLogger(__name__)

_L402_SCHEME = re.compile(r"^L402\s+", re.IGNORECASE)


@dataclass(frozen=True)
class L402Challenge:
    macaroon: str
    invoice: str
    payment_hash: str
    amount_sats: int | float


@dataclass(frozen=True)
class L402Credentials:
    """Proof of payment for an L402-authorized retry."""

    macaroon: str
    preimage: str


@dataclass(frozen=True)
class L402CacheEntry:
    macaroon: str
    invoice: str
    payment_hash: str
    amount_sats: int | float
    expires_at: float  # time.monotonic() deadline


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------


def _extract_param(params: str, name: str) -> str | None:
    """Read ``name="value"`` or ``name=value`` from an auth-param list."""
    quoted = re.search(rf'{name}="([^"]*)"', params, re.IGNORECASE)
    if quoted and quoted.group(1):
        return quoted.group(1)
    unquoted = re.search(rf"{name}=([^,\s]+)", params, re.IGNORECASE)
    return unquoted.group(1) if unquoted else None


def _l402_params(www_authenticate: str | None) -> str | None:
    if not www_authenticate:
        return None
    match = _L402_SCHEME.match(www_authenticate)
    if match is None:
        return None
    return www_authenticate[match.end():]


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    for key, candidate in headers.items():
        if key.lower() == name:
            return candidate
    return None


def extract_macaroon(www_authenticate: str | None) -> str | None:
    """Macaroon from an ``L402`` challenge header, trailing ``:`` placeholder stripped."""
    params = _l402_params(www_authenticate)
    if params is None:
        return None
    macaroon = _extract_param(params, "macaroon") or _extract_param(params, "token")
    if not macaroon:
        return None
    # "macaroon:" leaves room for the preimage; drop the placeholder colon.
    if macaroon.endswith(":"):
        macaroon = macaroon[:-1]
    return macaroon or None


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_number(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def parse_l402_challenge(headers: Mapping[str, str], body: Any) -> L402Challenge | None:
    """Parse a 402 response into an ``L402Challenge``.

    Returns None when the header is missing, uses another scheme, or no
    macaroon or invoice can be resolved. That is a normal "no challenge"
    outcome, not an error.
    """
    www_authenticate = _header(headers, "www-authenticate")
    params = _l402_params(www_authenticate)
    if params is None:
        return None

    macaroon = extract_macaroon(www_authenticate)
    if not macaroon:
        return None

    body_record = body if isinstance(body, dict) else {}
    invoice = _extract_param(params, "invoice") or _as_str(body_record.get("invoice"))
    if not invoice:
        return None

    return L402Challenge(
        macaroon=macaroon,
        invoice=invoice,
        payment_hash=_as_str(body_record.get("payment_hash")) or "",
        amount_sats=_as_number(body_record.get("amount_sats")) or 0,
    )


def build_l402_authorization(macaroon: str, preimage: str) -> str:
    return f"L402 {macaroon}:{preimage}"


def payment_hash_from_preimage(preimage_hex: str) -> str:
    """SHA-256 of the raw preimage bytes, hex encoded."""
    try:
        preimage = bytes.fromhex(preimage_hex.strip())
    except ValueError as exc:
        raise AlbomRuntimeError(
            "invalid_preimage", "payment_preimage must be a hex string", 400,
        ) from exc
    return hashlib.sha256(preimage).hexdigest()


# ---------------------------------------------------------------------------
# Token cache
# ---------------------------------------------------------------------------


class L402TokenCache:
    """Bounded, TTL-expiring cache of L402 macaroons keyed by payment hash.

    - ``set()`` on a full cache purges expired entries first, then evicts
      the oldest insertion if still full.
    - ``get()`` drops and hides entries whose TTL has elapsed.
    - An optional background task purges expired entries periodically.
    """

    def __init__(
        self,
        max_entries: int = L402_CACHE_MAX_ENTRIES,
        default_ttl_secs: float = L402_CACHE_TTL_SECS,
    ) -> None:
        self._max_entries = max_entries
        self._default_ttl = default_ttl_secs
        self._entries: OrderedDict[str, L402CacheEntry] = OrderedDict()
        self._cleanup_task: asyncio.Task[None] | None = None

    def set(self, challenge: L402Challenge, ttl_secs: float | None = None) -> None:
        """Store the macaroon and invoice from a 402 challenge."""
        self._entries.pop(challenge.payment_hash, None)

        if len(self._entries) >= self._max_entries:
            self.purge_expired()

        if len(self._entries) >= self._max_entries:
            oldest, _ = self._entries.popitem(last=False)
            logger.debug("L402 cache full, evicted %s.", oldest)

        ttl = self._default_ttl if ttl_secs is None else ttl_secs
        self._entries[challenge.payment_hash] = L402CacheEntry(
            macaroon=challenge.macaroon,
            invoice=challenge.invoice,
            payment_hash=challenge.payment_hash,
            amount_sats=challenge.amount_sats,
            expires_at=time.monotonic() + ttl,
        )

    def get(self, payment_hash: str) -> L402CacheEntry | None:
        entry = self._entries.get(payment_hash)
        if entry is None:
            return None
        if time.monotonic() > entry.expires_at:
            del self._entries[payment_hash]
            return None
        return entry

    def purge_expired(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        now = time.monotonic()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def start_cleanup(self, interval_secs: float = L402_CACHE_PURGE_INTERVAL_SECS) -> None:
        """Start the periodic purge task. Requires a running event loop."""
        if self._cleanup_task is not None:
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup_loop(interval_secs)
        )

    async def _cleanup_loop(self, interval_secs: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval_secs)
                removed = self.purge_expired()
                if removed:
                    logger.info("L402 cache purge: removed %d expired token(s).", removed)
        except asyncio.CancelledError:
            pass

    def dispose(self) -> None:
        """Stop the purge task and drop every entry."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self._entries.clear()

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()
