"""Catalog validation, normalization and refresh management.

``parse_catalog`` and ``normalize_catalog`` are pure. ``CatalogManager``
owns the only mutable catalog state: the latest normalized snapshot and the
single in-flight refresh that concurrent callers share.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from albom_mcp.constants import (
    CATALOG_PATH,
    COSMETIC_ARG_KEYS,
    DEFAULT_MODEL_KEY,
    FAMILY_PREFIXES,
    ContentType,
    PriceType,
)
from albom_mcp.errors import AlbomRuntimeError, CatalogValidationError
from albom_mcp.models import (
    CatalogApi,
    CatalogDocument,
    CatalogEndpoint,
    CatalogState,
    CatalogSummary,
    EndpointDescriptor,
)
from albom_mcp.utils import sha256_hex, stable_json

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def parse_catalog(raw: Any) -> CatalogDocument:
    """Validate a raw catalog document.

    Raises CatalogValidationError naming the offending api, endpoint or field.
    """
    if not isinstance(raw, dict):
        raise CatalogValidationError("Catalog must be a JSON object")

    apis = raw.get("apis")
    if not isinstance(apis, dict):
        raise CatalogValidationError("Catalog apis must be an object keyed by api name")

    btc_usd = raw.get("btc_usd")
    if btc_usd is not None and (isinstance(btc_usd, bool) or not isinstance(btc_usd, (int, float))):
        raise CatalogValidationError("Catalog btc_usd must be a number")
    btc_usd_updated_at = raw.get("btc_usd_updated_at")
    if btc_usd_updated_at is not None and not isinstance(btc_usd_updated_at, str):
        raise CatalogValidationError("Catalog btc_usd_updated_at must be a string")

    return CatalogDocument(
        apis={key: CatalogApi.from_dict(key, api) for key, api in apis.items()},
        raw=raw,
        btc_usd=btc_usd,
        btc_usd_updated_at=btc_usd_updated_at,
    )


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def infer_content_type(endpoint: CatalogEndpoint) -> ContentType:
    example = endpoint.example
    if example is None:
        return ContentType.JSON
    if example.content_type is not None:
        return example.content_type
    if example.fields is not None:
        return ContentType.MULTIPART
    return ContentType.JSON


def extract_argument_keys(endpoint: CatalogEndpoint, content_type: ContentType) -> tuple[str, ...]:
    """Sorted example payload keys, minus cosmetic fixture keys."""
    example = endpoint.example
    if example is None:
        return ()
    source = example.fields if content_type is ContentType.MULTIPART else example.body
    if not source:
        return ()
    return tuple(sorted(key for key in source if key not in COSMETIC_ARG_KEYS))


def classify_family(path: str) -> str:
    for prefix, family in FAMILY_PREFIXES:
        if path.startswith(prefix):
            return family
    segments = [segment for segment in path.split("/") if segment]
    return segments[0] if segments else "other"


def priced_model_names(endpoint: CatalogEndpoint) -> tuple[str, ...]:
    return tuple(sorted(name for name in endpoint.models if name != DEFAULT_MODEL_KEY))


def endpoint_signature(
    method: str,
    content_type: ContentType,
    argument_keys: tuple[str, ...],
    models: tuple[str, ...],
    family: str,
) -> str:
    return sha256_hex(stable_json({
        "method": method.upper(),
        "contentType": content_type.value,
        "argumentKeys": list(argument_keys),
        "models": list(models),
        "family": family,
    }))


def _describe(api_key: str, api: CatalogApi, endpoint: CatalogEndpoint) -> EndpointDescriptor:
    content_type = infer_content_type(endpoint)
    argument_keys = extract_argument_keys(endpoint, content_type)
    models = priced_model_names(endpoint)
    family = classify_family(endpoint.path)
    method = endpoint.method.upper()

    return EndpointDescriptor(
        api_key=api_key,
        api_name=api.name,
        path=endpoint.path,
        method=method,
        price_type=endpoint.price_type,
        description=endpoint.description or f"{method} {endpoint.path}",
        content_type=content_type,
        argument_keys=argument_keys,
        models=models,
        model_prices=dict(endpoint.models),
        family=family,
        signature=endpoint_signature(method, content_type, argument_keys, models, family),
        default_model=models[0] if models else None,
        flat_price_sats=endpoint.price_sats,
        file_field=endpoint.example.file_field if endpoint.example else None,
    )


def catalog_hash(endpoints: tuple[EndpointDescriptor, ...]) -> str:
    return sha256_hex(stable_json([
        {
            "apiKey": endpoint.api_key,
            "path": endpoint.path,
            "method": endpoint.method,
            "signature": endpoint.signature,
            "priceType": endpoint.price_type.value,
            "flatPriceSats": endpoint.flat_price_sats,
            "models": list(endpoint.models),
        }
        for endpoint in endpoints
    ]))


def normalize_catalog(document: CatalogDocument, fetched_at: str | None = None) -> CatalogState:
    """Flatten a validated document into a deterministic ``CatalogState``."""
    endpoints = tuple(sorted(
        (
            _describe(api_key, api, endpoint)
            for api_key, api in document.apis.items()
            for endpoint in api.endpoints
        ),
        key=lambda endpoint: (endpoint.path, endpoint.method),
    ))

    summary = CatalogSummary(
        api_count=len(document.apis),
        endpoint_count=len(endpoints),
        per_model_count=sum(1 for e in endpoints if e.price_type is PriceType.PER_MODEL),
        flat_count=sum(1 for e in endpoints if e.price_type is PriceType.FLAT),
        endpoint_paths=tuple(endpoint.path for endpoint in endpoints),
        model_counts_by_path={endpoint.path: len(endpoint.models) for endpoint in endpoints},
    )

    return CatalogState(
        raw=document.raw,
        endpoints=endpoints,
        fetched_at=fetched_at or datetime.now(timezone.utc).isoformat(),
        hash=catalog_hash(endpoints),
        summary=summary,
    )


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


async def fetch_catalog(
    base_url: str,
    timeout_secs: float,
    client: httpx.AsyncClient | None = None,
) -> CatalogDocument:
    """GET ``<base>/api/catalog`` and validate it."""
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_secs))

    try:
        try:
            response = await client.get(
                f"{base_url}{CATALOG_PATH}",
                headers={"Accept": "application/json"},
                timeout=timeout_secs,
            )
        except httpx.TimeoutException as exc:
            raise AlbomRuntimeError(
                "upstream_timeout", f"Catalog request timed out: {exc}", 504,
            ) from exc
        except httpx.HTTPError as exc:
            raise AlbomRuntimeError(
                "network_error", f"Catalog request failed: {exc}", 503,
            ) from exc
    finally:
        if owns_client:
            await client.aclose()

    body = response.text
    if response.status_code < 200 or response.status_code >= 300:
        raise AlbomRuntimeError(
            "catalog_fetch_failed",
            f"Catalog request failed with status {response.status_code}: {body[:250]}",
            response.status_code,
        )

    try:
        parsed = response.json() if body else {}
    except ValueError as exc:
        raise CatalogValidationError(f"Catalog response is not valid JSON: {exc}") from exc
    return parse_catalog(parsed)


class CatalogManager:
    """Holds the current ``CatalogState`` and refreshes it on demand or after TTL.

    - ``get_state()`` returns the cached snapshot while it is fresh.
    - Concurrent refreshes share one in-flight task instead of fetching twice.
    - A failed refresh leaves the previous snapshot in place.
    """

    def __init__(
        self,
        base_url: str,
        timeout_secs: float,
        ttl_secs: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_secs = timeout_secs
        self._ttl_secs = ttl_secs
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_secs))
        self._state: CatalogState | None = None
        self._last_fetch: float = 0.0
        self._inflight: asyncio.Task[CatalogState] | None = None

    async def initialize(self) -> CatalogState:
        return await self.get_state(refresh=True)

    def snapshot(self) -> CatalogState | None:
        return self._state

    async def get_state(self, refresh: bool = False) -> CatalogState:
        stale = time.monotonic() - self._last_fetch > self._ttl_secs
        if self._state is not None and not refresh and not stale:
            return self._state

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch_and_normalize())
            self._inflight.add_done_callback(self._clear_inflight)
        # Shield so one cancelled waiter does not abort the shared fetch.
        return await asyncio.shield(self._inflight)

    async def refresh(self) -> tuple[CatalogState, bool]:
        """Force a fetch. Returns ``(state, changed)`` by catalog hash."""
        previous_hash = self._state.hash if self._state else None
        state = await self.get_state(refresh=True)
        return state, previous_hash != state.hash

    def _clear_inflight(self, task: asyncio.Task[CatalogState]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Catalog refresh failed: %s", task.exception())

    async def _fetch_and_normalize(self) -> CatalogState:
        document = await fetch_catalog(self._base_url, self._timeout_secs, self._client)
        state = normalize_catalog(document)
        self._state = state
        self._last_fetch = time.monotonic()
        logger.info(
            "Catalog loaded: %d endpoint(s) across %d api(s), hash %s.",
            state.summary.endpoint_count, state.summary.api_count, state.hash[:12],
        )
        return state

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
