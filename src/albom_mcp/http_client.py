"""Async HTTP client for ALBOM's paid upstream endpoints."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from albom_mcp.constants import BACKOFF_BASE_SECS, BACKOFF_JITTER_RATIO, UPSTREAM_ROUTE_PREFIX
from albom_mcp.errors import AlbomRuntimeError
from albom_mcp.l402 import L402Challenge, L402Credentials, build_l402_authorization, parse_l402_challenge
from albom_mcp.models import NormalizedHttpResponse, PreparedUpload

logger = logging.getLogger(__name__)


class L402Handler(Protocol):
    """Pays an L402 challenge and returns the credentials for the replay."""

    async def handle_payment_required(self, challenge: L402Challenge) -> L402Credentials: ...


@dataclass(frozen=True)
class RequestOptions:
    allow_l402_quote: bool = False
    l402_auth: L402Credentials | None = None


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def compose_endpoint_url(base_url: str, endpoint_path: str) -> str:
    if not endpoint_path.startswith("/"):
        endpoint_path = f"/{endpoint_path}"
    return f"{base_url}{UPSTREAM_ROUTE_PREFIX}{endpoint_path}"


def form_value(value: Any) -> str:
    """Stringify a multipart field value."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return json.dumps(value)


def parse_response_data(response: httpx.Response) -> Any:
    """Decode a response body by its content type."""
    content_type = response.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        text = response.text
        if not text:
            return {}
        try:
            return json.loads(text)
        except ValueError:
            return {"raw": text}

    if content_type.startswith("text/"):
        return response.text

    binary = response.content
    return {
        "mime_type": content_type or "application/octet-stream",
        "base64": base64.b64encode(binary).decode("ascii"),
        "size_bytes": len(binary),
    }


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AlbomHttpClient:
    """POSTs to ``<base>/openai/<path>`` with retries and L402 handling.

    Authorization per call, first match wins:

    1. ``RequestOptions.l402_auth``: ``Authorization: L402 <macaroon>:<preimage>``
    2. configured bearer token
    3. configured L402 handler (unauthenticated, 402 is auto-paid)
    4. ``RequestOptions.allow_l402_quote`` (unauthenticated, 402 is returned)

    Otherwise ``missing_bearer_token`` is raised before any network I/O.
    """

    def __init__(
        self,
        base_url: str,
        timeout_secs: float,
        max_retries: int,
        bearer_token: str | None = None,
        l402_handler: L402Handler | None = None,
        backoff_base: float = BACKOFF_BASE_SECS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_secs = timeout_secs
        self._max_retries = max_retries
        self._bearer_token = bearer_token
        self._l402_handler = l402_handler
        self._backoff_base = backoff_base
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_secs),
            transport=transport,
        )

    # -- public API -----------------------------------------------------------

    async def post_json(
        self,
        endpoint_path: str,
        body: dict[str, Any],
        options: RequestOptions | None = None,
    ) -> NormalizedHttpResponse:
        options = options or RequestOptions()
        headers = self._resolve_headers(options)
        headers["Content-Type"] = "application/json"
        return await self._send(endpoint_path, headers, {"content": json.dumps(body)})

    async def post_multipart(
        self,
        endpoint_path: str,
        fields: dict[str, Any],
        uploads: list[PreparedUpload],
        options: RequestOptions | None = None,
    ) -> NormalizedHttpResponse:
        options = options or RequestOptions()
        headers = self._resolve_headers(options)
        # A None filename makes httpx send a plain form field, so scalar
        # fields and uploads share one multipart body.
        parts: list[tuple[str, tuple[str | None, Any] | tuple[str, bytes, str]]] = [
            (name, (None, form_value(value)))
            for name, value in fields.items()
            if value is not None
        ]
        parts.extend(
            (upload.field_name, (upload.file_name, upload.content, upload.mime_type))
            for upload in uploads
        )
        return await self._send(endpoint_path, headers, {"files": parts})

    async def raw_post(
        self,
        endpoint_path: str,
        body: bytes | str,
        content_type: str | None = None,
        options: RequestOptions | None = None,
    ) -> NormalizedHttpResponse:
        options = options or RequestOptions()
        headers = self._resolve_headers(options)
        if content_type:
            headers["Content-Type"] = content_type
        return await self._send(endpoint_path, headers, {"content": body})

    # -- internals ------------------------------------------------------------

    def _resolve_headers(self, options: RequestOptions) -> dict[str, str]:
        headers = {"Accept": "*/*"}

        if options.l402_auth is not None:
            headers["Authorization"] = build_l402_authorization(
                options.l402_auth.macaroon, options.l402_auth.preimage,
            )
            return headers

        if self._bearer_token:
            headers["Authorization"] = f"Bearer {self._bearer_token}"
            return headers

        if self._l402_handler is not None or options.allow_l402_quote:
            return headers

        raise AlbomRuntimeError(
            "missing_bearer_token",
            "ALBOM_BEARER_TOKEN is not set. Configure it or set allow_l402_quote=true "
            "to request a payment quote.",
            401,
        )

    async def _send(
        self,
        endpoint_path: str,
        headers: dict[str, str],
        body: dict[str, Any],
    ) -> NormalizedHttpResponse:
        url = compose_endpoint_url(self._base_url, endpoint_path)
        response = await self._request_with_retries(url, headers, body)

        # Only unauthenticated calls are auto-paid; a 402 on a bearer or
        # L402-authorized call is a balance or payment-state answer.
        handler = self._l402_handler
        if response.status != 402 or handler is None or "Authorization" in headers:
            return response
        return await self._auto_pay(handler, url, headers, body, response)

    async def _auto_pay(
        self,
        handler: L402Handler,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        payment_required: NormalizedHttpResponse,
    ) -> NormalizedHttpResponse:
        challenge = parse_l402_challenge(payment_required.headers, payment_required.data)
        if challenge is None:
            logger.info("402 from %s carried no L402 challenge; returning it unpaid.", url)
            return payment_required

        try:
            credentials = await handler.handle_payment_required(challenge)
        except Exception as exc:
            logger.warning("L402 auto-pay failed for %s: %s", url, exc)
            return payment_required

        replay_headers = dict(headers)
        replay_headers["Authorization"] = build_l402_authorization(
            credentials.macaroon, credentials.preimage,
        )
        logger.info("L402 invoice paid; replaying %s.", url)
        return await self._request_with_retries(url, replay_headers, body)

    async def _request_with_retries(
        self,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
    ) -> NormalizedHttpResponse:
        max_attempts = self._max_retries + 1

        for attempt in range(max_attempts):
            last_attempt = attempt == max_attempts - 1
            try:
                response = await self._client.request(
                    "POST", url, headers=headers, timeout=self._timeout_secs, **body,
                )
            except httpx.HTTPError as exc:
                if not last_attempt:
                    delay = self._backoff(attempt)
                    logger.info(
                        "POST %s failed (%s); retry %d/%d in %.2fs.",
                        url, exc, attempt + 1, self._max_retries, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                if isinstance(exc, httpx.TimeoutException):
                    raise AlbomRuntimeError(
                        "upstream_timeout", f"HTTP request failed: {exc}", 504,
                    ) from exc
                raise AlbomRuntimeError(
                    "network_error", f"HTTP request failed: {exc}", 503,
                ) from exc

            if is_retryable_status(response.status_code) and not last_attempt:
                delay = self._backoff(attempt)
                logger.info(
                    "POST %s returned %d; retry %d/%d in %.2fs.",
                    url, response.status_code, attempt + 1, self._max_retries, delay,
                )
                await asyncio.sleep(delay)
                continue

            return NormalizedHttpResponse(
                status=response.status_code,
                headers={key.lower(): value for key, value in response.headers.items()},
                data=parse_response_data(response),
            )

        raise AlbomRuntimeError("internal_retry_error", "Retry loop exited unexpectedly", 500)

    def _backoff(self, attempt: int) -> float:
        base = self._backoff_base
        return base * 2**attempt + random.uniform(0, BACKOFF_JITTER_RATIO * base)

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> AlbomHttpClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
