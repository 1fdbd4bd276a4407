"""ALBOM MCP configuration: plain frozen dataclass, no pydantic.

The host constructs this once (``load_config`` reads the process environment)
and every component consumes it read-only.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from albom_mcp.constants import (
    DEFAULT_BASE_URL,
    DEFAULT_CATALOG_TTL_MS,
    DEFAULT_HTTP_TIMEOUT_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_UPLOAD_BYTES,
    PaymentMode,
    ToolProfile,
)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class AlbomConfig:
    base_url: str = DEFAULT_BASE_URL
    bearer_token: str | None = None
    nwc_url: str | None = None
    payment_mode: PaymentMode = PaymentMode.L402_PASSTHROUGH
    tool_profile: ToolProfile = ToolProfile.COMPACT
    include_moderation: bool = False
    include_embeddings: bool = False
    include_video: bool = True
    allow_raw_tool: bool = False
    catalog_ttl_ms: int = DEFAULT_CATALOG_TTL_MS
    http_timeout_ms: int = DEFAULT_HTTP_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES

    @property
    def catalog_ttl_secs(self) -> float:
        return self.catalog_ttl_ms / 1000

    @property
    def http_timeout_secs(self) -> float:
        return self.http_timeout_ms / 1000


def _parse_bool(name: str, value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _parse_int(name: str, value: str | None, default: int, minimum: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from None
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def _parse_profile(value: str | None) -> ToolProfile:
    if not value:
        return ToolProfile.COMPACT
    try:
        return ToolProfile(value.strip().lower())
    except ValueError:
        raise ValueError(f"Invalid ALBOM_TOOL_PROFILE value: {value!r}") from None


def _resolve_payment_mode(
    value: str | None, bearer_token: str | None, nwc_url: str | None,
) -> PaymentMode:
    if value and value.strip():
        try:
            mode = PaymentMode(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid ALBOM_PAYMENT_MODE value: {value!r}") from None
        if mode is PaymentMode.BEARER and not bearer_token:
            raise ValueError("ALBOM_PAYMENT_MODE=bearer requires ALBOM_BEARER_TOKEN")
        if mode is PaymentMode.NWC and not nwc_url:
            raise ValueError("ALBOM_PAYMENT_MODE=nwc requires ALBOM_NWC_URL")
        return mode

    if bearer_token:
        return PaymentMode.BEARER
    if nwc_url:
        return PaymentMode.NWC
    return PaymentMode.L402_PASSTHROUGH


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def load_config(env: Mapping[str, str] | None = None) -> AlbomConfig:
    """Build an ``AlbomConfig`` from ``ALBOM_*`` environment variables.

    Raises ValueError on any malformed value.
    """
    if env is None:
        env = os.environ

    tool_profile = _parse_profile(env.get("ALBOM_TOOL_PROFILE"))
    bearer_token = _blank_to_none(env.get("ALBOM_BEARER_TOKEN"))
    nwc_url = _blank_to_none(env.get("ALBOM_NWC_URL"))
    payment_mode = _resolve_payment_mode(env.get("ALBOM_PAYMENT_MODE"), bearer_token, nwc_url)

    # Moderation and embeddings default on only for the full profile.
    full_default = tool_profile is ToolProfile.FULL
    include_moderation = _parse_bool("ALBOM_INCLUDE_MODERATION", env.get("ALBOM_INCLUDE_MODERATION"))
    include_embeddings = _parse_bool("ALBOM_INCLUDE_EMBEDDINGS", env.get("ALBOM_INCLUDE_EMBEDDINGS"))
    include_video = _parse_bool("ALBOM_INCLUDE_VIDEO", env.get("ALBOM_INCLUDE_VIDEO"))
    allow_raw_tool = _parse_bool("ALBOM_ALLOW_RAW_TOOL", env.get("ALBOM_ALLOW_RAW_TOOL"))

    return AlbomConfig(
        base_url=env.get("ALBOM_BASE_URL", DEFAULT_BASE_URL).strip().rstrip("/"),
        bearer_token=bearer_token if payment_mode is PaymentMode.BEARER else None,
        nwc_url=nwc_url,
        payment_mode=payment_mode,
        tool_profile=tool_profile,
        include_moderation=full_default if include_moderation is None else include_moderation,
        include_embeddings=full_default if include_embeddings is None else include_embeddings,
        include_video=True if include_video is None else include_video,
        allow_raw_tool=False if allow_raw_tool is None else allow_raw_tool,
        catalog_ttl_ms=_parse_int(
            "ALBOM_CATALOG_TTL_MS", env.get("ALBOM_CATALOG_TTL_MS"), DEFAULT_CATALOG_TTL_MS, 1_000,
        ),
        http_timeout_ms=_parse_int(
            "ALBOM_HTTP_TIMEOUT_MS", env.get("ALBOM_HTTP_TIMEOUT_MS"), DEFAULT_HTTP_TIMEOUT_MS, 1_000,
        ),
        max_retries=_parse_int(
            "ALBOM_MAX_RETRIES", env.get("ALBOM_MAX_RETRIES"), DEFAULT_MAX_RETRIES, 0,
        ),
        max_upload_bytes=_parse_int(
            "ALBOM_MAX_UPLOAD_BYTES", env.get("ALBOM_MAX_UPLOAD_BYTES"), DEFAULT_MAX_UPLOAD_BYTES, 1,
        ),
    )
