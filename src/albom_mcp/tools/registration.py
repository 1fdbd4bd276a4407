"""Host-facing tool registration: definitions, input schemas and call handlers.

The registry talks to any ``ToolServer``; ``albom_mcp.server`` adapts
FastMCP to it and tests use an in-memory fake.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, assert_never

from mcp.types import ToolAnnotations

from albom_mcp.constants import ContentType, PaymentMode
from albom_mcp.errors import AlbomRuntimeError
from albom_mcp.l402 import L402Challenge, L402Credentials, L402TokenCache, payment_hash_from_preimage
from albom_mcp.models import (
    AudioSpeechTool,
    AudioTranscribeTool,
    CatalogGetTool,
    EmbeddingCreateTool,
    FullEndpointTool,
    ImageEditTool,
    ImageGenerateTool,
    PlannedTool,
    RawCallTool,
    SafetyModerateTool,
    TextGenerateTool,
    VideoGenerateTool,
    endpoint_path_of,
)
from albom_mcp.results import from_runtime_error, summarize_result
from albom_mcp.tools.executor import AlbomToolExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    title: str
    description: str
    input_schema: dict[str, Any]
    annotations: ToolAnnotations | None = None


@dataclass(frozen=True)
class ToolCallOutcome:
    structured: dict[str, Any]
    text: str


ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolCallOutcome]]


class RegisteredToolHandle(Protocol):
    def remove(self) -> None: ...


class ToolServer(Protocol):
    """The slice of an MCP host the registry needs."""

    def register_tool(self, definition: ToolDefinition, handler: ToolHandler) -> RegisteredToolHandle: ...

    async def send_tool_list_changed(self) -> None: ...

    def is_connected(self) -> bool: ...


# ---------------------------------------------------------------------------
# Input schemas
# ---------------------------------------------------------------------------

_STRING: dict[str, Any] = {"type": "string"}
_BOOLEAN: dict[str, Any] = {"type": "boolean"}
_OBJECT: dict[str, Any] = {"type": "object", "additionalProperties": True}
_TEXT_INPUT: dict[str, Any] = {
    "anyOf": [{"type": "string"}, {"type": "array", "items": {}}],
    "description": "Text or structured input",
}
_TEMPERATURE: dict[str, Any] = {"type": "number", "minimum": 0, "maximum": 2}
_QUOTE = {
    "allow_l402_quote": {
        **_BOOLEAN,
        "description": "Send without credentials and return the L402 invoice instead of failing.",
    },
}
_PREIMAGE_DESCRIPTION = (
    "L402 payment preimage (hex). Omit on first call to receive invoice. "
    "After paying, retry with preimage."
)


def _file_properties(prefix: str = "") -> dict[str, Any]:
    return {
        f"{prefix}file_path": _STRING,
        f"{prefix}file_base64": _STRING,
        f"{prefix}file_name": _STRING,
        f"{prefix}mime_type": _STRING,
    }


def _object(properties: dict[str, Any], required: tuple[str, ...] = ()) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = list(required)
    return schema


def _base_input_schema(tool: PlannedTool) -> dict[str, Any]:
    match tool:
        case CatalogGetTool():
            return _object({
                "refresh": {**_BOOLEAN, "description": "If true, force a fresh catalog pull before returning"},
            })
        case TextGenerateTool():
            return _object({
                "model": {**_STRING, "description": "Model name"},
                "input": _TEXT_INPUT,
                "instructions": _STRING,
                "max_output_tokens": {"type": "integer", "exclusiveMinimum": 0},
                "temperature": _TEMPERATURE,
                "extra": _OBJECT,
                **_QUOTE,
            }, ("model", "input"))
        case ImageGenerateTool():
            return _object({
                "model": _STRING,
                "prompt": _STRING,
                "size": _STRING,
                "quality": _STRING,
                "style": _STRING,
                **_QUOTE,
            }, ("model", "prompt"))
        case ImageEditTool():
            return _object({
                "model": _STRING,
                "prompt": _STRING,
                **_file_properties("image_"),
                **_file_properties("mask_"),
                "size": _STRING,
                **_QUOTE,
            }, ("model", "prompt"))
        case AudioTranscribeTool():
            return _object({
                "model": _STRING,
                **_file_properties("audio_"),
                "translate_to_english": _BOOLEAN,
                "prompt": _STRING,
                "language": _STRING,
                "response_format": _STRING,
                "temperature": _TEMPERATURE,
                **_QUOTE,
            })
        case AudioSpeechTool():
            return _object({
                "model": _STRING,
                "voice": _STRING,
                "input": _STRING,
                "format": _STRING,
                "speed": {"type": "number", "exclusiveMinimum": 0},
                **_QUOTE,
            }, ("model", "voice", "input"))
        case VideoGenerateTool():
            return _object({
                "model": _STRING,
                "prompt": _STRING,
                "duration": {"type": "integer", "exclusiveMinimum": 0},
                "size": _STRING,
                **_QUOTE,
            }, ("model", "prompt"))
        case SafetyModerateTool() | EmbeddingCreateTool():
            return _object({"model": _STRING, "input": _TEXT_INPUT, **_QUOTE}, ("input",))
        case FullEndpointTool():
            if tool.content_type is ContentType.JSON:
                return _object({"model": _STRING, "body": _OBJECT, **_QUOTE})
            return _object({
                "model": _STRING,
                "fields": _OBJECT,
                **_file_properties(),
                "file_field": _STRING,
                **_QUOTE,
            })
        case RawCallTool():
            return _object({
                "endpoint": {**_STRING, "description": "Catalog endpoint path, e.g. /v1/responses"},
                "content_type": {"type": "string", "enum": [c.value for c in ContentType]},
                "model": _STRING,
                "body": _OBJECT,
                "fields": _OBJECT,
                **_file_properties(),
                "file_field": _STRING,
                **_QUOTE,
            }, ("endpoint",))
        case _:
            assert_never(tool)


def is_paid_tool(tool: PlannedTool) -> bool:
    return not isinstance(tool, CatalogGetTool)


def tool_input_schema(tool: PlannedTool, l402_passthrough: bool) -> dict[str, Any]:
    """JSON Schema for *tool*'s arguments; pass-through mode adds ``payment_preimage``."""
    schema = _base_input_schema(tool)
    if l402_passthrough and is_paid_tool(tool):
        schema["properties"]["payment_preimage"] = {**_STRING, "description": _PREIMAGE_DESCRIPTION}
    return schema


def _l402_description(description: str) -> str:
    return (
        f"{description} Requires L402 payment: first call returns invoice, "
        "pay it, retry with payment_preimage."
    )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _outcome(result: dict[str, Any]) -> ToolCallOutcome:
    return ToolCallOutcome(structured=result, text=summarize_result(result))


def _unknown_payment(endpoint: str | None) -> ToolCallOutcome:
    return ToolCallOutcome(
        structured={
            "ok": False,
            "status": 400,
            "endpoint": endpoint or "internal",
            "error": {
                "code": "unknown_payment",
                "message": (
                    "No cached L402 token for this preimage. Make a call without "
                    "payment_preimage first to get an invoice."
                ),
            },
        },
        text="Unknown payment: call without payment_preimage first to get an invoice.",
    )


def _cache_challenge(result: dict[str, Any], token_cache: L402TokenCache) -> None:
    error = result.get("error") or {}
    macaroon = error.get("macaroon")
    payment_hash = error.get("payment_hash")
    invoice = error.get("invoice")
    if not (isinstance(macaroon, str) and macaroon):
        return
    if not (isinstance(payment_hash, str) and payment_hash and isinstance(invoice, str) and invoice):
        return

    amount = error.get("amount_sats")
    token_cache.set(L402Challenge(
        macaroon=macaroon,
        invoice=invoice,
        payment_hash=payment_hash,
        amount_sats=amount if isinstance(amount, (int, float)) and not isinstance(amount, bool) else 0,
    ))
    logger.debug("Cached L402 macaroon for payment hash %s.", payment_hash[:12])


def build_tool_handler(
    tool: PlannedTool,
    executor: AlbomToolExecutor,
    payment_mode: PaymentMode,
    token_cache: L402TokenCache | None = None,
) -> ToolHandler:
    passthrough = payment_mode is PaymentMode.L402_PASSTHROUGH and is_paid_tool(tool)

    async def handle(arguments: dict[str, Any]) -> ToolCallOutcome:
        args = dict(arguments or {})
        l402_auth: L402Credentials | None = None

        if passthrough:
            preimage = args.pop("payment_preimage", None)
            if isinstance(preimage, str) and preimage:
                try:
                    payment_hash = payment_hash_from_preimage(preimage)
                except AlbomRuntimeError as exc:
                    return _outcome(from_runtime_error(endpoint_path_of(tool) or "internal", exc))
                cached = token_cache.get(payment_hash) if token_cache is not None else None
                if cached is None:
                    return _unknown_payment(endpoint_path_of(tool))
                l402_auth = L402Credentials(macaroon=cached.macaroon, preimage=preimage)
            else:
                args["allow_l402_quote"] = True

        result = await executor.execute(tool, args, l402_auth)

        if not result["ok"] and result["status"] == 402 and token_cache is not None:
            _cache_challenge(result, token_cache)

        return _outcome(result)

    return handle


def register_planned_tool(
    server: ToolServer,
    tool: PlannedTool,
    executor: AlbomToolExecutor,
    payment_mode: PaymentMode,
    token_cache: L402TokenCache | None = None,
) -> RegisteredToolHandle:
    passthrough = payment_mode is PaymentMode.L402_PASSTHROUGH
    description = tool.description
    if passthrough and is_paid_tool(tool):
        description = _l402_description(description)

    definition = ToolDefinition(
        name=tool.name,
        title=tool.title,
        description=description,
        input_schema=tool_input_schema(tool, passthrough),
        annotations=tool.annotations,
    )
    return server.register_tool(
        definition, build_tool_handler(tool, executor, payment_mode, token_cache),
    )
