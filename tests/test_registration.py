"""Tests for tool definitions, input schemas and the L402 pass-through handler."""

from unittest.mock import AsyncMock

import httpx
import pytest

from albom_mcp.config import AlbomConfig
from albom_mcp.constants import PaymentMode, ToolProfile
from albom_mcp.dedup import build_tool_state
from albom_mcp.http_client import AlbomHttpClient
from albom_mcp.l402 import L402TokenCache, payment_hash_from_preimage
from albom_mcp.tools.executor import AlbomToolExecutor
from albom_mcp.tools.registration import (
    build_tool_handler,
    register_planned_tool,
    tool_input_schema,
)

from catalog_fixtures import catalog_state
from fake_host import FakeToolServer

BASE = "https://albom.test"
PREIMAGE = "00" * 32
PAYMENT_HASH = payment_hash_from_preimage(PREIMAGE)


def _quote() -> httpx.Response:
    return httpx.Response(
        402,
        json={
            "status": "payment_required",
            "amount_sats": 30,
            "invoice": "lnbc_test",
            "payment_hash": PAYMENT_HASH,
        },
        headers={"WWW-Authenticate": 'L402 macaroon="mac_test", invoice="lnbc_test"'},
    )


def _setup(*responses: httpx.Response, config: AlbomConfig | None = None, bearer_token=None):
    config = config or AlbomConfig()
    http = AlbomHttpClient(BASE, 5.0, 0, bearer_token=bearer_token, backoff_base=0)
    http._client.request = AsyncMock(side_effect=list(responses))
    state = catalog_state()
    tool_state = build_tool_state(state, config)
    executor = AlbomToolExecutor(
        config, http, lambda: state, AsyncMock(return_value=state), lambda: tool_state,
    )
    tools = {tool.name: tool for tool in tool_state.tools}
    return executor, http, tools


TEXT_ARGS = {"model": "gpt-4o-mini", "input": "hello"}


# ---------------------------------------------------------------------------
# Schemas and definitions
# ---------------------------------------------------------------------------


class TestInputSchemas:
    def test_text_generate_required(self) -> None:
        _, _, tools = _setup()
        schema = tool_input_schema(tools["albom_text_generate"], l402_passthrough=False)
        assert schema["type"] == "object"
        assert schema["required"] == ["model", "input"]
        assert "allow_l402_quote" in schema["properties"]
        assert "payment_preimage" not in schema["properties"]

    def test_passthrough_adds_preimage_to_paid_tools_only(self) -> None:
        _, _, tools = _setup()
        paid = tool_input_schema(tools["albom_image_edit"], l402_passthrough=True)
        assert "payment_preimage" in paid["properties"]
        assert "image_file_path" in paid["properties"]
        assert "mask_file_base64" in paid["properties"]
        catalog = tool_input_schema(tools["albom_catalog_get"], l402_passthrough=True)
        assert "payment_preimage" not in catalog["properties"]
        assert "required" not in catalog

    def test_schemas_are_not_shared(self) -> None:
        _, _, tools = _setup()
        tool_input_schema(tools["albom_text_generate"], l402_passthrough=True)
        again = tool_input_schema(tools["albom_text_generate"], l402_passthrough=False)
        assert "payment_preimage" not in again["properties"]

    def test_full_profile_schemas(self) -> None:
        _, _, tools = _setup(config=AlbomConfig(tool_profile=ToolProfile.FULL, allow_raw_tool=True))
        json_schema = tool_input_schema(tools["albom_openai_responses"], l402_passthrough=False)
        assert set(json_schema["properties"]) == {"model", "body", "allow_l402_quote"}
        multipart = tool_input_schema(tools["albom_openai_images_edits"], l402_passthrough=False)
        assert "fields" in multipart["properties"]
        assert "file_path" in multipart["properties"]
        raw = tool_input_schema(tools["albom_raw_call"], l402_passthrough=False)
        assert raw["required"] == ["endpoint"]
        assert raw["properties"]["content_type"]["enum"] == ["json", "multipart"]


class TestRegisterPlannedTool:
    def test_passthrough_description(self) -> None:
        executor, _, tools = _setup()
        server = FakeToolServer()
        register_planned_tool(server, tools["albom_text_generate"], executor, PaymentMode.L402_PASSTHROUGH)
        register_planned_tool(server, tools["albom_catalog_get"], executor, PaymentMode.L402_PASSTHROUGH)

        text_definition, _ = server.tools["albom_text_generate"]
        assert text_definition.description.endswith(
            "Requires L402 payment: first call returns invoice, pay it, retry with payment_preimage."
        )
        assert "payment_preimage" in text_definition.input_schema["properties"]
        catalog_definition, _ = server.tools["albom_catalog_get"]
        assert "L402" not in catalog_definition.description
        assert catalog_definition.annotations.readOnlyHint is True

    def test_bearer_description_unchanged(self) -> None:
        executor, _, tools = _setup(bearer_token="tok")
        server = FakeToolServer()
        tool = tools["albom_text_generate"]
        handle = register_planned_tool(server, tool, executor, PaymentMode.BEARER)
        definition, _ = server.tools[tool.name]
        assert definition.description == tool.description
        assert definition.title == tool.title
        handle.remove()
        assert tool.name not in server.tools


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class TestHandler:
    @pytest.mark.asyncio
    async def test_outcome_text_and_ok_flag(self) -> None:
        executor, _, tools = _setup(httpx.Response(200, json={}), bearer_token="tok")
        handler = build_tool_handler(tools["albom_text_generate"], executor, PaymentMode.BEARER)
        outcome = await handler(TEXT_ARGS)
        assert outcome.structured["ok"] is True
        assert outcome.text == "OK 200 endpoint=/v1/responses model=gpt-4o-mini price_sats=30"

    @pytest.mark.asyncio
    async def test_arguments_not_mutated(self) -> None:
        executor, _, tools = _setup(_quote())
        handler = build_tool_handler(
            tools["albom_text_generate"], executor, PaymentMode.L402_PASSTHROUGH, L402TokenCache(),
        )
        arguments = dict(TEXT_ARGS)
        await handler(arguments)
        assert arguments == TEXT_ARGS


class TestL402Passthrough:
    @pytest.mark.asyncio
    async def test_quote_then_paid_retry(self) -> None:
        cache = L402TokenCache()
        executor, http, tools = _setup(_quote(), httpx.Response(200, json={"output_text": "hi"}))
        handler = build_tool_handler(
            tools["albom_text_generate"], executor, PaymentMode.L402_PASSTHROUGH, cache,
        )

        quote = await handler(TEXT_ARGS)
        assert quote.structured["ok"] is False
        assert quote.structured["status"] == 402
        assert quote.structured["error"]["invoice"] == "lnbc_test"
        assert "Authorization" not in http._client.request.call_args.kwargs["headers"]
        assert cache.get(PAYMENT_HASH).macaroon == "mac_test"

        paid = await handler({**TEXT_ARGS, "payment_preimage": PREIMAGE})
        assert paid.structured["ok"] is True
        assert paid.structured["data"] == {"output_text": "hi"}
        headers = http._client.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == f"L402 mac_test:{PREIMAGE}"
        assert http._client.request.await_count == 2

    @pytest.mark.asyncio
    async def test_unknown_payment(self) -> None:
        executor, http, tools = _setup()
        handler = build_tool_handler(
            tools["albom_text_generate"], executor, PaymentMode.L402_PASSTHROUGH, L402TokenCache(),
        )
        outcome = await handler({**TEXT_ARGS, "payment_preimage": "11" * 32})
        assert outcome.structured["ok"] is False
        assert outcome.structured["status"] == 400
        assert outcome.structured["endpoint"] == "/v1/responses"
        assert outcome.structured["error"]["code"] == "unknown_payment"
        assert outcome.text.startswith("Unknown payment")
        http._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_preimage(self) -> None:
        executor, http, tools = _setup()
        handler = build_tool_handler(
            tools["albom_text_generate"], executor, PaymentMode.L402_PASSTHROUGH, L402TokenCache(),
        )
        outcome = await handler({**TEXT_ARGS, "payment_preimage": "zz"})
        assert outcome.structured["error"]["code"] == "invalid_preimage"
        http._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_quote_without_payment_hash_not_cached(self) -> None:
        cache = L402TokenCache()
        executor, _, tools = _setup(
            httpx.Response(
                402,
                json={"status": "payment_required", "invoice": "lnbc_test"},
                headers={"WWW-Authenticate": 'L402 macaroon="mac_test", invoice="lnbc_test"'},
            ),
        )
        handler = build_tool_handler(
            tools["albom_text_generate"], executor, PaymentMode.L402_PASSTHROUGH, cache,
        )
        outcome = await handler(TEXT_ARGS)
        assert outcome.structured["status"] == 402
        assert cache.size == 0

    @pytest.mark.asyncio
    async def test_catalog_tool_is_free(self) -> None:
        executor, http, tools = _setup()
        handler = build_tool_handler(
            tools["albom_catalog_get"], executor, PaymentMode.L402_PASSTHROUGH, L402TokenCache(),
        )
        outcome = await handler({"payment_preimage": PREIMAGE})
        assert outcome.structured["ok"] is True
        assert outcome.structured["endpoint"] == "/api/catalog"
        http._client.request.assert_not_awaited()
