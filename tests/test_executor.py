"""End-to-end executor tests against a mocked upstream."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from albom_mcp.config import AlbomConfig
from albom_mcp.constants import ToolProfile
from albom_mcp.dedup import build_tool_state
from albom_mcp.http_client import AlbomHttpClient
from albom_mcp.l402 import L402Credentials
from albom_mcp.tools.executor import AlbomToolExecutor

from catalog_fixtures import catalog_state, catalog_with_paths

BASE = "https://albom.test"
QUOTE_HEADER = 'L402 macaroon="mac_test", invoice="lnbc_test"'


async def _read(path: str) -> bytes:
    return b"bytes-of-" + path.encode()


def _setup(
    *responses: httpx.Response,
    config: AlbomConfig | None = None,
    bearer_token: str | None = "tok",
    raw: dict | None = None,
):
    config = config or AlbomConfig()
    http = AlbomHttpClient(BASE, 5.0, 0, bearer_token=bearer_token, backoff_base=0)
    http._client.request = AsyncMock(side_effect=list(responses))
    state = catalog_state(raw)
    tool_state = build_tool_state(state, config)
    refresh = AsyncMock(return_value=state)
    executor = AlbomToolExecutor(
        config, http, lambda: state, refresh, lambda: tool_state, read_file=_read,
    )
    tools = {tool.name: tool for tool in tool_state.tools}
    return executor, http, tools, refresh


def _sent(http: AlbomHttpClient, index: int = -1):
    call = http._client.request.call_args_list[index]
    return call.args[1], call.kwargs


# ---------------------------------------------------------------------------
# Text generation
# ---------------------------------------------------------------------------


class TestTextGenerate:
    @pytest.mark.asyncio
    async def test_success_envelope(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={"output_text": "hi"}))
        result = await executor.execute(
            tools["albom_text_generate"], {"model": "gpt-4o-mini", "input": "hello"},
        )
        assert result == {
            "ok": True,
            "status": 200,
            "endpoint": "/v1/responses",
            "model": "gpt-4o-mini",
            "price_sats": 30,
            "data": {"output_text": "hi"},
        }
        url, kwargs = _sent(http)
        assert url == f"{BASE}/openai/v1/responses"
        assert json.loads(kwargs["content"]) == {"model": "gpt-4o-mini", "input": "hello"}

    @pytest.mark.asyncio
    async def test_extra_never_overrides_named_fields(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={}))
        await executor.execute(
            tools["albom_text_generate"],
            {
                "model": "gpt-4o-mini",
                "input": [{"role": "user", "content": "hi"}],
                "temperature": 0.2,
                "extra": {"model": "other", "top_p": 0.5},
            },
        )
        body = json.loads(_sent(http)[1]["content"])
        assert body["model"] == "gpt-4o-mini"
        assert body["temperature"] == 0.2
        assert body["top_p"] == 0.5
        assert body["input"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_missing_model(self) -> None:
        executor, http, tools, _ = _setup()
        result = await executor.execute(tools["albom_text_generate"], {"input": "hello"})
        assert result["ok"] is False
        assert result["status"] == 400
        assert result["endpoint"] == "/v1/responses"
        assert result["error"] == {"code": "invalid_input", "message": "Missing required field: model"}
        http._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payment_quote(self) -> None:
        executor, _, tools, _ = _setup(
            httpx.Response(
                402,
                json={"status": "payment_required", "amount_sats": 30, "invoice": "lnbc_test", "payment_hash": "ph"},
                headers={"WWW-Authenticate": QUOTE_HEADER},
            ),
            bearer_token=None,
        )
        result = await executor.execute(
            tools["albom_text_generate"],
            {"model": "gpt-4o-mini", "input": "hello", "allow_l402_quote": True},
        )
        assert result["ok"] is False
        assert result["status"] == 402
        assert result["model"] == "gpt-4o-mini"
        assert result["error"]["code"] == "payment_required"
        assert result["error"]["amount_sats"] == 30
        assert result["error"]["invoice"] == "lnbc_test"
        assert result["error"]["macaroon"] == "mac_test"

    @pytest.mark.asyncio
    async def test_missing_bearer_keeps_model(self) -> None:
        executor, _, tools, _ = _setup(bearer_token=None)
        result = await executor.execute(
            tools["albom_text_generate"], {"model": "gpt-4o-mini", "input": "hello"},
        )
        assert result["status"] == 401
        assert result["model"] == "gpt-4o-mini"
        assert result["error"]["code"] == "missing_bearer_token"

    @pytest.mark.asyncio
    async def test_l402_auth_header(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={}), bearer_token=None)
        await executor.execute(
            tools["albom_text_generate"],
            {"model": "gpt-4o-mini", "input": "hello"},
            l402_auth=L402Credentials(macaroon="mac", preimage="pre"),
        )
        assert _sent(http)[1]["headers"]["Authorization"] == "L402 mac:pre"

    @pytest.mark.asyncio
    async def test_endpoint_gone_from_catalog(self) -> None:
        executor, _, tools, _ = _setup()
        stale = catalog_state(catalog_with_paths(["/v1/chat/completions"]))
        executor._get_catalog_state = lambda: stale
        result = await executor.execute(
            tools["albom_text_generate"], {"model": "gpt-4o-mini", "input": "hello"},
        )
        assert result["status"] == 404
        assert result["error"]["code"] == "endpoint_not_found"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal(self) -> None:
        executor, _, tools, _ = _setup()

        def broken():
            raise KeyError("boom")

        executor._get_catalog_state = broken
        result = await executor.execute(
            tools["albom_text_generate"], {"model": "gpt-4o-mini", "input": "hello"},
        )
        assert result["status"] == 500
        assert result["endpoint"] == "/v1/responses"
        assert result["error"]["code"] == "internal_error"


# ---------------------------------------------------------------------------
# Media tools
# ---------------------------------------------------------------------------


class TestMediaTools:
    @pytest.mark.asyncio
    async def test_image_generate(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={"data": []}))
        result = await executor.execute(
            tools["albom_image_generate"],
            {"model": "dall-e-3", "prompt": "cat", "size": "1024x1024"},
        )
        assert result["price_sats"] == 300
        assert json.loads(_sent(http)[1]["content"]) == {
            "model": "dall-e-3", "prompt": "cat", "size": "1024x1024",
        }

    @pytest.mark.asyncio
    async def test_image_edit_with_mask(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={}))
        result = await executor.execute(
            tools["albom_image_edit"],
            {
                "model": "gpt-image-1-mini",
                "prompt": "add a hat",
                "image_file_path": "/in/cat.png",
                "mask_file_path": "/in/mask.png",
            },
        )
        assert result["ok"] is True
        url, kwargs = _sent(http)
        assert url == f"{BASE}/openai/v1/images/edits"
        assert kwargs["files"] == [
            ("model", (None, "gpt-image-1-mini")),
            ("prompt", (None, "add a hat")),
            ("image", ("cat.png", b"bytes-of-/in/cat.png", "image/png")),
            ("mask", ("mask.png", b"bytes-of-/in/mask.png", "image/png")),
        ]

    @pytest.mark.asyncio
    async def test_image_edit_requires_image(self) -> None:
        executor, http, tools, _ = _setup()
        result = await executor.execute(
            tools["albom_image_edit"], {"model": "gpt-image-1-mini", "prompt": "x"},
        )
        assert result["error"]["code"] == "missing_file"
        http._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upload_limit(self) -> None:
        executor, _, tools, _ = _setup(config=AlbomConfig(max_upload_bytes=4))
        result = await executor.execute(
            tools["albom_image_edit"],
            {"model": "gpt-image-1-mini", "prompt": "x", "image_file_path": "/in/cat.png"},
        )
        assert result["status"] == 413
        assert result["error"]["code"] == "file_too_large"
        assert result["error"]["max_bytes"] == 4

    @pytest.mark.asyncio
    async def test_audio_transcribe(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={"text": "hi"}))
        result = await executor.execute(
            tools["albom_audio_transcribe"],
            {"model": "whisper-1", "audio_file_path": "/in/talk.mp3", "language": "en"},
        )
        assert result["endpoint"] == "/v1/audio/transcriptions"
        assert result["price_sats"] == 200
        files = _sent(http)[1]["files"]
        assert ("language", (None, "en")) in files
        assert files[-1] == ("file", ("talk.mp3", b"bytes-of-/in/talk.mp3", "audio/mpeg"))

    @pytest.mark.asyncio
    async def test_audio_transcribe_requires_audio(self) -> None:
        executor, http, tools, _ = _setup()
        result = await executor.execute(tools["albom_audio_transcribe"], {"model": "whisper-1"})
        assert result["ok"] is False
        assert result["error"]["code"] == "missing_file"
        http._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_audio_translate_reroutes(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={"text": "hi"}))
        result = await executor.execute(
            tools["albom_audio_transcribe"],
            {"audio_file_path": "/in/talk.mp3", "translate_to_english": True},
        )
        assert result["endpoint"] == "/v1/audio/translations"
        assert result["price_sats"] == 200
        assert "model" not in result
        assert _sent(http)[0] == f"{BASE}/openai/v1/audio/translations"

    @pytest.mark.asyncio
    async def test_audio_speech_format(self) -> None:
        executor, http, tools, _ = _setup(
            httpx.Response(200, content=b"ID3", headers={"content-type": "audio/mpeg"}),
        )
        result = await executor.execute(
            tools["albom_audio_speech"],
            {"model": "tts-1", "voice": "alloy", "input": "hello", "format": "mp3"},
        )
        assert result["data"] == {"mime_type": "audio/mpeg", "base64": "SUQz", "size_bytes": 3}
        assert json.loads(_sent(http)[1]["content"])["response_format"] == "mp3"

    @pytest.mark.asyncio
    async def test_video_generate(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={"id": "vid"}))
        result = await executor.execute(
            tools["albom_video_generate"], {"model": "sora-2", "prompt": "waves", "duration": 4},
        )
        assert result["price_sats"] == 3000
        assert json.loads(_sent(http)[1]["content"])["duration"] == 4

    @pytest.mark.asyncio
    async def test_moderation_model_optional(self) -> None:
        executor, http, tools, _ = _setup(
            httpx.Response(200, json={"results": []}),
            config=AlbomConfig(include_moderation=True),
        )
        result = await executor.execute(tools["albom_safety_moderate"], {"input": "text"})
        assert result["ok"] is True
        assert result["price_sats"] == 21
        assert json.loads(_sent(http)[1]["content"]) == {"input": "text"}


# ---------------------------------------------------------------------------
# Catalog tool
# ---------------------------------------------------------------------------


class TestCatalogGet:
    @pytest.mark.asyncio
    async def test_snapshot(self) -> None:
        executor, http, tools, refresh = _setup()
        result = await executor.execute(tools["albom_catalog_get"], {})
        assert result["ok"] is True
        assert result["endpoint"] == "/api/catalog"
        data = result["data"]
        assert data["normalized_summary"]["endpoint_count"] == 11
        assert data["fetched_at"] == "2026-01-01T00:00:00+00:00"
        assert data["tool_profile"] == "compact"
        assert {"kind": "text_generate", "name": "albom_text_generate", "endpoint": "/v1/responses"} in data["tools"]
        assert {"kind": "catalog_get", "name": "albom_catalog_get", "endpoint": None} in data["tools"]
        refresh.assert_not_awaited()
        http._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh(self) -> None:
        executor, _, tools, refresh = _setup()
        await executor.execute(tools["albom_catalog_get"], {"refresh": True})
        refresh.assert_awaited_once()


# ---------------------------------------------------------------------------
# Full profile and raw calls
# ---------------------------------------------------------------------------


FULL = AlbomConfig(tool_profile=ToolProfile.FULL, allow_raw_tool=True)


class TestFullEndpoint:
    @pytest.mark.asyncio
    async def test_json_body_gets_model(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={}), config=FULL)
        result = await executor.execute(
            tools["albom_openai_chat_completions"],
            {"model": "gpt-4.1-mini", "body": {"messages": []}},
        )
        assert result["price_sats"] == 30
        assert json.loads(_sent(http)[1]["content"]) == {"messages": [], "model": "gpt-4.1-mini"}

    @pytest.mark.asyncio
    async def test_multipart_requires_declared_file(self) -> None:
        executor, _, tools, _ = _setup(config=FULL)
        result = await executor.execute(tools["albom_openai_images_variations"], {"fields": {}})
        assert result["error"]["code"] == "missing_file"

    @pytest.mark.asyncio
    async def test_multipart_with_file(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={}), config=FULL)
        result = await executor.execute(
            tools["albom_openai_images_variations"],
            {"fields": {"n": 2}, "file_path": "/in/a.webp"},
        )
        assert result["price_sats"] == 60
        assert _sent(http)[1]["files"] == [
            ("n", (None, "2")),
            ("image", ("a.webp", b"bytes-of-/in/a.webp", "image/webp")),
        ]


class TestRawCall:
    @pytest.mark.asyncio
    async def test_allowlisted(self) -> None:
        executor, http, tools, _ = _setup(httpx.Response(200, json={}), config=FULL)
        result = await executor.execute(
            tools["albom_raw_call"],
            {"endpoint": "/v1/embeddings", "body": {"input": "x"}, "model": "text-embedding-3-small"},
        )
        assert result["ok"] is True
        assert result["endpoint"] == "/v1/embeddings"
        assert _sent(http)[0] == f"{BASE}/openai/v1/embeddings"

    @pytest.mark.asyncio
    async def test_not_allowlisted(self) -> None:
        executor, http, tools, _ = _setup(config=FULL)
        result = await executor.execute(tools["albom_raw_call"], {"endpoint": "/admin/drop"})
        assert result["status"] == 400
        assert result["error"]["code"] == "endpoint_not_allowlisted"
        http._client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_content_type(self) -> None:
        executor, _, tools, _ = _setup(config=FULL)
        result = await executor.execute(
            tools["albom_raw_call"], {"endpoint": "/v1/embeddings", "content_type": "xml"},
        )
        assert result["error"]["code"] == "invalid_input"
