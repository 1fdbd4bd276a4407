"""Executes planned tools against the upstream and returns result envelopes.

``execute`` never raises. Argument errors, upload problems, payment and
transport failures all come back as ``{"ok": False, ...}`` envelopes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, assert_never

from albom_mcp.config import AlbomConfig
from albom_mcp.constants import CATALOG_PATH, ContentType
from albom_mcp.dedup import endpoint_by_path
from albom_mcp.errors import AlbomRuntimeError
from albom_mcp.http_client import AlbomHttpClient, RequestOptions
from albom_mcp.l402 import L402Credentials
from albom_mcp.models import (
    AudioSpeechTool,
    AudioTranscribeTool,
    CatalogGetTool,
    CatalogState,
    EmbeddingCreateTool,
    EndpointDescriptor,
    FullEndpointTool,
    ImageEditTool,
    ImageGenerateTool,
    PlannedTool,
    PreparedUpload,
    RawCallTool,
    SafetyModerateTool,
    TextGenerateTool,
    ToolState,
    VideoGenerateTool,
    endpoint_path_of,
)
from albom_mcp.results import from_http_response, from_runtime_error, resolve_price_sats
from albom_mcp.uploads import ReadFile, prepare_upload

logger = logging.getLogger(__name__)

Args = dict[str, Any]


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_bool(value: Any, fallback: bool = False) -> bool:
    return value if isinstance(value, bool) else fallback


def _as_dict(value: Any) -> Args:
    return dict(value) if isinstance(value, dict) else {}


def _maybe_add(target: Args, key: str, value: Any) -> None:
    if value is not None:
        target[key] = value


def _require_str(args: Args, key: str) -> str:
    value = _as_str(args.get(key))
    if value is None:
        raise AlbomRuntimeError("invalid_input", f"Missing required field: {key}", 400)
    return value


def _require_present(args: Args, key: str) -> Any:
    if args.get(key) is None:
        raise AlbomRuntimeError("invalid_input", f"Missing required field: {key}", 400)
    return args[key]


class AlbomToolExecutor:
    """Dispatches a ``PlannedTool`` call by kind.

    One executor is built per synced ``ToolState``; the catalog snapshot is
    read once per call so a concurrent refresh never changes a call midway.
    """

    def __init__(
        self,
        config: AlbomConfig,
        http_client: AlbomHttpClient,
        get_catalog_state: Callable[[], CatalogState],
        refresh_catalog: Callable[[], Awaitable[CatalogState]],
        get_tool_state: Callable[[], ToolState | None],
        read_file: ReadFile | None = None,
    ) -> None:
        self._config = config
        self._http = http_client
        self._get_catalog_state = get_catalog_state
        self._refresh_catalog = refresh_catalog
        self._get_tool_state = get_tool_state
        self._read_file = read_file

    async def execute(
        self,
        tool: PlannedTool,
        args: Args | None = None,
        l402_auth: L402Credentials | None = None,
    ) -> dict[str, Any]:
        args = _as_dict(args)
        try:
            return await self._dispatch(tool, args, l402_auth)
        except Exception as exc:
            if not isinstance(exc, AlbomRuntimeError):
                logger.exception("Unexpected error in tool %s", tool.name)
            return from_runtime_error(endpoint_path_of(tool) or "internal", exc)

    async def _dispatch(
        self, tool: PlannedTool, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        match tool:
            case CatalogGetTool():
                return await self._catalog_get(args)
            case TextGenerateTool():
                return await self._text_generate(tool.endpoint_path, args, l402_auth)
            case ImageGenerateTool():
                return await self._image_generate(tool.endpoint_path, args, l402_auth)
            case ImageEditTool():
                return await self._image_edit(tool.endpoint_path, args, l402_auth)
            case AudioTranscribeTool():
                return await self._audio_transcribe(tool, args, l402_auth)
            case AudioSpeechTool():
                return await self._audio_speech(tool.endpoint_path, args, l402_auth)
            case VideoGenerateTool():
                return await self._video_generate(tool.endpoint_path, args, l402_auth)
            case SafetyModerateTool() | EmbeddingCreateTool():
                return await self._input_only(tool.endpoint_path, args, l402_auth)
            case FullEndpointTool():
                return await self._full_endpoint(tool, args, l402_auth)
            case RawCallTool():
                return await self._raw_call(args, l402_auth)
            case _:
                assert_never(tool)

    # -- shared plumbing -------------------------------------------------------

    def _endpoint(self, path: str) -> EndpointDescriptor:
        endpoint = endpoint_by_path(self._get_catalog_state(), path)
        if endpoint is None:
            raise AlbomRuntimeError(
                "endpoint_not_found", f"Endpoint not present in catalog: {path}", 404,
            )
        return endpoint

    def _options(self, args: Args, l402_auth: L402Credentials | None) -> RequestOptions:
        return RequestOptions(
            allow_l402_quote=_as_bool(args.get("allow_l402_quote")),
            l402_auth=l402_auth,
        )

    async def _call_json(
        self,
        endpoint: EndpointDescriptor,
        body: Args,
        model: str | None,
        options: RequestOptions,
    ) -> dict[str, Any]:
        try:
            response = await self._http.post_json(endpoint.path, body, options)
        except AlbomRuntimeError as exc:
            return from_runtime_error(endpoint.path, exc, model)
        return from_http_response(endpoint.path, response, model, resolve_price_sats(endpoint)(model))

    async def _call_multipart(
        self,
        endpoint: EndpointDescriptor,
        fields: Args,
        uploads: list[PreparedUpload],
        model: str | None,
        options: RequestOptions,
    ) -> dict[str, Any]:
        try:
            response = await self._http.post_multipart(endpoint.path, fields, uploads, options)
        except AlbomRuntimeError as exc:
            return from_runtime_error(endpoint.path, exc, model)
        return from_http_response(endpoint.path, response, model, resolve_price_sats(endpoint)(model))

    async def _upload(
        self, args: Args, prefix: str, field_name: str, label: str, required: bool,
    ) -> PreparedUpload | None:
        return await prepare_upload(
            field_name=field_name,
            label=label,
            max_bytes=self._config.max_upload_bytes,
            file_path=_as_str(args.get(f"{prefix}file_path")),
            file_base64=_as_str(args.get(f"{prefix}file_base64")),
            file_name=_as_str(args.get(f"{prefix}file_name")),
            mime_type=_as_str(args.get(f"{prefix}mime_type")),
            required=required,
            read_file=self._read_file,
        )

    # -- kinds -----------------------------------------------------------------

    async def _catalog_get(self, args: Args) -> dict[str, Any]:
        if _as_bool(args.get("refresh")):
            catalog = await self._refresh_catalog()
        else:
            catalog = self._get_catalog_state()
        tool_state = self._get_tool_state()

        data: Args = {
            "catalog": catalog.raw,
            "normalized_summary": catalog.summary.to_dict(),
            "fetched_at": catalog.fetched_at,
        }
        if tool_state is not None:
            data["tool_profile"] = tool_state.profile.value
            data["tools"] = [
                {"kind": tool.kind.value, "name": tool.name, "endpoint": endpoint_path_of(tool)}
                for tool in tool_state.tools
            ]
        return {"ok": True, "status": 200, "endpoint": CATALOG_PATH, "data": data}

    async def _text_generate(
        self, path: str, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        endpoint = self._endpoint(path)
        model = _require_str(args, "model")
        body: Args = {"model": model, "input": _require_present(args, "input")}
        _maybe_add(body, "instructions", args.get("instructions"))
        _maybe_add(body, "max_output_tokens", args.get("max_output_tokens"))
        _maybe_add(body, "temperature", args.get("temperature"))
        for key, value in _as_dict(args.get("extra")).items():
            body.setdefault(key, value)
        return await self._call_json(endpoint, body, model, self._options(args, l402_auth))

    async def _image_generate(
        self, path: str, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        endpoint = self._endpoint(path)
        model = _require_str(args, "model")
        body: Args = {"model": model, "prompt": _require_str(args, "prompt")}
        for key in ("size", "quality", "style"):
            _maybe_add(body, key, args.get(key))
        return await self._call_json(endpoint, body, model, self._options(args, l402_auth))

    async def _image_edit(
        self, path: str, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        endpoint = self._endpoint(path)
        model = _require_str(args, "model")
        fields: Args = {"model": model, "prompt": _require_str(args, "prompt")}
        _maybe_add(fields, "size", args.get("size"))

        image = await self._upload(args, "image_", "image", "image", required=True)
        mask = await self._upload(args, "mask_", "mask", "mask", required=False)
        uploads = [upload for upload in (image, mask) if upload is not None]
        return await self._call_multipart(
            endpoint, fields, uploads, model, self._options(args, l402_auth),
        )

    async def _audio_transcribe(
        self, tool: AudioTranscribeTool, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        path = tool.endpoint_path
        if _as_bool(args.get("translate_to_english")) and tool.translation_endpoint_path:
            path = tool.translation_endpoint_path
        endpoint = self._endpoint(path)
        model = _as_str(args.get("model"))

        audio = await self._upload(args, "audio_", "file", "audio", required=True)
        if audio is None:
            raise AlbomRuntimeError("missing_file", "audio requires exactly one of file_path or file_base64", 400)
        fields: Args = {}
        for key in ("model", "prompt", "temperature", "language", "response_format"):
            _maybe_add(fields, key, args.get(key))
        return await self._call_multipart(
            endpoint, fields, [audio], model, self._options(args, l402_auth),
        )

    async def _audio_speech(
        self, path: str, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        endpoint = self._endpoint(path)
        model = _require_str(args, "model")
        body: Args = {
            "model": model,
            "voice": _require_str(args, "voice"),
            "input": _require_str(args, "input"),
        }
        _maybe_add(body, "response_format", _as_str(args.get("format")))
        _maybe_add(body, "speed", args.get("speed"))
        return await self._call_json(endpoint, body, model, self._options(args, l402_auth))

    async def _video_generate(
        self, path: str, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        endpoint = self._endpoint(path)
        model = _require_str(args, "model")
        body: Args = {"model": model, "prompt": _require_str(args, "prompt")}
        _maybe_add(body, "duration", args.get("duration"))
        _maybe_add(body, "size", args.get("size"))
        return await self._call_json(endpoint, body, model, self._options(args, l402_auth))

    async def _input_only(
        self, path: str, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        """Moderation and embeddings: ``input`` plus an optional ``model``."""
        endpoint = self._endpoint(path)
        body: Args = {"input": _require_present(args, "input")}
        model = _as_str(args.get("model"))
        _maybe_add(body, "model", model)
        return await self._call_json(endpoint, body, model, self._options(args, l402_auth))

    async def _generic_call(
        self,
        endpoint: EndpointDescriptor,
        content_type: ContentType,
        args: Args,
        l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        model = _as_str(args.get("model"))
        options = self._options(args, l402_auth)

        if content_type is ContentType.JSON:
            body = _as_dict(args.get("body"))
            if model and "model" not in body:
                body["model"] = model
            return await self._call_json(endpoint, body, model, options)

        fields = _as_dict(args.get("fields"))
        if model and "model" not in fields:
            fields["model"] = model
        file_field = _as_str(args.get("file_field")) or endpoint.file_field or "file"
        upload = await self._upload(args, "", file_field, "file", required=bool(endpoint.file_field))
        return await self._call_multipart(
            endpoint, fields, [upload] if upload else [], model, options,
        )

    async def _full_endpoint(
        self, tool: FullEndpointTool, args: Args, l402_auth: L402Credentials | None,
    ) -> dict[str, Any]:
        endpoint = self._endpoint(tool.endpoint_path)
        return await self._generic_call(endpoint, tool.content_type, args, l402_auth)

    async def _raw_call(self, args: Args, l402_auth: L402Credentials | None) -> dict[str, Any]:
        path = _require_str(args, "endpoint")
        endpoint = endpoint_by_path(self._get_catalog_state(), path)
        if endpoint is None:
            raise AlbomRuntimeError(
                "endpoint_not_allowlisted",
                f"Endpoint is not present in current catalog: {path}",
                400,
            )

        raw_content_type = _as_str(args.get("content_type"))
        if raw_content_type is None:
            content_type = endpoint.content_type
        else:
            try:
                content_type = ContentType(raw_content_type)
            except ValueError:
                raise AlbomRuntimeError(
                    "invalid_input", "content_type must be json or multipart", 400,
                ) from None
        return await self._generic_call(endpoint, content_type, args, l402_auth)
