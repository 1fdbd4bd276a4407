"""Deterministic tool synthesis from a normalized catalog.

``build_tool_state`` is a pure function of (CatalogState, AlbomConfig). The
resulting ``ToolState.signature`` is the only thing compared across catalog
refreshes; object identity never matters.
"""

from __future__ import annotations

from typing import Any

from mcp.types import ToolAnnotations

from albom_mcp.config import AlbomConfig
from albom_mcp.constants import (
    AUDIO_SPEECH_PATH,
    AUDIO_TRANSCRIPTIONS_PATH,
    AUDIO_TRANSLATIONS_PATH,
    CHAT_COMPLETIONS_PATH,
    DUPLICATE_JACCARD_THRESHOLD,
    EMBEDDINGS_PATH,
    IMAGE_EDITS_PATH,
    IMAGE_GENERATIONS_PATH,
    MAX_TOOL_NAME_LENGTH,
    MODERATIONS_PATH,
    RESPONSES_PATH,
    TOOL_NAME_PREFIX,
    VIDEO_GENERATIONS_PATH,
    ToolProfile,
)
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
    RawCallTool,
    SafetyModerateTool,
    TextGenerateTool,
    ToolState,
    VideoGenerateTool,
    endpoint_path_of,
)
from albom_mcp.utils import model_set_jaccard, sanitize_tool_name, sha256_hex, stable_json

# Canonical precedence: responses first, chat completions as fallback.
TEXT_ENDPOINTS = (RESPONSES_PATH, CHAT_COMPLETIONS_PATH)

READ_ONLY_ANNOTATION = ToolAnnotations(
    readOnlyHint=True,
    idempotentHint=True,
    destructiveHint=False,
    openWorldHint=False,
)

DEFAULT_ANNOTATION = ToolAnnotations(
    destructiveHint=False,
    openWorldHint=True,
)

NON_IDEMPOTENT_ANNOTATION = ToolAnnotations(
    destructiveHint=False,
    openWorldHint=True,
    idempotentHint=False,
)

CATALOG_TOOL_NAME = f"{TOOL_NAME_PREFIX}_catalog_get"
RAW_TOOL_NAME = f"{TOOL_NAME_PREFIX}_raw_call"


def is_text_path(path: str) -> bool:
    return path == RESPONSES_PATH or path.startswith("/v1/chat/")


def is_duplicate_candidate(a: EndpointDescriptor, b: EndpointDescriptor) -> bool:
    """True when *a* and *b* expose materially the same surface.

    Used only to pick a canonical endpoint; it never silently drops a tool.
    """
    same_family = a.family == b.family or (is_text_path(a.path) and is_text_path(b.path))
    return (
        a.method == b.method
        and a.content_type == b.content_type
        and same_family
        and model_set_jaccard(a.models, b.models) >= DUPLICATE_JACCARD_THRESHOLD
    )


def endpoint_by_path(catalog: CatalogState, path: str) -> EndpointDescriptor | None:
    """The POST endpoint at *path*, if the catalog has one."""
    for endpoint in catalog.endpoints:
        if endpoint.path == path and endpoint.method == "POST":
            return endpoint
    return None


def text_endpoint_candidates(catalog: CatalogState) -> list[EndpointDescriptor]:
    return [
        endpoint
        for endpoint in (endpoint_by_path(catalog, path) for path in TEXT_ENDPOINTS)
        if endpoint is not None
    ]


def choose_compact_text_endpoint(catalog: CatalogState) -> EndpointDescriptor | None:
    # Responses stays canonical whether or not chat is a duplicate candidate.
    candidates = text_endpoint_candidates(catalog)
    return candidates[0] if candidates else None


def _catalog_tool() -> CatalogGetTool:
    return CatalogGetTool(
        name=CATALOG_TOOL_NAME,
        title="Get ALBOM Catalog",
        description="Get normalized ALBOM catalog data and derived tool summary.",
        annotations=READ_ONLY_ANNOTATION,
    )


def _raw_tool() -> RawCallTool:
    return RawCallTool(
        name=RAW_TOOL_NAME,
        title="Raw ALBOM Call",
        description="Raw allowlisted endpoint caller for advanced use only.",
        annotations=DEFAULT_ANNOTATION,
    )


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def make_compact_tools(catalog: CatalogState, config: AlbomConfig) -> list[PlannedTool]:
    tools: list[PlannedTool] = [_catalog_tool()]

    text_endpoint = choose_compact_text_endpoint(catalog)
    if text_endpoint is not None:
        tools.append(TextGenerateTool(
            name=f"{TOOL_NAME_PREFIX}_text_generate",
            title="Text Generation",
            description=f"Generate text responses via {text_endpoint.path}.",
            endpoint_path=text_endpoint.path,
            annotations=DEFAULT_ANNOTATION,
        ))

    # Generate and edit stay separate even with overlapping models:
    # their request shapes differ.
    if endpoint_by_path(catalog, IMAGE_GENERATIONS_PATH) is not None:
        tools.append(ImageGenerateTool(
            name=f"{TOOL_NAME_PREFIX}_image_generate",
            title="Image Generation",
            description="Generate new images from text prompts.",
            endpoint_path=IMAGE_GENERATIONS_PATH,
            annotations=DEFAULT_ANNOTATION,
        ))

    if endpoint_by_path(catalog, IMAGE_EDITS_PATH) is not None:
        tools.append(ImageEditTool(
            name=f"{TOOL_NAME_PREFIX}_image_edit",
            title="Image Edit",
            description="Edit an input image with prompt instructions.",
            endpoint_path=IMAGE_EDITS_PATH,
            annotations=DEFAULT_ANNOTATION,
        ))

    if endpoint_by_path(catalog, AUDIO_TRANSCRIPTIONS_PATH) is not None:
        translation = endpoint_by_path(catalog, AUDIO_TRANSLATIONS_PATH)
        tools.append(AudioTranscribeTool(
            name=f"{TOOL_NAME_PREFIX}_audio_transcribe",
            title="Audio Transcribe",
            description="Transcribe audio. Set translate_to_english=true to route to translation.",
            endpoint_path=AUDIO_TRANSCRIPTIONS_PATH,
            translation_endpoint_path=translation.path if translation else None,
            annotations=DEFAULT_ANNOTATION,
        ))

    if endpoint_by_path(catalog, AUDIO_SPEECH_PATH) is not None:
        tools.append(AudioSpeechTool(
            name=f"{TOOL_NAME_PREFIX}_audio_speech",
            title="Audio Speech",
            description="Synthesize speech from text input.",
            endpoint_path=AUDIO_SPEECH_PATH,
            annotations=DEFAULT_ANNOTATION,
        ))

    if config.include_video and endpoint_by_path(catalog, VIDEO_GENERATIONS_PATH) is not None:
        tools.append(VideoGenerateTool(
            name=f"{TOOL_NAME_PREFIX}_video_generate",
            title="Video Generation",
            description="Generate videos from text prompts. This endpoint can be expensive.",
            endpoint_path=VIDEO_GENERATIONS_PATH,
            annotations=NON_IDEMPOTENT_ANNOTATION,
        ))

    if config.include_moderation and endpoint_by_path(catalog, MODERATIONS_PATH) is not None:
        tools.append(SafetyModerateTool(
            name=f"{TOOL_NAME_PREFIX}_safety_moderate",
            title="Safety Moderate",
            description="Classify text content with moderation models.",
            endpoint_path=MODERATIONS_PATH,
            annotations=READ_ONLY_ANNOTATION,
        ))

    if config.include_embeddings and endpoint_by_path(catalog, EMBEDDINGS_PATH) is not None:
        tools.append(EmbeddingCreateTool(
            name=f"{TOOL_NAME_PREFIX}_embedding_create",
            title="Embedding Create",
            description="Generate embeddings for text input.",
            endpoint_path=EMBEDDINGS_PATH,
            annotations=READ_ONLY_ANNOTATION,
        ))

    if config.allow_raw_tool:
        tools.append(_raw_tool())

    return tools


def should_include_full_endpoint(endpoint: EndpointDescriptor, config: AlbomConfig) -> bool:
    if endpoint.path == VIDEO_GENERATIONS_PATH and not config.include_video:
        return False
    if endpoint.path == MODERATIONS_PATH and not config.include_moderation:
        return False
    if endpoint.path == EMBEDDINGS_PATH and not config.include_embeddings:
        return False
    return True


def full_tool_name(api_key: str, endpoint_path: str) -> str:
    segments = [s for s in endpoint_path.split("/") if s and s != "v1"]
    return sanitize_tool_name(
        "_".join([TOOL_NAME_PREFIX, api_key, *segments]), MAX_TOOL_NAME_LENGTH,
    )


def _unique_name(name: str, method: str, used: set[str]) -> str:
    if name not in used:
        return name
    candidate = sanitize_tool_name(f"{name}_{method.lower()}", MAX_TOOL_NAME_LENGTH)
    counter = 2
    while candidate in used:
        suffix = f"_{counter}"
        candidate = name[: MAX_TOOL_NAME_LENGTH - len(suffix)] + suffix
        counter += 1
    return candidate


def make_full_tools(catalog: CatalogState, config: AlbomConfig) -> list[PlannedTool]:
    tools: list[PlannedTool] = [_catalog_tool()]
    used_names = {CATALOG_TOOL_NAME, RAW_TOOL_NAME}

    for endpoint in catalog.endpoints:
        if endpoint.method != "POST" or not should_include_full_endpoint(endpoint, config):
            continue

        name = _unique_name(full_tool_name(endpoint.api_key, endpoint.path), endpoint.method, used_names)
        used_names.add(name)
        tools.append(FullEndpointTool(
            name=name,
            title=f"{endpoint.api_name} {endpoint.path}",
            description=endpoint.description,
            endpoint_path=endpoint.path,
            content_type=endpoint.content_type,
            file_field=endpoint.file_field,
            annotations=DEFAULT_ANNOTATION,
        ))

    if config.allow_raw_tool:
        tools.append(_raw_tool())

    return tools


# ---------------------------------------------------------------------------
# Tool state
# ---------------------------------------------------------------------------


def _tool_identity(tool: PlannedTool) -> dict[str, Any]:
    return {
        "kind": tool.kind.value,
        "name": tool.name,
        "endpointPath": endpoint_path_of(tool),
        "translationEndpointPath": (
            tool.translation_endpoint_path if isinstance(tool, AudioTranscribeTool) else None
        ),
        "contentType": tool.content_type.value if isinstance(tool, FullEndpointTool) else None,
    }


def build_tool_signature(profile: ToolProfile, tools: list[PlannedTool]) -> str:
    return sha256_hex(stable_json({
        "profile": profile.value,
        "tools": [_tool_identity(tool) for tool in tools],
    }))


def build_tool_state(catalog: CatalogState, config: AlbomConfig) -> ToolState:
    if config.tool_profile is ToolProfile.COMPACT:
        tools = make_compact_tools(catalog, config)
    else:
        tools = make_full_tools(catalog, config)

    return ToolState(
        profile=config.tool_profile,
        tools=tuple(tools),
        signature=build_tool_signature(config.tool_profile, tools),
    )
