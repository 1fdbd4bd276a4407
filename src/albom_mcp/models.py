"""Data model for the catalog, planned tools and upstream responses.

Pure data, no I/O. Catalog records validate themselves in ``from_dict`` and
raise ``CatalogValidationError`` with a field-level message on bad input.
Everything derived from a catalog fetch is immutable and is superseded, not
mutated, on the next refresh.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar, TypeAlias

from mcp.types import ToolAnnotations

from albom_mcp.constants import ContentType, PriceType, ToolProfile
from albom_mcp.errors import CatalogValidationError


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_str(data: dict[str, Any], key: str, where: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise CatalogValidationError(f"{where}: {key} must be a string")
    return value


def _optional_number(data: dict[str, Any], key: str, where: str) -> float | None:
    value = data.get(key)
    if value is not None and not _is_number(value):
        raise CatalogValidationError(f"{where}: {key} must be a number")
    return value


def _optional_mapping(data: dict[str, Any], key: str, where: str) -> dict[str, Any] | None:
    value = data.get(key)
    if value is not None and not isinstance(value, dict):
        raise CatalogValidationError(f"{where}: {key} must be an object")
    return value


# ---------------------------------------------------------------------------
# Raw catalog document
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelPrice:
    price_sats: float
    price_usd_cents: float | None = None

    @classmethod
    def from_dict(cls, data: Any, where: str) -> ModelPrice:
        if not isinstance(data, dict):
            raise CatalogValidationError(f"{where} must be an object")
        price = data.get("price_sats")
        if not _is_number(price):
            raise CatalogValidationError(f"{where}: price_sats must be a number")
        return cls(
            price_sats=price,
            price_usd_cents=_optional_number(data, "price_usd_cents", where),
        )


@dataclass(frozen=True)
class EndpointExample:
    content_type: ContentType | None = None
    body: dict[str, Any] | None = None
    fields: dict[str, Any] | None = None
    file_field: str | None = None
    file_name: str | None = None

    @classmethod
    def from_dict(cls, data: Any, where: str) -> EndpointExample:
        if not isinstance(data, dict):
            raise CatalogValidationError(f"{where}: example must be an object")
        raw_content_type = data.get("content_type")
        content_type = None
        if raw_content_type is not None:
            try:
                content_type = ContentType(raw_content_type)
            except ValueError:
                raise CatalogValidationError(
                    f"{where}: example.content_type must be 'json' or 'multipart'"
                ) from None
        return cls(
            content_type=content_type,
            body=_optional_mapping(data, "body", f"{where} example"),
            fields=_optional_mapping(data, "fields", f"{where} example"),
            file_field=_optional_str(data, "file_field", f"{where} example"),
            file_name=_optional_str(data, "file_name", f"{where} example"),
        )


@dataclass(frozen=True)
class CatalogEndpoint:
    """One endpoint entry exactly as the upstream declared it."""

    path: str
    method: str
    price_type: PriceType
    description: str | None = None
    example: EndpointExample | None = None
    models: dict[str, ModelPrice] = field(default_factory=dict)
    price_sats: float | None = None
    price_usd_cents: float | None = None

    @classmethod
    def from_dict(cls, data: Any, where: str) -> CatalogEndpoint:
        if not isinstance(data, dict):
            raise CatalogValidationError(f"{where} must be an object")

        path = data.get("path")
        if not isinstance(path, str):
            raise CatalogValidationError(f"{where}: path is required and must be a string")
        where = f"Catalog endpoint {path}"

        method = data.get("method")
        if not isinstance(method, str):
            raise CatalogValidationError(f"{where}: method is required and must be a string")

        try:
            price_type = PriceType(data.get("price_type"))
        except ValueError:
            raise CatalogValidationError(
                f"{where}: price_type must be 'per_model' or 'flat'"
            ) from None

        raw_models = _optional_mapping(data, "models", where) or {}
        models = {
            name: ModelPrice.from_dict(price, f"{where} model {name}")
            for name, price in raw_models.items()
        }
        example = None
        if data.get("example") is not None:
            example = EndpointExample.from_dict(data["example"], where)

        endpoint = cls(
            path=path,
            method=method,
            price_type=price_type,
            description=_optional_str(data, "description", where),
            example=example,
            models=models,
            price_sats=_optional_number(data, "price_sats", where),
            price_usd_cents=_optional_number(data, "price_usd_cents", where),
        )

        if price_type is PriceType.PER_MODEL and not models:
            raise CatalogValidationError(f"{where} is per_model but has no models")
        if price_type is PriceType.FLAT and endpoint.price_sats is None:
            raise CatalogValidationError(f"{where} is flat but has no price_sats")
        return endpoint


@dataclass(frozen=True)
class CatalogApi:
    name: str
    endpoints: tuple[CatalogEndpoint, ...]

    @classmethod
    def from_dict(cls, key: str, data: Any) -> CatalogApi:
        where = f"Catalog api {key}"
        if not isinstance(data, dict):
            raise CatalogValidationError(f"{where} must be an object")
        name = data.get("name")
        if not isinstance(name, str):
            raise CatalogValidationError(f"{where}: name is required and must be a string")
        endpoints = data.get("endpoints")
        if not isinstance(endpoints, list):
            raise CatalogValidationError(f"{where}: endpoints must be a list")
        return cls(
            name=name,
            endpoints=tuple(
                CatalogEndpoint.from_dict(item, f"{where} endpoint #{index}")
                for index, item in enumerate(endpoints)
            ),
        )


@dataclass(frozen=True)
class CatalogDocument:
    """Validated catalog document. ``raw`` keeps the upstream JSON verbatim."""

    apis: dict[str, CatalogApi]
    raw: dict[str, Any]
    btc_usd: float | None = None
    btc_usd_updated_at: str | None = None


# ---------------------------------------------------------------------------
# Normalized catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EndpointDescriptor:
    """One remote callable surface, normalized for planning and execution."""

    api_key: str
    api_name: str
    path: str
    method: str
    price_type: PriceType
    description: str
    content_type: ContentType
    argument_keys: tuple[str, ...]
    models: tuple[str, ...]
    model_prices: dict[str, ModelPrice]
    family: str
    signature: str
    default_model: str | None = None
    flat_price_sats: float | None = None
    file_field: str | None = None


@dataclass(frozen=True)
class CatalogSummary:
    api_count: int
    endpoint_count: int
    per_model_count: int
    flat_count: int
    endpoint_paths: tuple[str, ...]
    model_counts_by_path: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_count": self.api_count,
            "endpoint_count": self.endpoint_count,
            "per_model_count": self.per_model_count,
            "flat_count": self.flat_count,
            "endpoint_paths": list(self.endpoint_paths),
            "model_counts_by_path": dict(self.model_counts_by_path),
        }


@dataclass(frozen=True)
class CatalogState:
    """A normalized catalog. Interchangeable with another iff hashes match."""

    raw: dict[str, Any]
    endpoints: tuple[EndpointDescriptor, ...]
    fetched_at: str
    hash: str
    summary: CatalogSummary


# ---------------------------------------------------------------------------
# Planned tools
# ---------------------------------------------------------------------------


class ToolKind(StrEnum):
    CATALOG_GET = "catalog_get"
    TEXT_GENERATE = "text_generate"
    IMAGE_GENERATE = "image_generate"
    IMAGE_EDIT = "image_edit"
    AUDIO_TRANSCRIBE = "audio_transcribe"
    AUDIO_SPEECH = "audio_speech"
    VIDEO_GENERATE = "video_generate"
    SAFETY_MODERATE = "safety_moderate"
    EMBEDDING_CREATE = "embedding_create"
    FULL_ENDPOINT = "full_endpoint"
    RAW_CALL = "raw_call"


@dataclass(frozen=True, kw_only=True)
class _PlannedToolBase:
    kind: ClassVar[ToolKind]

    name: str
    title: str
    description: str
    annotations: ToolAnnotations | None = None


@dataclass(frozen=True, kw_only=True)
class _RoutedTool(_PlannedToolBase):
    endpoint_path: str


@dataclass(frozen=True, kw_only=True)
class CatalogGetTool(_PlannedToolBase):
    kind: ClassVar[ToolKind] = ToolKind.CATALOG_GET


@dataclass(frozen=True, kw_only=True)
class TextGenerateTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.TEXT_GENERATE


@dataclass(frozen=True, kw_only=True)
class ImageGenerateTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.IMAGE_GENERATE


@dataclass(frozen=True, kw_only=True)
class ImageEditTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.IMAGE_EDIT


@dataclass(frozen=True, kw_only=True)
class AudioTranscribeTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.AUDIO_TRANSCRIBE

    translation_endpoint_path: str | None = None


@dataclass(frozen=True, kw_only=True)
class AudioSpeechTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.AUDIO_SPEECH


@dataclass(frozen=True, kw_only=True)
class VideoGenerateTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.VIDEO_GENERATE


@dataclass(frozen=True, kw_only=True)
class SafetyModerateTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.SAFETY_MODERATE


@dataclass(frozen=True, kw_only=True)
class EmbeddingCreateTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.EMBEDDING_CREATE


@dataclass(frozen=True, kw_only=True)
class FullEndpointTool(_RoutedTool):
    kind: ClassVar[ToolKind] = ToolKind.FULL_ENDPOINT

    content_type: ContentType
    file_field: str | None = None


@dataclass(frozen=True, kw_only=True)
class RawCallTool(_PlannedToolBase):
    kind: ClassVar[ToolKind] = ToolKind.RAW_CALL


PlannedTool: TypeAlias = (
    CatalogGetTool
    | TextGenerateTool
    | ImageGenerateTool
    | ImageEditTool
    | AudioTranscribeTool
    | AudioSpeechTool
    | VideoGenerateTool
    | SafetyModerateTool
    | EmbeddingCreateTool
    | FullEndpointTool
    | RawCallTool
)


def endpoint_path_of(tool: PlannedTool) -> str | None:
    """Primary upstream path a tool is routed to, if any."""
    return getattr(tool, "endpoint_path", None)


@dataclass(frozen=True)
class ToolState:
    """The synthesized tool surface. Same surface iff signatures match."""

    profile: ToolProfile
    tools: tuple[PlannedTool, ...]
    signature: str

    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.tools]


# ---------------------------------------------------------------------------
# Upstream I/O
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NormalizedHttpResponse:
    """Uniform upstream reply: lower-cased headers, decoded body."""

    status: int
    headers: dict[str, str]
    data: Any


@dataclass(frozen=True)
class PreparedUpload:
    field_name: str
    file_name: str
    mime_type: str
    content: bytes = field(repr=False)
    size_bytes: int = 0
