"""Constants for catalog planning, payments and upstream calls."""

from enum import StrEnum


DEFAULT_BASE_URL = "https://alittlebitofmoney.com"
CATALOG_PATH = "/api/catalog"
UPSTREAM_ROUTE_PREFIX = "/openai"

DEFAULT_CATALOG_TTL_MS = 300_000
DEFAULT_HTTP_TIMEOUT_MS = 90_000
DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_UPLOAD_BYTES = 25 * 1024 * 1024

BACKOFF_BASE_SECS = 0.2  # doubled per attempt
BACKOFF_JITTER_RATIO = 0.4

L402_CACHE_MAX_ENTRIES = 1000
L402_CACHE_TTL_SECS = 300.0
L402_CACHE_PURGE_INTERVAL_SECS = 60.0

# Minimum model-set Jaccard similarity for two endpoints to share a tool.
DUPLICATE_JACCARD_THRESHOLD = 0.95

MAX_TOOL_NAME_LENGTH = 64
TOOL_NAME_PREFIX = "albom"

# Example payload keys used only by upstream fixtures and docs.
COSMETIC_ARG_KEYS = frozenset({
    "e2e",
    "required_field",
    "invalid_body",
    "error_keyword",
    "file_comment",
    "file_name",
    "file_field",
    "content_type",
    "require_error_message",
})

DEFAULT_MODEL_KEY = "_default"

RESPONSES_PATH = "/v1/responses"
CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
IMAGE_GENERATIONS_PATH = "/v1/images/generations"
IMAGE_EDITS_PATH = "/v1/images/edits"
AUDIO_TRANSCRIPTIONS_PATH = "/v1/audio/transcriptions"
AUDIO_TRANSLATIONS_PATH = "/v1/audio/translations"
AUDIO_SPEECH_PATH = "/v1/audio/speech"
VIDEO_GENERATIONS_PATH = "/v1/video/generations"
MODERATIONS_PATH = "/v1/moderations"
EMBEDDINGS_PATH = "/v1/embeddings"

# Longest-prefix family table; first match wins.
FAMILY_PREFIXES: tuple[tuple[str, str], ...] = (
    ("/v1/chat", "text-generation"),
    ("/v1/responses", "text-generation"),
    ("/v1/images", "image"),
    ("/v1/audio", "audio"),
    ("/v1/video", "video"),
    ("/v1/moderations", "moderation"),
    ("/v1/embeddings", "embedding"),
)

EXTENSION_TO_MIME = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
}

NWC_URL_SCHEME = "nostr+walletconnect://"


class ToolProfile(StrEnum):
    COMPACT = "compact"
    FULL = "full"


class PaymentMode(StrEnum):
    """How paid upstream calls are authorized."""

    BEARER = "bearer"  # prepaid balance token
    NWC = "nwc"  # auto-pay L402 invoices from a Nostr Wallet Connect wallet
    L402_PASSTHROUGH = "l402_passthrough"  # caller pays and retries with the preimage


class PriceType(StrEnum):
    PER_MODEL = "per_model"
    FLAT = "flat"


class ContentType(StrEnum):
    JSON = "json"
    MULTIPART = "multipart"
