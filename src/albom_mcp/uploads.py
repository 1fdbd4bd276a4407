"""Turn tool-call file arguments into ``PreparedUpload`` records."""

from __future__ import annotations

import asyncio
import base64
import binascii
from collections.abc import Awaitable, Callable
from pathlib import Path, PurePath

from albom_mcp.constants import EXTENSION_TO_MIME
from albom_mcp.errors import AlbomRuntimeError
from albom_mcp.models import PreparedUpload

ReadFile = Callable[[str], Awaitable[bytes]]


async def _read_file(path: str) -> bytes:
    return await asyncio.to_thread(Path(path).read_bytes)


def inferred_mime_type(file_name: str) -> str:
    return EXTENSION_TO_MIME.get(PurePath(file_name).suffix.lower(), "application/octet-stream")


def decode_base64(value: str) -> bytes:
    """Decode plain base64 or a ``data:<mime>;base64,<payload>`` URL."""
    trimmed = value.strip()
    if not trimmed:
        raise AlbomRuntimeError("invalid_base64", "Base64 payload is empty", 400)

    if trimmed.startswith("data:") and "," in trimmed:
        trimmed = trimmed.split(",", 1)[1]

    try:
        decoded = base64.b64decode(trimmed, validate=False)
    except (binascii.Error, ValueError):
        decoded = b""
    if not decoded:
        raise AlbomRuntimeError("invalid_base64", "Base64 payload could not be decoded", 400)
    return decoded


def _validate_size(size_bytes: int, max_bytes: int, label: str) -> None:
    if size_bytes <= 0:
        raise AlbomRuntimeError("empty_upload", f"{label} is empty", 400)
    if size_bytes > max_bytes:
        raise AlbomRuntimeError(
            "file_too_large",
            f"{label} exceeds max upload size",
            413,
            {"max_bytes": max_bytes, "size_bytes": size_bytes},
        )


async def prepare_upload(
    field_name: str,
    label: str,
    max_bytes: int,
    file_path: str | None = None,
    file_base64: str | None = None,
    file_name: str | None = None,
    mime_type: str | None = None,
    required: bool = False,
    read_file: ReadFile | None = None,
) -> PreparedUpload | None:
    """Load exactly one of *file_path* / *file_base64* into memory.

    Returns None when neither is given and the upload is optional.
    """
    sources = int(bool(file_path)) + int(bool(file_base64))
    if sources == 0:
        if required:
            raise AlbomRuntimeError(
                "missing_file",
                f"{label} requires exactly one of file_path or file_base64",
                400,
            )
        return None
    if sources > 1:
        raise AlbomRuntimeError(
            "invalid_file_input",
            f"{label} requires exactly one of file_path or file_base64",
            400,
        )

    explicit_name = file_name.strip() if file_name else ""
    if file_path:
        resolved_name = explicit_name or PurePath(file_path).name
        try:
            content = await (read_file or _read_file)(file_path)
        except OSError as exc:
            raise AlbomRuntimeError(
                "file_read_failed",
                f"Could not read {label} from {file_path}",
                400,
                {"cause": str(exc)},
            ) from exc
    else:
        content = decode_base64(file_base64 or "")
        resolved_name = explicit_name or f"{field_name}.bin"

    _validate_size(len(content), max_bytes, label)

    return PreparedUpload(
        field_name=field_name,
        file_name=resolved_name,
        mime_type=(mime_type.strip() if mime_type else "") or inferred_mime_type(resolved_name),
        content=content,
        size_bytes=len(content),
    )
