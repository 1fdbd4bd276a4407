"""Hashing and naming helpers."""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable
from typing import Any

_NON_NAME_CHARS = re.compile(r"[^a-z0-9_]+")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


def stable_json(value: Any) -> str:
    """Serialize *value* with sorted keys so equal structures hash equally."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def model_set_jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard similarity of two model-name sets. Two empty sets count as identical."""
    set_a = set(a)
    set_b = set(b)
    if not set_a and not set_b:
        return 1.0
    union = set_a | set_b
    return len(set_a & set_b) / len(union)


def sanitize_tool_name(raw: str, max_length: int = 64) -> str:
    """Lower-case *raw* and squeeze it into the ``[a-z0-9_]`` tool-name alphabet."""
    name = _NON_NAME_CHARS.sub("_", raw.lower())
    name = _REPEATED_UNDERSCORES.sub("_", name).strip("_")
    return name[:max_length].rstrip("_")
