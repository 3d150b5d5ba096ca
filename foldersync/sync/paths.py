from __future__ import annotations

import re
import unicodedata

from foldersync.core.errors import InvalidPath

MAX_SEGMENT_BYTES = 255
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


def normalize_remote_path(value: str) -> str:
    """Forward-slash, leading-slash, no trailing slash, NFC. Case is preserved."""
    raw = unicodedata.normalize("NFC", (value or "").replace("\\", "/"))
    parts = [p for p in raw.split("/") if p]
    return "/" + "/".join(parts) if parts else ""


def path_key(value: str) -> str:
    # The remote compares paths case-insensitively.
    return normalize_remote_path(value).casefold()


def join_remote(*parts: str) -> str:
    return normalize_remote_path("/".join(p for p in parts if p))


def remote_parent(value: str) -> str:
    norm = normalize_remote_path(value)
    return norm.rsplit("/", 1)[0] if norm else ""


def remote_basename(value: str) -> str:
    return normalize_remote_path(value).rsplit("/", 1)[-1]


def is_within(value: str, root: str) -> bool:
    key, root_key = path_key(value), path_key(root)
    if not root_key:
        return True
    return key == root_key or key.startswith(root_key + "/")


def relative_to_root(value: str, root: str) -> str:
    norm, root_norm = normalize_remote_path(value), normalize_remote_path(root)
    if not is_within(norm, root_norm):
        raise InvalidPath(f"path_outside_root: {value}")
    return norm[len(root_norm):].lstrip("/")


def validate_remote_path(value: str, max_length: int = 4096) -> str:
    norm = normalize_remote_path(value)
    if not norm:
        raise InvalidPath("empty_path")
    if len(norm) > max_length:
        raise InvalidPath(f"path_too_long: {len(norm)} > {max_length}")
    for segment in norm.split("/")[1:]:
        if segment in (".", ".."):
            raise InvalidPath(f"relative_segment: {segment}")
        if _CONTROL_RE.search(segment):
            raise InvalidPath(f"control_character_in_segment: {segment!r}")
        if segment != segment.rstrip(" "):
            raise InvalidPath(f"trailing_space_in_segment: {segment!r}")
        if len(segment.encode("utf-8")) > MAX_SEGMENT_BYTES:
            raise InvalidPath(f"segment_too_long: {segment[:32]}...")
    return norm
