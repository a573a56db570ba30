"""Input validation for caller-supplied identifiers and paths."""

from __future__ import annotations

import posixpath
import re

from berth.errors import ValidationError

# Terminal ids: alphanumeric + hyphens + underscores, 1-128 chars
_TERMINAL_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")


def validate_terminal_id(terminal_id: str) -> str:
    if not isinstance(terminal_id, str) or not _TERMINAL_ID_RE.match(terminal_id):
        raise ValidationError(
            "invalid terminal_id: must be 1-128 alphanumeric/hyphen/underscore characters",
            details={"terminal_id": terminal_id},
        )
    return terminal_id


def require_name(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"missing required field: {field}")
    if "\x00" in value or "/" in value or value in (".", ".."):
        raise ValidationError(f"invalid {field}", details={field: value})
    return value


def validate_relative_path(path: str) -> str:
    """Normalize a project-relative path, rejecting absolute paths and traversal."""
    if not isinstance(path, str) or not path.strip():
        raise ValidationError("field 'path' must be a non-empty string")
    if "\x00" in path:
        raise ValidationError("invalid path: null bytes not allowed", details={"path": path})
    if path.startswith("/"):
        raise ValidationError("invalid path: absolute paths are not allowed", details={"path": path})
    parts = [p for p in path.split("/") if p not in ("", ".")]
    if any(p == ".." for p in parts):
        raise ValidationError("invalid path: path traversal ('..') is not allowed", details={"path": path})
    return posixpath.join(*parts) if parts else "."


def truncate_text(text: str | None, *, limit: int) -> str:
    """Truncate text to a maximum length with a trailing indicator."""
    if text is None:
        return ""
    if len(text) <= limit:
        return text
    hidden = len(text) - limit
    return f"{text[:limit]}\n\n...[truncated {hidden} chars; original={len(text)}]"
