"""Path utilities: normalise logical folder paths and display names.

Rules shared by the upload, folder and trash services:
- A logical folder path is absolute, starts with '/', has no '.' or '..'
  segments, no empty segments and no trailing slash except for the root '/'.
- A display name is a single path segment of at most 255 characters.
"""

from __future__ import annotations

import posixpath
import unicodedata

from app.packages.trove.core.constants import MAX_FILENAME_LENGTH, ROOT_FOLDER


class InvalidPathError(ValueError):
    pass


def norm_folder_path(p: str | None) -> str:
    s = (p or ROOT_FOLDER).strip().replace("\\", "/") or ROOT_FOLDER
    if not s.startswith("/"):
        s = "/" + s
    parts = []
    for segment in s.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            raise InvalidPathError(f"path traversal is not allowed: {p}")
        parts.append(segment)
    return "/" + "/".join(parts) if parts else ROOT_FOLDER


def join_folder(parent: str, name: str) -> str:
    parent = norm_folder_path(parent)
    return norm_folder_path(posixpath.join(parent, validate_name(name)))


def parent_folder(path: str) -> str:
    path = norm_folder_path(path)
    if path == ROOT_FOLDER:
        return ROOT_FOLDER
    return posixpath.dirname(path) or ROOT_FOLDER


def ancestors(path: str) -> list[str]:
    """Ancestors of ``path`` excluding the root, outermost first, ``path`` included."""
    path = norm_folder_path(path)
    if path == ROOT_FOLDER:
        return []
    parts = path.strip("/").split("/")
    return ["/" + "/".join(parts[: i + 1]) for i in range(len(parts))]


def validate_name(name: str | None) -> str:
    """Validate a folder or file display name and return it stripped."""
    value = unicodedata.normalize("NFC", (name or "").strip())
    if not value:
        raise InvalidPathError("name must not be empty")
    if value in (".", "..") or "/" in value or "\\" in value or "\x00" in value:
        raise InvalidPathError(f"invalid name: {name}")
    if len(value) > MAX_FILENAME_LENGTH:
        raise InvalidPathError("name is too long")
    return value


def sanitize_filename(name: str | None, fallback: str = "upload") -> str:
    """Reduce a client-supplied filename to a safe display name."""
    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    base = "".join(ch for ch in base if ch >= " " and ch != "\x7f").strip()
    if base in ("", ".", ".."):
        base = fallback
    if len(base) > MAX_FILENAME_LENGTH:
        stem, ext = posixpath.splitext(base)
        base = stem[: MAX_FILENAME_LENGTH - len(ext)] + ext if len(ext) < 32 else base[:MAX_FILENAME_LENGTH]
    return base


def numbered_name(name: str, counter: int) -> str:
    """``report.pdf`` -> ``report (1).pdf``."""
    stem, ext = posixpath.splitext(name)
    if not stem:
        stem, ext = name, ""
    suffix = f" ({counter})"
    room = MAX_FILENAME_LENGTH - len(ext) - len(suffix)
    return f"{stem[:room]}{suffix}{ext}"
