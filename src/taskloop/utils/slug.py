"""Short, unique labels for workspaces."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Collection, Optional, Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(value: Optional[str], *, fallback: str = "workspace", max_length: int = 40) -> str:
    """Normalize ``value`` into a lowercase, hyphenated slug."""
    slug = _normalize((value or "").strip().lower())
    if not slug:
        slug = _normalize(fallback.lower()) or "workspace"
    if len(slug) > max_length:
        digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:6]
        prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
        slug = f"{prefix}-{digest}"
    return slug


def workspace_label(path: Optional[Path], taken: Collection[str] = ()) -> str:
    """Label a workspace after its directory, suffixing ``-2``, ``-3`` on clashes."""
    base = slugify(path.name if path is not None else None)
    if base not in taken:
        return base
    counter = 2
    while f"{base}-{counter}" in taken:
        counter += 1
    return f"{base}-{counter}"


def _normalize(value: str) -> str:
    slug = _UNSAFE_PATTERN.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")


__all__ = ["slugify", "workspace_label"]
