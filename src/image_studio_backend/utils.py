"""
Utility functions for file system operations, string handling and scoring.

This module provides helper functions for:
- Sanitizing user-provided filenames for safe filesystem usage
- Ensuring directory creation
- Truncating messages to column limits
- Scoring result variants within a batch
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

ALLOWED_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}

MIN_VARIANT_SCORE = 0.1
MAX_VARIANT_SCORE = 1.0


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Photo!", "image")
        'my-photo'
        >>> sanitize_label("@#$", "image")
        'image'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def image_extension(filename: str, default: str = ".png") -> str:
    """Return the lowercase image extension of a filename, or the default if unsupported."""
    suffix = Path(filename).suffix.lower()
    return suffix if suffix in ALLOWED_IMAGE_EXTENSIONS else default


def mime_type_for(filename: str) -> str:
    return MIME_TYPES.get(Path(filename).suffix.lower(), "image/jpeg")


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    """Cap a string at a column limit, passing None through."""
    if value is None:
        return None
    return value if len(value) <= limit else value[:limit]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def score_variant(index: int, has_user_prompt: bool = False, contextual: bool = False) -> float:
    """
    Score a variant by its position within a batch.

    Earlier variants score higher; a user-supplied prompt adds 0.1 and
    continuation of a prior editing context adds 0.05. The result is always
    clamped to [0.1, 1.0].

    Example:
        >>> score_variant(0)
        0.85
        >>> score_variant(0, has_user_prompt=True, contextual=True)
        1.0
    """
    score = 0.85 - (index * 0.05)
    if has_user_prompt:
        score += 0.1
    if contextual:
        score += 0.05
    return round(max(MIN_VARIANT_SCORE, min(MAX_VARIANT_SCORE, score)), 4)
