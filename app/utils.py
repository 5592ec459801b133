"""Utility helpers for the SpoilerShield service."""

from __future__ import annotations

import html
import re
import unicodedata


WHITESPACE_RE = re.compile(r"\s+")
ZERO_WIDTH_RE = re.compile("[\u200b\u200c\u200d\ufeff]")
HTML_TAG_RE = re.compile(r"<[^>]*>")
SLUG_SEPARATOR_RE = re.compile(r"[-_]+")


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower()


def normalize_line(text: object) -> str:
    """Collapse whitespace and strip zero-width characters from caption text."""

    value = ZERO_WIDTH_RE.sub("", str(text or ""))
    return WHITESPACE_RE.sub(" ", value).strip()


def deslugify(slug: str) -> str:
    """Turn ``jujutsu-kaisen`` into ``Jujutsu Kaisen``."""

    words = SLUG_SEPARATOR_RE.sub(" ", slug or "").split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def strip_html(value: str) -> str:
    """Remove markup from provider summaries such as ``<p>...</p>``."""

    text = HTML_TAG_RE.sub(" ", value or "")
    text = html.unescape(text).replace("\xa0", " ")
    return WHITESPACE_RE.sub(" ", text).strip()


def clamp_tail(text: str, limit: int) -> str:
    """Keep the last ``limit`` characters of ``text``."""

    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[len(text) - limit :]
