"""Mutable model of the watched page built from forwarded DOM snapshots.

The browser side forwards a full snapshot whenever the player remounts and
small text updates in between. ``PageDocument`` applies those to a
BeautifulSoup tree and notifies observers the way ``MutationObserver`` does:
an observation bound to a node that has since been detached from the tree
simply never fires again.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable
from urllib.parse import urlparse

from bs4 import BeautifulSoup, NavigableString, Tag

logger = logging.getLogger(__name__)

BLOCK_TAGS = frozenset(
    {"div", "p", "li", "ul", "ol", "section", "article", "header", "footer", "tr", "h1", "h2", "h3", "h4"}
)
SKIPPED_TAGS = frozenset({"script", "style", "noscript", "template"})
_STYLE_PX_RE = re.compile(r"(?<![-\w])(?P<prop>width|height)\s*:\s*(?P<value>[\d.]+)px", re.IGNORECASE)
_HIDDEN_STYLE_RE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)


@dataclass(slots=True)
class MutationRecord:
    kind: str  # "childList" or "characterData"
    target: Tag


MutationCallback = Callable[[list[MutationRecord]], None]


class Observation:
    """Handle returned by :meth:`PageDocument.observe`."""

    def __init__(self, document: "PageDocument", target: Tag | None, callback: MutationCallback):
        self._document = document
        self.target = target
        self.callback = callback

    def disconnect(self) -> None:
        self._document._observations.discard(self)


class PageDocument:
    """A page snapshot that can be mutated and observed."""

    def __init__(self, html: str = "", url: str = "", *, tab_id: int | None = None):
        self.tab_id = tab_id
        self._url = url
        self._soup = BeautifulSoup(html or "<html><head></head><body></body></html>", "html.parser")
        self._observations: set[Observation] = set()

    @property
    def url(self) -> str:
        return self._url

    @property
    def hostname(self) -> str:
        return (urlparse(self._url).hostname or "").lower()

    @property
    def soup(self) -> BeautifulSoup:
        return self._soup

    @property
    def title(self) -> str:
        title_tag = self._soup.find("title")
        return title_tag.get_text() if title_tag else ""

    def meta_content(self, *names: str) -> str:
        """Return the first non-empty ``<meta>`` content for ``property``/``name``."""

        for name in names:
            for attribute in ("property", "name"):
                tag = self._soup.find("meta", attrs={attribute: name})
                if isinstance(tag, Tag):
                    content = str(tag.get("content") or "").strip()
                    if content:
                        return content
        return ""

    def link_href(self, rel: str) -> str:
        for tag in self._soup.find_all("link"):
            rels = tag.get("rel") or []
            if isinstance(rels, str):
                rels = rels.split()
            if rel in [value.lower() for value in rels]:
                href = str(tag.get("href") or "").strip()
                if href:
                    return href
        return ""

    def select(self, selector: str) -> list[Tag]:
        """Run a CSS selector; invalid selectors raise ``ValueError``."""

        try:
            return list(self._soup.select(selector))
        except Exception as exc:
            raise ValueError(f"Invalid selector {selector!r}") from exc

    def is_attached(self, node: Tag) -> bool:
        if node is self._soup:
            return True
        return any(parent is self._soup for parent in node.parents)

    def observe(self, target: Tag | None, callback: MutationCallback) -> Observation:
        """Observe ``target`` (or the whole document when ``None``) with subtree semantics."""

        if target is not None and not self.is_attached(target):
            raise ValueError("Cannot observe a detached node")
        observation = Observation(self, target, callback)
        self._observations.add(observation)
        return observation

    def load(self, html: str, url: str | None = None) -> None:
        """Replace the whole tree, as when the player remounts its subtree."""

        if url is not None:
            self._url = url
        self._soup = BeautifulSoup(html or "", "html.parser")
        root = self._soup.find("html") or self._soup
        self._dispatch([MutationRecord(kind="childList", target=root)])

    def navigate(self, url: str) -> None:
        """Single-page-app navigation: the URL changes without a reload."""

        self._url = url

    def set_text(self, selector: str, text: str) -> bool:
        """Replace the text of the first match; newlines become ``<br>``."""

        target = self._first(selector)
        if target is None:
            return False
        target.clear()
        for index, part in enumerate(str(text).split("\n")):
            if index:
                target.append(self._soup.new_tag("br"))
            target.append(NavigableString(part))
        self._dispatch([MutationRecord(kind="characterData", target=target)])
        return True

    def replace_children(self, selector: str, html: str) -> bool:
        target = self._first(selector)
        if target is None:
            return False
        fragment = BeautifulSoup(html or "", "html.parser")
        target.clear()
        for child in list(fragment.contents):
            target.append(child.extract())
        self._dispatch([MutationRecord(kind="childList", target=target)])
        return True

    def _first(self, selector: str) -> Tag | None:
        matches = self.select(selector)
        return matches[0] if matches else None

    def _dispatch(self, records: list[MutationRecord]) -> None:
        for observation in list(self._observations):
            relevant = [
                record
                for record in records
                if observation.target is None
                or record.target is observation.target
                or any(parent is observation.target for parent in record.target.parents)
            ]
            if not relevant:
                continue
            if observation.target is not None and not self.is_attached(observation.target):
                continue
            try:
                observation.callback(relevant)
            except Exception:  # pragma: no cover - observers never break the page
                logger.debug("Mutation callback failed", exc_info=True)


def element_area(node: Tag) -> float | None:
    """Bounding-box area reported by the forwarder, if any."""

    width = _dimension(node, "width")
    height = _dimension(node, "height")
    if width is None or height is None:
        return None
    return width * height


def _dimension(node: Tag, name: str) -> float | None:
    raw = node.get(f"data-{name}")
    if raw is not None:
        try:
            return float(str(raw))
        except ValueError:
            return None
    for match in _STYLE_PX_RE.finditer(str(node.get("style") or "")):
        if match.group("prop").lower() == name:
            return float(match.group("value"))
    return None


def is_hidden(node: Tag) -> bool:
    if node.has_attr("hidden") or str(node.get("aria-hidden") or "").lower() == "true":
        return True
    return bool(_HIDDEN_STYLE_RE.search(str(node.get("style") or "")))


def visible_text(node: Tag) -> str:
    """Approximate ``innerText``: hidden nodes skipped, ``<br>``/blocks break lines."""

    parts: list[str] = []
    _collect_text(node, parts)
    return "".join(parts).strip()


def _collect_text(node: Tag, parts: list[str]) -> None:
    for child in node.children:
        if isinstance(child, NavigableString):
            if type(child) is NavigableString:
                parts.append(str(child))
            continue
        if not isinstance(child, Tag):
            continue
        if child.name in SKIPPED_TAGS or is_hidden(child):
            continue
        if child.name == "br":
            parts.append("\n")
            continue
        block = child.name in BLOCK_TAGS
        if block:
            parts.append("\n")
        _collect_text(child, parts)
        if block:
            parts.append("\n")


def unique_nodes(groups: Iterable[Iterable[Tag]]) -> list[Tag]:
    """Flatten selector results keeping first-seen order and node identity."""

    seen: set[int] = set()
    ordered: list[Tag] = []
    for group in groups:
        for node in group:
            if id(node) in seen:
                continue
            seen.add(id(node))
            ordered.append(node)
    return ordered
