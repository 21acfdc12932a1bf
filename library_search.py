import logging
import re
from typing import List, Optional

import requests

from network_client import DEFAULT_SEARCH_URL, SEARCH_HEADERS, SEARCH_TIMEOUT
from workers import StreamWorker

log = logging.getLogger(__name__)

# ollama.com search page markup
CARD_MARKER = "x-test-model"
NAME_PREFIX = 'href="/library/'
SIZE_MARKER = "x-test-size"
PULLS_MARKER = "x-test-pull-count"

DESC_LIMIT = 120

_ENTITIES = (
    ("&#39;", "'"),
    ("&#x27;", "'"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&amp;", "&"),  # last, so "&amp;lt;" stays "&lt;"
)

_SAFE = frozenset(b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_.")


class SearchResult:
    def __init__(self, name: str, description: str = "", sizes: Optional[List[str]] = None,
                 pulls: str = ""):
        self.name = name
        self.description = description
        self.sizes = sizes or []
        self.pulls = pulls

    def pull_target(self) -> str:
        # First listed tag is the smallest variant
        return f"{self.name}:{self.sizes[0]}" if self.sizes else self.name

    def __repr__(self):
        return f"SearchResult({self.name!r}, sizes={self.sizes}, pulls={self.pulls!r})"


def encode_query(query: str) -> str:
    out = []
    for b in query.encode("utf-8"):
        if b in _SAFE:
            out.append(chr(b))
        elif b == 0x20:
            out.append("+")
        else:
            out.append(f"%{b:02X}")
    return "".join(out)


def decode_entities(text: str) -> str:
    for ent, ch in _ENTITIES:
        text = text.replace(ent, ch)
    return text


def strip_tags(fragment: str) -> str:
    text = re.sub(r"<[^>]+>", " ", fragment)
    return re.sub(r"\s+", " ", decode_entities(text)).strip()


def find_marker(text: str, marker: str, pos: int = 0) -> int:
    """Index of ``marker`` as a whole attribute name, so x-test-model skips x-test-model-title."""
    while True:
        i = text.find(marker, pos)
        if i < 0:
            return -1
        after = text[i + len(marker):i + len(marker) + 1]
        if not after or not (after.isalnum() or after in "-_"):
            return i
        pos = i + len(marker)


def _element_text(card: str, start: int, close: str) -> Optional[str]:
    """Inner text of the element whose opening tag contains position ``start``."""
    open_end = card.find(">", start)
    if open_end < 0:
        return None
    inner_end = card.find(close, open_end + 1)
    if inner_end < 0:
        return None
    return card[open_end + 1:inner_end]


def _card_name(card: str) -> Optional[str]:
    i = card.find(NAME_PREFIX)
    if i < 0:
        return None
    i += len(NAME_PREFIX)
    j = card.find('"', i)
    if j < 0:
        return None
    name = card[i:j].strip()
    if not name or "/" in name:
        return None
    return name


def _card_description(card: str) -> str:
    # "<p " or "<p>", never "<path" from an svg icon
    hits = [i for i in (card.find("<p "), card.find("<p>")) if i >= 0]
    if not hits:
        return ""
    i = min(hits)
    inner = _element_text(card, i, "</p>")
    if inner is None:
        return ""
    text = strip_tags(inner)
    if len(text) > DESC_LIMIT:
        text = text[:DESC_LIMIT - 3].rstrip() + "..."
    return text


def _card_spans(card: str, marker: str) -> List[str]:
    found = []
    pos = 0
    while True:
        i = find_marker(card, marker, pos)
        if i < 0:
            break
        inner = _element_text(card, i, "</span>")
        if inner is None:
            break
        text = strip_tags(inner)
        if text:
            found.append(text)
        pos = i + len(marker)
    return found


def parse_search_html(html: str) -> List[SearchResult]:
    starts = []
    pos = find_marker(html, CARD_MARKER)
    while pos >= 0:
        starts.append(pos)
        pos = find_marker(html, CARD_MARKER, pos + len(CARD_MARKER))

    results: List[SearchResult] = []
    seen = set()
    for n, start in enumerate(starts):
        end = starts[n + 1] if n + 1 < len(starts) else len(html)
        card = html[start:end]
        name = _card_name(card)
        if not name or name in seen:
            continue
        seen.add(name)
        pulls = _card_spans(card, PULLS_MARKER)
        results.append(SearchResult(
            name=name,
            description=_card_description(card),
            sizes=_card_spans(card, SIZE_MARKER),
            pulls=pulls[0] if pulls else "",
        ))
    return results


class SearchEvent:
    RESULTS = "results"
    ERROR = "error"

    def __init__(self, kind: str, results: Optional[List[SearchResult]] = None,
                 message: Optional[str] = None):
        self.kind = kind
        self.results = results or []
        self.message = message

    @classmethod
    def found(cls, results: List[SearchResult]) -> "SearchEvent":
        return cls(cls.RESULTS, results=results)

    @classmethod
    def error(cls, message: str) -> "SearchEvent":
        return cls(cls.ERROR, message=message)


class SearchWorker(StreamWorker):
    name = "search"

    def __init__(self, query: str, search_url: str = DEFAULT_SEARCH_URL):
        super().__init__()
        self.query = query
        self.search_url = search_url

    def failure(self, message: str) -> SearchEvent:
        return SearchEvent.error(message)

    def url(self) -> str:
        return f"{self.search_url}?q={encode_query(self.query)}"

    def run(self) -> None:
        url = self.url()
        log.debug("searching %s", url)
        try:
            r = requests.get(url, headers=SEARCH_HEADERS, timeout=SEARCH_TIMEOUT)
            r.raise_for_status()
            html = r.text
        except requests.RequestException as e:
            self.emit(SearchEvent.error(str(e)))
            return
        self.emit(SearchEvent.found(parse_search_html(html)))
