"""Hidden side-channel markers embedded in the streamed answer.

Wire format (one marker per line, HTML comments so renderers hide them)::

    <!-- RETRIEVAL_CARD: {"url":"...","title":"...","favicon":"...","image":"...","summary":"..."} -->
    ...prose...
    <!-- SEARCH_URLS: https://a|https://b -->
    <!-- SEARCH_IMAGES: https://img1|https://img2 -->

The card is always the first line and the two lists are always the last two lines,
in that order. All three are emitted even when empty.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .schemas import RetrievalCard

logger = logging.getLogger("uvicorn.error")

RETRIEVAL_CARD_PREFIX = "<!-- RETRIEVAL_CARD:"
SEARCH_URLS_PREFIX = "<!-- SEARCH_URLS:"
SEARCH_IMAGES_PREFIX = "<!-- SEARCH_IMAGES:"
MARKER_PREFIXES = (RETRIEVAL_CARD_PREFIX, SEARCH_URLS_PREFIX, SEARCH_IMAGES_PREFIX)
MARKER_SUFFIX = "-->"

_CARD_RE = re.compile(r"<!-- RETRIEVAL_CARD: (\{.*?\}) -->")
_URLS_RE = re.compile(r"<!-- SEARCH_URLS: (.*?) -->")
_IMAGES_RE = re.compile(r"<!-- SEARCH_IMAGES: (.*?) -->")
_ANY_MARKER_RE = re.compile(
    r"[ \t]*<!-- (?:RETRIEVAL_CARD|SEARCH_URLS|SEARCH_IMAGES):.*? -->[ \t]*(?:\r?\n)?",
    re.DOTALL,
)
_URL_ESCAPES = (("|", "%7C"), (">", "%3E"), (" ", "%20"), ("\n", "%0A"), ("\r", "%0D"), ("\t", "%09"))


def _escape_url(url: str) -> str:
    cleaned = url.strip()
    for raw, escaped in _URL_ESCAPES:
        cleaned = cleaned.replace(raw, escaped)
    return cleaned


def _encode_list(prefix: str, items: Iterable[str]) -> str:
    cleaned = [_escape_url(item) for item in items if item and item.strip()]
    return f"{prefix} {'|'.join(cleaned)} {MARKER_SUFFIX}"


def _decode_list(pattern: re.Pattern, text: str) -> Optional[List[str]]:
    match = pattern.search(text)
    if not match:
        return None
    return [part.strip() for part in match.group(1).split("|") if part.strip()]


def encode_search_urls(urls: Iterable[str]) -> str:
    return _encode_list(SEARCH_URLS_PREFIX, urls)


def encode_search_images(images: Iterable[str]) -> str:
    return _encode_list(SEARCH_IMAGES_PREFIX, images)


def decode_search_urls(text: str) -> Optional[List[str]]:
    return _decode_list(_URLS_RE, text)


def decode_search_images(text: str) -> Optional[List[str]]:
    return _decode_list(_IMAGES_RE, text)


def encode_retrieval_card(card: Optional[RetrievalCard]) -> str:
    payload = (card or RetrievalCard()).model_dump()
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    # JSON allows \u escapes, so the payload can never close the comment or open a new one.
    body = body.replace("<", "\\u003c").replace(">", "\\u003e")
    return f"{RETRIEVAL_CARD_PREFIX} {body} {MARKER_SUFFIX}"


def decode_retrieval_card(text: str) -> Optional[RetrievalCard]:
    match = _CARD_RE.search(text)
    if not match:
        return None
    try:
        return RetrievalCard(**json.loads(match.group(1)))
    except (ValueError, TypeError):
        logger.warning("Unparseable retrieval card marker: %s", match.group(1)[:200])
        return None


def render_prefix(card: Optional[RetrievalCard]) -> str:
    return encode_retrieval_card(card) + "\n"


def render_suffix(urls: Iterable[str], images: Iterable[str]) -> str:
    return "\n" + encode_search_urls(urls) + "\n" + encode_search_images(images)


def strip_markers(text: str) -> str:
    """Remove every marker span (and the line break it sits on) and trim the result."""
    return _ANY_MARKER_RE.sub("", text or "").strip()


@dataclass
class DecodedMarkers:
    prose: str
    card: Optional[RetrievalCard] = None
    urls: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)


def extract_markers(text: str) -> DecodedMarkers:
    return DecodedMarkers(
        prose=strip_markers(text),
        card=decode_retrieval_card(text),
        urls=decode_search_urls(text) or [],
        images=decode_search_images(text) or [],
    )


def _partial_prefix_len(text: str) -> int:
    """Length of the longest tail of ``text`` that could still grow into a marker prefix."""
    longest = max(len(p) for p in MARKER_PREFIXES)
    for size in range(min(len(text), longest - 1), 0, -1):
        tail = text[-size:]
        if any(prefix.startswith(tail) for prefix in MARKER_PREFIXES):
            return size
    return 0


class MarkerStreamFilter:
    """Drops marker spans from a chunked text stream.

    Text that might be the start of a marker is held back until it can be decided,
    so nothing is ever emitted that would later have to be taken back.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._in_marker = False
        self._skip_newline = False
        self.dropped = 0

    def feed(self, chunk: str) -> str:
        self._pending += chunk or ""
        out: List[str] = []
        while self._pending:
            if self._in_marker:
                end = self._pending.find(MARKER_SUFFIX)
                if end < 0:
                    self._pending = self._pending[-(len(MARKER_SUFFIX) - 1):]
                    break
                self._pending = self._pending[end + len(MARKER_SUFFIX):]
                self._in_marker = False
                self._skip_newline = True
                self.dropped += 1
                continue
            if self._skip_newline:
                self._skip_newline = False
                if self._pending.startswith("\n"):
                    self._pending = self._pending[1:]
                    continue
            start = -1
            matched = ""
            for prefix in MARKER_PREFIXES:
                idx = self._pending.find(prefix)
                if idx >= 0 and (start < 0 or idx < start):
                    start, matched = idx, prefix
            if start >= 0:
                out.append(self._pending[:start])
                self._pending = self._pending[start + len(matched):]
                self._in_marker = True
                continue
            hold = _partial_prefix_len(self._pending)
            cut = len(self._pending) - hold
            out.append(self._pending[:cut])
            self._pending = self._pending[cut:]
            break
        return "".join(out)

    def flush(self) -> str:
        if self._in_marker:
            logger.warning("Dropping unterminated marker at end of stream")
            self._pending = ""
            self._in_marker = False
            return ""
        rest, self._pending = self._pending, ""
        return rest
