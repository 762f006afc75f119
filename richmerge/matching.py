"""
Coalescing of split paragraph text and lookup of merged HTML fragments.

The merge engine writes a rich field value into the document as escaped
literal text, and word processors happily split that text across several
runs, text nodes and line breaks. Each paragraph's pieces are concatenated
into one string that remembers which source node owns every character, the
string is normalized, and the lookup keys are searched in it.
"""
import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from .html_parser import value_contains_html

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(
    r"&(?:#[0-9]+|#[xX][0-9a-fA-F]+|[A-Za-z][A-Za-z0-9]*);?"
    r"|[ \t\r\n\f\v]+"
    r"|.",
    re.DOTALL,
)
_WS_CHARS = " \t\r\n\f\v"

# Stands in for a non-text node so that no match can span it.
OBJECT_MARK = "\ufffc"


@dataclass
class NormalizedText:
    """Normalized text plus, per character, the raw ``[start, end)`` range it came from."""

    text: str
    starts: List[int]
    ends: List[int]
    raw_length: int

    def raw_offset(self, index: int) -> int:
        if index < len(self.starts):
            return self.starts[index]
        return self.raw_length

    def raw_end(self, index: int) -> int:
        """Raw offset just past normalized character ``index - 1``."""
        if index <= 0:
            return self.raw_offset(0) if self.starts else 0
        if index - 1 < len(self.ends):
            return self.ends[index - 1]
        return self.raw_length


def normalize_for_matching(raw: str) -> NormalizedText:
    """
    Decode entities and collapse whitespace, keeping an index back into ``raw``.

    Every run of whitespace (CR, LF, tabs, spaces) becomes one space, and a
    whitespace run sitting between ``>`` and ``<`` is dropped, so markup that
    the merge engine re-indented or broke over several lines still matches.
    Non-breaking spaces are text, not whitespace.
    """
    units: List[Tuple[str, int, int, bool]] = []
    for m in _TOKEN_RE.finditer(raw):
        token = m.group(0)
        start, end = m.span()
        if token[0] in _WS_CHARS:
            units.append((" ", start, end, True))
        elif token[0] == "&" and len(token) > 1:
            units.append((html.unescape(token), start, end, False))
        else:
            units.append((token, start, end, False))

    chars: List[str] = []
    starts: List[int] = []
    ends: List[int] = []
    for idx, (value, start, end, is_ws) in enumerate(units):
        if is_ws:
            prev_char = chars[-1] if chars else ""
            next_value = ""
            if idx + 1 < len(units):
                next_value = units[idx + 1][0]
            if prev_char == ">" and next_value.startswith("<"):
                continue
        for ch in value:
            chars.append(ch)
            starts.append(start)
            ends.append(end)
    return NormalizedText("".join(chars), starts, ends, len(raw))


def normalize_key(value: str) -> str:
    return normalize_for_matching(value).text.strip(" ")


class Match(NamedTuple):
    position: int
    key: str
    fragment: str

    @property
    def end(self) -> int:
        return self.position + len(self.key)


def find_next_match(text: str, lookup: Mapping[str, str], start: int = 0) -> Optional[Match]:
    """
    Find the earliest lookup key in ``text`` at or after ``start``.

    ``text`` and the keys must already be normalized. The smallest position
    wins; at equal positions the longer key wins.
    """
    best: Optional[Match] = None
    for key, fragment in lookup.items():
        if not key:
            continue
        pos = text.find(key, start)
        if pos < 0:
            continue
        if best is None or pos < best.position or (pos == best.position and len(key) > len(best.key)):
            best = Match(pos, key, fragment)
    return best


def iter_matches(text: str, lookup: Mapping[str, str]) -> Iterable[Match]:
    """Yield successive non-overlapping matches, never re-entering consumed text."""
    position = 0
    while position <= len(text):
        match = find_next_match(text, lookup, position)
        if match is None:
            return
        yield match
        position = match.end


@dataclass
class Span:
    source: Any
    start: int
    end: int


@dataclass
class CoalescedText:
    """Concatenated text of one paragraph with the owning node of every range."""

    text: str = ""
    spans: List[Span] = field(default_factory=list)

    def add(self, source: Any, value: str) -> None:
        start = len(self.text)
        self.text += value
        self.spans.append(Span(source, start, len(self.text)))

    def overlapping(self, start: int, end: int) -> List[Span]:
        return [s for s in self.spans if s.end > start and s.start < end]

    def normalized(self) -> NormalizedText:
        return normalize_for_matching(self.text)


def _collect_values(values: Any, out: List[str]) -> None:
    if isinstance(values, str):
        out.append(values)
    elif isinstance(values, Mapping):
        for value in values.values():
            _collect_values(value, out)
    elif isinstance(values, (list, tuple, set)):
        for value in values:
            _collect_values(value, out)


def prepare_rich_lookup(values: Any) -> Dict[str, str]:
    """
    Build the fragment lookup from merged field values.

    ``values`` may be a mapping of field names to values, a list of values,
    or nested repeater rows. Only strings carrying HTML are kept; keys are
    the normalized form that will be searched for in the document.
    """
    collected: List[str] = []
    _collect_values(values, collected)
    lookup: Dict[str, str] = {}
    for value in collected:
        fragment = value.strip()
        if not value_contains_html(fragment):
            continue
        key = normalize_key(fragment)
        if key and key not in lookup:
            lookup[key] = fragment
    logger.debug("Prepared rich lookup: %d values, %d keys", len(collected), len(lookup))
    return lookup


def ensure_lookup(lookup: Any) -> Dict[str, str]:
    """Accept either a prepared lookup or raw values and return a normalized lookup."""
    if isinstance(lookup, Mapping) and all(
        isinstance(k, str) and isinstance(v, str) and normalize_key(v) == k for k, v in lookup.items()
    ):
        return dict(lookup)
    return prepare_rich_lookup(lookup)
