"""
Lenient parsing of the HTML fragments produced by the web editor.

Fragments are parsed with BeautifulSoup's ``html.parser`` backend, which
repairs unclosed tags and decodes entities, and are then copied into a small
immutable node tree so the output builders never touch bs4 objects.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, Tuple, Union

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction

from .errors import HtmlParseError

logger = logging.getLogger(__name__)

ROOT_TAG = "#root"

BLOCK_TAGS = frozenset(
    {
        "p", "div", "section", "article", "blockquote", "address",
        "h1", "h2", "h3", "h4", "h5", "h6",
        "ul", "ol", "table",
    }
)
HEADING_TAGS = frozenset({"h1", "h2", "h3", "h4", "h5", "h6"})
TABLE_SECTION_TAGS = frozenset({"thead", "tbody", "tfoot"})
CELL_TAGS = frozenset({"td", "th"})

_SKIPPED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)

_DETECT_RE = re.compile(
    r"<(?:table|thead|tbody|tr|td|th|ul|ol|li|p|div|h[1-6]|blockquote|pre"
    r"|strong|b|em|i|u|a|span|br|sub|sup|s|strike)(?:\s|>|/)",
    re.IGNORECASE,
)
_TEXT_ALIGN_RE = re.compile(r"text-align\s*:\s*(left|center|right|justify)", re.IGNORECASE)
# Characters lxml refuses to store in element text.
_XML_ILLEGAL_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


@dataclass(frozen=True)
class TextNode:
    text: str


@dataclass(frozen=True)
class ElementNode:
    tag: str
    attrs: Dict[str, str] = field(default_factory=dict, compare=False)
    children: Tuple["HtmlNode", ...] = ()

    def get(self, name: str, default: str = "") -> str:
        return self.attrs.get(name, default)

    def elements(self) -> Iterator["ElementNode"]:
        for child in self.children:
            if isinstance(child, ElementNode):
                yield child

    def text_content(self) -> str:
        parts = []
        for child in self.children:
            if isinstance(child, TextNode):
                parts.append(child.text)
            else:
                parts.append(child.text_content())
        return "".join(parts)

    @property
    def is_block(self) -> bool:
        return self.tag in BLOCK_TAGS


HtmlNode = Union[TextNode, ElementNode]


def value_contains_html(value) -> bool:
    """Return True when a field value carries markup that needs rich conversion."""
    if not isinstance(value, str) or not value:
        return False
    return _DETECT_RE.search(value) is not None


def strip_xml_illegal(text: str) -> str:
    """Drop control characters and non-characters that cannot appear in XML text."""
    return _XML_ILLEGAL_RE.sub("", text)


def _copy_tree(tag: Tag) -> ElementNode:
    children = []
    for child in tag.children:
        if isinstance(child, _SKIPPED_STRINGS):
            continue
        if isinstance(child, NavigableString):
            text = strip_xml_illegal(str(child))
            if text:
                children.append(TextNode(text))
        elif isinstance(child, Tag):
            children.append(_copy_tree(child))
    attrs = {}
    for name, value in tag.attrs.items():
        if isinstance(value, (list, tuple)):
            value = " ".join(value)
        attrs[name.lower()] = strip_xml_illegal(str(value))
    return ElementNode(tag=tag.name.lower(), attrs=attrs, children=tuple(children))


def try_parse_html(html: str) -> ElementNode:
    """Parse ``html`` into a synthetic root element; raise HtmlParseError on failure."""
    try:
        soup = BeautifulSoup(html, "html.parser")
        root = _copy_tree(soup)
    except Exception as exc:
        raise HtmlParseError("could not parse HTML fragment", str(exc)) from exc
    return ElementNode(tag=ROOT_TAG, attrs={}, children=root.children)


def parse_html(html: str) -> ElementNode:
    """Parse a fragment, degrading to a single text node when parsing fails."""
    try:
        return try_parse_html(html)
    except HtmlParseError as exc:
        logger.warning("Falling back to plain text for HTML fragment: %s", exc)
        return ElementNode(tag=ROOT_TAG, attrs={}, children=(TextNode(strip_xml_illegal(html)),))


def extract_text_alignment(node: ElementNode):
    """Return left/center/right/justify from an inline ``text-align`` style, or None."""
    style = node.get("style")
    if not style:
        return None
    m = _TEXT_ALIGN_RE.search(style)
    return m.group(1).lower() if m else None


def cell_alignment(cell: ElementNode):
    """Alignment of a table cell: its own style, else its first ``<p>`` child."""
    alignment = extract_text_alignment(cell)
    if alignment is None:
        for child in cell.elements():
            if child.tag == "p":
                alignment = extract_text_alignment(child)
                break
    return alignment


def is_nbsp_only_paragraph(node: ElementNode) -> bool:
    """True for intentional spacing paragraphs such as ``<p>&nbsp;</p>``."""
    text = []
    for child in node.children:
        if isinstance(child, ElementNode):
            return False
        text.append(child.text)
    trimmed = "".join(text).strip(" \t\r\n")
    return trimmed != "" and trimmed.replace("\u00a0", "") == ""


def extract_table_rows(node: ElementNode):
    """Collect ``<tr>`` elements in document order, looking through thead/tbody/tfoot."""
    rows = []
    for child in node.elements():
        if child.tag == "tr":
            rows.append(child)
        elif child.tag in TABLE_SECTION_TAGS:
            rows.extend(extract_table_rows(child))
    return rows


def _is_blank_text(node) -> bool:
    return isinstance(node, TextNode) and node.text.strip(" \t\r\n") == ""


def significant_children(node: ElementNode):
    """
    Children of a block-level container, without layout whitespace.

    Whitespace-only text at the edges or next to a block element is source
    formatting (``</p>\\n<table>``), not content, and is skipped.
    """
    children = node.children
    result = []
    for idx, child in enumerate(children):
        if _is_blank_text(child):
            prev_node = children[idx - 1] if idx > 0 else None
            next_node = children[idx + 1] if idx + 1 < len(children) else None
            if prev_node is None or next_node is None:
                continue
            if isinstance(prev_node, ElementNode) and prev_node.is_block:
                continue
            if isinstance(next_node, ElementNode) and next_node.is_block:
                continue
        result.append(child)
    return result


def fragment_is_block(root: ElementNode) -> bool:
    """True when the fragment has a top-level block element (paragraph, table, list, heading)."""
    return any(child.is_block for child in root.elements())
