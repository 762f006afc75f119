"""
OpenDocument output for HTML fragments.

Generated content is a flat sequence of items: plain strings and inline
elements (``text:span``, ``text:a``, ``text:line-break`` ...) belong inside a
paragraph, while ``text:p`` and ``table:table`` items are blocks that must
become siblings of the paragraph the fragment was merged into.
"""
import copy
import logging
import re
from typing import Dict, List, Optional, Tuple, Union

from lxml import etree

from .errors import XmlParseError
from .formatting import PLAIN, FormattingContext
from .html_parser import (
    CELL_TAGS,
    HEADING_TAGS,
    ElementNode,
    TextNode,
    cell_alignment,
    extract_table_rows,
    extract_text_alignment,
    is_nbsp_only_paragraph,
    parse_html,
    significant_children,
)
from .matching import OBJECT_MARK, CoalescedText, ensure_lookup, iter_matches
from .odt_styles import StyleRegistry
from .settings import ODF_NS, TABLE_NS, TEXT_NS, XLINK_NS, ConversionSettings, resolve_settings

logger = logging.getLogger(__name__)

Item = Union[str, etree._Element]

P_TAG = f"{{{TEXT_NS}}}p"
H_TAG = f"{{{TEXT_NS}}}h"
LINE_BREAK_TAG = f"{{{TEXT_NS}}}line-break"
TAB_TAG = f"{{{TEXT_NS}}}tab"
SPACE_TAG = f"{{{TEXT_NS}}}s"
TABLE_TAG = f"{{{TABLE_NS}}}table"
STYLE_NAME_ATTR = f"{{{TEXT_NS}}}style-name"

_BLOCK_ITEM_TAGS = (P_TAG, TABLE_TAG)
_CONTAINER_TAGS = frozenset({"p", "div", "section", "article", "blockquote", "address"})
_SPACES_RE = re.compile(r"( {2,})")


def _odf(name: str, attrs: Optional[Dict[str, str]] = None) -> etree._Element:
    prefix, local = name.split(":", 1)
    el = etree.Element(f"{{{ODF_NS[prefix]}}}{local}", nsmap={prefix: ODF_NS[prefix]})
    for attr, value in (attrs or {}).items():
        attr_prefix, attr_local = attr.split(":", 1)
        ns = XLINK_NS if attr_prefix == "xlink" else ODF_NS[attr_prefix]
        el.set(f"{{{ns}}}{attr_local}", value)
    return el


def is_block_item(item: Item) -> bool:
    return not isinstance(item, str) and item.tag in _BLOCK_ITEM_TAGS


def append_inline(parent: etree._Element, item: Item) -> None:
    """Append a string or inline element after the current last child of ``parent``."""
    if isinstance(item, str):
        if not item:
            return
        if len(parent):
            last = parent[-1]
            last.tail = (last.tail or "") + item
        else:
            parent.text = (parent.text or "") + item
    else:
        parent.append(item)


def trim_trailing_breaks(items: List[Item]) -> None:
    while items:
        last = items[-1]
        if isinstance(last, str):
            trimmed = last.rstrip("\r\n")
            if trimmed != last:
                if not trimmed:
                    items.pop()
                    continue
                items[-1] = trimmed
            break
        if last.tag == LINE_BREAK_TAG:
            items.pop()
            continue
        break


def trim_paragraph_breaks(paragraph: etree._Element) -> None:
    while len(paragraph):
        last = paragraph[-1]
        if last.tag != LINE_BREAK_TAG or (last.tail or "").strip("\r\n"):
            return
        paragraph.remove(last)


class OdtBuilder:
    """Converts parsed HTML fragments into ODF items."""

    def __init__(self, styles: Optional[StyleRegistry] = None, settings: Optional[ConversionSettings] = None):
        self.settings = resolve_settings(settings)
        self.styles = styles if styles is not None else StyleRegistry(self.settings)

    def build_items(self, html: str) -> List[Item]:
        html = (html or "").strip()
        if not html:
            return []
        return self.convert_root(parse_html(html))

    def convert_root(self, root: ElementNode) -> List[Item]:
        items = self._convert_nodes(significant_children(root), PLAIN)
        trim_trailing_breaks(items)
        return items

    def _convert_nodes(self, nodes, ctx: FormattingContext) -> List[Item]:
        items: List[Item] = []
        for node in nodes:
            items.extend(self._convert_node(node, ctx))
        return items

    def _convert_node(self, node, ctx: FormattingContext) -> List[Item]:
        if isinstance(node, TextNode):
            return self._text_items(node.text, ctx)
        tag = node.tag
        if tag == "br":
            return [_odf("text:line-break")]
        if tag in HEADING_TAGS:
            return self._heading(node)
        if tag == "table":
            table = self._table(node, ctx)
            return [table] if table is not None else []
        if tag in ("ul", "ol"):
            return self._list_paragraphs(node, ctx, tag == "ol", 0)
        if tag in _CONTAINER_TAGS:
            if any(child.is_block for child in node.elements()):
                return self._convert_nodes(significant_children(node), ctx)
            return self._paragraph_for(node, ctx)
        if tag in ("li", "tr") or tag in CELL_TAGS:
            items = self._convert_nodes(significant_children(node), ctx)
            return items + [_odf("text:line-break")]
        child_ctx = ctx.descend(node)
        items = self._convert_nodes(node.children, child_ctx)
        if not items and tag == "a" and child_ctx.link:
            items = self._wrap([child_ctx.link], child_ctx)
        return items

    def _text_items(self, text: str, ctx: FormattingContext) -> List[Item]:
        if not text:
            return []
        parts = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        items: List[Item] = []
        for idx, part in enumerate(parts):
            if part:
                items.extend(self._wrap([part], ctx))
            if idx < len(parts) - 1:
                items.append(_odf("text:line-break"))
        return items

    def _wrap(self, items: List[Item], ctx: FormattingContext) -> List[Item]:
        """Nest ``items`` in spans for each active flag, and in ``text:a`` for a link."""
        if not items:
            return items
        for flag, key in ((ctx.bold, "bold"), (ctx.italic, "italic"), (ctx.underline, "underline")):
            if flag:
                span = _odf("text:span", {"text:style-name": self.styles.require(key)})
                for item in items:
                    append_inline(span, item)
                items = [span]
        if ctx.link:
            link = _odf("text:a", {
                "xlink:href": ctx.link,
                "xlink:type": "simple",
                "text:style-name": self.styles.require("link"),
            })
            for item in items:
                append_inline(link, item)
            items = [link]
        return items

    def _new_paragraph(self, alignment: Optional[str] = None) -> etree._Element:
        paragraph = _odf("text:p")
        style = self.styles.alignment_style(alignment)
        if style:
            paragraph.set(STYLE_NAME_ATTR, style)
        return paragraph

    def _fill(self, paragraph: etree._Element, items: List[Item]) -> etree._Element:
        trim_trailing_breaks(items)
        for item in items:
            append_inline(paragraph, item)
        return paragraph

    def _paragraph_for(self, node: ElementNode, ctx: FormattingContext) -> List[Item]:
        items = self._convert_nodes(significant_children(node), ctx)
        spacing = is_nbsp_only_paragraph(node)
        trim_trailing_breaks(items)
        if not items and not spacing:
            return []
        paragraph = self._new_paragraph(extract_text_alignment(node))
        if items:
            self._fill(paragraph, items)
        else:
            paragraph.text = "\u00a0"
        return [paragraph]

    def _heading(self, heading: ElementNode) -> List[Item]:
        items = self._convert_nodes(significant_children(heading), PLAIN.with_bold())
        paragraph = self._fill(self._new_paragraph(extract_text_alignment(heading)), items)
        return [_odf("text:p"), paragraph, _odf("text:p")]

    def _list_paragraphs(self, list_node: ElementNode, ctx: FormattingContext,
                         ordered: bool, depth: int) -> List[Item]:
        paragraphs: List[Item] = []
        indent = self.settings.indent_unit * depth
        index = 1
        for item in list_node.elements():
            if item.tag != "li":
                continue
            prefix = f"{indent}{index}. " if ordered else f"{indent}{self.settings.bullet} "
            items = self._wrap([prefix], ctx)
            nested = []
            for child in significant_children(item):
                if isinstance(child, ElementNode) and child.tag in ("ul", "ol"):
                    nested.append(child)
                    continue
                if (isinstance(child, ElementNode) and child.tag in _CONTAINER_TAGS
                        and not any(grandchild.is_block for grandchild in child.elements())):
                    items.extend(self._convert_nodes(significant_children(child), ctx))
                    items.append(_odf("text:line-break"))
                    continue
                items.extend(self._convert_node(child, ctx))
            paragraphs.append(self._fill(self._new_paragraph(), [i for i in items if not is_block_item(i)]))
            paragraphs.extend(i for i in items if is_block_item(i))
            for sub in nested:
                paragraphs.extend(self._list_paragraphs(sub, ctx, sub.tag == "ol", depth + 1))
            index += 1
        return paragraphs

    def _table(self, table: ElementNode, ctx: FormattingContext) -> Optional[etree._Element]:
        rows = extract_table_rows(table)
        if not rows:
            return None
        row_elements = []
        max_columns = 0
        for row in rows:
            row_element = _odf("table:table-row")
            for cell in row.elements():
                if cell.tag not in CELL_TAGS:
                    continue
                row_element.append(self._table_cell(cell, ctx))
            if len(row_element):
                row_elements.append(row_element)
                max_columns = max(max_columns, len(row_element))
        if not row_elements:
            return None

        element = _odf("table:table", {"table:style-name": self.styles.require("table")})
        for _ in range(max_columns):
            element.append(_odf("table:table-column"))
        for row_element in row_elements:
            element.append(row_element)
        return element

    def _table_cell(self, cell: ElementNode, ctx: FormattingContext) -> etree._Element:
        cell_ctx = ctx.with_bold() if cell.tag == "th" else ctx
        alignment = cell_alignment(cell)
        element = _odf("table:table-cell", {
            "table:style-name": self.styles.require("table_cell"),
            "office:value-type": "string",
        })
        items = self._convert_nodes(significant_children(cell), cell_ctx)
        current = None
        for item in items:
            if is_block_item(item):
                if current is not None:
                    trim_paragraph_breaks(current)
                element.append(item)
                current = None
                continue
            if current is None:
                current = self._new_paragraph(alignment)
                element.append(current)
            append_inline(current, item)
        if current is not None:
            trim_paragraph_breaks(current)
        if alignment:
            for paragraph in element.iterchildren(P_TAG):
                if paragraph.get(STYLE_NAME_ATTR) is None:
                    style = self.styles.alignment_style(alignment)
                    if style:
                        paragraph.set(STYLE_NAME_ATTR, style)
        if len(element) == 0 or element[-1].tag == TABLE_TAG:
            element.append(self._new_paragraph(alignment))
        return element


def coalesce_paragraph(paragraph: etree._Element) -> CoalescedText:
    """
    Concatenate the direct text of an ODF paragraph.

    Span sources are ``None`` for character data and the child element for
    ``text:line-break``/``text:tab``/``text:s`` and opaque children.
    """
    coalesced = CoalescedText()
    if paragraph.text:
        coalesced.add(None, paragraph.text)
    for child in paragraph:
        if child.tag == LINE_BREAK_TAG:
            coalesced.add(child, "\n")
        elif child.tag == TAB_TAG:
            coalesced.add(child, "\t")
        elif child.tag == SPACE_TAG:
            try:
                count = int(child.get(f"{{{TEXT_NS}}}c", "1"))
            except ValueError:
                count = 1
            coalesced.add(child, " " * max(count, 1))
        else:
            coalesced.add(child, OBJECT_MARK)
        if child.tail:
            coalesced.add(None, child.tail)
    return coalesced


def raw_text_items(text: str) -> List[Item]:
    """Re-encode document text: line breaks, tabs and runs of spaces become ODF elements."""
    items: List[Item] = []
    buf = []

    def flush():
        if not buf:
            return
        chunk = "".join(buf)
        buf.clear()
        for piece in _SPACES_RE.split(chunk):
            if not piece:
                continue
            if piece.startswith("  ") and not piece.strip(" "):
                items.append(" ")
                items.append(_odf("text:s", {"text:c": str(len(piece) - 1)}))
            else:
                items.append(piece)

    for ch in text:
        if ch == "\n":
            flush()
            items.append(_odf("text:line-break"))
        elif ch == "\t":
            flush()
            items.append(_odf("text:tab"))
        elif ch != OBJECT_MARK:
            buf.append(ch)
    flush()
    return items


class OdtPartConverter:
    """Rewrites the paragraphs of one ODF XML part."""

    def __init__(self, lookup: Dict[str, str], styles: Optional[StyleRegistry] = None,
                 settings: Optional[ConversionSettings] = None):
        self.lookup = lookup
        self.builder = OdtBuilder(styles, settings)
        self._trees: Dict[str, ElementNode] = {}

    @property
    def styles(self) -> StyleRegistry:
        return self.builder.styles

    def _items(self, fragment: str) -> List[Item]:
        if fragment not in self._trees:
            self._trees[fragment] = parse_html(fragment)
        return self.builder.convert_root(self._trees[fragment])

    def convert_tree(self, root: etree._Element) -> bool:
        modified = False
        paragraphs = [el for el in root.iter(P_TAG, H_TAG)]
        for paragraph in paragraphs:
            if paragraph.getparent() is None:
                continue
            if self.convert_paragraph(paragraph):
                modified = True
        return modified

    def convert_paragraph(self, paragraph: etree._Element) -> bool:
        coalesced = coalesce_paragraph(paragraph)
        if not coalesced.text.strip():
            return False
        normalized = coalesced.normalized()
        matches = [
            (normalized.raw_offset(m.position), normalized.raw_end(m.end), m.fragment)
            for m in iter_matches(normalized.text, self.lookup)
        ]
        if not matches:
            return False
        logger.debug("Paragraph has %d rich fragment(s): %.120r", len(matches), coalesced.text)

        items: List[Item] = []
        pos = 0
        for start, end, fragment in matches:
            items.extend(self._gap_items(coalesced, pos, start))
            items.extend(self._items(fragment))
            pos = end
        items.extend(self._gap_items(coalesced, pos, len(coalesced.text)))

        self._distribute(paragraph, items)
        return True

    @staticmethod
    def _gap_items(coalesced: CoalescedText, gap_start: int, gap_end: int) -> List[Item]:
        items: List[Item] = []
        if gap_end <= gap_start:
            return items
        for span in coalesced.overlapping(gap_start, gap_end):
            lo, hi = max(span.start, gap_start), min(span.end, gap_end)
            if span.source is not None and span.start >= gap_start and span.end <= gap_end:
                clone = copy.deepcopy(span.source)
                clone.tail = None
                items.append(clone)
            else:
                items.extend(raw_text_items(coalesced.text[lo:hi]))
        return items

    def _distribute(self, paragraph: etree._Element, items: List[Item]) -> None:
        """
        Refill ``paragraph`` with inline items; blocks become following siblings.

        Inline items after a block go into a fresh paragraph carrying the
        original paragraph's attributes.
        """
        attrs = dict(paragraph.attrib)
        style_name = paragraph.get(STYLE_NAME_ATTR)
        for child in list(paragraph):
            paragraph.remove(child)
        paragraph.text = None

        anchor = paragraph
        current: Optional[etree._Element] = paragraph
        created: List[etree._Element] = []
        has_block = False
        for item in items:
            if is_block_item(item):
                if current is not None:
                    trim_paragraph_breaks(current)
                if item.tag == P_TAG and style_name and item.get(STYLE_NAME_ATTR) is None:
                    item.set(STYLE_NAME_ATTR, style_name)
                anchor.addnext(item)
                anchor = item
                current = None
                has_block = True
                continue
            if current is None:
                current = paragraph.makeelement(paragraph.tag, attrs)
                anchor.addnext(current)
                anchor = current
                created.append(current)
            append_inline(current, item)

        for clone in created:
            if _is_blank(clone):
                clone.getparent().remove(clone)
        if has_block and _is_blank(paragraph):
            paragraph.getparent().remove(paragraph)


def _is_blank(paragraph: etree._Element) -> bool:
    return len(paragraph) == 0 and not (paragraph.text or "").strip(" \t\r\n")


def _to_bytes(xml: Union[str, bytes]) -> bytes:
    return xml.encode("utf-8") if isinstance(xml, str) else xml


def parse_part(xml: Union[str, bytes]) -> etree._Element:
    try:
        return etree.fromstring(_to_bytes(xml), etree.XMLParser(resolve_entities=False, huge_tree=True))
    except etree.XMLSyntaxError as exc:
        raise XmlParseError("could not parse XML part", str(exc)) from exc


def serialize_part(root: etree._Element, like: Union[str, bytes]) -> Union[str, bytes]:
    data = etree.tostring(root, xml_declaration=True, encoding="UTF-8")
    return data.decode("utf-8") if isinstance(like, str) else data


def convert_odt_part(xml: Union[str, bytes], lookup, styles: Optional[StyleRegistry] = None,
                     settings: Optional[ConversionSettings] = None) -> Tuple[bool, Union[str, bytes]]:
    """
    Replace literal HTML fragments in an ODF ``content.xml`` or ``styles.xml``.

    The styles the new content references are declared in the part's own
    ``office:automatic-styles``. Returns ``(changed, xml)``.
    """
    rich_lookup = ensure_lookup(lookup)
    if not rich_lookup:
        return False, xml
    try:
        root = parse_part(xml)
    except XmlParseError as exc:
        logger.warning("Skipping unparseable ODF part: %s", exc)
        return False, xml
    converter = OdtPartConverter(rich_lookup, styles, settings)
    try:
        if not converter.convert_tree(root):
            return False, xml
        converter.styles.materialize(root)
    except ValueError as exc:
        logger.warning("Skipping ODF part after conversion error: %s", exc)
        return False, xml
    return True, serialize_part(root, xml)
