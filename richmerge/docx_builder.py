"""
WordprocessingML output for HTML fragments.

``DocxBuilder`` turns a parsed fragment into ``w:p``/``w:tbl`` blocks or into
inline ``w:r``/``w:hyperlink`` nodes. ``DocxPartConverter`` finds the merged
literal HTML inside the paragraphs of one part and swaps the runs that hold
it for the converted nodes.
"""
import copy
import logging
from typing import Dict, List, NamedTuple, Optional, Tuple, Union

from docx.oxml.ns import qn
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
    fragment_is_block,
    parse_html,
    significant_children,
)
from .matching import OBJECT_MARK, CoalescedText, ensure_lookup, iter_matches
from .relationships import RelationshipRegistry
from .settings import R_NS, W_NS, XML_NS, ConversionSettings, resolve_settings

logger = logging.getLogger(__name__)


_JC_VALUES = {"center": "center", "right": "right", "justify": "both"}
_BORDER_EDGES = ("top", "left", "bottom", "right", "insideH", "insideV")
_CONTAINER_TAGS = frozenset({"p", "div", "section", "article", "blockquote", "address"})

# CT_RPr child order; formatting flags are inserted at their schema position.
_RPR_ORDER = [
    "rStyle", "rFonts", "b", "bCs", "i", "iCs", "caps", "smallCaps", "strike",
    "dstrike", "outline", "shadow", "emboss", "imprint", "noProof", "snapToGrid",
    "vanish", "webHidden", "color", "spacing", "w", "kern", "position", "sz",
    "szCs", "highlight", "u", "effect", "bdr", "shd", "fitText", "vertAlign",
    "rtl", "cs", "em", "lang", "eastAsianLayout", "specVanish", "oMath",
]
_RPR_RANK = {qn("w:" + name): idx for idx, name in enumerate(_RPR_ORDER)}

_RUN_TEXT_CHILDREN = {
    qn("w:tab"): "\t",
    qn("w:br"): "\n",
    qn("w:cr"): "\n",
    qn("w:noBreakHyphen"): "\u2011",
    qn("w:softHyphen"): "\u00ad",
}
_RUN_IGNORED_CHILDREN = {qn("w:rPr"), qn("w:lastRenderedPageBreak")}
# Run wrappers dropped once a replacement leaves them without children.
_PRUNABLE_WRAPPERS = frozenset({qn("w:ins"), qn("w:smartTag"), qn("w:customXml"), qn("w:hyperlink")})


class ConversionResult(NamedTuple):
    block: bool
    nodes: list


def _w(tag: str, attrs: Optional[Dict[str, str]] = None) -> etree._Element:
    el = etree.Element(qn(tag), nsmap={"w": W_NS})
    for name, value in (attrs or {}).items():
        el.set(qn(name), value)
    return el


def _set_rpr_flag(rpr: etree._Element, tag: str, attrs: Optional[Dict[str, str]] = None) -> None:
    full = qn(tag)
    for existing in rpr.findall(full):
        rpr.remove(existing)
    new = _w(tag, attrs)
    rank = _RPR_RANK.get(full, len(_RPR_ORDER))
    for idx, child in enumerate(rpr):
        if _RPR_RANK.get(child.tag, len(_RPR_ORDER)) > rank:
            rpr.insert(idx, new)
            return
    rpr.append(new)


def clone_run_properties(run: etree._Element) -> Optional[etree._Element]:
    rpr = run.find(qn("w:rPr"))
    return copy.deepcopy(rpr) if rpr is not None else None


def run_is_break(run) -> bool:
    return run is not None and run.tag == qn("w:r") and run.find(qn("w:br")) is not None


def trim_trailing_break_runs(runs: list) -> None:
    while runs and run_is_break(runs[-1]):
        runs.pop()


def _set_text(t: etree._Element, text: str, preserve: bool) -> None:
    if preserve:
        t.set(f"{{{XML_NS}}}space", "preserve")
    t.text = text


class DocxBuilder:
    """Converts parsed HTML fragments into WordprocessingML elements."""

    def __init__(self, relationships: Optional[RelationshipRegistry] = None,
                 settings: Optional[ConversionSettings] = None):
        self.relationships = relationships
        self.settings = resolve_settings(settings)

    # -- entry points -----------------------------------------------------

    def build_nodes(self, html: str, base_rpr=None) -> ConversionResult:
        html = (html or "").strip()
        if not html:
            return ConversionResult(False, [])
        return self.convert_root(parse_html(html), base_rpr)

    def convert_root(self, root: ElementNode, base_rpr=None) -> ConversionResult:
        result = self._convert_children(significant_children(root), base_rpr, PLAIN, allow_inline=True)
        if not result.nodes:
            return ConversionResult(False, [])
        return result

    def build_inline_runs(self, html: str, base_rpr=None) -> list:
        html = (html or "").strip()
        if not html:
            return []
        return self.inline_runs(parse_html(html), base_rpr)

    def inline_runs(self, root: ElementNode, base_rpr=None) -> list:
        """Flatten a fragment, block elements included, into runs that fit inside one ``w:p``."""
        runs = self._runs_from_children(significant_children(root), base_rpr, PLAIN)
        trim_trailing_break_runs(runs)
        return runs

    # -- block level ------------------------------------------------------

    def _convert_children(self, nodes, base_rpr, ctx: FormattingContext, allow_inline: bool) -> ConversionResult:
        result: list = []
        current: list = []
        has_block = False

        for node in nodes:
            if isinstance(node, TextNode):
                current.extend(self._runs_from_text(node.text, base_rpr, ctx))
                continue
            if not node.is_block:
                current.extend(self._runs_from_element(node, base_rpr, ctx))
                continue

            if current:
                result.append(self.paragraph(current, base_rpr))
                current = []
            has_block = True
            result.extend(self._block_nodes(node, base_rpr, ctx))

        if current and (has_block or not allow_inline):
            result.append(self.paragraph(current, base_rpr))
            current = []

        if has_block or not allow_inline:
            return ConversionResult(True, result)
        return ConversionResult(False, current)

    def _block_nodes(self, node: ElementNode, base_rpr, ctx: FormattingContext, alignment=None) -> list:
        tag = node.tag
        if tag in HEADING_TAGS:
            return self._heading_paragraphs(node, base_rpr)
        if tag == "table":
            table = self._table(node, base_rpr)
            return [table] if table is not None else []
        if tag in ("ul", "ol"):
            return self._list_paragraphs(node, base_rpr, ctx, tag == "ol")
        own_alignment = extract_text_alignment(node) or alignment
        if tag in _CONTAINER_TAGS and any(child.is_block for child in node.elements()):
            nested = self._convert_children(significant_children(node), base_rpr, ctx, allow_inline=False)
            return nested.nodes
        runs = self._runs_from_children(significant_children(node), base_rpr, ctx)
        return [self.paragraph(runs, base_rpr, own_alignment)]

    def _heading_paragraphs(self, heading: ElementNode, base_rpr) -> list:
        runs = self._runs_from_children(significant_children(heading), base_rpr, PLAIN.with_bold())
        return [
            self.blank_paragraph(base_rpr),
            self.paragraph(runs, base_rpr, extract_text_alignment(heading)),
            self.blank_paragraph(base_rpr),
        ]

    def _list_paragraphs(self, list_node: ElementNode, base_rpr, ctx: FormattingContext,
                         ordered: bool, depth: int = 0) -> list:
        paragraphs = []
        indent = self.settings.indent_unit * depth
        index = 1
        for item in list_node.elements():
            if item.tag != "li":
                continue
            prefix = f"{indent}{index}. " if ordered else f"{indent}{self.settings.bullet} "
            runs = [self._text_run(prefix, base_rpr, ctx)]
            nested = []
            for child in significant_children(item):
                if isinstance(child, ElementNode) and child.tag in ("ul", "ol"):
                    nested.append(child)
                    continue
                runs.extend(self._runs_from_node(child, base_rpr, ctx))
            paragraphs.append(self.paragraph(runs, base_rpr))
            for sub in nested:
                paragraphs.extend(self._list_paragraphs(sub, base_rpr, ctx, sub.tag == "ol", depth + 1))
            index += 1
        return paragraphs

    def _table(self, table: ElementNode, base_rpr) -> Optional[etree._Element]:
        rows = extract_table_rows(table)
        if not rows:
            return None

        tbl = _w("w:tbl")
        tbl_pr = etree.SubElement(tbl, qn("w:tblPr"))
        etree.SubElement(tbl_pr, qn("w:tblW"), {qn("w:w"): "0", qn("w:type"): "auto"})
        borders = etree.SubElement(tbl_pr, qn("w:tblBorders"))
        for edge in _BORDER_EDGES:
            etree.SubElement(borders, qn("w:" + edge), {
                qn("w:val"): "single",
                qn("w:sz"): self.settings.docx_border_size,
                qn("w:space"): "0",
                qn("w:color"): "000000",
            })

        row_elements = []
        max_columns = 0
        for row in rows:
            tr = _w("w:tr")
            for cell in row.elements():
                if cell.tag not in CELL_TAGS:
                    continue
                tr.append(self._table_cell(cell, base_rpr))
            if len(tr):
                row_elements.append(tr)
                max_columns = max(max_columns, len(tr))
        if not row_elements:
            return None

        grid = etree.SubElement(tbl, qn("w:tblGrid"))
        for _ in range(max_columns):
            etree.SubElement(grid, qn("w:gridCol"))
        for tr in row_elements:
            tbl.append(tr)
        return tbl

    def _table_cell(self, cell: ElementNode, base_rpr) -> etree._Element:
        ctx = PLAIN.with_bold() if cell.tag == "th" else PLAIN
        alignment = cell_alignment(cell)
        tc = _w("w:tc")
        for node in self._cell_content(significant_children(cell), base_rpr, ctx, alignment):
            tc.append(node)
        if len(tc) == 0 or tc[-1].tag == qn("w:tbl"):
            tc.append(self.blank_paragraph(base_rpr))
        return tc

    def _cell_content(self, children, base_rpr, ctx: FormattingContext, alignment=None) -> list:
        result: list = []
        current: list = []
        for child in children:
            if isinstance(child, TextNode):
                current.extend(self._runs_from_text(child.text, base_rpr, ctx))
                continue
            if not child.is_block:
                current.extend(self._runs_from_element(child, base_rpr, ctx))
                continue
            if current:
                result.append(self.paragraph(current, base_rpr, alignment))
                current = []
            if child.tag in HEADING_TAGS:
                runs = self._runs_from_children(significant_children(child), base_rpr, ctx.with_bold())
                result.append(self.paragraph(runs, base_rpr, extract_text_alignment(child) or alignment))
            else:
                result.extend(self._block_nodes(child, base_rpr, ctx, alignment))
        if current:
            result.append(self.paragraph(current, base_rpr, alignment))
        return result

    def paragraph(self, runs: list, base_rpr, alignment=None) -> etree._Element:
        paragraph = _w("w:p")
        if alignment and alignment in _JC_VALUES:
            p_pr = etree.SubElement(paragraph, qn("w:pPr"))
            etree.SubElement(p_pr, qn("w:jc"), {qn("w:val"): _JC_VALUES[alignment]})
        runs = [run for run in runs if run is not None]
        trim_trailing_break_runs(runs)
        for run in runs:
            paragraph.append(run)
        if not runs:
            paragraph.append(self.blank_run(base_rpr))
        return paragraph

    # -- inline level -----------------------------------------------------

    def _runs_from_children(self, children, base_rpr, ctx: FormattingContext) -> list:
        runs = []
        for child in children:
            runs.extend(self._runs_from_node(child, base_rpr, ctx))
        return runs

    def _runs_from_node(self, node, base_rpr, ctx: FormattingContext) -> list:
        if isinstance(node, TextNode):
            return self._runs_from_text(node.text, base_rpr, ctx)
        return self._runs_from_element(node, base_rpr, ctx)

    def _runs_from_text(self, text: str, base_rpr, ctx: FormattingContext) -> list:
        parts = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        runs = []
        for idx, part in enumerate(parts):
            if part:
                runs.append(self._text_run(part, base_rpr, ctx))
            if idx < len(parts) - 1:
                runs.append(self._break_run(base_rpr))
        return runs

    def _runs_from_element(self, element: ElementNode, base_rpr, ctx: FormattingContext) -> list:
        tag = element.tag
        if tag == "br":
            return [self._break_run(base_rpr)]
        if tag == "a":
            return self._link_runs(element, base_rpr, ctx)
        if tag in ("ul", "ol"):
            runs = []
            for line_runs in self._flat_list_lines(element, base_rpr, ctx, tag == "ol", 0):
                runs.extend(line_runs)
                runs.append(self._break_run(base_rpr))
            return runs
        if tag == "table":
            return self._flat_table_runs(element, base_rpr, ctx)
        if tag in HEADING_TAGS:
            runs = self._runs_from_children(significant_children(element), base_rpr, ctx.with_bold())
            return runs + [self._break_run(base_rpr)]
        if element.is_block or tag in ("li", "tr"):
            runs = self._runs_from_children(significant_children(element), base_rpr, ctx)
            return runs + [self._break_run(base_rpr)]
        return self._runs_from_children(element.children, base_rpr, ctx.descend(element))

    def _link_runs(self, element: ElementNode, base_rpr, ctx: FormattingContext) -> list:
        href = element.get("href").strip()
        nested_link = ctx.link is not None
        link_ctx = ctx.descend(element)
        runs = self._runs_from_children(element.children, base_rpr, link_ctx)
        if not runs and href:
            runs = [self._text_run(href, base_rpr, link_ctx)]
        if href and runs and not nested_link:
            hyperlink = self._hyperlink(runs, href)
            if hyperlink is not None:
                return [hyperlink]
        return runs

    def _flat_list_lines(self, list_node: ElementNode, base_rpr, ctx, ordered: bool, depth: int) -> List[list]:
        lines = []
        indent = self.settings.indent_unit * depth
        index = 1
        for item in list_node.elements():
            if item.tag != "li":
                continue
            prefix = f"{indent}{index}. " if ordered else f"{indent}{self.settings.bullet} "
            line = [self._text_run(prefix, base_rpr, ctx)]
            nested = []
            for child in significant_children(item):
                if isinstance(child, ElementNode) and child.tag in ("ul", "ol"):
                    nested.append(child)
                else:
                    line.extend(self._runs_from_node(child, base_rpr, ctx))
            trim_trailing_break_runs(line)
            lines.append(line)
            for sub in nested:
                lines.extend(self._flat_list_lines(sub, base_rpr, ctx, sub.tag == "ol", depth + 1))
            index += 1
        return lines

    def _flat_table_runs(self, table: ElementNode, base_rpr, ctx: FormattingContext) -> list:
        runs = []
        for row in extract_table_rows(table):
            first = True
            for cell in row.elements():
                if cell.tag not in CELL_TAGS:
                    continue
                if not first:
                    runs.append(self._tab_run(base_rpr))
                first = False
                cell_ctx = ctx.with_bold() if cell.tag == "th" else ctx
                cell_runs = self._runs_from_children(significant_children(cell), base_rpr, cell_ctx)
                trim_trailing_break_runs(cell_runs)
                runs.extend(cell_runs)
            if not first:
                runs.append(self._break_run(base_rpr))
        return runs

    def _hyperlink(self, runs: list, href: str) -> Optional[etree._Element]:
        if self.relationships is None:
            return None
        r_id = self.relationships.hyperlink_id(href)
        if not r_id:
            return None
        hyperlink = etree.Element(qn("w:hyperlink"), nsmap={"w": W_NS, "r": R_NS})
        hyperlink.set(f"{{{R_NS}}}id", r_id)
        hyperlink.set(qn("w:history"), "1")
        for run in runs:
            hyperlink.append(run)
        return hyperlink

    # -- run factories ----------------------------------------------------

    def _new_run(self, base_rpr) -> etree._Element:
        run = _w("w:r")
        if base_rpr is not None:
            run.append(copy.deepcopy(base_rpr))
        return run

    def _text_run(self, text: str, base_rpr, ctx: FormattingContext) -> Optional[etree._Element]:
        if not text:
            return None
        run = self._new_run(base_rpr)
        rpr = run.find(qn("w:rPr"))
        if rpr is None:
            rpr = _w("w:rPr")
            run.insert(0, rpr)
        if ctx.link:
            _set_rpr_flag(rpr, "w:rStyle", {"w:val": "Hyperlink"})
        if ctx.bold:
            _set_rpr_flag(rpr, "w:b")
        if ctx.italic:
            _set_rpr_flag(rpr, "w:i")
        if ctx.link:
            _set_rpr_flag(rpr, "w:color", {"w:val": self.settings.link_color})
        if ctx.underline or ctx.link:
            _set_rpr_flag(rpr, "w:u", {"w:val": "single"})
        if len(rpr) == 0:
            run.remove(rpr)
        t = etree.SubElement(run, qn("w:t"))
        _set_text(t, text, text[:1].isspace() or text[-1:].isspace())
        return run

    def raw_text_run(self, text: str, base_rpr) -> Optional[etree._Element]:
        """Run re-creating document text, tabs and breaks included."""
        text = text.replace(OBJECT_MARK, "")
        if not text:
            return None
        run = self._new_run(base_rpr)
        buf = []

        def flush():
            if buf:
                t = etree.SubElement(run, qn("w:t"))
                _set_text(t, "".join(buf), True)
                buf.clear()

        for ch in text:
            if ch == "\t":
                flush()
                etree.SubElement(run, qn("w:tab"))
            elif ch == "\n":
                flush()
                etree.SubElement(run, qn("w:br"))
            else:
                buf.append(ch)
        flush()
        return run

    def _break_run(self, base_rpr) -> etree._Element:
        run = self._new_run(base_rpr)
        etree.SubElement(run, qn("w:br"))
        return run

    def _tab_run(self, base_rpr) -> etree._Element:
        run = self._new_run(base_rpr)
        etree.SubElement(run, qn("w:tab"))
        return run

    def blank_run(self, base_rpr) -> etree._Element:
        run = self._new_run(base_rpr)
        t = etree.SubElement(run, qn("w:t"))
        _set_text(t, "", True)
        return run

    def blank_paragraph(self, base_rpr) -> etree._Element:
        paragraph = _w("w:p")
        paragraph.append(self.blank_run(base_rpr))
        return paragraph


def paragraph_runs(paragraph: etree._Element) -> List[etree._Element]:
    """
    The runs of ``paragraph`` in document order, including runs wrapped in
    content controls, revisions, smart tags or hyperlinks. Runs that belong to
    a nested paragraph (text boxes) are left to that paragraph.
    """
    runs = []
    for run in paragraph.iter(qn("w:r")):
        owner = run.getparent()
        while owner is not None and owner.tag != qn("w:p"):
            owner = owner.getparent()
        if owner is paragraph:
            runs.append(run)
    return runs


def _detach(node: etree._Element, stop: etree._Element) -> None:
    parent = node.getparent()
    if parent is None:
        return
    parent.remove(node)
    while parent is not stop and parent.tag in _PRUNABLE_WRAPPERS and len(parent) == 0:
        grandparent = parent.getparent()
        grandparent.remove(parent)
        parent = grandparent


def coalesce_runs(runs: List[etree._Element]) -> CoalescedText:
    """Concatenate the visible text of ``runs``; each span's source is the run index."""
    coalesced = CoalescedText()
    for idx, run in enumerate(runs):
        for child in run:
            if child.tag == qn("w:t"):
                if child.text:
                    coalesced.add(idx, child.text)
            elif child.tag in _RUN_TEXT_CHILDREN:
                coalesced.add(idx, _RUN_TEXT_CHILDREN[child.tag])
            elif child.tag in _RUN_IGNORED_CHILDREN or not isinstance(child.tag, str):
                continue
            else:
                coalesced.add(idx, OBJECT_MARK)
    return coalesced


class _RawMatch(NamedTuple):
    start: int
    end: int
    fragment: str


class DocxPartConverter:
    """Rewrites the paragraphs of one WordprocessingML part."""

    def __init__(self, lookup: Dict[str, str], relationships: Optional[RelationshipRegistry] = None,
                 settings: Optional[ConversionSettings] = None):
        self.lookup = lookup
        self.builder = DocxBuilder(relationships, settings)
        self._trees: Dict[str, ElementNode] = {}

    def _tree(self, fragment: str) -> ElementNode:
        if fragment not in self._trees:
            self._trees[fragment] = parse_html(fragment)
        return self._trees[fragment]

    def convert_tree(self, root: etree._Element) -> bool:
        modified = False
        for paragraph in list(root.iter(qn("w:p"))):
            if paragraph.getparent() is None:
                continue
            if self.convert_paragraph(paragraph):
                modified = True
        return modified

    def convert_paragraph(self, paragraph: etree._Element) -> bool:
        runs = paragraph_runs(paragraph)
        coalesced = coalesce_runs(runs)
        if not coalesced.text:
            return False
        normalized = coalesced.normalized()
        matches = [
            _RawMatch(normalized.raw_offset(m.position), normalized.raw_end(m.end), m.fragment)
            for m in iter_matches(normalized.text, self.lookup)
        ]
        if not matches:
            return False
        logger.debug("Paragraph has %d rich fragment(s): %.120r", len(matches), coalesced.text)

        run_ranges = self._run_ranges(coalesced, len(runs))
        if self._promote(paragraph, runs, coalesced, run_ranges, matches):
            return True
        self._replace_inline(paragraph, runs, coalesced, run_ranges, matches)
        return True

    @staticmethod
    def _run_ranges(coalesced: CoalescedText, count: int) -> List[Optional[Tuple[int, int]]]:
        ranges: List[Optional[Tuple[int, int]]] = [None] * count
        for span in coalesced.spans:
            current = ranges[span.source]
            if current is None:
                ranges[span.source] = (span.start, span.end)
            else:
                ranges[span.source] = (min(current[0], span.start), max(current[1], span.end))
        return ranges

    @staticmethod
    def _run_at(run_ranges, offset: int) -> Optional[int]:
        for idx, rng in enumerate(run_ranges):
            if rng is not None and rng[0] <= offset < rng[1]:
                return idx
        return None

    def _base_rpr(self, runs, run_ranges, offset: int):
        idx = self._run_at(run_ranges, offset)
        if idx is None:
            return None
        return clone_run_properties(runs[idx])

    def _promote(self, paragraph, runs, coalesced, run_ranges, matches: List[_RawMatch]) -> bool:
        """Replace the whole paragraph by block output when nothing but whitespace surrounds the fragments."""
        leftover = []
        pos = 0
        for m in matches:
            leftover.append(coalesced.text[pos:m.start])
            pos = m.end
        leftover.append(coalesced.text[pos:])
        if "".join(leftover).strip(" \t\r\n") != "":
            return False
        if not any(fragment_is_block(self._tree(m.fragment)) for m in matches):
            return False

        container = paragraph.getparent()
        if container is None:
            return False

        nodes = []
        for m in matches:
            base_rpr = self._base_rpr(runs, run_ranges, m.start)
            tree = self._tree(m.fragment)
            result = self.builder.convert_root(tree, base_rpr)
            if result.block:
                nodes.extend(result.nodes)
            elif result.nodes:
                nodes.append(self.builder.paragraph(result.nodes, base_rpr))

        keep_paragraph = paragraph.find(f"{qn('w:pPr')}/{qn('w:sectPr')}") is not None
        for node in nodes:
            paragraph.addprevious(node)
        if keep_paragraph:
            for run in runs:
                _detach(run, paragraph)
            paragraph.append(self.builder.blank_run(None))
        else:
            container.remove(paragraph)
            if container.tag == qn("w:tc") and (len(container) == 0 or container[-1].tag == qn("w:tbl")):
                container.append(self.builder.blank_paragraph(None))
        return True

    def _replace_inline(self, paragraph, runs, coalesced, run_ranges, matches: List[_RawMatch]) -> None:
        clusters: List[List[_RawMatch]] = []
        bounds: List[Tuple[int, int]] = []
        for m in matches:
            touched = [i for i, rng in enumerate(run_ranges) if rng and rng[1] > m.start and rng[0] < m.end]
            if not touched:
                continue
            first, last = touched[0], touched[-1]
            if clusters and first <= bounds[-1][1]:
                clusters[-1].append(m)
                bounds[-1] = (bounds[-1][0], max(bounds[-1][1], last))
            else:
                clusters.append([m])
                bounds.append((first, last))

        for cluster, (first, last) in zip(clusters, bounds):
            self._replace_cluster(paragraph, runs, coalesced, run_ranges, cluster, first, last)

    def _replace_cluster(self, paragraph, runs, coalesced, run_ranges, cluster, first: int, last: int) -> None:
        start = run_ranges[first][0]
        end = run_ranges[last][1]
        new_nodes = []
        pos = start
        for m in cluster:
            new_nodes.extend(self._gap_nodes(runs, coalesced, run_ranges, first, last, pos, m.start))
            new_nodes.extend(self._inline_nodes(m.fragment, self._base_rpr(runs, run_ranges, m.start)))
            pos = m.end
        new_nodes.extend(self._gap_nodes(runs, coalesced, run_ranges, first, last, pos, end))

        anchor = runs[first]
        if not new_nodes:
            for run in runs[first:last + 1]:
                _detach(run, paragraph)
            return
        parent = anchor.getparent()
        index = parent.index(anchor)
        for run in runs[first:last + 1]:
            if run is not anchor:
                _detach(run, paragraph)
        parent.remove(anchor)
        for offset, node in enumerate(new_nodes):
            parent.insert(index + offset, node)

    def _gap_nodes(self, runs, coalesced, run_ranges, first, last, gap_start: int, gap_end: int) -> list:
        nodes = []
        if gap_end <= gap_start:
            return nodes
        for idx in range(first, last + 1):
            rng = run_ranges[idx]
            if rng is None:
                continue
            lo, hi = max(rng[0], gap_start), min(rng[1], gap_end)
            if lo >= hi:
                continue
            if rng[0] >= gap_start and rng[1] <= gap_end:
                nodes.append(runs[idx])
                continue
            run = self.builder.raw_text_run(coalesced.text[lo:hi], clone_run_properties(runs[idx]))
            if run is not None:
                nodes.append(run)
        return nodes

    def _inline_nodes(self, fragment: str, base_rpr) -> list:
        tree = self._tree(fragment)
        if fragment_is_block(tree):
            return self.builder.inline_runs(tree, base_rpr)
        return self.builder.convert_root(tree, base_rpr).nodes


def _to_bytes(xml: Union[str, bytes]) -> bytes:
    return xml.encode("utf-8") if isinstance(xml, str) else xml


def parse_part(xml: Union[str, bytes]) -> etree._Element:
    try:
        return etree.fromstring(_to_bytes(xml), etree.XMLParser(resolve_entities=False, huge_tree=True))
    except etree.XMLSyntaxError as exc:
        raise XmlParseError("could not parse XML part", str(exc)) from exc


def serialize_part(root: etree._Element, like: Union[str, bytes]) -> Union[str, bytes]:
    data = etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True)
    return data.decode("utf-8") if isinstance(like, str) else data


def convert_docx_part(xml: Union[str, bytes], lookup, relationships: Optional[RelationshipRegistry] = None,
                      settings: Optional[ConversionSettings] = None) -> Tuple[bool, Union[str, bytes]]:
    """
    Replace literal HTML fragments in a WordprocessingML part.

    Returns ``(changed, xml)``; the input is returned untouched when nothing
    matched or when the part does not parse.
    """
    rich_lookup = ensure_lookup(lookup)
    if not rich_lookup:
        return False, xml
    try:
        root = parse_part(xml)
    except XmlParseError as exc:
        logger.warning("Skipping unparseable WordprocessingML part: %s", exc)
        return False, xml
    converter = DocxPartConverter(rich_lookup, relationships, settings)
    try:
        changed = converter.convert_tree(root)
    except ValueError as exc:
        logger.warning("Skipping WordprocessingML part after conversion error: %s", exc)
        return False, xml
    if not changed:
        return False, xml
    return True, serialize_part(root, xml)
