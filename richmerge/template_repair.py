"""
Repair of Jinja placeholders that Word split across several runs.

Editing a template in Word often leaves ``{{ name }}`` as ``{{ na`` + ``me }}``
in two runs with identical formatting, and docxtpl then cannot see the tag.
Runs holding one placeholder are merged into the first of them, as long as
they only carry text.
"""
import io
import logging
import re
import zipfile
from typing import Dict, List, Tuple

from docx.oxml.ns import qn
from lxml import etree

from .errors import TemplateError, XmlParseError
from .settings import XML_NS

logger = logging.getLogger(__name__)

# {{ }} / {% %} / {# #}
PLACEHOLDER_RE = re.compile(r"({{.*?}}|{%.+?%}|{#.+?#})", re.DOTALL)
TEMPLATE_PART_RE = re.compile(r"^word/[^/]+\.xml$")

_TEXT_CHILDREN = {qn("w:t"): None, qn("w:tab"): "\t", qn("w:br"): "\n", qn("w:cr"): "\n"}
SIMPLE_RUN_CHILDREN = {qn("w:rPr")} | set(_TEXT_CHILDREN)


def is_simple_run(run: etree._Element) -> bool:
    """Only rPr plus text, tabs and breaks. Fields, drawings and objects are left alone."""
    return all(child.tag in SIMPLE_RUN_CHILDREN for child in run)


def run_text(run: etree._Element) -> str:
    parts = []
    for child in run:
        if child.tag not in _TEXT_CHILDREN:
            continue
        fixed = _TEXT_CHILDREN[child.tag]
        parts.append((child.text or "") if fixed is None else fixed)
    return "".join(parts)


def paragraph_text_map(paragraph: etree._Element) -> Tuple[str, List[int], List[etree._Element]]:
    """Visible text of the paragraph's runs and, per character, the index of its run."""
    runs = paragraph.findall(qn("w:r"))
    text = []
    owners = []
    for idx, run in enumerate(runs):
        value = run_text(run)
        text.append(value)
        owners.extend([idx] * len(value))
    return "".join(text), owners, runs


def set_run_text(run: etree._Element, text: str) -> None:
    for child in list(run):
        if child.tag in _TEXT_CHILDREN:
            run.remove(child)
    for idx, line in enumerate(text.split("\n")):
        if idx:
            etree.SubElement(run, qn("w:br"))
        for jdx, chunk in enumerate(line.split("\t")):
            if jdx:
                etree.SubElement(run, qn("w:tab"))
            if chunk:
                t = etree.SubElement(run, qn("w:t"))
                if chunk != chunk.strip():
                    t.set(f"{{{XML_NS}}}space", "preserve")
                t.text = chunk


def repair_paragraph(paragraph: etree._Element) -> int:
    """Merge the runs of every placeholder split across runs. Returns the number of merges."""
    merges = 0
    position = 0
    while True:
        text, owners, runs = paragraph_text_map(paragraph)
        m = PLACEHOLDER_RE.search(text, position)
        if m is None:
            return merges
        position = m.end()
        first, last = owners[m.start()], owners[m.end() - 1]
        if first == last:
            continue
        if not all(is_simple_run(run) for run in runs[first:last + 1]):
            logger.debug("Placeholder %r spans non-text runs, left as is", m.group(0))
            continue
        merged = "".join(run_text(run) for run in runs[first:last + 1])
        set_run_text(runs[first], merged)
        for run in runs[first + 1:last + 1]:
            paragraph.remove(run)
        merges += 1


def repair_part(xml: bytes) -> Tuple[int, bytes]:
    try:
        root = etree.fromstring(xml, etree.XMLParser(resolve_entities=False, huge_tree=True))
    except etree.XMLSyntaxError as exc:
        raise XmlParseError("could not parse template part", str(exc)) from exc
    merges = sum(repair_paragraph(p) for p in root.iter(qn("w:p")))
    if not merges:
        return 0, xml
    return merges, etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True)


def repair_split_placeholders(files: Dict[str, bytes]) -> int:
    """Repair every ``word/*.xml`` part of an in-memory package; returns the total merges."""
    total = 0
    for name in sorted(files):
        if not TEMPLATE_PART_RE.match(name):
            continue
        try:
            merges, data = repair_part(files[name])
        except XmlParseError as exc:
            logger.warning("Skipping %s: %s", name, exc)
            continue
        if merges:
            files[name] = data
            logger.debug("%s: merged %d split placeholder(s)", name, merges)
        total += merges
    return total


def repaired_template_bytes(template_path: str) -> bytes:
    """Read a .docx template, repair its split placeholders and return the new package bytes."""
    try:
        with zipfile.ZipFile(template_path, "r") as zin:
            infos = zin.infolist()
            files = {info.filename: zin.read(info.filename) for info in infos}
    except (OSError, zipfile.BadZipFile) as exc:
        raise TemplateError(f"cannot read template {template_path}", str(exc)) from exc

    merges = repair_split_placeholders(files)
    if merges:
        logger.info("Merged %d split placeholder(s) in %s", merges, template_path)

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zout:
        for info in infos:
            zout.writestr(info, files[info.filename])
    return buf.getvalue()
