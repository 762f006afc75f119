"""Document properties: ``docProps/core.xml`` for DOCX, ``meta.xml`` for ODT."""
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Union

from lxml import etree

from .errors import PartMissing, XmlParseError
from .settings import CP_NS, DC_NS, META_NS, OFFICE_NS

logger = logging.getLogger(__name__)


def split_keywords(keywords: Union[str, Iterable[str], None]) -> List[str]:
    if not keywords:
        return []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    return [k.strip() for k in keywords if k and k.strip()]


@dataclass
class DocumentMetadata:
    title: str = ""
    subject: str = ""
    author: str = ""
    keywords: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.keywords = split_keywords(self.keywords)

    @classmethod
    def coerce(cls, value: Union["DocumentMetadata", Mapping, None]) -> "DocumentMetadata":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls(
            title=value.get("title") or "",
            subject=value.get("subject") or "",
            author=value.get("author") or "",
            keywords=value.get("keywords") or [],
        )

    def is_empty(self) -> bool:
        return not (self.title or self.subject or self.author or self.keywords)


def _parse(xml: Union[str, bytes], what: str) -> etree._Element:
    data = xml.encode("utf-8") if isinstance(xml, str) else xml
    try:
        return etree.fromstring(data, etree.XMLParser(resolve_entities=False))
    except etree.XMLSyntaxError as exc:
        raise XmlParseError(f"could not parse {what}", str(exc)) from exc


def _set_property(container: etree._Element, ns: str, prefix: str, local: str, value: str) -> None:
    """Update the first ``prefix:local`` under ``container`` or append a new one."""
    if not value:
        return
    tag = f"{{{ns}}}{local}"
    existing = container.find(f".//{tag}")
    if existing is not None:
        for child in list(existing):
            existing.remove(child)
        existing.text = value
        return
    el = etree.SubElement(container, tag, nsmap={prefix: ns})
    el.text = value


def apply_docx_metadata(xml: Union[str, bytes], metadata) -> bytes:
    """
    Write title, subject, author and keywords into ``docProps/core.xml``.

    Keywords are stored as one comma-separated ``cp:keywords`` string.
    """
    metadata = DocumentMetadata.coerce(metadata)
    root = _parse(xml, "docProps/core.xml")
    if root.tag == f"{{{CP_NS}}}coreProperties":
        core = root
    else:
        core = root.find(f".//{{{CP_NS}}}coreProperties")
    if core is None:
        raise PartMissing("cp:coreProperties element not found")

    _set_property(core, DC_NS, "dc", "title", metadata.title)
    _set_property(core, DC_NS, "dc", "subject", metadata.subject)
    _set_property(core, DC_NS, "dc", "creator", metadata.author)
    _set_property(core, CP_NS, "cp", "keywords", ", ".join(metadata.keywords))
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True)


def apply_odt_metadata(xml: Union[str, bytes], metadata) -> bytes:
    """
    Write title, subject, author and keywords into ``meta.xml``.

    The author fills both ``meta:initial-creator`` and ``dc:creator``.
    Existing ``meta:keyword`` elements are replaced, one element per keyword.
    """
    metadata = DocumentMetadata.coerce(metadata)
    root = _parse(xml, "meta.xml")
    office_meta = root.find(f".//{{{OFFICE_NS}}}meta")
    if office_meta is None:
        raise PartMissing("office:meta element not found")

    _set_property(office_meta, DC_NS, "dc", "title", metadata.title)
    _set_property(office_meta, DC_NS, "dc", "subject", metadata.subject)
    _set_property(office_meta, META_NS, "meta", "initial-creator", metadata.author)
    _set_property(office_meta, DC_NS, "dc", "creator", metadata.author)

    if metadata.keywords:
        for keyword in office_meta.findall(f".//{{{META_NS}}}keyword"):
            keyword.getparent().remove(keyword)
        for keyword in metadata.keywords:
            el = etree.SubElement(office_meta, f"{{{META_NS}}}keyword", nsmap={"meta": META_NS})
            el.text = keyword
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8")


def describe(metadata: Optional[DocumentMetadata]) -> str:
    if metadata is None or metadata.is_empty():
        return "none"
    fields = [name for name in ("title", "subject", "author", "keywords") if getattr(metadata, name)]
    return ", ".join(fields)
