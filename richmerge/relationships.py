"""Per-part registry of hyperlink relationships for WordprocessingML parts."""
import logging
import posixpath
import re
from typing import Dict, Optional

from lxml import etree

from .errors import RelationshipError
from .settings import HYPERLINK_REL_TYPE, PKG_REL_NS

logger = logging.getLogger(__name__)

_RID_RE = re.compile(r"^rId(\d+)$")
_EMPTY_RELS = f'<Relationships xmlns="{PKG_REL_NS}"/>'.encode("utf-8")


def relationship_part_path(target: str) -> str:
    """``word/document.xml`` -> ``word/_rels/document.xml.rels``."""
    if not target:
        return ""
    directory, name = posixpath.split(target)
    rel_dir = posixpath.join(directory, "_rels") if directory else "_rels"
    return f"{rel_dir}/{name}.rels"


def _parse_rels(data: Optional[bytes]) -> etree._Element:
    if data is None or not data.strip():
        raise RelationshipError("relationships part is missing or empty")
    try:
        root = etree.fromstring(data, etree.XMLParser(resolve_entities=False))
    except etree.XMLSyntaxError as exc:
        raise RelationshipError("relationships part is malformed", str(exc)) from exc
    if root.tag != f"{{{PKG_REL_NS}}}Relationships":
        raise RelationshipError("unexpected relationships root", root.tag)
    return root


class RelationshipRegistry:
    """
    Hyperlink targets of one XML part and the ``rId`` values they map to.

    The backing ``.rels`` tree is only serialized back when a new
    relationship was added (``dirty``).
    """

    def __init__(self, path: str, root: etree._Element):
        self.path = path
        self.root = root
        self.map: Dict[str, str] = {}
        self.next_index = 0
        self.dirty = False
        for rel in root.findall(f"{{{PKG_REL_NS}}}Relationship"):
            r_id = rel.get("Id", "")
            m = _RID_RE.match(r_id)
            if m:
                self.next_index = max(self.next_index, int(m.group(1)))
            if rel.get("Type") == HYPERLINK_REL_TYPE:
                target = rel.get("Target", "")
                if target and target not in self.map:
                    self.map[target] = r_id

    @classmethod
    def load(cls, part_name: str, data: Optional[bytes]) -> "RelationshipRegistry":
        path = relationship_part_path(part_name)
        try:
            root = _parse_rels(data)
        except RelationshipError as exc:
            if data is not None:
                logger.warning("Using empty relationships for %s: %s", path, exc)
            root = etree.fromstring(_EMPTY_RELS)
        return cls(path, root)

    @classmethod
    def empty(cls, part_name: str = "word/document.xml") -> "RelationshipRegistry":
        return cls.load(part_name, None)

    def hyperlink_id(self, target: str) -> str:
        """Return the relationship id for ``target``, creating it when needed."""
        if not target:
            return ""
        if target in self.map:
            return self.map[target]
        self.next_index += 1
        r_id = f"rId{self.next_index}"
        rel = etree.SubElement(self.root, f"{{{PKG_REL_NS}}}Relationship")
        rel.set("Id", r_id)
        rel.set("Type", HYPERLINK_REL_TYPE)
        rel.set("Target", target)
        rel.set("TargetMode", "External")
        self.map[target] = r_id
        self.dirty = True
        logger.debug("Registered hyperlink relationship %s -> %s in %s", r_id, target, self.path)
        return r_id

    def to_xml(self) -> bytes:
        return etree.tostring(self.root, xml_declaration=True, encoding="UTF-8", standalone=True)
