"""Automatic styles referenced by generated ODF content."""
import logging
from typing import Dict, List, Optional, Set, Tuple

from lxml import etree

from .settings import ODF_NS, OFFICE_NS, STYLE_NS, ConversionSettings, resolve_settings

logger = logging.getLogger(__name__)

TEXT_FAMILY = "text"
PARAGRAPH_FAMILY = "paragraph"
TABLE_FAMILY = "table"
CELL_FAMILY = "table-cell"

_PROPERTIES_ELEMENT = {
    TEXT_FAMILY: "text-properties",
    PARAGRAPH_FAMILY: "paragraph-properties",
    TABLE_FAMILY: "table-properties",
    CELL_FAMILY: "table-cell-properties",
}

_UNDERLINE = [
    ("style:text-underline-style", "solid"),
    ("style:text-underline-width", "auto"),
    ("style:text-underline-color", "font-color"),
]

# office:automatic-styles goes after these siblings when it has to be created.
_PRECEDING_SIBLINGS = ("scripts", "font-face-decls", "styles")


def _clark(name: str) -> str:
    prefix, local = name.split(":", 1)
    return f"{{{ODF_NS[prefix]}}}{local}"


class StyleRegistry:
    """
    Style keys required by the content generated for one ODF part.

    Keys are ``bold``, ``italic``, ``underline``, ``link``, ``table``,
    ``table_cell`` and ``align_<center|right|justify>``. Names come from the
    settings prefix, e.g. ``DocumentateRichBold``.
    """

    def __init__(self, settings: Optional[ConversionSettings] = None):
        self.settings = resolve_settings(settings)
        self.required: Set[str] = set()

    def __len__(self) -> int:
        return len(self.required)

    def _definitions(self) -> Dict[str, Tuple[str, str, List[Tuple[str, str]]]]:
        border = self.settings.table_border
        return {
            "bold": ("RichBold", TEXT_FAMILY, [
                ("fo:font-weight", "bold"),
                ("style:font-weight-asian", "bold"),
                ("style:font-weight-complex", "bold"),
            ]),
            "italic": ("RichItalic", TEXT_FAMILY, [
                ("fo:font-style", "italic"),
                ("style:font-style-asian", "italic"),
                ("style:font-style-complex", "italic"),
            ]),
            "underline": ("RichUnderline", TEXT_FAMILY, list(_UNDERLINE)),
            "link": ("RichLink", TEXT_FAMILY, [("fo:color", "#" + self.settings.link_color)] + _UNDERLINE),
            "table": ("RichTable", TABLE_FAMILY, [
                ("table:border-model", "collapsing"),
                ("fo:border", border),
            ]),
            "table_cell": ("RichTableCell", CELL_FAMILY, [
                ("fo:border", border),
                ("fo:padding", self.settings.cell_padding),
            ]),
            "align_center": ("AlignCenter", PARAGRAPH_FAMILY, [("fo:text-align", "center")]),
            "align_right": ("AlignRight", PARAGRAPH_FAMILY, [("fo:text-align", "end")]),
            "align_justify": ("AlignJustify", PARAGRAPH_FAMILY, [("fo:text-align", "justify")]),
        }

    def name(self, key: str) -> str:
        suffix = self._definitions()[key][0]
        return self.settings.style_name(suffix)

    def require(self, key: str) -> str:
        """Mark ``key`` as used and return its style name."""
        name = self.name(key)
        self.required.add(key)
        return name

    def alignment_style(self, alignment: Optional[str]) -> Optional[str]:
        if alignment in ("center", "right", "justify"):
            return self.require("align_" + alignment)
        return None

    def materialize(self, root: etree._Element) -> int:
        """
        Declare every required style in the part's ``office:automatic-styles``.

        A style whose name is already declared there is left alone, so
        running this again on converted output adds nothing. Returns the
        number of styles added.
        """
        if not self.required:
            return 0
        auto = root.find(f"{{{OFFICE_NS}}}automatic-styles")
        if auto is None:
            auto = etree.Element(f"{{{OFFICE_NS}}}automatic-styles", nsmap={"office": OFFICE_NS})
            index = 0
            for idx, child in enumerate(root):
                if child.tag in {f"{{{OFFICE_NS}}}{name}" for name in _PRECEDING_SIBLINGS}:
                    index = idx + 1
            root.insert(index, auto)

        existing = {
            style.get(f"{{{STYLE_NS}}}name")
            for style in auto.findall(f"{{{STYLE_NS}}}style")
        }
        definitions = self._definitions()
        added = 0
        for key in sorted(self.required):
            suffix, family, props = definitions[key]
            name = self.settings.style_name(suffix)
            if name in existing:
                continue
            style = etree.SubElement(auto, f"{{{STYLE_NS}}}style", nsmap={"style": STYLE_NS})
            style.set(f"{{{STYLE_NS}}}name", name)
            style.set(f"{{{STYLE_NS}}}family", family)
            properties = etree.SubElement(style, f"{{{STYLE_NS}}}{_PROPERTIES_ELEMENT[family]}")
            for attr, value in props:
                properties.set(_clark(attr), value)
            existing.add(name)
            added += 1
        if added:
            logger.debug("Declared %d automatic style(s)", added)
        return added
