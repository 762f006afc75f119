"""Namespaces, style names and tunable conversion settings."""

import enum
import os
import zipfile
from dataclasses import dataclass
from typing import Optional

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
PKG_REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
HYPERLINK_REL_TYPE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/hyperlink"
CP_NS = "http://schemas.openxmlformats.org/package/2006/metadata/core-properties"
DC_NS = "http://purl.org/dc/elements/1.1/"
XML_NS = "http://www.w3.org/XML/1998/namespace"

OFFICE_NS = "urn:oasis:names:tc:opendocument:xmlns:office:1.0"
TEXT_NS = "urn:oasis:names:tc:opendocument:xmlns:text:1.0"
TABLE_NS = "urn:oasis:names:tc:opendocument:xmlns:table:1.0"
STYLE_NS = "urn:oasis:names:tc:opendocument:xmlns:style:1.0"
FO_NS = "urn:oasis:names:tc:opendocument:xmlns:xsl-fo-compatible:1.0"
XLINK_NS = "http://www.w3.org/1999/xlink"
META_NS = "urn:oasis:names:tc:opendocument:xmlns:meta:1.0"

ODF_NS = {
    "office": OFFICE_NS,
    "text": TEXT_NS,
    "table": TABLE_NS,
    "style": STYLE_NS,
    "fo": FO_NS,
    "xlink": XLINK_NS,
    "meta": META_NS,
    "dc": DC_NS,
}

ODT_RICH_PARTS = ("content.xml", "styles.xml")
DOCX_CORE_PART = "docProps/core.xml"
ODT_META_PART = "meta.xml"

ODT_MIMETYPE = "application/vnd.oasis.opendocument.text"


class DocumentFormat(enum.Enum):
    DOCX = "docx"
    ODT = "odt"

    @classmethod
    def detect(cls, path: str) -> "DocumentFormat":
        """Guess the package format from the extension, then from the archive contents."""
        ext = os.path.splitext(path)[1].lower().lstrip(".")
        for fmt in cls:
            if fmt.value == ext:
                return fmt
        try:
            with zipfile.ZipFile(path, "r") as zf:
                names = set(zf.namelist())
                if "word/document.xml" in names:
                    return cls.DOCX
                if "mimetype" in names and zf.read("mimetype").decode("ascii", "replace").strip() == ODT_MIMETYPE:
                    return cls.ODT
        except (OSError, zipfile.BadZipFile):
            pass
        raise ValueError(f"cannot detect document format for {path}")


@dataclass(frozen=True)
class ConversionSettings:
    style_prefix: str = "Documentate"
    table_border: str = "0.5pt solid #000000"
    cell_padding: str = "0.049cm"
    docx_border_size: str = "8"
    link_color: str = "0000FF"
    bullet: str = "\u2022"
    indent_unit: str = "  "

    @classmethod
    def from_env(cls) -> "ConversionSettings":
        defaults = cls()
        return cls(
            style_prefix=os.getenv("RICHMERGE_STYLE_PREFIX") or defaults.style_prefix,
            table_border=os.getenv("RICHMERGE_TABLE_BORDER") or defaults.table_border,
            cell_padding=os.getenv("RICHMERGE_CELL_PADDING") or defaults.cell_padding,
        )

    def style_name(self, suffix: str) -> str:
        return f"{self.style_prefix}{suffix}"


DEFAULT_SETTINGS = ConversionSettings()


def resolve_settings(settings: Optional[ConversionSettings]) -> ConversionSettings:
    return settings if settings is not None else DEFAULT_SETTINGS
