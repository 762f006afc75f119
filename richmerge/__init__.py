"""Native DOCX/ODT formatting for HTML merged into office documents."""
from .docx_builder import DocxBuilder, convert_docx_part
from .errors import (
    ArchiveError,
    HtmlParseError,
    PartMissing,
    RelationshipError,
    RichMergeError,
    TemplateError,
    XmlParseError,
)
from .html_parser import parse_html, value_contains_html
from .matching import prepare_rich_lookup
from .merge import render_docx
from .metadata import DocumentMetadata, apply_docx_metadata, apply_odt_metadata
from .odt_builder import OdtBuilder, convert_odt_part
from .odt_styles import StyleRegistry
from .relationships import RelationshipRegistry
from .rewriter import postprocess
from .settings import ConversionSettings, DocumentFormat

__version__ = "0.1.0"

__all__ = [
    "ArchiveError",
    "ConversionSettings",
    "DocumentFormat",
    "DocumentMetadata",
    "DocxBuilder",
    "HtmlParseError",
    "OdtBuilder",
    "PartMissing",
    "RelationshipError",
    "RelationshipRegistry",
    "RichMergeError",
    "StyleRegistry",
    "TemplateError",
    "XmlParseError",
    "apply_docx_metadata",
    "apply_odt_metadata",
    "convert_docx_part",
    "convert_odt_part",
    "parse_html",
    "postprocess",
    "prepare_rich_lookup",
    "render_docx",
    "value_contains_html",
]
