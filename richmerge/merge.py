"""
DOCX merge through docxtpl, followed by the rich-text rewrite.

docxtpl renders with autoescape on, so a rich field value lands in the
document as literal escaped HTML; :func:`richmerge.rewriter.postprocess`
then turns it into native markup.
"""
import io
import logging
import os
from typing import Any, Dict, Iterable, Mapping, Optional

import jinja2
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docxtpl import DocxTemplate
from markdown import markdown

from .errors import TemplateError
from .matching import prepare_rich_lookup
from .rewriter import postprocess
from .settings import ConversionSettings, DocumentFormat
from .template_repair import repaired_template_bytes

logger = logging.getLogger(__name__)


def markdown_to_html(text: str) -> str:
    return markdown(text or "", extensions=["extra"])


def update_fields_on_open(doc) -> None:
    settings = doc.settings.element
    update_fields = settings.find(qn("w:updateFields"))
    if update_fields is None:
        update_fields = OxmlElement("w:updateFields")
        settings.append(update_fields)
    update_fields.set(qn("w:val"), "true")


def convert_markdown_fields(fields: Mapping[str, Any], names: Iterable[str]) -> Dict[str, Any]:
    """Copy of ``fields`` with the named Markdown values rendered to HTML, repeater rows included."""
    names = set(names)
    result: Dict[str, Any] = {}
    for key, value in fields.items():
        if key in names and isinstance(value, str):
            result[key] = markdown_to_html(value)
        elif isinstance(value, list):
            result[key] = [
                convert_markdown_fields(row, names) if isinstance(row, Mapping) else row
                for row in value
            ]
        else:
            result[key] = value
    return result


def render_docx(template: str, fields: Mapping[str, Any], dest: str, metadata=None,
                markdown_fields: Iterable[str] = (), settings: Optional[ConversionSettings] = None) -> bool:
    """
    Merge ``fields`` into ``template``, save to ``dest`` and convert the merged HTML.

    Returns whether the rich-text pass changed the saved document.
    """
    if not os.path.exists(template):
        raise TemplateError("template not found", template)

    context = convert_markdown_fields(fields, markdown_fields)
    stream = io.BytesIO(repaired_template_bytes(template))
    try:
        tpl = DocxTemplate(stream)
        tpl.render(context, autoescape=True)
    except (jinja2.TemplateError, PackageNotFoundError) as exc:
        raise TemplateError(f"cannot render {template}", str(exc)) from exc

    update_fields_on_open(tpl.docx)
    try:
        tpl.save(dest)
    except OSError as exc:
        raise TemplateError(f"cannot save {dest}", str(exc)) from exc
    logger.info("Merged %s into %s", template, dest)

    lookup = prepare_rich_lookup(context)
    return postprocess(dest, lookup, metadata=metadata, fmt=DocumentFormat.DOCX, settings=settings)
