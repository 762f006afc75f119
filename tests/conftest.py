import zipfile
from xml.sax.saxutils import escape

import pytest
from lxml import etree

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
PKG_REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
TEXT_NS = "urn:oasis:names:tc:opendocument:xmlns:text:1.0"
TABLE_NS = "urn:oasis:names:tc:opendocument:xmlns:table:1.0"
STYLE_NS = "urn:oasis:names:tc:opendocument:xmlns:style:1.0"
OFFICE_NS = "urn:oasis:names:tc:opendocument:xmlns:office:1.0"
META_NS = "urn:oasis:names:tc:opendocument:xmlns:meta:1.0"
DC_NS = "http://purl.org/dc/elements/1.1/"

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="xml" ContentType="application/xml"/>'
    '<Override PartName="/word/document.xml" '
    'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
    "</Types>"
)

DOCUMENT_RELS = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    f'<Relationships xmlns="{PKG_REL_NS}">'
    '<Relationship Id="rId1" '
    'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/styles" '
    'Target="styles.xml"/>'
    "</Relationships>"
)

CORE_XML = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<cp:coreProperties '
    'xmlns:cp="http://schemas.openxmlformats.org/package/2006/metadata/core-properties" '
    'xmlns:dc="http://purl.org/dc/elements/1.1/">'
    "<dc:title>Old title</dc:title>"
    "</cp:coreProperties>"
)

ODF_ROOT_NS = (
    'xmlns:office="urn:oasis:names:tc:opendocument:xmlns:office:1.0" '
    'xmlns:text="urn:oasis:names:tc:opendocument:xmlns:text:1.0" '
    'xmlns:table="urn:oasis:names:tc:opendocument:xmlns:table:1.0" '
    'xmlns:style="urn:oasis:names:tc:opendocument:xmlns:style:1.0" '
    'xmlns:fo="urn:oasis:names:tc:opendocument:xmlns:xsl-fo-compatible:1.0" '
    'xmlns:xlink="http://www.w3.org/1999/xlink" '
    'office:version="1.2"'
)

META_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<office:document-meta '
    'xmlns:office="urn:oasis:names:tc:opendocument:xmlns:office:1.0" '
    'xmlns:meta="urn:oasis:names:tc:opendocument:xmlns:meta:1.0" '
    'xmlns:dc="http://purl.org/dc/elements/1.1/" office:version="1.2">'
    "<office:meta><meta:keyword>stale</meta:keyword></office:meta>"
    "</office:document-meta>"
)


def docx_run(text, rpr=""):
    return f'<w:r>{rpr}<w:t xml:space="preserve">{escape(text)}</w:t></w:r>'


def docx_paragraph(*texts, rpr=""):
    return "<w:p>" + "".join(docx_run(t, rpr) for t in texts) + "</w:p>"


def docx_document(body):
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f'<w:document xmlns:w="{W_NS}" xmlns:r="{R_NS}"><w:body>{body}</w:body></w:document>'
    ).encode("utf-8")


def odt_content(body, automatic_styles="<office:automatic-styles/>"):
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<office:document-content {ODF_ROOT_NS}>{automatic_styles}"
        f"<office:body><office:text>{body}</office:text></office:body>"
        "</office:document-content>"
    ).encode("utf-8")


def odt_paragraph(text, style=None):
    attr = f' text:style-name="{style}"' if style else ""
    return f"<text:p{attr}>{escape(text)}</text:p>"


def read_part(path, name):
    with zipfile.ZipFile(path, "r") as zf:
        return zf.read(name)


def parse(data):
    return etree.fromstring(data)


def w(tag):
    return f"{{{W_NS}}}{tag}"


def t(tag):
    return f"{{{TEXT_NS}}}{tag}"


def all_text(root, tag):
    return "".join(el.text or "" for el in root.iter(tag))


@pytest.fixture
def make_docx(tmp_path):
    def _make(body, name="merged.docx", rels=DOCUMENT_RELS, core=CORE_XML, extra=None):
        path = tmp_path / name
        with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("[Content_Types].xml", CONTENT_TYPES)
            zf.writestr("word/document.xml", docx_document(body))
            if rels is not None:
                zf.writestr("word/_rels/document.xml.rels", rels)
            if core is not None:
                zf.writestr("docProps/core.xml", core)
            for part, data in (extra or {}).items():
                zf.writestr(part, data)
        return str(path)

    return _make


@pytest.fixture
def make_odt(tmp_path):
    def _make(body, name="merged.odt", meta=META_XML, styles=None):
        path = tmp_path / name
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr(zipfile.ZipInfo("mimetype"), "application/vnd.oasis.opendocument.text")
            zf.writestr("content.xml", odt_content(body))
            if styles is not None:
                zf.writestr("styles.xml", styles)
            if meta is not None:
                zf.writestr("meta.xml", meta)
        return str(path)

    return _make
