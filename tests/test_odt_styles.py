from lxml import etree

from conftest import ODF_ROOT_NS, OFFICE_NS, STYLE_NS
from richmerge.odt_styles import StyleRegistry
from richmerge.settings import ConversionSettings

FO_NS = "urn:oasis:names:tc:opendocument:xmlns:xsl-fo-compatible:1.0"


def styles_root(inner=""):
    return etree.fromstring(f"<office:document-styles {ODF_ROOT_NS}>{inner}</office:document-styles>")


def style_named(root, name):
    for style in root.iter(f"{{{STYLE_NS}}}style"):
        if style.get(f"{{{STYLE_NS}}}name") == name:
            return style
    return None


class TestStyleRegistry:
    def test_names_use_prefix(self):
        registry = StyleRegistry(ConversionSettings(style_prefix="Acme"))
        assert registry.require("bold") == "AcmeRichBold"
        assert registry.alignment_style("right") == "AcmeAlignRight"
        assert registry.alignment_style("left") is None
        assert len(registry) == 2

    def test_nothing_required_adds_nothing(self):
        root = styles_root()
        assert StyleRegistry().materialize(root) == 0
        assert root.find(f"{{{OFFICE_NS}}}automatic-styles") is None

    def test_created_after_office_styles(self):
        root = styles_root("<office:font-face-decls/><office:styles/><office:master-styles/>")
        registry = StyleRegistry()
        registry.require("table_cell")
        assert registry.materialize(root) == 1
        assert [etree.QName(child).localname for child in root] == [
            "font-face-decls", "styles", "automatic-styles", "master-styles",
        ]
        props = style_named(root, "DocumentateRichTableCell")[0]
        assert etree.QName(props).localname == "table-cell-properties"
        assert props.get(f"{{{FO_NS}}}border") == "0.5pt solid #000000"
        assert props.get(f"{{{FO_NS}}}padding") == "0.049cm"

    def test_idempotent(self):
        root = styles_root("<office:automatic-styles/>")
        registry = StyleRegistry()
        registry.require("bold")
        registry.require("link")
        assert registry.materialize(root) == 2
        assert registry.materialize(root) == 0
        assert len(root.find(f"{{{OFFICE_NS}}}automatic-styles")) == 2

    def test_existing_style_left_alone(self):
        root = styles_root(
            '<office:automatic-styles><style:style style:name="DocumentateRichBold" style:family="text"/>'
            "</office:automatic-styles>"
        )
        registry = StyleRegistry()
        registry.require("bold")
        assert registry.materialize(root) == 0
        assert len(style_named(root, "DocumentateRichBold")) == 0

    def test_link_properties(self):
        root = styles_root()
        registry = StyleRegistry()
        registry.require("link")
        registry.materialize(root)
        style = style_named(root, "DocumentateRichLink")
        assert style.get(f"{{{STYLE_NS}}}family") == "text"
        props = style[0]
        assert props.get(f"{{{FO_NS}}}color") == "#0000FF"
        assert props.get(f"{{{STYLE_NS}}}text-underline-style") == "solid"
