import os
import zipfile

import pytest

from conftest import (
    CONTENT_TYPES,
    DC_NS,
    META_NS,
    PKG_REL_NS,
    all_text,
    docx_document,
    docx_paragraph,
    odt_paragraph,
    parse,
    read_part,
    t,
    w,
)
from richmerge.errors import ArchiveError
from richmerge.rewriter import postprocess
from richmerge.settings import DocumentFormat

RICH = "<p>Hello <strong>world</strong></p>"


class TestDocxPostprocess:
    def test_converts_document(self, make_docx):
        path = make_docx(docx_paragraph(RICH))
        assert postprocess(path, {"body": RICH, "name": "plain"})
        root = parse(read_part(path, "word/document.xml"))
        assert all_text(root, w("t")) == "Hello world"
        assert b"&lt;" not in read_part(path, "word/document.xml")

    def test_entry_order_kept(self, make_docx):
        path = make_docx(docx_paragraph(RICH))
        with zipfile.ZipFile(path) as zf:
            before = zf.namelist()
        postprocess(path, [RICH])
        with zipfile.ZipFile(path) as zf:
            assert zf.namelist() == before
            assert zf.read("[Content_Types].xml").decode("utf-8") == CONTENT_TYPES

    def test_hyperlink_relationship_written(self, make_docx):
        fragment = '<a href="https://example.com">x</a>'
        path = make_docx(docx_paragraph(fragment))
        assert postprocess(path, [fragment])
        rels = parse(read_part(path, "word/_rels/document.xml.rels"))
        targets = [r.get("Target") for r in rels.iter(f"{{{PKG_REL_NS}}}Relationship")]
        assert targets == ["styles.xml", "https://example.com"]

    def test_header_part_gets_own_relationships(self, make_docx):
        fragment = '<a href="https://example.com">x</a>'
        header = docx_document(docx_paragraph(fragment)).replace(b"w:document", b"w:hdr").replace(
            b"<w:body>", b"").replace(b"</w:body>", b"")
        path = make_docx(docx_paragraph("plain"), extra={"word/header1.xml": header})
        assert postprocess(path, [fragment])
        rels = parse(read_part(path, "word/_rels/header1.xml.rels"))
        (rel,) = rels.iter(f"{{{PKG_REL_NS}}}Relationship")
        assert rel.get("Id") == "rId1"
        assert rel.get("TargetMode") == "External"

    def test_nothing_to_do(self, make_docx):
        path = make_docx(docx_paragraph("plain"))
        assert not postprocess(path, {"name": "plain"})
        assert not postprocess(path, [RICH])

    def test_unparseable_part_kept(self, make_docx):
        path = make_docx(docx_paragraph(RICH), extra={"word/footer1.xml": b"<w:ftr"})
        assert postprocess(path, [RICH])
        assert read_part(path, "word/footer1.xml") == b"<w:ftr"

    def test_control_character_in_fragment(self, make_docx):
        fragment = "<p>a&#1;b</p><p><strong>other</strong></p>"
        path = make_docx(docx_paragraph(fragment))
        assert postprocess(path, [fragment])
        root = parse(read_part(path, "word/document.xml"))
        assert all_text(root, w("t")) == "abother"

    def test_metadata_only(self, make_docx):
        path = make_docx(docx_paragraph("plain"))
        assert postprocess(path, None, metadata={"title": "Report"})
        core = parse(read_part(path, "docProps/core.xml"))
        assert all_text(core, f"{{{DC_NS}}}title") == "Report"

    def test_missing_core_part_skips_metadata(self, make_docx):
        path = make_docx(docx_paragraph(RICH), core=None)
        assert postprocess(path, [RICH], metadata={"title": "Report"})
        with zipfile.ZipFile(path) as zf:
            assert "docProps/core.xml" not in zf.namelist()


class TestOdtPostprocess:
    def test_converts_content(self, make_odt):
        path = make_odt(odt_paragraph(RICH, style="Standard"))
        assert postprocess(path, [RICH])
        root = parse(read_part(path, "content.xml"))
        assert [p.get(t("style-name")) for p in root.iter(t("p"))] == ["Standard"]
        assert [s.text for s in root.iter(t("span"))] == ["world"]

    def test_mimetype_stays_first_and_stored(self, make_odt):
        path = make_odt(odt_paragraph(RICH))
        postprocess(path, [RICH])
        with zipfile.ZipFile(path) as zf:
            first = zf.infolist()[0]
            assert first.filename == "mimetype"
            assert first.compress_type == zipfile.ZIP_STORED

    def test_styles_part_converted(self, make_odt):
        styles = (
            "<office:document-styles "
            'xmlns:office="urn:oasis:names:tc:opendocument:xmlns:office:1.0" '
            'xmlns:text="urn:oasis:names:tc:opendocument:xmlns:text:1.0">'
            "<office:master-styles><text:p>&lt;b&gt;x&lt;/b&gt;</text:p></office:master-styles>"
            "</office:document-styles>"
        )
        path = make_odt(odt_paragraph("plain"), styles=styles)
        assert postprocess(path, ["<b>x</b>"])
        root = parse(read_part(path, "styles.xml"))
        assert root[0].tag == "{urn:oasis:names:tc:opendocument:xmlns:office:1.0}automatic-styles"
        assert [s.text for s in root.iter(t("span"))] == ["x"]

    def test_metadata(self, make_odt):
        path = make_odt(odt_paragraph("plain"))
        assert postprocess(path, {}, metadata={"author": "Ana", "keywords": "a,b"})
        meta = parse(read_part(path, "meta.xml"))
        assert [k.text for k in meta.iter(f"{{{META_NS}}}keyword")] == ["a", "b"]
        assert all_text(meta, f"{{{META_NS}}}initial-creator") == "Ana"

    def test_control_character_in_fragment(self, make_odt):
        fragment = "<p>a&#1;b</p><p><strong>other</strong></p>"
        path = make_odt(odt_paragraph(fragment))
        assert postprocess(path, [fragment])
        root = parse(read_part(path, "content.xml"))
        assert [p.text for p in root.iter(t("p"))] == ["ab", None]
        assert [s.text for s in root.iter(t("span"))] == ["other"]


class TestArchiveErrors:
    def test_bad_zip_left_untouched(self, tmp_path):
        path = tmp_path / "broken.docx"
        path.write_bytes(b"not a zip")
        with pytest.raises(ArchiveError):
            postprocess(str(path), [RICH])
        assert path.read_bytes() == b"not a zip"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ArchiveError):
            postprocess(str(tmp_path / "absent.odt"), [RICH])

    def test_undetectable_format(self, tmp_path):
        path = tmp_path / "merged.bin"
        path.write_bytes(b"not a zip")
        with pytest.raises(ArchiveError):
            postprocess(str(path), [RICH])

    def test_format_detected_from_contents(self, make_docx):
        path = make_docx(docx_paragraph(RICH), name="merged.bin")
        assert DocumentFormat.detect(path) is DocumentFormat.DOCX
        assert postprocess(path, [RICH])

    def test_format_detected_from_odt_mimetype(self, make_odt):
        path = make_odt(odt_paragraph(RICH), name="merged.bin")
        assert DocumentFormat.detect(path) is DocumentFormat.ODT
        assert postprocess(path, [RICH])

    def test_failed_write_leaves_no_temp_file(self, make_docx, monkeypatch):
        path = make_docx(docx_paragraph(RICH))
        before = read_part(path, "word/document.xml")

        def fail(self, *args, **kwargs):
            raise RuntimeError("disk gone")

        monkeypatch.setattr(zipfile.ZipFile, "writestr", fail)
        with pytest.raises(RuntimeError):
            postprocess(path, [RICH])
        monkeypatch.undo()
        directory = os.path.dirname(path)
        assert [name for name in os.listdir(directory) if name.startswith(".richmerge-")] == []
        assert read_part(path, "word/document.xml") == before
