from lxml import etree

from conftest import W_NS, docx_document, docx_paragraph, docx_run, w
from richmerge.template_repair import repair_paragraph, repair_split_placeholders, run_text


def paragraph(*runs):
    return etree.fromstring(f'<w:p xmlns:w="{W_NS}">{"".join(runs)}</w:p>')


class TestRepairParagraph:
    def test_split_placeholder_merged(self):
        p = paragraph(docx_run("Hello {{ na"), docx_run("me }}!"))
        assert repair_paragraph(p) == 1
        (run,) = p.findall(w("r"))
        assert run_text(run) == "Hello {{ name }}!"

    def test_first_run_properties_kept(self):
        p = paragraph(docx_run("{%", "<w:rPr><w:b/></w:rPr>"), docx_run(" if x %}"))
        repair_paragraph(p)
        (run,) = p.findall(w("r"))
        assert run.find(f"{w('rPr')}/{w('b')}") is not None

    def test_placeholder_in_one_run_untouched(self):
        p = paragraph(docx_run("{{ a }}"), docx_run(" and {{ b }}"))
        assert repair_paragraph(p) == 0
        assert len(p.findall(w("r"))) == 2

    def test_field_runs_left_alone(self):
        field_run = '<w:r><w:fldChar w:fldCharType="begin"/><w:t>{{ x</w:t></w:r>'
        p = paragraph(field_run, docx_run(" }}"))
        assert repair_paragraph(p) == 0
        assert len(p.findall(w("r"))) == 2

    def test_several_placeholders(self):
        p = paragraph(docx_run("{{ a"), docx_run(" }} {{ b"), docx_run(" }}"))
        assert repair_paragraph(p) == 2
        assert [run_text(r) for r in p.findall(w("r"))] == ["{{ a }} {{ b }}"]


class TestRepairPackage:
    def test_only_word_parts_repaired(self):
        files = {
            "word/document.xml": docx_document(docx_paragraph("{{ ti", "tle }}")),
            "word/header1.xml": b"<w:hdr",
            "customXml/item1.xml": b"{{ not touched",
        }
        assert repair_split_placeholders(files) == 1
        assert b"{{ title }}" in files["word/document.xml"]
        assert files["word/header1.xml"] == b"<w:hdr"
