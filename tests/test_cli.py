import json

from conftest import all_text, docx_paragraph, parse, read_part, w
from richmerge.cli import build_parser, main

RICH = "<p><em>Hi</em></p>"


def write_values(tmp_path, values):
    path = tmp_path / "values.json"
    path.write_text(json.dumps(values), encoding="utf-8")
    return str(path)


class TestConvert:
    def test_in_place(self, make_docx, tmp_path, capsys):
        path = make_docx(docx_paragraph(RICH))
        assert main(["convert", path, "--values", write_values(tmp_path, {"body": RICH})]) == 0
        assert "[OK] converted" in capsys.readouterr().out
        assert all_text(parse(read_part(path, "word/document.xml")), w("t")) == "Hi"

    def test_output_copy_leaves_input(self, make_docx, tmp_path):
        path = make_docx(docx_paragraph(RICH))
        original = read_part(path, "word/document.xml")
        output = str(tmp_path / "copy.docx")
        argv = ["convert", path, "-o", output, "--values", write_values(tmp_path, [RICH]), "--title", "T"]
        assert main(argv) == 0
        assert read_part(path, "word/document.xml") == original
        assert read_part(output, "word/document.xml") != original

    def test_nothing_to_convert(self, make_docx, tmp_path, capsys):
        path = make_docx(docx_paragraph("plain"))
        assert main(["convert", path, "--values", write_values(tmp_path, {"x": "plain"})]) == 0
        assert "nothing to convert" in capsys.readouterr().out

    def test_missing_input(self, tmp_path, capsys):
        argv = ["convert", str(tmp_path / "absent.docx"), "--values", write_values(tmp_path, {})]
        assert main(argv) == 1
        assert "[ERROR]" in capsys.readouterr().err

    def test_broken_archive(self, tmp_path, capsys):
        path = tmp_path / "broken.odt"
        path.write_bytes(b"not a zip")
        assert main(["convert", str(path), "--values", write_values(tmp_path, [RICH])]) == 1
        assert "cannot read archive" in capsys.readouterr().err

    def test_invalid_json(self, make_docx, tmp_path):
        path = make_docx(docx_paragraph(RICH))
        values = tmp_path / "values.json"
        values.write_text("{", encoding="utf-8")
        assert main(["convert", path, "--values", str(values)]) == 1


class TestRender:
    def test_missing_template(self, tmp_path, capsys):
        fields = write_values(tmp_path, {"body": RICH})
        argv = ["render", str(tmp_path / "absent.docx"), fields, "-o", str(tmp_path / "out.docx")]
        assert main(argv) == 1
        assert "template not found" in capsys.readouterr().err

    def test_fields_must_be_object(self, tmp_path):
        fields = write_values(tmp_path, [RICH])
        argv = ["render", str(tmp_path / "t.docx"), fields, "-o", str(tmp_path / "out.docx")]
        assert main(argv) == 1


class TestParser:
    def test_markdown_fields_repeatable(self):
        args = build_parser().parse_args(
            ["render", "t.docx", "f.json", "-o", "o.docx", "--markdown-field", "a", "--markdown-field", "b"]
        )
        assert args.markdown_field == ["a", "b"]
