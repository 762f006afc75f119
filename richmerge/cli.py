"""Command line entry point: ``richmerge convert`` and ``richmerge render``."""
import argparse
import json
import logging
import os
import shutil
import sys
from typing import List, Optional

from .errors import ArchiveError, TemplateError
from .merge import render_docx
from .metadata import DocumentMetadata
from .rewriter import postprocess
from .settings import ConversionSettings, DocumentFormat

logger = logging.getLogger(__name__)


def load_json(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def metadata_from_args(args: argparse.Namespace) -> DocumentMetadata:
    return DocumentMetadata(
        title=args.title or "",
        subject=args.subject or "",
        author=args.author or "",
        keywords=args.keywords or "",
    )


def add_metadata_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--title", help="document title")
    parser.add_argument("--subject", help="document subject")
    parser.add_argument("--author", help="document author")
    parser.add_argument("--keywords", help="comma-separated keywords")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="richmerge",
        description="Convert merged HTML fields in DOCX/ODT documents into native formatting.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    convert = sub.add_parser("convert", help="rewrite an already merged document")
    convert.add_argument("input", help="merged .docx or .odt")
    convert.add_argument("-o", "--output", help="write here instead of rewriting INPUT in place")
    convert.add_argument("--values", required=True, help="JSON file with the merged field values")
    convert.add_argument("--format", choices=[f.value for f in DocumentFormat], help="override format detection")
    add_metadata_arguments(convert)

    render = sub.add_parser("render", help="merge a docxtpl template, then rewrite it")
    render.add_argument("template", help="docxtpl .docx template")
    render.add_argument("fields", help="JSON file with the template context")
    render.add_argument("-o", "--output", required=True, help="output .docx")
    render.add_argument("--markdown-field", action="append", default=[], metavar="NAME",
                        help="field holding Markdown to render as HTML (repeatable)")
    add_metadata_arguments(render)
    return parser


def run_convert(args: argparse.Namespace, settings: ConversionSettings) -> int:
    if not os.path.exists(args.input):
        print(f"[ERROR] input not found: {args.input}", file=sys.stderr)
        return 1
    target = args.input
    if args.output:
        shutil.copyfile(args.input, args.output)
        target = args.output
    values = load_json(args.values)
    changed = postprocess(target, values, metadata=metadata_from_args(args), fmt=args.format, settings=settings)
    if changed:
        print(f"[OK] converted: {target}")
    else:
        print(f"[OK] nothing to convert: {target}")
    return 0


def run_render(args: argparse.Namespace, settings: ConversionSettings) -> int:
    fields = load_json(args.fields)
    if not isinstance(fields, dict):
        print("[ERROR] fields JSON must be an object", file=sys.stderr)
        return 1
    render_docx(args.template, fields, args.output, metadata=metadata_from_args(args),
                markdown_fields=args.markdown_field, settings=settings)
    print(f"[OK] Generated: {args.output}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    settings = ConversionSettings.from_env()
    try:
        if args.command == "convert":
            return run_convert(args, settings)
        return run_render(args, settings)
    except (ArchiveError, TemplateError, OSError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
