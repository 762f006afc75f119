"""Inline formatting flags propagated while walking an HTML fragment."""

from dataclasses import dataclass, replace
from typing import Optional

from .html_parser import ElementNode


@dataclass(frozen=True)
class FormattingContext:
    bold: bool = False
    italic: bool = False
    underline: bool = False
    link: Optional[str] = None

    def with_bold(self) -> "FormattingContext":
        return replace(self, bold=True)

    def with_italic(self) -> "FormattingContext":
        return replace(self, italic=True)

    def with_underline(self) -> "FormattingContext":
        return replace(self, underline=True)

    def with_link(self, href: str) -> "FormattingContext":
        return replace(self, link=href) if href else self

    def descend(self, node: ElementNode) -> "FormattingContext":
        """Context for the children of an inline element."""
        tag = node.tag
        if tag in ("strong", "b"):
            return self.with_bold()
        if tag in ("em", "i"):
            return self.with_italic()
        if tag == "u":
            return self.with_underline()
        if tag == "span":
            return self.with_span_style(node.get("style"))
        if tag == "a":
            return self.with_link(node.get("href").strip())
        return self

    def with_span_style(self, style: str) -> "FormattingContext":
        if not style:
            return self
        ctx = self
        for rule in style.lower().split(";"):
            prop, _, value = rule.partition(":")
            prop = prop.strip()
            value = value.strip()
            if prop == "font-weight" and value in ("bold", "700"):
                ctx = ctx.with_bold()
            elif prop == "font-style" and value == "italic":
                ctx = ctx.with_italic()
            elif prop == "text-decoration" and "underline" in value:
                ctx = ctx.with_underline()
        return ctx


PLAIN = FormattingContext()
