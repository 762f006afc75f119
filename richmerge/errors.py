"""Exceptions raised while post-processing merged office documents."""

from typing import Optional


class RichMergeError(Exception):
    """Base exception for richmerge errors."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ArchiveError(RichMergeError):
    """The zip package cannot be opened, read or written."""

    pass


class PartMissing(RichMergeError):
    """An expected XML part is absent from the package."""

    pass


class XmlParseError(RichMergeError):
    """An XML part could not be parsed."""

    pass


class HtmlParseError(RichMergeError):
    """An HTML fragment could not be parsed."""

    pass


class RelationshipError(RichMergeError):
    """A relationships part is missing or malformed."""

    pass


class TemplateError(RichMergeError):
    """The template merge step failed."""

    pass
