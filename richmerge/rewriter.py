"""
Post-merge rewrite of a DOCX or ODT package.

The archive is read into memory, every part that can hold merged text is run
through the matching codec, relationships and metadata are updated, and the
package is written back in one go. Only archive-level failures reach the
caller; a part that fails to parse is kept as it was.
"""
import logging
import os
import re
import tempfile
import zipfile
from typing import Dict, List, Optional, Tuple, Union

from .docx_builder import convert_docx_part
from .errors import ArchiveError, PartMissing, XmlParseError
from .matching import ensure_lookup
from .metadata import DocumentMetadata, apply_docx_metadata, apply_odt_metadata, describe
from .odt_builder import convert_odt_part
from .odt_styles import StyleRegistry
from .relationships import RelationshipRegistry, relationship_part_path
from .settings import (
    DOCX_CORE_PART,
    ODT_META_PART,
    ODT_RICH_PARTS,
    ConversionSettings,
    DocumentFormat,
    resolve_settings,
)

logger = logging.getLogger(__name__)

DOCX_PART_RE = re.compile(r"^word/(document|header\d*|footer\d*)\.xml$")


def read_archive(path: str) -> Tuple[List[zipfile.ZipInfo], Dict[str, bytes]]:
    try:
        with zipfile.ZipFile(path, "r") as zin:
            infos = zin.infolist()
            files = {info.filename: zin.read(info.filename) for info in infos}
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        raise ArchiveError(f"cannot read archive {path}", str(exc)) from exc
    return infos, files


def write_archive(path: str, infos: List[zipfile.ZipInfo], files: Dict[str, bytes]) -> None:
    """
    Write ``files`` over ``path``, keeping the original entry order and compression.

    New entries are appended deflated. The archive is built in a temporary
    file beside ``path`` and moved into place only once complete.
    """
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".richmerge-", suffix=".tmp", dir=directory)
    os.close(fd)
    replaced = False
    try:
        with zipfile.ZipFile(tmp_path, "w", zipfile.ZIP_DEFLATED) as zout:
            written = set()
            for info in infos:
                if info.filename in files:
                    zout.writestr(info, files[info.filename])
                    written.add(info.filename)
            for name, data in files.items():
                if name not in written:
                    zout.writestr(name, data)
        os.replace(tmp_path, path)
        replaced = True
    except (OSError, zipfile.BadZipFile) as exc:
        raise ArchiveError(f"cannot write archive {path}", str(exc)) from exc
    finally:
        if not replaced and os.path.exists(tmp_path):
            os.remove(tmp_path)


def rewrite_docx_parts(files: Dict[str, bytes], lookup: Dict[str, str],
                       settings: ConversionSettings) -> List[str]:
    changed = []
    parts = sorted(name for name in files if DOCX_PART_RE.match(name))
    if "word/document.xml" not in files:
        logger.warning("%s", PartMissing("word/document.xml not found in package"))
    for name in parts:
        rels_path = relationship_part_path(name)
        registry = RelationshipRegistry.load(name, files.get(rels_path))
        part_changed, data = convert_docx_part(files[name], lookup, registry, settings)
        if part_changed:
            files[name] = data
            changed.append(name)
        if registry.dirty:
            files[registry.path] = registry.to_xml()
            changed.append(registry.path)
    return changed


def rewrite_odt_parts(files: Dict[str, bytes], lookup: Dict[str, str],
                      settings: ConversionSettings) -> List[str]:
    changed = []
    for name in ODT_RICH_PARTS:
        if name not in files:
            logger.debug("%s not in package", name)
            continue
        styles = StyleRegistry(settings)
        part_changed, data = convert_odt_part(files[name], lookup, styles, settings)
        if part_changed:
            files[name] = data
            changed.append(name)
            logger.debug("%s: declared styles %s", name, sorted(styles.required))
    return changed


def inject_metadata(files: Dict[str, bytes], fmt: DocumentFormat, metadata: DocumentMetadata) -> List[str]:
    if metadata.is_empty():
        return []
    part, apply = (DOCX_CORE_PART, apply_docx_metadata) if fmt is DocumentFormat.DOCX \
        else (ODT_META_PART, apply_odt_metadata)
    if part not in files:
        logger.warning("Skipping metadata: %s", PartMissing(f"{part} not found in package"))
        return []
    try:
        files[part] = apply(files[part], metadata)
    except (XmlParseError, PartMissing) as exc:
        logger.warning("Skipping metadata: %s", exc)
        return []
    return [part]


def postprocess(path: str, rich_values, metadata: Union[DocumentMetadata, dict, None] = None,
                fmt: Union[DocumentFormat, str, None] = None,
                settings: Optional[ConversionSettings] = None) -> bool:
    """
    Convert merged literal HTML in the package at ``path`` to native markup.

    ``rich_values`` are the merged field values (or a prepared lookup);
    only HTML-bearing strings are used. Returns True when the package was
    rewritten. Raises :class:`ArchiveError` when the archive cannot be read
    or written; the file is left untouched in that case.
    """
    settings = resolve_settings(settings)
    metadata = DocumentMetadata.coerce(metadata)
    lookup = ensure_lookup(rich_values) if rich_values else {}
    if not lookup and metadata.is_empty():
        logger.debug("Nothing to do for %s", path)
        return False

    if fmt is None:
        try:
            fmt = DocumentFormat.detect(path)
        except ValueError as exc:
            raise ArchiveError(str(exc)) from exc
    elif not isinstance(fmt, DocumentFormat):
        fmt = DocumentFormat(str(fmt).lower())

    infos, files = read_archive(path)
    changed: List[str] = []
    if lookup:
        logger.debug("Rich lookup for %s has %d fragment(s)", path, len(lookup))
        if fmt is DocumentFormat.DOCX:
            changed.extend(rewrite_docx_parts(files, lookup, settings))
        else:
            changed.extend(rewrite_odt_parts(files, lookup, settings))
    changed.extend(inject_metadata(files, fmt, metadata))

    if not changed:
        logger.info("No rich text or metadata changes for %s", path)
        return False
    write_archive(path, infos, files)
    logger.info("Rewrote %s: %s (metadata: %s)", path, ", ".join(changed), describe(metadata))
    return True
