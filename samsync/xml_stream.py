"""Streaming extraction of repeated elements from very large SAM exports.

The exports are single XML documents of several hundred megabytes. Instead
of building the whole tree, ``iter_elements`` scans the file line by line,
cuts out each occurrence of the requested element (any namespace prefix)
and hands the text of that one element to lxml.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from functools import lru_cache
from pathlib import Path

from loguru import logger
from lxml import etree

from samsync.config import PROGRESS_LOG_EVERY
from samsync.element import XmlElement


XML_NAMESPACE = "http://www.w3.org/XML/1998/namespace"

_PREFIX_RE = re.compile(r"(?:</?|\s)([A-Za-z_][\w.-]*):[A-Za-z_][\w.-]*")
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_RESERVED_PREFIXES = {"xml", "xmlns"}

_PARSER = etree.XMLParser(
    remove_comments=True,
    remove_pis=True,
    resolve_entities=False,
    no_network=True,
    huge_tree=True,
)


@lru_cache(maxsize=64)
def _tag_pattern(local_name: str) -> re.Pattern[str]:
    # group 1: closing slash, group 2: self-closing slash
    return re.compile(
        rf"<(/)?(?:[A-Za-z_][\w.-]*:)?{re.escape(local_name)}(?=[\s/>])[^<>]*?(/)?>"
    )


def _clean_text(value: str | None) -> str | None:
    if not value:
        return None
    text = _WHITESPACE_RE.sub(" ", _HTML_TAG_RE.sub(" ", value)).strip()
    return text or None


def _local_name(tag: str) -> str:
    return etree.QName(tag).localname


def _attribute_name(node: etree._Element, key: str) -> str:
    if not key.startswith("{"):
        return key
    qname = etree.QName(key)
    if qname.namespace == XML_NAMESPACE:
        return f"xml:{qname.localname}"
    for prefix, uri in node.nsmap.items():
        if uri == qname.namespace and prefix:
            return f"{prefix}:{qname.localname}"
    return qname.localname


def _convert(node: etree._Element) -> XmlElement:
    children = [_convert(child) for child in node if isinstance(child.tag, str)]
    direct = (node.text or "") + "".join(child.tail or "" for child in node)
    text = _clean_text(direct)
    if text is None and children:
        text = _clean_text(" ".join(node.itertext()))
    return XmlElement(
        name=_local_name(node.tag),
        attributes={_attribute_name(node, k): v for k, v in node.attrib.items()},
        text=text,
        children=children,
    )


def build_element(fragment: str) -> XmlElement | None:
    """Parse the text of a single element into an ``XmlElement``.

    Prefixes are declared on the document root of the export, so they are
    re-declared on a wrapper element for the fragment to parse on its own.
    Returns None when the fragment is not well-formed.
    """
    prefixes = sorted(
        {p for p in _PREFIX_RE.findall(fragment) if p not in _RESERVED_PREFIXES}
    )
    declarations = " ".join(f'xmlns:{p}="urn:sam-sync:prefix:{p}"' for p in prefixes)
    wrapped = f"<fragment {declarations}>{fragment}</fragment>"
    try:
        root = etree.fromstring(wrapped.encode("utf-8"), _PARSER)
    except (etree.XMLSyntaxError, ValueError) as exc:
        logger.debug("Skipping malformed fragment: {}", exc)
        return None
    elements = [child for child in root if isinstance(child.tag, str)]
    if len(elements) != 1:
        logger.debug("Skipping fragment with {} root elements", len(elements))
        return None
    return _convert(elements[0])


def _hold_incomplete_tag(text: str, pos: int) -> int:
    """Index of a trailing ``<`` whose tag is not closed on this line, else -1."""
    idx = text.rfind("<", pos)
    if idx != -1 and ">" not in text[idx:]:
        return idx
    return -1


def iter_fragments(path: Path, local_name: str) -> Iterator[str]:
    """Yield the raw text of every ``local_name`` element in ``path``.

    Nested elements of the same name are part of their outer element. An
    element still open at end of file is dropped.
    """
    pattern = _tag_pattern(local_name)
    depth = 0
    parts: list[str] = []
    pending = ""

    with Path(path).open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            text = pending + line
            pending = ""
            pos = 0
            seg_start = 0
            while True:
                match = pattern.search(text, pos)
                if match is None:
                    held = _hold_incomplete_tag(text, pos)
                    if held != -1:
                        pending = text[held:]
                    if depth > 0:
                        parts.append(text[seg_start:] if held == -1 else text[seg_start:held])
                    break

                closing, self_closing = match.group(1), match.group(2)
                pos = match.end()

                if depth == 0:
                    if closing:
                        continue
                    if self_closing:
                        yield text[match.start() : match.end()]
                        continue
                    depth = 1
                    seg_start = match.start()
                    continue

                if closing:
                    depth -= 1
                elif not self_closing:
                    depth += 1
                if depth == 0:
                    parts.append(text[seg_start : match.end()])
                    yield "".join(parts)
                    parts = []

    if depth > 0:
        logger.debug("Dropping unterminated <{}> at end of {}", local_name, path)


def iter_elements(path: Path, local_name: str, *, verbose: bool = False) -> Iterator[XmlElement]:
    """Lazily yield every well-formed ``local_name`` element of ``path``."""
    parsed = 0
    skipped = 0
    for fragment in iter_fragments(path, local_name):
        element = build_element(fragment)
        if element is None:
            skipped += 1
            continue
        parsed += 1
        if verbose and parsed % PROGRESS_LOG_EVERY == 0:
            logger.info("Parsed {} <{}> elements from {}", parsed, local_name, Path(path).name)
        yield element
    if skipped:
        logger.warning("Skipped {} malformed <{}> elements in {}", skipped, local_name, Path(path).name)
