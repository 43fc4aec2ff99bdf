"""In-memory element model shared by the parser and the transformers.

Names are local names (namespace prefix stripped). Attribute names keep
their source spelling, so ``xml:lang`` stays ``xml:lang``.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from dataclasses import field


LANGUAGES = ("fr", "nl", "de", "en")


@dataclass(slots=True)
class XmlElement:
    name: str
    attributes: dict[str, str] = field(default_factory=dict)
    text: str | None = None
    children: list[XmlElement] = field(default_factory=list)

    def child(self, name: str) -> XmlElement | None:
        for node in self.children:
            if node.name == name:
                return node
        return None

    def children_named(self, name: str) -> list[XmlElement]:
        return [node for node in self.children if node.name == name]

    def attr(self, name: str) -> str | None:
        value = self.attributes.get(name)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def child_text(self, name: str) -> str | None:
        node = self.child(name)
        if node is None:
            return None
        return node.text or None


def current_version(element: XmlElement) -> XmlElement | None:
    """Pick the active ``Data`` child of a versioned element.

    The first version without a ``to`` bound is open-ended and wins. When all
    versions are closed, the one with the greatest ``to`` wins (ISO dates
    compare correctly as strings). Returns None when there is no ``Data``.
    """
    versions = element.children_named("Data")
    if not versions:
        return None
    for version in versions:
        if not version.attr("to"):
            return version
    latest = versions[0]
    for version in versions[1:]:
        if (version.attr("to") or "") > (latest.attr("to") or ""):
            latest = version
    return latest


def multilingual(element: XmlElement | None) -> dict[str, str] | None:
    """Collect ``{lang: text}`` from a multilingual field.

    SAM writes languages either as ``<Fr>``/``<Nl>`` children or as children
    carrying ``xml:lang``.
    """
    if element is None:
        return None
    texts: dict[str, str] = {}
    for node in element.children:
        lang = node.name.lower()
        if lang not in LANGUAGES:
            lang = (node.attributes.get("xml:lang") or "").strip().lower()
        if lang and node.text:
            texts[lang] = node.text
    return texts or None


def multilingual_child(element: XmlElement | None, name: str) -> dict[str, str] | None:
    if element is None:
        return None
    return multilingual(element.child(name))


def parse_date(value: str | None) -> dt.date | None:
    if not value:
        return None
    try:
        return dt.date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


def validity_window(version: XmlElement | None) -> tuple[dt.date | None, dt.date | None]:
    if version is None:
        return None, None
    return parse_date(version.attr("from")), parse_date(version.attr("to"))
