"""Namespace-aware qualified names.

Every declaration in a :class:`~xsd_engine.model.SchemaModel` is keyed by a
:class:`QName`. Two names are equal only when both the namespace URI and the
local part match, so ``{urn:a}Item`` and ``{urn:b}Item`` never collide.

The textual form follows ElementTree's Clark notation (``{uri}local``), which
is also how :mod:`xml.etree.ElementTree` spells element tags.

Example:
    >>> from xsd_engine.qnames import QName
    >>> name = QName.from_clark("{urn:example}Order")
    >>> name.namespace, name.local
    ('urn:example', 'Order')
    >>> str(name)
    '{urn:example}Order'
"""

from __future__ import annotations

from typing import Mapping, NamedTuple, Optional, Tuple

XSD_NAMESPACE = "http://www.w3.org/2001/XMLSchema"
XSI_NAMESPACE = "http://www.w3.org/2001/XMLSchema-instance"
XML_NAMESPACE = "http://www.w3.org/XML/1998/namespace"
XMLNS_NAMESPACE = "http://www.w3.org/2000/xmlns/"


class QName(NamedTuple):
    """A (namespace, local name) pair; ``namespace`` is ``None`` when absent."""

    namespace: Optional[str]
    local: str

    @classmethod
    def from_clark(cls, text: str) -> "QName":
        """Parse ``{uri}local`` or a bare ``local`` name."""
        if text.startswith("{"):
            uri, _, local = text[1:].partition("}")
            return cls(uri or None, local)
        return cls(None, text)

    @property
    def clark(self) -> str:
        if self.namespace:
            return f"{{{self.namespace}}}{self.local}"
        return self.local

    def sort_key(self) -> Tuple[str, str]:
        return (self.namespace or "", self.local)

    def __str__(self) -> str:
        return self.clark


def xsd(local: str) -> QName:
    """Shorthand for a name in the XML Schema namespace."""
    return QName(XSD_NAMESPACE, local)


def xsi(local: str) -> QName:
    return QName(XSI_NAMESPACE, local)


def as_qname(value) -> QName:
    """Coerce a :class:`QName`, Clark string or ``(ns, local)`` tuple."""
    if isinstance(value, QName):
        return value
    if isinstance(value, tuple):
        return QName(*value)
    return QName.from_clark(str(value))


def split_prefixed(text: str) -> Tuple[Optional[str], str]:
    """Split ``prefix:local`` into its parts (prefix is ``None`` if absent)."""
    if ":" in text:
        prefix, local = text.split(":", 1)
        return prefix, local
    return None, text


def resolve_prefixed(
    text: str,
    namespaces: Mapping[Optional[str], str],
    default_namespace: Optional[str] = None,
) -> QName:
    """Resolve a lexical ``prefix:local`` QName against in-scope namespaces.

    Args:
        text: Lexical QName as it appears in a document.
        namespaces: In-scope prefix -> URI bindings (``None`` key is the
            default namespace).
        default_namespace: Namespace used for unprefixed names when the
            mapping carries no default binding.

    Raises:
        KeyError: If the prefix is not bound.
    """
    text = text.strip()
    prefix, local = split_prefixed(text)
    if prefix is None:
        uri = namespaces.get(None) or default_namespace
        return QName(uri or None, local)
    if prefix == "xml":
        return QName(XML_NAMESPACE, local)
    if prefix not in namespaces:
        raise KeyError(prefix)
    return QName(namespaces[prefix] or None, local)
