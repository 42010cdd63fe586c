"""Read-only XML node tree consumed by the validator and produced by the encoder.

The engine never works on raw bytes. Callers hand it a tree, either:

* an :class:`xml.etree.ElementTree.Element` (or an lxml element) wrapped with
  :func:`from_etree`, or
* bytes/text parsed with :func:`parse_xml`, which additionally records line and
  column numbers and the in-scope namespace bindings of every element so that
  QName-valued content (``xsi:type="p:T"``) can be resolved.

Layout mirrors ElementTree: ``text`` is the character data before the first
child and every child carries its own ``tail``.

Example:
    >>> from xsd_engine.nodetree import parse_xml, serialize
    >>> root = parse_xml(b'<a xmlns="urn:x"><b>1</b></a>')
    >>> root.qname.local, root.children[0].text
    ('a', '1')
    >>> serialize(root)
    '<a xmlns="urn:x"><b>1</b></a>'
"""

from __future__ import annotations

import xml.parsers.expat
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Union
from xml.sax.saxutils import escape, quoteattr

from .exceptions import MalformedDocument
from .qnames import XML_NAMESPACE, QName

Namespaces = Dict[Optional[str], str]


@dataclass(frozen=True)
class SourceLocation:
    """Where a node sits in its document (line/column are 1-based when known)."""

    path: str
    line: Optional[int] = None
    column: Optional[int] = None
    document: Optional[str] = None

    def __str__(self) -> str:
        parts = [self.path]
        if self.line is not None:
            parts.append(f"line {self.line}")
            if self.column is not None:
                parts[-1] += f", column {self.column}"
        if self.document:
            parts.append(self.document)
        return " @ ".join(parts)


class XmlNode:
    """An element of a parsed document.

    Attributes:
        qname: Namespace-qualified element name.
        attributes: Attribute values keyed by :class:`QName` (namespace
            declarations excluded).
        children: Child elements in document order.
        text: Character data before the first child (``None`` if absent).
        tail: Character data following this element inside its parent.
        namespaces: In-scope prefix bindings (``None`` = default namespace).
    """

    __slots__ = (
        "qname",
        "attributes",
        "children",
        "text",
        "tail",
        "namespaces",
        "parent",
        "line",
        "column",
        "document",
    )

    def __init__(
        self,
        qname: QName,
        attributes: Optional[Dict[QName, str]] = None,
        text: Optional[str] = None,
        namespaces: Optional[Namespaces] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
        document: Optional[str] = None,
    ) -> None:
        self.qname = qname
        self.attributes: Dict[QName, str] = attributes if attributes is not None else {}
        self.children: List[XmlNode] = []
        self.text = text
        self.tail: Optional[str] = None
        self.namespaces: Namespaces = namespaces if namespaces is not None else {}
        self.parent: Optional[XmlNode] = None
        self.line = line
        self.column = column
        self.document = document

    def __repr__(self) -> str:
        return f"<XmlNode {self.qname.clark} children={len(self.children)}>"

    def append(self, child: "XmlNode") -> "XmlNode":
        child.parent = self
        self.children.append(child)
        return child

    def get(self, name: Union[str, QName], default: Optional[str] = None) -> Optional[str]:
        """Return an attribute value; plain strings name unqualified attributes."""
        key = name if isinstance(name, QName) else QName(None, name)
        return self.attributes.get(key, default)

    def text_content(self) -> str:
        """Direct character data (own text plus the tails of children)."""
        parts = [self.text or ""]
        for child in self.children:
            parts.append(child.tail or "")
        return "".join(parts)

    def has_significant_text(self) -> bool:
        return bool(self.text_content().strip())

    def iter(self) -> Iterator["XmlNode"]:
        """Depth-first, document order, including ``self``."""
        yield self
        for child in self.children:
            yield from child.iter()

    @property
    def path(self) -> str:
        steps: List[str] = []
        node: Optional[XmlNode] = self
        while node is not None:
            parent = node.parent
            if parent is None:
                steps.append(node.qname.local)
            else:
                same = [c for c in parent.children if c.qname == node.qname]
                if len(same) > 1:
                    steps.append(f"{node.qname.local}[{same.index(node) + 1}]")
                else:
                    steps.append(node.qname.local)
            node = parent
        return "/" + "/".join(reversed(steps))

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.path, self.line, self.column, self.document)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def parse_xml(data: Union[bytes, str], document: Optional[str] = None) -> XmlNode:
    """Parse a document into an :class:`XmlNode` tree.

    Args:
        data: Encoded bytes or text of a complete XML document.
        document: Optional location label copied into node locations.

    Raises:
        MalformedDocument: If the document is not well-formed.
    """
    parser = xml.parsers.expat.ParserCreate(namespace_separator=" ")
    parser.buffer_text = True
    stack: List[XmlNode] = []
    roots: List[XmlNode] = []
    pending: Namespaces = {}

    def start_ns(prefix, uri):
        pending[prefix or None] = uri or ""

    def start(tag, attrs):
        nonlocal pending
        parent = stack[-1] if stack else None
        inherited = parent.namespaces if parent is not None else {}
        if pending:
            scope = dict(inherited)
            scope.update(pending)
            pending = {}
        else:
            scope = inherited
        attributes = {_expat_name(k): v for k, v in attrs.items()}
        node = XmlNode(
            _expat_name(tag),
            attributes,
            namespaces=scope,
            line=parser.CurrentLineNumber,
            column=parser.CurrentColumnNumber + 1,
            document=document,
        )
        if parent is not None:
            parent.append(node)
        else:
            roots.append(node)
        stack.append(node)

    def end(tag):
        stack.pop()

    def chars(data):
        if not stack:
            return
        node = stack[-1]
        if node.children:
            last = node.children[-1]
            last.tail = (last.tail or "") + data
        else:
            node.text = (node.text or "") + data

    parser.StartNamespaceDeclHandler = start_ns
    parser.StartElementHandler = start
    parser.EndElementHandler = end
    parser.CharacterDataHandler = chars
    try:
        if isinstance(data, str):
            parser.Parse(data.encode("utf-8"), True)
        else:
            parser.Parse(data, True)
    except xml.parsers.expat.ExpatError as exc:
        raise MalformedDocument(f"Malformed XML: {exc}", document) from exc
    if not roots:
        raise MalformedDocument("Document has no root element", document)
    return roots[0]


def _expat_name(name: str) -> QName:
    if " " in name:
        uri, local = name.split(" ", 1)
        return QName(uri, local)
    return QName(None, name)


def from_etree(
    element, namespaces: Optional[Mapping[Optional[str], str]] = None
) -> XmlNode:
    """Adapt an ElementTree (or lxml) element into an :class:`XmlNode` tree.

    ElementTree drops namespace declarations while parsing, so prefix bindings
    for QName-valued content must be passed in ``namespaces``. lxml elements
    expose ``nsmap`` and ``sourceline``, which are picked up automatically.
    """
    scope: Namespaces = dict(namespaces or {})
    return _convert(element, scope, None)


def _convert(element, inherited: Namespaces, parent: Optional[XmlNode]) -> XmlNode:
    nsmap = getattr(element, "nsmap", None)
    scope = inherited
    if nsmap:
        scope = dict(inherited)
        scope.update(nsmap)
    attributes = {QName.from_clark(k): v for k, v in element.attrib.items()}
    node = XmlNode(
        QName.from_clark(element.tag),
        attributes,
        text=element.text,
        namespaces=scope,
        line=getattr(element, "sourceline", None),
    )
    node.tail = element.tail
    node.parent = parent
    for child in element:
        if not isinstance(child.tag, str):
            # comments and processing instructions
            if node.children:
                last = node.children[-1]
                last.tail = (last.tail or "") + (child.tail or "")
            else:
                node.text = (node.text or "") + (child.tail or "")
            continue
        node.children.append(_convert(child, scope, node))
    return node


# ---------------------------------------------------------------------------
# Output and comparison
# ---------------------------------------------------------------------------


def serialize(node: XmlNode) -> str:
    """Render a tree as XML text, declaring namespaces where they change."""
    parts: List[str] = []
    _write(node, parts, None)
    return "".join(parts)


def _write(node: XmlNode, out: List[str], parent_scope: Optional[Namespaces]) -> None:
    scope = dict(node.namespaces)
    declared = {
        prefix: uri
        for prefix, uri in scope.items()
        if parent_scope is None or parent_scope.get(prefix) != uri
    }
    tag = _prefixed(node.qname, scope, declared, attribute=False)
    attrs = []
    for name, value in node.attributes.items():
        attrs.append(f" {_prefixed(name, scope, declared, attribute=True)}={quoteattr(value)}")
    decls = []
    for prefix, uri in declared.items():
        if prefix is None:
            decls.append(f" xmlns={quoteattr(uri)}")
        else:
            decls.append(f" xmlns:{prefix}={quoteattr(uri)}")
    out.append(f"<{tag}{''.join(decls)}{''.join(attrs)}")
    if not node.children and not node.text:
        out.append("/>")
    else:
        out.append(">")
        if node.text:
            out.append(escape(node.text))
        for child in node.children:
            _write(child, out, scope)
            if child.tail:
                out.append(escape(child.tail))
        out.append(f"</{tag}>")


def _prefixed(
    name: QName, scope: Namespaces, declared: Namespaces, attribute: bool
) -> str:
    if not name.namespace:
        if not attribute and scope.get(None):
            # unqualified element under a default namespace
            scope[None] = ""
            declared[None] = ""
        return name.local
    if name.namespace == XML_NAMESPACE:
        return f"xml:{name.local}"
    if not attribute and scope.get(None) == name.namespace:
        return name.local
    for prefix, uri in scope.items():
        if uri == name.namespace and prefix is not None:
            return f"{prefix}:{name.local}"
    index = 0
    while f"ns{index}" in scope:
        index += 1
    prefix = f"ns{index}"
    scope[prefix] = name.namespace
    declared[prefix] = name.namespace
    return f"{prefix}:{name.local}"


def nodes_equal(a: XmlNode, b: XmlNode, collapse_whitespace: bool = True) -> bool:
    """Structural equality: names, attributes, character data and children.

    With ``collapse_whitespace`` whitespace runs are collapsed and trimmed
    before comparing text, so indentation never makes two trees differ.
    """
    if a.qname != b.qname or a.attributes != b.attributes:
        return False
    if len(a.children) != len(b.children):
        return False
    if _norm(a.text_content(), collapse_whitespace) != _norm(
        b.text_content(), collapse_whitespace
    ):
        return False
    return all(
        nodes_equal(x, y, collapse_whitespace) for x, y in zip(a.children, b.children)
    )


def _norm(text: str, collapse: bool) -> str:
    if collapse:
        return " ".join(text.split())
    return text
