"""Transitive loading of schema documents.

The resolver follows ``xs:import`` (other namespace) and ``xs:include`` /
``xs:redefine`` / ``xs:override`` (same namespace) links starting from one or
more entry locations, using an injected loader to obtain document bytes.

Rules applied while walking the document graph:

* A visited set keyed by normalized location stops loops and duplicate loads.
  Revisiting a location with the same target namespace is a no-op.
* Revisiting a location under a different expected namespace raises
  :class:`~xsd_engine.exceptions.NamespaceMismatch`.
* A no-namespace document included into a namespaced one is a *chameleon*: it
  is loaded once per including namespace and adopts that namespace.
* An import whose document cannot be fetched (or that carries no
  ``schemaLocation`` and whose namespace never shows up) is recorded in
  :attr:`SchemaDocumentSet.unresolved_imports`. It only becomes fatal if the
  builder later needs a component from that namespace.

``redefine`` and ``override`` are only recorded here; the builder applies them
after the base document's declarations are registered.

Example:
    from xsd_engine.loaders import MappingLoader
    from xsd_engine.resolver import SchemaResolver

    resolver = SchemaResolver(MappingLoader({"main.xsd": MAIN, "types.xsd": TYPES}))
    documents = resolver.resolve(["main.xsd"])
    print([doc.location for doc in documents])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .exceptions import (
    DocumentNotFound,
    LoaderNotFound,
    MalformedDocument,
    NamespaceMismatch,
    NotASchema,
    ResolutionError,
)
from .loaders import SchemaLoader, default_loader, normalize_location
from .nodetree import XmlNode, parse_xml
from .qnames import XSD_NAMESPACE

logger = logging.getLogger(__name__)

DIRECTIVES = ("import", "include", "redefine", "override")

DocumentKey = Tuple[str, Optional[str]]


@dataclass
class Directive:
    """One composition link found at the top of a schema document."""

    kind: str
    node: XmlNode
    namespace: Optional[str] = None
    location: Optional[str] = None
    target_key: Optional[DocumentKey] = None


@dataclass
class SchemaDocument:
    """A loaded ``xs:schema`` document.

    Attributes:
        location: Normalized location the document was fetched from.
        root: The ``xs:schema`` element.
        target_namespace: Effective target namespace (adopted from the
            includer for chameleon documents).
        chameleon: True when the namespace was adopted rather than declared.
    """

    location: str
    root: XmlNode
    target_namespace: Optional[str]
    chameleon: bool = False
    directives: List[Directive] = field(default_factory=list)

    @property
    def key(self) -> DocumentKey:
        return (self.location, self.target_namespace)

    @property
    def element_form_default(self) -> str:
        return self.root.get("elementFormDefault", "unqualified")

    @property
    def attribute_form_default(self) -> str:
        return self.root.get("attributeFormDefault", "unqualified")

    @property
    def block_default(self) -> str:
        return self.root.get("blockDefault", "")

    @property
    def final_default(self) -> str:
        return self.root.get("finalDefault", "")

    def components(self) -> Iterator[XmlNode]:
        """Top-level schema children other than composition directives."""
        for child in self.root.children:
            if child.qname.namespace != XSD_NAMESPACE:
                continue
            if child.qname.local in DIRECTIVES or child.qname.local == "annotation":
                continue
            yield child


@dataclass(frozen=True)
class UnresolvedImportRecord:
    namespace: Optional[str]
    location: Optional[str]
    referrer: str
    reason: str


@dataclass
class SchemaDocumentSet:
    """All documents reachable from the entry locations, in load order."""

    documents: List[SchemaDocument]
    unresolved_imports: List[UnresolvedImportRecord] = field(default_factory=list)

    def __iter__(self) -> Iterator[SchemaDocument]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)

    def get(self, key: DocumentKey) -> Optional[SchemaDocument]:
        for document in self.documents:
            if document.key == key:
                return document
        return None

    @property
    def namespaces(self) -> List[Optional[str]]:
        seen: List[Optional[str]] = []
        for document in self.documents:
            if document.target_namespace not in seen:
                seen.append(document.target_namespace)
        return seen

    def is_unresolved(self, namespace: Optional[str]) -> bool:
        if namespace in self.namespaces:
            return False
        return any(r.namespace == namespace for r in self.unresolved_imports)


class SchemaResolver:
    """Load schema documents transitively through an injected loader."""

    def __init__(self, loader: Optional[SchemaLoader] = None) -> None:
        self.loader = loader or default_loader()

    def resolve(self, entry_locations: Sequence[str]) -> SchemaDocumentSet:
        """Load every document reachable from ``entry_locations``.

        Raises:
            ResolutionError: For missing entry/include documents, documents
                that are not schemas, or namespace conflicts.
        """
        self._documents: Dict[DocumentKey, SchemaDocument] = {}
        self._order: List[SchemaDocument] = []
        self._roots: Dict[str, XmlNode] = {}
        self._declared: Dict[str, Optional[str]] = {}
        self._imports: List[Tuple[Optional[str], Optional[str], str, str]] = []

        if isinstance(entry_locations, str):
            entry_locations = [entry_locations]
        for location in entry_locations:
            self._load(normalize_location(location), "entry", None, None)

        loaded_namespaces = {doc.target_namespace for doc in self._order}
        unresolved: List[UnresolvedImportRecord] = []
        for namespace, location, referrer, reason in self._imports:
            if namespace in loaded_namespaces:
                continue
            record = UnresolvedImportRecord(namespace, location, referrer, reason)
            if record not in unresolved:
                logger.warning(
                    f"Import of namespace '{namespace}' from {referrer} not resolved: {reason}"
                )
                unresolved.append(record)
        return SchemaDocumentSet(list(self._order), unresolved)

    # ---------------- Internal helpers ---------------- #

    def _load(
        self,
        location: str,
        mode: str,
        expected_namespace: Optional[str],
        referrer: Optional[str],
    ) -> Optional[SchemaDocument]:
        if location in self._declared:
            return self._revisit(location, mode, expected_namespace, referrer)

        try:
            data = self.loader.fetch(location, expected_namespace)
        except LoaderNotFound as exc:
            if mode == "import":
                self._imports.append(
                    (expected_namespace, location, referrer or "", str(exc.message))
                )
                return None
            raise DocumentNotFound(
                f"Cannot load schema document '{location}'"
                + (f" referenced from {referrer}" if referrer else ""),
                location,
            ) from exc

        try:
            root = parse_xml(data, document=location)
        except MalformedDocument as exc:
            raise MalformedDocument(exc.message, location) from exc
        if root.qname.namespace != XSD_NAMESPACE or root.qname.local != "schema":
            raise NotASchema(
                f"Root element {root.qname} is not xs:schema", location
            )
        logger.info(f"Loaded schema document {location}")

        declared = root.get("targetNamespace") or None
        self._declared[location] = declared
        self._roots[location] = root
        return self._register(location, root, declared, mode, expected_namespace, referrer)

    def _revisit(
        self,
        location: str,
        mode: str,
        expected_namespace: Optional[str],
        referrer: Optional[str],
    ) -> Optional[SchemaDocument]:
        declared = self._declared[location]
        if declared is None and mode in ("include", "redefine", "override"):
            key = (location, expected_namespace)
            if key in self._documents:
                logger.debug(f"Skipping already merged document {location}")
                return self._documents[key]
            return self._register(
                location, self._roots[location], None, mode, expected_namespace, referrer
            )
        if mode != "entry" and declared != expected_namespace:
            raise NamespaceMismatch(
                f"Document '{location}' already loaded with target namespace "
                f"'{declared}' but {mode} from {referrer} expects '{expected_namespace}'",
                location,
                expected=expected_namespace,
                actual=declared,
            )
        key = (location, declared)
        if key not in self._documents:
            # only chameleon copies exist so far
            return self._register(
                location, self._roots[location], declared, mode, expected_namespace, referrer
            )
        logger.debug(f"Skipping already merged document {location}")
        return self._documents[key]

    def _register(
        self,
        location: str,
        root: XmlNode,
        declared: Optional[str],
        mode: str,
        expected_namespace: Optional[str],
        referrer: Optional[str],
    ) -> SchemaDocument:
        chameleon = False
        target = declared
        if mode == "import" and declared != expected_namespace:
            raise NamespaceMismatch(
                f"Imported document '{location}' has target namespace '{declared}', "
                f"expected '{expected_namespace}'",
                location,
                expected=expected_namespace,
                actual=declared,
            )
        if mode in ("include", "redefine", "override"):
            if declared is None and expected_namespace is not None:
                chameleon = True
                target = expected_namespace
            elif declared != expected_namespace:
                raise NamespaceMismatch(
                    f"Document '{location}' ({mode}d from {referrer}) has target "
                    f"namespace '{declared}', expected '{expected_namespace}'",
                    location,
                    expected=expected_namespace,
                    actual=declared,
                )

        document = SchemaDocument(location, root, target, chameleon)
        self._documents[document.key] = document
        self._order.append(document)

        for child in root.children:
            if child.qname.namespace != XSD_NAMESPACE or child.qname.local not in DIRECTIVES:
                continue
            directive = Directive(child.qname.local, child)
            hint = child.get("schemaLocation")
            if directive.kind == "import":
                directive.namespace = child.get("namespace") or None
                if hint:
                    directive.location = normalize_location(hint, location)
                    loaded = self._load(
                        directive.location, "import", directive.namespace, location
                    )
                    if loaded is not None:
                        directive.target_key = loaded.key
                else:
                    self._imports.append(
                        (directive.namespace, None, location, "no schemaLocation given")
                    )
            else:
                if not hint:
                    raise ResolutionError(
                        f"xs:{directive.kind} without schemaLocation", location
                    )
                directive.namespace = target
                directive.location = normalize_location(hint, location)
                loaded = self._load(directive.location, directive.kind, target, location)
                if loaded is not None:
                    directive.target_key = loaded.key
            document.directives.append(directive)
        return document


def resolve(
    entry_locations: Sequence[str], loader: Optional[SchemaLoader] = None
) -> SchemaDocumentSet:
    """Convenience wrapper around :class:`SchemaResolver`."""
    return SchemaResolver(loader).resolve(entry_locations)
