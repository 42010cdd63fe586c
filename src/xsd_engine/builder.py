"""Compile a resolved :class:`~xsd_engine.resolver.SchemaDocumentSet` into a
:class:`~xsd_engine.model.SchemaModel`.

Building runs in two passes:

1. **Registration.** Every top-level declaration of every document is
   recorded by symbol space (types, elements, attributes, groups, attribute
   groups, notations) and QName. Duplicates are collected, sorted and
   reported. ``xs:redefine`` renames the original component and lets the
   redefinition refer to it; ``xs:override`` simply replaces it.
2. **Compilation.** Components are compiled lazily in sorted QName order.
   Base-type resolution keeps an explicit derivation stack so loops surface
   as :class:`~xsd_engine.exceptions.CircularDerivation` with the full cycle.
   Element types are resolved in a deferred queue, which lets content models
   refer back to types still being derived.

References into a namespace whose import could not be resolved raise
:class:`~xsd_engine.exceptions.UnresolvedImport` only when they are actually
followed.

Example:
    from xsd_engine.builder import build_schema
    from xsd_engine.loaders import MappingLoader

    model = build_schema(["order.xsd"], loader=MappingLoader({"order.xsd": XSD}))
    print(sorted(str(name) for name in model.elements))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from .exceptions import (
    BuildError,
    CircularDerivation,
    CircularReference,
    DepthExceeded,
    DuplicateDeclaration,
    FacetViolation,
    InvalidSchema,
    SchemaBuildFailed,
    UnresolvedImport,
    UnresolvedReference,
    UnsupportedFeature,
)
from .identity import compile_path
from .loaders import SchemaLoader
from .model import (
    AttributeDeclaration,
    AttributeGroup,
    ElementDeclaration,
    IdentityConstraint,
    SchemaModel,
)
from .nodetree import XmlNode
from .particles import (
    ElementParticle,
    GroupParticle,
    NamespaceConstraint,
    Particle,
    WildcardParticle,
)
from .qnames import XSD_NAMESPACE, QName, resolve_prefixed
from .resolver import Directive, SchemaDocument, SchemaDocumentSet, resolve
from .restriction import check_particle_restriction
from .types import (
    ANY_SIMPLE_TYPE,
    ANY_TYPE,
    BUILTIN_TYPES,
    FACET_NAMES,
    AttributeUse,
    AttributeWildcard,
    ComplexType,
    SimpleType,
    TypeDefinition,
    derivation_methods,
    derive,
    validate_value,
)

logger = logging.getLogger(__name__)

SYMBOL_SPACES = {
    "simpleType": "type",
    "complexType": "type",
    "element": "element",
    "attribute": "attribute",
    "group": "group",
    "attributeGroup": "attributeGroup",
    "notation": "notation",
}
COMPILE_ORDER = ("type", "attribute", "attributeGroup", "group", "element", "notation")
XSD11_ONLY = frozenset(
    {"assert", "assertion", "alternative", "openContent", "defaultOpenContent", "explicitTimezone"}
)
PARTICLE_TAGS = ("element", "any", "group", "sequence", "choice", "all")
ATTRIBUTE_TAGS = ("attribute", "attributeGroup", "anyAttribute")
IDENTITY_TAGS = ("unique", "key", "keyref")


@dataclass
class BuildConfig:
    """Options for :class:`SchemaModelBuilder`.

    Attributes:
        max_depth: Bound on type derivation chains and content model nesting.
        aggregate_errors: Collect every registration error into one
            :class:`~xsd_engine.exceptions.SchemaBuildFailed` instead of
            stopping at the first one.
    """

    max_depth: int = 64
    aggregate_errors: bool = False


@dataclass
class _Source:
    space: str
    name: QName
    node: XmlNode
    document: SchemaDocument
    aliases: Dict[QName, QName] = field(default_factory=dict)


@dataclass
class _Context:
    document: SchemaDocument
    source: Optional[_Source]
    path: str

    @property
    def tns(self) -> Optional[str]:
        return self.document.target_namespace

    def child(self, step: str) -> "_Context":
        return _Context(self.document, self.source, f"{self.path}/{step}")


def _xsd_children(node: XmlNode, *names: str) -> List[XmlNode]:
    return [
        child
        for child in node.children
        if child.qname.namespace == XSD_NAMESPACE
        and child.qname.local != "annotation"
        and (not names or child.qname.local in names)
    ]


def _loc(node: XmlNode, document: Optional[SchemaDocument] = None) -> str:
    where = document.location if document is not None else (node.document or "")
    if node.line is not None:
        return f"{where}:{node.line}"
    return where


def _bool(value: Optional[str]) -> bool:
    return (value or "").strip() in ("true", "1")


def _derivation_set(value: Optional[str], default: str, allowed: Iterable[str]) -> FrozenSet[str]:
    tokens = (value if value is not None else default).split()
    if "#all" in tokens:
        return frozenset(allowed)
    return frozenset(t for t in tokens if t in allowed)


class SchemaModelBuilder:
    """Two-pass compiler producing an immutable :class:`SchemaModel`.

    A builder may be reused; every :meth:`build` call starts from scratch.
    """

    def __init__(self, config: Optional[BuildConfig] = None) -> None:
        self.config = config or BuildConfig()

    def build(self, documents: SchemaDocumentSet) -> SchemaModel:
        """Compile ``documents``.

        Raises:
            BuildError: For structural schema defects (first error in sorted
                order, or :class:`SchemaBuildFailed` in aggregate mode).
            UnresolvedImport: If a component from an unresolved import is used.
        """
        self.documents = documents
        self._sources: Dict[str, Dict[QName, _Source]] = {
            space: {} for space in COMPILE_ORDER
        }
        self._compiled: Dict[Tuple[str, QName], object] = {}
        self._types: Dict[QName, TypeDefinition] = {}
        self._elements: Dict[QName, ElementDeclaration] = {}
        self._attributes: Dict[QName, AttributeDeclaration] = {}
        self._groups: Dict[QName, GroupParticle] = {}
        self._attribute_groups: Dict[QName, AttributeGroup] = {}
        self._identity: Dict[QName, IdentityConstraint] = {}
        self._deriving: List[QName] = []
        self._referencing: List[Tuple[str, QName]] = []
        self._pending: Dict[ElementDeclaration, Callable[[], TypeDefinition]] = {}
        self._pending_order: List[ElementDeclaration] = []
        self._value_checks: List[Tuple[ElementDeclaration, XmlNode, str]] = []
        self._restriction_checks: List[Tuple[ComplexType, ComplexType, str]] = []
        self._heads: Dict[ElementDeclaration, ElementDeclaration] = {}

        self._register_all()
        self._check_substitution_cycles()
        for space in COMPILE_ORDER:
            for name in sorted(self._sources[space], key=QName.sort_key):
                self._compile(self._sources[space][name])
        while self._pending_order:
            self._ensure_typed(self._pending_order.pop(0))
        self._check_element_values()
        self._check_restrictions()
        substitution_groups = self._substitution_index()
        self._check_keyrefs()

        closure = {
            name: frozenset(t.name for t in type_def.ancestors())
            for name, type_def in self._types.items()
        }
        model = SchemaModel(
            types=self._types,
            elements=self._elements,
            attributes=self._attributes,
            groups=self._groups,
            attribute_groups=self._attribute_groups,
            identity_constraints=self._identity,
            substitution_groups=substitution_groups,
            derivation_closure=closure,
            namespaces=documents.namespaces,
            unresolved_imports=[r.namespace for r in documents.unresolved_imports],
        )
        logger.debug(
            f"Built schema model from {len(documents)} document(s): "
            f"{len(self._types)} types, {len(self._elements)} elements, "
            f"{len(self._attributes)} attributes, {len(self._groups)} groups"
        )
        return model

    # ------------------------------------------------------------------
    # Pass 1: registration
    # ------------------------------------------------------------------

    def _register_all(self) -> None:
        errors: List[BuildError] = []
        for document in self.documents:
            try:
                self._scan_unsupported(document)
            except BuildError as exc:
                errors.append(exc)
            for node in document.components():
                space = SYMBOL_SPACES.get(node.qname.local)
                if space is None:
                    errors.append(
                        InvalidSchema(
                            f"Unexpected top-level element xs:{node.qname.local}",
                            _loc(node, document),
                        )
                    )
                    continue
                try:
                    source = self._make_source(space, node, document)
                except BuildError as exc:
                    errors.append(exc)
                    continue
                existing = self._sources[space].get(source.name)
                if existing is not None:
                    errors.append(
                        DuplicateDeclaration(
                            f"Duplicate {space} {source.name} in {document.location} "
                            f"(first declared in {existing.document.location})",
                            _loc(node, document),
                        )
                    )
                    continue
                self._sources[space][source.name] = source

        for document in self.documents:
            for directive in document.directives:
                if directive.kind not in ("redefine", "override"):
                    continue
                try:
                    self._apply_redefinition(document, directive)
                except BuildError as exc:
                    errors.append(exc)

        if errors:
            errors.sort(key=lambda e: (e.kind, e.message))
            if self.config.aggregate_errors:
                raise SchemaBuildFailed(errors)
            raise errors[0]

    def _scan_unsupported(self, document: SchemaDocument) -> None:
        for node in document.root.iter():
            if node.qname.namespace == XSD_NAMESPACE and node.qname.local in XSD11_ONLY:
                raise UnsupportedFeature(
                    f"xs:{node.qname.local} is an XSD 1.1 construct", _loc(node, document)
                )

    def _make_source(self, space: str, node: XmlNode, document: SchemaDocument) -> _Source:
        local = node.get("name")
        if not local:
            raise InvalidSchema(
                f"Top-level xs:{node.qname.local} without a name", _loc(node, document)
            )
        return _Source(space, QName(document.target_namespace, local.strip()), node, document)

    def _apply_redefinition(self, document: SchemaDocument, directive: Directive) -> None:
        target = self.documents.get(directive.target_key) if directive.target_key else None
        if target is None:
            raise InvalidSchema(
                f"xs:{directive.kind} target '{directive.location}' was not loaded",
                _loc(directive.node, document),
            )
        for child in _xsd_children(directive.node):
            space = SYMBOL_SPACES.get(child.qname.local)
            if space is None or (
                directive.kind == "redefine" and space not in ("type", "group", "attributeGroup")
            ):
                raise InvalidSchema(
                    f"xs:{child.qname.local} is not allowed inside xs:{directive.kind}",
                    _loc(child, document),
                )
            source = self._make_source(space, child, document)
            original = self._sources[space].get(source.name)
            if directive.kind == "override":
                if original is None:
                    logger.debug(f"Override of {space} {source.name} has no target; ignored")
                    continue
                self._sources[space][source.name] = source
                continue
            if original is None:
                raise InvalidSchema(
                    f"Redefined {space} {source.name} not found in {target.location}",
                    _loc(child, document),
                )
            alias = QName(source.name.namespace, f"{source.name.local}~redefined")
            while alias in self._sources[space]:
                alias = QName(alias.namespace, alias.local + "~")
            original.name = alias
            self._sources[space][alias] = original
            source.aliases[source.name] = alias
            self._sources[space][source.name] = source

    def _check_substitution_cycles(self) -> None:
        heads: Dict[QName, QName] = {}
        for name, source in self._sources["element"].items():
            value = source.node.get("substitutionGroup")
            if not value:
                continue
            tokens = value.split()
            if len(tokens) > 1:
                raise UnsupportedFeature(
                    f"Element {name} names several substitution group heads (XSD 1.1)",
                    _loc(source.node, source.document),
                )
            ctx = _Context(source.document, source, name.local)
            heads[name] = self._qname(tokens[0], source.node, ctx)
        for start in sorted(heads, key=QName.sort_key):
            chain = [start]
            current = heads.get(start)
            while current is not None:
                if current in chain:
                    cycle = chain[chain.index(current):] + [current]
                    raise CircularReference(
                        "Circular substitution group: " + " -> ".join(str(n) for n in cycle),
                        cycle,
                    )
                chain.append(current)
                current = heads.get(current)

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    def _qname(self, text: str, node: XmlNode, ctx: _Context) -> QName:
        try:
            name = resolve_prefixed(text, node.namespaces)
        except KeyError as exc:
            raise InvalidSchema(
                f"Unbound prefix '{exc.args[0]}' in reference '{text}'", _loc(node, ctx.document)
            ) from exc
        if name.namespace is None and ctx.document.chameleon:
            name = QName(ctx.tns, name.local)
        return name

    def _lookup(
        self, space: str, name: QName, ctx: _Context, node: XmlNode, is_base: bool = False
    ):
        if ctx.source is not None and name in ctx.source.aliases:
            if space != "type" or is_base:
                name = ctx.source.aliases[name]
        location = _loc(node, ctx.document)
        if space == "type" and name.namespace == XSD_NAMESPACE:
            if name.local == "error":
                raise UnsupportedFeature("xs:error is an XSD 1.1 type", location)
            found = BUILTIN_TYPES.get(name)
            if found is None:
                raise UnresolvedReference(f"Unknown built-in type {name}", location)
            return found
        source = self._sources[space].get(name)
        if source is None:
            if self.documents.is_unresolved(name.namespace):
                raise UnresolvedImport(
                    f"{space} {name} belongs to namespace '{name.namespace}' whose import "
                    f"was not resolved",
                    name.namespace,
                    location,
                )
            raise UnresolvedReference(f"Unresolved {space} reference {name}", location)
        return self._compile(source)

    def _compile(self, source: _Source):
        key = (source.space, source.name)
        if key in self._compiled:
            return self._compiled[key]
        if source.space == "type":
            return self._named_type(source)
        if source.space == "element":
            return self._global_element(source)
        if source.space == "attribute":
            return self._global_attribute(source)
        if source.space in ("group", "attributeGroup"):
            return self._referenced_group(source)
        self._compiled[key] = source.node
        return source.node

    # ------------------------------------------------------------------
    # Types
    # ------------------------------------------------------------------

    def _enter(self, name: QName, node: XmlNode, ctx: _Context) -> None:
        if name in self._deriving:
            cycle = self._deriving[self._deriving.index(name):] + [name]
            raise CircularDerivation(
                "Circular type derivation: " + " -> ".join(str(n) for n in cycle),
                cycle,
                _loc(node, ctx.document),
            )
        if len(self._deriving) >= self.config.max_depth:
            raise DepthExceeded(
                f"Type derivation deeper than {self.config.max_depth} at {name}",
                _loc(node, ctx.document),
            )
        self._deriving.append(name)

    def _leave(self, name: QName) -> None:
        self._deriving.pop()

    def _register_type(self, type_def: TypeDefinition, named: bool) -> None:
        self._types[type_def.name] = type_def
        if named:
            self._compiled[("type", type_def.name)] = type_def

    def _named_type(self, source: _Source) -> TypeDefinition:
        ctx = _Context(source.document, source, source.name.local)
        if source.node.qname.local == "simpleType":
            return self._simple_type(source.node, ctx, source.name, anonymous=False)
        return self._complex_type(source.node, ctx, source.name, anonymous=False)

    def _anonymous_name(self, ctx: _Context) -> QName:
        name = QName(ctx.tns, f"{ctx.path}#type")
        index = 2
        while name in self._types:
            name = QName(ctx.tns, f"{ctx.path}#type{index}")
            index += 1
        return name

    def _anonymous_type(self, node: XmlNode, ctx: _Context) -> TypeDefinition:
        name = self._anonymous_name(ctx)
        if node.qname.local == "simpleType":
            return self._simple_type(node, ctx, name, anonymous=True)
        return self._complex_type(node, ctx, name, anonymous=True)

    def _type_reference(self, node: XmlNode, attribute: str, ctx: _Context, is_base: bool = False):
        return self._lookup("type", self._qname(node.get(attribute), node, ctx), ctx, node, is_base)

    def _simple_type(
        self, node: XmlNode, ctx: _Context, name: QName, anonymous: bool
    ) -> SimpleType:
        location = _loc(node, ctx.document)
        final = _derivation_set(
            node.get("final"), ctx.document.final_default, ("restriction", "list", "union")
        )
        children = _xsd_children(node)
        if len(children) != 1 or children[0].qname.local not in ("restriction", "list", "union"):
            raise InvalidSchema(
                f"Simple type {name} needs exactly one of restriction, list or union", location
            )
        child = children[0]
        self._enter(name, node, ctx)
        try:
            if child.qname.local == "restriction":
                base = self._simple_base(child, ctx, "base")
                result = derive(
                    base,
                    "restriction",
                    self._facets(child, ctx),
                    name=name,
                    namespaces=child.namespaces,
                    anonymous=anonymous,
                    final=final,
                )
            elif child.qname.local == "list":
                item = self._simple_base(child, ctx, "itemType")
                result = derive(item, "list", name=name, anonymous=anonymous, final=final)
            else:
                members: List[SimpleType] = []
                for text in (child.get("memberTypes") or "").split():
                    member = self._lookup("type", self._qname(text, child, ctx), ctx, child)
                    if not member.is_simple:
                        raise InvalidSchema(f"Union member {member.name} is not simple", location)
                    members.append(member)
                for index, inline in enumerate(_xsd_children(child, "simpleType"), 1):
                    members.append(self._anonymous_type(inline, ctx.child(f"member{index}")))
                result = derive(members, "union", name=name, anonymous=anonymous, final=final)
        except BuildError as exc:
            if exc.location is None:
                exc.location = location
            raise
        finally:
            self._leave(name)
        self._register_type(result, named=not anonymous)
        return result

    def _simple_base(self, node: XmlNode, ctx: _Context, attribute: str) -> SimpleType:
        inline = _xsd_children(node, "simpleType")
        if node.get(attribute):
            if inline:
                raise InvalidSchema(
                    f"xs:{node.qname.local} has both {attribute} and an inline type",
                    _loc(node, ctx.document),
                )
            base = self._type_reference(node, attribute, ctx, is_base=attribute == "base")
        elif inline:
            base = self._anonymous_type(inline[0], ctx.child(attribute))
        else:
            raise InvalidSchema(
                f"xs:{node.qname.local} needs a {attribute} attribute or an inline simpleType",
                _loc(node, ctx.document),
            )
        if not base.is_simple:
            raise InvalidSchema(
                f"{base.name} is not a simple type", _loc(node, ctx.document)
            )
        return base

    def _facets(self, node: XmlNode, ctx: _Context) -> Dict[str, object]:
        restrictions: Dict[str, object] = {}
        fixed = []
        for child in _xsd_children(node):
            local = child.qname.local
            if local == "simpleType" or local in PARTICLE_TAGS or local in ATTRIBUTE_TAGS:
                continue
            if local not in FACET_NAMES:
                raise InvalidSchema(f"Unknown facet xs:{local}", _loc(child, ctx.document))
            value = child.get("value")
            if value is None:
                raise InvalidSchema(f"Facet xs:{local} without value", _loc(child, ctx.document))
            if local in ("pattern", "enumeration"):
                restrictions.setdefault(local, []).append(value)  # type: ignore[union-attr]
            else:
                if local in restrictions:
                    raise InvalidSchema(
                        f"Facet xs:{local} given twice", _loc(child, ctx.document)
                    )
                restrictions[local] = value
            if _bool(child.get("fixed")):
                fixed.append(local)
        if fixed:
            restrictions["fixed"] = fixed
        return restrictions

    def _complex_type(
        self, node: XmlNode, ctx: _Context, name: QName, anonymous: bool
    ) -> ComplexType:
        document = ctx.document
        complex_type = ComplexType(
            name,
            abstract=_bool(node.get("abstract")),
            block=_derivation_set(
                node.get("block"), document.block_default, ("extension", "restriction")
            ),
            final=_derivation_set(
                node.get("final"), document.final_default, ("extension", "restriction")
            ),
            anonymous=anonymous,
        )
        mixed = _bool(node.get("mixed"))
        children = _xsd_children(node)
        if children and children[0].qname.local in ("simpleContent", "complexContent"):
            if len(children) > 1:
                raise InvalidSchema(
                    f"Complex type {name} mixes {children[0].qname.local} with other content",
                    _loc(node, document),
                )
            content = children[0]
            if content.get("mixed") is not None:
                mixed = _bool(content.get("mixed"))
            self._derived_content(complex_type, content, ctx, mixed, anonymous)
            return complex_type

        complex_type.base = ANY_TYPE
        complex_type.derivation = "restriction"
        self._register_type(complex_type, named=not anonymous)
        particle_node, attribute_nodes = self._split_content(children, node, ctx)
        particle = self._content_particle(particle_node, ctx)
        self._set_content(complex_type, particle, mixed)
        uses, wildcard, _ = self._attribute_uses(attribute_nodes, ctx)
        complex_type.attribute_uses = _sorted_uses(uses)
        complex_type.attribute_wildcard = wildcard
        return complex_type

    def _derived_content(
        self,
        complex_type: ComplexType,
        content: XmlNode,
        ctx: _Context,
        mixed: bool,
        anonymous: bool,
    ) -> None:
        document = ctx.document
        derivations = _xsd_children(content)
        if len(derivations) != 1 or derivations[0].qname.local not in ("restriction", "extension"):
            raise InvalidSchema(
                f"xs:{content.qname.local} needs exactly one restriction or extension",
                _loc(content, document),
            )
        derivation = derivations[0]
        method = derivation.qname.local
        location = _loc(derivation, document)
        if not derivation.get("base"):
            raise InvalidSchema(f"xs:{method} without base", location)

        self._enter(complex_type.name, derivation, ctx)
        try:
            base = self._type_reference(derivation, "base", ctx, is_base=True)
        finally:
            self._leave(complex_type.name)
        if method in base.final:
            raise InvalidSchema(f"Type {base.name} is final for {method}", location)
        complex_type.base = base
        complex_type.derivation = method
        self._register_type(complex_type, named=not anonymous)

        inner = [c for c in _xsd_children(derivation) if c.qname.local != "simpleType"]
        particle_node, attribute_nodes = self._split_content(inner, derivation, ctx, facets_ok=True)
        uses, wildcard, prohibited = self._attribute_uses(attribute_nodes, ctx)

        if content.qname.local == "simpleContent":
            if particle_node is not None:
                raise InvalidSchema("simpleContent cannot declare elements", location)
            complex_type.content_kind = "simple"
            if method == "extension":
                if base.is_simple:
                    complex_type.simple_type = base
                elif base.content_kind == "simple":
                    complex_type.simple_type = base.simple_type
                else:
                    raise InvalidSchema(
                        f"simpleContent extension base {base.name} has no simple content", location
                    )
            else:
                if base.is_simple or base.content_kind not in ("simple", "mixed"):
                    raise InvalidSchema(
                        f"simpleContent restriction base {base.name} must have simple content",
                        location,
                    )
                inline = _xsd_children(derivation, "simpleType")
                if inline:
                    value_base = self._anonymous_type(inline[0], ctx.child("content"))
                else:
                    value_base = base.simple_type or BUILTIN_TYPES[QName(XSD_NAMESPACE, "string")]
                facets = self._facets(derivation, ctx)
                if facets:
                    value_type = derive(
                        value_base,
                        "restriction",
                        facets,
                        name=self._anonymous_name(ctx.child("content")),
                        namespaces=derivation.namespaces,
                        anonymous=True,
                    )
                    self._register_type(value_type, named=False)
                else:
                    value_type = value_base
                complex_type.simple_type = value_type
        else:
            if base.is_simple:
                raise InvalidSchema(
                    f"complexContent base {base.name} must be a complex type", location
                )
            own = self._content_particle(particle_node, ctx)
            if method == "extension":
                if base.content_kind == "simple":
                    if own is not None and not own.is_empty():
                        raise InvalidSchema(
                            f"Cannot add elements to simple content type {base.name}", location
                        )
                    complex_type.content_kind = "simple"
                    complex_type.simple_type = base.simple_type
                else:
                    inherited = base.particle if base.content_kind in ("element-only", "mixed") else None
                    mixed = mixed or base.content_kind == "mixed"
                    if inherited is None or inherited.is_empty():
                        particle = own
                    elif own is None or own.is_empty():
                        particle = inherited
                    else:
                        particle = GroupParticle("sequence", (inherited, own))
                    self._set_content(complex_type, particle, mixed)
            else:
                self._set_content(complex_type, own, mixed)
                self._restriction_checks.append((complex_type, base, location))

        if method == "extension":
            complex_type.attribute_uses, complex_type.attribute_wildcard = _extend_attributes(
                base, uses, wildcard, location
            )
        else:
            complex_type.attribute_uses, complex_type.attribute_wildcard = _restrict_attributes(
                base, uses, wildcard, prohibited, location
            )

    def _split_content(
        self, children: Sequence[XmlNode], parent: XmlNode, ctx: _Context, facets_ok: bool = False
    ) -> Tuple[Optional[XmlNode], List[XmlNode]]:
        particle_node = None
        attributes = []
        for child in children:
            local = child.qname.local
            if local in ("group", "sequence", "choice", "all"):
                if particle_node is not None or attributes:
                    raise InvalidSchema(
                        f"Unexpected xs:{local} in content of {ctx.path}", _loc(child, ctx.document)
                    )
                particle_node = child
            elif local in ATTRIBUTE_TAGS:
                attributes.append(child)
            elif facets_ok and local in FACET_NAMES:
                continue
            elif local in IDENTITY_TAGS:
                continue
            else:
                raise InvalidSchema(
                    f"Unexpected xs:{local} in {ctx.path}", _loc(child, ctx.document)
                )
        return particle_node, attributes

    def _set_content(
        self, complex_type: ComplexType, particle: Optional[GroupParticle], mixed: bool
    ) -> None:
        if mixed:
            complex_type.content_kind = "mixed"
            complex_type.particle = particle or GroupParticle("sequence", ())
        elif particle is None or particle.is_empty():
            complex_type.content_kind = "empty"
            complex_type.particle = None
        else:
            complex_type.content_kind = "element-only"
            complex_type.particle = particle

    # ------------------------------------------------------------------
    # Particles
    # ------------------------------------------------------------------

    def _content_particle(self, node: Optional[XmlNode], ctx: _Context) -> Optional[GroupParticle]:
        if node is None:
            return None
        particle = self._particle(node, ctx, 1)
        if particle.max_occurs == 0:
            return None
        if not isinstance(particle, GroupParticle):
            raise InvalidSchema(
                f"Content model must be a model group, not xs:{node.qname.local}",
                _loc(node, ctx.document),
            )
        return particle

    def _occurs(self, node: XmlNode, ctx: _Context) -> Tuple[int, Optional[int]]:
        location = _loc(node, ctx.document)
        try:
            min_occurs = int(node.get("minOccurs", "1"))
            raw_max = node.get("maxOccurs", "1").strip()
            max_occurs = None if raw_max == "unbounded" else int(raw_max)
        except ValueError as exc:
            raise InvalidSchema(f"Invalid occurrence bounds: {exc}", location) from exc
        if min_occurs < 0 or (max_occurs is not None and (max_occurs < 0 or min_occurs > max_occurs)):
            raise InvalidSchema(
                f"Invalid occurrence bounds minOccurs={min_occurs} maxOccurs={raw_max}", location
            )
        return min_occurs, max_occurs

    def _particle(self, node: XmlNode, ctx: _Context, depth: int) -> Particle:
        location = _loc(node, ctx.document)
        if depth > self.config.max_depth:
            raise DepthExceeded(
                f"Content model nesting deeper than {self.config.max_depth} in {ctx.path}",
                location,
            )
        min_occurs, max_occurs = self._occurs(node, ctx)
        local = node.qname.local
        if local == "element":
            return self._local_element(node, ctx, min_occurs, max_occurs)
        if local == "any":
            process = node.get("processContents", "strict")
            if process not in ("strict", "lax", "skip"):
                raise InvalidSchema(f"Invalid processContents '{process}'", location)
            return WildcardParticle(
                NamespaceConstraint.parse(node.get("namespace"), ctx.tns),
                process,
                min_occurs,
                max_occurs,
            )
        if local == "group":
            if not node.get("ref"):
                raise InvalidSchema("Local xs:group needs a ref attribute", location)
            group = self._lookup("group", self._qname(node.get("ref"), node, ctx), ctx, node)
            if group.compositor == "all" and max_occurs != 1:
                raise InvalidSchema("A reference to an all group must have maxOccurs=1", location)
            return group.with_occurs(min_occurs, max_occurs)
        if local not in ("sequence", "choice", "all"):
            raise InvalidSchema(f"Unexpected xs:{local} in content model", location)
        if local == "all" and max_occurs not in (0, 1):
            raise UnsupportedFeature("xs:all with maxOccurs > 1 requires XSD 1.1", location)
        particles: List[Particle] = []
        for child in _xsd_children(node):
            if child.qname.local not in PARTICLE_TAGS:
                raise InvalidSchema(
                    f"xs:{child.qname.local} is not allowed in xs:{local}", _loc(child, ctx.document)
                )
            if local == "all" and child.qname.local != "element":
                raise UnsupportedFeature(
                    f"xs:{child.qname.local} inside xs:all requires XSD 1.1",
                    _loc(child, ctx.document),
                )
            particle = self._particle(child, ctx, depth + 1)
            if local == "all" and particle.max_occurs not in (0, 1):
                raise UnsupportedFeature(
                    "Elements of xs:all with maxOccurs > 1 require XSD 1.1",
                    _loc(child, ctx.document),
                )
            if particle.max_occurs == 0:
                continue
            particles.append(particle)
        return GroupParticle(local, tuple(particles), min_occurs, max_occurs)

    def _referenced_group(self, source: _Source):
        key = (source.space, source.name)
        if key in self._referencing:
            start = self._referencing.index(key)
            cycle = [name for _, name in self._referencing[start:]] + [source.name]
            raise CircularReference(
                f"Circular {source.space} reference: " + " -> ".join(str(n) for n in cycle),
                cycle,
                _loc(source.node, source.document),
            )
        if len(self._referencing) >= self.config.max_depth:
            raise DepthExceeded(
                f"{source.space} references nested deeper than {self.config.max_depth}",
                _loc(source.node, source.document),
            )
        self._referencing.append(key)
        ctx = _Context(source.document, source, source.name.local)
        try:
            if source.space == "group":
                result = self._named_group(source, ctx)
                self._groups[source.name] = result
            else:
                uses, wildcard, _ = self._attribute_uses(_xsd_children(source.node), ctx)
                result = AttributeGroup(source.name, _sorted_uses(uses), wildcard)
                self._attribute_groups[source.name] = result
        finally:
            self._referencing.pop()
        self._compiled[key] = result
        return result

    def _named_group(self, source: _Source, ctx: _Context) -> GroupParticle:
        children = _xsd_children(source.node)
        if len(children) != 1 or children[0].qname.local not in ("sequence", "choice", "all"):
            raise InvalidSchema(
                f"Group {source.name} needs exactly one sequence, choice or all",
                _loc(source.node, source.document),
            )
        if children[0].get("minOccurs") is not None or children[0].get("maxOccurs") is not None:
            raise InvalidSchema(
                f"The model group of group {source.name} cannot carry occurrence bounds",
                _loc(children[0], source.document),
            )
        particle = self._particle(children[0], ctx, 1)
        if not isinstance(particle, GroupParticle):
            raise InvalidSchema(
                f"Group {source.name} does not define a model group",
                _loc(source.node, source.document),
            )
        return GroupParticle(particle.compositor, particle.particles, 1, 1, source.name)

    # ------------------------------------------------------------------
    # Elements
    # ------------------------------------------------------------------

    def _global_element(self, source: _Source) -> ElementDeclaration:
        node = source.node
        document = source.document
        declaration = ElementDeclaration(
            source.name,
            abstract=_bool(node.get("abstract")),
            final=_derivation_set(
                node.get("final"), document.final_default, ("extension", "restriction")
            ),
            location=_loc(node, document),
        )
        self._compiled[("element", source.name)] = declaration
        self._elements[source.name] = declaration
        ctx = _Context(document, source, source.name.local)
        head = None
        if node.get("substitutionGroup"):
            head_name = self._qname(node.get("substitutionGroup").split()[0], node, ctx)
            declaration.substitution_group = head_name
            head = self._lookup("element", head_name, ctx, node)
            self._heads[declaration] = head
        self._declare_element(declaration, node, ctx, head)
        return declaration

    def _local_element(
        self, node: XmlNode, ctx: _Context, min_occurs: int, max_occurs: Optional[int]
    ) -> ElementParticle:
        if node.get("ref"):
            declaration = self._lookup("element", self._qname(node.get("ref"), node, ctx), ctx, node)
            return ElementParticle(declaration, min_occurs, max_occurs)
        local = node.get("name")
        if not local:
            raise InvalidSchema("Local element needs a name or ref", _loc(node, ctx.document))
        form = node.get("form") or ctx.document.element_form_default
        namespace = ctx.tns if form == "qualified" else None
        declaration = ElementDeclaration(
            QName(namespace, local.strip()), scope="local", location=_loc(node, ctx.document)
        )
        self._declare_element(declaration, node, ctx.child(local.strip()), None)
        return ElementParticle(declaration, min_occurs, max_occurs)

    def _declare_element(
        self,
        declaration: ElementDeclaration,
        node: XmlNode,
        ctx: _Context,
        head: Optional[ElementDeclaration],
    ) -> None:
        location = _loc(node, ctx.document)
        declaration.nillable = _bool(node.get("nillable"))
        declaration.default = node.get("default")
        declaration.fixed = node.get("fixed")
        if declaration.default is not None and declaration.fixed is not None:
            raise InvalidSchema(f"Element {declaration.name} has both default and fixed", location)
        declaration.block = _derivation_set(
            node.get("block"),
            ctx.document.block_default,
            ("extension", "restriction", "substitution"),
        )
        inline = _xsd_children(node, "simpleType", "complexType")
        if node.get("type") and inline:
            raise InvalidSchema(
                f"Element {declaration.name} has both a type attribute and an inline type",
                location,
            )
        if node.get("type"):
            type_name = self._qname(node.get("type"), node, ctx)
            self._defer(
                declaration, lambda: self._lookup("type", type_name, ctx, node)
            )
        elif inline:
            self._defer(declaration, lambda: self._anonymous_type(inline[0], ctx))
        elif head is not None:
            self._defer(declaration, lambda: self._head_type(head))
        else:
            declaration.type = ANY_TYPE
        if declaration.value_constraint is not None:
            self._value_checks.append((declaration, node, location))
        declaration.identity_constraints = self._identity_constraints(node, ctx)

    def _head_type(self, head: ElementDeclaration) -> TypeDefinition:
        self._ensure_typed(head)
        return head.type or ANY_TYPE

    def _defer(self, declaration: ElementDeclaration, resolver: Callable[[], TypeDefinition]) -> None:
        self._pending[declaration] = resolver
        self._pending_order.append(declaration)

    def _ensure_typed(self, declaration: ElementDeclaration) -> None:
        resolver = self._pending.pop(declaration, None)
        if resolver is not None:
            declaration.type = resolver()

    def _check_element_values(self) -> None:
        for declaration, node, location in self._value_checks:
            kind, lexical = declaration.value_constraint  # type: ignore[misc]
            type_def = declaration.type
            if isinstance(type_def, ComplexType):
                if type_def.content_kind == "simple":
                    value_type = type_def.simple_type
                elif type_def.content_kind == "mixed" and (
                    type_def.particle is None or type_def.particle.is_emptiable()
                ):
                    continue
                else:
                    raise InvalidSchema(
                        f"Element {declaration.name} cannot have a {kind} value with "
                        f"{type_def.content_kind} content",
                        location,
                    )
            else:
                value_type = type_def
            try:
                validate_value(lexical, value_type, node.namespaces)
            except FacetViolation as exc:
                raise InvalidSchema(
                    f"{kind} value of element {declaration.name} is invalid: {exc.message}",
                    location,
                ) from exc

    def _check_restrictions(self) -> None:
        for complex_type, base, location in self._restriction_checks:
            if base is ANY_TYPE:
                continue
            if complex_type.content_kind == "mixed" and base.content_kind != "mixed":
                raise InvalidSchema(
                    f"Type {complex_type.name} cannot restrict {base.name} to mixed content",
                    location,
                )
            derived = complex_type.particle if complex_type.content_kind != "simple" else None
            inherited = base.particle if base.content_kind in ("element-only", "mixed") else None
            reason = check_particle_restriction(derived, inherited)
            if reason is not None:
                raise InvalidSchema(
                    f"Type {complex_type.name} is not a valid restriction of {base.name}: {reason}",
                    location,
                )

    def _substitution_index(self) -> Dict[QName, List[QName]]:
        direct: Dict[QName, List[QName]] = {}
        for member, head in sorted(self._heads.items(), key=lambda item: item[0].name.sort_key()):
            if member.type is None or head.type is None:
                continue
            methods = derivation_methods(member.type, head.type)
            if methods is None:
                raise InvalidSchema(
                    f"Type of substitution group member {member.name} does not derive "
                    f"from the type of head {head.name}",
                    member.location,
                )
            if methods & head.final:
                raise InvalidSchema(
                    f"Head {head.name} is final for {', '.join(sorted(methods & head.final))}",
                    member.location,
                )
            direct.setdefault(head.name, []).append(member.name)

        index: Dict[QName, List[QName]] = {}
        for head in direct:
            members: List[QName] = []
            stack = list(direct[head])
            while stack:
                name = stack.pop(0)
                if name in members:
                    continue
                members.append(name)
                stack.extend(direct.get(name, ()))
            index[head] = members
        return index

    # ------------------------------------------------------------------
    # Identity constraints
    # ------------------------------------------------------------------

    def _identity_constraints(self, node: XmlNode, ctx: _Context) -> Tuple[IdentityConstraint, ...]:
        constraints = []
        for child in _xsd_children(node, *IDENTITY_TAGS):
            location = _loc(child, ctx.document)
            local = child.get("name")
            if not local:
                raise InvalidSchema(f"xs:{child.qname.local} without a name", location)
            name = QName(ctx.tns, local.strip())
            selectors = _xsd_children(child, "selector")
            fields = _xsd_children(child, "field")
            if len(selectors) != 1 or not fields:
                raise InvalidSchema(
                    f"Identity constraint {name} needs one selector and at least one field",
                    location,
                )
            try:
                selector = compile_path(selectors[0].get("xpath", ""), selectors[0].namespaces)
                field_paths = tuple(
                    compile_path(f.get("xpath", ""), f.namespaces, field=True) for f in fields
                )
            except ValueError as exc:
                raise InvalidSchema(f"Identity constraint {name}: {exc}", location) from exc
            refer = None
            if child.qname.local == "keyref":
                if not child.get("refer"):
                    raise InvalidSchema(f"keyref {name} without refer", location)
                refer = self._qname(child.get("refer"), child, ctx)
            if name in self._identity:
                raise DuplicateDeclaration(f"Duplicate identity constraint {name}", location)
            constraint = IdentityConstraint(name, child.qname.local, selector, field_paths, refer)
            self._identity[name] = constraint
            constraints.append(constraint)
        return tuple(constraints)

    def _check_keyrefs(self) -> None:
        for name, constraint in sorted(self._identity.items(), key=lambda i: i[0].sort_key()):
            if constraint.kind != "keyref":
                continue
            target = self._identity.get(constraint.refer)
            if target is None or target.kind == "keyref":
                raise UnresolvedReference(
                    f"keyref {name} refers to unknown key or unique {constraint.refer}"
                )
            if len(target.fields) != len(constraint.fields):
                raise InvalidSchema(
                    f"keyref {name} has {len(constraint.fields)} fields but "
                    f"{constraint.refer} has {len(target.fields)}"
                )

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def _global_attribute(self, source: _Source) -> AttributeDeclaration:
        node = source.node
        ctx = _Context(source.document, source, "@" + source.name.local)
        declaration = AttributeDeclaration(
            source.name,
            default=node.get("default"),
            fixed=node.get("fixed"),
            location=_loc(node, source.document),
        )
        self._compiled[("attribute", source.name)] = declaration
        self._attributes[source.name] = declaration
        declaration.type = self._attribute_type(node, ctx)
        self._check_attribute_value(
            declaration.type, declaration.default, declaration.fixed, node, ctx
        )
        return declaration

    def _attribute_type(self, node: XmlNode, ctx: _Context) -> SimpleType:
        inline = _xsd_children(node, "simpleType")
        if node.get("type"):
            if inline:
                raise InvalidSchema(
                    "Attribute has both a type attribute and an inline type",
                    _loc(node, ctx.document),
                )
            type_def = self._type_reference(node, "type", ctx)
            if not type_def.is_simple:
                raise InvalidSchema(
                    f"Attribute type {type_def.name} is not simple", _loc(node, ctx.document)
                )
            return type_def
        if inline:
            return self._anonymous_type(inline[0], ctx)
        return ANY_SIMPLE_TYPE

    def _check_attribute_value(
        self,
        type_def: SimpleType,
        default: Optional[str],
        fixed: Optional[str],
        node: XmlNode,
        ctx: _Context,
    ) -> None:
        location = _loc(node, ctx.document)
        if default is not None and fixed is not None:
            raise InvalidSchema("Attribute has both default and fixed", location)
        for kind, lexical in (("default", default), ("fixed", fixed)):
            if lexical is None:
                continue
            try:
                validate_value(lexical, type_def, node.namespaces)
            except FacetViolation as exc:
                raise InvalidSchema(f"Invalid {kind} value: {exc.message}", location) from exc

    def _attribute_uses(
        self, nodes: Sequence[XmlNode], ctx: _Context
    ) -> Tuple[Dict[QName, AttributeUse], Optional[AttributeWildcard], Set[QName]]:
        uses: Dict[QName, AttributeUse] = {}
        prohibited: Set[QName] = set()
        wildcard: Optional[AttributeWildcard] = None
        for node in nodes:
            local = node.qname.local
            location = _loc(node, ctx.document)
            if local == "attribute":
                use, is_prohibited = self._attribute_use(node, ctx)
                if use.name in uses or use.name in prohibited:
                    raise InvalidSchema(f"Attribute {use.name} declared twice", location)
                if is_prohibited:
                    prohibited.add(use.name)
                else:
                    uses[use.name] = use
            elif local == "attributeGroup":
                if not node.get("ref"):
                    raise InvalidSchema("Local xs:attributeGroup needs a ref", location)
                group = self._lookup(
                    "attributeGroup", self._qname(node.get("ref"), node, ctx), ctx, node
                )
                for name, use in group.attribute_uses.items():
                    if name in uses:
                        raise InvalidSchema(f"Attribute {name} declared twice", location)
                    uses[name] = use
                if group.attribute_wildcard is not None:
                    wildcard = _intersect(wildcard, group.attribute_wildcard)
            elif local == "anyAttribute":
                process = node.get("processContents", "strict")
                if process not in ("strict", "lax", "skip"):
                    raise InvalidSchema(f"Invalid processContents '{process}'", location)
                own = AttributeWildcard(
                    NamespaceConstraint.parse(node.get("namespace"), ctx.tns), process
                )
                wildcard = _intersect(own, wildcard)
        return uses, wildcard, prohibited

    def _attribute_use(self, node: XmlNode, ctx: _Context) -> Tuple[AttributeUse, bool]:
        location = _loc(node, ctx.document)
        use = node.get("use", "optional")
        if use not in ("optional", "required", "prohibited"):
            raise InvalidSchema(f"Invalid attribute use '{use}'", location)
        default = node.get("default")
        fixed = node.get("fixed")
        if default is not None and use != "optional":
            raise InvalidSchema("An attribute with a default must be optional", location)
        if node.get("ref"):
            declaration = self._lookup(
                "attribute", self._qname(node.get("ref"), node, ctx), ctx, node
            )
        else:
            local = node.get("name")
            if not local:
                raise InvalidSchema("Local attribute needs a name or ref", location)
            form = node.get("form") or ctx.document.attribute_form_default
            namespace = ctx.tns if form == "qualified" else None
            declaration = AttributeDeclaration(
                QName(namespace, local.strip()), scope="local", location=location
            )
            declaration.type = self._attribute_type(node, ctx.child("@" + local.strip()))
        self._check_attribute_value(declaration.type, default, fixed, node, ctx)
        if (
            declaration.fixed is not None
            and fixed is not None
            and validate_value(fixed, declaration.type, node.namespaces).key
            != validate_value(declaration.fixed, declaration.type, node.namespaces).key
        ):
            raise InvalidSchema(
                f"Attribute use of {declaration.name} changes its fixed value", location
            )
        return AttributeUse(declaration, use == "required", default, fixed), use == "prohibited"


def _sorted_uses(uses: Dict[QName, AttributeUse]) -> Dict[QName, AttributeUse]:
    return {name: uses[name] for name in sorted(uses, key=QName.sort_key)}


def _intersect(
    first: Optional[AttributeWildcard], second: Optional[AttributeWildcard]
) -> Optional[AttributeWildcard]:
    if first is None:
        return second
    if second is None:
        return first
    return AttributeWildcard(first.constraint.intersect(second.constraint), first.process_contents)


def _extend_attributes(
    base: TypeDefinition,
    uses: Dict[QName, AttributeUse],
    wildcard: Optional[AttributeWildcard],
    location: str,
) -> Tuple[Dict[QName, AttributeUse], Optional[AttributeWildcard]]:
    merged: Dict[QName, AttributeUse] = {}
    base_wildcard = None
    if isinstance(base, ComplexType):
        merged.update(base.attribute_uses)
        base_wildcard = base.attribute_wildcard
    for name, use in uses.items():
        if name in merged:
            raise InvalidSchema(f"Extension redeclares inherited attribute {name}", location)
        merged[name] = use
    if base_wildcard is not None and wildcard is not None:
        wildcard = AttributeWildcard(
            wildcard.constraint.union(base_wildcard.constraint), wildcard.process_contents
        )
    elif wildcard is None:
        wildcard = base_wildcard
    return _sorted_uses(merged), wildcard


def _restrict_attributes(
    base: TypeDefinition,
    uses: Dict[QName, AttributeUse],
    wildcard: Optional[AttributeWildcard],
    prohibited: Set[QName],
    location: str,
) -> Tuple[Dict[QName, AttributeUse], Optional[AttributeWildcard]]:
    merged: Dict[QName, AttributeUse] = {}
    base_wildcard = None
    if isinstance(base, ComplexType):
        merged.update(base.attribute_uses)
        base_wildcard = base.attribute_wildcard
    for name in prohibited:
        if name in merged and merged[name].required:
            raise InvalidSchema(f"Restriction prohibits required attribute {name}", location)
        merged.pop(name, None)
    for name, use in uses.items():
        inherited = merged.get(name)
        if inherited is None:
            if base_wildcard is None or not base_wildcard.constraint.allows(name.namespace):
                raise InvalidSchema(
                    f"Restriction adds attribute {name} not allowed by the base type", location
                )
        elif inherited.required and not use.required:
            raise InvalidSchema(f"Restriction makes required attribute {name} optional", location)
        merged[name] = use
    if wildcard is not None and base_wildcard is None:
        raise InvalidSchema("Restriction adds an attribute wildcard the base does not have", location)
    return _sorted_uses(merged), wildcard


def build_schema(
    entry_locations: Sequence[str],
    loader: Optional[SchemaLoader] = None,
    config: Optional[BuildConfig] = None,
) -> SchemaModel:
    """Resolve and compile the schema documents reachable from ``entry_locations``.

    Raises:
        SchemaError: Any resolution or build failure.
    """
    documents = resolve(entry_locations, loader)
    return SchemaModelBuilder(config).build(documents)
