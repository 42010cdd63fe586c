"""The compiled, read-only schema model.

A :class:`SchemaModel` is produced by :class:`~xsd_engine.builder.SchemaModelBuilder`
and never changes afterwards: its component tables are exposed as
``MappingProxyType`` views and it offers no mutating methods, so one model
can be shared by any number of concurrent validations.

Components reference each other directly (a particle holds its element
declaration, a type holds its base); all of them are also reachable by QName
through the model tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .identity import XPathSubset
from .particles import GroupParticle
from .qnames import QName, as_qname
from .types import (
    BUILTIN_TYPES,
    AttributeUse,
    AttributeWildcard,
    ComplexType,
    SimpleType,
    TypeDefinition,
    derivation_methods,
)


@dataclass(frozen=True)
class IdentityConstraint:
    name: QName
    kind: str
    selector: XPathSubset
    fields: Tuple[XPathSubset, ...]
    refer: Optional[QName] = None


@dataclass(eq=False)
class ElementDeclaration:
    """An element declaration (global or local).

    Attributes:
        type: Resolved type definition.
        substitution_group: QName of the head element, if any.
        scope: ``global`` or ``local``.
    """

    name: QName
    type: Optional[TypeDefinition] = None
    nillable: bool = False
    default: Optional[str] = None
    fixed: Optional[str] = None
    substitution_group: Optional[QName] = None
    abstract: bool = False
    block: FrozenSet[str] = frozenset()
    final: FrozenSet[str] = frozenset()
    scope: str = "global"
    identity_constraints: Tuple[IdentityConstraint, ...] = ()
    location: Optional[str] = None

    def __repr__(self) -> str:
        return f"<ElementDeclaration {self.name} ({self.scope})>"

    @property
    def is_global(self) -> bool:
        return self.scope == "global"

    @property
    def value_constraint(self) -> Optional[Tuple[str, str]]:
        if self.fixed is not None:
            return ("fixed", self.fixed)
        if self.default is not None:
            return ("default", self.default)
        return None


@dataclass(eq=False)
class AttributeDeclaration:
    name: QName
    type: Optional[SimpleType] = None
    default: Optional[str] = None
    fixed: Optional[str] = None
    scope: str = "global"
    location: Optional[str] = None

    def __repr__(self) -> str:
        return f"<AttributeDeclaration {self.name} ({self.scope})>"


@dataclass(eq=False)
class AttributeGroup:
    name: QName
    attribute_uses: Dict[QName, AttributeUse] = field(default_factory=dict)
    attribute_wildcard: Optional[AttributeWildcard] = None


def _sorted(items: Mapping[QName, Any]) -> Mapping[QName, Any]:
    return MappingProxyType({k: items[k] for k in sorted(items, key=QName.sort_key)})


class SchemaModel:
    """Immutable collection of compiled schema components."""

    __slots__ = (
        "_types",
        "_elements",
        "_attributes",
        "_groups",
        "_attribute_groups",
        "_identity_constraints",
        "_substitution_groups",
        "_closure",
        "_allowed_members",
        "_namespaces",
        "_unresolved_imports",
    )

    def __init__(
        self,
        types: Mapping[QName, TypeDefinition],
        elements: Mapping[QName, ElementDeclaration],
        attributes: Mapping[QName, AttributeDeclaration],
        groups: Mapping[QName, GroupParticle],
        attribute_groups: Mapping[QName, AttributeGroup],
        identity_constraints: Mapping[QName, IdentityConstraint],
        substitution_groups: Mapping[QName, Iterable[QName]],
        derivation_closure: Mapping[QName, FrozenSet[QName]],
        namespaces: Iterable[Optional[str]] = (),
        unresolved_imports: Iterable[Optional[str]] = (),
    ) -> None:
        self._types = _sorted(types)
        self._elements = _sorted(elements)
        self._attributes = _sorted(attributes)
        self._groups = _sorted(groups)
        self._attribute_groups = _sorted(attribute_groups)
        self._identity_constraints = _sorted(identity_constraints)
        self._substitution_groups = _sorted(
            {
                head: tuple(sorted(members, key=QName.sort_key))
                for head, members in substitution_groups.items()
            }
        )
        self._closure = MappingProxyType(dict(derivation_closure))
        self._namespaces = tuple(namespaces)
        self._unresolved_imports = tuple(unresolved_imports)
        allowed: Dict[QName, Tuple[ElementDeclaration, ...]] = {}
        for head_name, members in self._substitution_groups.items():
            head = self._elements[head_name]
            allowed[head_name] = tuple(
                self._elements[m]
                for m in members
                if self._may_substitute(head, self._elements[m])
            )
        self._allowed_members = MappingProxyType(allowed)

    def __repr__(self) -> str:
        return (
            f"<SchemaModel types={len(self._types)} elements={len(self._elements)} "
            f"attributes={len(self._attributes)} groups={len(self._groups)}>"
        )

    # ---------------- Component tables ---------------- #

    @property
    def types(self) -> Mapping[QName, TypeDefinition]:
        """Schema-defined types (including anonymous ones); built-ins excluded."""
        return self._types

    @property
    def elements(self) -> Mapping[QName, ElementDeclaration]:
        return self._elements

    @property
    def attributes(self) -> Mapping[QName, AttributeDeclaration]:
        return self._attributes

    @property
    def groups(self) -> Mapping[QName, GroupParticle]:
        return self._groups

    @property
    def attribute_groups(self) -> Mapping[QName, AttributeGroup]:
        return self._attribute_groups

    @property
    def identity_constraints(self) -> Mapping[QName, IdentityConstraint]:
        return self._identity_constraints

    @property
    def substitution_groups(self) -> Mapping[QName, Tuple[QName, ...]]:
        """Head QName to every direct or indirect member QName."""
        return self._substitution_groups

    @property
    def namespaces(self) -> Tuple[Optional[str], ...]:
        return self._namespaces

    @property
    def unresolved_imports(self) -> Tuple[Optional[str], ...]:
        return self._unresolved_imports

    # ---------------- Lookups ---------------- #

    def get_type(self, name) -> TypeDefinition:
        """Look up a schema or built-in type by QName or Clark string."""
        name = as_qname(name)
        found = self._types.get(name) or BUILTIN_TYPES.get(name)
        if found is None:
            raise KeyError(f"Unknown type {name}")
        return found

    def get_element(self, name) -> ElementDeclaration:
        name = as_qname(name)
        if name not in self._elements:
            raise KeyError(f"Unknown global element {name}")
        return self._elements[name]

    def get_attribute(self, name) -> AttributeDeclaration:
        name = as_qname(name)
        if name not in self._attributes:
            raise KeyError(f"Unknown global attribute {name}")
        return self._attributes[name]

    def is_derived(self, type_def: TypeDefinition, base: TypeDefinition) -> bool:
        """Reflexive-transitive derivation check against the precomputed closure."""
        if type_def is base:
            return True
        ancestors = self._closure.get(type_def.name)
        if ancestors is None or self._types.get(type_def.name) is not type_def:
            return type_def.derives_from(base)
        return base.name in ancestors

    def substitutes(self, head: ElementDeclaration) -> Tuple[ElementDeclaration, ...]:
        """Members that may appear in place of ``head`` (abstract and blocked ones excluded)."""
        if not head.is_global:
            return ()
        return self._allowed_members.get(head.name, ())

    def substitution_member(
        self, head: ElementDeclaration, name: QName
    ) -> Optional[ElementDeclaration]:
        for member in self.substitutes(head):
            if member.name == name:
                return member
        return None

    @staticmethod
    def _may_substitute(head: ElementDeclaration, member: ElementDeclaration) -> bool:
        if member.abstract or "substitution" in head.block:
            return False
        if head.type is None or member.type is None:
            return False
        methods = derivation_methods(member.type, head.type)
        if methods is None:
            return False
        blocked = set(head.block)
        if isinstance(head.type, ComplexType):
            blocked |= head.type.block
        return not (methods & blocked)

    # ---------------- Introspection ---------------- #

    def summary(self) -> Dict[str, Any]:
        """Deterministic structural description, handy for comparing builds."""
        return {
            "types": {str(k): _describe_type(v) for k, v in self._types.items()},
            "elements": {str(k): _describe_element(v) for k, v in self._elements.items()},
            "attributes": {
                str(k): f"{v.type.name if v.type else None} default={v.default} fixed={v.fixed}"
                for k, v in self._attributes.items()
            },
            "groups": {str(k): v.describe() for k, v in self._groups.items()},
            "attribute_groups": {
                str(k): sorted(str(n) for n in v.attribute_uses)
                for k, v in self._attribute_groups.items()
            },
            "identity_constraints": {
                str(k): f"{v.kind} {v.selector} {[str(f) for f in v.fields]} {v.refer}"
                for k, v in self._identity_constraints.items()
            },
            "substitution_groups": {
                str(k): [str(m) for m in v] for k, v in self._substitution_groups.items()
            },
        }


def _describe_type(type_def: TypeDefinition) -> str:
    base = type_def.base.name if type_def.base is not None else None
    if isinstance(type_def, SimpleType):
        facets = sorted(type_def.facets.items())
        extra = ""
        if type_def.item_type is not None:
            extra = f" item={type_def.item_type.name}"
        if type_def.member_types:
            extra = f" members={[str(m.name) for m in type_def.member_types]}"
        return f"simple {type_def.variety} base={base}{extra} facets={facets}"
    particle = type_def.particle.describe() if type_def.particle is not None else None
    attributes: List[str] = [
        f"{name}{'!' if use.required else ''}" for name, use in type_def.attribute_uses.items()
    ]
    return (
        f"complex {type_def.content_kind} {type_def.derivation} base={base} "
        f"particle={particle} attributes={attributes} abstract={type_def.abstract}"
    )


def _describe_element(declaration: ElementDeclaration) -> str:
    type_name = declaration.type.name if declaration.type is not None else None
    return (
        f"type={type_name} nillable={declaration.nillable} abstract={declaration.abstract} "
        f"substitution_group={declaration.substitution_group} "
        f"default={declaration.default} fixed={declaration.fixed} "
        f"constraints={[str(c.name) for c in declaration.identity_constraints]}"
    )
