"""Particle trees describing complex-type content models.

A particle is an element declaration, a wildcard or a model group
(``sequence``/``choice``/``all``) together with its occurrence bounds.
``max_occurs`` is ``None`` for ``unbounded``. Particle trees are built once
by the builder and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, FrozenSet, Iterator, Optional, Tuple

from .qnames import QName

if TYPE_CHECKING:  # pragma: no cover
    from .model import ElementDeclaration

UNBOUNDED = None
COMPOSITORS = ("sequence", "choice", "all")


def _occurs(min_occurs: int, max_occurs: Optional[int]) -> str:
    if min_occurs == 1 and max_occurs == 1:
        return ""
    upper = "*" if max_occurs is None else str(max_occurs)
    return f"{{{min_occurs},{upper}}}"


@dataclass(frozen=True)
class NamespaceConstraint:
    """Namespace test of an ``xs:any`` / ``xs:anyAttribute`` wildcard.

    Attributes:
        mode: ``any``, ``other`` (anything but ``target_namespace`` and the
            absent namespace) or ``enumerated``.
        namespaces: Allowed namespaces for ``enumerated`` (``None`` stands for
            the absent namespace).
    """

    mode: str = "any"
    namespaces: FrozenSet[Optional[str]] = frozenset()
    target_namespace: Optional[str] = None

    @classmethod
    def parse(cls, value: Optional[str], target_namespace: Optional[str]) -> "NamespaceConstraint":
        value = (value or "##any").strip()
        if value == "##any":
            return cls("any")
        if value == "##other":
            return cls("other", target_namespace=target_namespace)
        allowed = set()
        for token in value.split():
            if token == "##targetNamespace":
                allowed.add(target_namespace)
            elif token == "##local":
                allowed.add(None)
            else:
                allowed.add(token)
        return cls("enumerated", frozenset(allowed), target_namespace)

    def allows(self, namespace: Optional[str]) -> bool:
        namespace = namespace or None
        if self.mode == "any":
            return True
        if self.mode == "other":
            return namespace is not None and namespace != self.target_namespace
        return namespace in self.namespaces

    def union(self, other: "NamespaceConstraint") -> "NamespaceConstraint":
        if self.mode == "any" or other.mode == "any":
            return NamespaceConstraint("any")
        if self.mode == "enumerated" and other.mode == "enumerated":
            return NamespaceConstraint(
                "enumerated", self.namespaces | other.namespaces, self.target_namespace
            )
        if self.mode == "other" and other.mode == "other":
            if self.target_namespace == other.target_namespace:
                return self
            return NamespaceConstraint("other", target_namespace=None)
        negated, listed = (self, other) if self.mode == "other" else (other, self)
        if negated.target_namespace in listed.namespaces:
            return NamespaceConstraint("any")
        return negated

    def intersect(self, other: "NamespaceConstraint") -> "NamespaceConstraint":
        if self.mode == "any":
            return other
        if other.mode == "any":
            return self
        if self.mode == "enumerated" and other.mode == "enumerated":
            return NamespaceConstraint(
                "enumerated", self.namespaces & other.namespaces, self.target_namespace
            )
        if self.mode == "other" and other.mode == "other":
            # not expressible in XSD 1.0; keep the narrower of the two
            return self
        negated, listed = (self, other) if self.mode == "other" else (other, self)
        kept = frozenset(ns for ns in listed.namespaces if negated.allows(ns))
        return NamespaceConstraint("enumerated", kept, listed.target_namespace)

    def describe(self) -> str:
        if self.mode == "any":
            return "##any"
        if self.mode == "other":
            return "##other"
        return " ".join(sorted(ns or "##local" for ns in self.namespaces))


class Particle:
    """Common occurrence handling for all particle kinds."""

    min_occurs: int
    max_occurs: Optional[int]

    @property
    def repeatable(self) -> bool:
        return self.max_occurs is None or self.max_occurs > 1

    @property
    def optional(self) -> bool:
        return self.min_occurs == 0

    def is_emptiable(self) -> bool:
        return self.min_occurs == 0

    def iter_particles(self) -> Iterator["Particle"]:
        yield self


@dataclass(eq=False)
class ElementParticle(Particle):
    element: "ElementDeclaration"
    min_occurs: int = 1
    max_occurs: Optional[int] = 1

    @property
    def name(self) -> QName:
        return self.element.name

    def describe(self) -> str:
        return f"{self.element.name}{_occurs(self.min_occurs, self.max_occurs)}"

    def __repr__(self) -> str:
        return f"<ElementParticle {self.describe()}>"


@dataclass(eq=False)
class WildcardParticle(Particle):
    constraint: NamespaceConstraint = field(default_factory=NamespaceConstraint)
    process_contents: str = "strict"
    min_occurs: int = 1
    max_occurs: Optional[int] = 1

    def describe(self) -> str:
        return f"any({self.constraint.describe()}){_occurs(self.min_occurs, self.max_occurs)}"

    def __repr__(self) -> str:
        return f"<WildcardParticle {self.describe()}>"


@dataclass(eq=False)
class GroupParticle(Particle):
    """A ``sequence``, ``choice`` or ``all`` model group.

    ``name`` is set when the group came from a named ``xs:group`` definition.
    """

    compositor: str
    particles: Tuple[Particle, ...] = ()
    min_occurs: int = 1
    max_occurs: Optional[int] = 1
    name: Optional[QName] = None

    def is_emptiable(self) -> bool:
        if self.min_occurs == 0 or not self.particles:
            return True
        if self.compositor == "choice":
            return any(p.is_emptiable() for p in self.particles)
        return all(p.is_emptiable() for p in self.particles)

    def is_empty(self) -> bool:
        """True when the group can never contain an element."""
        return all(
            isinstance(p, GroupParticle) and p.is_empty() for p in self.particles
        )

    def iter_particles(self) -> Iterator[Particle]:
        yield self
        for particle in self.particles:
            yield from particle.iter_particles()

    def with_occurs(self, min_occurs: int, max_occurs: Optional[int]) -> "GroupParticle":
        return GroupParticle(
            self.compositor, self.particles, min_occurs, max_occurs, self.name
        )

    def describe(self) -> str:
        inner = ", ".join(p.describe() for p in self.particles)  # type: ignore[attr-defined]
        return f"{self.compositor}({inner}){_occurs(self.min_occurs, self.max_occurs)}"

    def __repr__(self) -> str:
        return f"<GroupParticle {self.compositor} {len(self.particles)} particles>"
