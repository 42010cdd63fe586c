"""Particle restriction checks for ``complexContent`` restrictions.

A complex type derived by restriction must only accept instances its base
type accepts too. :func:`check_particle_restriction` compares the two content
models the XSD 1.0 way (schema component constraint *Particle Valid
(Restriction)*): pointless groups are removed first, then every particle of
the derived model is mapped onto the base model.

    ============  ============  ==========================================
    derived       base          rule
    ============  ============  ==========================================
    element       element       same name, narrower range, derived type
    element/any   any           namespace allowed, narrower range
    element       group         treated as a one-particle group of the
                                base's compositor
    group         any           effective range and every leaf allowed
    seq/all       same kind     order-preserving mapping, skipped base
                                particles must be emptiable
    choice        choice        order-preserving mapping
    sequence      all           unordered mapping
    sequence      choice        every particle maps onto some choice branch
    ============  ============  ==========================================

Anything else (a choice restricting a sequence, a wildcard restricting an
element, ...) is not a valid restriction.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from .particles import (
    ElementParticle,
    GroupParticle,
    NamespaceConstraint,
    Particle,
    WildcardParticle,
)
from .types import ANY_TYPE, derivation_methods

Range = Tuple[int, Optional[int]]

PROCESS_STRENGTH = {"skip": 0, "lax": 1, "strict": 2}


def check_particle_restriction(
    derived: Optional[Particle], base: Optional[Particle]
) -> Optional[str]:
    """Return ``None`` if ``derived`` restricts ``base``, else the reason it does not.

    ``None`` particles stand for empty content.
    """
    derived = _simplify(derived) if derived is not None else None
    base = _simplify(base) if base is not None else None
    if _is_empty(derived):
        if base is None or _emptiable(base):
            return None
        return f"the base content model {_show(base)} is not emptiable"
    if _is_empty(base):
        return f"{_show(derived)} adds content to an empty base content model"
    return _restricts(derived, base)  # type: ignore[arg-type]


def _is_empty(particle: Optional[Particle]) -> bool:
    if particle is None:
        return True
    if isinstance(particle, GroupParticle):
        return not particle.particles or particle.max_occurs == 0
    return particle.max_occurs == 0


def _show(particle: Particle) -> str:
    return particle.describe()  # type: ignore[attr-defined]


def _simplify(particle: Particle) -> Particle:
    """Drop empty groups, flatten same-compositor 1..1 subgroups and unwrap
    single-particle 1..1 groups."""
    if not isinstance(particle, GroupParticle):
        return particle
    children: List[Particle] = []
    for child in particle.particles:
        child = _simplify(child)
        if isinstance(child, GroupParticle):
            if not child.particles:
                continue
            if (
                child.compositor == particle.compositor
                and child.compositor != "all"
                and child.min_occurs == 1
                and child.max_occurs == 1
            ):
                children.extend(child.particles)
                continue
        children.append(child)
    if len(children) == 1 and particle.min_occurs == 1 and particle.max_occurs == 1:
        return children[0]
    return GroupParticle(
        particle.compositor, tuple(children), particle.min_occurs, particle.max_occurs, particle.name
    )


def _range_ok(derived: Range, base: Range) -> bool:
    if derived[0] < base[0]:
        return False
    if base[1] is None:
        return True
    return derived[1] is not None and derived[1] <= base[1]


def _own_range(particle: Particle) -> Range:
    return particle.min_occurs, particle.max_occurs


def _effective_range(particle: Particle) -> Range:
    """Minimum and maximum number of elements ``particle`` can match."""
    if not isinstance(particle, GroupParticle):
        return _own_range(particle)
    if not particle.particles:
        return 0, 0
    ranges = [_effective_range(child) for child in particle.particles]
    unbounded = any(high is None for _, high in ranges)
    if particle.compositor == "choice":
        low = min(low for low, _ in ranges)
        high = None if unbounded else max(high for _, high in ranges)  # type: ignore[type-var]
    else:
        low = sum(low for low, _ in ranges)
        high = None if unbounded else sum(high for _, high in ranges)  # type: ignore[misc]
    low *= particle.min_occurs
    if high == 0 or particle.max_occurs == 0:
        return low, 0
    if high is None or particle.max_occurs is None:
        return low, None
    return low, high * particle.max_occurs


def _emptiable(particle: Particle) -> bool:
    return _effective_range(particle)[0] == 0


def _restricts(derived: Particle, base: Particle) -> Optional[str]:
    if isinstance(base, WildcardParticle):
        return _restricts_wildcard(derived, base)
    if isinstance(base, ElementParticle):
        if isinstance(derived, ElementParticle):
            return _name_and_type_ok(derived, base)
        return f"{_show(derived)} cannot restrict element {base.name}"
    if not isinstance(base, GroupParticle):
        return f"unknown particle {base!r}"
    if isinstance(derived, WildcardParticle):
        return f"wildcard {_show(derived)} cannot restrict {_show(base)}"
    if isinstance(derived, ElementParticle):
        derived = GroupParticle(base.compositor, (derived,), 1, 1)
    if not isinstance(derived, GroupParticle):
        return f"unknown particle {derived!r}"
    return _restricts_group(derived, base)


def _restricts_group(derived: GroupParticle, base: GroupParticle) -> Optional[str]:
    pair = (derived.compositor, base.compositor)
    if pair == ("sequence", "choice"):
        count = len(derived.particles)
        low = derived.min_occurs * count
        high = None if derived.max_occurs is None else derived.max_occurs * count
        if not _range_ok((low, high), _own_range(base)):
            return f"occurrence range of {_show(derived)} exceeds {_show(base)}"
        for child in derived.particles:
            if all(_restricts(child, option) is not None for option in base.particles):
                return f"{_show(child)} matches no branch of {_show(base)}"
        return None
    if not _range_ok(_own_range(derived), _own_range(base)):
        return f"occurrence range of {_show(derived)} exceeds {_show(base)}"
    if pair in (("sequence", "sequence"), ("all", "all")):
        return _ordered(derived.particles, base.particles, lax=False)
    if pair == ("choice", "choice"):
        return _ordered(derived.particles, base.particles, lax=True)
    if pair == ("sequence", "all"):
        return _unordered(derived.particles, base.particles)
    return f"a {derived.compositor} cannot restrict a {base.compositor}"


def _ordered(
    derived: Sequence[Particle], base: Sequence[Particle], lax: bool
) -> Optional[str]:
    index = 0
    for child in derived:
        while True:
            if index >= len(base):
                return f"{_show(child)} has no counterpart in the base content model"
            candidate = base[index]
            index += 1
            reason = _restricts(child, candidate)
            if reason is None:
                break
            if not lax and not _emptiable(candidate):
                return f"{_show(child)} does not restrict required {_show(candidate)}: {reason}"
    if not lax:
        for rest in base[index:]:
            if not _emptiable(rest):
                return f"required {_show(rest)} of the base content model is missing"
    return None


def _unordered(derived: Sequence[Particle], base: Sequence[Particle]) -> Optional[str]:
    used = set()
    for child in derived:
        if child.max_occurs is None or child.max_occurs > 1:
            return f"{_show(child)} may repeat, the base xs:all does not allow it"
        for index, candidate in enumerate(base):
            if index not in used and _restricts(child, candidate) is None:
                used.add(index)
                break
        else:
            return f"{_show(child)} has no counterpart in the base xs:all"
    for index, candidate in enumerate(base):
        if index not in used and not _emptiable(candidate):
            return f"required {_show(candidate)} of the base content model is missing"
    return None


def _restricts_wildcard(derived: Particle, base: WildcardParticle) -> Optional[str]:
    if isinstance(derived, GroupParticle):
        if not _range_ok(_effective_range(derived), _own_range(base)):
            return f"{_show(derived)} can match more elements than {_show(base)}"
        for leaf in derived.iter_particles():
            if isinstance(leaf, GroupParticle):
                continue
            reason = _leaf_in_wildcard(leaf, base)
            if reason is not None:
                return reason
        return None
    if not _range_ok(_own_range(derived), _own_range(base)):
        return f"occurrence range of {_show(derived)} exceeds {_show(base)}"
    return _leaf_in_wildcard(derived, base)


def _leaf_in_wildcard(derived: Particle, base: WildcardParticle) -> Optional[str]:
    if isinstance(derived, ElementParticle):
        if not base.constraint.allows(derived.name.namespace):
            return f"element {derived.name} is not allowed by {_show(base)}"
        return None
    if isinstance(derived, WildcardParticle):
        if not _namespace_subset(derived.constraint, base.constraint):
            return f"{_show(derived)} allows namespaces {_show(base)} does not"
        if PROCESS_STRENGTH[derived.process_contents] < PROCESS_STRENGTH[base.process_contents]:
            return f"{_show(derived)} has weaker processContents than {_show(base)}"
    return None


def _namespace_subset(derived: NamespaceConstraint, base: NamespaceConstraint) -> bool:
    if base.mode == "any":
        return True
    if derived.mode == "any":
        return False
    if derived.mode == "enumerated":
        return all(base.allows(namespace) for namespace in derived.namespaces)
    if base.mode == "other":
        return derived.target_namespace == base.target_namespace
    return False


def _name_and_type_ok(derived: ElementParticle, base: ElementParticle) -> Optional[str]:
    if derived.name != base.name:
        return f"element {derived.name} does not match base element {base.name}"
    if not _range_ok(_own_range(derived), _own_range(base)):
        return f"occurrence range of {_show(derived)} exceeds {_show(base)}"
    element, base_element = derived.element, base.element
    if element is base_element:
        return None
    if element.nillable and not base_element.nillable:
        return f"element {derived.name} is nillable, the base element is not"
    if base_element.fixed is not None and element.fixed != base_element.fixed:
        return f"element {derived.name} must keep the fixed value '{base_element.fixed}'"
    derived_type, base_type = element.type, base_element.type
    if derived_type is None or base_type is None or base_type is ANY_TYPE:
        return None
    methods = derivation_methods(derived_type, base_type)
    if methods is None or "extension" in methods:
        return (
            f"type of element {derived.name} is not derived by restriction "
            f"from the base element's type"
        )
    return None
