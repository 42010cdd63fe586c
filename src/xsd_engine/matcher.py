"""Match a sequence of child element names against a particle tree.

The matcher works on positions rather than on a compiled automaton. For a
particle and a start position it computes the ordered set of positions where
the particle can end, together with one assignment of children to element
declarations and wildcards for each end. Results are memoized per particle
and position, so backtracking over ``choice`` and repeated groups stays
polynomial.

Preference order makes the result deterministic:

* repetitions are greedy (more iterations first),
* ``choice`` tries element particles before wildcards, then document order,
* ``all`` groups consume children in document order.

On failure the furthest position reached is reported with the names that
were acceptable there, and the assignment of the longest matching prefix is
attached so callers can still annotate the children that did match.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .exceptions import ContentModelViolation
from .particles import ElementParticle, GroupParticle, Particle, WildcardParticle
from .qnames import QName

if TYPE_CHECKING:  # pragma: no cover
    from .model import ElementDeclaration, SchemaModel


@dataclass(frozen=True)
class MatchEntry:
    """One child assigned to a particle.

    ``declaration`` is the matched element declaration (a substitution group
    member when the child used one) or ``None`` for wildcard matches.
    """

    index: int
    particle: Particle
    declaration: Optional["ElementDeclaration"]


class Assignment:
    """Children-to-particle assignment in document order."""

    def __init__(self, entries: Sequence[MatchEntry]) -> None:
        self.entries: List[MatchEntry] = list(entries)

    def __iter__(self) -> Iterator[MatchEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __getitem__(self, index: int) -> MatchEntry:
        return self.entries[index]

    def __repr__(self) -> str:
        return f"<Assignment {len(self.entries)} entries>"


# A match path is None, a MatchEntry or a (left, right) pair.


def _join(left, right):
    if left is None:
        return right
    if right is None:
        return left
    return (left, right)


def _flatten(path) -> List[MatchEntry]:
    entries: List[MatchEntry] = []
    stack = [path]
    while stack:
        node = stack.pop()
        if node is None:
            continue
        if isinstance(node, tuple):
            stack.append(node[1])
            stack.append(node[0])
        else:
            entries.append(node)
    return entries


class ContentModelMatcher:
    """Reusable matcher bound to a schema model (for substitution groups)."""

    def __init__(self, model: Optional["SchemaModel"] = None, max_depth: int = 64) -> None:
        self.model = model
        self.max_depth = max_depth

    def match(self, particle: Optional[Particle], names: Sequence[QName]) -> Assignment:
        """Assign every name in ``names`` to a particle of ``particle``.

        Raises:
            ContentModelViolation: If the names are not a sentence of the
                content model, or nesting exceeds ``max_depth``.
        """
        self._names = list(names)
        self._memo: Dict[Tuple[str, int, int], Dict[int, object]] = {}
        self._furthest = -1
        self._expected: List[str] = []

        if particle is None:
            if not self._names:
                return Assignment([])
            raise ContentModelViolation(
                f"Element content is not allowed here, found {self._names[0]}",
                position=0,
                expected=[],
                actual=str(self._names[0]),
                kind="unexpected_element",
                partial=Assignment([]),
            )

        ends = self._repeat(particle, 0, 1)
        total = len(self._names)
        if total in ends:
            return Assignment(_flatten(ends[total]))

        best_end = max(ends) if ends else 0
        partial = Assignment(_flatten(ends[best_end])) if ends else Assignment([])
        position = max(best_end, self._furthest)
        expected = self._expected if position == self._furthest else []
        actual = self._names[position] if position < total else None
        if actual is None:
            message = f"Content ended early; expected {_one_of(expected)}"
            kind = "missing_element"
        elif expected:
            message = f"Unexpected element {actual}; expected {_one_of(expected)}"
            kind = "unexpected_element"
        else:
            message = f"Unexpected element {actual}; no more elements are allowed"
            kind = "unexpected_element"
        raise ContentModelViolation(
            message,
            position=position,
            expected=list(expected),
            actual=str(actual) if actual is not None else None,
            kind=kind,
            partial=partial,
        )

    # ------------------------------------------------------------------

    def _fail(self, position: int, expected: str) -> None:
        if position > self._furthest:
            self._furthest = position
            self._expected = [expected]
        elif position == self._furthest and expected not in self._expected:
            self._expected.append(expected)

    def _repeat(self, particle: Particle, position: int, depth: int) -> Dict[int, object]:
        key = ("r", id(particle), position)
        if key in self._memo:
            return self._memo[key]
        if depth > self.max_depth:
            raise ContentModelViolation(
                f"Content model nesting deeper than {self.max_depth}",
                position=position,
                kind="depth_exceeded",
            )
        minimum = particle.min_occurs
        maximum = particle.max_occurs
        rounds: List[Dict[int, object]] = []
        frontier: Dict[int, object] = {position: None}
        count = 0
        while frontier:
            if count >= minimum:
                rounds.append(frontier)
            if maximum is not None and count >= maximum:
                break
            following: Dict[int, object] = {}
            for start, path in frontier.items():
                for end, sub in self._once(particle, start, depth).items():
                    if end == start and count >= minimum:
                        continue
                    if end not in following:
                        following[end] = _join(path, sub)
            frontier = following
            count += 1
            if count > len(self._names) + minimum + 1:
                break

        result: Dict[int, object] = {}
        for frontier in reversed(rounds):
            for end, path in frontier.items():
                if end not in result:
                    result[end] = path
        self._memo[key] = result
        return result

    def _once(self, particle: Particle, position: int, depth: int) -> Dict[int, object]:
        key = ("o", id(particle), position)
        if key in self._memo:
            return self._memo[key]
        if isinstance(particle, ElementParticle):
            result = self._element(particle, position)
        elif isinstance(particle, WildcardParticle):
            result = self._wildcard(particle, position)
        elif particle.compositor == "sequence":
            result = self._sequence(particle, position, depth)
        elif particle.compositor == "choice":
            result = self._choice(particle, position, depth)
        else:
            result = self._all(particle, position)
        self._memo[key] = result
        return result

    def _resolve(self, particle: ElementParticle, name: QName) -> Optional["ElementDeclaration"]:
        declaration = particle.element
        if declaration.name == name:
            return declaration
        if self.model is not None:
            return self.model.substitution_member(declaration, name)
        return None

    def _element(self, particle: ElementParticle, position: int) -> Dict[int, object]:
        if position < len(self._names):
            declaration = self._resolve(particle, self._names[position])
            if declaration is not None:
                return {position + 1: MatchEntry(position, particle, declaration)}
        self._fail(position, str(particle.element.name))
        return {}

    def _wildcard(self, particle: WildcardParticle, position: int) -> Dict[int, object]:
        if position < len(self._names) and particle.constraint.allows(
            self._names[position].namespace
        ):
            return {position + 1: MatchEntry(position, particle, None)}
        self._fail(position, f"any element from {particle.constraint.describe()}")
        return {}

    def _sequence(self, group: GroupParticle, position: int, depth: int) -> Dict[int, object]:
        states: Dict[int, object] = {position: None}
        for child in group.particles:
            following: Dict[int, object] = {}
            for start, path in states.items():
                for end, sub in self._repeat(child, start, depth + 1).items():
                    if end not in following:
                        following[end] = _join(path, sub)
            states = following
            if not states:
                break
        return states

    def _choice(self, group: GroupParticle, position: int, depth: int) -> Dict[int, object]:
        ordered = [p for p in group.particles if not isinstance(p, WildcardParticle)]
        ordered += [p for p in group.particles if isinstance(p, WildcardParticle)]
        result: Dict[int, object] = {}
        for child in ordered:
            for end, path in self._repeat(child, position, depth + 1).items():
                if end not in result:
                    result[end] = path
        if not group.particles:
            result[position] = None
        return result

    def _all(self, group: GroupParticle, position: int) -> Dict[int, object]:
        remaining = [p for p in group.particles if isinstance(p, ElementParticle)]
        used: Set[int] = set()
        path = None
        current = position
        while current < len(self._names):
            name = self._names[current]
            for index, particle in enumerate(remaining):
                if index in used:
                    continue
                declaration = self._resolve(particle, name)
                if declaration is not None:
                    used.add(index)
                    path = _join(path, MatchEntry(current, particle, declaration))
                    current += 1
                    break
            else:
                break
        missing = [
            p for index, p in enumerate(remaining) if index not in used and p.min_occurs > 0
        ]
        for index, particle in enumerate(remaining):
            if index not in used:
                self._fail(current, str(particle.element.name))
        if missing:
            return {}
        return {current: path}


def _one_of(expected: Sequence[str]) -> str:
    if not expected:
        return "nothing"
    if len(expected) == 1:
        return expected[0]
    return "one of " + ", ".join(expected)


def match(
    particle: Optional[Particle],
    names: Sequence[QName],
    model: Optional["SchemaModel"] = None,
    max_depth: int = 64,
) -> Assignment:
    """Convenience wrapper around :meth:`ContentModelMatcher.match`."""
    return ContentModelMatcher(model, max_depth).match(particle, names)
