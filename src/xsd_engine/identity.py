"""Identity constraints: ``xs:unique``, ``xs:key`` and ``xs:keyref``.

Selectors and fields use the restricted XPath subset of XSD 1.0::

    Selector ::= Path ( '|' Path )*
    Path     ::= ('.//')? Step ( '/' Step )*
    Field    ::= ('.//')? ( Step '/' )* ( Step | '@' NameTest )
    Step     ::= '.' | NameTest          (optionally with 'child::')
    NameTest ::= QName | '*' | NCName ':' '*'

Evaluation runs in two passes over the annotated tree produced by the
validator. The first pass (post-order) builds the key/unique tables of every
scope element and reports missing or duplicate values. The second pass checks
each keyref against the tables of the referenced constraint found in the
keyref's scope element or any of its descendants, so a key defined in a later
sibling subtree is still visible.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from .exceptions import IdentityViolation
from .qnames import QName, split_prefixed

_ANY = object()


@dataclass(frozen=True)
class NameTest:
    """``namespace`` is ``_ANY`` for ``*``; ``local`` is ``None`` for ``p:*``."""

    namespace: Any
    local: Optional[str]

    def matches(self, name: QName) -> bool:
        if self.namespace is not _ANY and (name.namespace or None) != self.namespace:
            return False
        return self.local is None or self.local == name.local


@dataclass(frozen=True)
class PathExpression:
    descendant: bool
    steps: Tuple[Optional[NameTest], ...]
    attribute: Optional[NameTest] = None


@dataclass(frozen=True)
class XPathSubset:
    """A compiled selector or field expression."""

    source: str
    alternatives: Tuple[PathExpression, ...]

    def select(self, element) -> List[Any]:
        """Elements (or attributes, for fields) reached from ``element``."""
        found: List[Any] = []
        for path in self.alternatives:
            for node in _apply(path, element):
                if not any(node is seen for seen in found):
                    found.append(node)
        return found

    def __str__(self) -> str:
        return self.source


def compile_path(
    expression: str, namespaces: Mapping[Optional[str], str], field: bool = False
) -> XPathSubset:
    """Compile a selector (or, with ``field=True``, a field) expression.

    Unprefixed names refer to no namespace, as in XPath 1.0.

    Raises:
        ValueError: If the expression is outside the XSD subset.
    """
    alternatives = []
    for part in expression.split("|"):
        part = re.sub(r"\s+", "", part)
        if not part:
            raise ValueError(f"empty path in '{expression}'")
        descendant = False
        if part.startswith(".//"):
            descendant = True
            part = part[3:]
        texts = part.split("/")
        steps: List[Optional[NameTest]] = []
        attribute = None
        for index, step in enumerate(texts):
            if not step:
                raise ValueError(f"empty step in '{expression}'")
            if step.startswith("@") or step.startswith("attribute::"):
                if not field or index != len(texts) - 1:
                    raise ValueError(f"attribute step not allowed here in '{expression}'")
                name = step[1:] if step.startswith("@") else step[len("attribute::"):]
                attribute = _name_test(name, namespaces, expression)
                continue
            if step.startswith("child::"):
                step = step[len("child::"):]
            if step == ".":
                steps.append(None)
            else:
                steps.append(_name_test(step, namespaces, expression))
        alternatives.append(PathExpression(descendant, tuple(steps), attribute))
    return XPathSubset(expression, tuple(alternatives))


def _name_test(text: str, namespaces: Mapping[Optional[str], str], expression: str) -> NameTest:
    if text == "*":
        return NameTest(_ANY, None)
    prefix, local = split_prefixed(text)
    if not re.fullmatch(r"[^\s:/@|*.][^\s:/@|*]*|\*", local):
        raise ValueError(f"invalid name test '{text}' in '{expression}'")
    if prefix is None:
        namespace = None
    elif prefix == "xml" or prefix in namespaces:
        namespace = (
            "http://www.w3.org/XML/1998/namespace" if prefix == "xml" else namespaces[prefix]
        ) or None
    else:
        raise ValueError(f"unbound prefix '{prefix}' in '{expression}'")
    return NameTest(namespace, None if local == "*" else local)


def _apply(path: PathExpression, element) -> List[Any]:
    current = list(_self_and_descendants(element)) if path.descendant else [element]
    for step in path.steps:
        following = []
        for node in current:
            if step is None:
                following.append(node)
            else:
                following.extend(c for c in node.children if step.matches(c.qname))
        current = following
    if path.attribute is None:
        return current
    attributes = []
    for node in current:
        for name, attribute in node.attributes.items():
            if path.attribute.matches(name):
                attributes.append(attribute)
    return attributes


def _self_and_descendants(element) -> Iterator[Any]:
    yield element
    for child in element.children:
        yield from _self_and_descendants(child)


def _post_order(element) -> Iterator[Any]:
    for child in element.children:
        yield from _post_order(child)
    yield element


Report = Callable[[IdentityViolation, Any], None]


def evaluate_identity_constraints(root, report: Report) -> None:
    """Check every identity constraint declared on elements of ``root``.

    Args:
        root: Annotated root element (see :mod:`xsd_engine.validator`).
        report: Called with each violation and the annotated node it concerns.
    """
    tables: Dict[Tuple[int, QName], Dict[Tuple[Any, ...], Any]] = {}
    keyrefs = []
    for element in _post_order(root):
        declaration = element.declaration
        if declaration is None or element.nil:
            continue
        for constraint in declaration.identity_constraints:
            if constraint.kind == "keyref":
                keyrefs.append((element, constraint))
                continue
            table: Dict[Tuple[Any, ...], Any] = {}
            for target in constraint.selector.select(element):
                values = _field_values(constraint, target, report)
                if values is None:
                    if constraint.kind == "key":
                        report(
                            IdentityViolation(
                                f"Key {constraint.name} is missing a field value",
                                str(target.location.path),
                                expected=[str(f) for f in constraint.fields],
                            ),
                            target,
                        )
                    continue
                if values in table:
                    report(
                        IdentityViolation(
                            f"Duplicate value {_show(values)} for {constraint.kind} "
                            f"{constraint.name}",
                            str(target.location.path),
                            actual=_show(values),
                        ),
                        target,
                    )
                    continue
                table[values] = target
            tables[(id(element), constraint.name)] = table

    for scope, constraint in keyrefs:
        referenced = set()
        for element in _self_and_descendants(scope):
            referenced.update(tables.get((id(element), constraint.refer), ()))
        for target in constraint.selector.select(scope):
            values = _field_values(constraint, target, report)
            if values is None:
                continue
            if values not in referenced:
                report(
                    IdentityViolation(
                        f"Keyref {constraint.name} value {_show(values)} does not match "
                        f"any {constraint.refer} value",
                        str(target.location.path),
                        expected=str(constraint.refer),
                        actual=_show(values),
                    ),
                    target,
                )


def _field_values(constraint, target, report: Report) -> Optional[Tuple[Any, ...]]:
    values = []
    for field_path in constraint.fields:
        nodes = field_path.select(target)
        if not nodes:
            return None
        if len(nodes) > 1:
            report(
                IdentityViolation(
                    f"Field '{field_path}' of {constraint.name} selects {len(nodes)} nodes",
                    str(target.location.path),
                ),
                target,
            )
            return None
        node = nodes[0]
        value = node.value
        if value is None:
            # nil, skipped, or an invalid value the validator already reported
            if getattr(node, "nil", False) or not _has_complex_content(node):
                return None
            report(
                IdentityViolation(
                    f"Field '{field_path}' of {constraint.name} selects a node without "
                    f"a simple value",
                    str(node.location.path),
                ),
                node,
            )
            return None
        family = value.type.primitive.name if value.type.primitive else str(value.type.name)
        values.append((family, value.key))
    return tuple(values)


def _has_complex_content(node) -> bool:
    type_def = getattr(node, "type", None)
    return type_def is not None and not type_def.is_simple and type_def.content_kind != "simple"


def _show(values: Tuple[Any, ...]) -> str:
    return "(" + ", ".join(str(key) for _, key in values) + ")"
