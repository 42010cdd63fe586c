"""Instance validation against a compiled :class:`~xsd_engine.model.SchemaModel`.

Each element runs through a small state machine
(:class:`ElementState`): ``START``, ``TYPE_RESOLVED``, ``ATTRIBUTES_CHECKED``,
``CONTENT_CHECKED`` and ``DONE``, dropping to ``FAILED`` from any step.

Problems are recorded as :class:`Violation` entries and validation carries on
with sibling subtrees, unless ``fail_fast`` is set. The result is always an
annotated tree: every element knows its declaration, its governing type and
(for simple content) its normalized typed value, which is what
:mod:`xsd_engine.codec` decodes.

Example:
    outcome = validate(model, b"<order><id>7</id></order>")
    if not outcome:
        for violation in outcome.violations:
            print(violation)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .exceptions import ContentModelViolation, FacetViolation, IdentityViolation
from .identity import evaluate_identity_constraints
from .matcher import Assignment, ContentModelMatcher
from .model import AttributeDeclaration, ElementDeclaration, SchemaModel
from .nodetree import SourceLocation, XmlNode, from_etree, parse_xml
from .particles import Particle, WildcardParticle
from .qnames import XSI_NAMESPACE, QName, as_qname, resolve_prefixed, xsi
from .types import (
    ANY_TYPE,
    ID_TYPE,
    IDREF_TYPE,
    ComplexType,
    NormalizedValue,
    SimpleType,
    TypeDefinition,
    builtin_type,
    derivation_methods,
    validate_value,
)

XSI_TYPE = xsi("type")
XSI_NIL = xsi("nil")
XSI_INFORMATIONAL = ("schemaLocation", "noNamespaceSchemaLocation")


@dataclass
class ValidationOptions:
    """Per-call validation settings.

    Attributes:
        fail_fast: Stop at the first violation.
        max_depth: Maximum element nesting (and content model nesting).
        collect_identity_constraints: Evaluate key/unique/keyref.
    """

    fail_fast: bool = False
    max_depth: int = 64
    collect_identity_constraints: bool = True


class ElementState(enum.Enum):
    START = "start"
    TYPE_RESOLVED = "type_resolved"
    ATTRIBUTES_CHECKED = "attributes_checked"
    CONTENT_CHECKED = "content_checked"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Violation:
    """One instance-validation problem.

    Attributes:
        location: Path (and line/column when known) of the offending node.
        kind: Machine-readable category, e.g. ``facet`` or ``missing_attribute``.
    """

    location: SourceLocation
    kind: str
    message: str
    expected: Any = None
    actual: Any = None

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.location.path,
            "line": self.location.line,
            "column": self.location.column,
            "kind": self.kind,
            "message": self.message,
            "expected": _jsonable(self.expected),
            "actual": _jsonable(self.actual),
        }


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


@dataclass(eq=False)
class AnnotatedAttribute:
    name: QName
    declaration: Optional[AttributeDeclaration]
    value: Optional[NormalizedValue]
    lexical: str
    defaulted: bool = False
    location: Optional[SourceLocation] = None


@dataclass(eq=False)
class AnnotatedElement:
    """An element with the schema information the validator attached to it.

    Attributes:
        declaration: Governing element declaration (``None`` for skipped or
            undeclared elements).
        type: Governing type after ``xsi:type``.
        value: Typed value of simple content (``None`` otherwise, or when nil).
        particle: Particle of the parent's content model this element matched.
        defaulted: ``value`` comes from the declaration's default/fixed value.
    """

    node: XmlNode
    declaration: Optional[ElementDeclaration] = None
    type: Optional[TypeDefinition] = None
    value: Optional[NormalizedValue] = None
    attributes: Dict[QName, AnnotatedAttribute] = field(default_factory=dict)
    children: List["AnnotatedElement"] = field(default_factory=list)
    assignment: Optional[Assignment] = None
    particle: Optional[Particle] = None
    nil: bool = False
    defaulted: bool = False
    state: ElementState = ElementState.START

    @property
    def qname(self) -> QName:
        return self.node.qname

    @property
    def location(self) -> SourceLocation:
        return self.node.location

    def __repr__(self) -> str:
        return f"<AnnotatedElement {self.node.qname} {self.state.value}>"


class ValidationOutcome:
    """Result of :func:`validate`; truthy when the document is valid."""

    valid = False

    def __init__(
        self, tree: Optional[AnnotatedElement], violations: Optional[List[Violation]] = None
    ) -> None:
        self.tree = tree
        self.violations: List[Violation] = list(violations or [])
        self.model: Optional[SchemaModel] = None

    def __bool__(self) -> bool:
        return self.valid

    def __repr__(self) -> str:
        return f"<{type(self).__name__} violations={len(self.violations)}>"


class Valid(ValidationOutcome):
    valid = True

    def __init__(self, tree: AnnotatedElement) -> None:
        super().__init__(tree, [])


class Invalid(ValidationOutcome):
    """Violations plus the best-effort annotated tree."""

    def __init__(
        self, violations: List[Violation], tree: Optional[AnnotatedElement] = None
    ) -> None:
        super().__init__(tree, violations)


class _Abort(Exception):
    """Unwinds the walk in fail-fast mode."""


Document = Union[XmlNode, bytes, str, Any]


def as_node(document: Document) -> XmlNode:
    """Accept an :class:`XmlNode`, XML bytes/text or an ElementTree element."""
    if isinstance(document, XmlNode):
        return document
    if isinstance(document, (bytes, str)):
        return parse_xml(document)
    if hasattr(document, "getroot"):
        document = document.getroot()
    return from_etree(document)


class Validator:
    """Validates documents against one model. Not shared between threads."""

    def __init__(self, model: SchemaModel, options: Optional[ValidationOptions] = None) -> None:
        self.model = model
        self.options = options or ValidationOptions()
        self._matcher = ContentModelMatcher(model, self.options.max_depth)

    def validate(self, document: Document, root_element=None) -> ValidationOutcome:
        root = as_node(document)
        self._violations: List[Violation] = []
        self._ids: Dict[str, SourceLocation] = {}
        self._idrefs: List[Tuple[str, SourceLocation]] = []
        self._root: Optional[AnnotatedElement] = None
        try:
            tree = self._validate_root(root, root_element)
            for value, location in self._idrefs:
                if value not in self._ids:
                    self._report(
                        location,
                        "unresolved_idref",
                        f"IDREF '{value}' does not match any ID in the document",
                        actual=value,
                    )
            if self.options.collect_identity_constraints:
                evaluate_identity_constraints(tree, self._identity_violation)
        except _Abort:
            tree = self._root
        if self._violations:
            outcome: ValidationOutcome = Invalid(self._violations, tree)
        else:
            outcome = Valid(tree)
        outcome.model = self.model
        return outcome

    # ------------------------------------------------------------------

    def _report(
        self,
        location: SourceLocation,
        kind: str,
        message: str,
        expected: Any = None,
        actual: Any = None,
        element: Optional[AnnotatedElement] = None,
    ) -> None:
        self._violations.append(Violation(location, kind, message, expected, actual))
        if element is not None:
            element.state = ElementState.FAILED
        if self.options.fail_fast:
            raise _Abort()

    def _identity_violation(self, error: IdentityViolation, target) -> None:
        self._report(target.location, error.kind, error.message, error.expected, error.actual)

    def _advance(self, element: AnnotatedElement, state: ElementState) -> None:
        if element.state is not ElementState.FAILED:
            element.state = state

    # ------------------------------------------------------------------

    def _validate_root(self, node: XmlNode, root_element) -> AnnotatedElement:
        if root_element is not None:
            expected = as_qname(root_element)
            if node.qname != expected:
                self._root = AnnotatedElement(node, state=ElementState.FAILED)
                self._report(
                    node.location,
                    "unexpected_root",
                    f"Document element is {node.qname}, expected {expected}",
                    str(expected),
                    str(node.qname),
                    self._root,
                )
        declaration = self.model.elements.get(node.qname)
        if declaration is None:
            root = self._skipped(node, ElementState.FAILED)
            self._root = root
            self._report(
                node.location,
                "unknown_element",
                f"No global element declaration for {node.qname}",
                actual=str(node.qname),
                element=root,
            )
            return root
        return self._element(node, declaration, 1)

    def _skipped(self, node: XmlNode, state: ElementState) -> AnnotatedElement:
        annotated = AnnotatedElement(node, state=state)
        annotated.children = [self._skipped(child, state) for child in node.children]
        return annotated

    def _element(
        self, node: XmlNode, declaration: ElementDeclaration, depth: int
    ) -> AnnotatedElement:
        annotated = AnnotatedElement(node, declaration)
        if self._root is None:
            self._root = annotated
        if depth > self.options.max_depth:
            self._report(
                node.location,
                "depth_exceeded",
                f"Element nesting deeper than {self.options.max_depth}",
                element=annotated,
            )
            return annotated
        if declaration.abstract:
            self._report(
                node.location,
                "abstract_element",
                f"Element {declaration.name} is abstract and cannot appear in a document",
                element=annotated,
            )

        annotated.type = self._resolve_type(annotated, declaration)
        self._advance(annotated, ElementState.TYPE_RESOLVED)
        if isinstance(annotated.type, ComplexType) and annotated.type.abstract:
            self._report(
                node.location,
                "abstract_type",
                f"Type {annotated.type.name} is abstract; use xsi:type to pick a concrete type",
                element=annotated,
            )

        nil = self._nil(annotated)
        self._attributes(annotated)
        self._advance(annotated, ElementState.ATTRIBUTES_CHECKED)
        if nil:
            if node.children or node.text_content():
                self._report(
                    node.location,
                    "nil_content",
                    f"Element {node.qname} is nil but has content",
                    element=annotated,
                )
            if declaration.fixed is not None:
                self._report(
                    node.location,
                    "nil_content",
                    f"Element {node.qname} has a fixed value and cannot be nil",
                    element=annotated,
                )
            annotated.children = [self._skipped(c, ElementState.FAILED) for c in node.children]
        else:
            self._content(annotated, depth)
        self._advance(annotated, ElementState.CONTENT_CHECKED)
        self._advance(annotated, ElementState.DONE)
        return annotated

    def _resolve_type(
        self, annotated: AnnotatedElement, declaration: ElementDeclaration
    ) -> TypeDefinition:
        node = annotated.node
        declared = declaration.type or ANY_TYPE
        raw = node.attributes.get(XSI_TYPE)
        if raw is None:
            return declared
        try:
            name = resolve_prefixed(raw.strip(), node.namespaces)
            override = self.model.get_type(name)
        except KeyError as exc:
            self._report(
                node.location,
                "invalid_xsi_type",
                f"xsi:type '{raw}' cannot be resolved: {exc.args[0]}",
                actual=raw,
                element=annotated,
            )
            return declared
        methods = derivation_methods(override, declared)
        if methods is None:
            self._report(
                node.location,
                "invalid_xsi_type",
                f"xsi:type {override.name} is not derived from {declared.name}",
                str(declared.name),
                str(override.name),
                annotated,
            )
            return declared
        blocked = set(declaration.block)
        if isinstance(declared, ComplexType):
            blocked |= declared.block
        if methods & blocked:
            self._report(
                node.location,
                "blocked_type",
                f"xsi:type {override.name} uses blocked derivation "
                f"{', '.join(sorted(methods & blocked))}",
                element=annotated,
            )
            return declared
        return override

    def _nil(self, annotated: AnnotatedElement) -> bool:
        node = annotated.node
        raw = node.attributes.get(XSI_NIL)
        if raw is None:
            return False
        try:
            value = validate_value(raw, builtin_type("boolean")).value
        except FacetViolation as exc:
            self._report(node.location, "invalid_nil", exc.message, element=annotated)
            return False
        if value and not annotated.declaration.nillable:
            self._report(
                node.location,
                "not_nillable",
                f"Element {node.qname} is not nillable",
                element=annotated,
            )
            return False
        annotated.nil = value
        return value

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def _attributes(self, annotated: AnnotatedElement) -> None:
        node = annotated.node
        type_def = annotated.type
        uses = type_def.attribute_uses if isinstance(type_def, ComplexType) else {}
        wildcard = type_def.attribute_wildcard if isinstance(type_def, ComplexType) else None
        for name, lexical in node.attributes.items():
            location = _attribute_location(node, name)
            if name.namespace == XSI_NAMESPACE:
                if name.local in ("type", "nil") or name.local in XSI_INFORMATIONAL:
                    continue
                self._report(
                    location,
                    "unexpected_attribute",
                    f"Unknown schema-instance attribute xsi:{name.local}",
                    actual=str(name),
                    element=annotated,
                )
                continue
            use = uses.get(name)
            if use is not None:
                annotated.attributes[name] = self._attribute_value(
                    annotated, name, lexical, use.declaration, use.type, use.effective_fixed
                )
                continue
            if wildcard is None or not wildcard.constraint.allows(name.namespace):
                self._report(
                    location,
                    "unexpected_attribute",
                    f"Attribute {name} is not allowed on {node.qname}",
                    sorted(str(n) for n in uses),
                    str(name),
                    annotated,
                )
                continue
            declaration = None
            if wildcard.process_contents != "skip":
                declaration = self.model.attributes.get(name)
            if declaration is None:
                if wildcard.process_contents == "strict":
                    self._report(
                        location,
                        "undeclared_attribute",
                        f"No global declaration for wildcard attribute {name}",
                        actual=str(name),
                        element=annotated,
                    )
                annotated.attributes[name] = AnnotatedAttribute(
                    name, None, None, lexical, location=location
                )
                continue
            annotated.attributes[name] = self._attribute_value(
                annotated, name, lexical, declaration, declaration.type, declaration.fixed
            )

        for name, use in uses.items():
            if name in node.attributes:
                continue
            if use.required:
                self._report(
                    node.location,
                    "missing_attribute",
                    f"Required attribute {name} is missing on {node.qname}",
                    expected=str(name),
                    element=annotated,
                )
                continue
            lexical = use.effective_default
            if lexical is not None:
                value = validate_value(lexical, use.type, node.namespaces)
                annotated.attributes[name] = AnnotatedAttribute(
                    name,
                    use.declaration,
                    value,
                    lexical,
                    defaulted=True,
                    location=_attribute_location(node, name),
                )

    def _attribute_value(
        self,
        annotated: AnnotatedElement,
        name: QName,
        lexical: str,
        declaration: AttributeDeclaration,
        simple_type: SimpleType,
        fixed: Optional[str],
    ) -> AnnotatedAttribute:
        node = annotated.node
        location = _attribute_location(node, name)
        try:
            value = validate_value(lexical, simple_type, node.namespaces)
        except FacetViolation as exc:
            self._report(
                location,
                exc.kind,
                f"Attribute {name}: {exc.message}",
                exc.expected,
                exc.actual,
                annotated,
            )
            return AnnotatedAttribute(name, declaration, None, lexical, location=location)
        if fixed is not None and validate_value(fixed, simple_type, node.namespaces).key != value.key:
            self._report(
                location,
                "fixed_mismatch",
                f"Attribute {name} must have the fixed value '{fixed}'",
                fixed,
                lexical,
                annotated,
            )
        self._track_ids(value, location)
        return AnnotatedAttribute(name, declaration, value, lexical, location=location)

    def _track_ids(self, value: NormalizedValue, location: SourceLocation) -> None:
        simple_type = value.type
        if simple_type.variety == "list":
            item = simple_type.item_type
            if item is not None and item.derives_from(IDREF_TYPE):
                self._idrefs.extend((v, location) for v in value.value)
            return
        if simple_type.derives_from(ID_TYPE):
            if value.value in self._ids:
                self._report(
                    location,
                    "duplicate_id",
                    f"ID '{value.value}' already used at {self._ids[value.value].path}",
                    actual=value.value,
                )
            else:
                self._ids[value.value] = location
        elif simple_type.derives_from(IDREF_TYPE):
            self._idrefs.append((value.value, location))

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def _content(self, annotated: AnnotatedElement, depth: int) -> None:
        node = annotated.node
        type_def = annotated.type
        if type_def.is_simple or type_def.content_kind == "simple":
            simple_type = type_def if type_def.is_simple else type_def.simple_type
            if node.children:
                self._report(
                    node.children[0].location,
                    "element_content",
                    f"Element {node.qname} has simple content but contains child elements",
                    element=annotated,
                )
                annotated.children = [
                    self._skipped(c, ElementState.FAILED) for c in node.children
                ]
                return
            self._simple_value(annotated, simple_type, node.text or "")
            return

        if type_def.content_kind != "mixed" and node.has_significant_text():
            self._report(
                node.location,
                "unexpected_text",
                f"Element {node.qname} does not allow character data",
                actual=node.text_content().strip()[:40],
                element=annotated,
            )
        if type_def.content_kind == "mixed":
            self._mixed_value(annotated)
        self._children(annotated, type_def.particle, depth)

    def _simple_value(
        self, annotated: AnnotatedElement, simple_type: SimpleType, text: str
    ) -> None:
        node = annotated.node
        declaration = annotated.declaration
        constraint = declaration.value_constraint if declaration is not None else None
        defaulted = False
        if text == "" and constraint is not None:
            text = constraint[1]
            defaulted = True
        try:
            value = validate_value(text, simple_type, node.namespaces)
        except FacetViolation as exc:
            self._report(
                node.location,
                exc.kind,
                f"Element {node.qname}: {exc.message}",
                exc.expected,
                exc.actual,
                annotated,
            )
            return
        if constraint is not None and constraint[0] == "fixed" and not defaulted:
            if validate_value(constraint[1], simple_type, node.namespaces).key != value.key:
                self._report(
                    node.location,
                    "fixed_mismatch",
                    f"Element {node.qname} must have the fixed value '{constraint[1]}'",
                    constraint[1],
                    text,
                    annotated,
                )
        annotated.value = value
        annotated.defaulted = defaulted
        self._track_ids(value, node.location)

    def _mixed_value(self, annotated: AnnotatedElement) -> None:
        node = annotated.node
        declaration = annotated.declaration
        constraint = declaration.value_constraint if declaration is not None else None
        if constraint is None:
            return
        text = node.text_content()
        if not node.children and text == "":
            annotated.defaulted = True
        elif constraint[0] == "fixed" and (node.children or text != constraint[1]):
            self._report(
                node.location,
                "fixed_mismatch",
                f"Element {node.qname} must have the fixed value '{constraint[1]}'",
                constraint[1],
                text,
                annotated,
            )

    def _children(
        self, annotated: AnnotatedElement, particle: Optional[Particle], depth: int
    ) -> None:
        node = annotated.node
        names = [child.qname for child in node.children]
        try:
            assignment = self._matcher.match(particle, names)
        except ContentModelViolation as exc:
            position = exc.position or 0
            if exc.kind != "depth_exceeded" and position < len(node.children):
                location = node.children[position].location
            else:
                location = node.location
            assignment = exc.partial if exc.partial is not None else Assignment([])
            annotated.assignment = assignment
            self._report(
                location,
                exc.kind,
                f"Content of {node.qname}: {exc.message}",
                exc.expected,
                exc.actual,
                annotated,
            )
        annotated.assignment = assignment
        entries = {entry.index: entry for entry in assignment}
        for index, child in enumerate(node.children):
            entry = entries.get(index)
            if entry is None:
                annotated.children.append(self._skipped(child, ElementState.FAILED))
                continue
            if entry.declaration is not None:
                child_annotated = self._element(child, entry.declaration, depth + 1)
            else:
                child_annotated = self._wildcard_child(child, entry.particle, depth + 1)
            child_annotated.particle = entry.particle
            annotated.children.append(child_annotated)

    def _wildcard_child(
        self, node: XmlNode, particle: WildcardParticle, depth: int
    ) -> AnnotatedElement:
        process = particle.process_contents
        if process == "skip":
            return self._skipped(node, ElementState.DONE)
        declaration = self.model.elements.get(node.qname)
        if declaration is not None:
            return self._element(node, declaration, depth)
        if process == "strict" and XSI_TYPE not in node.attributes:
            skipped = self._skipped(node, ElementState.FAILED)
            self._report(
                node.location,
                "undeclared_element",
                f"No global declaration for wildcard element {node.qname}",
                actual=str(node.qname),
                element=skipped,
            )
            return skipped
        return self._element(node, ElementDeclaration(node.qname, ANY_TYPE, scope="local"), depth)


def _attribute_location(node: XmlNode, name: QName) -> SourceLocation:
    return SourceLocation(f"{node.path}/@{name.local}", node.line, node.column, node.document)


def validate(
    model: SchemaModel,
    document: Document,
    options: Optional[ValidationOptions] = None,
    root_element=None,
) -> ValidationOutcome:
    """Validate ``document`` against ``model``.

    Args:
        model: Compiled schema model.
        document: :class:`XmlNode`, XML bytes/text or an ElementTree element.
        options: Validation settings.
        root_element: Expected document element (QName or Clark string).

    Returns:
        :class:`Valid` with the annotated tree, or :class:`Invalid` with the
        violations and a best-effort annotated tree. Invalid instances never
        raise.
    """
    return Validator(model, options).validate(document, root_element)
