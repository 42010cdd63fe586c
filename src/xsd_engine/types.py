"""Type definitions and the simple-value validation pipeline.

Simple types carry their *effective* facets: every restriction step copies the
base's facets and overlays its own, after checking that it only tightens
them. Validation of a lexical string then runs a fixed pipeline:

1. whitespace normalization (``preserve``/``replace``/``collapse``),
2. lexical-to-value mapping of the primitive (or item/member types for list
   and union varieties),
3. facet checks in the order pattern, enumeration, length facets, bounds,
   digits.

The module also defines the built-in XSD 1.0 types (:data:`BUILTIN_TYPES`)
including ``xs:anyType``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    FrozenSet,
    Iterator,
    Mapping,
    MutableMapping,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .datatypes import (
    LIST_FACETS,
    PRIMITIVES,
    UNION_FACETS,
    WHITESPACE_ORDER,
    Primitive,
    compile_pattern,
    normalize_whitespace,
    value_to_lexical,
)
from .exceptions import FacetViolation, InvalidFacetRestriction, InvalidSchema
from .particles import GroupParticle, NamespaceConstraint, WildcardParticle
from .qnames import XSD_NAMESPACE, QName, xsd

if TYPE_CHECKING:  # pragma: no cover
    from .model import AttributeDeclaration

FACET_NAMES = (
    "length",
    "minLength",
    "maxLength",
    "pattern",
    "enumeration",
    "whiteSpace",
    "maxInclusive",
    "maxExclusive",
    "minInclusive",
    "minExclusive",
    "totalDigits",
    "fractionDigits",
)
LENGTH_FACETS = ("length", "minLength", "maxLength")
BOUND_FACETS = ("maxInclusive", "maxExclusive", "minInclusive", "minExclusive")
DIGIT_FACETS = ("totalDigits", "fractionDigits")


class FacetValue(NamedTuple):
    """A facet value as written in the schema and its comparison key."""

    lexical: str
    key: Any


class NormalizedValue(NamedTuple):
    """Result of :func:`validate_value`.

    Attributes:
        lexical: Whitespace-normalized lexical form.
        value: Typed value (``int``, ``Decimal``, ``float``, ``bool``, ``str``
            or a list for list types).
        key: Comparison key used by facets and identity constraints.
        type: The type that accepted the value (the member type for unions).
    """

    lexical: str
    value: Any
    key: Any
    type: "SimpleType"


@dataclass(eq=False)
class SimpleType:
    name: QName
    variety: str = "atomic"
    base: Optional["TypeDefinition"] = None
    derivation: str = "restriction"
    primitive: Optional[Primitive] = None
    facets: Dict[str, Any] = field(default_factory=dict)
    fixed_facets: FrozenSet[str] = frozenset()
    item_type: Optional["SimpleType"] = None
    member_types: Tuple["SimpleType", ...] = ()
    integer: bool = False
    final: FrozenSet[str] = frozenset()
    builtin: bool = False
    anonymous: bool = False

    is_simple = True
    content_kind = "simple"

    def __repr__(self) -> str:
        return f"<SimpleType {self.name} {self.variety}>"

    @property
    def display_name(self) -> str:
        if self.name.namespace == XSD_NAMESPACE:
            return f"xs:{self.name.local}"
        return str(self.name)

    @property
    def white_space(self) -> str:
        return self.facets.get("whiteSpace", "collapse")

    @property
    def primitive_type(self) -> Primitive:
        """The primitive of an atomic type."""
        if self.primitive is None:
            raise InvalidSchema(f"Type {self.display_name} has no primitive type")
        return self.primitive

    @property
    def list_item_type(self) -> "SimpleType":
        if self.item_type is None:
            raise InvalidSchema(f"List type {self.display_name} has no item type")
        return self.item_type

    @property
    def applicable_facets(self) -> FrozenSet[str]:
        if self.variety == "list":
            return LIST_FACETS
        if self.variety == "union":
            return UNION_FACETS
        return self.primitive_type.facets

    @property
    def simple_type(self) -> "SimpleType":
        return self

    def ancestors(self) -> Iterator["TypeDefinition"]:
        current: Optional[TypeDefinition] = self
        while current is not None:
            yield current
            current = current.base

    def derives_from(self, other: "TypeDefinition") -> bool:
        return any(t is other for t in self.ancestors())


@dataclass(eq=False)
class AttributeUse:
    """An attribute declaration as used by one complex type."""

    declaration: "AttributeDeclaration"
    required: bool = False
    default: Optional[str] = None
    fixed: Optional[str] = None

    @property
    def name(self) -> QName:
        return self.declaration.name

    @property
    def type(self) -> SimpleType:
        return self.declaration.type

    @property
    def effective_default(self) -> Optional[str]:
        if self.default is not None or self.fixed is not None:
            return self.default
        return self.declaration.default

    @property
    def effective_fixed(self) -> Optional[str]:
        if self.fixed is not None or self.default is not None:
            return self.fixed
        return self.declaration.fixed

    def __repr__(self) -> str:
        return f"<AttributeUse {self.name} required={self.required}>"


@dataclass(frozen=True)
class AttributeWildcard:
    constraint: NamespaceConstraint
    process_contents: str = "strict"


@dataclass(eq=False)
class ComplexType:
    """A complex type definition.

    Attributes:
        content_kind: ``empty``, ``simple``, ``element-only`` or ``mixed``.
        particle: Content model (``None`` for empty and simple content).
        attribute_uses: Attribute uses keyed by attribute name, sorted.
        simple_type: Value type of simple content.
    """

    name: QName
    base: Optional["TypeDefinition"] = None
    derivation: str = "restriction"
    content_kind: str = "empty"
    particle: Optional[GroupParticle] = None
    attribute_uses: Dict[QName, AttributeUse] = field(default_factory=dict)
    attribute_wildcard: Optional[AttributeWildcard] = None
    simple_type: Optional[SimpleType] = None
    abstract: bool = False
    block: FrozenSet[str] = frozenset()
    final: FrozenSet[str] = frozenset()
    builtin: bool = False
    anonymous: bool = False

    is_simple = False

    def __repr__(self) -> str:
        return f"<ComplexType {self.name} {self.content_kind}>"

    @property
    def display_name(self) -> str:
        if self.name.namespace == XSD_NAMESPACE:
            return f"xs:{self.name.local}"
        return str(self.name)

    @property
    def mixed(self) -> bool:
        return self.content_kind == "mixed"

    def ancestors(self) -> Iterator["TypeDefinition"]:
        current: Optional[TypeDefinition] = self
        while current is not None:
            yield current
            current = current.base

    def derives_from(self, other: "TypeDefinition") -> bool:
        return any(t is other for t in self.ancestors())


TypeDefinition = Union[SimpleType, ComplexType]


def derivation_methods(
    derived: TypeDefinition, ancestor: TypeDefinition
) -> Optional[FrozenSet[str]]:
    """Derivation methods used on the way from ``derived`` up to ``ancestor``.

    Returns ``None`` when ``ancestor`` is not in the derivation chain. List and
    union construction count as ``restriction``.
    """
    methods = set()
    for current in derived.ancestors():
        if current is ancestor:
            return frozenset(methods)
        methods.add("extension" if current.derivation == "extension" else "restriction")
    return None


# ---------------------------------------------------------------------------
# Derivation
# ---------------------------------------------------------------------------


def derive(
    base: Union[TypeDefinition, Sequence[SimpleType]],
    method: str,
    restrictions: Optional[Mapping[str, Any]] = None,
    name: Optional[QName] = None,
    namespaces: Optional[Mapping[Optional[str], str]] = None,
    anonymous: bool = False,
    final: FrozenSet[str] = frozenset(),
) -> SimpleType:
    """Derive a new simple type.

    Args:
        base: Base type for ``restriction``, item type for ``list``, or the
            member types for ``union``.
        method: ``restriction``, ``list`` or ``union``.
        restrictions: Facets for ``restriction``: facet name to lexical value
            (a list of values for ``pattern`` and ``enumeration``). The
            optional ``fixed`` entry lists facets declared ``fixed="true"``.
        name: Name of the new type (synthetic for anonymous types).
        namespaces: Prefix bindings for QName-valued facets.

    Raises:
        InvalidFacetRestriction: If a facet loosens its base.
        InvalidSchema: For unknown, inapplicable or malformed facets.
    """
    if method == "restriction":
        if not isinstance(base, (SimpleType, ComplexType)) or not base.is_simple:
            raise InvalidSchema(f"Cannot restrict non-simple type {base!r} to a simple type")
        return _restrict(base, restrictions or {}, name, namespaces or {}, anonymous, final)
    if method == "list":
        item = base
        if not isinstance(item, SimpleType):
            raise InvalidSchema("List item type must be a simple type")
        if item.variety == "list":
            raise InvalidSchema(f"Item type {item.display_name} of a list is itself a list")
        if "list" in item.final:
            raise InvalidSchema(f"Type {item.display_name} is final for list")
        return SimpleType(
            name or QName(None, f"list({item.name.local})"),
            "list",
            ANY_SIMPLE_TYPE,
            "list",
            facets={"whiteSpace": "collapse"},
            fixed_facets=frozenset({"whiteSpace"}),
            item_type=item,
            final=final,
            anonymous=anonymous,
        )
    if method == "union":
        members = tuple(base)  # type: ignore[arg-type]
        if not members:
            raise InvalidSchema("Union without member types")
        for member in members:
            if not isinstance(member, SimpleType):
                raise InvalidSchema("Union member types must be simple types")
            if "union" in member.final:
                raise InvalidSchema(f"Type {member.display_name} is final for union")
        return SimpleType(
            name or QName(None, "union"),
            "union",
            ANY_SIMPLE_TYPE,
            "union",
            member_types=members,
            final=final,
            anonymous=anonymous,
        )
    raise ValueError(f"Unknown derivation method '{method}'")


def _restrict(
    base: SimpleType,
    restrictions: Mapping[str, Any],
    name: Optional[QName],
    namespaces: Mapping[Optional[str], str],
    anonymous: bool,
    final: FrozenSet[str],
) -> SimpleType:
    if "restriction" in base.final:
        raise InvalidSchema(f"Type {base.display_name} is final for restriction")
    label = str(name) if name else f"restriction of {base.display_name}"
    applicable = base.applicable_facets
    inherited = base.facets
    facets: Dict[str, Any] = dict(inherited)
    newly_fixed = set(restrictions.get("fixed", ()))
    for facet in restrictions:
        if facet != "fixed" and facet not in FACET_NAMES:
            raise InvalidSchema(f"{label}: unknown facet '{facet}'")

    for facet in FACET_NAMES:
        if facet not in restrictions:
            continue
        raw = restrictions[facet]
        if facet not in applicable:
            raise InvalidSchema(f"Facet {facet} does not apply to {base.display_name}")

        if facet == "pattern":
            patterns = (raw,) if isinstance(raw, str) else tuple(raw)
            for pattern in patterns:
                try:
                    compile_pattern(pattern)
                except ValueError as exc:
                    raise InvalidSchema(f"{label}: {exc}") from exc
            facets["pattern"] = tuple(inherited.get("pattern", ())) + (patterns,)
            continue

        if facet == "enumeration":
            values = (raw,) if isinstance(raw, str) else tuple(raw)
            enumeration = []
            for lexical in values:
                try:
                    result = validate_value(lexical, base, namespaces)
                except FacetViolation as exc:
                    raise InvalidFacetRestriction(
                        f"{label}: enumeration value '{lexical}' is not valid for "
                        f"{base.display_name}: {exc.message}"
                    ) from exc
                enumeration.append(FacetValue(result.lexical, result.key))
            facets["enumeration"] = tuple(enumeration)
            continue

        if facet == "whiteSpace":
            if raw not in WHITESPACE_ORDER:
                raise InvalidSchema(f"{label}: invalid whiteSpace value '{raw}'")
            current = inherited.get("whiteSpace", "preserve")
            if WHITESPACE_ORDER[raw] < WHITESPACE_ORDER[current]:
                raise InvalidFacetRestriction(
                    f"{label}: whiteSpace '{raw}' is looser than base '{current}'"
                )
            _check_fixed(base, facet, raw, label)
            facets[facet] = raw
            continue

        if facet in LENGTH_FACETS or facet in DIGIT_FACETS:
            try:
                number = int(str(raw).strip())
            except ValueError as exc:
                raise InvalidSchema(f"{label}: {facet} must be an integer, got '{raw}'") from exc
            if number < 0 or (facet == "totalDigits" and number == 0):
                raise InvalidSchema(f"{label}: invalid {facet} value {number}")
            _check_fixed(base, facet, number, label)
            _check_length_or_digits(facet, number, inherited, label)
            facets[facet] = number
            continue

        # bound facets
        bound = _facet_value(base, str(raw), namespaces, facet, label)
        _check_fixed(base, facet, bound.key, label)
        _check_bound(facet, bound, inherited, label)
        counterpart = {
            "maxInclusive": "maxExclusive",
            "maxExclusive": "maxInclusive",
            "minInclusive": "minExclusive",
            "minExclusive": "minInclusive",
        }[facet]
        if counterpart in restrictions:
            raise InvalidSchema(f"{label}: both {facet} and {counterpart} specified")
        facets.pop(counterpart, None)
        facets[facet] = bound

    _check_consistency(facets, label)
    return SimpleType(
        name or QName(None, label),
        base.variety,
        base,
        "restriction",
        base.primitive,
        facets,
        frozenset(base.fixed_facets | newly_fixed),
        base.item_type,
        base.member_types,
        base.integer or name == xsd("integer"),
        final,
        anonymous=anonymous,
    )


def _facet_value(
    base: SimpleType,
    raw: str,
    namespaces: Mapping[Optional[str], str],
    facet: str,
    label: str,
) -> FacetValue:
    if base.primitive is None:
        raise InvalidSchema(f"{label}: {facet} requires an atomic base type")
    lexical = normalize_whitespace(raw, "collapse")
    try:
        _, key = base.primitive.parse(lexical, namespaces)
    except ValueError as exc:
        raise InvalidSchema(f"{label}: invalid {facet} value: {exc}") from exc
    return FacetValue(lexical, key)


def _check_fixed(base: SimpleType, facet: str, value: Any, label: str) -> None:
    if facet not in base.fixed_facets:
        return
    current = base.facets.get(facet)
    if isinstance(current, FacetValue):
        current = current.key
    if current != value:
        raise InvalidFacetRestriction(
            f"{label}: facet {facet} is fixed in {base.display_name}"
        )


def _check_length_or_digits(
    facet: str, number: int, inherited: Mapping[str, Any], label: str
) -> None:
    length = inherited.get("length")
    min_length = inherited.get("minLength")
    max_length = inherited.get("maxLength")
    loosened = False
    if facet == "length":
        loosened = (
            (length is not None and number != length)
            or (min_length is not None and number < min_length)
            or (max_length is not None and number > max_length)
        )
    elif facet == "minLength":
        loosened = (min_length is not None and number < min_length) or (
            max_length is not None and number > max_length
        )
    elif facet == "maxLength":
        loosened = (max_length is not None and number > max_length) or (
            min_length is not None and number < min_length
        )
    elif facet in DIGIT_FACETS:
        current = inherited.get(facet)
        loosened = current is not None and number > current
    if loosened:
        raise InvalidFacetRestriction(
            f"{label}: {facet}={number} loosens the base type's length or digit facets"
        )


_BOUND_RULES = {
    # facet: ((base facet, violating comparison), ...)
    "maxInclusive": (
        ("maxInclusive", lambda v, b: v > b),
        ("maxExclusive", lambda v, b: v >= b),
        ("minInclusive", lambda v, b: v < b),
        ("minExclusive", lambda v, b: v <= b),
    ),
    "maxExclusive": (
        ("maxExclusive", lambda v, b: v > b),
        ("maxInclusive", lambda v, b: v > b),
        ("minInclusive", lambda v, b: v <= b),
        ("minExclusive", lambda v, b: v <= b),
    ),
    "minInclusive": (
        ("minInclusive", lambda v, b: v < b),
        ("minExclusive", lambda v, b: v <= b),
        ("maxInclusive", lambda v, b: v > b),
        ("maxExclusive", lambda v, b: v >= b),
    ),
    "minExclusive": (
        ("minExclusive", lambda v, b: v < b),
        ("minInclusive", lambda v, b: v < b),
        ("maxInclusive", lambda v, b: v >= b),
        ("maxExclusive", lambda v, b: v >= b),
    ),
}


def _check_bound(
    facet: str, bound: FacetValue, inherited: Mapping[str, Any], label: str
) -> None:
    for base_facet, violates in _BOUND_RULES[facet]:
        current = inherited.get(base_facet)
        if current is None:
            continue
        try:
            loosened = violates(bound.key, current.key)
        except TypeError:
            loosened = True
        if loosened:
            raise InvalidFacetRestriction(
                f"{label}: {facet}={bound.lexical} is not within the base "
                f"type's {base_facet}={current.lexical}"
            )


def _check_consistency(facets: Mapping[str, Any], label: str) -> None:
    min_length = facets.get("minLength")
    max_length = facets.get("maxLength")
    length = facets.get("length")
    if min_length is not None and max_length is not None and min_length > max_length:
        raise InvalidFacetRestriction(f"{label}: minLength exceeds maxLength")
    if length is not None and (
        (min_length is not None and min_length > length)
        or (max_length is not None and max_length < length)
    ):
        raise InvalidFacetRestriction(f"{label}: length conflicts with minLength/maxLength")
    total = facets.get("totalDigits")
    fraction = facets.get("fractionDigits")
    if total is not None and fraction is not None and fraction > total:
        raise InvalidFacetRestriction(f"{label}: fractionDigits exceeds totalDigits")
    lower = facets.get("minInclusive") or facets.get("minExclusive")
    upper = facets.get("maxInclusive") or facets.get("maxExclusive")
    if lower is not None and upper is not None:
        try:
            inverted = lower.key > upper.key
        except TypeError:
            inverted = False
        if inverted:
            raise InvalidFacetRestriction(f"{label}: lower bound exceeds upper bound")


def effective_facets(type_def: TypeDefinition) -> Dict[str, Any]:
    """Facets in force for ``type_def`` after inheritance down the chain."""
    if isinstance(type_def, ComplexType):
        if type_def.simple_type is None:
            return {}
        type_def = type_def.simple_type
    return dict(type_def.facets)


# ---------------------------------------------------------------------------
# Value validation
# ---------------------------------------------------------------------------


def validate_value(
    lexical: str,
    simple_type: SimpleType,
    namespaces: Optional[Mapping[Optional[str], str]] = None,
) -> NormalizedValue:
    """Validate ``lexical`` against ``simple_type``.

    Raises:
        FacetViolation: If the string is not in the lexical space or a facet
            rejects the value (``facet`` names the failing check).
    """
    namespaces = namespaces or {}
    if simple_type.variety == "union":
        return _validate_union(lexical, simple_type, namespaces)

    text = normalize_whitespace(lexical, simple_type.white_space)
    if simple_type.variety == "list":
        item_type = simple_type.list_item_type
        values = []
        keys = []
        items = text.split(" ") if text else []
        for index, item in enumerate(items, 1):
            try:
                result = validate_value(item, item_type, namespaces)
            except FacetViolation as exc:
                raise FacetViolation(
                    f"List item {index} of {simple_type.display_name}: {exc.message}",
                    exc.facet,
                    exc.expected,
                    exc.actual,
                ) from exc
            values.append(result.value)
            keys.append(result.key)
        _check_facets(simple_type, text, tuple(keys), len(items))
        return NormalizedValue(text, values, tuple(keys), simple_type)

    primitive = simple_type.primitive_type
    try:
        value, key = primitive.parse(text, namespaces)
    except ValueError as exc:
        raise FacetViolation(
            f"'{text}' is not a valid value for {simple_type.display_name}: {exc}",
            "lexical",
            simple_type.display_name,
            text,
        ) from exc
    _check_facets(simple_type, text, key, primitive.measure(text, key))
    if simple_type.integer:
        value = int(value)
    return NormalizedValue(text, value, key, simple_type)


def _validate_union(
    lexical: str, simple_type: SimpleType, namespaces: Mapping[Optional[str], str]
) -> NormalizedValue:
    problems = []
    for member in simple_type.member_types:
        try:
            result = validate_value(lexical, member, namespaces)
        except FacetViolation as exc:
            problems.append(f"{member.display_name}: {exc.message}")
            continue
        _check_facets(simple_type, result.lexical, result.key, None)
        return result
    raise FacetViolation(
        f"'{lexical.strip()}' is not valid for any member of {simple_type.display_name} "
        f"({'; '.join(problems)})",
        "union",
        [m.display_name for m in simple_type.member_types],
        lexical,
    )


def _check_facets(
    simple_type: SimpleType, text: str, key: Any, length: Optional[int]
) -> None:
    facets = simple_type.facets
    name = simple_type.display_name

    for group in facets.get("pattern", ()):
        if not any(compile_pattern(p).fullmatch(text) for p in group):
            raise FacetViolation(
                f"'{text}' does not match pattern '{' | '.join(group)}' of {name}",
                "pattern",
                list(group),
                text,
            )

    enumeration = facets.get("enumeration")
    if enumeration is not None and not any(key == e.key for e in enumeration):
        raise FacetViolation(
            f"'{text}' is not one of the values allowed by {name}",
            "enumeration",
            [e.lexical for e in enumeration],
            text,
        )

    if length is not None:
        expected = facets.get("length")
        if expected is not None and length != expected:
            raise FacetViolation(
                f"Length of '{text}' is {length}, {name} requires {expected}",
                "length",
                expected,
                length,
            )
        expected = facets.get("minLength")
        if expected is not None and length < expected:
            raise FacetViolation(
                f"Length of '{text}' is {length}, {name} requires at least {expected}",
                "minLength",
                expected,
                length,
            )
        expected = facets.get("maxLength")
        if expected is not None and length > expected:
            raise FacetViolation(
                f"Length of '{text}' is {length}, {name} allows at most {expected}",
                "maxLength",
                expected,
                length,
            )

    for facet, allowed in (
        ("minInclusive", lambda v, b: v >= b),
        ("minExclusive", lambda v, b: v > b),
        ("maxInclusive", lambda v, b: v <= b),
        ("maxExclusive", lambda v, b: v < b),
    ):
        bound = facets.get(facet)
        if bound is None:
            continue
        try:
            ok = allowed(key, bound.key)
        except TypeError:
            ok = False
        if not ok:
            raise FacetViolation(
                f"'{text}' violates {facet}={bound.lexical} of {name}",
                facet,
                bound.lexical,
                text,
            )

    if "totalDigits" in facets or "fractionDigits" in facets:
        total, fraction = _digits(key)
        expected = facets.get("totalDigits")
        if expected is not None and total > expected:
            raise FacetViolation(
                f"'{text}' has {total} digits, {name} allows {expected}",
                "totalDigits",
                expected,
                total,
            )
        expected = facets.get("fractionDigits")
        if expected is not None and fraction > expected:
            raise FacetViolation(
                f"'{text}' has {fraction} fraction digits, {name} allows {expected}",
                "fractionDigits",
                expected,
                fraction,
            )


def _digits(value: Decimal) -> Tuple[int, int]:
    _, digits, exponent = Decimal(value).as_tuple()
    digits = list(digits)
    fraction = 0
    if isinstance(exponent, int):
        if exponent < 0:
            fraction = -exponent
            while fraction and digits and digits[-1] == 0:
                digits.pop()
                fraction -= 1
        else:
            digits.extend([0] * exponent)
    while len(digits) > 1 and digits[0] == 0:
        digits.pop(0)
    return max(len(digits), 1), fraction


# ---------------------------------------------------------------------------
# Value to lexical
# ---------------------------------------------------------------------------


def to_lexical(
    value: Any,
    simple_type: SimpleType,
    namespaces: Optional[MutableMapping[Optional[str], str]] = None,
) -> str:
    """Render a typed value as a lexical string of ``simple_type``.

    ``namespaces`` is the prefix map of the element receiving the value; new
    prefixes are added to it when a QName value needs one.

    Raises:
        ValueError: If the value has the wrong shape for the type.
    """
    if namespaces is None:
        namespaces = {}
    if simple_type.variety == "union":
        for member in simple_type.member_types:
            try:
                lexical = to_lexical(value, member, namespaces)
                result = validate_value(lexical, simple_type, namespaces)
            except (ValueError, FacetViolation):
                continue
            if same_value(result.value, value):
                return lexical
        raise ValueError(
            f"{value!r} is not a value of any member of {simple_type.display_name}"
        )
    if simple_type.variety == "list":
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"{simple_type.display_name} expects a list, got {value!r}")
        item_type = simple_type.list_item_type
        return " ".join(to_lexical(item, item_type, namespaces) for item in value)

    primitive = simple_type.primitive_type.name
    if primitive in ("QName", "NOTATION"):
        if not isinstance(value, str):
            raise ValueError(f"expected a QName string, got {value!r}")
        return qualify(QName.from_clark(value), namespaces)
    if simple_type.integer:
        if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
            raise ValueError(f"{simple_type.display_name} expects an integer, got {value!r}")
        if isinstance(value, Decimal) and value != value.to_integral_value():
            raise ValueError(f"{value} is not an integer")
        return str(int(value))
    return value_to_lexical(primitive, value)


def qualify(name: QName, namespaces: MutableMapping[Optional[str], str]) -> str:
    """Return ``prefix:local`` for ``name``, binding a new prefix if needed."""
    if not name.namespace:
        if namespaces.get(None):
            raise ValueError(f"cannot write unqualified name {name.local} under a default namespace")
        return name.local
    for prefix, uri in sorted(namespaces.items(), key=lambda item: item[0] or ""):
        if uri == name.namespace:
            return f"{prefix}:{name.local}" if prefix else name.local
    index = 0
    while f"ns{index}" in namespaces:
        index += 1
    namespaces[f"ns{index}"] = name.namespace
    return f"ns{index}:{name.local}"


def same_value(a: Any, b: Any) -> bool:
    """Equality that keeps booleans apart from numbers and compares lists itemwise."""
    if isinstance(a, (list, tuple)) or isinstance(b, (list, tuple)):
        if not isinstance(a, (list, tuple)) or not isinstance(b, (list, tuple)):
            return False
        return len(a) == len(b) and all(same_value(x, y) for x, y in zip(a, b))
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, float) and isinstance(b, float) and a != a and b != b:
        return True
    return a == b


# ---------------------------------------------------------------------------
# Built-in types
# ---------------------------------------------------------------------------

ANY_TYPE = ComplexType(
    xsd("anyType"),
    content_kind="mixed",
    particle=GroupParticle(
        "sequence", (WildcardParticle(NamespaceConstraint("any"), "lax", 0, None),)
    ),
    attribute_wildcard=AttributeWildcard(NamespaceConstraint("any"), "lax"),
    builtin=True,
)

ANY_SIMPLE_TYPE = SimpleType(
    xsd("anySimpleType"),
    base=ANY_TYPE,
    primitive=PRIMITIVES["anySimpleType"],
    facets={"whiteSpace": "preserve"},
    builtin=True,
)

BUILTIN_TYPES: Dict[QName, TypeDefinition] = {
    ANY_TYPE.name: ANY_TYPE,
    ANY_SIMPLE_TYPE.name: ANY_SIMPLE_TYPE,
}

for _local in PRIMITIVES:
    if _local == "anySimpleType":
        continue
    _white_space = "preserve" if _local == "string" else "collapse"
    BUILTIN_TYPES[xsd(_local)] = SimpleType(
        xsd(_local),
        base=ANY_SIMPLE_TYPE,
        primitive=PRIMITIVES[_local],
        facets={"whiteSpace": _white_space},
        fixed_facets=frozenset() if _local == "string" else frozenset({"whiteSpace"}),
        builtin=True,
    )


def _builtin(local: str, base: str, **facets: Any) -> SimpleType:
    simple_type = derive(BUILTIN_TYPES[xsd(base)], "restriction", facets, name=xsd(local))
    simple_type.builtin = True
    BUILTIN_TYPES[simple_type.name] = simple_type
    return simple_type


def _builtin_list(local: str, item: str) -> SimpleType:
    items = derive(BUILTIN_TYPES[xsd(item)], "list", anonymous=True)
    simple_type = derive(items, "restriction", {"minLength": "1"}, name=xsd(local))
    simple_type.builtin = True
    BUILTIN_TYPES[simple_type.name] = simple_type
    return simple_type


_builtin("normalizedString", "string", whiteSpace="replace")
_builtin("token", "normalizedString", whiteSpace="collapse")
_builtin("language", "token", pattern=["[a-zA-Z]{1,8}(-[a-zA-Z0-9]{1,8})*"])
_builtin("NMTOKEN", "token", pattern=[r"\c+"])
_builtin("Name", "token", pattern=[r"\i\c*"])
_builtin("NCName", "Name", pattern=[r"[\i-[:]][\c-[:]]*"])
_builtin("ID", "NCName")
_builtin("IDREF", "NCName")
_builtin("ENTITY", "NCName")
_builtin_list("NMTOKENS", "NMTOKEN")
_builtin_list("IDREFS", "IDREF")
_builtin_list("ENTITIES", "ENTITY")

_builtin("integer", "decimal", fractionDigits="0", pattern=[r"[\-+]?[0-9]+"], fixed=["fractionDigits"])
_builtin("nonPositiveInteger", "integer", maxInclusive="0")
_builtin("negativeInteger", "nonPositiveInteger", maxInclusive="-1")
_builtin("long", "integer", minInclusive="-9223372036854775808", maxInclusive="9223372036854775807")
_builtin("int", "long", minInclusive="-2147483648", maxInclusive="2147483647")
_builtin("short", "int", minInclusive="-32768", maxInclusive="32767")
_builtin("byte", "short", minInclusive="-128", maxInclusive="127")
_builtin("nonNegativeInteger", "integer", minInclusive="0")
_builtin("unsignedLong", "nonNegativeInteger", maxInclusive="18446744073709551615")
_builtin("unsignedInt", "unsignedLong", maxInclusive="4294967295")
_builtin("unsignedShort", "unsignedInt", maxInclusive="65535")
_builtin("unsignedByte", "unsignedShort", maxInclusive="255")
_builtin("positiveInteger", "nonNegativeInteger", minInclusive="1")

ID_TYPE = BUILTIN_TYPES[xsd("ID")]
IDREF_TYPE = BUILTIN_TYPES[xsd("IDREF")]


def builtin_type(local: str) -> TypeDefinition:
    """Look up a built-in type by local name (``builtin_type("int")``)."""
    return BUILTIN_TYPES[xsd(local)]
