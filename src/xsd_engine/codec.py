"""Convert validated XML to plain Python data and back.

Decoding walks the annotated tree produced by :func:`~xsd_engine.validator.validate`
and relies on the content model, not on the document, to pick the shape of
each value:

* attributes go under ``"@" + name``,
* simple content goes under ``"$"`` when the element also has attributes
  (otherwise the element decodes to the bare typed value),
* child elements are keyed by local name (Clark notation when two names in
  the content model share a local name, or for wildcard matches from a
  namespace),
* a key whose particles allow more than one occurrence is always a list,
  present even when empty,
* ``"$order"`` lists child keys in document order when it differs from the
  order the content model would produce.

Encoding is the inverse. It builds an :class:`~xsd_engine.nodetree.XmlNode`
tree, validates it and decodes it again; a tree that does not decode back to
the input raises :class:`~xsd_engine.exceptions.ShapeMismatch`. Values are
written in canonical lexical form (``007`` comes back as ``7``), so a decode
and encode round trip is equal under :func:`documents_equivalent`, not
byte for byte.

Example:
    outcome = validate(model, xml_bytes)
    data = decode(outcome)
    node = encode(data, model, "{urn:shop}order")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import ContentModelViolation, EncodeError, ShapeMismatch
from .matcher import ContentModelMatcher
from .model import ElementDeclaration, SchemaModel
from .nodetree import XmlNode, nodes_equal
from .particles import ElementParticle, Particle, WildcardParticle
from .qnames import XSI_NAMESPACE, QName, as_qname, xsi
from .types import (
    ANY_SIMPLE_TYPE,
    ANY_TYPE,
    ComplexType,
    SimpleType,
    TypeDefinition,
    qualify,
    same_value,
    to_lexical,
)
from .validator import AnnotatedElement, ValidationOptions, ValidationOutcome, as_node, validate

XSI_PREFIX = "xsi:"
_MISSING = object()


@dataclass
class DecodeOptions:
    """Key conventions shared by :func:`decode` and :func:`encode`.

    Attributes:
        fill_defaults: Also emit attributes that were absent in the document
            and filled in from a schema default or fixed value, and the
            default or fixed value of empty elements. Without it an empty
            element that took its declaration's default decodes as ``""``,
            which encodes back to an empty element.
    """

    attribute_prefix: str = "@"
    text_key: str = "$"
    order_key: str = "$order"
    fill_defaults: bool = False


def _mul(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None or b is None:
        return None
    return a * b


def _add(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None or b is None:
        return None
    return a + b


def _max(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None or b is None:
        return None
    return max(a, b)


def _repeatable(count: Optional[int]) -> bool:
    return count is None or count > 1


def wildcard_key(name: QName) -> str:
    return name.local if not name.namespace else name.clark


def _key_name(key: str) -> QName:
    if key.startswith("{"):
        return QName.from_clark(key)
    return QName(None, key)


@dataclass
class _Shape:
    """Key layout of one content model."""

    keys: Dict[str, bool] = field(default_factory=dict)
    declarations: Dict[str, ElementDeclaration] = field(default_factory=dict)
    key_of: Dict[QName, str] = field(default_factory=dict)
    wildcards: List[Tuple[WildcardParticle, bool]] = field(default_factory=list)
    rank: Dict[Any, int] = field(default_factory=dict)

    def wildcard_for(self, name: QName) -> Optional[Tuple[WildcardParticle, bool]]:
        for particle, repeatable in self.wildcards:
            if particle.constraint.allows(name.namespace):
                return particle, repeatable
        return None

    def rank_of(self, key: str) -> int:
        if key in self.rank:
            return self.rank[key]
        found = self.wildcard_for(_key_name(key))
        if found is not None:
            return self.rank[id(found[0])]
        return len(self.rank)


class _ShapeBuilder:
    def __init__(self, model: Optional[SchemaModel]) -> None:
        self.model = model

    def build(self, particle: Optional[Particle]) -> _Shape:
        shape = _Shape()
        if particle is None:
            return shape
        order: List[Any] = []
        declarations: Dict[QName, ElementDeclaration] = {}
        wildcard_max: Dict[int, Optional[int]] = {}
        counts = self._walk(particle, 1, order, declarations, wildcard_max)

        by_local: Dict[str, set] = {}
        for name in declarations:
            by_local.setdefault(name.local, set()).add(name)
        for name in declarations:
            shape.key_of[name] = name.local if len(by_local[name.local]) == 1 else name.clark
        for item in order:
            if isinstance(item, WildcardParticle):
                shape.rank[id(item)] = len(shape.rank)
                shape.wildcards.append((item, _repeatable(wildcard_max[id(item)])))
                continue
            key = shape.key_of[item]
            if key in shape.keys:
                continue
            shape.rank[key] = len(shape.rank)
            shape.keys[key] = _repeatable(counts[item])
            shape.declarations[key] = declarations[item]
        return shape

    def _walk(self, particle, outer, order, declarations, wildcard_max) -> Dict[QName, Optional[int]]:
        if isinstance(particle, ElementParticle):
            counts: Dict[QName, Optional[int]] = {}
            candidates = [particle.element]
            if self.model is not None:
                candidates.extend(self.model.substitutes(particle.element))
            for declaration in candidates:
                declarations.setdefault(declaration.name, declaration)
                if declaration.name not in order:
                    order.append(declaration.name)
                counts[declaration.name] = particle.max_occurs
            return counts
        if isinstance(particle, WildcardParticle):
            order.append(particle)
            wildcard_max[id(particle)] = _mul(outer, particle.max_occurs)
            return {}
        combined: Dict[QName, Optional[int]] = {}
        inner_outer = _mul(outer, particle.max_occurs)
        for child in particle.particles:
            child_counts = self._walk(child, inner_outer, order, declarations, wildcard_max)
            for name, count in child_counts.items():
                if name not in combined:
                    combined[name] = count
                elif particle.compositor == "choice":
                    combined[name] = _max(combined[name], count)
                else:
                    combined[name] = _add(combined[name], count)
        return {name: _mul(count, particle.max_occurs) for name, count in combined.items()}


class Decoder:
    """Turns annotated trees into dicts, lists and typed scalars."""

    def __init__(self, options: Optional[DecodeOptions] = None) -> None:
        self.options = options or DecodeOptions()
        self._shapes: Dict[int, _Shape] = {}

    def shape(self, model: Optional[SchemaModel], particle: Optional[Particle]) -> _Shape:
        key = id(particle)
        if key not in self._shapes:
            self._shapes[key] = _ShapeBuilder(model).build(particle)
        return self._shapes[key]

    def decode(self, element: AnnotatedElement, model: Optional[SchemaModel]) -> Any:
        self.model = model
        return self._element(element)

    def _attributes(self, element: AnnotatedElement) -> Dict[str, Any]:
        prefix = self.options.attribute_prefix
        result: Dict[str, Any] = {}
        node = element.node
        for name, raw in node.attributes.items():
            if name.namespace != XSI_NAMESPACE or name.local == "nil":
                continue
            if name.local == "type" and element.type is not None:
                result[f"{prefix}{XSI_PREFIX}type"] = element.type.name.clark
            else:
                result[f"{prefix}{XSI_PREFIX}{name.local}"] = raw
        for name, attribute in element.attributes.items():
            if attribute.defaulted and not self.options.fill_defaults:
                continue
            value = attribute.value.value if attribute.value is not None else attribute.lexical
            result[prefix + wildcard_key(name)] = value
        return result

    def _element(self, element: AnnotatedElement) -> Any:
        options = self.options
        result = self._attributes(element)
        if element.nil:
            if result:
                result[options.text_key] = None
                return result
            return None
        type_def = element.type
        if type_def is None:
            return self._untyped(element.node)
        if type_def.is_simple or type_def.content_kind == "simple":
            if element.defaulted and not options.fill_defaults:
                value: Any = ""
            else:
                value = element.value.value if element.value is not None else None
            if result:
                result[options.text_key] = value
                return result
            return value
        if type_def.content_kind == "empty":
            return result

        shape = self.shape(self.model, type_def.particle)
        for key, repeatable in shape.keys.items():
            if repeatable:
                result[key] = []
        document_keys = []
        for child in element.children:
            key, repeatable = self._child_key(shape, child)
            document_keys.append(key)
            value = self._element(child)
            if repeatable:
                result.setdefault(key, []).append(value)
            else:
                result[key] = value
        canonical = sorted(document_keys, key=shape.rank_of)
        if canonical != document_keys:
            result[options.order_key] = document_keys
        if type_def.content_kind == "mixed":
            text = _mixed_text(element.node)
            if text is None and element.defaulted and options.fill_defaults:
                text = element.declaration.value_constraint[1]
            if text is not None:
                result[options.text_key] = text
        return result

    def _child_key(self, shape: _Shape, child: AnnotatedElement) -> Tuple[str, bool]:
        particle = child.particle
        if isinstance(particle, ElementParticle) and child.qname in shape.key_of:
            key = shape.key_of[child.qname]
            return key, shape.keys[key]
        key = wildcard_key(child.qname)
        if isinstance(particle, WildcardParticle):
            for wildcard, repeatable in shape.wildcards:
                if wildcard is particle:
                    return key, repeatable
        return key, True

    def _untyped(self, node: XmlNode) -> Any:
        prefix = self.options.attribute_prefix
        if not node.attributes and not node.children:
            return node.text or ""
        result: Dict[str, Any] = {
            prefix + wildcard_key(name): value for name, value in node.attributes.items()
        }
        for child in node.children:
            result.setdefault(wildcard_key(child.qname), []).append(self._untyped(child))
        text = _mixed_text(node)
        if text is not None:
            result[self.options.text_key] = text
        return result


def _mixed_text(node: XmlNode) -> Any:
    segments = [node.text or ""] + [child.tail or "" for child in node.children]
    if not any(segment.strip() for segment in segments):
        return None
    if not any(segments[1:]):
        return segments[0]
    return segments


def decode(
    source, options: Optional[DecodeOptions] = None, model: Optional[SchemaModel] = None
) -> Any:
    """Decode a validation result into plain data.

    Args:
        source: A :class:`~xsd_engine.validator.Valid` outcome or an
            :class:`~xsd_engine.validator.AnnotatedElement`.
        model: Needed only to lay out substitution group members; taken from
            the outcome when omitted.

    Raises:
        ValueError: If ``source`` is an invalid outcome.
    """
    if isinstance(source, ValidationOutcome):
        if not source.valid:
            raise ValueError(
                f"Cannot decode an invalid document ({len(source.violations)} violation(s))"
            )
        model = model or source.model
        source = source.tree
    return Decoder(options).decode(source, model)


class Encoder:
    """Builds node trees from plain data for one model."""

    def __init__(self, model: SchemaModel, options: Optional[DecodeOptions] = None) -> None:
        self.model = model
        self.options = options or DecodeOptions()
        self._decoder = Decoder(self.options)
        self._matcher = ContentModelMatcher(model)

    def encode(self, data: Any, target) -> XmlNode:
        name = as_qname(target)
        declaration = self.model.elements.get(name)
        if declaration is None:
            raise EncodeError(f"No global element declaration for {name}")
        self._namespaces: Dict[Optional[str], str] = {}
        root = self._element(declaration, data, "/" + name.local)

        outcome = validate(
            self.model, root, ValidationOptions(), name
        )
        if not outcome:
            first = outcome.violations[0]
            raise EncodeError(
                f"Encoded document is not valid: {first}", str(first.location.path)
            )
        decoded = self._decoder.decode(outcome.tree, self.model)
        if not _same_data(decoded, data, self.options):
            raise ShapeMismatch(f"Encoded {name} does not decode back to the input value")
        return root

    # ------------------------------------------------------------------

    def _bind(self, name: QName) -> None:
        if name.namespace and name.namespace not in self._namespaces.values():
            qualify(name, self._namespaces)

    def _node(self, name: QName) -> XmlNode:
        self._bind(name)
        return XmlNode(name, namespaces=self._namespaces)

    def _element(self, declaration: ElementDeclaration, value: Any, path: str) -> XmlNode:
        options = self.options
        node = self._node(declaration.name)
        type_def: TypeDefinition = declaration.type or ANY_TYPE
        attributes: Dict[str, Any] = {}
        content = value
        if isinstance(value, dict):
            attributes = {k: v for k, v in value.items() if k.startswith(options.attribute_prefix)}
            type_key = f"{options.attribute_prefix}{XSI_PREFIX}type"
            if type_key in attributes:
                try:
                    type_def = self.model.get_type(attributes[type_key])
                except (KeyError, ValueError) as exc:
                    raise ShapeMismatch(f"{path}: unknown xsi:type {attributes[type_key]!r}") from exc
                self._namespaces.setdefault("xsi", XSI_NAMESPACE)
                node.attributes[xsi("type")] = qualify(type_def.name, self._namespaces)

        simple = type_def.is_simple or type_def.content_kind == "simple"
        if isinstance(value, dict):
            if options.text_key in value and value[options.text_key] is None and (
                simple or declaration.nillable
            ):
                content = None
            elif simple:
                content = value.get(options.text_key, _MISSING)
        if content is None:
            if not declaration.nillable:
                raise ShapeMismatch(f"{path}: None given but {declaration.name} is not nillable")
            self._namespaces.setdefault("xsi", XSI_NAMESPACE)
            node.attributes[xsi("nil")] = "true"
            self._encode_attributes(node, type_def, attributes, path)
            return node

        self._encode_attributes(node, type_def, attributes, path)
        if simple:
            simple_type = type_def if type_def.is_simple else type_def.simple_type
            if isinstance(content, str) and content == "" and declaration.value_constraint:
                return node
            if content is not _MISSING:
                node.text = self._lexical(content, simple_type, path)
            return node
        if not isinstance(value, dict):
            raise ShapeMismatch(
                f"{path}: {declaration.name} has complex content and needs a mapping, "
                f"got {type(value).__name__}"
            )
        if type_def.content_kind != "empty":
            self._encode_children(node, type_def, value, path)
        return node

    def _lexical(self, value: Any, simple_type: SimpleType, path: str) -> str:
        try:
            return to_lexical(value, simple_type, self._namespaces)
        except ValueError as exc:
            raise EncodeError(f"{path}: {exc}", path) from exc

    def _encode_attributes(
        self, node: XmlNode, type_def: TypeDefinition, attributes: Dict[str, Any], path: str
    ) -> None:
        prefix = self.options.attribute_prefix
        uses = type_def.attribute_uses if isinstance(type_def, ComplexType) else {}
        wildcard = type_def.attribute_wildcard if isinstance(type_def, ComplexType) else None
        for key, value in attributes.items():
            local = key[len(prefix):]
            if local.startswith(XSI_PREFIX):
                if local == f"{XSI_PREFIX}type":
                    continue
                self._namespaces.setdefault("xsi", XSI_NAMESPACE)
                node.attributes[xsi(local[len(XSI_PREFIX):])] = str(value)
                continue
            name = _key_name(local)
            use = uses.get(name)
            if use is not None:
                simple_type = use.type
            elif wildcard is not None and wildcard.constraint.allows(name.namespace):
                declaration = self.model.attributes.get(name)
                simple_type = declaration.type if declaration is not None else ANY_SIMPLE_TYPE
            else:
                raise ShapeMismatch(f"{path}: attribute {name} is not allowed")
            if value is None:
                raise ShapeMismatch(f"{path}/@{local}: attribute values cannot be None")
            self._bind(name)
            node.attributes[name] = self._lexical(value, simple_type, f"{path}/@{local}")

    def _encode_children(
        self, node: XmlNode, type_def: ComplexType, value: Dict[str, Any], path: str
    ) -> None:
        options = self.options
        shape = self._decoder.shape(self.model, type_def.particle)
        items: Dict[str, List[Any]] = {}
        targets: Dict[str, Tuple[Optional[ElementDeclaration], Optional[WildcardParticle]]] = {}
        for key, item in value.items():
            if key.startswith(options.attribute_prefix) or key in (options.text_key, options.order_key):
                continue
            if key in shape.keys:
                repeatable = shape.keys[key]
                targets[key] = (shape.declarations[key], None)
            else:
                found = shape.wildcard_for(_key_name(key))
                if found is None:
                    raise ShapeMismatch(f"{path}: unexpected key '{key}'")
                wildcard, repeatable = found
                targets[key] = (None, wildcard)
            if repeatable:
                if not isinstance(item, list):
                    raise ShapeMismatch(
                        f"{path}/{key}: expected a list, got {type(item).__name__}"
                    )
                items[key] = list(item)
            else:
                items[key] = [item]

        order = value.get(options.order_key)
        if order is None:
            order = []
            for key in sorted(items, key=shape.rank_of):
                order.extend([key] * len(items[key]))
        else:
            expected = {key: len(entries) for key, entries in items.items() if entries}
            counted: Dict[str, int] = {}
            for key in order:
                counted[key] = counted.get(key, 0) + 1
            if counted != expected:
                raise ShapeMismatch(f"{path}: '{options.order_key}' does not match the child keys")

        cursors = {key: 0 for key in items}
        for key in order:
            entry = items[key][cursors[key]]
            cursors[key] += 1
            child_path = f"{path}/{key}"
            declaration, wildcard = targets[key]
            if declaration is None:
                child = self._wildcard_child(_key_name(key), wildcard, entry, child_path)
            else:
                child = self._element(declaration, entry, child_path)
            node.append(child)

        names = [child.qname for child in node.children]
        try:
            self._matcher.match(type_def.particle, names)
        except ContentModelViolation as exc:
            raise ShapeMismatch(f"{path}: {exc.message}") from exc

        if type_def.content_kind == "mixed":
            self._mixed_text(node, value.get(options.text_key), path)
        elif value.get(options.text_key) is not None:
            raise ShapeMismatch(f"{path}: element-only content cannot carry text")

    def _wildcard_child(
        self, name: QName, wildcard: WildcardParticle, value: Any, path: str
    ) -> XmlNode:
        if wildcard.process_contents != "skip":
            declaration = self.model.elements.get(name)
            if declaration is not None:
                return self._element(declaration, value, path)
            if wildcard.process_contents == "strict":
                raise EncodeError(f"{path}: no global declaration for {name}", path)
            return self._element(ElementDeclaration(name, ANY_TYPE, scope="local"), value, path)
        return self._untyped(name, value, path)

    def _untyped(self, name: QName, value: Any, path: str) -> XmlNode:
        node = self._node(name)
        if not isinstance(value, dict):
            node.text = "" if value is None else str(value)
            return node
        prefix = self.options.attribute_prefix
        for key, item in value.items():
            if key.startswith(prefix):
                attribute = _key_name(key[len(prefix):])
                self._bind(attribute)
                node.attributes[attribute] = str(item)
            elif key == self.options.text_key:
                continue
            else:
                if not isinstance(item, list):
                    raise ShapeMismatch(f"{path}/{key}: expected a list")
                for entry in item:
                    node.append(self._untyped(_key_name(key), entry, f"{path}/{key}"))
        self._mixed_text(node, value.get(self.options.text_key), path)
        return node

    def _mixed_text(self, node: XmlNode, text: Any, path: str) -> None:
        if text is None:
            return
        if isinstance(text, str):
            node.text = text
            return
        if not isinstance(text, list) or len(text) != len(node.children) + 1:
            raise ShapeMismatch(
                f"{path}: mixed text must be a string or {len(node.children) + 1} segments"
            )
        node.text = text[0] or None
        for child, segment in zip(node.children, text[1:]):
            child.tail = segment or None


def _same_data(decoded: Any, original: Any, options: DecodeOptions) -> bool:
    if isinstance(decoded, dict) and isinstance(original, dict):
        keys = (set(decoded) | set(original)) - {options.order_key}
        for key in keys:
            a = decoded.get(key, _MISSING)
            b = original.get(key, _MISSING)
            if a is _MISSING:
                a, b = b, a
            if b is _MISSING:
                if a == []:
                    continue
                return False
            if not _same_data(a, b, options):
                return False
        return True
    if isinstance(decoded, list) and isinstance(original, list):
        return len(decoded) == len(original) and all(
            _same_data(a, b, options) for a, b in zip(decoded, original)
        )
    if isinstance(decoded, (dict, list)) or isinstance(original, (dict, list)):
        return False
    return same_value(decoded, original)


def documents_equivalent(first, second, model: SchemaModel, root_element=None) -> bool:
    """Compare two instances in value space.

    Decoding keeps typed values, not their lexical forms, so ``<n>007</n>``
    encodes back as ``<n>7</n>``. This is the equality such a round trip
    preserves: same element names and types, equal typed values (``1`` and
    ``true`` for a boolean), equal attributes that were present in the
    document. Documents that do not validate fall back to
    :func:`~xsd_engine.nodetree.nodes_equal`.
    """
    options = ValidationOptions(collect_identity_constraints=False)
    a = validate(model, as_node(first), options, root_element)
    b = validate(model, as_node(second), options, root_element)
    if not a or not b:
        return nodes_equal(as_node(first), as_node(second))
    return _equivalent(a.tree, b.tree)


def _equivalent(a: AnnotatedElement, b: AnnotatedElement) -> bool:
    if a.qname != b.qname or a.type is not b.type or a.nil != b.nil:
        return False
    if _attribute_keys(a) != _attribute_keys(b):
        return False
    if a.type is None:
        return nodes_equal(a.node, b.node)
    if a.defaulted or b.defaulted:
        return a.defaulted == b.defaulted
    if a.value is not None or b.value is not None:
        return a.value is not None and b.value is not None and a.value.key == b.value.key
    if a.type.content_kind == "mixed" and _mixed_text(a.node) != _mixed_text(b.node):
        return False
    return len(a.children) == len(b.children) and all(
        _equivalent(x, y) for x, y in zip(a.children, b.children)
    )


def _attribute_keys(element: AnnotatedElement) -> Dict[QName, Any]:
    return {
        name: attribute.value.key if attribute.value is not None else attribute.lexical
        for name, attribute in element.attributes.items()
        if not attribute.defaulted
    }


def encode(
    data: Any, model: SchemaModel, target_qname, options: Optional[DecodeOptions] = None
) -> XmlNode:
    """Encode ``data`` as an instance of the global element ``target_qname``.

    Raises:
        ShapeMismatch: If ``data`` does not fit the content model, or the
            result would not decode back to ``data``.
        EncodeError: For values a type cannot represent, or an encoded tree
            that fails validation.
    """
    return Encoder(model, options).encode(data, target_qname)
