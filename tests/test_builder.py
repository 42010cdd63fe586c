"""Tests for compiling schema documents into a SchemaModel."""

import pytest

from xsd_engine import BuildConfig, build_schema
from xsd_engine.exceptions import (
    CircularDerivation,
    CircularReference,
    DepthExceeded,
    DuplicateDeclaration,
    InvalidFacetRestriction,
    InvalidSchema,
    SchemaBuildFailed,
    UnresolvedImport,
    UnresolvedReference,
    UnsupportedFeature,
)
from xsd_engine.loaders import MappingLoader
from xsd_engine.qnames import QName
from xsd_engine.types import ComplexType

from conftest import schema_text

ORDER = "urn:example:order"


def test_fixture_schema_builds(fixtures_dir):
    model = build_schema([str(fixtures_dir / "order.xsd")])

    assert QName(ORDER, "Order") in model.elements
    assert QName("urn:example:address", "Address") in model.elements
    assert model.namespaces == (ORDER, "urn:example:address")
    sku = model.get_type("{urn:example:order}SkuType")
    assert sku.is_simple
    assert model.get_type(f"{{{ORDER}}}Quantity").integer


def test_model_tables_are_read_only(fixtures_dir):
    model = build_schema([str(fixtures_dir / "order.xsd")])
    with pytest.raises(TypeError):
        model.elements[QName(None, "x")] = None


def test_builds_are_deterministic(fixtures_dir):
    first = build_schema([str(fixtures_dir / "order.xsd")])
    second = build_schema([str(fixtures_dir / "order.xsd")])
    assert first.summary() == second.summary()


def test_duplicate_declaration_across_documents(compile_schema):
    with pytest.raises(DuplicateDeclaration):
        compile_schema(
            '<xs:include schemaLocation="other.xsd"/>'
            '<xs:element name="Item" type="xs:string"/>',
            documents={"other.xsd": schema_text('<xs:element name="Item" type="xs:int"/>')},
        )


def test_same_local_name_in_two_namespaces(compile_schema):
    model = compile_schema(
        '<xs:import namespace="urn:b" schemaLocation="b.xsd"/>'
        '<xs:element name="Item" type="xs:string"/>',
        target_namespace="urn:a",
        documents={"b.xsd": schema_text('<xs:element name="Item" type="xs:int"/>', "urn:b")},
    )
    assert model.get_element("{urn:a}Item").type.name.local == "string"
    assert model.get_element("{urn:b}Item").type.name.local == "int"


def test_circular_derivation_names_both_types(compile_schema):
    with pytest.raises(CircularDerivation) as excinfo:
        compile_schema(
            '<xs:simpleType name="A"><xs:restriction base="B"/></xs:simpleType>'
            '<xs:simpleType name="B"><xs:restriction base="A"/></xs:simpleType>'
        )
    names = {name.local for name in excinfo.value.cycle}
    assert names == {"A", "B"}
    assert "A" in str(excinfo.value) and "B" in str(excinfo.value)


def test_complex_type_cycle(compile_schema):
    with pytest.raises(CircularDerivation):
        compile_schema(
            '<xs:complexType name="A"><xs:complexContent>'
            '<xs:extension base="B"/></xs:complexContent></xs:complexType>'
            '<xs:complexType name="B"><xs:complexContent>'
            '<xs:extension base="A"/></xs:complexContent></xs:complexType>'
        )


def test_facet_loosening_is_rejected(compile_schema):
    with pytest.raises(InvalidFacetRestriction):
        compile_schema(
            '<xs:simpleType name="Small"><xs:restriction base="xs:int">'
            '<xs:maxInclusive value="100"/></xs:restriction></xs:simpleType>'
            '<xs:simpleType name="Bigger"><xs:restriction base="Small">'
            '<xs:maxInclusive value="200"/></xs:restriction></xs:simpleType>'
        )


def test_derivation_depth_limit(compile_schema):
    body = '<xs:simpleType name="N19"><xs:restriction base="xs:string"/></xs:simpleType>'
    for index in range(19):
        body += (
            f'<xs:simpleType name="N{index:02d}">'
            f'<xs:restriction base="N{index + 1:02d}"/></xs:simpleType>'
        )
    assert compile_schema(body).get_type("N00").is_simple

    with pytest.raises(DepthExceeded):
        compile_schema(body, config=BuildConfig(max_depth=10))


@pytest.mark.parametrize(
    "body",
    [
        '<xs:complexType name="T"><xs:sequence/>'
        '<xs:assert test="true()"/></xs:complexType>',
        '<xs:complexType name="T"><xs:all maxOccurs="2">'
        '<xs:element name="a" type="xs:string"/></xs:all></xs:complexType>',
        '<xs:complexType name="T"><xs:all><xs:any/></xs:all></xs:complexType>',
        '<xs:complexType name="T"><xs:all>'
        '<xs:element name="a" type="xs:string" maxOccurs="3"/></xs:all></xs:complexType>',
        '<xs:element name="E" type="xs:error"/>',
    ],
)
def test_xsd11_constructs_are_unsupported(compile_schema, body):
    with pytest.raises(UnsupportedFeature):
        compile_schema(body)


def test_unresolved_type_reference(compile_schema):
    with pytest.raises(UnresolvedReference):
        compile_schema('<xs:element name="E" type="Missing"/>')


def test_component_from_unresolved_import(compile_schema):
    with pytest.raises(UnresolvedImport):
        compile_schema(
            '<xs:import namespace="urn:gone"/>'
            '<xs:element name="E" xmlns:g="urn:gone" type="g:Thing"/>',
            target_namespace="urn:a",
        )


def test_unresolved_import_is_harmless_when_unused(compile_schema):
    model = compile_schema(
        '<xs:import namespace="urn:gone"/><xs:element name="E" type="xs:string"/>',
        target_namespace="urn:a",
    )
    assert model.unresolved_imports == ("urn:gone",)


def test_circular_substitution_group(compile_schema):
    with pytest.raises(CircularReference):
        compile_schema(
            '<xs:element name="A" type="xs:string" substitutionGroup="B"/>'
            '<xs:element name="B" type="xs:string" substitutionGroup="A"/>'
        )


def test_circular_group_reference(compile_schema):
    with pytest.raises(CircularReference):
        compile_schema(
            '<xs:group name="G"><xs:sequence><xs:group ref="H"/></xs:sequence></xs:group>'
            '<xs:group name="H"><xs:sequence><xs:group ref="G"/></xs:sequence></xs:group>'
        )


def test_keyref_to_unknown_key(compile_schema):
    with pytest.raises(UnresolvedReference):
        compile_schema(
            '<xs:element name="Root"><xs:complexType><xs:sequence>'
            '<xs:element name="ref" type="xs:string" maxOccurs="unbounded"/>'
            '</xs:sequence></xs:complexType>'
            '<xs:keyref name="r" refer="nowhere"><xs:selector xpath="ref"/>'
            '<xs:field xpath="."/></xs:keyref></xs:element>'
        )


def test_aggregate_errors_collects_everything(compile_schema):
    body = (
        '<xs:element name="A" type="xs:string"/>'
        '<xs:element name="A" type="xs:int"/>'
        '<xs:simpleType name="S"><xs:restriction base="xs:string"/></xs:simpleType>'
        '<xs:simpleType name="S"><xs:restriction base="xs:int"/></xs:simpleType>'
        '<xs:element/>'
    )
    with pytest.raises(DuplicateDeclaration):
        compile_schema(body)

    with pytest.raises(SchemaBuildFailed) as excinfo:
        compile_schema(body, config=BuildConfig(aggregate_errors=True))
    errors = excinfo.value.errors
    assert len(errors) == 3
    assert sum(isinstance(e, DuplicateDeclaration) for e in errors) == 2
    assert any(isinstance(e, InvalidSchema) for e in errors)


def test_complex_extension_appends_content(compile_schema):
    model = compile_schema(
        '<xs:complexType name="Base"><xs:sequence>'
        '<xs:element name="a" type="xs:string"/></xs:sequence>'
        '<xs:attribute name="id" type="xs:string"/></xs:complexType>'
        '<xs:complexType name="Derived"><xs:complexContent><xs:extension base="Base">'
        '<xs:sequence><xs:element name="b" type="xs:int"/></xs:sequence>'
        '<xs:attribute name="extra" type="xs:boolean"/>'
        "</xs:extension></xs:complexContent></xs:complexType>"
    )
    derived = model.get_type("Derived")
    assert isinstance(derived, ComplexType)
    assert derived.base is model.get_type("Base")
    assert derived.derivation == "extension"
    assert derived.content_kind == "element-only"
    assert [p.name.local for p in derived.particle.iter_particles() if hasattr(p, "element")] == [
        "a",
        "b",
    ]
    assert sorted(name.local for name in derived.attribute_uses) == ["extra", "id"]
    assert model.is_derived(derived, model.get_type("Base"))


RESTRICTABLE = (
    '<xs:complexType name="Base"><xs:sequence>'
    '<xs:element name="a" type="xs:string"/>'
    '<xs:element name="b" type="xs:int" minOccurs="0"/>'
    '<xs:element name="c" type="xs:decimal" minOccurs="0" maxOccurs="unbounded"/>'
    "</xs:sequence></xs:complexType>"
    '<xs:complexType name="Open"><xs:sequence>'
    '<xs:any processContents="lax" minOccurs="0" maxOccurs="unbounded"/>'
    "</xs:sequence></xs:complexType>"
)


def restricted(base, content, mixed=False):
    mixed_attribute = ' mixed="true"' if mixed else ""
    return (
        f'<xs:complexType name="Derived"{mixed_attribute}><xs:complexContent>'
        f'<xs:restriction base="{base}">{content}</xs:restriction>'
        "</xs:complexContent></xs:complexType>"
    )


def test_complex_restriction_narrows_content(compile_schema):
    model = compile_schema(
        RESTRICTABLE
        + restricted(
            "Base",
            '<xs:sequence><xs:element name="a" type="xs:token"/>'
            '<xs:element name="c" type="xs:decimal" maxOccurs="3"/></xs:sequence>',
        )
    )
    derived = model.get_type("Derived")
    assert derived.derivation == "restriction"
    assert [p.name.local for p in derived.particle.iter_particles() if hasattr(p, "element")] == [
        "a",
        "c",
    ]


def test_restriction_of_a_wildcard(compile_schema):
    model = compile_schema(
        RESTRICTABLE
        + restricted(
            "Open",
            '<xs:sequence><xs:element name="x" type="xs:int" maxOccurs="4"/></xs:sequence>',
        )
    )
    assert model.get_type("Derived").content_kind == "element-only"


def test_restriction_to_empty_content_needs_emptiable_base(compile_schema):
    model = compile_schema(RESTRICTABLE + restricted("Open", ""))
    assert model.get_type("Derived").content_kind == "empty"

    with pytest.raises(InvalidSchema, match="not emptiable"):
        compile_schema(RESTRICTABLE + restricted("Base", ""))


@pytest.mark.parametrize(
    "content",
    [
        '<xs:sequence><xs:element name="z" type="xs:int" maxOccurs="5"/></xs:sequence>',
        '<xs:sequence><xs:element name="a" type="xs:string" maxOccurs="2"/></xs:sequence>',
        '<xs:sequence><xs:element name="a" type="xs:int"/></xs:sequence>',
        '<xs:sequence><xs:element name="c" type="xs:decimal"/></xs:sequence>',
        '<xs:sequence><xs:element name="b" type="xs:int"/>'
        '<xs:element name="a" type="xs:string"/></xs:sequence>',
        '<xs:choice><xs:element name="a" type="xs:string"/>'
        '<xs:element name="b" type="xs:int"/></xs:choice>',
        '<xs:sequence><xs:element name="a" type="xs:string" nillable="true"/></xs:sequence>',
    ],
)
def test_invalid_complex_restrictions(compile_schema, content):
    with pytest.raises(InvalidSchema, match="not a valid restriction of Base"):
        compile_schema(RESTRICTABLE + restricted("Base", content))


def test_restriction_cannot_add_mixed_content(compile_schema):
    content = '<xs:sequence><xs:element name="a" type="xs:string"/></xs:sequence>'
    with pytest.raises(InvalidSchema, match="mixed"):
        compile_schema(RESTRICTABLE + restricted("Base", content, mixed=True))


def test_simple_content_extension(compile_schema):
    model = compile_schema(
        '<xs:complexType name="Price"><xs:simpleContent><xs:extension base="xs:decimal">'
        '<xs:attribute name="currency" type="xs:string" default="CAD"/>'
        "</xs:extension></xs:simpleContent></xs:complexType>"
    )
    price = model.get_type("Price")
    assert price.content_kind == "simple"
    assert price.simple_type.name.local == "decimal"
    assert price.attribute_uses[QName(None, "currency")].effective_default == "CAD"


def test_chameleon_components_take_including_namespace(compile_schema):
    model = compile_schema(
        '<xs:include schemaLocation="lib.xsd"/>'
        '<xs:element name="Code" type="t:Code"/>',
        target_namespace="urn:a",
        documents={
            "lib.xsd": schema_text(
                '<xs:simpleType name="Code"><xs:restriction base="xs:string">'
                '<xs:length value="3"/></xs:restriction></xs:simpleType>'
                '<xs:element name="Other" type="Code"/>'
            )
        },
    )
    assert model.get_type("{urn:a}Code").facets["length"] == 3
    assert model.get_element("{urn:a}Other").type is model.get_type("{urn:a}Code")


def test_redefine_extends_original(compile_schema):
    model = compile_schema(
        '<xs:redefine schemaLocation="lib.xsd">'
        '<xs:complexType name="Item"><xs:complexContent><xs:extension base="Item">'
        '<xs:sequence><xs:element name="extra" type="xs:string"/></xs:sequence>'
        "</xs:extension></xs:complexContent></xs:complexType></xs:redefine>"
        '<xs:element name="Item" type="Item"/>',
        documents={
            "lib.xsd": schema_text(
                '<xs:complexType name="Item"><xs:sequence>'
                '<xs:element name="name" type="xs:string"/></xs:sequence></xs:complexType>'
            )
        },
    )
    item = model.get_type("Item")
    assert item.base.name.local == "Item~redefined"
    names = [p.name.local for p in item.particle.iter_particles() if hasattr(p, "element")]
    assert names == ["name", "extra"]


def test_substitution_group_members(compile_schema):
    model = compile_schema(
        '<xs:element name="Shape" type="xs:string" abstract="true"/>'
        '<xs:element name="Circle" type="xs:string" substitutionGroup="Shape"/>'
        '<xs:element name="Square" type="xs:string" substitutionGroup="Shape"/>'
    )
    head = model.get_element("Shape")
    assert [m.name.local for m in model.substitutes(head)] == ["Circle", "Square"]
    assert model.substitution_groups[QName(None, "Shape")] == (
        QName(None, "Circle"),
        QName(None, "Square"),
    )


def test_invalid_fixed_value_on_element(compile_schema):
    with pytest.raises(InvalidSchema):
        compile_schema('<xs:element name="N" type="xs:int" fixed="abc"/>')


def test_build_from_mapping_loader():
    loader = MappingLoader({"s.xsd": schema_text('<xs:element name="E" type="xs:date"/>')})
    model = build_schema(["s.xsd"], loader)
    assert list(model.elements) == [QName(None, "E")]
