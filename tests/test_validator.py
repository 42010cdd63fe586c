"""Tests for instance validation."""

import xml.etree.ElementTree as ET

import pytest

from xsd_engine import Invalid, Valid, ValidationOptions, build_schema, validate
from xsd_engine.exceptions import MalformedDocument
from xsd_engine.validator import ElementState

XSI = 'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"'

LIBRARY = (
    '<xs:element name="library"><xs:complexType><xs:sequence>'
    '<xs:element name="book" maxOccurs="unbounded"><xs:complexType><xs:sequence>'
    '<xs:element name="title" type="xs:string"/>'
    '<xs:element name="year" type="xs:gYear" nillable="true"/>'
    "</xs:sequence>"
    '<xs:attribute name="isbn" type="xs:string" use="required"/>'
    "</xs:complexType></xs:element>"
    '<xs:element name="loan" minOccurs="0" maxOccurs="unbounded"><xs:complexType>'
    '<xs:attribute name="book" type="xs:string" use="required"/>'
    "</xs:complexType></xs:element>"
    "</xs:sequence></xs:complexType>"
    '<xs:key name="bookKey"><xs:selector xpath="book"/><xs:field xpath="@isbn"/></xs:key>'
    '<xs:keyref name="loanRef" refer="bookKey"><xs:selector xpath="loan"/>'
    '<xs:field xpath="@book"/></xs:keyref>'
    "</xs:element>"
)


def kinds(outcome):
    return [violation.kind for violation in outcome.violations]


@pytest.fixture
def order_model(fixtures_dir):
    return build_schema([str(fixtures_dir / "order.xsd")])


@pytest.fixture
def library_model(compile_schema):
    return compile_schema(LIBRARY)


def test_fixture_document_is_valid(order_model, fixtures_dir):
    outcome = validate(order_model, (fixtures_dir / "order.xml").read_bytes())

    assert isinstance(outcome, Valid)
    assert outcome
    assert outcome.violations == []
    assert outcome.model is order_model
    assert outcome.tree.state is ElementState.DONE
    status = [a for name, a in outcome.tree.attributes.items() if name.local == "status"][0]
    assert status.defaulted
    assert status.value.value == "open"


def test_validate_accepts_element_tree(order_model, fixtures_dir):
    tree = ET.parse(fixtures_dir / "order.xml")
    assert validate(order_model, tree)
    assert validate(order_model, tree.getroot())


def test_facet_violation_reports_path(order_model):
    document = (
        '<o:Order xmlns:o="urn:example:order" number="1">'
        "<o:customer>ACME</o:customer>"
        '<o:item id="i1"><o:sku>ABC-1234</o:sku><o:quantity>5000</o:quantity>'
        "<o:price>1</o:price></o:item>"
        '<o:item id="i2"><o:sku>bad</o:sku><o:quantity>1</o:quantity>'
        "<o:price>1</o:price></o:item>"
        "</o:Order>"
    )
    outcome = validate(order_model, document)

    assert isinstance(outcome, Invalid)
    assert kinds(outcome) == ["facet", "facet"]
    first, second = outcome.violations
    assert first.location.path == "/Order/item[1]/quantity"
    assert second.location.path == "/Order/item[2]/sku"
    assert first.location.line == 1
    assert second.to_dict()["expected"] == ["[A-Z]{3}-\\d{4}"]


def test_content_model_violation(order_model):
    document = (
        '<o:Order xmlns:o="urn:example:order" number="1">'
        "<o:note>late</o:note><o:customer>ACME</o:customer>"
        "</o:Order>"
    )
    outcome = validate(order_model, document)
    assert not outcome
    violation = outcome.violations[0]
    assert violation.kind == "unexpected_element"
    assert violation.location.path == "/Order/note"
    assert "{urn:example:order}customer" in violation.expected


def test_missing_required_attribute(order_model):
    outcome = validate(
        order_model, '<o:Order xmlns:o="urn:example:order"><o:customer>x</o:customer></o:Order>'
    )
    assert kinds(outcome) == ["missing_attribute"]
    assert outcome.violations[0].expected == "number"


def test_undeclared_attribute_and_bad_enumeration(order_model):
    outcome = validate(
        order_model,
        '<o:Order xmlns:o="urn:example:order" number="1" status="lost" color="red">'
        "<o:customer>x</o:customer></o:Order>",
    )
    assert sorted(kinds(outcome)) == ["facet", "unexpected_attribute"]


def test_duplicate_unique_value(order_model):
    item = '<o:item id="{}"><o:sku>ABC-1234</o:sku><o:quantity>1</o:quantity><o:price>1</o:price></o:item>'
    document = (
        '<o:Order xmlns:o="urn:example:order" number="1"><o:customer>x</o:customer>'
        + item.format("i1")
        + item.format("i2")
        + "</o:Order>"
    )
    outcome = validate(order_model, document)
    assert kinds(outcome) == ["identity_constraint"]
    assert outcome.violations[0].location.path == "/Order/item[2]"


def test_duplicate_id(order_model):
    item = '<o:item id="same"><o:sku>{}</o:sku><o:quantity>1</o:quantity><o:price>1</o:price></o:item>'
    document = (
        '<o:Order xmlns:o="urn:example:order" number="1"><o:customer>x</o:customer>'
        + item.format("ABC-0001")
        + item.format("ABC-0002")
        + "</o:Order>"
    )
    assert kinds(validate(order_model, document)) == ["duplicate_id"]


def test_unknown_root_and_expected_root(order_model):
    outcome = validate(order_model, "<Unknown/>")
    assert kinds(outcome) == ["unknown_element"]
    assert outcome.tree.state is ElementState.FAILED

    outcome = validate(
        order_model,
        '<a:Address xmlns:a="urn:example:address"><a:street>s</a:street><a:city>c</a:city></a:Address>',
        root_element="{urn:example:order}Order",
    )
    assert kinds(outcome) == ["unexpected_root"]


def test_fail_fast_stops_at_first_violation(order_model):
    document = (
        '<o:Order xmlns:o="urn:example:order" number="x" status="lost">'
        "<o:customer>x</o:customer></o:Order>"
    )
    assert len(validate(order_model, document).violations) == 2
    outcome = validate(order_model, document, ValidationOptions(fail_fast=True))
    assert len(outcome.violations) == 1


def test_malformed_document_raises(order_model):
    with pytest.raises(MalformedDocument):
        validate(order_model, "<o:Order xmlns:o='urn:example:order'>")


def test_key_and_keyref(library_model):
    valid = (
        '<library><book isbn="1"><title>A</title><year>2001</year></book>'
        '<book isbn="2"><title>B</title><year>1999</year></book>'
        '<loan book="2"/></library>'
    )
    assert validate(library_model, valid)

    dangling = valid.replace('<loan book="2"/>', '<loan book="3"/>')
    outcome = validate(library_model, dangling)
    assert kinds(outcome) == ["identity_constraint"]
    assert outcome.violations[0].location.path == "/library/loan"

    duplicate = valid.replace('isbn="2"', 'isbn="1"').replace('book="2"', 'book="1"')
    assert kinds(validate(library_model, duplicate)) == ["identity_constraint"]


def test_identity_checks_can_be_disabled(library_model):
    dangling = (
        '<library><book isbn="1"><title>A</title><year>2001</year></book>'
        '<loan book="3"/></library>'
    )
    options = ValidationOptions(collect_identity_constraints=False)
    assert validate(library_model, dangling, options)


def test_nil(library_model):
    document = (
        f"<library {XSI}><book isbn=\"1\"><title>A</title>"
        '<year xsi:nil="true"/></book></library>'
    )
    outcome = validate(library_model, document)
    assert outcome
    year = outcome.tree.children[0].children[1]
    assert year.nil

    with_content = document.replace('<year xsi:nil="true"/>', '<year xsi:nil="true">2001</year>')
    assert kinds(validate(library_model, with_content)) == ["nil_content"]

    not_nillable = document.replace(
        '<year xsi:nil="true"/>', "<year>2001</year>"
    ).replace("<title>A</title>", '<title xsi:nil="true"/>')
    assert "not_nillable" in kinds(validate(library_model, not_nillable))


XSI_TYPES = (
    '<xs:complexType name="Vehicle"><xs:sequence>'
    '<xs:element name="wheels" type="xs:int"/></xs:sequence></xs:complexType>'
    '<xs:complexType name="Truck"><xs:complexContent><xs:extension base="Vehicle">'
    '<xs:sequence><xs:element name="load" type="xs:decimal"/></xs:sequence>'
    "</xs:extension></xs:complexContent></xs:complexType>"
    '<xs:complexType name="Boat"><xs:sequence>'
    '<xs:element name="sails" type="xs:int"/></xs:sequence></xs:complexType>'
    '<xs:element name="vehicle" type="Vehicle"/>'
    '<xs:element name="sealed" type="Vehicle" block="extension"/>'
)


def test_xsi_type_selects_derived_type(compile_schema):
    model = compile_schema(XSI_TYPES)
    document = f'<vehicle {XSI} xsi:type="Truck"><wheels>6</wheels><load>1.5</load></vehicle>'
    outcome = validate(model, document)
    assert outcome
    assert outcome.tree.type is model.get_type("Truck")

    # without xsi:type the extra element is not allowed
    assert not validate(model, "<vehicle><wheels>6</wheels><load>1.5</load></vehicle>")


def test_xsi_type_must_derive_and_not_be_blocked(compile_schema):
    model = compile_schema(XSI_TYPES)
    unrelated = f'<vehicle {XSI} xsi:type="Boat"><sails>2</sails></vehicle>'
    assert "invalid_xsi_type" in kinds(validate(model, unrelated))

    unknown = f'<vehicle {XSI} xsi:type="Plane"><wheels>3</wheels></vehicle>'
    assert kinds(validate(model, unknown)) == ["invalid_xsi_type"]

    blocked = f'<sealed {XSI} xsi:type="Truck"><wheels>6</wheels><load>1</load></sealed>'
    assert "blocked_type" in kinds(validate(model, blocked))


def test_abstract_element_and_substitution(compile_schema):
    model = compile_schema(
        '<xs:element name="shape" type="xs:string" abstract="true"/>'
        '<xs:element name="circle" type="xs:string" substitutionGroup="shape"/>'
        '<xs:element name="drawing"><xs:complexType><xs:sequence>'
        '<xs:element ref="shape" maxOccurs="unbounded"/>'
        "</xs:sequence></xs:complexType></xs:element>"
    )
    outcome = validate(model, "<drawing><circle>r=1</circle><circle>r=2</circle></drawing>")
    assert outcome
    assert outcome.tree.children[0].declaration.name.local == "circle"

    assert kinds(validate(model, "<drawing><shape>x</shape></drawing>")) == ["abstract_element"]


def test_fixed_and_default_element_values(compile_schema):
    model = compile_schema(
        '<xs:element name="config"><xs:complexType><xs:sequence>'
        '<xs:element name="version" type="xs:int" fixed="2"/>'
        '<xs:element name="mode" type="xs:string" default="auto"/>'
        "</xs:sequence></xs:complexType></xs:element>"
    )
    outcome = validate(model, "<config><version>2</version><mode/></config>")
    assert outcome
    mode = outcome.tree.children[1]
    assert mode.defaulted
    assert mode.value.value == "auto"

    assert kinds(validate(model, "<config><version>3</version><mode/></config>")) == [
        "fixed_mismatch"
    ]


def test_unexpected_text_in_element_only_content(library_model):
    outcome = validate(
        library_model,
        '<library>stray<book isbn="1"><title>A</title><year>2001</year></book></library>',
    )
    assert kinds(outcome) == ["unexpected_text"]


def test_mixed_content_allows_text(compile_schema):
    model = compile_schema(
        '<xs:element name="p"><xs:complexType mixed="true"><xs:sequence>'
        '<xs:element name="b" type="xs:string" minOccurs="0" maxOccurs="unbounded"/>'
        "</xs:sequence></xs:complexType></xs:element>"
    )
    assert validate(model, "<p>Hello <b>bold</b> world</p>")


def test_wildcard_processing(compile_schema):
    model = compile_schema(
        '<xs:element name="known" type="xs:int"/>'
        '<xs:element name="strict"><xs:complexType><xs:sequence>'
        '<xs:any processContents="strict" maxOccurs="unbounded"/>'
        "</xs:sequence></xs:complexType></xs:element>"
        '<xs:element name="lax"><xs:complexType><xs:sequence>'
        '<xs:any processContents="lax" maxOccurs="unbounded"/>'
        "</xs:sequence></xs:complexType></xs:element>"
    )
    assert validate(model, "<strict><known>1</known></strict>")
    assert kinds(validate(model, "<strict><known>one</known></strict>")) == ["facet"]
    assert kinds(validate(model, "<strict><other/></strict>")) == ["undeclared_element"]
    assert validate(model, "<lax><other a='1'><deep/></other><known>2</known></lax>")


def test_idref_must_match_an_id(compile_schema):
    model = compile_schema(
        '<xs:element name="doc"><xs:complexType><xs:sequence>'
        '<xs:element name="node" maxOccurs="unbounded"><xs:complexType>'
        '<xs:attribute name="id" type="xs:ID"/>'
        '<xs:attribute name="next" type="xs:IDREF"/>'
        "</xs:complexType></xs:element>"
        "</xs:sequence></xs:complexType></xs:element>"
    )
    assert validate(model, '<doc><node id="a" next="b"/><node id="b"/></doc>')
    outcome = validate(model, '<doc><node id="a" next="zzz"/></doc>')
    assert kinds(outcome) == ["unresolved_idref"]


def test_element_depth_limit(compile_schema):
    model = compile_schema(
        '<xs:element name="n"><xs:complexType><xs:sequence>'
        '<xs:element ref="n" minOccurs="0"/>'
        "</xs:sequence></xs:complexType></xs:element>"
    )
    document = "<n>" * 8 + "</n>" * 8
    assert validate(model, document)
    outcome = validate(model, document, ValidationOptions(max_depth=5))
    assert kinds(outcome) == ["depth_exceeded"]


def test_violation_to_dict(order_model):
    outcome = validate(order_model, '<o:Order xmlns:o="urn:example:order" number="1"/>')
    data = outcome.violations[0].to_dict()
    assert set(data) == {"path", "line", "column", "kind", "message", "expected", "actual"}
    assert data["kind"] == "missing_element"
    assert data["path"] == "/Order"
