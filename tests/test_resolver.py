"""Tests for schema document loading and composition."""

import pytest

from xsd_engine.exceptions import DocumentNotFound, NamespaceMismatch, NotASchema
from xsd_engine.loaders import FileSystemLoader, MappingLoader, normalize_location
from xsd_engine.resolver import SchemaResolver, resolve

from conftest import schema_text


def test_normalize_location_joins_relative_hints():
    assert normalize_location("types/common.xsd", "schemas/main.xsd") == "schemas/types/common.xsd"
    assert normalize_location("../b.xsd", "schemas/sub/a.xsd") == "schemas/b.xsd"
    assert normalize_location("b.xsd", "http://example.com/x/a.xsd") == "http://example.com/x/b.xsd"


def test_fixture_set_loads_include_and_import(fixtures_dir):
    documents = SchemaResolver(FileSystemLoader()).resolve([str(fixtures_dir / "order.xsd")])

    assert len(documents) == 3
    assert documents.namespaces == ["urn:example:order", "urn:example:address"]
    assert documents.unresolved_imports == []

    common = [doc for doc in documents if doc.location.endswith("common.xsd")][0]
    assert common.chameleon is True
    assert common.target_namespace == "urn:example:order"


def test_import_is_loaded_once():
    """Two documents importing the same namespace and location share one copy."""
    loader = MappingLoader(
        {
            "main.xsd": schema_text(
                '<xs:import namespace="urn:b" schemaLocation="b.xsd"/>'
                '<xs:include schemaLocation="other.xsd"/>',
                "urn:a",
            ),
            "other.xsd": schema_text(
                '<xs:import namespace="urn:b" schemaLocation="b.xsd"/>', "urn:a"
            ),
            "b.xsd": schema_text('<xs:element name="B" type="xs:string"/>', "urn:b"),
        }
    )
    documents = resolve(["main.xsd"], loader)

    locations = [doc.location for doc in documents]
    assert locations.count("b.xsd") == 1
    assert len(documents) == 3


def test_import_namespace_mismatch():
    loader = MappingLoader(
        {
            "main.xsd": schema_text(
                '<xs:import namespace="urn:b" schemaLocation="b.xsd"/>', "urn:a"
            ),
            "b.xsd": schema_text("", "urn:other"),
        }
    )
    with pytest.raises(NamespaceMismatch) as excinfo:
        resolve(["main.xsd"], loader)
    assert excinfo.value.expected == "urn:b"
    assert excinfo.value.actual == "urn:other"


def test_include_with_different_namespace_is_rejected():
    loader = MappingLoader(
        {
            "main.xsd": schema_text('<xs:include schemaLocation="b.xsd"/>', "urn:a"),
            "b.xsd": schema_text("", "urn:b"),
        }
    )
    with pytest.raises(NamespaceMismatch):
        resolve(["main.xsd"], loader)


def test_chameleon_include_adopts_namespace():
    loader = MappingLoader(
        {
            "main.xsd": schema_text('<xs:include schemaLocation="lib.xsd"/>', "urn:a"),
            "lib.xsd": schema_text('<xs:simpleType name="Code"><xs:restriction base="xs:string"/></xs:simpleType>'),
        }
    )
    documents = resolve(["main.xsd"], loader)
    lib = documents.documents[1]
    assert lib.chameleon
    assert lib.target_namespace == "urn:a"
    assert lib.key == ("lib.xsd", "urn:a")


def test_chameleon_included_into_two_namespaces():
    loader = MappingLoader(
        {
            "a.xsd": schema_text('<xs:include schemaLocation="lib.xsd"/>', "urn:a"),
            "b.xsd": schema_text('<xs:include schemaLocation="lib.xsd"/>', "urn:b"),
            "lib.xsd": schema_text(""),
        }
    )
    documents = resolve(["a.xsd", "b.xsd"], loader)
    keys = {doc.key for doc in documents}
    assert ("lib.xsd", "urn:a") in keys
    assert ("lib.xsd", "urn:b") in keys


def test_import_without_location_is_recorded():
    loader = MappingLoader(
        {"main.xsd": schema_text('<xs:import namespace="urn:elsewhere"/>', "urn:a")}
    )
    documents = resolve(["main.xsd"], loader)

    assert len(documents.unresolved_imports) == 1
    record = documents.unresolved_imports[0]
    assert record.namespace == "urn:elsewhere"
    assert record.location is None
    assert record.referrer == "main.xsd"
    assert documents.is_unresolved("urn:elsewhere")


def test_import_of_missing_document_is_recorded():
    loader = MappingLoader(
        {
            "main.xsd": schema_text(
                '<xs:import namespace="urn:gone" schemaLocation="gone.xsd"/>', "urn:a"
            )
        }
    )
    documents = resolve(["main.xsd"], loader)
    assert [r.namespace for r in documents.unresolved_imports] == ["urn:gone"]


def test_missing_include_fails():
    loader = MappingLoader(
        {"main.xsd": schema_text('<xs:include schemaLocation="gone.xsd"/>', "urn:a")}
    )
    with pytest.raises(DocumentNotFound):
        resolve(["main.xsd"], loader)


def test_missing_entry_document_fails(tmp_path):
    with pytest.raises(DocumentNotFound):
        resolve([str(tmp_path / "absent.xsd")], FileSystemLoader())


def test_not_a_schema():
    loader = MappingLoader({"main.xsd": "<catalog/>"})
    with pytest.raises(NotASchema):
        resolve(["main.xsd"], loader)


def test_include_cycle_terminates():
    loader = MappingLoader(
        {
            "a.xsd": schema_text('<xs:include schemaLocation="b.xsd"/>', "urn:a"),
            "b.xsd": schema_text('<xs:include schemaLocation="a.xsd"/>', "urn:a"),
        }
    )
    documents = resolve(["a.xsd"], loader)
    assert [doc.location for doc in documents] == ["a.xsd", "b.xsd"]
