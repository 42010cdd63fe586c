import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from xsd_engine import __version__
from xsd_engine.app import SchemaRegistry, app, get_registry
from xsd_engine.cache import CachedSchemaBuilder, SchemaCache

from conftest import FIXTURES, schema_text

ORDER_XML = (FIXTURES / "order.xml").read_text()

INLINE = schema_text(
    '<xs:element name="point"><xs:complexType><xs:sequence>'
    '<xs:element name="x" type="xs:decimal"/><xs:element name="y" type="xs:decimal"/>'
    '</xs:sequence><xs:attribute name="label" type="xs:string"/>'
    "</xs:complexType></xs:element>"
)


def create_client():
    registry = SchemaRegistry(CachedSchemaBuilder(SchemaCache()))
    app.dependency_overrides[get_registry] = lambda: registry
    return TestClient(app)


@pytest.fixture
def client():
    yield create_client()
    app.dependency_overrides.clear()


def register_inline(client, text=INLINE):
    response = client.post(
        "/schemas", json={"documents": {"main.xsd": text}, "entry": ["main.xsd"]}
    )
    assert response.status_code == 201
    return response.json()


def register_order(client):
    response = client.post("/schemas", json={"entry": [str(Path(FIXTURES) / "order.xsd")]})
    assert response.status_code == 201
    return response.json()


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "version": __version__, "schemas": 0}
    assert response.headers["X-API-Version"] == __version__
    assert response.headers["X-Response-Time"].endswith("s")


def test_register_inline_schema(client):
    body = register_inline(client)
    assert body["elements"] == ["point"]
    assert body["namespaces"] == [None]
    assert body["unresolved_imports"] == []
    assert body["entry"] == ["main.xsd"]

    again = register_inline(client)
    assert again["id"] == body["id"]
    assert client.get("/schemas").json() == {"schemas": [body["id"]]}


def test_register_schema_from_files(client):
    body = register_order(client)
    assert "{urn:example:order}Order" in body["elements"]
    assert body["namespaces"] == ["urn:example:order", "urn:example:address"]
    assert body["types"] > 0


def test_schema_detail(client):
    schema_id = register_inline(client)["id"]
    summary = client.get(f"/schemas/{schema_id}").json()
    assert "components" not in summary

    detailed = client.get(f"/schemas/{schema_id}", params={"detail": "true"}).json()
    assert detailed["components"]


def test_invalid_schema_is_422(client):
    response = client.post(
        "/schemas",
        json={
            "documents": {"main.xsd": schema_text('<xs:element name="E" type="Nowhere"/>')},
            "entry": ["main.xsd"],
        },
    )
    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "UnresolvedReference"
    assert body["kind"]
    assert "Nowhere" in body["detail"]


def test_missing_entry_list_is_rejected(client):
    response = client.post("/schemas", json={"entry": []})
    assert response.status_code == 422


def test_unknown_schema_is_404(client):
    response = client.post("/schemas/nope/validate", json={"document": "<point/>"})
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Not Found"
    assert "nope" in body["detail"]
    assert body["path"] == "/schemas/nope/validate"


def test_validate_valid_and_invalid_documents(client):
    schema_id = register_order(client)["id"]

    response = client.post(f"/schemas/{schema_id}/validate", json={"document": ORDER_XML})
    assert response.status_code == 200
    assert response.json() == {"valid": True, "violations": []}

    broken = ORDER_XML.replace("<o:quantity>2</o:quantity>", "<o:quantity>0</o:quantity>")
    response = client.post(f"/schemas/{schema_id}/validate", json={"document": broken})
    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is False
    violation = body["violations"][0]
    assert violation["kind"] == "facet"
    assert violation["path"] == "/Order/item[1]/quantity"


def test_validate_overrides(client):
    schema_id = register_inline(client)["id"]
    document = '<point label="a" other="b"><y>1</y><x>2</x></point>'

    full = client.post(f"/schemas/{schema_id}/validate", json={"document": document}).json()
    assert len(full["violations"]) == 2

    fast = client.post(
        f"/schemas/{schema_id}/validate", json={"document": document, "fail_fast": True}
    ).json()
    assert len(fast["violations"]) == 1

    wrong_root = client.post(
        f"/schemas/{schema_id}/validate",
        json={"document": "<point><x>1</x><y>2</y></point>", "root_element": "line"},
    ).json()
    assert wrong_root["valid"] is False
    assert wrong_root["violations"][0]["kind"] == "unexpected_root"


def test_malformed_document_is_422(client):
    schema_id = register_inline(client)["id"]
    response = client.post(f"/schemas/{schema_id}/validate", json={"document": "<point>"})
    assert response.status_code == 422
    assert response.json()["error"] == "MalformedDocument"


def test_decode_document(client):
    schema_id = register_order(client)["id"]
    response = client.post(f"/schemas/{schema_id}/decode", json={"document": ORDER_XML})
    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is True
    data = body["data"]
    assert data["@number"] == 42
    assert data["item"][0]["price"] == 9.5
    assert data["item"][1]["price"] == 100
    assert data["Address"] == {"street": "1 Main St", "city": "Ottawa"}


def test_decode_invalid_document_returns_violations(client):
    schema_id = register_inline(client)["id"]
    response = client.post(f"/schemas/{schema_id}/decode", json={"document": "<point/>"})
    body = response.json()
    assert body["valid"] is False
    assert body["data"] is None
    assert body["violations"][0]["kind"] == "missing_element"


def test_encode_keeps_decimal_text(client):
    schema_id = register_inline(client)["id"]
    response = client.post(
        f"/schemas/{schema_id}/encode",
        content='{"element": "point", "data": {"@label": "origin", "x": 0.50, "y": 2}}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 200
    assert response.json()["document"] == '<point label="origin"><x>0.50</x><y>2</y></point>'


def test_encode_round_trips_through_validate(client):
    schema_id = register_order(client)["id"]
    data = client.post(f"/schemas/{schema_id}/decode", json={"document": ORDER_XML}).json()[
        "data"
    ]
    encoded = client.post(
        f"/schemas/{schema_id}/encode",
        json={"element": "{urn:example:order}Order", "data": data},
    )
    assert encoded.status_code == 200

    document = encoded.json()["document"]
    check = client.post(f"/schemas/{schema_id}/validate", json={"document": document})
    assert check.json()["valid"] is True


def test_encode_errors(client):
    schema_id = register_inline(client)["id"]

    mismatch = client.post(
        f"/schemas/{schema_id}/encode",
        json={"element": "point", "data": {"x": 1, "y": 2, "z": 3}},
    )
    assert mismatch.status_code == 422
    assert mismatch.json()["kind"] == "shape_mismatch"

    missing_element = client.post(f"/schemas/{schema_id}/encode", json={"data": {}})
    assert missing_element.status_code == 422

    not_json = client.post(
        f"/schemas/{schema_id}/encode",
        content="{not json",
        headers={"Content-Type": "application/json"},
    )
    assert not_json.status_code == 422


def test_delete_schema(client):
    schema_id = register_inline(client)["id"]
    response = client.delete(f"/schemas/{schema_id}")
    assert response.status_code == 200
    assert schema_id in response.json()["message"]

    assert client.get(f"/schemas/{schema_id}").status_code == 404
    assert client.delete(f"/schemas/{schema_id}").status_code == 404


def test_metrics_endpoints(client):
    schema_id = register_inline(client)["id"]
    client.post(f"/schemas/{schema_id}/validate", json={"document": "<point/>"})

    performance = client.get("/metrics/performance").json()
    assert performance["operations"]["build"]["count"] == 1
    assert performance["operations"]["validate"]["failures"] == 1
    endpoints = {entry["endpoint"] for entry in performance["api"]["top_endpoints"]}
    assert any(e.startswith("POST /schemas/") and e.endswith("/validate") for e in endpoints)

    cache = client.get("/metrics/cache").json()
    assert cache["stats"]["cache_size"] == 1
    assert "hit_rate_percent" in cache

    reset = client.post("/metrics/reset")
    assert reset.status_code == 200
    after = client.get("/metrics/performance").json()
    assert after["operations"] == {}


def test_file_schema_reports_etag_and_staleness(client, tmp_path):
    for name in ("order.xsd", "common.xsd", "address.xsd"):
        (tmp_path / name).write_text((FIXTURES / name).read_text())
    entry = {"entry": [str(tmp_path / "order.xsd")]}

    body = client.post("/schemas", json=entry).json()
    assert len(body["etag"]) == 32
    assert body["stale"] is False

    time.sleep(0.1)
    common = tmp_path / "common.xsd"
    common.write_text(common.read_text())
    assert client.get(f"/schemas/{body['id']}").json()["stale"] is True

    refreshed = client.post("/schemas", json=dict(entry, force_refresh=True)).json()
    assert refreshed["id"] == body["id"]
    assert refreshed["stale"] is False


def test_inline_schema_has_no_etag(client):
    body = register_inline(client)
    assert body["etag"] == ""
    assert body["stale"] is False


def test_clear_cache(client):
    schema_id = register_inline(client)["id"]

    response = client.post("/cache/clear")
    assert response.status_code == 200
    assert response.json()["dropped"] == 1
    assert client.get("/metrics/cache").json()["stats"]["cache_size"] == 0

    # the registered model keeps working, it is only reported stale
    assert client.get(f"/schemas/{schema_id}").json()["stale"] is True
    check = client.post(f"/schemas/{schema_id}/validate", json={"document": "<point/>"})
    assert check.status_code == 200
