from __future__ import annotations

import json

import pytest

from factories import order_payload
from fakes import FakeSession
from orderdesk.app import create_app
from orderdesk.app.client import OrderApiClient
from orderdesk.app.config import ApiSettings

COLUMNS = [
    {"id": "c1", "key": "qty", "label": "Quantity", "dataType": "NUMBER"},
    {"id": "c2", "key": "rate", "label": "Rate", "dataType": "NUMBER"},
]


@pytest.fixture()
def http() -> FakeSession:
    return FakeSession(
        {
            "/order/get/o1": order_payload(),
            "/order/update-values/o1": {},
            "/order/recalculate/o1": {},
            "/order/update-final-calculation/o1": {},
        }
    )


@pytest.fixture()
def app(tmp_path, http):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"DATABASE_URL": f"sqlite:///{tmp_path / 'orderdesk.db'}"}))
    client = OrderApiClient(ApiSettings(base_url="https://api.example.test"), session=http)
    app = create_app(str(config_path), client=client)
    app.config.update(TESTING=True)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def test_health(client) -> None:
    assert client.get("/health").get_json() == {"status": "ok"}


def test_evaluate_formula(client) -> None:
    response = client.post(
        "/api/formula/evaluate",
        json={"formula": "ROUND((qty × rate) + 10%, 2)", "columns": COLUMNS, "values": {"c1": "3", "c2": "2.5"}},
    )
    assert response.status_code == 200
    assert response.get_json() == {"value": "8.25"}


def test_evaluate_malformed_formula_has_no_value(client) -> None:
    response = client.post("/api/formula/evaluate", json={"formula": "qty rate", "columns": COLUMNS})
    assert response.get_json() == {"value": "—"}


def test_parse_formula(client) -> None:
    response = client.post("/api/formula/parse", json={"formula": "(qty × rate) − 5", "columns": COLUMNS})
    data = response.get_json()
    assert data["formula"]["steps"] == ["qty", "rate"]
    assert data["formula"]["modifiers"] == [{"type": "fixed", "operator": "-", "value": 5.0}]
    assert data["text"] == "(qty × rate) − 5"
    assert data["preview"] == "(Quantity × Rate) − 5"
    assert client.post("/api/formula/parse", json={"formula": ""}).status_code == 400


def test_validate_formula(client) -> None:
    data = client.post("/api/formula/validate", json={"formula": "qty × zz", "columns": COLUMNS}).get_json()
    assert data == {
        "valid": False,
        "error": 'Column "zz" in step 2 is not available. Please select a different column.',
    }
    data = client.post("/api/formula/validate", json={"formula": "qty × rate", "columns": COLUMNS}).get_json()
    assert data == {"valid": True, "error": None}


def test_invalid_columns_are_rejected(client) -> None:
    response = client.post("/api/formula/evaluate", json={"formula": "qty", "columns": [{"key": "qty"}]})
    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid payload"


def test_summary_discount(client) -> None:
    data = client.post("/api/summary/discount", json={"total": "200", "discountType": "AMOUNT", "discount": "50"}).get_json()
    assert data["discountAmount"] == "50.0000"
    assert data["finalPayableAmount"] == "150.0000"
    response = client.post("/api/summary/discount", json={"total": "200", "discountType": "BOGUS"})
    assert response.status_code == 400


def test_final_calculation(client) -> None:
    data = client.get("/api/orders/acme/o1/final-calculation").get_json()
    assert data["total"] == "230.00"
    assert data["finalPayableAmount"] == "209.00"
    assert data["templateRows"][0] == {
        "label": "Cabinets",
        "orderTemplateId": "ot1",
        "total": "180.00",
        "childTotal": "0.00",
        "notes": "rush",
    }


def test_remote_failure_maps_to_bad_gateway(client) -> None:
    response = client.get("/api/orders/acme/missing/final-calculation")
    assert response.status_code == 502
    assert response.get_json() == {"error": "Not found"}


def test_duplicate_limit_is_conflict(client, http) -> None:
    response = client.post("/api/orders/acme/o1/duplicate/ot1")
    assert response.status_code == 409
    assert response.get_json()["error"] == "Maximum 2 templates allowed. Cannot duplicate further."
    assert http.mutating_calls() == []


def test_duplicate_creates_child(client, http) -> None:
    response = client.post("/api/orders/acme/o1/duplicate/ot2")
    assert response.status_code == 201
    assert "entries" in response.get_json()
    assert len(http.mutating_calls()) == 1
    assert client.post("/api/orders/acme/o1/duplicate/nope").status_code == 404


def test_recalculate(client, http) -> None:
    response = client.post("/api/orders/acme/o1/recalculate")
    assert response.status_code == 200
    assert http.mutating_calls()[0]["url"].endswith("/order/recalculate/o1")


def test_save_values_reports_validation_errors(client, http) -> None:
    response = client.put("/api/orders/acme/o1/values", json={"values": {"ot1": {"r1": {"c_rate": "ten"}}}})
    assert response.status_code == 400
    data = response.get_json()
    assert data["cells"]["ot1"] == {"r1-c_rate": "Must be a number"}
    assert http.mutating_calls() == []


def test_save_values(client, http) -> None:
    response = client.put(
        "/api/orders/acme/o1/values",
        json={
            "values": {"ot1c": {"r2": {"c_qty": "2"}}},
            "extraValues": {"ot1c": {"e_title": "Utility"}},
            "discounts": {"ot1": {"discountType": "AMOUNT", "discountValue": "15"}},
        },
    )
    assert response.status_code == 200
    (call,) = http.mutating_calls()
    assert call["json"]["templates"][0]["summary"] == {"discountType": "AMOUNT", "discountValue": "15"}
    unknown = {"values": {"zz": {"r1": {"c1": "1"}}}}
    assert client.put("/api/orders/acme/o1/values", json=unknown).status_code == 404


def test_update_final_calculation(client, http) -> None:
    response = client.put(
        "/api/orders/acme/o1/final-calculation",
        json={"notes": {"ot1": "call first"}, "discount": "5", "discountType": "PERCENT"},
    )
    assert response.status_code == 200
    sent = http.mutating_calls()[0]["json"]
    assert sent["discount"] == 5.0
    assert sent["notes"] == [{"orderTemplateId": "ot1", "notes": "call first"}]
    bad = client.put("/api/orders/acme/o1/final-calculation", json={"marginType": "NOPE"})
    assert bad.status_code == 400
