import pytest
from fastapi.testclient import TestClient

from orderdesk.server import create_app
from orderdesk.services.layout_store import LayoutStore, set_layout_store


def test_favicon_route_returns_empty_response() -> None:
    app = create_app()

    for route in app.routes:
        if getattr(route, "path", None) == "/favicon.ico":
            response = route.endpoint()
            assert response.status_code == 204
            assert response.body == b""
            break
    else:
        pytest.fail("/favicon.ico route is not registered")


def test_layout_round_trip_over_http(tmp_path) -> None:
    set_layout_store(LayoutStore(f"sqlite:///{tmp_path / 'layout.db'}"))
    try:
        with TestClient(create_app()) as client:
            response = client.put("/api/layout/acme/o1/zoom", json={"value": 1.25})
            assert response.status_code == 200
            assert client.get("/api/layout/acme/o1").json()["values"] == {"zoom": 1.25}
            assert client.put("/api/layout/acme/o1/zoom", json={"nope": 1}).json() == {"ok": True, "key": "zoom"}
            assert client.delete("/api/layout/acme/o1").json() == {"ok": True, "removed": 1}
    finally:
        set_layout_store(None)
