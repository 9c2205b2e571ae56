from __future__ import annotations

import io

import pytest
from urllib3.util.retry import Retry

from factories import order_payload
from fakes import FakeResponse, FakeSession, connection_error
from orderdesk.app.client import DEFAULT_ERROR, ApiError, OrderApiClient, build_session, get_error
from orderdesk.app.config import ApiSettings
from orderdesk.app.entries import build_final_calculation_payload

SETTINGS = ApiSettings(base_url="https://api.example.test/", token="secret", timeout=5.0, retries=2)


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def client(session: FakeSession) -> OrderApiClient:
    return OrderApiClient(SETTINGS, session=session)


def test_get_order_unwraps_payload(client: OrderApiClient, session: FakeSession) -> None:
    session.routes["/order/get/o1"] = order_payload()
    order = client.get_order("acme", "o1")
    assert order.id == "o1"
    assert order.templates[0].children[0].id == "ot1c"
    call = session.calls[0]
    assert call["url"] == "https://api.example.test/api/v1/web/user/acme/order/get/o1"
    assert call["timeout"] == 5.0
    assert "Idempotency-Key" not in call["headers"]


def test_mutating_calls_carry_idempotency_keys(client: OrderApiClient, session: FakeSession) -> None:
    session.routes["/order/update-values/o1"] = {"updated": True}
    session.routes["/order/recalculate/o1"] = None
    assert client.update_order_values("acme", "o1", {"templates": []}) == {"updated": True}
    client.recalculate_order("acme", "o1")
    keys = [call["headers"]["Idempotency-Key"] for call in session.calls]
    assert len(keys) == 2 and keys[0] != keys[1]
    assert session.calls[0]["method"] == "PUT"
    assert session.calls[0]["json"] == {"templates": []}


def test_final_calculation_is_sent_in_wire_shape(client: OrderApiClient, session: FakeSession) -> None:
    session.routes["/order/update-final-calculation/o1"] = {}
    payload = build_final_calculation_payload(["ot1"], {"ot1": "rush"}, discount="5", discount_type="PERCENT")
    client.update_final_calculation("acme", "o1", payload)
    assert session.calls[0]["json"]["discountType"] == "PERCENT"
    assert session.calls[0]["json"]["notes"] == [{"orderTemplateId": "ot1", "notes": "rush"}]


def test_upload_posts_multipart_file(client: OrderApiClient, session: FakeSession) -> None:
    session.routes["/upload/upload-single"] = {"url": "https://cdn.example.test/a.png"}
    result = client.upload_single_file(io.BytesIO(b"png"), "a.png", "image/png")
    assert result == {"url": "https://cdn.example.test/a.png"}
    call = session.calls[0]
    assert call["url"] == "https://api.example.test/api/v1/web/user/upload/upload-single"
    assert call["files"]["file"][0] == "a.png"


def test_http_error_uses_message_from_body(client: OrderApiClient, session: FakeSession) -> None:
    session.queue.append(FakeResponse(422, {"success": False, "message": "Template is locked"}, "Unprocessable"))
    with pytest.raises(ApiError) as excinfo:
        client.update_order_values("acme", "o1", {})
    assert excinfo.value.message == "Template is locked"
    assert excinfo.value.status == 422


def test_envelope_failure_raises(client: OrderApiClient, session: FakeSession) -> None:
    session.queue.append(FakeResponse(200, {"success": False, "status": 400, "errors": ["Order is closed"]}))
    with pytest.raises(ApiError, match="Order is closed"):
        client.recalculate_order("acme", "o1")


def test_transport_error_becomes_api_error(client: OrderApiClient, session: FakeSession) -> None:
    session.queue.append(connection_error("Connection refused"))
    with pytest.raises(ApiError, match="Connection refused"):
        client.get_order("acme", "o1")


def test_unusable_snapshot_becomes_api_error(client: OrderApiClient, session: FakeSession) -> None:
    session.routes["/order/get/o1"] = {"templates": "nope"}
    with pytest.raises(ApiError) as excinfo:
        client.get_order("acme", "o1")
    assert excinfo.value.message == DEFAULT_ERROR


@pytest.mark.parametrize(
    "body, transport, expected",
    [
        ({"message": "Bad discount"}, None, "Bad discount"),
        ({"message": "", "errors": [{"message": "First"}, "Second"]}, None, "First"),
        ({"errors": []}, "Gateway Timeout", "Gateway Timeout"),
        (None, None, DEFAULT_ERROR),
    ],
)
def test_get_error_precedence(body, transport, expected) -> None:
    assert get_error(body, transport) == expected


def test_build_session_mounts_bounded_retry() -> None:
    session = build_session(SETTINGS)
    retry = session.get_adapter("https://api.example.test").max_retries
    assert isinstance(retry, Retry)
    assert retry.total == 2
    assert {"PUT", "POST"} <= set(retry.allowed_methods)
    assert 503 in retry.status_forcelist
    assert session.headers["Authorization"] == "Bearer secret"
