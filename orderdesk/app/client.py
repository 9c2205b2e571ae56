from __future__ import annotations

import logging
import uuid
from typing import IO, Any, Dict, Optional

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import ApiSettings, get_api_settings
from .schemas import FinalCalculationPayload, OrderWithDetails

logger = logging.getLogger(__name__)

DEFAULT_ERROR = "Something went wrong. Please try again."
RETRY_STATUSES = (429, 502, 503, 504)


class ApiError(Exception):
    """A remote call failed; ``message`` is safe to show to a user."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload


def get_error(body: Any, transport_message: Optional[str] = None) -> str:
    """Pick one human readable message out of an error response."""
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, str) and message.strip():
            return message
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                first = first.get("message") or first.get("msg")
            if first:
                return str(first)
    if transport_message:
        return transport_message
    return DEFAULT_ERROR


def build_session(settings: ApiSettings) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=settings.backoff,
        status_forcelist=RETRY_STATUSES,
        # mutating calls carry an Idempotency-Key, so replays are safe
        allowed_methods=frozenset({"GET", "PUT", "POST", "DELETE"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"Accept": "application/json"})
    if settings.token:
        session.headers.update({"Authorization": f"Bearer {settings.token}"})
    return session


class OrderApiClient:
    """Client for the order endpoints of the remote API."""

    def __init__(
        self,
        settings: Optional[ApiSettings] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings or get_api_settings()
        self.session = session if session is not None else build_session(self.settings)
        self.base_url = self.settings.base_url.rstrip("/")

    def _order_url(self, company_id: str, path: str) -> str:
        return f"{self.base_url}/api/v1/web/user/{company_id}/order/{path}"

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        headers = dict(kwargs.pop("headers", None) or {})
        if method != "GET":
            headers.setdefault("Idempotency-Key", uuid.uuid4().hex)
        try:
            response = self.session.request(
                method, url, headers=headers, timeout=self.settings.timeout, **kwargs
            )
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise ApiError(get_error(None, str(exc) or None)) from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            logger.warning("%s %s returned %s", method, url, response.status_code)
            raise ApiError(
                get_error(body, response.reason or None),
                status=response.status_code,
                payload=body,
            )
        if isinstance(body, dict) and body.get("success") is False:
            raise ApiError(get_error(body), status=body.get("status"), payload=body)
        if isinstance(body, dict) and "payload" in body:
            return body["payload"]
        return body

    def get_order(self, company_id: str, order_id: str) -> OrderWithDetails:
        payload = self._request("GET", self._order_url(company_id, f"get/{order_id}"))
        try:
            return OrderWithDetails.model_validate(payload)
        except ValidationError as exc:
            logger.error("Order %s snapshot did not validate: %s", order_id, exc)
            raise ApiError(DEFAULT_ERROR, payload=payload) from exc

    def create_order(self, company_id: str, data: Dict[str, Any]) -> Any:
        return self._request("POST", self._order_url(company_id, "create"), json=data)

    def update_order_values(self, company_id: str, order_id: str, payload: Dict[str, Any]) -> Any:
        return self._request("PUT", self._order_url(company_id, f"update-values/{order_id}"), json=payload)

    def update_order_extra_values(self, company_id: str, order_id: str, payload: Dict[str, Any]) -> Any:
        return self._request(
            "PUT", self._order_url(company_id, f"update-extra-values/{order_id}"), json=payload
        )

    def recalculate_order(self, company_id: str, order_id: str) -> Any:
        return self._request("PUT", self._order_url(company_id, f"recalculate/{order_id}"))

    def update_final_calculation(
        self, company_id: str, order_id: str, payload: FinalCalculationPayload
    ) -> Any:
        return self._request(
            "PUT",
            self._order_url(company_id, f"update-final-calculation/{order_id}"),
            json=payload.to_wire(),
        )

    def upload_single_file(self, file: IO[bytes], filename: str, content_type: Optional[str] = None) -> Any:
        files = {"file": (filename, file, content_type or "application/octet-stream")}
        return self._request("POST", f"{self.base_url}/api/v1/web/user/upload/upload-single", files=files)
