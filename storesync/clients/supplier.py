from __future__ import annotations

import json
import logging
import re
import time
from typing import Any
from xml.etree import ElementTree

import httpx

from storesync.clients.base import SupplierClient, SupplierResponse
from storesync.core.config import Settings
from storesync.core.errors import RETRYABLE_HTTP_STATUSES, SupplierError


SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

logger = logging.getLogger(__name__)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _decode_json(value: str) -> Any:
    text = value.strip()
    if not text or text[0] not in "[{":
        return text
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class SoapSupplierClient(SupplierClient):
    """Dropshipping supplier reached through a session-based SOAP ``call`` endpoint.

    Every payload travels as a JSON string inside ``<params>`` and comes back as
    JSON inside ``<return>``.
    """

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        timeout_seconds: float = 30.0,
        retry_count: int = 3,
        retry_sleep_seconds: float = 1.0,
        session_lifetime_seconds: int = 3000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.username = username
        self.password = password
        self.retry_count = max(1, retry_count)
        self.retry_sleep_seconds = retry_sleep_seconds
        self.session_lifetime_seconds = session_lifetime_seconds
        self.client = httpx.Client(
            timeout=timeout_seconds,
            transport=transport,
            headers={"Content-Type": "text/xml; charset=utf-8"},
        )
        self._session: str | None = None
        self._session_started_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SoapSupplierClient:
        return cls(
            url=settings.supplier_url,
            username=settings.supplier_user,
            password=settings.supplier_password,
            timeout_seconds=settings.supplier_timeout_seconds,
            retry_count=settings.supplier_retry_count,
            retry_sleep_seconds=settings.supplier_retry_sleep_seconds,
            session_lifetime_seconds=settings.supplier_session_lifetime_seconds,
        )

    def list_items(self) -> list[dict[str, Any]]:
        result = self.call("dropshipping.getProductList")
        if not result:
            return []
        if not isinstance(result, list):
            raise SupplierError(f"Unexpected product list payload: {type(result).__name__}")
        return [item for item in result if isinstance(item, dict)]

    def get_item_detail(self, item_id: str) -> dict[str, Any] | None:
        result = self.call("dropshipping.getProductInfo", str(item_id))
        if isinstance(result, list) and len(result) == 1 and isinstance(result[0], dict):
            result = result[0]
        return result if isinstance(result, dict) and result else None

    def create_order(self, order: dict[str, Any]) -> SupplierResponse:
        logger.info("Creating supplier order %s", order.get("id"))
        response = SupplierResponse.from_raw(self.call("dropshipping.createOrder", json.dumps(order, default=str)))
        logger.info("Supplier createOrder %s -> %s", order.get("id"), response.status)
        return response

    def update_order(self, order: dict[str, Any]) -> SupplierResponse:
        if not order.get("id"):
            raise SupplierError("Order id is required for updating an order")
        response = SupplierResponse.from_raw(self.call("dropshipping.updateOrder", json.dumps(order, default=str)))
        logger.info("Supplier updateOrder %s -> %s", order.get("id"), response.status)
        return response

    def get_orders(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        filters = filters or {}
        for key in ("from", "to"):
            if key in filters and not DATE_RE.match(str(filters[key])):
                logger.warning("Order filter %s=%s is not YYYY-MM-DD", key, filters[key])
        result = self.call("dropshipping.getOrders", json.dumps(filters) if filters else None)
        if isinstance(result, dict):
            result = result.get("orders") or []
        return [order for order in result or [] if isinstance(order, dict)]

    def call(self, method: str, params: str | None = None) -> Any:
        self._ensure_session()
        for attempt in range(self.retry_count):
            try:
                if attempt > 0:
                    self._login()
                return self._post("call", [("sessionId", self._session), ("method", method), ("params", params)])
            except (SupplierError, httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as exc:
                if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code not in RETRYABLE_HTTP_STATUSES:
                    raise SupplierError(f"Supplier {method} rejected with HTTP {exc.response.status_code}") from exc
                if "session" in str(exc).lower():
                    self._session = None
                if attempt >= self.retry_count - 1:
                    logger.error("Supplier %s failed after %s attempts: %s", method, self.retry_count, exc)
                    if isinstance(exc, SupplierError):
                        raise
                    raise SupplierError(f"Supplier {method} failed: {exc}") from exc
                backoff = self.retry_sleep_seconds * (2**attempt)
                logger.warning(
                    "Supplier %s failed (attempt %s/%s): %s; retrying in %.1fs",
                    method,
                    attempt + 1,
                    self.retry_count,
                    exc,
                    backoff,
                )
                if backoff > 0:
                    time.sleep(backoff)
        raise SupplierError(f"Unreachable retry state for {method}")

    def close(self) -> None:
        if self._session is not None:
            try:
                self._post("endSession", [("sessionId", self._session)])
            except (SupplierError, httpx.HTTPError) as exc:
                logger.debug("Could not end supplier session cleanly: %s", exc)
            self._session = None
        self.client.close()

    def _ensure_session(self) -> None:
        expired = time.time() - self._session_started_at > self.session_lifetime_seconds
        if self._session is None or expired:
            self._login()

    def _login(self) -> None:
        try:
            session = self._post("login", [("username", self.username), ("apiKey", self.password)])
        except httpx.HTTPError as exc:
            self._session = None
            raise SupplierError(f"Supplier login failed: {exc}") from exc
        if not session or not isinstance(session, str):
            self._session = None
            raise SupplierError("Supplier login returned no session id")
        self._session = session
        self._session_started_at = time.time()
        logger.info("Logged into supplier API")

    def _post(self, operation: str, parts: list[tuple[str, str | None]]) -> Any:
        response = self.client.post(self.url, content=self._envelope(operation, parts))
        if response.status_code >= 400 and b"Fault" not in response.content:
            response.raise_for_status()
        return self._parse(response.content)

    def _envelope(self, operation: str, parts: list[tuple[str, str | None]]) -> bytes:
        ElementTree.register_namespace("SOAP-ENV", SOAP_ENV_NS)
        envelope = ElementTree.Element(f"{{{SOAP_ENV_NS}}}Envelope")
        body = ElementTree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
        call = ElementTree.SubElement(body, f"{{{self.url}}}{operation}")
        for name, value in parts:
            child = ElementTree.SubElement(call, name)
            if value is not None:
                child.text = value
        return ElementTree.tostring(envelope, encoding="utf-8", xml_declaration=True)

    def _parse(self, content: bytes) -> Any:
        try:
            root = ElementTree.fromstring(content)
        except ElementTree.ParseError as exc:
            raise SupplierError(f"Supplier returned malformed XML: {exc}") from exc
        for element in root.iter():
            name = _local_name(element.tag)
            if name == "Fault":
                fault = next((e.text for e in element.iter() if _local_name(e.tag) == "faultstring"), None)
                raise SupplierError(f"Supplier fault: {fault or 'unknown'}")
            if name in {"return", "loginReturn", "callReturn"}:
                return _decode_json(element.text or "")
        return None
