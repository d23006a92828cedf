import json
from xml.sax.saxutils import escape

import httpx
import pytest

from storesync.clients.base import ALREADY_EXISTS, SUCCESS, SupplierResponse
from storesync.clients.storefront import RestStorefrontClient
from storesync.clients.supplier import SoapSupplierClient
from storesync.core.errors import StorefrontError, SupplierError


SOAP_TEMPLATE = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/" xmlns:ns1="urn:supplier">'
    "<SOAP-ENV:Body><ns1:{op}Response><{tag}>{text}</{tag}></ns1:{op}Response></SOAP-ENV:Body></SOAP-ENV:Envelope>"
)
SOAP_FAULT = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">'
    "<SOAP-ENV:Body><SOAP-ENV:Fault><faultcode>Sender</faultcode><faultstring>{message}</faultstring>"
    "</SOAP-ENV:Fault></SOAP-ENV:Body></SOAP-ENV:Envelope>"
)


def _soap(op: str, tag: str, payload) -> httpx.Response:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return httpx.Response(200, content=SOAP_TEMPLATE.format(op=op, tag=tag, text=escape(text)).encode("utf-8"))


class SupplierServer:
    """Answers login/call/endSession the way the dropshipping endpoint does."""

    def __init__(self) -> None:
        self.logins = 0
        self.calls: list[tuple[str, str | None]] = []
        self.results: dict[str, list] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = request.content.decode("utf-8")
        if "apiKey" in body:
            self.logins += 1
            return _soap("login", "loginReturn", f"session-{self.logins}")
        if "endSession" in body:
            return _soap("endSession", "endSessionReturn", "true")
        method = body.split("<method>", 1)[1].split("</method>", 1)[0]
        params = None
        if "<params>" in body:
            params = body.split("<params>", 1)[1].split("</params>", 1)[0]
        self.calls.append((method, params))
        queued = self.results.get(method) or [[]]
        answer = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(answer, httpx.Response):
            return answer
        return _soap("call", "callReturn", answer)


def _supplier(server: SupplierServer, retry_count: int = 3) -> SoapSupplierClient:
    return SoapSupplierClient(
        url="urn:supplier",
        username="shop",
        password="secret",
        retry_count=retry_count,
        retry_sleep_seconds=0,
        transport=httpx.MockTransport(server),
    )


def test_supplier_logs_in_once_and_decodes_json():
    server = SupplierServer()
    server.results["dropshipping.getProductList"] = [[{"product_id": "1", "sku": "A"}, {"product_id": "2", "sku": "B"}]]
    client = _supplier(server)

    assert [item["sku"] for item in client.list_items()] == ["A", "B"]
    assert [item["sku"] for item in client.list_items()] == ["A", "B"]
    assert server.logins == 1


def test_supplier_detail_unwraps_single_element_list():
    server = SupplierServer()
    server.results["dropshipping.getProductInfo"] = [[{"product_id": "7", "sku": "X", "qty": 3}]]
    client = _supplier(server)

    assert client.get_item_detail("7") == {"product_id": "7", "sku": "X", "qty": 3}
    assert server.calls[-1] == ("dropshipping.getProductInfo", "7")


def test_supplier_order_statuses_are_normalized():
    server = SupplierServer()
    server.results["dropshipping.createOrder"] = [{"api_response": "ALREADY_EXISTS"}]
    server.results["dropshipping.updateOrder"] = [{"api_response": "UPDATE_SUCCESS"}]
    client = _supplier(server)

    created = client.create_order({"id": "shopify_1001", "products": []})
    updated = client.update_order({"id": "shopify_1001", "status": "cancelled"})

    assert created.status == ALREADY_EXISTS
    assert updated.status == SUCCESS
    sent = json.loads(server.calls[0][1].replace("&quot;", '"'))
    assert sent["id"] == "shopify_1001"


def test_supplier_update_requires_order_id():
    with pytest.raises(SupplierError):
        _supplier(SupplierServer()).update_order({"status": "cancelled"})


def test_supplier_relogs_after_session_fault():
    server = SupplierServer()
    server.results["dropshipping.getOrders"] = [
        httpx.Response(500, content=SOAP_FAULT.format(message="Session expired").encode("utf-8")),
        {"orders": [{"id": "shopify_1", "status": "sent"}]},
    ]
    client = _supplier(server)

    orders = client.get_orders({"from": "2026-10-01", "to": "2026-10-07"})

    assert orders == [{"id": "shopify_1", "status": "sent"}]
    assert server.logins == 2


def test_supplier_gives_up_after_retries():
    server = SupplierServer()
    server.results["dropshipping.getProductList"] = [
        httpx.Response(500, content=SOAP_FAULT.format(message="Internal error").encode("utf-8")),
    ]
    client = _supplier(server, retry_count=2)

    with pytest.raises(SupplierError):
        client.list_items()
    assert len(server.calls) == 2


def test_supplier_response_without_status():
    assert SupplierResponse.from_raw(None).status is None
    assert SupplierResponse.from_raw({"api_response": ""}).status is None
    assert SupplierResponse.from_raw({"api_response": "fail", "messages": "nope"}).messages == ["nope"]


def _storefront(handler) -> RestStorefrontClient:
    return RestStorefrontClient(
        shop="demo.myshopify.com",
        token="token",
        location_id=77,
        max_retries=2,
        retry_backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )


def test_storefront_pagination_token_from_link_header():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        link = '<https://demo.myshopify.com/admin/api/2024-01/products.json?limit=250&page_info=abc123>; rel="next"'
        return httpx.Response(200, json={"products": [{"id": 1}]}, headers={"Link": link})

    products, token = _storefront(handler).list_items({"fields": "id,variants"})

    assert products == [{"id": 1}]
    assert token == "abc123"
    assert seen[0].headers["X-Shopify-Access-Token"] == "token"
    assert seen[0].url.params["limit"] == "250"


def test_storefront_cursor_pages_drop_filters():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"orders": []})

    _storefront(handler).list_orders({"status": "any", "page_info": "cursor"})

    assert "status" not in seen[0].url.params
    assert seen[0].url.params["page_info"] == "cursor"


def test_storefront_retries_transient_errors():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return httpx.Response(503, text="busy")
        if attempts["count"] == 2:
            return httpx.Response(429, text="slow down", headers={"Retry-After": "0"})
        return httpx.Response(200, json={"product": {"id": 9}})

    assert _storefront(handler).get_item(9) == {"id": 9}
    assert attempts["count"] == 3


def test_storefront_rejection_is_not_retried():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(422, json={"errors": {"title": ["can't be blank"]}})

    with pytest.raises(StorefrontError) as excinfo:
        _storefront(handler).create_item({"title": ""})

    assert excinfo.value.status_code == 422
    assert excinfo.value.is_rejection
    assert attempts["count"] == 1


def test_storefront_missing_item_is_none():
    assert _storefront(lambda request: httpx.Response(404, json={"errors": "Not Found"})).get_order(5) is None


def test_storefront_exhausted_retries_raise():
    with pytest.raises(StorefrontError) as excinfo:
        _storefront(lambda request: httpx.Response(502, text="bad gateway")).get_item(1)

    assert not excinfo.value.is_rejection


def test_storefront_inventory_uses_location():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"inventory_level": {"available": 4}})

    _storefront(handler).update_inventory(123, 4)

    assert bodies == [{"location_id": 77, "inventory_item_id": 123, "available": 4}]


def test_storefront_location_lookup_picks_first_active():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"locations": [{"id": 1, "active": False}, {"id": 2, "active": True}]})

    client = RestStorefrontClient(shop="demo.myshopify.com", token="t", transport=httpx.MockTransport(handler))
    assert client.get_location_id() == 2
