"""
Tests for the Prodigi API client and its request/response mapping.
"""
import json
from unittest.mock import Mock, patch

import pytest
import requests

from fulfillment.exceptions import ProviderError, ProviderTransientError, ProviderValidationError
from fulfillment.prodigi.client import (
    ProdigiClient,
    build_order_request,
    get_product_sku,
    map_remote_status,
    normalize_order,
)


def _response(status_code=200, body=None):
    text = json.dumps(body) if body is not None else ""
    response = Mock(status_code=status_code, text=text)
    response.json.side_effect = lambda: json.loads(text)
    return response


@pytest.fixture
def client():
    return ProdigiClient("test-key", environment="sandbox", timeout=5)


class TestMapping:

    def test_sku_from_frame_spec(self):
        assert get_product_sku("large", "white", "wood") == "FRAME-LG-WHT-WD"
        assert get_product_sku("extra_large", "gold", "wood") == "FRAME-XL-GLD-WD"

    def test_unknown_frame_spec_uses_default_sku(self):
        assert get_product_sku("huge", "black", "wood") == "FRAME-MD-BLK-WD"
        assert get_product_sku(None, None, None) == "FRAME-MD-BLK-WD"

    def test_remote_status_mapping(self):
        assert map_remote_status("InProgress") == "processing"
        assert map_remote_status("Complete") == "shipped"
        assert map_remote_status("Delivered") == "delivered"
        assert map_remote_status(None) is None

    def test_normalize_v4_response(self):
        body = {
            "outcome": "Ok",
            "order": {
                "id": "ord_840797",
                "status": {"stage": "InProgress"},
                "shipments": [{"tracking": {"number": "1Z1", "url": "https://track/1Z1"}}],
            },
        }
        normalized = normalize_order(body)
        assert normalized["id"] == "ord_840797"
        assert normalized["status"] == "InProgress"
        assert normalized["tracking_number"] == "1Z1"
        assert normalized["tracking_url"] == "https://track/1Z1"
        assert normalized["raw"] is body

    def test_normalize_flat_response(self):
        normalized = normalize_order({"id": "ord_1", "status": "Shipped", "trackingNumber": "T1"})
        assert (normalized["id"], normalized["status"], normalized["tracking_number"]) == ("ord_1", "Shipped", "T1")

    def test_order_request_accepts_both_address_spellings(self):
        items = [{"sku": "FRAME-MD-BLK-WD", "quantity": 1, "image_url": "https://cdn/a.png"}]
        camel = build_order_request("20250101-0001", items, {
            "firstName": "Ada", "lastName": "Buyer", "address1": "1 Main", "zip": "80202",
            "city": "Denver", "state": "CO", "country": "US",
        }, "a@example.com")
        snake = build_order_request("20250101-0001", items, {
            "first_name": "Ada", "last_name": "Buyer", "line1": "1 Main", "postal_code": "80202",
            "city": "Denver", "state": "CO", "country": "US",
        }, "a@example.com")
        assert camel["recipient"] == snake["recipient"]
        assert camel["items"][0]["merchantReference"] == "20250101-0001-1"


# ==============================================================================
# HTTP behaviour
# ==============================================================================

class TestProdigiClient:

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            ProdigiClient("")

    def test_rejects_unknown_environment(self):
        with pytest.raises(ValueError):
            ProdigiClient("key", environment="staging")

    def test_from_config(self):
        client = ProdigiClient.from_config({"PRODIGI_API_KEY": "k", "PRODIGI_ENVIRONMENT": "production"})
        assert client.base_url == "https://api.prodigi.com/v4.0"
        assert client.session.headers["X-API-Key"] == "k"

    def test_create_order(self, client):
        body = {"outcome": "Created", "order": {"id": "ord_1", "status": {"stage": "InProgress"}}}
        with patch.object(client.session, "request", return_value=_response(200, body)) as request:
            result = client.create_order({"merchantReference": "20250101-0001"})

        assert result["id"] == "ord_1"
        request.assert_called_once_with(
            "POST",
            "https://api.sandbox.prodigi.com/v4.0/orders",
            timeout=5,
            json={"merchantReference": "20250101-0001"},
        )

    def test_get_and_cancel_order(self, client):
        body = {"order": {"id": "ord_1", "status": {"stage": "Cancelled"}}}
        with patch.object(client.session, "request", return_value=_response(200, body)) as request:
            assert client.get_order("ord_1")["status"] == "Cancelled"
            client.cancel_order("ord_1")

        assert request.call_args_list[0][0] == ("GET", "https://api.sandbox.prodigi.com/v4.0/orders/ord_1")
        assert request.call_args_list[1][0] == ("POST", "https://api.sandbox.prodigi.com/v4.0/orders/ord_1/actions/cancel")

    def test_get_products(self, client):
        body = {"outcome": "Ok", "products": [{"sku": "GLOBAL-CFP-16X20"}]}
        with patch.object(client.session, "request", return_value=_response(200, body)) as request:
            assert client.get_products() == [{"sku": "GLOBAL-CFP-16X20"}]

        assert request.call_args[0] == ("GET", "https://api.sandbox.prodigi.com/v4.0/products")

    def test_get_products_empty_body(self, client):
        with patch.object(client.session, "request", return_value=_response(200)):
            assert client.get_products() == []

    def test_client_error_is_validation_error(self, client):
        with patch.object(client.session, "request", return_value=_response(400, {"outcome": "ValidationFailed"})):
            with pytest.raises(ProviderValidationError) as exc_info:
                client.create_order({})

        assert exc_info.value.status_code == 400
        assert "ValidationFailed" in exc_info.value.response_body

    def test_server_error_is_transient(self, client):
        with patch.object(client.session, "request", return_value=_response(502, {"error": "bad gateway"})):
            with pytest.raises(ProviderTransientError) as exc_info:
                client.get_order("ord_1")

        assert exc_info.value.status_code == 502

    @pytest.mark.parametrize("error", [
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.Timeout("read timed out"),
    ])
    def test_network_failure_is_transient(self, client, error):
        with patch.object(client.session, "request", side_effect=error):
            with pytest.raises(ProviderTransientError):
                client.get_order("ord_1")

    def test_invalid_json(self, client):
        response = Mock(status_code=200, text="<html>")
        response.json.side_effect = ValueError("not json")
        with patch.object(client.session, "request", return_value=response):
            with pytest.raises(ProviderError):
                client.get_order("ord_1")
