import requests
from typing import Optional, Dict
from requests.exceptions import ConnectionError, Timeout, RequestException

from fulfillment.exceptions import ProviderError, ProviderTransientError, ProviderValidationError
from fulfillment.logging_config import get_logger

logger = get_logger(__name__)

BASE_URLS = {
    "production": "https://api.prodigi.com/v4.0",
    "sandbox": "https://api.sandbox.prodigi.com/v4.0",
}

SIZE_CODES = {"small": "SM", "medium": "MD", "large": "LG", "extra_large": "XL"}
STYLE_CODES = {"black": "BLK", "white": "WHT", "natural": "NAT", "gold": "GLD", "silver": "SLV"}
MATERIAL_CODES = {"wood": "WD"}
DEFAULT_SKU = "FRAME-MD-BLK-WD"

# Provider order status vocabulary -> local dropship status
REMOTE_STATUS_MAP = {
    "InProgress": "processing",
    "Complete": "shipped",
    "Shipped": "shipped",
    "Delivered": "delivered",
    "Cancelled": "cancelled",
    "OnHold": "pending",
    "Error": "failed",
}


def get_product_sku(frame_size, frame_style, frame_material):
    """Map a frame specification to the provider SKU, FRAME-MD-BLK-WD when unknown."""
    size = SIZE_CODES.get(frame_size)
    style = STYLE_CODES.get(frame_style)
    material = MATERIAL_CODES.get(frame_material)
    if not (size and style and material):
        return DEFAULT_SKU
    return f"FRAME-{size}-{style}-{material}"


def map_remote_status(remote_status):
    if not remote_status:
        return None
    return REMOTE_STATUS_MAP.get(remote_status, remote_status.lower())


def _recipient_name(address):
    first = address.get("firstName") or address.get("first_name") or ""
    last = address.get("lastName") or address.get("last_name") or ""
    name = f"{first} {last}".strip()
    return name or address.get("name") or "Customer"


def build_order_request(merchant_reference, items, shipping_address, customer_email, customer_phone=None):
    """
    Build a provider order request.

    Args:
        merchant_reference: Local order number, echoed back by the provider
        items: list of dicts with sku, quantity, image_url
        shipping_address: Stored address dict (address1/line1, city, state, zip/postal_code, country)
        customer_email: Customer email for provider notifications
        customer_phone: Optional phone number
    """
    return {
        "merchantReference": merchant_reference,
        "shippingMethod": "Standard",
        "recipient": {
            "name": _recipient_name(shipping_address),
            "email": customer_email,
            "phoneNumber": customer_phone,
            "address": {
                "line1": shipping_address.get("address1") or shipping_address.get("line1"),
                "line2": shipping_address.get("address2") or shipping_address.get("line2"),
                "townOrCity": shipping_address.get("city"),
                "stateOrCounty": shipping_address.get("state"),
                "postalOrZipCode": shipping_address.get("zip") or shipping_address.get("postal_code"),
                "countryCode": shipping_address.get("country"),
            },
        },
        "items": [
            {
                "merchantReference": f"{merchant_reference}-{index + 1}",
                "sku": item["sku"],
                "copies": item["quantity"],
                "sizing": "fillPrintArea",
                "assets": [{"printArea": "default", "url": item["image_url"]}],
            }
            for index, item in enumerate(items)
        ],
    }


def normalize_order(data):
    """
    Flatten a provider order response into
    {id, status, tracking_number, tracking_url, estimated_delivery, raw}.

    The v4 API wraps the order in {"outcome": ..., "order": {...}} and reports
    status as {"stage": ...}; older responses are flat.
    """
    data = data or {}
    order = data.get("order") if isinstance(data.get("order"), dict) else data

    status = order.get("status")
    if isinstance(status, dict):
        status = status.get("stage")

    tracking_number = order.get("trackingNumber")
    tracking_url = order.get("trackingUrl")
    for shipment in order.get("shipments") or []:
        tracking = shipment.get("tracking") or {}
        if tracking.get("number"):
            tracking_number = tracking_number or tracking.get("number")
            tracking_url = tracking_url or tracking.get("url")
            break

    return {
        "id": order.get("id"),
        "status": status,
        "tracking_number": tracking_number,
        "tracking_url": tracking_url,
        "estimated_delivery": order.get("estimatedDelivery"),
        "raw": data,
    }


class ProdigiClient:
    """Prodigi print API connection layer using a requests session."""

    def __init__(self, api_key, environment="sandbox", timeout=20.0):
        if not api_key:
            raise ValueError("Missing Prodigi API key")
        if environment not in BASE_URLS:
            raise ValueError(f"Unknown Prodigi environment: {environment}")

        self.api_key = api_key
        self.environment = environment
        self.base_url = BASE_URLS[environment]
        self.timeout = timeout

        # Reusable HTTP session
        self.session = requests.Session()
        self.session.headers.update({
            "X-API-Key": self.api_key,
            "Content-Type": "application/json",
        })

    @classmethod
    def from_config(cls, config):
        return cls(
            config.get("PRODIGI_API_KEY"),
            environment=config.get("PRODIGI_ENVIRONMENT", "sandbox"),
            timeout=config.get("PRODIGI_TIMEOUT_SECONDS", 20.0),
        )

    def _request(self, method: str, endpoint: str, **kwargs):
        """
        Make a single request with a bounded timeout.

        Raises:
            ProviderValidationError: 4xx responses (request will not succeed on retry)
            ProviderTransientError: 5xx, timeouts and connection failures
        """
        url = f"{self.base_url}{endpoint}"
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (ConnectionError, Timeout) as e:
            logger.warning("Prodigi request failed", method=method, endpoint=endpoint, error=str(e))
            raise ProviderTransientError(f"Prodigi {method} {endpoint} failed: {e}") from e
        except RequestException as e:
            raise ProviderTransientError(f"Prodigi {method} {endpoint} failed: {e}") from e

        if 400 <= r.status_code < 500:
            logger.warning("Prodigi rejected request", method=method, endpoint=endpoint, status_code=r.status_code)
            raise ProviderValidationError(
                f"Prodigi API error: {r.status_code} {r.text}",
                status_code=r.status_code,
                response_body=r.text,
            )
        if r.status_code >= 500:
            raise ProviderTransientError(
                f"Prodigi API error: {r.status_code} {r.text}",
                status_code=r.status_code,
                response_body=r.text,
            )

        if not r.text:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise ProviderError(f"Prodigi returned invalid JSON for {method} {endpoint}") from e

    def _get(self, endpoint: str, params: Optional[Dict] = None):
        return self._request("GET", endpoint, params=params)

    def _post(self, endpoint: str, data: Optional[Dict] = None):
        return self._request("POST", endpoint, json=data)

    # -------------------------
    # Orders
    # -------------------------
    def create_order(self, order_request: Dict) -> Dict:
        return normalize_order(self._post("/orders", order_request))

    def get_order(self, provider_order_id: str) -> Dict:
        return normalize_order(self._get(f"/orders/{provider_order_id}"))

    def cancel_order(self, provider_order_id: str) -> Dict:
        return normalize_order(self._post(f"/orders/{provider_order_id}/actions/cancel"))

    # -------------------------
    # Catalogue
    # -------------------------
    def get_products(self) -> list:
        """List catalogue products; used as a reachability check."""
        data = self._get("/products") or {}
        return data.get("products") or []
