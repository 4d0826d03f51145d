"""
Clover REST client.

Thin wrapper over the Clover v3 merchant API, the hosted checkout service and
the ecommerce charge endpoint. All money goes over the wire in cents.

Reads return an empty result when the client is not configured; callers treat
that as "skip". Any non-2xx answer, timeout or connection problem raises
CloverError; whether that is fatal is the caller's decision.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from errors import CloverError

logger = logging.getLogger(__name__)

# Clover caps list responses at 100 elements by default
PAGE_SIZE = 100


def to_cents(amount) -> int:
    return int(round(float(amount or 0) * 100))


def from_cents(amount) -> float:
    return round(int(amount or 0) / 100.0, 2)


class CloverClient:
    def __init__(self, settings, session: Optional[requests.Session] = None):
        self.merchant_id = settings.clover_merchant_id
        self.api_token = settings.clover_api_token
        self.host = settings.clover_base_url.rstrip("/")
        self.base_url = f"{self.host}/v3/merchants"
        self.checkout_url = f"{self.host}/invoicingcheckoutservice/v1/checkouts"
        self.charge_urls = [settings.clover_charge_url, settings.clover_charge_fallback_url]
        self.timeout = settings.clover_timeout
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.merchant_id and self.api_token)

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _merchant_url(self, path: str) -> str:
        return f"{self.base_url}/{self.merchant_id}/{path.lstrip('/')}"

    def _request(self, method: str, url: str, *, params=None, json=None, headers=None) -> Any:
        try:
            resp = self.session.request(
                method, url,
                params=params,
                json=json,
                headers=headers or self._headers(),
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning("Clover %s %s timed out after %ss", method, url, self.timeout)
            raise CloverError("request timed out")
        except requests.RequestException as exc:
            logger.warning("Clover %s %s failed: %s", method, url, exc)
            raise CloverError(f"connection failed: {exc}")

        if not resp.ok:
            body = (resp.text or "")[:500]
            logger.warning("Clover %s %s -> %s %s %s", method, url, resp.status_code, resp.reason, body)
            raise CloverError(resp.reason or f"HTTP {resp.status_code}", status=resp.status_code)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    # ------------------------------------------------------------------
    # catalog reads
    # ------------------------------------------------------------------

    def _list_all(self, path: str, params: Optional[Dict[str, str]] = None) -> List[dict]:
        elements: List[dict] = []
        offset = 0
        while True:
            data = self._request("GET", self._merchant_url(path),
                                 params={**(params or {}), "limit": PAGE_SIZE, "offset": offset})
            page = (data or {}).get("elements") or []
            elements.extend(page)
            if len(page) < PAGE_SIZE:
                return elements
            offset += PAGE_SIZE

    def list_remote_products(self) -> List[dict]:
        if not self.is_configured():
            return []
        return self._list_all("items", {"expand": "categories,tags"})

    def list_remote_categories(self) -> List[dict]:
        if not self.is_configured():
            return []
        return self._list_all("categories")

    def list_remote_orders(self) -> List[dict]:
        if not self.is_configured():
            return []
        return self._list_all("orders", {"expand": "lineItems,customers,payments"})

    def get_remote_product_by_sku(self, sku: str) -> Optional[dict]:
        if not self.is_configured() or not sku:
            return None
        data = self._request("GET", self._merchant_url("items"), params={"filter": f"sku={sku}"})
        elements = data.get("elements") or []
        return elements[0] if elements else None

    def get_remote_item(self, item_id: str) -> Optional[dict]:
        if not self.is_configured() or not item_id:
            return None
        return self._request("GET", self._merchant_url(f"items/{item_id}"), params={"expand": "categories"})

    # ------------------------------------------------------------------
    # catalog writes
    # ------------------------------------------------------------------

    @staticmethod
    def _item_payload(product: dict) -> dict:
        return {
            "name": product.get("name"),
            "price": to_cents(product.get("price")),
            "sku": product.get("productId"),
            "hidden": not product.get("showOnPOS", True),
        }

    def create_remote_product(self, product: dict) -> Optional[dict]:
        if not self.is_configured():
            return None
        return self._request("POST", self._merchant_url("items"), json=self._item_payload(product))

    def update_remote_product(self, clover_id: str, product: dict) -> Optional[dict]:
        if not self.is_configured():
            return None
        # Clover takes POST for partial item updates
        return self._request("POST", self._merchant_url(f"items/{clover_id}"), json=self._item_payload(product))

    def delete_remote_product(self, clover_id: str) -> Optional[dict]:
        if not self.is_configured():
            return None
        return self._request("DELETE", self._merchant_url(f"items/{clover_id}"))

    def link_product_to_category(self, item_id: str, category_id: str) -> Optional[dict]:
        if not self.is_configured():
            return None
        body = {"elements": [{"category": {"id": category_id}, "item": {"id": item_id}}]}
        return self._request("POST", self._merchant_url("category_items"), json=body)

    def unlink_product_from_category(self, item_id: str, category_id: str) -> Optional[dict]:
        if not self.is_configured():
            return None
        body = {"elements": [{"category": {"id": category_id}, "item": {"id": item_id}}]}
        return self._request("POST", self._merchant_url("category_items"), params={"delete": "true"}, json=body)

    def update_remote_stock(self, item_id: str, quantity: int) -> Optional[dict]:
        if not self.is_configured():
            return None
        return self._request("POST", self._merchant_url(f"item_stocks/{item_id}"), json={"quantity": int(quantity)})

    # ------------------------------------------------------------------
    # orders and payments
    # ------------------------------------------------------------------

    def create_remote_order(self, order: dict) -> Optional[dict]:
        if not self.is_configured():
            return None
        line_items = [
            {
                "name": item.get("name"),
                "price": to_cents(item.get("price")),
                "unitQty": int(item.get("quantity") or 1),
            }
            for item in order.get("items") or []
        ]
        payload = {
            "currency": "USD",
            "title": f"Order #{order.get('_id')}",
            "note": f"Placed via Web. Payment: {order.get('paymentMethod')}",
            "lineItems": line_items,
            "state": "LOCKED" if order.get("payment") else "OPEN",
            "manualTransaction": True,
            "total": to_cents(order.get("amount")),
        }
        return self._request("POST", self._merchant_url("orders"), json=payload)

    def create_hosted_checkout_session(self, order: dict, customer: Optional[dict],
                                       success_url: str, cancel_url: str) -> Optional[dict]:
        """Create a hosted checkout page; the response carries `href` and `checkoutSessionId`."""
        if not self.is_configured():
            return None
        customer = customer or {}
        address = order.get("address") or {}
        payload = {
            "customer": {
                "email": customer.get("email") or "",
                "firstName": address.get("firstName") or customer.get("firstName") or "",
                "lastName": address.get("lastName") or customer.get("lastName") or "",
                "phoneNumber": order.get("phone") or "",
            },
            "shoppingCart": {
                "lineItems": [
                    {
                        "name": item.get("name"),
                        "price": to_cents(item.get("price")),
                        "unitQty": int(item.get("quantity") or 1),
                        "note": item.get("variantSize") or "",
                    }
                    for item in order.get("items") or []
                ],
            },
            "redirectUrls": {
                "success": success_url,
                "failure": cancel_url,
                "cancel": cancel_url,
            },
        }
        headers = self._headers({"X-Clover-Merchant-Id": self.merchant_id})
        return self._request("POST", self.checkout_url, json=payload, headers=headers)

    def get_hosted_checkout_session(self, session_id: str) -> Optional[dict]:
        if not self.is_configured() or not session_id:
            return None
        headers = self._headers({"X-Clover-Merchant-Id": self.merchant_id})
        return self._request("GET", f"{self.checkout_url}/{session_id}", headers=headers)

    def charge_token(self, token: str, amount: int) -> Optional[dict]:
        """Charge a card token for `amount` cents.

        Sandbox and production charge hosts are not interchangeable and either
        may be the live one, so the fallback host is tried when the first fails.
        """
        if not self.is_configured():
            return None
        payload = {"amount": int(amount), "currency": "usd", "source": token}
        last_error = None
        for url in self.charge_urls:
            try:
                return self._request("POST", url, json=payload)
            except CloverError as exc:
                logger.warning("Clover charge via %s failed: %s", url, exc.reason)
                last_error = exc
        raise CloverError(f"charge failed: {last_error.reason if last_error else 'no endpoint'}",
                          status=last_error.status if last_error else None)
