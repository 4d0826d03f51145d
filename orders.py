"""
Order placement, payment and status tracking.

An order is only ever marked paid after Clover has positively confirmed the
payment. Anything ambiguous (failed verification, timeout, unknown session
state) leaves it unpaid with the cart intact so the buyer can retry.
"""

import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo.database import Database

from catalog import Defer, run_deferred
from clover import to_cents
from database import ORDERS, PRODUCTS, USERS, create_document, serialize_doc, to_object_id, utcnow
from errors import CloverError, ExternalServiceError, NotFound, ValidationFailed
from realtime import ORDER_UPDATED
from schemas import (
    Address, Order, OrderItem, OrderRequest, ORDER_STATUSES,
    PAYMENT_CARD, PAYMENT_COD, PAYMENT_HOSTED, validation_messages,
)

logger = logging.getLogger(__name__)

NEXT_STATUS = {"Pending": "Processing", "Processing": "Shipped", "Shipped": "Delivered"}
TERMINAL_STATUSES = {"Delivered", "Cancelled"}
USER_CANCELLABLE = {"Pending", "Processing"}

# checkout session states that count as a confirmed payment
PAID_SESSION_STATES = {"PAID", "COMPLETED"}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    if current in TERMINAL_STATUSES:
        return False
    return target == "Cancelled" or NEXT_STATUS.get(current) == target


def effective_sizes(product: dict) -> List[str]:
    """Variant sizes of a product, falling back to the legacy flat `sizes` list."""
    variants = product.get("variants") or []
    if variants:
        return [v.get("size") for v in variants if v.get("size")]
    sizes = product.get("sizes")
    return list(sizes) if isinstance(sizes, list) else []


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return value is True


class OrderService:
    def __init__(self, db: Database, clover, notifier, settings):
        self.db = db
        self.clover = clover
        self.notifier = notifier
        self.settings = settings

    @property
    def orders(self):
        return self.db[ORDERS]

    # ------------------------------------------------------------------
    # placement
    # ------------------------------------------------------------------

    def _validated_order(self, user_id: str, request: OrderRequest, payment_method: str) -> dict:
        errors = []
        if not request.items:
            errors.append("items: At least one item is required")
        if not request.phone or not str(request.phone).strip():
            errors.append("phone: Phone number is required")
        if not request.amount:
            errors.append("amount: Order amount is required")
        address = None
        try:
            address = Address.model_validate(request.address or {})
        except ValidationError as exc:
            errors.extend(f"address.{msg}" for msg in validation_messages(exc))
        if errors:
            raise ValidationFailed("Complete order details are required.", errors)

        items = []
        size_errors = []
        size_messages = []
        for item in request.items:
            product = None
            oid = to_object_id(item.productId)
            if oid is not None:
                product = self.db[PRODUCTS].find_one({"_id": oid})
            if not product:
                raise NotFound(f"Product not found: {item.name or item.productId}")

            size = item.requested_size
            sizes = effective_sizes(product)
            # products without declared sizes accept any size
            if sizes and size not in sizes:
                size_messages.append(f"Size {size} not available for product {item.name or product.get('name')}")
                size_errors.append(f"items.{item.productId}.variantSize: {size} is not one of {', '.join(sizes)}")
                continue

            images = product.get("images") or []
            items.append(OrderItem(
                productId=str(product["_id"]),
                name=item.name or product.get("name", ""),
                quantity=item.quantity,
                price=item.price,
                variantSize=size,
                image=images[0].get("url", "") if images else "",
            ))
        if size_errors:
            message = size_messages[0] if len(size_messages) == 1 else "Requested sizes are not available"
            raise ValidationFailed(message, size_errors)

        order = Order(
            userId=str(user_id),
            phone=str(request.phone).strip(),
            address=address,
            items=items,
            amount=request.amount,
            paymentMethod=payment_method,
        )
        doc = order.model_dump()
        for line in doc["items"]:
            line["_id"] = ObjectId()
        return doc

    def _insert(self, doc: dict) -> dict:
        order_id = create_document(self.db, ORDERS, doc)
        return self.orders.find_one({"_id": ObjectId(order_id)})

    def _clear_cart(self, user_id: str) -> None:
        oid = to_object_id(user_id)
        if oid is not None:
            self.db[USERS].update_one({"_id": oid}, {"$set": {"cartData": {}}})

    def push_remote_order(self, order: dict) -> Optional[str]:
        if not (self.settings.clover_push_enabled and self.clover.is_configured()):
            return None
        try:
            remote = self.clover.create_remote_order(serialize_doc(order)) or {}
        except Exception:
            logger.warning("Clover order push for %s failed", order.get("_id"), exc_info=True)
            return None
        remote_id = remote.get("id")
        if remote_id:
            self.orders.update_one({"_id": order["_id"]}, {"$set": {"cloverOrderId": remote_id}})
        return remote_id

    def place_order_cod(self, user_id: str, request: OrderRequest, defer: Defer = None) -> dict:
        doc = self._validated_order(user_id, request, PAYMENT_COD)
        order = self._insert(doc)
        self._clear_cart(user_id)
        logger.info("COD order %s placed by %s", order["_id"], user_id)
        run_deferred(defer, self.push_remote_order, order)
        return serialize_doc(order)

    def place_order_hosted_checkout(self, user_id: str, request: OrderRequest, return_base: str) -> dict:
        if not self.clover.is_configured():
            raise ExternalServiceError("Clover", "online payment is not configured")
        doc = self._validated_order(user_id, request, PAYMENT_HOSTED)
        order = self._insert(doc)
        order_id = str(order["_id"])

        base = return_base.rstrip("/")
        success_url = f"{base}/verify?success=true&orderId={order_id}"
        cancel_url = f"{base}/verify?success=false&orderId={order_id}"
        user = self.db[USERS].find_one({"_id": to_object_id(user_id)}, {"email": 1, "name": 1}) or {}
        customer = {"email": user.get("email", "")}
        try:
            session = self.clover.create_hosted_checkout_session(serialize_doc(order), customer, success_url, cancel_url)
        except CloverError:
            self.orders.delete_one({"_id": order["_id"]})
            raise
        href = (session or {}).get("href")
        if not href:
            self.orders.delete_one({"_id": order["_id"]})
            raise ExternalServiceError("Clover", "checkout session has no redirect URL")

        self.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"checkoutSessionId": session.get("checkoutSessionId"), "updated_at": utcnow()}},
        )
        logger.info("Hosted checkout order %s created for %s", order_id, user_id)
        return {"orderId": order_id, "url": href}

    def _owned_order(self, user_id: str, order_id: str) -> dict:
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid, "userId": str(user_id)}) if oid else None
        if not order:
            raise NotFound("Order not found.")
        return order

    def _mark_paid(self, order: dict, extra: Dict[str, Any]) -> None:
        update = {"payment": True, "paidAt": utcnow(), "updated_at": utcnow(), **extra}
        self.orders.update_one({"_id": order["_id"]}, {"$set": update})
        self._clear_cart(order["userId"])

    def verify_hosted_checkout(self, user_id: str, order_id: str, success: Any = None,
                               checkout_id: Optional[str] = None) -> bool:
        order = self._owned_order(user_id, order_id)
        if order.get("payment"):
            return True
        if not _truthy(success):
            logger.info("Checkout for order %s returned without success", order_id)
            return False

        session_id = order.get("checkoutSessionId")
        if not session_id:
            return False
        if checkout_id and checkout_id != session_id:
            logger.warning("Checkout id mismatch for order %s: %s != %s", order_id, checkout_id, session_id)
            return False

        try:
            session = self.clover.get_hosted_checkout_session(session_id) or {}
        except CloverError as exc:
            logger.warning("Could not verify checkout %s for order %s: %s", session_id, order_id, exc.reason)
            return False

        state = str(session.get("status") or session.get("state") or "").upper()
        if state not in PAID_SESSION_STATES:
            logger.info("Checkout %s for order %s not paid (state=%r)", session_id, order_id, state)
            return False

        extra = {}
        if session.get("orderId"):
            extra["cloverOrderId"] = session["orderId"]
        self._mark_paid(order, extra)
        logger.info("Order %s paid via hosted checkout", order_id)
        return True

    def charge_order(self, user_id: str, order_id: str, token: str) -> dict:
        order = self._owned_order(user_id, order_id)
        if order.get("payment"):
            raise ValidationFailed("Order is already paid.")
        if order.get("status") == "Cancelled":
            raise ValidationFailed("Order is cancelled.")

        charge = self.clover.charge_token(token, to_cents(order.get("amount")))
        if charge is None:
            raise ExternalServiceError("Clover", "online payment is not configured")
        if not (charge.get("paid") is True or charge.get("status") == "succeeded"):
            raise ExternalServiceError("Clover", "charge was not approved")

        self._mark_paid(order, {"paymentMethod": PAYMENT_CARD, "chargeId": charge.get("id")})
        logger.info("Order %s paid by card charge %s", order_id, charge.get("id"))
        return serialize_doc(self.orders.find_one({"_id": order["_id"]}))

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def update_status(self, order_id: Optional[str], status: Optional[str], item_id: Optional[str] = None) -> dict:
        if not order_id or not status:
            raise ValidationFailed("Order ID and status are required.")
        if status not in ORDER_STATUSES:
            raise ValidationFailed("Invalid status value.", [f"status: must be one of {', '.join(ORDER_STATUSES)}"])

        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None

        if item_id:
            iid = to_object_id(item_id)
            item = next((i for i in (order or {}).get("items", []) if iid is not None and i.get("_id") == iid), None)
            if not order or item is None:
                raise NotFound("Order or item not found.")
            if not can_transition(item.get("status", "Pending"), status):
                raise ValidationFailed(f"Cannot change item status from {item.get('status')} to {status}.")
            self.orders.update_one(
                {"_id": oid, "items._id": iid},
                {"$set": {"items.$.status": status, "updated_at": utcnow()}},
            )
        else:
            if not order:
                raise NotFound("Order not found.")
            if not can_transition(order.get("status", "Pending"), status):
                raise ValidationFailed(f"Cannot change order status from {order.get('status')} to {status}.")
            self.orders.update_one({"_id": oid}, {"$set": {"status": status, "updated_at": utcnow()}})

        updated = self.orders.find_one({"_id": oid})
        self.notifier.emit_to_user(updated.get("userId"), ORDER_UPDATED, {
            "orderId": str(oid),
            "itemId": item_id,
            "status": status,
        })
        return self._join([updated])[0]

    def cancel_order_by_user(self, user_id: str, order_id: str) -> dict:
        order = self._owned_order(user_id, order_id)
        if order.get("status") not in USER_CANCELLABLE:
            raise ValidationFailed(f"Order can no longer be cancelled (status {order.get('status')}).")
        self.orders.update_one({"_id": order["_id"]}, {"$set": {"status": "Cancelled", "updated_at": utcnow()}})
        logger.info("Order %s cancelled by user %s", order_id, user_id)
        return serialize_doc(self.orders.find_one({"_id": order["_id"]}))

    # ------------------------------------------------------------------
    # listings
    # ------------------------------------------------------------------

    def _join(self, orders: List[dict]) -> List[dict]:
        user_oids = {to_object_id(o.get("userId")) for o in orders} - {None}
        product_oids = {to_object_id(i.get("productId")) for o in orders for i in o.get("items", [])} - {None}
        users = {
            str(u["_id"]): {"_id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
            for u in self.db[USERS].find({"_id": {"$in": list(user_oids)}}, {"name": 1, "email": 1})
        }
        products = {
            str(p["_id"]): serialize_doc(p)
            for p in self.db[PRODUCTS].find({"_id": {"$in": list(product_oids)}}, {"name": 1, "images": 1, "variants": 1})
        }

        result = []
        for order in orders:
            data = serialize_doc(order)
            data["user"] = users.get(data.get("userId"))
            for item in data.get("items", []):
                # deleted products leave the snapshot fields as the only record
                item["product"] = products.get(item.get("productId"))
            result.append(data)
        return result

    def all_orders(self) -> List[dict]:
        return self._join(list(self.orders.find().sort("created_at", -1)))

    def user_orders(self, user_id: str) -> List[dict]:
        return self._join(list(self.orders.find({"userId": str(user_id)}).sort("created_at", -1)))
