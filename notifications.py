"""
Back-in-stock waitlist and the per-user notification inbox.

The user document is the source of truth; realtime pushes are sent after
the document has been written.
"""

import logging
from typing import Optional

from bson import ObjectId
from pymongo.database import Database

from database import PRODUCTS, USERS, to_object_id, utcnow
from errors import NotFound
from realtime import NOTIFICATIONS_UPDATED
from schemas import Notification

logger = logging.getLogger(__name__)


def waitlist_key(product_id) -> str:
    return f"notifications_waitlist.{product_id}"


def back_in_stock_message(product: dict) -> str:
    return f"{product.get('name') or 'A product you wanted'} is back in stock!"


def thumbnail(product: Optional[dict]) -> str:
    images = (product or {}).get("images") or []
    if not images:
        return ""
    return images[0].get("url") or ""


class NotificationService:
    def __init__(self, db: Database, notifier):
        self.db = db
        self.notifier = notifier

    def _user_oid(self, user_id) -> ObjectId:
        oid = to_object_id(user_id)
        if oid is None or not self.db[USERS].find_one({"_id": oid}, {"_id": 1}):
            raise NotFound("User not found")
        return oid

    @staticmethod
    def to_payload(entry: dict, product: Optional[dict]) -> dict:
        created = entry.get("createdAt")
        return {
            "id": str(entry["_id"]),
            "productId": entry.get("productId"),
            "message": entry.get("message"),
            "read": bool(entry.get("read")),
            "createdAt": created.isoformat() if hasattr(created, "isoformat") else created,
            "product": {
                "name": (product or {}).get("name", ""),
                "thumbnail": thumbnail(product),
            },
        }

    # ------------------------------------------------------------------
    # restock fan-out
    # ------------------------------------------------------------------

    def notify_back_in_stock(self, product: dict) -> int:
        """Notify and clear every user waiting on `product`. Returns notifications created."""
        product_id = str(product["_id"])
        key = waitlist_key(product_id)
        message = back_in_stock_message(product)
        created = 0

        for row in self.db[USERS].find({key: True}, {"_id": 1}):
            user_id = row["_id"]
            try:
                if self._notify_user(user_id, product, product_id, key, message):
                    created += 1
            except Exception:
                logger.exception("Waitlist notification failed for user %s product %s", user_id, product_id)

        logger.info("Restock of %s: %d notification(s) created", product_id, created)
        return created

    def _notify_user(self, user_id: ObjectId, product: dict, product_id: str, key: str, message: str) -> bool:
        entry = {
            "_id": ObjectId(),
            **Notification(productId=product_id, message=message, createdAt=utcnow()).model_dump(),
        }
        # Push only while still waiting and without an unread entry for the product
        pushed = self.db[USERS].update_one(
            {
                "_id": user_id,
                key: True,
                "$nor": [{"notifications": {"$elemMatch": {"productId": product_id, "read": {"$ne": True}}}}],
            },
            {"$push": {"notifications": entry}, "$unset": {key: ""}},
        )
        if pushed.modified_count != 1:
            # Waitlist entry is cleared even when the notification is a duplicate
            self.db[USERS].update_one({"_id": user_id}, {"$unset": {key: ""}})
            return False

        self.notifier.notification(str(user_id), self.to_payload(entry, product))
        return True

    # ------------------------------------------------------------------
    # waitlist
    # ------------------------------------------------------------------

    def subscribe(self, user_id, product_id: str) -> None:
        oid = self._user_oid(user_id)
        product_oid = to_object_id(product_id)
        if product_oid is None or not self.db[PRODUCTS].find_one({"_id": product_oid}, {"_id": 1}):
            raise NotFound("Product not found")
        self.db[USERS].update_one({"_id": oid}, {"$set": {waitlist_key(product_oid): True}})

    def unsubscribe(self, user_id, product_id: str) -> None:
        oid = self._user_oid(user_id)
        self.db[USERS].update_one({"_id": oid}, {"$unset": {waitlist_key(product_id): ""}})

    def is_subscribed(self, user_id, product_id: str) -> bool:
        oid = self._user_oid(user_id)
        user = self.db[USERS].find_one({"_id": oid}, {"notifications_waitlist": 1})
        return bool((user.get("notifications_waitlist") or {}).get(str(product_id)))

    # ------------------------------------------------------------------
    # inbox
    # ------------------------------------------------------------------

    def list_notifications(self, user_id) -> dict:
        oid = self._user_oid(user_id)
        user = self.db[USERS].find_one({"_id": oid}, {"notifications": 1})
        entries = sorted(
            user.get("notifications") or [],
            key=lambda n: n.get("createdAt") or utcnow(),
            reverse=True,
        )

        product_oids = {to_object_id(n.get("productId")) for n in entries} - {None}
        products = {
            str(p["_id"]): p
            for p in self.db[PRODUCTS].find({"_id": {"$in": list(product_oids)}}, {"name": 1, "images": 1})
        }
        notifications = [self.to_payload(n, products.get(n.get("productId"))) for n in entries]
        unread = sum(1 for n in notifications if not n["read"])
        return {"notifications": notifications, "unreadCount": unread}

    def _push_inbox(self, user_id) -> None:
        inbox = self.list_notifications(user_id)
        self.notifier.emit_to_user(str(user_id), NOTIFICATIONS_UPDATED, inbox)

    def mark_read(self, user_id, notification_id: str) -> None:
        oid = self._user_oid(user_id)
        nid = to_object_id(notification_id)
        result = self.db[USERS].update_one(
            {"_id": oid, "notifications._id": nid},
            {"$set": {"notifications.$.read": True}},
        ) if nid else None
        if result is None or result.matched_count == 0:
            raise NotFound("Notification not found")
        self._push_inbox(user_id)

    def delete_notification(self, user_id, notification_id: str) -> None:
        oid = self._user_oid(user_id)
        nid = to_object_id(notification_id)
        result = self.db[USERS].update_one(
            {"_id": oid, "notifications._id": nid},
            {"$pull": {"notifications": {"_id": nid}}},
        ) if nid else None
        if result is None or result.matched_count == 0:
            raise NotFound("Notification not found")
        self._push_inbox(user_id)

    def clear_notifications(self, user_id) -> None:
        oid = self._user_oid(user_id)
        self.db[USERS].update_one({"_id": oid}, {"$set": {"notifications": []}})
        self._push_inbox(user_id)
