"""
Catalog reconciliation between the local store and Clover.

Pull (Clover -> local) is an idempotent upsert keyed by the Clover id and is
safe to run on demand or on a schedule. Push (local -> Clover) runs after an
admin write has been committed locally; it is gated by CLOVER_PUSH_ENABLED
and its failures are only logged.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pymongo.database import Database

from clover import from_cents
from database import CATEGORIES, PRODUCTS, create_document, update_document, utcnow
from schemas import Category, Product

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    synced: int = 0
    created: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"synced": self.synced, "created": self.created, "failed": self.failed, "errors": self.errors}


def remote_category_names(item: dict) -> Optional[List[str]]:
    """Category names of an expanded Clover item; None when categories were not expanded."""
    categories = item.get("categories")
    if not isinstance(categories, dict) or not isinstance(categories.get("elements"), list):
        return None
    return [c.get("name") for c in categories["elements"] if c.get("name")]


class CatalogReconciler:
    def __init__(self, db: Database, clover, settings):
        self.db = db
        self.clover = clover
        self.settings = settings

    # ------------------------------------------------------------------
    # pull
    # ------------------------------------------------------------------

    def sync_products(self) -> SyncResult:
        result = SyncResult()
        for item in self.clover.list_remote_products():
            try:
                created = self.upsert_remote_product(item)
            except Exception as exc:
                logger.exception("Failed to sync Clover item %s", item.get("id"))
                result.failed += 1
                result.errors.append(f"{item.get('id')}: {exc}")
                continue
            result.synced += 1
            result.created += int(created)
        logger.info("Clover product sync: %d synced, %d created, %d failed",
                    result.synced, result.created, result.failed)
        return result

    def upsert_remote_product(self, item: dict) -> bool:
        """Create or refresh the local copy of a Clover item. Returns True when created."""
        clover_id = item.get("id")
        if not clover_id:
            raise ValueError("remote item has no id")

        products = self.db[PRODUCTS]
        categories = remote_category_names(item)
        local = products.find_one({"externalCloverId": clover_id})
        if local is None:
            keys = [k for k in (item.get("sku"), clover_id) if k]
            local = products.find_one({"productId": {"$in": keys}, "externalCloverId": {"$exists": False}})

        if local is None:
            product = Product(
                productId=clover_id,
                externalCloverId=clover_id,
                name=item.get("name") or clover_id,
                description=item.get("description") or item.get("name") or "",
                price=from_cents(item.get("price")),
                showOnPOS=not item.get("hidden", False),
                categories=categories or [],
                stockCount=0,
                inStock=False,
                images=[],
            )
            create_document(self.db, PRODUCTS, product.to_document())
            return True

        # Only POS-owned fields are refreshed; admin-curated fields stay as they are
        refreshed = {
            "externalCloverId": clover_id,
            "name": item.get("name") or local.get("name"),
            "price": from_cents(item.get("price")),
            "showOnPOS": not item.get("hidden", False),
        }
        if categories is not None:
            refreshed["categories"] = categories
        changed = {k: v for k, v in refreshed.items() if local.get(k) != v}
        if changed:
            update_document(self.db, PRODUCTS, local["_id"], changed)
        return False

    def sync_categories(self) -> SyncResult:
        result = SyncResult()
        for remote in self.clover.list_remote_categories():
            try:
                created = self.upsert_remote_category(remote)
            except Exception as exc:
                logger.exception("Failed to sync Clover category %s", remote.get("id"))
                result.failed += 1
                result.errors.append(f"{remote.get('id')}: {exc}")
                continue
            result.synced += 1
            result.created += int(created)
        logger.info("Clover category sync: %d synced, %d created, %d failed",
                    result.synced, result.created, result.failed)
        return result

    def upsert_remote_category(self, remote: dict) -> bool:
        clover_id = remote.get("id")
        name = (remote.get("name") or "").strip()
        if not clover_id or not name:
            raise ValueError("remote category needs an id and a name")

        categories = self.db[CATEGORIES]
        local = categories.find_one({"cloverId": clover_id})
        if local is None:
            # names are unique locally, so an unsynced namesake gets linked instead of duplicated
            local = categories.find_one({"name": name, "cloverId": {"$exists": False}})

        if local is None:
            category = Category(name=name, categoryId=clover_id, cloverId=clover_id)
            create_document(self.db, CATEGORIES, category.model_dump())
            return True

        changed = {k: v for k, v in {"cloverId": clover_id, "name": name}.items() if local.get(k) != v}
        if changed:
            update_document(self.db, CATEGORIES, local["_id"], changed)
        return False

    # ------------------------------------------------------------------
    # webhook
    # ------------------------------------------------------------------

    def handle_webhook(self, payload: dict) -> dict:
        """Apply Clover inventory webhook updates ({merchants: {mid: [{objectId, type}]}})."""
        if payload.get("verificationCode"):
            logger.info("Clover webhook verification code received: %s", payload["verificationCode"])
            return {"verified": True, "applied": 0, "failed": 0}

        applied, failed = 0, 0
        for merchant_id, updates in (payload.get("merchants") or {}).items():
            for update in updates or []:
                object_id = update.get("objectId") or ""
                kind, _, remote_id = object_id.partition(":")
                if kind != "I" or not remote_id:
                    continue
                try:
                    self.sync_item(remote_id, deleted=update.get("type") == "DELETE")
                    applied += 1
                except Exception:
                    logger.exception("Webhook update %s for merchant %s failed", object_id, merchant_id)
                    failed += 1
        return {"verified": False, "applied": applied, "failed": failed}

    def sync_item(self, clover_id: str, deleted: bool = False) -> None:
        if deleted:
            # the local record stays; it simply stops being linked to Clover
            self.db[PRODUCTS].update_one(
                {"externalCloverId": clover_id},
                {"$unset": {"externalCloverId": ""}, "$set": {"updated_at": utcnow()}},
            )
            return
        item = self.clover.get_remote_item(clover_id)
        if item:
            self.upsert_remote_product(item)

    # ------------------------------------------------------------------
    # push
    # ------------------------------------------------------------------

    def push_enabled(self) -> bool:
        return bool(self.settings.clover_push_enabled and self.clover.is_configured())

    def push_product(self, product: dict, previous: Optional[dict] = None) -> Optional[str]:
        """Mirror a locally written product to Clover. Returns the Clover id or None."""
        if not self.push_enabled():
            return None
        try:
            clover_id = product.get("externalCloverId")
            if clover_id:
                self.clover.update_remote_product(clover_id, product)
            else:
                remote = self.clover.get_remote_product_by_sku(product.get("productId"))
                if remote:
                    clover_id = remote.get("id")
                    self.clover.update_remote_product(clover_id, product)
                else:
                    clover_id = (self.clover.create_remote_product(product) or {}).get("id")
                if clover_id:
                    self.db[PRODUCTS].update_one({"_id": product["_id"]}, {"$set": {"externalCloverId": clover_id}})
            if not clover_id:
                return None

            self._push_categories(clover_id, product, previous)
            if previous is None or previous.get("stockCount") != product.get("stockCount"):
                self.clover.update_remote_stock(clover_id, product.get("stockCount") or 0)
            return clover_id
        except Exception:
            logger.warning("Clover push for product %s failed", product.get("productId"), exc_info=True)
            return None

    def _push_categories(self, clover_id: str, product: dict, previous: Optional[dict]) -> None:
        new = set(product.get("categories") or [])
        old = set((previous or {}).get("categories") or [])
        names = list(new | old)
        if not names:
            return
        remote_ids = {
            c["name"]: c["cloverId"]
            for c in self.db[CATEGORIES].find({"name": {"$in": names}, "cloverId": {"$exists": True}})
        }
        for name in new - old:
            if name in remote_ids:
                try:
                    self.clover.link_product_to_category(clover_id, remote_ids[name])
                except Exception:
                    logger.warning("Linking %s to Clover category %s failed", clover_id, name, exc_info=True)
        for name in old - new:
            if name in remote_ids:
                try:
                    self.clover.unlink_product_from_category(clover_id, remote_ids[name])
                except Exception:
                    logger.warning("Unlinking %s from Clover category %s failed", clover_id, name, exc_info=True)

    def push_delete(self, product: dict) -> bool:
        clover_id = product.get("externalCloverId")
        if not clover_id or not self.push_enabled():
            return False
        try:
            self.clover.delete_remote_product(clover_id)
        except Exception:
            logger.warning("Clover delete for %s failed", clover_id, exc_info=True)
            return False
        return True
