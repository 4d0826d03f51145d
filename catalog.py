"""
Product catalog operations.

Order of work inside a mutating call: validate, decode, upload or replace
images, persist, then side effects (waitlist fan-out, Clover push, realtime
broadcast). Side effects never undo the local write.
"""

import logging
import math
import re
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import PRODUCTS, USERS, create_document, get_raw_by_id, serialize_doc, to_object_id, utcnow
from errors import ExternalServiceError, NotFound, ValidationFailed
from notifications import waitlist_key
from schemas import MAX_IMAGES, Product, ProductInput, ProductUpdate, validation_messages

logger = logging.getLogger(__name__)

AGE_DISCLAIMER = (
    "WARNING: This product contains nicotine. Nicotine is an addictive chemical. "
    "For sale to adults 21 and over only."
)

LISTING_FIELDS = {
    "productId": 1, "name": 1, "price": 1, "images": 1, "categories": 1, "flavour": 1,
    "variants": 1, "stockCount": 1, "inStock": 1, "showOnPOS": 1, "bestseller": 1,
}

Defer = Optional[Callable[..., Any]]


def _join_words(words: List[str]) -> str:
    if len(words) <= 1:
        return "".join(words)
    return ", ".join(words[:-1]) + " and " + words[-1]


def _sweetness_label(level: int) -> str:
    if level <= 3:
        return "subtle sweetness"
    if level <= 6:
        return "balanced sweetness"
    return "rich, dessert-like sweetness"


def _mint_label(level: int) -> str:
    if level == 0:
        return "no menthol"
    if level <= 4:
        return "a light cooling touch"
    if level <= 7:
        return "a refreshing chill"
    return "an icy menthol blast"


def generate_description(name: str, flavour: str = "", categories: Iterable[str] = (),
                         sizes: Iterable[str] = (), sweetness: int = 5, mint: int = 0) -> str:
    categories = [c for c in categories if c]
    sizes = [s for s in sizes if s]

    intro = f"Discover {name}"
    if flavour:
        intro += f", a {flavour} flavour"
    if categories:
        intro += f" from our {_join_words(categories)} range"
    sentences = [intro + "."]
    if sizes:
        sentences.append(f"Available in {_join_words(sizes)}.")
    sentences.append(
        f"Expect {_sweetness_label(sweetness)} ({sweetness}/10) with {_mint_label(mint)} ({mint}/10)."
    )
    return " ".join(sentences) + "\n\n" + AGE_DISCLAIMER


def clean_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty form values so they count as "not supplied"; description keeps ""."""
    cleaned = {}
    for key, value in (fields or {}).items():
        if value is None:
            continue
        if isinstance(value, str) and not value.strip() and key != "description":
            continue
        cleaned[key] = value
    return cleaned


def run_deferred(defer: Defer, fn: Callable[..., Any], *args) -> None:
    if defer is not None:
        defer(fn, *args)
    else:
        fn(*args)


class CatalogService:
    def __init__(self, db: Database, images, notifier, reconciler, notifications):
        self.db = db
        self.images = images
        self.notifier = notifier
        self.reconciler = reconciler
        self.notifications = notifications

    @property
    def products(self):
        return self.db[PRODUCTS]

    def _get_raw(self, product_id: str) -> dict:
        product = get_raw_by_id(self.db, PRODUCTS, product_id)
        if not product:
            raise NotFound("Product not found")
        return product

    def get_product(self, product_id: str) -> dict:
        return serialize_doc(self._get_raw(product_id))

    def _upload_all(self, files: List[Any]) -> List[dict]:
        uploaded = []
        try:
            for file in files:
                uploaded.append(self.images.upload(file))
        except ExternalServiceError:
            self._destroy_images(uploaded)
            raise
        return uploaded

    def _destroy_images(self, images: Iterable[dict]) -> None:
        for img in images:
            if img and img.get("public_id"):
                self.images.destroy(img["public_id"])

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def add_product(self, fields: Dict[str, Any], image_files: List[Any], defer: Defer = None) -> dict:
        errors: List[str] = []
        data = None
        try:
            data = ProductInput.model_validate(clean_fields(fields))
        except ValidationError as exc:
            errors.extend(validation_messages(exc))

        files = [f for f in image_files or [] if f is not None]
        if not files:
            errors.append("images: At least one image is required")
        elif len(files) > MAX_IMAGES:
            errors.append(f"images: At most {MAX_IMAGES} images are allowed")
        if data is not None and self.products.find_one({"productId": data.productId}, {"_id": 1}):
            errors.append(f"productId: '{data.productId}' already exists")
        if errors:
            raise ValidationFailed("Validation failed", errors)

        uploaded = self._upload_all(files)

        description = (data.description or "").strip() or generate_description(
            data.name, data.flavour, data.categories, [v.size for v in data.variants],
            data.sweetnessLevel, data.mintLevel,
        )
        product = Product(
            productId=data.productId,
            name=data.name,
            description=description,
            price=data.price,
            categories=data.categories,
            flavour=data.flavour,
            variants=data.variants,
            stockCount=data.stockCount,
            inStock=data.stockCount > 0 if data.inStock is None else data.inStock,
            showOnPOS=data.showOnPOS,
            bestseller=data.bestseller,
            images=uploaded,
            sweetnessLevel=data.sweetnessLevel,
            mintLevel=data.mintLevel,
            otherFlavours=data.otherFlavours,
        )
        try:
            new_id = create_document(self.db, PRODUCTS, product.to_document())
        except DuplicateKeyError:
            self._destroy_images(uploaded)
            raise ValidationFailed("Validation failed", [f"productId: '{data.productId}' already exists"])

        stored = self.products.find_one({"_id": to_object_id(new_id)})
        logger.info("Product added: %s (%s)", stored["productId"], new_id)
        run_deferred(defer, self.reconciler.push_product, stored)
        self.notifier.product_created(stored)
        return serialize_doc(stored)

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------

    def update_product(self, product_id: str, fields: Dict[str, Any],
                       image_slots: Optional[Dict[int, Any]] = None, defer: Defer = None) -> dict:
        existing = self._get_raw(product_id)

        errors: List[str] = []
        changes: Dict[str, Any] = {}
        try:
            changes = ProductUpdate.model_validate(clean_fields(fields)).model_dump(exclude_unset=True)
        except ValidationError as exc:
            errors.extend(validation_messages(exc))

        slots = {int(k): f for k, f in (image_slots or {}).items() if f is not None}
        for slot in slots:
            if not 1 <= slot <= MAX_IMAGES:
                errors.append(f"image{slot}: image slot must be between 1 and {MAX_IMAGES}")
        new_pid = changes.get("productId")
        if new_pid and new_pid != existing["productId"] and self.products.find_one({"productId": new_pid}, {"_id": 1}):
            errors.append(f"productId: '{new_pid}' already exists")
        if errors:
            raise ValidationFailed("Validation failed", errors)

        images = list(existing.get("images") or [])
        replaced = []
        new_uploads = self._upload_all([slots[s] for s in sorted(slots)])
        for slot, uploaded in zip(sorted(slots), new_uploads):
            index = slot - 1
            if index < len(images):
                replaced.append(images[index])
                images[index] = uploaded
            else:
                images.append(uploaded)

        merged = {**existing, **changes}
        if "description" in changes and not (changes["description"] or "").strip():
            changes["description"] = generate_description(
                merged["name"], merged.get("flavour", ""), merged.get("categories") or [],
                [v.get("size") for v in merged.get("variants") or []],
                merged.get("sweetnessLevel", 5), merged.get("mintLevel", 0),
            )
        if "stockCount" in changes and "inStock" not in changes:
            changes["inStock"] = changes["stockCount"] > 0

        update = {**changes, "images": images, "updated_at": utcnow()}
        try:
            self.products.update_one({"_id": existing["_id"]}, {"$set": update})
        except DuplicateKeyError:
            self._destroy_images(new_uploads)
            raise ValidationFailed("Validation failed", [f"productId: '{new_pid}' already exists"])
        self._destroy_images(replaced)

        updated = self.products.find_one({"_id": existing["_id"]})
        notified = 0
        if (existing.get("stockCount") or 0) <= 0 < (updated.get("stockCount") or 0):
            notified = self.notifications.notify_back_in_stock(updated)

        logger.info("Product updated: %s", updated["productId"])
        run_deferred(defer, self.reconciler.push_product, updated, existing)
        self.notifier.product_updated(updated)
        return {"product": serialize_doc(updated), "notified": notified}

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    def remove_product(self, product_id: str, defer: Defer = None) -> None:
        product = self._get_raw(product_id)
        pid = str(product["_id"])

        self.products.delete_one({"_id": product["_id"]})
        self._destroy_images(product.get("images") or [])

        cart_key = f"cartData.{pid}"
        pruned = self.db[USERS].update_many({cart_key: {"$exists": True}}, {"$unset": {cart_key: ""}})
        self.db[USERS].update_many({waitlist_key(pid): {"$exists": True}}, {"$unset": {waitlist_key(pid): ""}})
        self.products.update_many({"otherFlavours": pid}, {"$pull": {"otherFlavours": pid}})

        logger.info("Product removed: %s (%d cart(s) pruned)", product.get("productId"), pruned.modified_count)
        run_deferred(defer, self.reconciler.push_delete, product)
        self.notifier.product_removed(pid)

    def delete_products(self, product_ids: List[str], defer: Defer = None) -> dict:
        deleted, failed = 0, 0
        for product_id in product_ids:
            try:
                self.remove_product(product_id, defer=defer)
                deleted += 1
            except NotFound:
                failed += 1
            except Exception:
                logger.exception("Failed to delete product %s", product_id)
                failed += 1
        return {"deleted": deleted, "failed": failed}

    # ------------------------------------------------------------------
    # listing
    # ------------------------------------------------------------------

    def list_products(self, page: int = 1, limit: int = 10, search: Optional[str] = None) -> dict:
        page = max(1, int(page or 1))
        limit = max(1, min(int(limit or 10), 100))

        query: Dict[str, Any] = {}
        if search and search.strip():
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query = {"$or": [
                {"name": pattern},
                {"description": pattern},
                {"categories": pattern},
                {"productId": pattern},
            ]}

        total = self.products.count_documents(query)
        cursor = self.products.find(query).sort("_id", -1).skip((page - 1) * limit).limit(limit)
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "products": [serialize_doc(doc) for doc in cursor],
            "currentPage": page,
            "totalPages": total_pages,
            "totalProducts": total,
            "hasMore": page < total_pages,
        }

    def list_products_cursor(self, last_id: Optional[str] = None, limit: int = 10) -> dict:
        limit = max(1, min(int(limit or 10), 100))
        query: Dict[str, Any] = {}
        if last_id:
            oid = to_object_id(last_id)
            if oid is None:
                raise ValidationFailed("Invalid cursor", ["lastId: not a valid product id"])
            query = {"_id": {"$lt": oid}}

        docs = [serialize_doc(d) for d in self.products.find(query, LISTING_FIELDS).sort("_id", -1).limit(limit)]
        if not docs:
            return {"products": [], "hasMore": False, "nextCursor": None}
        return {"products": docs, "hasMore": True, "nextCursor": docs[-1]["_id"]}
