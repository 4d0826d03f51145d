import logging
import random
import string
import time
from typing import List

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import CATEGORIES, PRODUCTS, create_document, delete_document, get_document_by_id, get_documents
from errors import NotFound, ValidationFailed
from schemas import Category

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_category_id() -> str:
    """Millisecond timestamp in base 36 plus six random base-36 characters."""
    suffix = "".join(random.choices(_BASE36, k=6))
    return _base36(int(time.time() * 1000)) + suffix


class CategoryService:
    def __init__(self, db: Database):
        self.db = db

    def create_category(self, name: str) -> dict:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("Category name is required", ["name: Category name is required"])
        if self.db[CATEGORIES].find_one({"name": name}):
            raise ValidationFailed("Category already exists", [f"name: '{name}' already exists"])

        category = Category(name=name, categoryId=generate_category_id())
        try:
            category_id = create_document(self.db, CATEGORIES, category.model_dump(exclude_none=True))
        except DuplicateKeyError:
            raise ValidationFailed("Category already exists", [f"name: '{name}' already exists"])
        logger.info("Category created: %s (%s)", name, category.categoryId)
        return {"_id": category_id, **category.model_dump(exclude_none=True)}

    def item_counts(self) -> dict:
        pipeline = [
            {"$unwind": {"path": "$categories", "preserveNullAndEmptyArrays": True}},
            {"$group": {"_id": "$categories", "count": {"$sum": 1}}},
        ]
        return {row["_id"]: row["count"] for row in self.db[PRODUCTS].aggregate(pipeline) if row["_id"]}

    def list_categories(self) -> List[dict]:
        counts = self.item_counts()
        result = []
        for doc in get_documents(self.db, CATEGORIES, sort=[("name", 1)]):
            result.append({
                "_id": doc["_id"],
                "name": doc["name"],
                "categoryId": doc.get("categoryId"),
                "cloverId": doc.get("cloverId"),
                "items": counts.get(doc["name"], 0),
            })
        return result

    def get_category(self, category_id: str) -> dict:
        doc = get_document_by_id(self.db, CATEGORIES, category_id)
        if not doc:
            raise NotFound("Category not found")
        return doc

    def delete_category(self, category_id: str) -> None:
        # Products keep the category name string
        if not delete_document(self.db, CATEGORIES, category_id):
            raise NotFound("Category not found")
        logger.info("Category deleted: %s", category_id)

    def delete_categories(self, category_ids: List[str]) -> dict:
        deleted, failed = 0, 0
        for category_id in category_ids:
            try:
                self.delete_category(category_id)
                deleted += 1
            except NotFound:
                failed += 1
            except Exception:
                logger.exception("Failed to delete category %s", category_id)
                failed += 1
        return {"deleted": deleted, "failed": failed}
