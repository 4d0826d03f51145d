"""
Bulk product import / export over the fixed 15-column sheet.

Import is an upsert keyed by Product Id: a sheet only overwrites the fields it
carries, and new products get the catalog defaults. Export writes the same
columns back, so an exported file re-imports to the same values.
"""

import csv
import io
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from pymongo.database import Database

from database import PRODUCTS, utcnow

logger = logging.getLogger(__name__)

SERIAL = "S.No"
NAME = "Product Name"
BRAND = "Brand"
FLAVOUR = "Flavour"
PRICE = "Price"
PUFFS = "Puff Count"
CAPACITY = "Container Capacity"
NICOTINE = "Nicotine Strength"
TYPE = "Type"
PRODUCT_ID = "Product Id"
CATEGORY = "Category"
IMAGE_COLUMNS = ["Image 1", "Image 2", "Image 3", "Image 4"]

HEADERS = [SERIAL, NAME, BRAND, FLAVOUR, PRICE, PUFFS, CAPACITY, NICOTINE, TYPE, PRODUCT_ID, CATEGORY] + IMAGE_COLUMNS

# column -> label used in the generated description
DESCRIPTION_LINES = [
    (BRAND, "Brand"),
    (PUFFS, "Puff Count"),
    (NICOTINE, "Nicotine Strength"),
    (TYPE, "Type"),
]

NEW_PRODUCT_DEFAULTS = {
    "stockCount": 0,
    "inStock": False,
    "showOnPOS": True,
    "bestseller": False,
    "sweetnessLevel": 5,
    "mintLevel": 0,
    "otherFlavours": [],
}


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


def _cell(row: Dict[str, object], column: str) -> str:
    value = row.get(column)
    if value is None:
        return ""
    text = str(value).strip()
    # spreadsheets hand back whole numbers as floats
    if re.fullmatch(r"-?\d+\.0", text):
        text = text[:-2]
    return text


def _price(text: str) -> float:
    value = round(float(text.replace("$", "").replace(",", "")), 2)
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"price must be a non-negative number, got {text!r}")
    return value


def _format_price(value) -> str:
    if value is None or value == "":
        return ""
    number = float(value)
    return str(int(number)) if number.is_integer() else f"{number:.2f}"


def build_description(row: Dict[str, object]) -> str:
    lines = []
    for column, label in DESCRIPTION_LINES:
        value = _cell(row, column)
        if value:
            lines.append(f"{label}: {value}")
    return "\n".join(lines)


def parse_description(description: Optional[str]) -> Dict[str, str]:
    """Recover the sheet columns from a generated description; unknown text yields blanks."""
    found = {column: "" for column, _ in DESCRIPTION_LINES}
    labels = {label.lower(): column for column, label in DESCRIPTION_LINES}
    for line in (description or "").splitlines():
        label, sep, value = line.partition(":")
        if not sep:
            continue
        column = labels.get(label.strip().lower())
        if column and not found[column]:
            found[column] = value.strip()
    return found


def row_to_fields(row: Dict[str, object]) -> Optional[dict]:
    """Fields a sheet row sets on a product, or None when the row must be skipped."""
    product_id = _cell(row, PRODUCT_ID)
    name = _cell(row, NAME)
    price_text = _cell(row, PRICE)
    if not product_id or not name or not price_text:
        return None

    price = _price(price_text)
    fields = {"productId": product_id, "name": name, "price": price}

    flavour = _cell(row, FLAVOUR)
    if flavour:
        fields["flavour"] = flavour
    capacity = _cell(row, CAPACITY)
    if capacity:
        fields["variants"] = [{"size": capacity, "price": price, "quantity": 0}]
    description = build_description(row)
    if description:
        fields["description"] = description
    categories = [c.strip() for c in _cell(row, CATEGORY).split(",") if c.strip()]
    if categories:
        fields["categories"] = categories
    images = [{"url": _cell(row, col), "public_id": None} for col in IMAGE_COLUMNS if _cell(row, col)]
    if images:
        fields["images"] = images
    return fields


def merge_images(sheet_images: List[dict], stored_images: Iterable[dict]):
    """Keep the stored entry for every sheet URL the product already has.

    Returns the merged list and the stored entries the sheet no longer lists.
    """
    stored = {img.get("url"): img for img in stored_images or [] if img and img.get("url")}
    merged = [stored.get(img["url"], img) for img in sheet_images]
    kept = {img["url"] for img in merged}
    displaced = [img for url, img in stored.items() if url not in kept]
    return merged, displaced


def import_rows(db: Database, rows: Iterable[Dict[str, object]], images=None) -> ImportResult:
    """Upsert sheet rows by Product Id.

    `images` is the image host used to delete pictures a row replaces; without
    one they are only logged.
    """
    result = ImportResult()
    products = db[PRODUCTS]
    for number, row in enumerate(rows, start=1):
        try:
            fields = row_to_fields(row)
        except ValueError as exc:
            result.failed += 1
            result.errors.append(f"row {number}: {exc}")
            continue
        if fields is None:
            result.skipped += 1
            continue

        displaced = []
        if "images" in fields:
            existing = products.find_one({"productId": fields["productId"]}, {"images": 1})
            if existing:
                fields["images"], displaced = merge_images(fields["images"], existing.get("images"))

        now = utcnow()
        defaults = {
            "description": "",
            "categories": [],
            "flavour": "",
            "variants": [],
            "images": [],
            **NEW_PRODUCT_DEFAULTS,
            "created_at": now,
        }
        on_insert = {k: v for k, v in defaults.items() if k not in fields}
        try:
            outcome = products.update_one(
                {"productId": fields["productId"]},
                {"$set": {**fields, "updated_at": now}, "$setOnInsert": on_insert},
                upsert=True,
            )
        except Exception as exc:
            logger.exception("Import of row %d (%s) failed", number, fields["productId"])
            result.failed += 1
            result.errors.append(f"row {number}: {exc}")
            continue
        if outcome.upserted_id is not None:
            result.created += 1
        else:
            result.updated += 1

        for img in displaced:
            if not img.get("public_id"):
                continue
            if images is None:
                logger.warning("Import of %s dropped image %s", fields["productId"], img["public_id"])
            else:
                images.destroy(img["public_id"])

    logger.info("Sheet import: %d created, %d updated, %d skipped, %d failed",
                result.created, result.updated, result.skipped, result.failed)
    return result


def product_to_row(product: dict, serial: int) -> Dict[str, str]:
    parsed = parse_description(product.get("description"))
    variants = product.get("variants") or []
    images = [img.get("url") or "" for img in product.get("images") or []]
    row = {
        SERIAL: str(serial),
        NAME: product.get("name") or "",
        BRAND: parsed[BRAND],
        FLAVOUR: product.get("flavour") or "",
        PRICE: _format_price(product.get("price")),
        PUFFS: parsed[PUFFS],
        CAPACITY: variants[0].get("size", "") if variants else "",
        NICOTINE: parsed[NICOTINE],
        TYPE: parsed[TYPE],
        PRODUCT_ID: product.get("productId") or "",
        CATEGORY: ", ".join(product.get("categories") or []),
    }
    for index, column in enumerate(IMAGE_COLUMNS):
        row[column] = images[index] if index < len(images) else ""
    return row


def export_rows(db: Database) -> List[Dict[str, str]]:
    rows = []
    for serial, product in enumerate(db[PRODUCTS].find().sort("productId", 1), start=1):
        try:
            rows.append(product_to_row(product, serial))
        except Exception:
            logger.warning("Export skipped product %s", product.get("productId"), exc_info=True)
    return rows


def read_sheet(text: str) -> List[Dict[str, str]]:
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    return [dict(row) for row in reader]


def write_sheet(rows: Iterable[Dict[str, str]]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=HEADERS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()
