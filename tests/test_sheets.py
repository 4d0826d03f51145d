import pytest

from database import PRODUCTS
from sheets import (
    HEADERS, build_description, export_rows, import_rows, parse_description,
    product_to_row, read_sheet, row_to_fields, write_sheet,
)


def sheet_row(**overrides):
    row = {header: "" for header in HEADERS}
    row.update({
        "S.No": "1",
        "Product Name": "Lost Mary Peach",
        "Brand": "Lost Mary",
        "Flavour": "Peach",
        "Price": "19.99",
        "Puff Count": "5000",
        "Container Capacity": "13ml",
        "Nicotine Strength": "5%",
        "Type": "Disposable",
        "Product Id": "LM-PEACH",
        "Category": "Vape, Disposable",
        "Image 1": "https://img.test/peach.jpg",
    })
    row.update(overrides)
    return row


def test_headers_are_the_fixed_fifteen_columns():
    assert len(HEADERS) == 15
    assert HEADERS[0] == "S.No"
    assert HEADERS[-1] == "Image 4"


def test_row_maps_to_product_fields():
    fields = row_to_fields(sheet_row())

    assert fields["productId"] == "LM-PEACH"
    assert fields["price"] == 19.99
    assert fields["categories"] == ["Vape", "Disposable"]
    assert fields["variants"] == [{"size": "13ml", "price": 19.99, "quantity": 0}]
    assert fields["images"] == [{"url": "https://img.test/peach.jpg", "public_id": None}]
    assert fields["description"] == (
        "Brand: Lost Mary\nPuff Count: 5000\nNicotine Strength: 5%\nType: Disposable"
    )


def test_rows_missing_key_columns_are_skipped():
    assert row_to_fields(sheet_row(**{"Product Id": ""})) is None
    assert row_to_fields(sheet_row(**{"Product Name": "  "})) is None
    assert row_to_fields(sheet_row(Price="")) is None


def test_spreadsheet_floats_are_normalised():
    fields = row_to_fields(sheet_row(**{"Product Id": 1001.0, "Puff Count": 600.0, "Price": "$1,200"}))
    assert fields["productId"] == "1001"
    assert "Puff Count: 600" in fields["description"]
    assert fields["price"] == 1200.0


def test_import_creates_with_defaults_then_updates(db):
    result = import_rows(db, [sheet_row()])
    assert result.as_dict() == {"created": 1, "updated": 0, "skipped": 0, "failed": 0, "errors": []}

    stored = db[PRODUCTS].find_one({"productId": "LM-PEACH"})
    assert stored["stockCount"] == 0
    assert stored["inStock"] is False
    assert stored["otherFlavours"] == []

    db[PRODUCTS].update_one({"_id": stored["_id"]}, {"$set": {"stockCount": 12, "bestseller": True}})
    result = import_rows(db, [sheet_row(Price="21")])

    stored = db[PRODUCTS].find_one({"productId": "LM-PEACH"})
    assert result.updated == 1
    assert stored["price"] == 21.0
    # fields the sheet does not carry survive a re-import
    assert stored["stockCount"] == 12
    assert stored["bestseller"] is True


def test_last_row_wins_for_repeated_product_id(db):
    result = import_rows(db, [sheet_row(Price="10"), sheet_row(Price="12.50")])

    assert result.created == 1
    assert result.updated == 1
    assert db[PRODUCTS].count_documents({}) == 1
    assert db[PRODUCTS].find_one({"productId": "LM-PEACH"})["price"] == 12.5


def test_bad_price_fails_only_that_row(db):
    result = import_rows(db, [sheet_row(Price="abc"), sheet_row(**{"Product Id": "OK-1"}), {"Price": "1"}])

    assert result.failed == 1
    assert result.created == 1
    assert result.skipped == 1
    assert result.errors[0].startswith("row 1:")


def test_export_recovers_generated_description(db):
    import_rows(db, [sheet_row()])

    (row,) = export_rows(db)

    assert row["Brand"] == "Lost Mary"
    assert row["Puff Count"] == "5000"
    assert row["Nicotine Strength"] == "5%"
    assert row["Type"] == "Disposable"
    assert row["Container Capacity"] == "13ml"
    assert row["Category"] == "Vape, Disposable"
    assert row["Price"] == "19.99"
    assert row["Image 2"] == ""


def test_free_text_description_exports_blank_columns():
    product = {"productId": "X", "name": "X", "price": 5, "description": "Tastes great.\n\nWARNING: nicotine"}
    row = product_to_row(product, 3)
    assert row["S.No"] == "3"
    assert row["Brand"] == ""
    assert row["Type"] == ""
    assert row["Price"] == "5"


def test_parse_description_is_case_insensitive():
    parsed = parse_description("brand: Elf Bar\nTYPE : Pod\nnonsense line")
    assert parsed["Brand"] == "Elf Bar"
    assert parsed["Type"] == "Pod"
    assert parsed["Puff Count"] == ""


def test_build_description_skips_blank_columns():
    assert build_description({"Brand": "Geek Bar", "Type": ""}) == "Brand: Geek Bar"


def test_csv_round_trip_keeps_columns():
    text = write_sheet([sheet_row()])
    assert text.splitlines()[0] == ",".join(HEADERS)

    rows = read_sheet("\ufeff" + text)
    assert rows[0]["Product Id"] == "LM-PEACH"
    assert rows[0]["Category"] == "Vape, Disposable"


@pytest.mark.parametrize("price", ["-5", "nan", "inf"])
def test_negative_or_non_finite_price_fails_the_row(db, price):
    result = import_rows(db, [sheet_row(Price=price)])

    assert result.failed == 1
    assert result.created == 0
    assert db[PRODUCTS].count_documents({}) == 0


def test_round_trip_keeps_stored_image_ids(services, db, images, make_product):
    product = make_product(productId="RT-1", images=[{"url": "https://img.test/a.jpg", "public_id": "products/a"}])

    rows = read_sheet(write_sheet(export_rows(db)))
    assert import_rows(db, rows, images).updated == 1

    stored = db[PRODUCTS].find_one({"productId": "RT-1"})
    assert stored["images"] == [{"url": "https://img.test/a.jpg", "public_id": "products/a"}]
    assert images.destroyed == []

    services.catalog.remove_product(str(product["_id"]))
    assert images.destroyed == ["products/a"]


def test_replaced_image_is_removed_from_the_host(db, images, make_product):
    make_product(productId="LM-PEACH", images=[{"url": "https://img.test/old.jpg", "public_id": "products/old"}])

    import_rows(db, [sheet_row()], images)

    stored = db[PRODUCTS].find_one({"productId": "LM-PEACH"})
    assert stored["images"] == [{"url": "https://img.test/peach.jpg", "public_id": None}]
    assert images.destroyed == ["products/old"]
