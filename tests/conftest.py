# Shared fixtures: in-memory MongoDB (mongomock), a fake image host, a
# notifier that records events instead of emitting them, and a mocked Clover
# client. Services are wired exactly as main.build_services wires them.

from typing import List, Optional, Tuple
from unittest.mock import MagicMock

import mongomock
import pytest
from bson import ObjectId

from clover import CloverClient
from config import Settings
from database import PRODUCTS, USERS, ensure_indexes, utcnow
from errors import ExternalServiceError
from main import build_services
from realtime import RealtimeNotifier


class FakeImageHost:
    def __init__(self):
        self.uploaded: List[dict] = []
        self.destroyed: List[str] = []
        self.fail_after: Optional[int] = None

    def upload(self, file, folder=None) -> dict:
        if self.fail_after is not None and len(self.uploaded) >= self.fail_after:
            raise ExternalServiceError("Cloudinary", "upload failed: quota exceeded")
        n = len(self.uploaded) + 1
        image = {"url": f"https://img.test/products/{n}.jpg", "public_id": f"products/{n}"}
        self.uploaded.append(image)
        return image

    def destroy(self, public_id) -> bool:
        if not public_id:
            return False
        self.destroyed.append(public_id)
        return True


class RecordingNotifier(RealtimeNotifier):
    """Real notifier whose transport is replaced by an in-memory event list."""

    def __init__(self):
        super().__init__(server=MagicMock())
        self.events: List[Tuple[Optional[str], str, dict]] = []

    def _dispatch(self, event, payload, room=None):
        self.events.append((room, event, payload))
        return None

    def named(self, event: str) -> list:
        return [e for e in self.events if e[1] == event]


@pytest.fixture
def settings():
    return Settings(frontend_url="http://shop.test")


@pytest.fixture
def db():
    database = mongomock.MongoClient().vapeshop_test
    ensure_indexes(database)
    return database


@pytest.fixture
def images():
    return FakeImageHost()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clover():
    client = MagicMock(spec=CloverClient)
    client.is_configured.return_value = True
    client.list_remote_products.return_value = []
    client.list_remote_categories.return_value = []
    client.get_remote_product_by_sku.return_value = None
    return client


@pytest.fixture
def services(settings, db, clover, images, notifier):
    return build_services(settings, db=db, clover=clover, images=images, notifier=notifier)


@pytest.fixture
def make_product(db):
    """Insert a product document directly and return it."""

    def _make(**overrides):
        doc = {
            "productId": f"P-{ObjectId()}",
            "name": "Mango Ice",
            "description": "",
            "price": 19.99,
            "categories": [],
            "flavour": "Mango",
            "variants": [],
            "stockCount": 10,
            "inStock": True,
            "showOnPOS": True,
            "bestseller": False,
            "images": [{"url": "https://img.test/mango.jpg", "public_id": "products/mango"}],
            "sweetnessLevel": 5,
            "mintLevel": 0,
            "otherFlavours": [],
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        doc.update(overrides)
        db[PRODUCTS].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def make_user(db):
    def _make(**overrides):
        doc = {
            "name": "Sam",
            "email": f"{ObjectId()}@example.com",
            "cartData": {},
            "notifications_waitlist": {},
            "notifications": [],
        }
        doc.update(overrides)
        db[USERS].insert_one(doc)
        return doc

    return _make
