"""
Database Schemas for the Vape Shop backend

Each Pydantic model below corresponds to a MongoDB collection.
The collection name is the lowercase class name (e.g., Product -> "product").
Request models (suffix In / Input / Request) validate what the API accepts
before anything reaches the database.
"""
import json
from datetime import datetime
from typing import List, Optional, Literal, Dict, Any

from pydantic import BaseModel, Field, ValidationError, field_validator

ORDER_STATUSES = ["Pending", "Processing", "Shipped", "Delivered", "Cancelled"]
OrderStatus = Literal["Pending", "Processing", "Shipped", "Delivered", "Cancelled"]

PAYMENT_COD = "CashOnDelivery"
PAYMENT_HOSTED = "Clover"
PAYMENT_CARD = "CloverCard"

MAX_IMAGES = 4


def decode_json_list(value: Any, allow_csv: bool = False) -> Any:
    """Accept either a structured list or its JSON-encoded string form.

    Admin forms post JSON strings while bulk tools post real lists; after this
    step the rest of the code only ever sees lists.
    """
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            if allow_csv:
                return [part.strip() for part in text.split(",") if part.strip()]
            raise ValueError("must be a list or a JSON-encoded list")
    return value


def validation_messages(exc: ValidationError) -> List[str]:
    """Flatten a pydantic error into one "field: message" string per violation."""
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "__root__")
        msg = err.get("msg", "invalid value")
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


# ===================== Catalog =====================

class Variant(BaseModel):
    size: str = Field(..., min_length=1, description="e.g. 10ml, 20ml")
    price: float = Field(..., ge=0)
    quantity: int = Field(0, ge=0)


class ProductImage(BaseModel):
    url: str
    public_id: Optional[str] = None


class Product(BaseModel):
    productId: str = Field(..., description="Human product id, unique")
    externalCloverId: Optional[str] = Field(None, description="Clover item id when synced")
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    categories: List[str] = []
    flavour: str = ""
    variants: List[Variant] = []
    stockCount: int = 0
    inStock: bool = False
    showOnPOS: bool = True
    bestseller: bool = False
    images: List[ProductImage] = Field(default_factory=list, max_length=MAX_IMAGES)
    sweetnessLevel: int = Field(5, ge=0, le=10)
    mintLevel: int = Field(0, ge=0, le=10)
    otherFlavours: List[str] = []

    def to_document(self) -> dict:
        doc = self.model_dump()
        # externalCloverId is sparse-unique: unsynced products must not carry the key
        if doc.get("externalCloverId") is None:
            doc.pop("externalCloverId", None)
        return doc


class _ProductFields(BaseModel):
    """Shared field rules for product create and update input."""

    @field_validator("variants", "otherFlavours", mode="before", check_fields=False)
    @classmethod
    def _decode_lists(cls, value):
        return decode_json_list(value)

    @field_validator("categories", mode="before", check_fields=False)
    @classmethod
    def _decode_categories(cls, value):
        return decode_json_list(value, allow_csv=True)

    @field_validator("categories", check_fields=False)
    @classmethod
    def _strip_categories(cls, value):
        if value is None:
            return value
        return [c.strip() for c in value if c and c.strip()]


class ProductInput(_ProductFields):
    productId: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    categories: List[str] = []
    flavour: str = ""
    variants: List[Variant] = []
    stockCount: int = Field(0, ge=0)
    inStock: Optional[bool] = None
    showOnPOS: bool = True
    bestseller: bool = False
    sweetnessLevel: int = Field(5, ge=0, le=10)
    mintLevel: int = Field(0, ge=0, le=10)
    otherFlavours: List[str] = []


class ProductUpdate(_ProductFields):
    productId: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    categories: Optional[List[str]] = None
    flavour: Optional[str] = None
    variants: Optional[List[Variant]] = None
    stockCount: Optional[int] = Field(None, ge=0)
    inStock: Optional[bool] = None
    showOnPOS: Optional[bool] = None
    bestseller: Optional[bool] = None
    sweetnessLevel: Optional[int] = Field(None, ge=0, le=10)
    mintLevel: Optional[int] = Field(None, ge=0, le=10)
    otherFlavours: Optional[List[str]] = None


class Category(BaseModel):
    name: str = Field(..., description="Display name, unique")
    categoryId: str = Field(..., description="Generated machine id")
    cloverId: Optional[str] = None


class CategoryCreate(BaseModel):
    name: str


class IdsRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


# ===================== Orders =====================

class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)

    @field_validator("street", "city", "state", "zip", "country", mode="before")
    @classmethod
    def _strip(cls, value):
        if value is None:
            return value
        return str(value).strip()


class OrderItemIn(BaseModel):
    productId: str
    name: str = ""
    quantity: int = Field(1, ge=1)
    price: float = Field(0, ge=0)
    variantSize: Optional[str] = None
    size: Optional[str] = None

    @property
    def requested_size(self) -> str:
        return self.variantSize or self.size or "default"


class OrderRequest(BaseModel):
    items: List[OrderItemIn] = []
    amount: float = Field(0, ge=0)
    address: Optional[Dict[str, Any]] = None
    phone: Optional[str] = None


class OrderItem(BaseModel):
    productId: str
    name: str
    quantity: int
    price: float
    variantSize: str
    status: OrderStatus = "Pending"
    image: str = ""


class Order(BaseModel):
    userId: str
    phone: str
    address: Address
    items: List[OrderItem] = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    paymentMethod: str
    payment: bool = False
    status: OrderStatus = "Pending"


class VerifyCheckoutRequest(BaseModel):
    orderId: str
    success: Optional[Any] = None
    checkout_id: Optional[str] = None
    merchant_id: Optional[str] = None


class ChargeRequest(BaseModel):
    orderId: str
    token: str = Field(..., min_length=1)


class StatusUpdateRequest(BaseModel):
    orderId: Optional[str] = None
    status: Optional[str] = None
    itemId: Optional[str] = None


class CancelOrderRequest(BaseModel):
    orderId: str


# ===================== Users =====================

class Notification(BaseModel):
    productId: str
    message: str
    read: bool = False
    createdAt: datetime


"""
Notes:
- The user collection itself (credentials, profile, cart) is owned by the
  auth service; this backend only touches cartData, notifications_waitlist
  and notifications on it.
"""
