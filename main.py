import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from catalog import CatalogService
from categories import CategoryService
from clover import CloverClient
from config import Settings
from database import connect, ensure_indexes
from errors import Forbidden, ServiceError, ValidationFailed
from images import ImageHost
from logging_setup import setup_logging
from notifications import NotificationService
from orders import OrderService
from realtime import RealtimeNotifier
from reconciler import CatalogReconciler
from schemas import (
    CancelOrderRequest, CategoryCreate, ChargeRequest, IdsRequest, MAX_IMAGES,
    OrderRequest, StatusUpdateRequest, VerifyCheckoutRequest,
)
import sheets

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: Any
    clover: Any
    images: Any
    notifier: Any
    reconciler: CatalogReconciler
    catalog: CatalogService
    categories: CategoryService
    notifications: NotificationService
    orders: OrderService


def build_services(settings: Settings, db=None, clover=None, images=None, notifier=None) -> Services:
    """Wire every component once per process; tests pass their own collaborators."""
    db = db if db is not None else connect(settings.database_url, settings.database_name)
    clover = clover or CloverClient(settings)
    images = images or ImageHost(settings)
    notifier = notifier or RealtimeNotifier(cors_origins=settings.cors_origins)
    reconciler = CatalogReconciler(db, clover, settings)
    notifications = NotificationService(db, notifier)
    return Services(
        settings=settings,
        db=db,
        clover=clover,
        images=images,
        notifier=notifier,
        reconciler=reconciler,
        catalog=CatalogService(db, images, notifier, reconciler, notifications),
        categories=CategoryService(db),
        notifications=notifications,
        orders=OrderService(db, clover, notifier, settings),
    )


# ===================== Identity =====================
# Sign-in lives in the auth service; it forwards the verified identity in these headers.

@dataclass
class Caller:
    user_id: Optional[str]
    role: Optional[str]


def get_caller(x_user_id: Optional[str] = Header(None), x_user_role: Optional[str] = Header(None)) -> Caller:
    return Caller(user_id=x_user_id, role=(x_user_role or "").lower() or None)


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.role:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if caller.role != "admin":
        raise Forbidden("Admin access required")
    return caller


def require_user(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.role or not caller.user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if caller.role != "user":
        raise Forbidden("User access required")
    return caller


def get_services(request: Request) -> Services:
    return request.app.state.services


def _split_form(form) -> tuple:
    fields, files = {}, {}
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if value.filename:
                files[key] = value
        else:
            fields[key] = value
    return fields, files


router = APIRouter()


# ===================== Public Endpoints =====================
@router.get("/")
def root():
    return {"message": "Vape Shop API running"}


@router.get("/test")
def test_database(services: Services = Depends(get_services)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "collections": [],
        "clover": "✅ Configured" if services.clover.is_configured() else "⚠️  Not configured",
        "clover_push": "on" if services.reconciler.push_enabled() else "off",
    }
    try:
        response["collections"] = services.db.list_collection_names()
        response["database"] = "✅ Available"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ===================== Products =====================
@router.post("/api/product/add", status_code=201)
async def add_product(request: Request, background_tasks: BackgroundTasks,
                      caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    fields, files = _split_form(await request.form())
    uploads = [files[f"image{i}"].file for i in range(1, MAX_IMAGES + 1) if f"image{i}" in files]
    product = await run_in_threadpool(services.catalog.add_product, fields, uploads, background_tasks.add_task)
    return {"success": True, "message": "Product added successfully", "product": product}


@router.post("/api/product/update/{product_id}")
async def update_product(product_id: str, request: Request, background_tasks: BackgroundTasks,
                         caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    fields, files = _split_form(await request.form())
    slots = {i: files[f"image{i}"].file for i in range(1, MAX_IMAGES + 1) if f"image{i}" in files}
    result = await run_in_threadpool(
        services.catalog.update_product, product_id, fields, slots, background_tasks.add_task
    )
    return {"success": True, "message": "Product updated successfully", **result}


@router.get("/api/product/list")
def list_products(page: int = 1, limit: int = 10, search: Optional[str] = None,
                  services: Services = Depends(get_services)):
    return {"success": True, **services.catalog.list_products(page, limit, search)}


@router.get("/api/product/feed")
def product_feed(lastId: Optional[str] = None, limit: int = 10, services: Services = Depends(get_services)):
    return {"success": True, **services.catalog.list_products_cursor(lastId, limit)}


@router.get("/api/product/export")
def export_products(caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    content = sheets.write_sheet(sheets.export_rows(services.db))
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="products.csv"'},
    )


@router.post("/api/product/import")
async def import_products(request: Request, caller: Caller = Depends(require_admin),
                          services: Services = Depends(get_services)):
    _, files = _split_form(await request.form())
    upload = files.get("file")
    if upload is None:
        raise ValidationFailed("Validation failed", ["file: A CSV file is required"])
    text = (await upload.read()).decode("utf-8-sig")
    rows = sheets.read_sheet(text)
    result = await run_in_threadpool(sheets.import_rows, services.db, rows, services.images)
    return {
        "success": True,
        "message": f"Imported {result.created + result.updated} products ({result.skipped} skipped, {result.failed} failed)",
        **result.as_dict(),
    }


@router.post("/api/product/bulk-delete")
def bulk_delete_products(payload: IdsRequest, background_tasks: BackgroundTasks,
                         caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    result = services.catalog.delete_products(payload.ids, defer=background_tasks.add_task)
    return {"success": True, "message": f"Deleted {result['deleted']} products", **result}


@router.get("/api/product/{product_id}")
def single_product(product_id: str, services: Services = Depends(get_services)):
    return {"success": True, "product": services.catalog.get_product(product_id)}


@router.delete("/api/product/{product_id}")
def remove_product(product_id: str, background_tasks: BackgroundTasks,
                   caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    services.catalog.remove_product(product_id, defer=background_tasks.add_task)
    return {"success": True, "message": "Product removed successfully"}


# ===================== Categories =====================
@router.get("/api/category/list")
def list_categories(services: Services = Depends(get_services)):
    return {"success": True, "categories": services.categories.list_categories()}


@router.post("/api/category/create", status_code=201)
def create_category(payload: CategoryCreate, caller: Caller = Depends(require_admin),
                    services: Services = Depends(get_services)):
    category = services.categories.create_category(payload.name)
    return {"success": True, "message": "Category created", "category": category}


@router.post("/api/category/bulk-delete")
def bulk_delete_categories(payload: IdsRequest, caller: Caller = Depends(require_admin),
                           services: Services = Depends(get_services)):
    result = services.categories.delete_categories(payload.ids)
    return {"success": True, "message": f"Deleted {result['deleted']} categories", **result}


@router.delete("/api/category/{category_id}")
def delete_category(category_id: str, caller: Caller = Depends(require_admin),
                    services: Services = Depends(get_services)):
    services.categories.delete_category(category_id)
    return {"success": True, "message": "Category deleted"}


# ===================== Clover =====================
@router.post("/api/clover/sync-products")
def sync_products(caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    result = services.reconciler.sync_products()
    return {"success": True, "message": f"Synced {result.synced} products from Clover", **result.as_dict()}


@router.post("/api/clover/sync-categories")
def sync_categories(caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    result = services.reconciler.sync_categories()
    return {"success": True, "message": f"Synced {result.synced} categories from Clover", **result.as_dict()}


@router.get("/api/clover/orders")
def remote_orders(caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    return {"success": True, "orders": services.clover.list_remote_orders()}


@router.post("/api/clover/webhook")
async def clover_webhook(request: Request, x_clover_auth: Optional[str] = Header(None),
                         services: Services = Depends(get_services)):
    secret = services.settings.clover_webhook_secret
    if secret and x_clover_auth != secret:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    payload = await request.json()
    result = await run_in_threadpool(services.reconciler.handle_webhook, payload or {})
    return {"success": True, **result}


# ===================== Orders =====================
@router.post("/api/order/place-cod", status_code=201)
def place_order_cod(payload: OrderRequest, background_tasks: BackgroundTasks,
                    caller: Caller = Depends(require_user), services: Services = Depends(get_services)):
    order = services.orders.place_order_cod(caller.user_id, payload, defer=background_tasks.add_task)
    return {"success": True, "message": "Order placed successfully with Cash on Delivery.", "order": order}


@router.post("/api/order/place-clover")
def place_order_clover(payload: OrderRequest, request: Request,
                       caller: Caller = Depends(require_user), services: Services = Depends(get_services)):
    return_base = request.headers.get("origin") or services.settings.frontend_url
    if not return_base:
        raise ValidationFailed("Validation failed", ["origin: Return URL could not be determined"])
    result = services.orders.place_order_hosted_checkout(caller.user_id, payload, return_base)
    return {"success": True, "message": "Redirecting to payment", "session_url": result["url"], "orderId": result["orderId"]}


@router.post("/api/order/verify-clover")
def verify_clover(payload: VerifyCheckoutRequest, caller: Caller = Depends(require_user),
                  services: Services = Depends(get_services)):
    paid = services.orders.verify_hosted_checkout(caller.user_id, payload.orderId, payload.success, payload.checkout_id)
    if paid:
        return {"success": True, "message": "Payment verified"}
    return {"success": False, "message": "Payment not completed"}


@router.post("/api/order/charge")
def charge_order(payload: ChargeRequest, caller: Caller = Depends(require_user),
                 services: Services = Depends(get_services)):
    order = services.orders.charge_order(caller.user_id, payload.orderId, payload.token)
    return {"success": True, "message": "Payment successful", "order": order}


@router.get("/api/order/list")
def all_orders(caller: Caller = Depends(require_admin), services: Services = Depends(get_services)):
    return {"success": True, "orders": services.orders.all_orders()}


@router.put("/api/order/status")
def order_status(payload: StatusUpdateRequest, caller: Caller = Depends(require_admin),
                 services: Services = Depends(get_services)):
    order = services.orders.update_status(payload.orderId, payload.status, payload.itemId)
    message = "Order item status updated successfully." if payload.itemId else "Order status updated successfully."
    return {"success": True, "message": message, "order": order}


@router.put("/api/order/user/cancel")
def cancel_order(payload: CancelOrderRequest, caller: Caller = Depends(require_user),
                 services: Services = Depends(get_services)):
    order = services.orders.cancel_order_by_user(caller.user_id, payload.orderId)
    return {"success": True, "message": "Order cancelled", "order": order}


@router.get("/api/order/userOrders")
def user_orders(caller: Caller = Depends(require_user), services: Services = Depends(get_services)):
    return {"success": True, "orders": services.orders.user_orders(caller.user_id)}


# ===================== Waitlist & Notifications =====================
@router.get("/api/user/waitlist/{product_id}")
def waitlist_status(product_id: str, caller: Caller = Depends(require_user),
                    services: Services = Depends(get_services)):
    return {"success": True, "subscribed": services.notifications.is_subscribed(caller.user_id, product_id)}


@router.post("/api/user/waitlist/{product_id}")
def join_waitlist(product_id: str, caller: Caller = Depends(require_user),
                  services: Services = Depends(get_services)):
    services.notifications.subscribe(caller.user_id, product_id)
    return {"success": True, "message": "We'll let you know when it's back in stock"}


@router.delete("/api/user/waitlist/{product_id}")
def leave_waitlist(product_id: str, caller: Caller = Depends(require_user),
                   services: Services = Depends(get_services)):
    services.notifications.unsubscribe(caller.user_id, product_id)
    return {"success": True, "message": "Removed from waitlist"}


@router.get("/api/user/notifications")
def list_notifications(caller: Caller = Depends(require_user), services: Services = Depends(get_services)):
    return {"success": True, **services.notifications.list_notifications(caller.user_id)}


@router.post("/api/user/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, caller: Caller = Depends(require_user),
                           services: Services = Depends(get_services)):
    services.notifications.mark_read(caller.user_id, notification_id)
    return {"success": True, "message": "Notification marked as read"}


@router.delete("/api/user/notifications/{notification_id}")
def delete_notification(notification_id: str, caller: Caller = Depends(require_user),
                        services: Services = Depends(get_services)):
    services.notifications.delete_notification(caller.user_id, notification_id)
    return {"success": True, "message": "Notification deleted"}


@router.delete("/api/user/notifications")
def clear_notifications(caller: Caller = Depends(require_user), services: Services = Depends(get_services)):
    services.notifications.clear_notifications(caller.user_id)
    return {"success": True, "message": "Notifications cleared"}


# ===================== App =====================
def _error_body(exc: ServiceError) -> dict:
    body = {"success": False, "message": exc.message}
    if isinstance(exc, ValidationFailed) and exc.errors:
        body["errors"] = exc.errors
    return body


def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.notifier.bind_loop(asyncio.get_running_loop())
        try:
            await run_in_threadpool(ensure_indexes, services.db)
        except Exception:
            logger.exception("Could not ensure database indexes")
        yield

    app = FastAPI(title="Vape Shop API", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            errors.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
        return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal Server Error"})

    app.include_router(router)
    return app


settings = Settings.from_env()
setup_logging(settings)

app = create_app(build_services(settings))
# Socket.IO shares the port with the API; serve this object
asgi_app = app.state.services.notifier.asgi_app(app)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.port))
    uvicorn.run(asgi_app, host="0.0.0.0", port=port)
