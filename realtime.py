"""
Realtime event fan-out over Socket.IO.

One RealtimeNotifier is built per process and passed to every service that
publishes events. Product events go to every connected client; notification
and order events go only to the room named after the target user id.

Delivery is best-effort. The durable copy of a notification lives on the
user document; a missed emit is only a missed latency shortcut.
"""

import asyncio
import logging
from concurrent.futures import Future
from typing import Any, List, Optional

import socketio

logger = logging.getLogger(__name__)

PRODUCT_CREATED = "productCreated"
PRODUCT_UPDATED = "productUpdated"
PRODUCT_REMOVED = "productRemoved"
NOTIFICATION = "notification"
NOTIFICATIONS_UPDATED = "notificationsUpdated"
ORDER_UPDATED = "orderUpdated"

PRODUCT_FIELDS = (
    "_id", "productId", "name", "price", "images", "categories", "flavour",
    "variants", "stockCount", "inStock", "showOnPOS", "bestseller",
)


def product_projection(product: dict) -> dict:
    """Normalized product shape sent with product events."""
    data = {key: product.get(key) for key in PRODUCT_FIELDS}
    data["_id"] = str(product.get("_id")) if product.get("_id") is not None else None
    data["images"] = [
        {"url": img.get("url"), "public_id": img.get("public_id")}
        for img in product.get("images") or []
    ]
    return data


class RealtimeNotifier:
    def __init__(self, server: Optional[socketio.AsyncServer] = None, cors_origins: Optional[List[str]] = None):
        self.server = server or socketio.AsyncServer(
            async_mode="asgi",
            cors_allowed_origins=cors_origins or [],
        )
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.server.on("connect", self.handle_connect)
        self.server.on("join", self.handle_join)
        self.server.on("disconnect", self.handle_disconnect)

    def asgi_app(self, other_asgi_app=None):
        return socketio.ASGIApp(self.server, other_asgi_app=other_asgi_app)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    # ------------------------------------------------------------------
    # socket handlers
    # ------------------------------------------------------------------

    async def handle_connect(self, sid, environ, auth=None):
        logger.debug("Socket connected: %s", sid)

    async def handle_join(self, sid, user_id):
        if not user_id:
            return
        await self.server.enter_room(sid, str(user_id))
        logger.debug("Socket %s joined room %s", sid, user_id)

    async def handle_disconnect(self, sid, *args):
        logger.debug("Socket disconnected: %s", sid)

    # ------------------------------------------------------------------
    # emitting
    # ------------------------------------------------------------------

    def _dispatch(self, event: str, payload: Any, room: Optional[str] = None) -> Optional[Future]:
        if self.loop is None or self.loop.is_closed():
            logger.debug("Realtime loop not bound; dropping %s", event)
            return None
        try:
            coro = self.server.emit(event, payload, room=room)
            future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        except Exception:
            logger.warning("Realtime emit %s failed", event, exc_info=True)
            return None
        future.add_done_callback(lambda f: self._log_failure(event, f))
        return future

    @staticmethod
    def _log_failure(event: str, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Realtime emit %s failed: %s", event, exc)

    def broadcast(self, event: str, payload: Any) -> Optional[Future]:
        return self._dispatch(event, payload)

    def emit_to_user(self, user_id, event: str, payload: Any) -> Optional[Future]:
        if not user_id:
            return None
        return self._dispatch(event, payload, room=str(user_id))

    def product_created(self, product: dict):
        return self.broadcast(PRODUCT_CREATED, product_projection(product))

    def product_updated(self, product: dict):
        return self.broadcast(PRODUCT_UPDATED, product_projection(product))

    def product_removed(self, product_id: str):
        return self.broadcast(PRODUCT_REMOVED, {"_id": str(product_id)})

    def notification(self, user_id, payload: dict):
        return self.emit_to_user(user_id, NOTIFICATION, payload)
