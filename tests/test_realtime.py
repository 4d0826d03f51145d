import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId

from realtime import RealtimeNotifier, product_projection


@pytest.fixture
def server():
    server = MagicMock()
    server.emit = AsyncMock()
    server.enter_room = AsyncMock()
    return server


@pytest.fixture
def running_loop():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=2)
    loop.close()


def test_handlers_are_registered(server):
    RealtimeNotifier(server=server)
    registered = {c[0][0] for c in server.on.call_args_list}
    assert registered == {"connect", "join", "disconnect"}


def test_join_enters_the_user_room(server):
    notifier = RealtimeNotifier(server=server)
    asyncio.run(notifier.handle_join("sid-1", "user-42"))
    server.enter_room.assert_awaited_once_with("sid-1", "user-42")


def test_join_without_user_id_is_ignored(server):
    notifier = RealtimeNotifier(server=server)
    asyncio.run(notifier.handle_join("sid-1", None))
    server.enter_room.assert_not_awaited()


def test_emit_without_bound_loop_is_dropped(server):
    notifier = RealtimeNotifier(server=server)
    assert notifier.broadcast("productCreated", {}) is None
    server.emit.assert_not_called()


def test_user_events_go_to_that_users_room(server, running_loop):
    notifier = RealtimeNotifier(server=server)
    notifier.bind_loop(running_loop)

    notifier.notification("user-42", {"message": "hi"}).result(timeout=2)

    server.emit.assert_awaited_once_with("notification", {"message": "hi"}, room="user-42")


def test_product_events_are_broadcast(server, running_loop):
    notifier = RealtimeNotifier(server=server)
    notifier.bind_loop(running_loop)

    notifier.product_removed("abc").result(timeout=2)

    server.emit.assert_awaited_once_with("productRemoved", {"_id": "abc"}, room=None)


def test_failed_emit_surfaces_only_on_the_future(server, running_loop):
    server.emit = AsyncMock(side_effect=RuntimeError("socket gone"))
    notifier = RealtimeNotifier(server=server)
    notifier.bind_loop(running_loop)

    future = notifier.broadcast("productUpdated", {})
    with pytest.raises(RuntimeError):
        future.result(timeout=2)


def test_product_projection_normalises_ids_and_images():
    oid = ObjectId()
    data = product_projection({"_id": oid, "name": "Kiwi", "images": [{"url": "u", "public_id": "p", "extra": 1}],
                               "description": "not sent"})
    assert data["_id"] == str(oid)
    assert data["images"] == [{"url": "u", "public_id": "p"}]
    assert "description" not in data
