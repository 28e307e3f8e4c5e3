"""
Event emitter used by the cart and order-queue stores.
"""

import pytest

from tableorder.services.events import EventEmitter


@pytest.fixture
def emitter():
    return EventEmitter(("changed", "error"))


async def test_sync_and_async_handlers_both_run(emitter):
    seen = []

    async def async_handler(value):
        seen.append(("async", value))

    emitter.on("changed", lambda value: seen.append(("sync", value)))
    emitter.on("changed", async_handler)
    await emitter.emit("changed", 1)

    assert seen == [("sync", 1), ("async", 1)]


async def test_disposer_removes_handler_once(emitter):
    seen = []
    dispose = emitter.on("changed", seen.append)
    dispose()
    dispose()

    await emitter.emit("changed", "x")
    assert seen == []
    assert emitter.listener_count("changed") == 0


async def test_failing_handler_does_not_stop_others(emitter):
    seen = []

    def broken(_):
        raise RuntimeError("boom")

    emitter.on("error", broken)
    emitter.on("error", seen.append)
    await emitter.emit("error", "msg")

    assert seen == ["msg"]


def test_unknown_event_rejected(emitter):
    with pytest.raises(ValueError):
        emitter.on("new-item", print)


async def test_clear(emitter):
    emitter.on("changed", print)
    emitter.on("error", print)
    emitter.clear()
    assert emitter.listener_count("changed") == emitter.listener_count("error") == 0
