import pytest

from sftpmatic.events import EventBus, ServerStartup, UserSessionChanged


@pytest.mark.asyncio
async def test_subscribers_run_in_order_and_complete():
    bus = EventBus()
    order = []

    async def first(event):
        order.append(("first", event.username))

    async def second(event):
        order.append(("second", event.username))

    bus.subscribe(UserSessionChanged, first)
    bus.subscribe(UserSessionChanged, second)
    await bus.publish(UserSessionChanged("alice", "open_session"))
    assert order == [("first", "alice"), ("second", "alice")]


@pytest.mark.asyncio
async def test_only_matching_type_is_delivered():
    bus = EventBus()
    seen = []

    async def handler(event):
        seen.append(event)

    bus.subscribe(ServerStartup, handler)
    await bus.publish(UserSessionChanged("alice", "close_session"))
    await bus.publish(ServerStartup())
    assert seen == [ServerStartup()]


@pytest.mark.asyncio
async def test_handler_errors_reach_the_publisher():
    bus = EventBus()
    reached = []

    async def boom(event):
        raise RuntimeError("restart failed")

    async def after(event):
        reached.append(event)

    bus.subscribe(ServerStartup, boom)
    bus.subscribe(ServerStartup, after)
    with pytest.raises(RuntimeError):
        await bus.publish(ServerStartup())
    assert reached == []


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    seen = []

    async def handler(event):
        seen.append(event)

    bus.subscribe(ServerStartup, handler)
    bus.unsubscribe(ServerStartup, handler)
    bus.unsubscribe(ServerStartup, handler)
    await bus.publish(ServerStartup())
    assert seen == []
