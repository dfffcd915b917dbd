import asyncio
import json

import pytest
from conftest import wait_for

from sftpmatic.config import ConfigurationStore
from sftpmatic.errors import ConfigError
from sftpmatic.events import ConfigurationChanged, EventBus


@pytest.fixture
def bus_and_events():
    bus = EventBus()
    events = []

    async def record(event):
        events.append(event)

    bus.subscribe(ConfigurationChanged, record)
    return bus, events


@pytest.mark.asyncio
async def test_missing_document_is_fatal_on_load(settings, bus_and_events):
    store = ConfigurationStore(settings.config_path, bus_and_events[0])
    with pytest.raises(ConfigError):
        await store.load()


@pytest.mark.asyncio
async def test_load_does_not_publish(settings, write_config, bus_and_events):
    bus, events = bus_and_events
    write_config({"Users": [{"Username": "alice"}]})
    store = ConfigurationStore(settings.config_path, bus)
    state = await store.load()
    assert state.generation == 1
    assert store.get() is state
    assert events == []


@pytest.mark.asyncio
async def test_reload_swaps_and_publishes(settings, write_config, bus_and_events):
    bus, events = bus_and_events
    write_config({"Users": [{"Username": "alice"}]})
    store = ConfigurationStore(settings.config_path, bus)
    old = await store.load()

    write_config({"Users": [{"Username": "alice"}, {"Username": "bob"}]})
    assert await store.reload() is True
    assert store.get().usernames == ["alice", "bob"]
    assert store.get().generation == 2
    assert [e.state for e in events] == [store.get()]
    # the old snapshot is untouched
    assert old.usernames == ["alice"]


@pytest.mark.asyncio
async def test_broken_document_keeps_previous_snapshot(settings, write_config, bus_and_events, caplog):
    bus, events = bus_and_events
    write_config({"Users": [{"Username": "alice"}]})
    store = ConfigurationStore(settings.config_path, bus)
    await store.load()

    with open(settings.config_path, "w") as f:
        f.write("{ this is not json")
    assert await store.reload() is False
    assert store.get().usernames == ["alice"]
    assert store.get().generation == 1
    assert events == []
    assert "keeping configuration generation 1" in caplog.text


@pytest.mark.asyncio
async def test_subscriber_failure_reaches_reload_caller(settings, write_config):
    bus = EventBus()

    async def failing(event):
        raise RuntimeError("restart failed")

    bus.subscribe(ConfigurationChanged, failing)
    write_config({})
    store = ConfigurationStore(settings.config_path, bus)
    await store.load()
    with pytest.raises(RuntimeError):
        await store.reload()


@pytest.mark.asyncio
async def test_watch_picks_up_changes(settings, write_config, bus_and_events):
    bus, events = bus_and_events
    write_config({"Users": [{"Username": "alice"}]})
    store = ConfigurationStore(settings.config_path, bus)
    await store.load()

    task = asyncio.create_task(store.watch(0.01))
    try:
        with open(settings.config_path, "w") as f:
            json.dump({"Users": [{"Username": "alice"}, {"Username": "bob"}]}, f)
        await wait_for(lambda: len(events) == 1)
        assert events[0].state.usernames == ["alice", "bob"]
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
