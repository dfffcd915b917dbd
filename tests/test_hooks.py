import logging
import os

import pytest
from conftest import StaticStore, build_state

from sftpmatic.events import EventBus, ServerStartup, UserSessionChanged
from sftpmatic.hooks import HookRunner


def make_hook(tmp_path, name, executable=True):
    path = tmp_path / name
    path.write_text("#!/bin/sh\nexit 0\n")
    os.chmod(path, 0o755 if executable else 0o644)
    return str(path)


def make_runner(runner, startup=(), session=()):
    bus = EventBus()
    store = StaticStore(build_state({"Global": {"Hooks": {
        "OnServerStartup": list(startup), "OnSessionChange": list(session)}}}))
    return HookRunner(runner, store, bus), bus


@pytest.mark.asyncio
async def test_startup_hooks_run_without_arguments(runner, tmp_path):
    hook = make_hook(tmp_path, "start.sh")
    _, bus = make_runner(runner, startup=[hook])
    await bus.publish(ServerStartup())
    assert runner.commands(hook) == [[]]


@pytest.mark.asyncio
async def test_session_hooks_get_state_then_username(runner, tmp_path):
    hook = make_hook(tmp_path, "session.sh")
    _, bus = make_runner(runner, session=[hook])
    await bus.publish(UserSessionChanged("alice", "open_session"))
    assert runner.commands(hook) == [["open_session", "alice"]]


@pytest.mark.asyncio
async def test_missing_hook_is_skipped(runner, tmp_path, caplog):
    caplog.set_level(logging.INFO)
    missing = str(tmp_path / "nope.sh")
    _, bus = make_runner(runner, startup=[missing])
    await bus.publish(ServerStartup())
    assert runner.calls == []
    assert "does not exist" in caplog.text


@pytest.mark.asyncio
async def test_non_executable_hook_gets_chmod(runner, tmp_path):
    hook = make_hook(tmp_path, "plain.sh", executable=False)
    _, bus = make_runner(runner, startup=[hook])
    await bus.publish(ServerStartup())
    assert runner.calls[0] == ("chmod", ["+x", hook])
    assert runner.calls[1] == (hook, [])
    assert os.access(hook, os.X_OK)


@pytest.mark.asyncio
async def test_failing_hooks_never_propagate(runner, tmp_path, caplog):
    broken = make_hook(tmp_path, "broken.sh", executable=False)
    fine = make_hook(tmp_path, "fine.sh")
    runner.fail_when("chmod", rc=1, out="operation not permitted")
    runner.hook_result = (3, "bad things")
    _, bus = make_runner(runner, startup=[broken, fine])

    await bus.publish(ServerStartup())
    assert runner.commands(broken) == []
    assert runner.commands(fine) == [[]]
    assert "Hook '%s' failed" % broken in caplog.text
    assert "exited with code 3" in caplog.text
