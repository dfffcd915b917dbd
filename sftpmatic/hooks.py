# Module: hooks.py
# Runs the user-supplied scripts listed under Global.Hooks:
#   OnServerStartup  -> no args, after every daemon start
#   OnSessionChange  -> "<state> <username>", on every PAM event
# A hook can never break the service: everything is logged and swallowed here.

import logging
import os

from sftpmatic.events import EventBus, ServerStartup, UserSessionChanged


class HookRunner:
    def __init__(self, runner, store, bus: EventBus | None = None):
        self.runner = runner
        self.store = store
        if bus is not None:
            bus.subscribe(ServerStartup, self.on_server_startup)
            bus.subscribe(UserSessionChanged, self.on_session_change)

    async def on_server_startup(self, event: ServerStartup):
        await self.run_hooks(self.store.get().global_policy.hooks.on_server_startup, [])

    async def on_session_change(self, event: UserSessionChanged):
        await self.run_hooks(self.store.get().global_policy.hooks.on_session_change,
                             [event.session_state, event.username])

    async def run_hooks(self, hooks, args: list[str]):
        for hook in hooks:
            try:
                await self._run_one(hook, args)
            except Exception as e:
                logging.error("Hook '%s' failed: %s", hook, e)

    async def _run_one(self, hook: str, args: list[str]):
        path = os.path.abspath(hook)
        if not os.path.isfile(path):
            logging.info("Hook '%s' does not exist", path)
            return
        if not os.access(path, os.X_OK):
            logging.debug("Adding execute permission to hook '%s'", path)
            await self.runner.run("chmod", ["+x", path])

        logging.debug("Executing hook '%s'", path)
        rc, out = await self.runner.run(path, args, check=False)
        if out:
            logging.debug("Hook '%s' output: %s", path, out)
        if rc != 0:
            logging.warning("Hook '%s' exited with code %d", path, rc)
