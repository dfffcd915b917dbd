# Module: service.py
# Wires the components together and owns the apply queue.
#
# Every piece of "make the system look like this DesiredState" work (startup, config
# changes, crash restarts) is a queue item drained by one worker, in arrival order.
# Callers that need the outcome await the item's future.

import asyncio
import collections
import logging

from sftpmatic.config import ConfigurationStore
from sftpmatic.events import ConfigurationChanged, EventBus
from sftpmatic.hooks import HookRunner
from sftpmatic.hostkeys import HostKeyManager
from sftpmatic.model import DesiredState
from sftpmatic.pam import fncInstallPamHook
from sftpmatic.reconcile import AccountReconciler
from sftpmatic.runner import CommandRunner
from sftpmatic.session import SessionPreparer
from sftpmatic.supervisor import DaemonState, DaemonSupervisor

STARTUP = "startup"
APPLY = "apply"
RESTART = "restart"
APPLIED_HISTORY = 20   # (kind, generation) of the most recent applies, newest last


class SftpService:
    def __init__(self, settings, runner=None):
        self.settings = settings
        self.runner = runner or CommandRunner(settings.bins, settings.command_timeout)
        self.bus = EventBus()
        self.store = ConfigurationStore(settings.config_path, self.bus)
        self.reconciler = AccountReconciler(settings, self.runner)
        self.hostkeys = HostKeyManager(self.runner, settings.keys_import_dir, settings.ssh_dir)
        self.supervisor = DaemonSupervisor(settings, self.runner, self.hostkeys, self.bus,
                                           on_unexpected_exit=self.request_restart)
        self.hooks = HookRunner(self.runner, self.store, self.bus)
        self.sessions = SessionPreparer(settings, self.runner, self.store, self.bus)
        self.bus.subscribe(ConfigurationChanged, self._on_configuration_changed)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._watcher: asyncio.Task | None = None
        self.applied: collections.deque = collections.deque(maxlen=APPLIED_HISTORY)

    #---------------------#
    # Lifecycle           #
    #---------------------#

    # Function: start
    # Purpose : Load config, converge once, start sshd, then begin watching for changes.
    # Notes   : Any failure here is fatal; logged CRITICAL and re-raised.
    async def start(self):
        logging.info("Starting SFTP service")
        self._worker = asyncio.create_task(self._apply_worker())
        try:
            state = await self.store.load()
            await self._submit(STARTUP, state)
        except Exception as e:
            logging.critical("SFTP service failed to start: %s", e)
            await self._cancel_tasks()
            raise

        if self.settings.watch_interval > 0:
            self._watcher = asyncio.create_task(self.store.watch(self.settings.watch_interval))
        logging.info("SFTP service started")

    async def stop(self):
        logging.info("Stopping SFTP service")
        await self._cancel_tasks()
        await self.supervisor.stop()
        logging.info("SFTP service stopped")

    async def _cancel_tasks(self):
        tasks = [t for t in (self._watcher, self._worker) if t is not None]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._watcher = self._worker = None
        # nobody will run what's left; don't leave callers waiting on it
        while not self._queue.empty():
            _, _, fut = self._queue.get_nowait()
            if fut is not None and not fut.done():
                fut.cancel()

    #---------------------#
    # Apply queue         #
    #---------------------#

    async def _submit(self, kind: str, state: DesiredState):
        fut = asyncio.get_running_loop().create_future()
        await self._queue.put((kind, state, fut))
        await fut

    async def _on_configuration_changed(self, event: ConfigurationChanged):
        await self._submit(APPLY, event.state)

    async def request_restart(self, state: DesiredState | None = None):
        """Queue a daemon restart (crash recovery). Doesn't wait for it."""
        await self._queue.put((RESTART, state, None))

    async def _apply_worker(self):
        while True:
            kind, state, fut = await self._queue.get()
            try:
                await self._apply(kind, state)
            except Exception as e:
                logging.error("Applying %s failed: %s", kind, e)
                if fut is not None and not fut.done():
                    fut.set_exception(e)
            else:
                if fut is not None and not fut.done():
                    fut.set_result(None)
            finally:
                self._queue.task_done()

    async def _apply(self, kind: str, state: DesiredState | None):
        if kind == STARTUP:
            if self.settings.install_pam_hook:
                await fncInstallPamHook(self.runner, self.settings.pam_dir, self.settings.http_port)
            await self.reconciler.reconcile(state)
            await self.supervisor.start(state, first=True)
        elif kind == APPLY:
            await self.reconciler.reconcile(state)
            await self.supervisor.restart(state)
        elif kind == RESTART:
            # an apply queued ahead of us may already have brought it back
            if self.supervisor.state == DaemonState.RUNNING:
                logging.debug("SSH daemon already running; skipping restart")
                return
            state = self.store.get()
            await self.supervisor.restart(state)
        else:
            raise ValueError(f"unknown apply kind: {kind}")
        self.applied.append((kind, state.generation))

    #---------------------#
    # Front doors         #
    #---------------------#

    async def reload(self) -> bool:
        return await self.store.reload()

    async def handle_pam_event(self, username, event_type, service) -> bool:
        return await self.sessions.handle_pam_event(username, event_type, service)

    def health(self) -> dict:
        state = self.store.get()
        return {
            "status": "ok" if self.supervisor.state == DaemonState.RUNNING else "degraded",
            "daemon": self.supervisor.state.value,
            "pid": self.supervisor.pid,
            "generation": state.generation,
            "users": len(state.users),
            "groups": len(state.groups),
        }
