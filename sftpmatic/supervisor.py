# Module: supervisor.py
# Daemon Supervisor: owns the one sshd child.
#
#   STOPPED -> STARTING -> RUNNING -> RESTARTING -> STARTING -> RUNNING
#
# - start(): (first time only) clear out any sshd we didn't start, refresh host keys,
#   write sshd_config, spawn `sshd -D -e`, stream its output into our log
# - stop(): forget the child first, then kill its process group and reap it
# - a watcher task per child notices crashes; a child we still own dying means exactly
#   one full restart cycle
# All transitions take the same lock so a crash restart can't interleave with an apply.

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

from sftpmatic.errors import SupervisorError
from sftpmatic.events import EventBus, ServerStartup
from sftpmatic.fsutil import fncSafeWriteAtomic
from sftpmatic.model import DesiredState
from sftpmatic.settings import RESTART_STABLE_AFTER, SSHD_NOISE
from sftpmatic.sshd_config import fncRenderSshdConfig

PUMP_DRAIN_TIMEOUT = 5.0


class DaemonState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"


class DaemonSupervisor:
    def __init__(self, settings, runner, hostkeys, bus: EventBus,
                 on_unexpected_exit: Optional[Callable[[DesiredState], Awaitable[None]]] = None):
        self.settings = settings
        self.runner = runner
        self.hostkeys = hostkeys
        self.bus = bus
        self.on_unexpected_exit = on_unexpected_exit
        self.state = DaemonState.STOPPED
        self.crashes = 0
        self._rapid_crashes = 0
        self._started_at: Optional[float] = None
        self._process = None
        self._last_state: Optional[DesiredState] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._watchers: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._stopped = asyncio.Event()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    #---------------------#
    # Transitions         #
    #---------------------#

    async def start(self, state: DesiredState, first: bool = False):
        self._stopped.clear()
        async with self._lock:
            await self._start_locked(state, first)

    async def stop(self):
        self._stopped.set()
        async with self._lock:
            await self._stop_locked()
            self.state = DaemonState.STOPPED

    # Function: restart
    # Purpose : Stop then start with the given snapshot.
    # Notes   : No system-wide kill here; only our own child is stopped. Failures propagate.
    async def restart(self, state: DesiredState):
        async with self._lock:
            logging.info("Restarting SSH daemon")
            self.state = DaemonState.RESTARTING
            await self._stop_locked()
            await self._start_locked(state, first=False)

    async def _start_locked(self, state: DesiredState, first: bool):
        self.state = DaemonState.STARTING
        try:
            if first:
                await self._kill_stray_daemons()
            await self.hostkeys.refresh(state)
            self._write_config(state)
            logging.info("Starting SSH daemon")
            proc = await self.runner.spawn("sshd", list(self.settings.sshd_args))
        except Exception:
            self.state = DaemonState.STOPPED
            raise

        self._process = proc
        self._last_state = state
        self.state = DaemonState.RUNNING
        self._started_at = asyncio.get_running_loop().time()
        self._pump_task = asyncio.create_task(
            self._pump_output(proc, state.global_policy.ignore_no_identification_string))
        watcher = asyncio.create_task(self._watch(proc))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        logging.info("SSH daemon running (pid %s)", proc.pid)
        await self.bus.publish(ServerStartup())

    async def _stop_locked(self):
        proc, self._process = self._process, None
        pump, self._pump_task = self._pump_task, None
        if proc is not None:
            logging.info("Stopping SSH daemon (pid %s)", proc.pid)
            await self.runner.kill_tree(proc)
        if pump is not None:
            try:
                await asyncio.wait_for(pump, PUMP_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logging.debug("sshd output did not drain in %ss", PUMP_DRAIN_TIMEOUT)
        if proc is not None:
            logging.info("SSH daemon stopped")

    #---------------------#
    # Helpers             #
    #---------------------#

    # Function: _kill_stray_daemons
    # Purpose : Clear out any sshd that isn't ours before the first start.
    # Notes   : Exit codes in kill_ok_codes are fine; anything else with output is fatal.
    async def _kill_stray_daemons(self):
        logging.debug("Stopping any existing SSH daemon")
        rc, out = await self.runner.run("killall", ["-q", "-w", "sshd"], check=False)
        if rc in self.settings.kill_ok_codes:
            return
        if out.strip():
            raise SupervisorError(f"Could not stop existing SSH daemon (exit code {rc}): {out}")
        logging.warning("killall exited with code %d and no output; continuing", rc)

    def _write_config(self, state: DesiredState):
        path = self.settings.sshd_config_path
        logging.debug("Writing SSH daemon configuration to '%s'", path)
        text = fncRenderSshdConfig(state, self.settings.ssh_dir, self.settings.home_base)
        try:
            fncSafeWriteAtomic(path, text, 0o600)
        except (OSError, RuntimeError) as e:
            raise SupervisorError(f"Could not write {path}: {e}") from e

    async def _pump_output(self, proc, ignore_noise: bool):
        while True:
            line = await proc.stdout.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            if ignore_noise and text.startswith(SSHD_NOISE):
                continue
            logging.debug("sshd: %s", text)

    async def _restart_after_crash(self):
        async with self._lock:
            if self._stopped.is_set() or self._process is not None:
                return
            logging.info("Restarting SSH daemon")
            self.state = DaemonState.RESTARTING
            await self._stop_locked()
            await self._start_locked(self._last_state, first=False)

    # Function: _restart_delay
    # Purpose : Seconds to wait before restarting a child that ran for uptime seconds.
    # Notes   : Doubles per back-to-back crash; a child that stayed up long enough resets it.
    def _restart_delay(self, uptime: float) -> float:
        if uptime >= RESTART_STABLE_AFTER:
            self._rapid_crashes = 0
        self._rapid_crashes += 1
        base = self.settings.restart_backoff
        if base <= 0:
            return 0.0
        return min(base * 2 ** (self._rapid_crashes - 1), self.settings.restart_backoff_max)

    # Function: _watch
    # Purpose : Notice the child dying on its own and trigger one restart.
    # Notes   : stop() detaches the child before killing it, so a deliberate stop ends
    #           here quietly. A stop() during the backoff wins over the restart.
    async def _watch(self, proc):
        rc = await proc.wait()
        if self._process is not proc:
            return
        self._process = None
        self.state = DaemonState.STOPPED
        self.crashes += 1
        uptime = asyncio.get_running_loop().time() - (self._started_at or 0.0)
        delay = self._restart_delay(uptime)
        logging.warning("SSH daemon exited unexpectedly with code %s; restarting in %.1fs", rc, delay)
        if delay > 0:
            try:
                await asyncio.wait_for(self._stopped.wait(), delay)
            except asyncio.TimeoutError:
                pass
        if self._stopped.is_set():
            return
        try:
            if self.on_unexpected_exit is not None:
                await self.on_unexpected_exit(self._last_state)
            else:
                await self._restart_after_crash()
        except Exception as e:
            logging.error("Restarting SSH daemon after crash failed: %s", e)
