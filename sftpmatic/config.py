# Module: config.py
# Configuration Store: owns the one current DesiredState.
# - get() is a plain attribute read; readers never wait and never see a half-built state
# - reload() builds a fresh snapshot, swaps the reference, then publishes ConfigurationChanged
# - watch() polls the document and reloads when it changes on disk

import asyncio
import json
import logging
import os

from sftpmatic.errors import ConfigError
from sftpmatic.events import ConfigurationChanged, EventBus
from sftpmatic.model import DesiredState, fncBuildDesiredState


class ConfigurationStore:
    def __init__(self, path: str, bus: EventBus):
        self.path = path
        self.bus = bus
        self._state = DesiredState()
        self._generation = 0
        self._fingerprint: tuple[int, int] | None = None
        self._reload_lock = asyncio.Lock()

    def get(self) -> DesiredState:
        return self._state

    def _stat_fingerprint(self) -> tuple[int, int] | None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return st.st_mtime_ns, st.st_size

    # Function: _read_document
    # Purpose : Read and parse the JSON document.
    # Notes   : Unreadable/unparseable -> ConfigError. Content problems are validation's job.
    def _read_document(self) -> dict:
        fingerprint = self._stat_fingerprint()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Configuration file not found: {self.path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read configuration {self.path}: {e}") from e
        self._fingerprint = fingerprint
        return raw

    def _swap(self, raw: dict) -> DesiredState:
        logging.debug("Validating and updating configuration")
        self._generation += 1
        state = fncBuildDesiredState(raw, generation=self._generation)
        self._state = state
        return state

    async def load(self) -> DesiredState:
        """Initial load. A missing or broken document here is fatal."""
        raw = await asyncio.to_thread(self._read_document)
        return self._swap(raw)

    # Function: reload
    # Purpose : Re-read the document and publish the new snapshot.
    # Notes   : Broken document keeps the previous snapshot (returns False, no event).
    #           Subscriber failures (e.g. restart) propagate to the caller.
    async def reload(self) -> bool:
        async with self._reload_lock:
            try:
                raw = await asyncio.to_thread(self._read_document)
            except ConfigError as e:
                logging.error("%s; keeping configuration generation %d", e, self._generation)
                return False
            state = self._swap(raw)
            logging.info("SFTP configuration changed (generation %d)", state.generation)
            await self.bus.publish(ConfigurationChanged(state))
            return True

    async def watch(self, interval: float):
        """Poll the document and reload on change. Runs until cancelled."""
        logging.debug("Watching %s every %ss", self.path, interval)
        while True:
            await asyncio.sleep(interval)
            fingerprint = self._stat_fingerprint()
            if fingerprint is None or fingerprint == self._fingerprint:
                continue
            try:
                if not await self.reload():
                    # don't re-log the same broken file every poll
                    self._fingerprint = fingerprint
            except Exception as e:
                logging.error("Applying changed configuration failed: %s", e)
