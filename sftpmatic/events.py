# Module: events.py
# In-process publish/subscribe. Subscribers run in subscription order and each one is
# awaited before publish() returns, so a publisher knows its side effects are done.

import dataclasses
import logging
from typing import Awaitable, Callable

from sftpmatic.model import DesiredState


@dataclasses.dataclass(frozen=True)
class ConfigurationChanged:
    state: DesiredState


@dataclasses.dataclass(frozen=True)
class ServerStartup:
    pass


@dataclasses.dataclass(frozen=True)
class UserSessionChanged:
    username: str
    session_state: str


Handler = Callable[[object], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[type, list[Handler]] = {}

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: type, handler: Handler) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: object) -> None:
        """Run every subscriber of type(event) in order; exceptions propagate to the caller."""
        handlers = list(self._subscribers.get(type(event), []))
        logging.debug("Publishing %s to %d subscriber(s)", type(event).__name__, len(handlers))
        for handler in handlers:
            await handler(event)
