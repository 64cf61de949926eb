"""Fan-out of state messages to connected UI sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol


logger = logging.getLogger(__name__)

ACTIVE_TIMEOUT = 15.0
SESSION_QUEUE_SIZE = 256

Message = dict[str, object]


class MessageSink(Protocol):
    """Anything that can accept an outbound message without blocking."""

    def send(self, message: Mapping[str, object]) -> None:
        ...


def build_message(msg_type: str, data: object, request_id: object | None = None) -> Message:
    """Wrap ``data`` in the ``{type: data}`` envelope used on the wire."""

    message: Message = {msg_type: data}
    if request_id is not None:
        message["id"] = request_id
    return message


@dataclass(slots=True)
class Requester:
    """The origin of an inbound command, used to address the reply."""

    sink: MessageSink
    request_id: object | None = None

    def reply(self, msg_type: str, data: object) -> None:
        self.sink.send(build_message(msg_type, data, self.request_id))


class UISession:
    """A browser session with a bounded outbound queue.

    Messages are queued synchronously so state code never awaits a slow
    client; the websocket endpoint drains :attr:`queue`.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=SESSION_QUEUE_SIZE)
        self.last_active = clock()

    def send(self, message: Mapping[str, object]) -> None:
        try:
            self.queue.put_nowait(dict(message))
        except asyncio.QueueFull:
            logger.warning("Dropping message for slow UI session")

    def mark_active(self) -> None:
        self.last_active = self._clock()


class Broadcaster:
    """Registry of UI sessions plus the optional relay connection."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._sessions: list[UISession] = []
        self.remote: MessageSink | None = None

    # ------------------------------- sessions ------------------------------
    def add_session(self, session: UISession) -> None:
        self._sessions.append(session)

    def remove_session(self, session: UISession) -> None:
        try:
            self._sessions.remove(session)
        except ValueError:
            pass

    @property
    def sessions(self) -> list[UISession]:
        return list(self._sessions)

    def recently_active(self) -> float:
        """Cut-off for sessions that showed activity within ``ACTIVE_TIMEOUT``."""

        return self._clock() - ACTIVE_TIMEOUT

    # ------------------------------- delivery ------------------------------
    def broadcast_local(
        self,
        msg_type: str,
        data: object,
        *,
        active_since: float | None = None,
        exclude: MessageSink | None = None,
    ) -> None:
        message = build_message(msg_type, data)
        for session in self._sessions:
            if session is exclude:
                continue
            if active_since is not None and session.last_active < active_since:
                continue
            session.send(message)

    def broadcast(
        self,
        msg_type: str,
        data: object,
        *,
        active_since: float | None = None,
        exclude: MessageSink | None = None,
    ) -> None:
        """Send to local sessions and to the relay when it is authenticated."""

        self.broadcast_local(msg_type, data, active_since=active_since, exclude=exclude)
        if self.remote is not None and self.remote is not exclude:
            self.remote.send(build_message(msg_type, data))


__all__ = [
    "ACTIVE_TIMEOUT",
    "Broadcaster",
    "MessageSink",
    "Requester",
    "UISession",
    "build_message",
]
