"""Dispatch of inbound UI and relay commands to their owners."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from .broadcast import Requester


logger = logging.getLogger(__name__)

CommandHandler = Callable[[Requester, Any], Awaitable[None]]


class MessageRouter:
    """Routes each top-level key of a message to a registered handler.

    Handlers run as background tasks so a long command, such as a modem
    network scan, never holds up the connection it arrived on.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def register(self, key: str, handler: CommandHandler) -> None:
        self._handlers[key] = handler

    def dispatch(self, requester: Requester, message: Mapping[str, Any]) -> list[asyncio.Task[None]]:
        loop = asyncio.get_running_loop()
        tasks: list[asyncio.Task[None]] = []
        for key, value in message.items():
            if key == "id":
                continue
            handler = self._handlers.get(key)
            if handler is None:
                logger.debug("Unhandled message type %r", key)
                continue
            task = loop.create_task(self._run(key, handler, requester, value))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def _run(self, key: str, handler: CommandHandler, requester: Requester, value: Any) -> None:
        try:
            await handler(requester, value)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error handling %r message", key)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["CommandHandler", "MessageRouter"]
