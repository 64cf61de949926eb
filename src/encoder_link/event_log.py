"""Persistent journal of notable network events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque


logger = logging.getLogger(__name__)

CATEGORIES = ("wifi", "hotspot", "modem", "remote", "relays", "system")


@dataclass(slots=True)
class NetworkEvent:
    """One journal line."""

    timestamp: float
    category: str
    event: str
    message: str
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "NetworkEvent | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        if category not in CATEGORIES:
            category = "system"
        try:
            timestamp = float(payload.get("timestamp", 0.0))
        except (TypeError, ValueError):
            timestamp = 0.0
        details = payload.get("details")
        return cls(
            timestamp=timestamp,
            category=category,
            event=event,
            message=message,
            details=details if isinstance(details, dict) else {},
        )


class EventLog:
    """Bounded in-memory journal mirrored to a JSON-lines file."""

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path = Path(path) if path is not None else None
        self._entries: Deque[NetworkEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._restore()

    def record(self, category: str, event: str, message: str, **details: object) -> NetworkEvent:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown event category {category!r}")
        entry = NetworkEvent(
            timestamp=time.time(),
            category=category,
            event=event,
            message=message,
            details={key: value for key, value in details.items() if value is not None},
        )
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        return entry

    def tail(self, limit: int = 50, *, category: str | None = None) -> list[NetworkEvent]:
        with self._lock:
            entries = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category]
        return entries[-max(1, limit):]

    # ------------------------------ persistence ----------------------------
    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            logger.warning("Unable to read event log: %s", exc)
            return
        for line in lines:
            try:
                entry = NetworkEvent.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)

    def _append(self, entry: NetworkEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["CATEGORIES", "EventLog", "NetworkEvent"]
