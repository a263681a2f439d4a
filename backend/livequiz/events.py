from __future__ import annotations

from typing import Any, List

from .db import RealtimeStore, store as default_store
from .utils import event_counter_path, events_path, now_ms


class EventStore:
    """Persist quiz events in the realtime store so HTTP clients can poll."""

    def __init__(self, store: RealtimeStore | None = None):
        self.store = store or default_store

    async def append(self, quiz_id: str, payload: dict[str, Any]) -> int:
        """Store a new event for a quiz and return its sequence number."""

        seq = await self.store.transaction(
            event_counter_path(quiz_id), lambda current: int(current or 0) + 1
        )
        await self.store.set(
            f"{events_path(quiz_id)}/{seq:08d}",
            {
                "seq": seq,
                "timestamp": now_ms(),
                "payload": payload,
            },
        )
        return seq

    async def list(self, quiz_id: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a quiz that occur after the given sequence."""

        docs = await self.store.get(events_path(quiz_id)) or {}
        events = sorted(docs.values(), key=lambda doc: doc.get("seq", 0))
        if after is not None:
            events = [doc for doc in events if doc.get("seq", 0) > after]

        return [
            {
                "seq": doc["seq"],
                "timestamp": doc.get("timestamp"),
                "payload": doc.get("payload", {}),
            }
            for doc in events[:limit]
        ]

    async def reset(self, quiz_id: str) -> None:
        """Clear stored events for a quiz and emit a reset marker."""

        await self.store.remove(events_path(quiz_id))

        # The counter is kept so sequence numbers keep increasing; pollers
        # see the marker and discard state derived from the previous run.
        await self.append(quiz_id, {"type": "session_reset"})


event_store = EventStore()
