from __future__ import annotations

import asyncio
import copy
import inspect
import itertools
import logging
from collections import deque
from functools import lru_cache
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import now_ms

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    DEFAULT_QUESTION_SECONDS: int = 30
    DEFAULT_QUESTION_POINTS: int = 1000
    TIE_BREAKER_POINTS: int = 500

    TICK_INTERVAL_MS: int = 100
    RESYNC_INTERVAL_MS: int = 1000

    STORE_WRITE_ATTEMPTS: int = 3
    STORE_RETRY_BASE_DELAY_S: float = 0.05
    EVENT_LOG_LIMIT: int = 200


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


Path = Tuple[str, ...]
Subscriber = Callable[[Any], Any]


class RealtimeStore(Protocol):
    """Path-addressed JSON store shared by every client of a quiz."""

    def server_now(self) -> int: ...

    async def get(self, path: str) -> Any: ...

    async def set(self, path: str, value: Any) -> None: ...

    async def update(self, path: str, partial: Dict[str, Any]) -> None: ...

    async def remove(self, path: str) -> None: ...

    async def push(self, path: str, value: Any) -> str: ...

    async def transaction(self, path: str, fn: Callable[[Any], Any]) -> Any: ...

    def subscribe(self, path: str, callback: Subscriber) -> Callable[[], None]: ...


def split_path(path: str) -> Path:
    return tuple(seg for seg in path.strip("/").split("/") if seg)


def _related(a: Path, b: Path) -> bool:
    shorter = min(len(a), len(b))
    return a[:shorter] == b[:shorter]


class InMemoryRealtimeStore:
    """Single-process stand-in for the realtime database.

    Mutations are serialised by a lock. Subscribers are notified after the
    lock is released, in commit order, with the value at their own path.
    """

    def __init__(self, clock: Callable[[], int] | None = None):
        self._root: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or now_ms
        self._subscribers: Dict[Path, List[Tuple[int, Subscriber]]] = {}
        self._sub_ids = itertools.count(1)
        self._push_ids = itertools.count(1)
        self._pending: Deque[Tuple[Subscriber, Any]] = deque()
        self._draining = False

    def server_now(self) -> int:
        return int(self._clock())

    async def get(self, path: str) -> Any:
        async with self._lock:
            return copy.deepcopy(self._read(split_path(path)))

    async def set(self, path: str, value: Any) -> None:
        segments = split_path(path)
        async with self._lock:
            self._write(segments, copy.deepcopy(value))
            self._queue_notifications([segments])
        await self._drain()

    async def update(self, path: str, partial: Dict[str, Any]) -> None:
        base = split_path(path)
        async with self._lock:
            changed = []
            for key, value in partial.items():
                target = base + split_path(key)
                self._write(target, copy.deepcopy(value))
                changed.append(target)
            self._queue_notifications(changed)
        await self._drain()

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    async def push(self, path: str, value: Any) -> str:
        key = f"p{self.server_now():013d}{next(self._push_ids):06d}"
        await self.set(f"{path}/{key}", value)
        return key

    async def transaction(self, path: str, fn: Callable[[Any], Any]) -> Any:
        segments = split_path(path)
        async with self._lock:
            current = copy.deepcopy(self._read(segments))
            new_value = fn(current)
            self._write(segments, copy.deepcopy(new_value))
            self._queue_notifications([segments])
            result = copy.deepcopy(new_value)
        await self._drain()
        return result

    def subscribe(self, path: str, callback: Subscriber) -> Callable[[], None]:
        segments = split_path(path)
        sub_id = next(self._sub_ids)
        self._subscribers.setdefault(segments, []).append((sub_id, callback))

        def unsubscribe() -> None:
            entries = self._subscribers.get(segments, [])
            remaining = [entry for entry in entries if entry[0] != sub_id]
            if remaining:
                self._subscribers[segments] = remaining
            else:
                self._subscribers.pop(segments, None)

        return unsubscribe

    def subscriber_count(self, path: str | None = None) -> int:
        if path is None:
            return sum(len(entries) for entries in self._subscribers.values())
        return len(self._subscribers.get(split_path(path), []))

    def _read(self, segments: Path) -> Any:
        node: Any = self._root
        for seg in segments:
            if not isinstance(node, dict) or seg not in node:
                return None
            node = node[seg]
        return node

    def _write(self, segments: Path, value: Any) -> None:
        if not segments:
            self._root = value if isinstance(value, dict) else {}
            return

        if value is None:
            self._delete(segments)
            return

        node = self._root
        for seg in segments[:-1]:
            child = node.get(seg)
            if not isinstance(child, dict):
                child = {}
                node[seg] = child
            node = child
        node[segments[-1]] = value

    def _delete(self, segments: Path) -> None:
        trail = []
        node: Any = self._root
        for seg in segments[:-1]:
            if not isinstance(node, dict) or seg not in node:
                return
            trail.append((node, seg))
            node = node[seg]
        if isinstance(node, dict):
            node.pop(segments[-1], None)

        # empty parents disappear, as they do in the hosted database
        for parent, seg in reversed(trail):
            if parent[seg] == {}:
                del parent[seg]
            else:
                break

    def _queue_notifications(self, changed: List[Path]) -> None:
        for sub_path, entries in list(self._subscribers.items()):
            if not any(_related(sub_path, path) for path in changed):
                continue
            value = self._read(sub_path)
            for _, callback in entries:
                self._pending.append((callback, copy.deepcopy(value)))

    async def _drain(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            while self._pending:
                callback, value = self._pending.popleft()
                try:
                    result = callback(value)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Store subscriber failed")
        finally:
            self._draining = False


store: Any = InMemoryRealtimeStore()
