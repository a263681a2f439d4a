"""Per-client countdown derived from the shared timer anchor.

Each client (host, participant or audience screen) runs its own projector.
It never counts on its own authority: every displayed value is recomputed
from the anchor and the client's estimate of server time, so a suspended
tab or a skewed clock is corrected at the next re-sync.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from .db import RealtimeStore, settings, store as default_store
from .errors import StoreError
from .models import QuestionTimer
from .timers import parse_anchor, remaining_ms, remaining_seconds
from .utils import now_ms, timer_path

logger = logging.getLogger(__name__)


class CountdownState(str, Enum):
    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    RUNNING = "running"
    PAUSED = "paused"
    EXPIRED = "expired"


def countdown_state_for(anchor: Optional[QuestionTimer], now: int) -> CountdownState:
    """State a freshly synced projector would settle in for ``anchor``."""

    if anchor is None or not anchor.is_active or anchor.start_time is None:
        return CountdownState.PAUSED
    if remaining_seconds(anchor, now) <= 0:
        return CountdownState.EXPIRED
    return CountdownState.RUNNING


@dataclass(frozen=True)
class CountdownSnapshot:
    quiz_id: Optional[str]
    question_id: Optional[str]
    state: CountdownState
    time_left: int
    time_left_ms: int
    initial_time: int

    @property
    def is_active(self) -> bool:
        return self.state is CountdownState.RUNNING

    @property
    def progress(self) -> float:
        if self.initial_time <= 0:
            return 0.0
        return min(1.0, max(0.0, self.time_left_ms / (self.initial_time * 1000)))


TimeUpCallback = Callable[[CountdownSnapshot], Any]
Observer = Callable[[CountdownSnapshot], Any]


class CountdownProjector:
    def __init__(
        self,
        store: RealtimeStore | None = None,
        *,
        initial_time: int | None = None,
        on_time_up: TimeUpCallback | None = None,
        clock: Callable[[], int] | None = None,
        tick_interval_ms: int | None = None,
        resync_interval_ms: int | None = None,
    ):
        self.store = store or default_store
        self.initial_time = initial_time if initial_time is not None else settings.DEFAULT_QUESTION_SECONDS
        self.on_time_up = on_time_up
        self.tick_interval_ms = tick_interval_ms or settings.TICK_INTERVAL_MS
        self.resync_interval_ms = resync_interval_ms or settings.RESYNC_INTERVAL_MS
        self._clock = clock or now_ms

        self.quiz_id: Optional[str] = None
        self.question_id: Optional[str] = None
        self.state = CountdownState.UNSYNCED
        self.time_left = self.initial_time
        self.time_left_ms = self.initial_time * 1000
        self.offset_ms = 0

        self._anchor: Optional[QuestionTimer] = None
        self._end_time: Optional[int] = None
        self._fired_end_time: Optional[int] = None
        self._generation = 0
        self._pushes = 0
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._observers: List[Tuple[int, Observer]] = []
        self._observer_seq = 0
        self._pending_callbacks: set[asyncio.Task] = set()

    @property
    def anchor(self) -> Optional[QuestionTimer]:
        return self._anchor

    @property
    def is_mounted(self) -> bool:
        return self.quiz_id is not None

    def server_time(self) -> int:
        return self._clock() + self.offset_ms

    def snapshot(self) -> CountdownSnapshot:
        return CountdownSnapshot(
            quiz_id=self.quiz_id,
            question_id=self.question_id,
            state=self.state,
            time_left=self.time_left,
            time_left_ms=self.time_left_ms,
            initial_time=self.initial_time,
        )

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observer_seq += 1
        token = self._observer_seq
        self._observers.append((token, observer))

        def unsubscribe() -> None:
            self._observers = [entry for entry in self._observers if entry[0] != token]

        return unsubscribe

    async def mount(self, quiz_id: str, question_id: str) -> CountdownSnapshot:
        """Start projecting the timer of one question.

        Anything left over from a previous question is torn down first.
        """

        if self.is_mounted:
            await self.unmount()

        self._generation += 1
        generation = self._generation
        self.quiz_id = quiz_id
        self.question_id = question_id
        self._anchor = None
        self._end_time = None
        self._fired_end_time = None
        self.time_left = self.initial_time
        self.time_left_ms = self.initial_time * 1000
        self._set_state(CountdownState.SYNCING)

        self._unsubscribe = self.store.subscribe(
            timer_path(quiz_id, question_id),
            lambda value: self._on_anchor_pushed(value, generation),
        )
        self._resync_task = asyncio.create_task(self._resync_loop(generation))
        return await self.resync()

    async def switch(self, quiz_id: str, question_id: str) -> CountdownSnapshot:
        return await self.mount(quiz_id, question_id)

    async def unmount(self) -> None:
        self._generation += 1
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        tick_task, self._tick_task = self._tick_task, None
        resync_task, self._resync_task = self._resync_task, None
        for task in (tick_task, resync_task):
            await self._cancel(task)

        self.quiz_id = None
        self.question_id = None
        self._anchor = None
        self._end_time = None
        self.state = CountdownState.UNSYNCED

    async def resync(self) -> CountdownSnapshot:
        """Re-read the anchor and recompute; safe to call any number of times."""

        if not self.is_mounted:
            return self.snapshot()

        generation = self._generation
        pushes = self._pushes
        self.offset_ms = self.store.server_now() - self._clock()
        try:
            raw = await self.store.get(timer_path(self.quiz_id, self.question_id))
        except StoreError as exc:
            logger.warning("Timer resync failed for %s/%s: %s", self.quiz_id, self.question_id, exc)
            return self.snapshot()

        if generation != self._generation:
            return self.snapshot()
        if pushes != self._pushes:
            # a pushed update landed while reading; it is at least as new
            self._refresh()
            return self.snapshot()

        self._apply(raw)
        return self.snapshot()

    async def handle_visibility_change(self, visible: bool) -> CountdownSnapshot:
        if visible:
            return await self.resync()
        return self.snapshot()

    async def handle_online(self) -> CountdownSnapshot:
        return await self.resync()

    def _on_anchor_pushed(self, value: Any, generation: int) -> None:
        if generation != self._generation:
            return
        self._pushes += 1
        self._apply(value)

    def _apply(self, raw: Any) -> None:
        anchor = parse_anchor(raw)
        self._anchor = anchor

        if anchor is None:
            self._end_time = None
            self._stop_ticking()
            self._settle(CountdownState.PAUSED, self.initial_time, self.initial_time * 1000)
            return

        if not anchor.is_active or anchor.start_time is None:
            self._stop_ticking()
            if self._is_expiry_of_current_period(anchor):
                # the host recorded expiry before our own tick got there
                self._settle(CountdownState.EXPIRED, 0, 0)
                self._fire_time_up(self._end_time)
                return
            self._end_time = None
            duration = max(0, anchor.duration)
            self._settle(CountdownState.PAUSED, duration, duration * 1000)
            return

        end_time = anchor.start_time + anchor.duration * 1000
        if end_time == self._end_time and self.state in (CountdownState.RUNNING, CountdownState.EXPIRED):
            self._refresh()
            return

        self._end_time = end_time
        now = self.server_time()
        left = remaining_seconds(anchor, now)
        if left <= 0:
            self._stop_ticking()
            self._settle(CountdownState.EXPIRED, 0, 0)
            self._fire_time_up(end_time)
            return

        self._settle(CountdownState.RUNNING, left, remaining_ms(anchor, now))
        self._start_ticking()

    def _is_expiry_of_current_period(self, anchor: QuestionTimer) -> bool:
        # a host reset also zeroes the duration but stamps pausedAt
        return (
            anchor.duration <= 0
            and anchor.paused_at is None
            and self._end_time is not None
            and self.state in (CountdownState.RUNNING, CountdownState.EXPIRED)
        )

    def _refresh(self) -> None:
        if self.state is not CountdownState.RUNNING or self._anchor is None:
            return
        now = self.server_time()
        left = remaining_seconds(self._anchor, now)
        if left <= 0:
            self._stop_ticking()
            self._settle(CountdownState.EXPIRED, 0, 0)
            self._fire_time_up(self._end_time)
            return
        self._settle(CountdownState.RUNNING, left, remaining_ms(self._anchor, now))

    def _settle(self, state: CountdownState, time_left: int, time_left_ms: int) -> None:
        changed = (state, time_left, time_left_ms) != (self.state, self.time_left, self.time_left_ms)
        self.state = state
        self.time_left = time_left
        self.time_left_ms = time_left_ms
        if changed:
            self._notify()

    def _set_state(self, state: CountdownState) -> None:
        if state is not self.state:
            self.state = state
            self._notify()

    def _notify(self) -> None:
        snap = self.snapshot()
        for _, observer in list(self._observers):
            try:
                observer(snap)
            except Exception:
                logger.exception("Countdown observer failed")

    def _fire_time_up(self, end_time: Optional[int]) -> None:
        if end_time is None or self._fired_end_time == end_time:
            return
        self._fired_end_time = end_time
        if self.on_time_up is None:
            return

        snap = self.snapshot()
        try:
            result = self.on_time_up(snap)
        except Exception:
            logger.exception("on_time_up callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending_callbacks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._pending_callbacks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("on_time_up callback failed", exc_info=task.exception())

    def _start_ticking(self) -> None:
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.create_task(self._tick_loop(self._generation))

    def _stop_ticking(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _tick_loop(self, generation: int) -> None:
        interval = self.tick_interval_ms / 1000
        while generation == self._generation and self.state is CountdownState.RUNNING:
            await asyncio.sleep(interval)
            if generation != self._generation:
                return
            self._refresh()

    async def _resync_loop(self, generation: int) -> None:
        interval = self.resync_interval_ms / 1000
        while generation == self._generation:
            await asyncio.sleep(interval)
            if generation != self._generation:
                return
            try:
                await self.resync()
            except Exception:
                logger.exception("Periodic timer resync failed")

    async def _cancel(self, task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task
