"""Host-side control of the per-question timer anchor.

Every client derives its countdown from one record per question stored at
``quizzes/{quizId}/questionTimers/{questionId}``::

    {"isActive": true, "startTime": <epoch ms>, "duration": <seconds>}

``duration`` is the number of seconds that were left at ``startTime``. Pausing
folds the elapsed time into ``duration`` so that resuming simply writes a fresh
``startTime`` without losing or gaining time.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from .db import RealtimeStore, settings, store as default_store
from .errors import StoreError, TimerControlError
from .events import EventStore
from .models import QuestionTimer
from .utils import retry_store_call, timer_path, timers_path

logger = logging.getLogger(__name__)


def remaining_seconds(anchor: QuestionTimer, now: int) -> int:
    """Authoritative whole seconds left on ``anchor`` at server time ``now``."""

    if not anchor.is_active or anchor.start_time is None:
        return max(0, anchor.duration)
    elapsed = max(0, now - anchor.start_time) // 1000
    return max(0, anchor.duration - elapsed)


def remaining_ms(anchor: QuestionTimer, now: int) -> int:
    if not anchor.is_active or anchor.start_time is None:
        return max(0, anchor.duration) * 1000
    return max(0, anchor.start_time + anchor.duration * 1000 - max(now, anchor.start_time))


def parse_anchor(raw: Any) -> Optional[QuestionTimer]:
    """Read a stored anchor; anything unusable counts as no anchor."""

    if not isinstance(raw, dict):
        return None
    try:
        return QuestionTimer.model_validate(raw)
    except ValidationError:
        logger.warning("Ignoring malformed timer anchor: %r", raw)
        return None


class TimerAnchorManager:
    def __init__(
        self,
        store: RealtimeStore | None = None,
        events: EventStore | None = None,
        *,
        attempts: int | None = None,
        base_delay: float | None = None,
    ):
        self.store = store or default_store
        self.events = events or EventStore(self.store)
        self.attempts = attempts if attempts is not None else settings.STORE_WRITE_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.STORE_RETRY_BASE_DELAY_S

    async def read_anchor(self, quiz_id: str, question_id: str) -> Optional[QuestionTimer]:
        raw = await self._commit(
            "read", quiz_id, question_id, lambda: self.store.get(timer_path(quiz_id, question_id))
        )
        return parse_anchor(raw)

    async def start_timer(self, quiz_id: str, question_id: str, seconds: int) -> QuestionTimer:
        if seconds <= 0:
            raise ValueError("Timer duration must be positive")

        anchor = QuestionTimer(is_active=True, start_time=self.store.server_now(), duration=int(seconds))
        # replace, never merge: a stale pausedAt/startTime must not survive
        await self._commit(
            "start",
            quiz_id,
            question_id,
            lambda: self.store.set(timer_path(quiz_id, question_id), anchor.to_store()),
        )
        logger.info("Timer started for %s/%s: %ss", quiz_id, question_id, anchor.duration)
        await self._publish(
            quiz_id,
            {
                "type": "timer_started",
                "question_id": question_id,
                "start_time": anchor.start_time,
                "duration": anchor.duration,
            },
        )
        return anchor

    async def stop_timer(self, quiz_id: str, question_id: str) -> Optional[QuestionTimer]:
        """Pause the timer, keeping the time that was left."""

        paused: dict[str, Any] = {}

        def pause(current: Any) -> Any:
            paused.clear()
            anchor = parse_anchor(current)
            if anchor is None or not anchor.is_active:
                return current
            now = self.store.server_now()
            remaining = remaining_seconds(anchor, now)
            current.update({"isActive": False, "duration": remaining, "pausedAt": now})
            paused.update(current)
            return current

        result = await self._commit(
            "stop",
            quiz_id,
            question_id,
            lambda: self.store.transaction(timer_path(quiz_id, question_id), pause),
        )
        if not paused:
            logger.debug("Timer for %s/%s already inactive", quiz_id, question_id)
            return parse_anchor(result)

        anchor = parse_anchor(paused)
        logger.info("Timer paused for %s/%s with %ss left", quiz_id, question_id, anchor.duration)
        await self._publish(
            quiz_id,
            {"type": "timer_paused", "question_id": question_id, "duration": anchor.duration},
        )
        return anchor

    async def resume_timer(self, quiz_id: str, question_id: str) -> Optional[QuestionTimer]:
        anchor = await self.read_anchor(quiz_id, question_id)
        if anchor is None or anchor.is_active or anchor.duration <= 0:
            return anchor
        return await self.start_timer(quiz_id, question_id, anchor.duration)

    async def reset_timer(self, quiz_id: str, question_id: str) -> QuestionTimer:
        """Force the timer off, whatever state it is in."""

        now = self.store.server_now()
        await self._commit(
            "reset",
            quiz_id,
            question_id,
            lambda: self.store.update(
                timer_path(quiz_id, question_id),
                {"isActive": False, "duration": 0, "pausedAt": now},
            ),
        )
        logger.info("Timer reset for %s/%s", quiz_id, question_id)
        await self._publish(quiz_id, {"type": "timer_reset", "question_id": question_id})
        return await self.read_anchor(quiz_id, question_id) or QuestionTimer(paused_at=now)

    async def clear_all_timers(self, quiz_id: str) -> None:
        """Drop every timer of the quiz. Irreversible."""

        await self._commit("clear", quiz_id, None, lambda: self.store.remove(timers_path(quiz_id)))
        logger.warning("All timers cleared for quiz %s", quiz_id)
        await self._publish(quiz_id, {"type": "timers_cleared"})

    async def mark_expired(self, quiz_id: str, question_id: str, start_time: int) -> bool:
        """Record expiry, but only for the period that started at ``start_time``."""

        expired = []

        def expire(current: Any) -> Any:
            expired.clear()
            anchor = parse_anchor(current)
            if anchor is None or not anchor.is_active or anchor.start_time != start_time:
                return current
            current.update({"isActive": False, "duration": 0})
            expired.append(True)
            return current

        await self._commit(
            "expire",
            quiz_id,
            question_id,
            lambda: self.store.transaction(timer_path(quiz_id, question_id), expire),
        )
        if expired:
            await self._publish(quiz_id, {"type": "timer_expired", "question_id": question_id})
        return bool(expired)

    async def _commit(
        self,
        action: str,
        quiz_id: str,
        question_id: str | None,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            return await retry_store_call(call, attempts=self.attempts, base_delay=self.base_delay)
        except StoreError as exc:
            logger.error("Timer %s failed for %s/%s: %s", action, quiz_id, question_id, exc)
            raise TimerControlError(action, quiz_id, question_id) from exc

    async def _publish(self, quiz_id: str, payload: dict[str, Any]) -> None:
        try:
            await self.events.append(quiz_id, payload)
        except StoreError:
            logger.warning("Could not log %s event for quiz %s", payload.get("type"), quiz_id)
