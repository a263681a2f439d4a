from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


def quiz_path(quiz_id: str) -> str:
    return f"quizzes/{quiz_id}"


def timers_path(quiz_id: str) -> str:
    return f"{quiz_path(quiz_id)}/questionTimers"


def timer_path(quiz_id: str, question_id: str) -> str:
    return f"{timers_path(quiz_id)}/{question_id}"


def participants_path(quiz_id: str) -> str:
    return f"{quiz_path(quiz_id)}/participants"


def participant_path(quiz_id: str, participant_id: str) -> str:
    return f"{participants_path(quiz_id)}/{participant_id}"


def answers_path(quiz_id: str, question_id: str | None = None) -> str:
    base = f"{quiz_path(quiz_id)}/answers"
    return f"{base}/{question_id}" if question_id else base


def answer_path(quiz_id: str, question_id: str, participant_id: str) -> str:
    return f"{answers_path(quiz_id, question_id)}/{participant_id}"


def questions_path(quiz_id: str) -> str:
    return f"{quiz_path(quiz_id)}/questions"


def question_path(quiz_id: str, question_id: str) -> str:
    return f"{questions_path(quiz_id)}/{question_id}"


def events_path(quiz_id: str) -> str:
    return f"{quiz_path(quiz_id)}/events"


def event_counter_path(quiz_id: str) -> str:
    return f"{quiz_path(quiz_id)}/eventSeq"


async def retry_store_call(
    action: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
) -> T:
    """Run ``action`` again on :class:`StoreError`, re-raising the last one."""

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=base_delay, max=max(base_delay, 2.0)),
        retry=retry_if_exception_type(StoreError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            return await action()
    raise AssertionError("retry loop ended without a result")


def as_int(value: Any, default: int = 0) -> int:
    """Coerce loosely-typed store values (floats, numeric strings) to int."""

    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return default
    return default
