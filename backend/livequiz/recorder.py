from __future__ import annotations

import logging
import string
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set, Tuple

from pydantic import ValidationError

from .db import RealtimeStore, settings, store as default_store
from .errors import StoreError, SubmissionFailed, SubmissionRejected
from .events import EventStore
from .models import AnswerRecord, AnswerValue, Question, QuestionType
from .projector import CountdownState
from .utils import answer_path, as_int, participant_path, retry_store_call

logger = logging.getLogger(__name__)

LETTERS = string.ascii_uppercase


def _option_index(question: Question, raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if not isinstance(raw, str):
        return None

    text = raw.strip()
    if not text:
        return None
    if len(text) == 1 and text.upper() in LETTERS:
        return LETTERS.index(text.upper())
    if text.lstrip("-").isdigit():
        return int(text)
    for idx, option in enumerate(question.options):
        if option.strip().lower() == text.lower():
            return idx
    return None


def normalize_answer(question: Question, raw: Any) -> AnswerValue:
    """Canonical stored form: 0-based option index, or trimmed text."""

    if question.is_choice:
        idx = _option_index(question, raw)
        if idx is None or idx < 0 or (question.options and idx >= len(question.options)):
            raise SubmissionRejected(SubmissionRejected.INVALID_ANSWER, f"Unrecognised option: {raw!r}")
        return idx

    text = "" if raw is None else str(raw).strip()
    if not text:
        raise SubmissionRejected(SubmissionRejected.INVALID_ANSWER, "Answer is empty")
    return text


def _accepted_keys(question: Question) -> list:
    keys = [question.correct_answer] if question.correct_answer is not None else []
    if question.allow_multiple:
        keys.extend(question.correct_answers)
    elif not keys:
        keys = list(question.correct_answers[:1])
    return keys


def grade(question: Question, answer: AnswerValue) -> bool:
    """Malformed questions grade every answer as wrong instead of raising."""

    keys = _accepted_keys(question)
    if question.is_choice:
        if not question.options:
            return False
        accepted = {_option_index(question, key) for key in keys}
        return answer in accepted - {None}

    if question.type == QuestionType.FILL_IN_BLANK.value:
        given = str(answer).strip().lower()
        return any(given == str(key).strip().lower() for key in keys if key is not None)

    return False


def points_for(question: Question) -> int:
    if question.points is not None:
        return max(0, question.points)
    if question.is_tie_breaker:
        return settings.TIE_BREAKER_POINTS
    return settings.DEFAULT_QUESTION_POINTS


@dataclass
class SubmissionResult:
    is_correct: bool
    score_delta: int
    record: AnswerRecord
    total_score: Optional[int] = None


SubmissionKey = Tuple[str, str, str]


class AnswerRecorder:
    """Writes one participant's answer and credits the points.

    The answer record is written first and only then is the score credited,
    through a transaction that remembers which questions were already paid
    out, so neither a retried call nor a racing second client can credit the
    same question twice.
    """

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
        self._submitted: Set[SubmissionKey] = set()
        self._in_flight: Set[SubmissionKey] = set()

    def has_submitted(self, quiz_id: str, question_id: str, participant_id: str) -> bool:
        return (quiz_id, question_id, participant_id) in self._submitted

    def mark_submitted(self, quiz_id: str, question_id: str, participant_id: str) -> None:
        self._submitted.add((quiz_id, question_id, participant_id))

    async def submit(
        self,
        quiz_id: str,
        question: Question,
        participant_id: str,
        raw_answer: Any,
        *,
        countdown_state: CountdownState,
        time_remaining: int | None = None,
    ) -> SubmissionResult:
        key = (quiz_id, question.id, participant_id)
        if key in self._submitted or key in self._in_flight:
            raise SubmissionRejected(SubmissionRejected.ALREADY_SUBMITTED)
        if countdown_state is not CountdownState.RUNNING:
            raise SubmissionRejected(
                SubmissionRejected.NOT_ANSWERABLE, f"Answers are closed ({countdown_state.value})"
            )

        answer = normalize_answer(question, raw_answer)

        self._in_flight.add(key)
        try:
            return await self._record(quiz_id, question, participant_id, answer, time_remaining)
        finally:
            self._in_flight.discard(key)

    async def _record(
        self,
        quiz_id: str,
        question: Question,
        participant_id: str,
        answer: AnswerValue,
        time_remaining: int | None,
    ) -> SubmissionResult:
        path = answer_path(quiz_id, question.id, participant_id)

        participant = await self._call(
            question.id, participant_id, lambda: self.store.get(participant_path(quiz_id, participant_id))
        )
        if participant is None:
            raise SubmissionRejected(SubmissionRejected.UNKNOWN_PARTICIPANT)

        existing = await self._call(question.id, participant_id, lambda: self.store.get(path))
        if existing is not None:
            # someone (possibly an earlier, half-finished call) got there first
            try:
                stored = AnswerRecord.model_validate(existing)
            except ValidationError:
                logger.warning("Unreadable answer record for %s on %s/%s", participant_id, quiz_id, question.id)
                stored = None
            if stored is not None and stored.score > 0:
                await self._credit(quiz_id, question.id, participant_id, stored)
            self.mark_submitted(quiz_id, question.id, participant_id)
            raise SubmissionRejected(SubmissionRejected.ALREADY_SUBMITTED)

        is_correct = grade(question, answer)
        record = AnswerRecord(
            answer=answer,
            is_correct=is_correct,
            score=points_for(question) if is_correct else 0,
            submitted_at=self.store.server_now(),
            time_remaining=time_remaining,
        )
        await self._call(question.id, participant_id, lambda: self.store.set(path, record.to_store()))

        total = None
        if record.score > 0:
            total = await self._credit(quiz_id, question.id, participant_id, record)
        self.mark_submitted(quiz_id, question.id, participant_id)

        logger.info(
            "Answer recorded for %s on %s/%s: correct=%s delta=%s",
            participant_id,
            quiz_id,
            question.id,
            is_correct,
            record.score,
        )
        try:
            await self.events.append(
                quiz_id,
                {
                    "type": "answer_recorded",
                    "question_id": question.id,
                    "participant_id": participant_id,
                    "is_correct": is_correct,
                },
            )
        except StoreError:
            logger.warning("Could not log answer event for %s/%s", quiz_id, question.id)

        return SubmissionResult(is_correct=is_correct, score_delta=record.score, record=record, total_score=total)

    async def _credit(self, quiz_id: str, question_id: str, participant_id: str, record: AnswerRecord) -> Optional[int]:
        def apply(current: Any) -> Any:
            if not isinstance(current, dict):
                return current
            credited = current.get("scoredQuestions")
            if not isinstance(credited, dict):
                credited = {}
            if question_id in credited:
                return current
            credited[question_id] = record.score
            current["scoredQuestions"] = credited
            current["score"] = as_int(current.get("score")) + record.score
            current["lastAnswerAt"] = record.submitted_at
            return current

        updated = await self._call(
            question_id,
            participant_id,
            lambda: self.store.transaction(participant_path(quiz_id, participant_id), apply),
        )
        if not isinstance(updated, dict):
            logger.warning("Participant %s vanished before scoring %s/%s", participant_id, quiz_id, question_id)
            return None
        return as_int(updated.get("score"))

    async def _call(self, question_id: str, participant_id: str, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await retry_store_call(call, attempts=self.attempts, base_delay=self.base_delay)
        except StoreError as exc:
            logger.error("Store failure while recording %s for %s: %s", question_id, participant_id, exc)
            raise SubmissionFailed(question_id, participant_id) from exc
