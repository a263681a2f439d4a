from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Optional

from .db import RealtimeStore, settings, store as default_store
from .errors import SubmissionRejected
from .models import Question
from .projector import CountdownProjector, CountdownSnapshot, CountdownState
from .recorder import AnswerRecorder, SubmissionResult
from .utils import answer_path, question_path

logger = logging.getLogger(__name__)


class QuestionViewState(str, Enum):
    WAITING_FOR_TIMER = "waiting_for_timer"
    ANSWERABLE = "answerable"
    SUBMITTED = "submitted"
    EXPIRED = "expired"
    REVEALED = "revealed"


class ParticipantQuestionView:
    """One participant looking at one question.

    Combines the countdown, the participant's own submission and the host's
    reveal into a single state instead of a handful of independent flags.
    """

    def __init__(
        self,
        quiz_id: str,
        question: Question,
        participant_id: str,
        *,
        store: RealtimeStore | None = None,
        recorder: AnswerRecorder | None = None,
        clock: Callable[[], int] | None = None,
        tick_interval_ms: int | None = None,
        resync_interval_ms: int | None = None,
    ):
        self.quiz_id = quiz_id
        self.question = question
        self.participant_id = participant_id
        self.store = store or default_store
        self.recorder = recorder or AnswerRecorder(self.store)
        self.projector = CountdownProjector(
            self.store,
            initial_time=question.timer or settings.DEFAULT_QUESTION_SECONDS,
            on_time_up=self._on_time_up,
            clock=clock,
            tick_interval_ms=tick_interval_ms,
            resync_interval_ms=resync_interval_ms,
        )
        self.submitted_answer: Any = None
        self.result: Optional[SubmissionResult] = None
        self._submitted = False
        self._expired = False
        self._revealed = question.show_correct_answer
        self._unsubscribe_reveal: Optional[Callable[[], None]] = None

    @property
    def state(self) -> QuestionViewState:
        if self._revealed:
            return QuestionViewState.REVEALED
        if self._submitted:
            return QuestionViewState.SUBMITTED
        countdown = self.projector.state
        if countdown is CountdownState.RUNNING:
            return QuestionViewState.ANSWERABLE
        if self._expired or countdown is CountdownState.EXPIRED:
            return QuestionViewState.EXPIRED
        return QuestionViewState.WAITING_FOR_TIMER

    @property
    def countdown(self) -> CountdownSnapshot:
        return self.projector.snapshot()

    async def open(self) -> QuestionViewState:
        existing = await self.store.get(answer_path(self.quiz_id, self.question.id, self.participant_id))
        if existing is not None:
            self._submitted = True
            self.submitted_answer = existing.get("answer") if isinstance(existing, dict) else existing
            self.recorder.mark_submitted(self.quiz_id, self.question.id, self.participant_id)

        self._unsubscribe_reveal = self.store.subscribe(
            f"{question_path(self.quiz_id, self.question.id)}/showCorrectAnswer", self._on_reveal
        )
        await self.projector.mount(self.quiz_id, self.question.id)
        return self.state

    async def close(self) -> None:
        if self._unsubscribe_reveal is not None:
            self._unsubscribe_reveal()
            self._unsubscribe_reveal = None
        await self.projector.unmount()

    async def submit_answer(self, answer: Any) -> SubmissionResult:
        if self._submitted:
            raise SubmissionRejected(SubmissionRejected.ALREADY_SUBMITTED)
        if self.state is not QuestionViewState.ANSWERABLE:
            raise SubmissionRejected(SubmissionRejected.NOT_ANSWERABLE, f"Question is {self.state.value}")

        try:
            result = await self.recorder.submit(
                self.quiz_id,
                self.question,
                self.participant_id,
                answer,
                countdown_state=self.projector.state,
                time_remaining=self.projector.time_left,
            )
        except SubmissionRejected as exc:
            if exc.reason == SubmissionRejected.ALREADY_SUBMITTED:
                self._submitted = True
            raise
        self._submitted = True
        self.submitted_answer = result.record.answer
        self.result = result
        return result

    def reveal(self) -> None:
        self._revealed = True

    def _on_reveal(self, value: Any) -> None:
        if value is True:
            self.reveal()

    def _on_time_up(self, snapshot: CountdownSnapshot) -> None:
        self._expired = True
        logger.debug("Time up for %s on %s/%s", self.participant_id, self.quiz_id, self.question.id)
