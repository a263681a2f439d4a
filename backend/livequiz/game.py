from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .db import RealtimeStore, settings, store as default_store
from .errors import ProfileUpdateRejected, SubmissionRejected
from .events import EventStore
from .models import (
    ANONYMOUS,
    NO_TEAM,
    Participant,
    Question,
    QuestionTimer,
    Quiz,
    RankedParticipant,
    TeamStanding,
    TieBreakerQuestionReport,
    TiedGroup,
)
from .projector import CountdownProjector, CountdownSnapshot, countdown_state_for
from .ranking import (
    build_tie_breaker_log,
    find_rank,
    questions_from_store,
    rank,
    rank_teams,
    tie_breaker_report,
    tied_groups,
)
from .recorder import AnswerRecorder, SubmissionResult
from .timers import TimerAnchorManager, remaining_seconds
from .utils import (
    answers_path,
    participant_path,
    participants_path,
    question_path,
    questions_path,
    quiz_path,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_NAMES = {ANONYMOUS.lower(), NO_TEAM.lower(), "unknown", "player", "participant"}


def _is_placeholder(value: Optional[str]) -> bool:
    if value is None:
        return True
    text = value.strip()
    return not text or text.lower() in PLACEHOLDER_NAMES or text.lower().startswith("unknown (")


class QuizController:
    def __init__(
        self,
        store: RealtimeStore | None = None,
        events: EventStore | None = None,
        timers: TimerAnchorManager | None = None,
        recorder: AnswerRecorder | None = None,
    ):
        self.store = store or default_store
        self.events = events or EventStore(self.store)
        self.timers = timers or TimerAnchorManager(self.store, self.events)
        self.recorder = recorder or AnswerRecorder(self.store, self.events)
        self.locks: Dict[str, asyncio.Lock] = {}
        self.watchers: Dict[str, CountdownProjector] = {}

    def _lock(self, quiz_id: str) -> asyncio.Lock:
        self.locks.setdefault(quiz_id, asyncio.Lock())
        return self.locks[quiz_id]

    async def get_quiz(self, quiz_id: str) -> Quiz | None:
        doc = await self.store.get(quiz_path(quiz_id))
        if not isinstance(doc, dict) or "status" not in doc:
            return None
        return Quiz.model_validate({**doc, "id": quiz_id})

    async def _require_quiz(self, quiz_id: str) -> Quiz:
        quiz = await self.get_quiz(quiz_id)
        if not quiz:
            raise LookupError(f"Quiz {quiz_id} not found")
        return quiz

    async def save_quiz(self, quiz: Quiz):
        # update, not set: participants/answers/timers live under the same node
        await self.store.update(quiz_path(quiz.id), quiz.to_store())

    async def create_quiz(self, quiz_id: str, title: str = "") -> Quiz:
        async with self._lock(quiz_id):
            existing = await self.get_quiz(quiz_id)
            if existing:
                return existing

            quiz = Quiz(id=quiz_id, title=title, created_at=self.store.server_now())
            await self.save_quiz(quiz)
            await self.events.reset(quiz_id)
            logger.info("Quiz %s created", quiz_id)
            return quiz

    async def set_questions(self, quiz_id: str, questions: List[Question]) -> Quiz:
        async with self._lock(quiz_id):
            quiz = await self._require_quiz(quiz_id)
            if quiz.status != "waiting":
                raise ValueError("Questions can only be changed before the quiz starts")

            stored: Dict[str, Any] = {}
            order = []
            for idx, question in enumerate(questions):
                qid = question.id or f"q{idx + 1}"
                if qid in stored:
                    raise ValueError(f"Duplicate question id {qid}")
                stored[qid] = question.model_copy(update={"id": qid}).to_store()
                order.append(qid)

            await self.store.set(questions_path(quiz_id), stored or None)
            quiz.question_order = order
            quiz.current_question_index = 0
            await self.save_quiz(quiz)
            await self.events.append(quiz_id, {"type": "questions_set", "count": len(order)})
            return quiz

    async def get_questions(self, quiz_id: str) -> Dict[str, Question]:
        raw = await self.store.get(questions_path(quiz_id)) or {}
        return {q.id: q for q in questions_from_store(raw)}

    async def get_question(self, quiz_id: str, question_id: str) -> Question | None:
        raw = await self.store.get(question_path(quiz_id, question_id))
        if not isinstance(raw, dict):
            return None
        return Question.model_validate({**raw, "id": question_id})

    async def current_question(self, quiz_id: str) -> Question | None:
        quiz = await self._require_quiz(quiz_id)
        qid = quiz.current_question_id
        return await self.get_question(quiz_id, qid) if qid else None

    async def join(self, quiz_id: str, name: str, team: Optional[str] = None) -> Participant:
        name = (name or "").strip()
        if not name:
            raise ValueError("Please enter your name")

        quiz = await self._require_quiz(quiz_id)
        if quiz.status == "active":
            raise ValueError("The quiz has already started")
        if quiz.status == "completed":
            raise ValueError("This quiz has already ended")

        participant = Participant(
            name=name,
            team=(team or "").strip() or None,
            score=0,
            joined_at=self.store.server_now(),
        )
        record = participant.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)
        participant.id = await self.store.push(participants_path(quiz_id), record)
        await self.events.append(
            quiz_id,
            {"type": "participant_joined", "participant": participant.model_dump(by_alias=True)},
        )
        return participant

    async def get_participant(self, quiz_id: str, participant_id: str) -> Participant | None:
        raw = await self.store.get(participant_path(quiz_id, participant_id))
        if not isinstance(raw, dict):
            return None
        return Participant.model_validate({**raw, "id": participant_id})

    async def update_profile(
        self,
        quiz_id: str,
        participant_id: str,
        session_participant_id: str,
        name: Optional[str] = None,
        team: Optional[str] = None,
    ) -> Participant:
        """Let a participant correct its own name or team.

        A value that is already set is never replaced by an empty or
        placeholder value.
        """

        if session_participant_id != participant_id:
            raise ProfileUpdateRejected("Only the participant's own session may change its profile")

        current = await self.get_participant(quiz_id, participant_id)
        if current is None:
            raise LookupError(f"Participant {participant_id} not found")

        changes: Dict[str, Any] = {}
        for field, value in (("name", name), ("team", team)):
            if value is None:
                continue
            existing = getattr(current, field)
            if _is_placeholder(value):
                if existing and existing.strip():
                    continue
                if not value.strip():
                    continue
            changes[field] = value.strip()

        if changes:
            await self.store.update(participant_path(quiz_id, participant_id), changes)
            await self.events.append(
                quiz_id,
                {"type": "participant_updated", "participant_id": participant_id, **changes},
            )
            current = current.model_copy(update=changes)
        return current

    async def start_quiz(self, quiz_id: str) -> Quiz:
        async with self._lock(quiz_id):
            quiz = await self._require_quiz(quiz_id)
            if quiz.status != "waiting":
                raise ValueError("Quiz has already been started")
            if not quiz.question_order:
                raise ValueError("Cannot start: please add at least one question")
            participants = await self.store.get(participants_path(quiz_id))
            if not participants:
                raise ValueError("Cannot start: no participants have joined yet")

            quiz.status = "active"
            quiz.current_question_index = 0
            quiz.started_at = self.store.server_now()
            await self.save_quiz(quiz)
            await self.events.append(
                quiz_id,
                {"type": "quiz_started", "question_id": quiz.current_question_id},
            )
            logger.info("Quiz %s started with %d questions", quiz_id, len(quiz.question_order))
            return quiz

    async def advance_to_next_question(self, quiz_id: str) -> Quiz:
        async with self._lock(quiz_id):
            quiz = await self._require_quiz(quiz_id)
            if quiz.status != "active":
                raise ValueError("Quiz is not running")

            if quiz.current_question_id:
                await self.timers.stop_timer(quiz_id, quiz.current_question_id)

            next_index = quiz.current_question_index + 1
            if next_index >= len(quiz.question_order):
                return await self._complete(quiz)

            quiz.current_question_index = next_index
            await self.save_quiz(quiz)
            await self.events.append(
                quiz_id,
                {
                    "type": "question_advanced",
                    "question_index": next_index,
                    "question_id": quiz.current_question_id,
                    "total_questions": len(quiz.question_order),
                },
            )
            return quiz

    async def end_quiz(self, quiz_id: str) -> Quiz:
        async with self._lock(quiz_id):
            quiz = await self._require_quiz(quiz_id)
            if quiz.status == "completed":
                return quiz
            if quiz.current_question_id:
                await self.timers.stop_timer(quiz_id, quiz.current_question_id)
            return await self._complete(quiz)

    async def _complete(self, quiz: Quiz) -> Quiz:
        await self.unwatch(quiz.id)
        quiz.status = "completed"
        quiz.completed_at = self.store.server_now()
        await self.save_quiz(quiz)
        leaderboard = await self.leaderboard(quiz.id)
        await self.events.append(
            quiz.id,
            {
                "type": "quiz_completed",
                "leaderboard": [p.model_dump(by_alias=True) for p in leaderboard],
            },
        )
        logger.info("Quiz %s completed", quiz.id)
        return quiz

    async def start_timer(self, quiz_id: str, question_id: Optional[str] = None, seconds: Optional[int] = None) -> QuestionTimer:
        question = await self.timer_question(quiz_id, question_id)
        duration = seconds or question.timer or settings.DEFAULT_QUESTION_SECONDS
        anchor = await self.timers.start_timer(quiz_id, question.id, duration)
        await self.watch(quiz_id, question.id)
        return anchor

    async def stop_timer(self, quiz_id: str, question_id: Optional[str] = None) -> Optional[QuestionTimer]:
        question = await self.timer_question(quiz_id, question_id)
        return await self.timers.stop_timer(quiz_id, question.id)

    async def resume_timer(self, quiz_id: str, question_id: Optional[str] = None) -> Optional[QuestionTimer]:
        question = await self.timer_question(quiz_id, question_id)
        anchor = await self.timers.resume_timer(quiz_id, question.id)
        if anchor is not None and anchor.is_active:
            await self.watch(quiz_id, question.id)
        return anchor

    async def reset_timer(self, quiz_id: str, question_id: Optional[str] = None) -> QuestionTimer:
        question = await self.timer_question(quiz_id, question_id)
        return await self.timers.reset_timer(quiz_id, question.id)

    async def clear_all_timers(self, quiz_id: str) -> None:
        await self._require_quiz(quiz_id)
        await self.timers.clear_all_timers(quiz_id)

    async def watch(self, quiz_id: str, question_id: str) -> CountdownProjector:
        """Follow a question's timer on the host side and record its expiry.

        One watcher per quiz; watching another question switches it over.
        """

        projector = self.watchers.get(quiz_id)
        if projector is None:
            projector = CountdownProjector(self.store, clock=self.store.server_now)
            projector.on_time_up = self._expire_on_time_up(quiz_id, projector)
            self.watchers[quiz_id] = projector

        if projector.question_id == question_id:
            await projector.resync()
        else:
            await projector.switch(quiz_id, question_id)
        return projector

    async def unwatch(self, quiz_id: str) -> None:
        projector = self.watchers.pop(quiz_id, None)
        if projector is not None:
            await projector.unmount()

    async def close(self) -> None:
        for quiz_id in list(self.watchers):
            await self.unwatch(quiz_id)

    def _expire_on_time_up(self, quiz_id: str, projector: CountdownProjector):
        def on_time_up(snapshot: CountdownSnapshot):
            anchor = projector.anchor
            if anchor is None or not anchor.is_active or anchor.start_time is None:
                return None
            logger.info("Time up for %s/%s", quiz_id, snapshot.question_id)
            return self.timers.mark_expired(quiz_id, snapshot.question_id, anchor.start_time)

        return on_time_up

    async def timer_question(self, quiz_id: str, question_id: Optional[str]) -> Question:
        quiz = await self._require_quiz(quiz_id)
        qid = question_id or quiz.current_question_id
        if not qid:
            raise ValueError("No current question to control the timer for")
        question = await self.get_question(quiz_id, qid)
        if question is None:
            raise LookupError(f"Question {qid} not found")
        return question

    async def submit_answer(self, quiz_id: str, participant_id: str, question_id: str, answer: Any) -> SubmissionResult:
        quiz = await self.get_quiz(quiz_id)
        if not quiz or quiz.status != "active":
            raise SubmissionRejected(SubmissionRejected.NOT_ANSWERABLE, "Quiz is not running")
        if question_id != quiz.current_question_id:
            raise SubmissionRejected(SubmissionRejected.NOT_ANSWERABLE, "Not the current question")

        question = await self.get_question(quiz_id, question_id)
        if question is None:
            raise SubmissionRejected(SubmissionRejected.UNKNOWN_QUESTION)

        anchor = await self.timers.read_anchor(quiz_id, question_id)
        now = self.store.server_now()
        return await self.recorder.submit(
            quiz_id,
            question,
            participant_id,
            answer,
            countdown_state=countdown_state_for(anchor, now),
            time_remaining=remaining_seconds(anchor, now) if anchor else None,
        )

    async def _ranking_inputs(self, quiz_id: str):
        participants = await self.store.get(participants_path(quiz_id)) or {}
        questions = await self.store.get(questions_path(quiz_id)) or {}
        answers = await self.store.get(answers_path(quiz_id)) or {}
        return participants, questions, answers

    async def leaderboard(self, quiz_id: str) -> List[RankedParticipant]:
        participants, questions, answers = await self._ranking_inputs(quiz_id)
        return rank(participants, build_tie_breaker_log(questions, answers))

    async def team_leaderboard(self, quiz_id: str) -> List[TeamStanding]:
        participants = await self.store.get(participants_path(quiz_id)) or {}
        return rank_teams(participants)

    async def participant_rank(self, quiz_id: str, participant_id: str) -> Optional[int]:
        return find_rank(await self.leaderboard(quiz_id), participant_id)

    async def tie_breaker_report(self, quiz_id: str) -> List[TieBreakerQuestionReport]:
        participants, questions, answers = await self._ranking_inputs(quiz_id)
        return tie_breaker_report(questions, answers, participants)

    async def tied_groups(self, quiz_id: str) -> List[TiedGroup]:
        participants = await self.store.get(participants_path(quiz_id)) or {}
        return tied_groups(participants)


controller = QuizController()
