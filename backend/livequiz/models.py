from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AnswerValue = Union[int, str]

TIE_BREAKER = "tie-breaker"
NO_TEAM = "No Team"
ANONYMOUS = "Anonymous"


class StoreModel(BaseModel):
    """Records are camelCase in the store and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class QuestionTimer(StoreModel):
    is_active: bool = False
    start_time: Optional[int] = None
    # seconds remaining at start_time, not the question's full length
    duration: int = 0
    paused_at: Optional[int] = None


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple-choice"
    TRUE_FALSE = "true-false"
    FILL_IN_BLANK = "fill-in-blank"


class Question(StoreModel):
    id: str = ""
    text: str = ""
    type: str = QuestionType.MULTIPLE_CHOICE.value
    options: List[str] = Field(default_factory=list)
    correct_answer: Optional[AnswerValue] = None
    correct_answers: List[AnswerValue] = Field(default_factory=list)
    allow_multiple: bool = False
    points: Optional[int] = None
    difficulty: str = "easy"
    timer: Optional[int] = None
    show_correct_answer: bool = False

    @property
    def is_tie_breaker(self) -> bool:
        return self.difficulty == TIE_BREAKER

    @property
    def is_choice(self) -> bool:
        return self.type in (QuestionType.MULTIPLE_CHOICE.value, QuestionType.TRUE_FALSE.value)


class Participant(StoreModel):
    id: str = ""
    name: str = ""
    team: Optional[str] = None
    score: int = 0
    joined_at: Optional[int] = None
    last_answer_at: Optional[int] = None


class AnswerRecord(StoreModel):
    answer: AnswerValue
    is_correct: bool = False
    score: int = 0
    submitted_at: int
    time_remaining: Optional[int] = None


class TieBreakerEntry(StoreModel):
    participant_id: str
    timestamp: int


# question id -> correct answers on that tie-breaker question
TieBreakerLog = Dict[str, List[TieBreakerEntry]]


class RankedParticipant(Participant):
    tie_breaker_rank: Optional[int] = None
    display_rank: int = 0


class TeamMember(StoreModel):
    id: str
    name: str
    score: int


class TeamStanding(StoreModel):
    name: str
    members: List[TeamMember] = Field(default_factory=list)
    member_count: int = 0
    total_score: int = 0
    average_score: int = 0
    display_rank: int = 0


class TiedGroup(StoreModel):
    score: int
    participants: List[Participant]


class TieBreakerAnswerRow(StoreModel):
    order: int
    participant_id: str
    name: str
    team: Optional[str] = None
    timestamp: int
    time_remaining: Optional[int] = None


class TieBreakerQuestionReport(StoreModel):
    question_id: str
    text: str
    answers: List[TieBreakerAnswerRow] = Field(default_factory=list)


# States: waiting -> active -> completed
class Quiz(StoreModel):
    id: str
    title: str = ""
    status: Literal["waiting", "active", "completed"] = "waiting"
    question_order: List[str] = Field(default_factory=list)
    current_question_index: int = 0
    created_at: Optional[int] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None

    @property
    def current_question_id(self) -> Optional[str]:
        if 0 <= self.current_question_index < len(self.question_order):
            return self.question_order[self.current_question_index]
        return None
