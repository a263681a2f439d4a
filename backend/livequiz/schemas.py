from pydantic import BaseModel
from typing import Any, List, Optional, Union
from .models import Question, QuestionTimer, RankedParticipant, StoreModel, TeamStanding


class CreateQuizIn(BaseModel):
    quiz_id: str
    title: str = ""


class JoinIn(BaseModel):
    quiz_id: str
    name: str
    team: Optional[str] = None


class UpdateProfileIn(BaseModel):
    quiz_id: str
    participant_id: str
    name: Optional[str] = None
    team: Optional[str] = None


class AdminUpsertQuestionsIn(BaseModel):
    quiz_id: str
    questions: List[Question]


class QuizActionIn(BaseModel):
    quiz_id: str


class TimerActionIn(BaseModel):
    quiz_id: str
    question_id: Optional[str] = None
    seconds: Optional[int] = None


class AnswerIn(BaseModel):
    quiz_id: str
    participant_id: str
    question_id: str
    answer: Union[int, str]


class AnswerOut(BaseModel):
    accepted: bool
    is_correct: bool = False
    score_delta: int = 0
    total_score: Optional[int] = None


class PublicQuizOut(StoreModel):
    id: str
    title: str
    status: str
    current_question_index: int
    current_question_id: Optional[str] = None
    total_questions: int
    participants: List[RankedParticipant]


class TimerOut(StoreModel):
    question_id: str
    timer: Optional[QuestionTimer] = None
    server_now: int


class LeaderboardOut(StoreModel):
    participants: List[RankedParticipant]


class TeamLeaderboardOut(StoreModel):
    teams: List[TeamStanding]


class RankOut(StoreModel):
    participant_id: str
    display_rank: Optional[int] = None
    total_participants: int


class EventsOut(BaseModel):
    events: List[dict[str, Any]]
    latest_seq: Optional[int] = None
