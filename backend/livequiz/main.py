from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional

from .db import settings
from .errors import (
    ProfileUpdateRejected,
    SubmissionFailed,
    SubmissionRejected,
    TimerControlError,
)
from .game import controller
from .logging_config import configure_logging
from .ranking import find_rank
from .schemas import (
    AdminUpsertQuestionsIn,
    AnswerIn,
    AnswerOut,
    CreateQuizIn,
    EventsOut,
    JoinIn,
    LeaderboardOut,
    PublicQuizOut,
    QuizActionIn,
    RankOut,
    TeamLeaderboardOut,
    TimerActionIn,
    TimerOut,
    UpdateProfileIn,
)

configure_logging(settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await controller.close()


app = FastAPI(title="Live Quiz API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, TimerControlError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ProfileUpdateRejected):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


async def _public_quiz(quiz_id: str) -> PublicQuizOut:
    quiz = await controller.get_quiz(quiz_id)
    if not quiz:
        raise HTTPException(404, "Quiz not found")
    participants = await controller.leaderboard(quiz_id)
    return PublicQuizOut(
        id=quiz.id,
        title=quiz.title,
        status=quiz.status,
        current_question_index=quiz.current_question_index,
        current_question_id=quiz.current_question_id,
        total_questions=len(quiz.question_order),
        participants=participants,
    )


@app.get("/api/quiz/{quiz_id}/events", response_model=EventsOut)
async def list_events(quiz_id: str, after: int | None = None, limit: int | None = None):
    events = await controller.events.list(quiz_id, after=after, limit=max(1, limit or settings.EVENT_LOG_LIMIT))
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


@app.post("/api/quiz", response_model=PublicQuizOut)
async def create_or_get_quiz(payload: CreateQuizIn, _: None = Depends(require_admin)):
    await controller.create_quiz(payload.quiz_id, payload.title)
    return await _public_quiz(payload.quiz_id)


@app.get("/api/quiz/{quiz_id}", response_model=PublicQuizOut)
async def get_quiz(quiz_id: str):
    return await _public_quiz(quiz_id)


@app.post("/api/join")
async def join(payload: JoinIn):
    try:
        p = await controller.join(payload.quiz_id, payload.name, payload.team)
    except (ValueError, LookupError) as exc:
        raise _http_error(exc) from exc
    return {"participant": p.model_dump(by_alias=True)}


@app.patch("/api/participant")
async def update_participant(payload: UpdateProfileIn, x_participant_id: Optional[str] = Header(default=None)):
    try:
        p = await controller.update_profile(
            payload.quiz_id,
            payload.participant_id,
            x_participant_id or "",
            name=payload.name,
            team=payload.team,
        )
    except (ValueError, LookupError) as exc:
        raise _http_error(exc) from exc
    return {"participant": p.model_dump(by_alias=True)}


@app.post("/api/admin/questions")
async def upsert_questions(payload: AdminUpsertQuestionsIn, _: None = Depends(require_admin)):
    try:
        quiz = await controller.set_questions(payload.quiz_id, payload.questions)
    except (ValueError, LookupError) as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "question_order": quiz.question_order}


@app.get("/api/admin/verify")
async def verify(_: None = Depends(require_admin)):
    return {"ok": True}


@app.post("/api/admin/start")
async def start(payload: QuizActionIn, _: None = Depends(require_admin)):
    try:
        await controller.start_quiz(payload.quiz_id)
    except (ValueError, LookupError) as exc:
        raise _http_error(exc) from exc
    return {"ok": True}


@app.post("/api/admin/next", response_model=PublicQuizOut)
async def next_question(payload: QuizActionIn, _: None = Depends(require_admin)):
    try:
        await controller.advance_to_next_question(payload.quiz_id)
    except (ValueError, LookupError, TimerControlError) as exc:
        raise _http_error(exc) from exc
    return await _public_quiz(payload.quiz_id)


@app.post("/api/admin/end", response_model=PublicQuizOut)
async def end(payload: QuizActionIn, _: None = Depends(require_admin)):
    try:
        await controller.end_quiz(payload.quiz_id)
    except (ValueError, LookupError, TimerControlError) as exc:
        raise _http_error(exc) from exc
    return await _public_quiz(payload.quiz_id)


async def _timer_out(quiz_id: str, question_id: str) -> TimerOut:
    try:
        anchor = await controller.timers.read_anchor(quiz_id, question_id)
    except TimerControlError as exc:
        raise _http_error(exc) from exc
    return TimerOut(question_id=question_id, timer=anchor, server_now=controller.store.server_now())


@app.post("/api/admin/timer/{action}", response_model=TimerOut)
async def timer_action(action: str, payload: TimerActionIn, _: None = Depends(require_admin)):
    handlers = {
        "start": lambda: controller.start_timer(payload.quiz_id, payload.question_id, payload.seconds),
        "stop": lambda: controller.stop_timer(payload.quiz_id, payload.question_id),
        "resume": lambda: controller.resume_timer(payload.quiz_id, payload.question_id),
        "reset": lambda: controller.reset_timer(payload.quiz_id, payload.question_id),
    }
    if action == "clear":
        try:
            await controller.clear_all_timers(payload.quiz_id)
        except (ValueError, LookupError, TimerControlError) as exc:
            raise _http_error(exc) from exc
        return TimerOut(question_id=payload.question_id or "", timer=None, server_now=controller.store.server_now())
    if action not in handlers:
        raise HTTPException(404, f"Unknown timer action {action}")

    try:
        await handlers[action]()
        question = await controller.timer_question(payload.quiz_id, payload.question_id)
    except (ValueError, LookupError, TimerControlError) as exc:
        raise _http_error(exc) from exc
    return await _timer_out(payload.quiz_id, question.id)


@app.get("/api/quiz/{quiz_id}/timer/{question_id}", response_model=TimerOut)
async def get_timer(quiz_id: str, question_id: str):
    return await _timer_out(quiz_id, question_id)


@app.post("/api/answer", response_model=AnswerOut)
async def answer(payload: AnswerIn):
    try:
        result = await controller.submit_answer(
            payload.quiz_id, payload.participant_id, payload.question_id, payload.answer
        )
    except SubmissionRejected as exc:
        status = 409 if exc.reason == SubmissionRejected.ALREADY_SUBMITTED else 400
        if exc.reason in (SubmissionRejected.UNKNOWN_PARTICIPANT, SubmissionRejected.UNKNOWN_QUESTION):
            status = 404
        raise HTTPException(status_code=status, detail={"reason": exc.reason, "message": str(exc)}) from exc
    except (SubmissionFailed, TimerControlError) as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return AnswerOut(
        accepted=True,
        is_correct=result.is_correct,
        score_delta=result.score_delta,
        total_score=result.total_score,
    )


@app.get("/api/quiz/{quiz_id}/leaderboard", response_model=LeaderboardOut)
async def leaderboard(quiz_id: str):
    return LeaderboardOut(participants=await controller.leaderboard(quiz_id))


@app.get("/api/quiz/{quiz_id}/teams", response_model=TeamLeaderboardOut)
async def teams(quiz_id: str):
    return TeamLeaderboardOut(teams=await controller.team_leaderboard(quiz_id))


@app.get("/api/quiz/{quiz_id}/rank/{participant_id}", response_model=RankOut)
async def participant_rank(quiz_id: str, participant_id: str):
    ranked = await controller.leaderboard(quiz_id)
    rank = find_rank(ranked, participant_id)
    if rank is None:
        raise HTTPException(404, "Participant not found")
    return RankOut(participant_id=participant_id, display_rank=rank, total_participants=len(ranked))


@app.get("/api/quiz/{quiz_id}/tie-breakers")
async def tie_breakers(quiz_id: str):
    reports = await controller.tie_breaker_report(quiz_id)
    return {"questions": [r.model_dump(by_alias=True) for r in reports]}


@app.get("/api/quiz/{quiz_id}/ties")
async def ties(quiz_id: str):
    groups = await controller.tied_groups(quiz_id)
    return {"groups": [g.model_dump(by_alias=True) for g in groups]}
