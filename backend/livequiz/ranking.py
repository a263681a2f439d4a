"""Leaderboard ordering shared by the host dashboard, the audience screen and
each participant's own results view.

Everything here is pure and synchronous: same inputs, same ranks, no I/O.

Ordering between two participants, first difference wins:

1. higher ``score``
2. both have a tie-breaker rank: the lower one (earlier correct answer)
3. only one has a tie-breaker rank: that one
4. both have ``lastAnswerAt``: the earlier one
5. otherwise they are genuinely tied and keep their input order

Genuinely tied neighbours share a ``displayRank``; everybody else gets their
1-based position.
"""

from __future__ import annotations

from collections import OrderedDict
from functools import cmp_to_key
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from .models import (
    ANONYMOUS,
    NO_TEAM,
    Participant,
    Question,
    RankedParticipant,
    TeamMember,
    TeamStanding,
    TieBreakerAnswerRow,
    TieBreakerEntry,
    TieBreakerLog,
    TieBreakerQuestionReport,
    TiedGroup,
)
from .utils import as_int

ParticipantsInput = Union[Mapping[str, Any], Iterable[Participant]]
QuestionsInput = Union[Mapping[str, Any], Iterable[Question]]


def participants_from_store(raw: ParticipantsInput | None) -> List[Participant]:
    """Participants with display defaults applied, in input order."""

    if not raw:
        return []
    if isinstance(raw, Mapping):
        items = []
        for pid, data in raw.items():
            if isinstance(data, Participant):
                data = data.model_dump(by_alias=True)
            if not isinstance(data, Mapping):
                continue
            items.append(
                Participant(
                    id=pid,
                    name=data.get("name") or ANONYMOUS,
                    team=data.get("team") or NO_TEAM,
                    score=as_int(data.get("score")),
                    joined_at=data.get("joinedAt") if isinstance(data.get("joinedAt"), int) else None,
                    last_answer_at=data.get("lastAnswerAt") if isinstance(data.get("lastAnswerAt"), int) else None,
                )
            )
        return items
    return list(raw)


def questions_from_store(raw: QuestionsInput | None) -> List[Question]:
    if not raw:
        return []
    if isinstance(raw, Mapping):
        questions = []
        for qid, data in raw.items():
            if not isinstance(data, Mapping):
                continue
            try:
                questions.append(Question.model_validate({**data, "id": qid}))
            except ValidationError:
                # unreadable question: not a tie-breaker as far as ranking goes
                continue
        return questions
    return list(raw)


def _answer_is_correct(record: Mapping[str, Any]) -> bool:
    if "isCorrect" in record:
        return bool(record["isCorrect"])
    return as_int(record.get("score", record.get("scoreEarned"))) > 0


def _answer_timestamp(record: Mapping[str, Any]) -> Optional[int]:
    value = record.get("submittedAt", record.get("timestamp"))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def build_tie_breaker_log(
    questions: QuestionsInput | None,
    answers: Mapping[str, Mapping[str, Any]] | None,
) -> TieBreakerLog:
    """Correct answers to every tie-breaker question, earliest first."""

    log: TieBreakerLog = {}
    answers = answers or {}
    for question in questions_from_store(questions):
        if not question.is_tie_breaker:
            continue
        entries = []
        for pid, record in (answers.get(question.id) or {}).items():
            if not isinstance(record, Mapping) or not _answer_is_correct(record):
                continue
            timestamp = _answer_timestamp(record)
            if timestamp is None:
                continue
            entries.append(TieBreakerEntry(participant_id=pid, timestamp=timestamp))
        entries.sort(key=lambda e: (e.timestamp, e.participant_id))
        log[question.id] = entries
    return log


def tie_breaker_ranks(log: TieBreakerLog | None) -> Dict[str, int]:
    """Best (lowest) per-question answer position each participant achieved."""

    best: Dict[str, int] = {}
    for entries in (log or {}).values():
        ordered = sorted(entries, key=lambda e: (e.timestamp, e.participant_id))
        for position, entry in enumerate(ordered, start=1):
            if entry.participant_id not in best or position < best[entry.participant_id]:
                best[entry.participant_id] = position
    return best


def _tie_break(a: RankedParticipant, b: RankedParticipant) -> int:
    if a.tie_breaker_rank is not None and b.tie_breaker_rank is not None:
        return a.tie_breaker_rank - b.tie_breaker_rank
    if a.tie_breaker_rank is not None:
        return -1
    if b.tie_breaker_rank is not None:
        return 1
    if a.last_answer_at is not None and b.last_answer_at is not None:
        return a.last_answer_at - b.last_answer_at
    return 0


def compare_participants(a: RankedParticipant, b: RankedParticipant) -> int:
    if a.score != b.score:
        return b.score - a.score
    return _tie_break(a, b)


def rank(participants: ParticipantsInput | None, tie_breaker_log: TieBreakerLog | None = None) -> List[RankedParticipant]:
    ranks = tie_breaker_ranks(tie_breaker_log)
    ranked = [
        RankedParticipant(**p.model_dump(), tie_breaker_rank=ranks.get(p.id))
        for p in participants_from_store(participants)
    ]
    # list.sort is stable, so unresolved ties keep their input order
    ranked.sort(key=cmp_to_key(compare_participants))

    previous: Optional[RankedParticipant] = None
    for position, participant in enumerate(ranked, start=1):
        if previous is not None and participant.score == previous.score and _tie_break(previous, participant) == 0:
            participant.display_rank = previous.display_rank
        else:
            participant.display_rank = position
        previous = participant
    return ranked


def find_rank(ranked: Iterable[RankedParticipant], participant_id: str) -> Optional[int]:
    for participant in ranked:
        if participant.id == participant_id:
            return participant.display_rank
    return None


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def rank_teams(participants: ParticipantsInput | None) -> List[TeamStanding]:
    teams: "OrderedDict[str, TeamStanding]" = OrderedDict()
    for p in participants_from_store(participants):
        name = p.team or NO_TEAM
        team = teams.setdefault(name, TeamStanding(name=name))
        team.members.append(TeamMember(id=p.id, name=p.name or ANONYMOUS, score=p.score))
        team.total_score += p.score

    standings = list(teams.values())
    for team in standings:
        team.member_count = len(team.members)
        team.average_score = _round_half_up(team.total_score / team.member_count) if team.member_count else 0

    standings.sort(key=lambda t: -t.total_score)
    previous: Optional[TeamStanding] = None
    for position, team in enumerate(standings, start=1):
        if previous is not None and team.total_score == previous.total_score:
            team.display_rank = previous.display_rank
        else:
            team.display_rank = position
        previous = team
    return standings


def tied_groups(participants: ParticipantsInput | None) -> List[TiedGroup]:
    """Groups of two or more participants sharing a score, best score first."""

    by_score: Dict[int, List[Participant]] = {}
    for p in participants_from_store(participants):
        by_score.setdefault(p.score, []).append(p)
    groups = [TiedGroup(score=score, participants=members) for score, members in by_score.items() if len(members) > 1]
    groups.sort(key=lambda g: -g.score)
    return groups


def tie_breaker_report(
    questions: QuestionsInput | None,
    answers: Mapping[str, Mapping[str, Any]] | None,
    participants: ParticipantsInput | None,
) -> List[TieBreakerQuestionReport]:
    people = {p.id: p for p in participants_from_store(participants)}
    log = build_tie_breaker_log(questions, answers)
    answers = answers or {}

    reports = []
    for question in questions_from_store(questions):
        if not question.is_tie_breaker:
            continue
        rows = []
        for order, entry in enumerate(log.get(question.id, []), start=1):
            person = people.get(entry.participant_id)
            record = (answers.get(question.id) or {}).get(entry.participant_id) or {}
            time_remaining = record.get("timeRemaining")
            rows.append(
                TieBreakerAnswerRow(
                    order=order,
                    participant_id=entry.participant_id,
                    name=person.name if person else f"Unknown ({entry.participant_id[-4:]})",
                    team=person.team if person else None,
                    timestamp=entry.timestamp,
                    time_remaining=as_int(time_remaining) if time_remaining is not None else None,
                )
            )
        reports.append(TieBreakerQuestionReport(question_id=question.id, text=question.text, answers=rows))
    return reports
