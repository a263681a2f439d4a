from __future__ import annotations

from unittest import TestCase

from .models import NO_TEAM, Participant, TieBreakerEntry
from .ranking import (
    build_tie_breaker_log,
    find_rank,
    rank,
    rank_teams,
    tie_breaker_ranks,
    tie_breaker_report,
    tied_groups,
)

QUESTIONS = {
    "q1": {"text": "Warm up", "difficulty": "easy", "options": ["a", "b"], "correctAnswer": 0},
    "tb1": {"text": "Sudden death", "difficulty": "tie-breaker", "options": ["a", "b"], "correctAnswer": 1},
}


def _people(*rows):
    return {pid: {"name": pid.upper(), "score": score, **extra} for pid, score, extra in rows}


class RankTests(TestCase):
    def test_tie_breaker_order_decides_equal_scores(self):
        participants = _people(("a", 10, {}), ("b", 10, {}), ("c", 10, {}))
        log = {
            "tb1": [
                TieBreakerEntry(participant_id="c", timestamp=300),
                TieBreakerEntry(participant_id="a", timestamp=100),
                TieBreakerEntry(participant_id="b", timestamp=200),
            ]
        }

        ranked = rank(participants, log)

        self.assertEqual([p.id for p in ranked], ["a", "b", "c"])
        self.assertEqual([p.display_rank for p in ranked], [1, 2, 3])
        self.assertEqual([p.tie_breaker_rank for p in ranked], [1, 2, 3])

    def test_score_beats_tie_breaker(self):
        participants = _people(("a", 5, {}), ("b", 9, {}))
        log = {"tb1": [TieBreakerEntry(participant_id="a", timestamp=1)]}

        self.assertEqual([p.id for p in rank(participants, log)], ["b", "a"])

    def test_participant_with_tie_breaker_rank_wins(self):
        participants = _people(("a", 10, {"lastAnswerAt": 1}), ("b", 10, {}))
        log = {"tb1": [TieBreakerEntry(participant_id="b", timestamp=50)]}

        self.assertEqual([p.id for p in rank(participants, log)], ["b", "a"])

    def test_earlier_last_answer_breaks_ties_without_tie_breakers(self):
        participants = _people(("a", 10, {"lastAnswerAt": 900}), ("b", 10, {"lastAnswerAt": 400}))

        ranked = rank(participants)

        self.assertEqual([p.id for p in ranked], ["b", "a"])
        self.assertEqual([p.display_rank for p in ranked], [1, 2])

    def test_unresolved_ties_share_rank_and_keep_input_order(self):
        participants = _people(("x", 20, {}), ("a", 10, {}), ("b", 10, {}), ("c", 5, {}))

        ranked = rank(participants)

        self.assertEqual([p.id for p in ranked], ["x", "a", "b", "c"])
        self.assertEqual([p.display_rank for p in ranked], [1, 2, 2, 4])
        self.assertEqual(find_rank(ranked, "b"), 2)
        self.assertIsNone(find_rank(ranked, "nobody"))

    def test_best_position_across_questions_counts(self):
        log = {
            "tb1": [TieBreakerEntry(participant_id="a", timestamp=1), TieBreakerEntry(participant_id="b", timestamp=2)],
            "tb2": [TieBreakerEntry(participant_id="b", timestamp=3)],
        }

        self.assertEqual(tie_breaker_ranks(log), {"a": 1, "b": 1})

    def test_mapping_of_participant_models(self):
        ranked = rank({"a": Participant(name="Ada", score=3), "b": Participant(id="b", name="Bob", score=5)})

        self.assertEqual([p.id for p in ranked], ["b", "a"])
        self.assertEqual(ranked[1].team, NO_TEAM)

    def test_missing_fields_get_display_defaults(self):
        ranked = rank({"p": {"score": "7"}, "broken": "not a participant"})

        self.assertEqual(len(ranked), 1)
        self.assertEqual(ranked[0].name, "Anonymous")
        self.assertEqual(ranked[0].team, NO_TEAM)
        self.assertEqual(ranked[0].score, 7)

    def test_empty_inputs(self):
        self.assertEqual(rank(None), [])
        self.assertEqual(rank({}, {}), [])
        self.assertEqual(rank_teams([]), [])
        self.assertEqual(tied_groups(None), [])
        self.assertEqual(build_tie_breaker_log(None, None), {})

    def test_ranking_is_deterministic(self):
        participants = [Participant(id=str(i), name=str(i), score=i % 3) for i in range(10)]

        self.assertEqual(rank(participants), rank(list(participants)))


class TieBreakerLogTests(TestCase):
    def test_collects_correct_tie_breaker_answers_in_time_order(self):
        answers = {
            "q1": {"a": {"isCorrect": True, "submittedAt": 5}},
            "tb1": {
                "a": {"isCorrect": True, "submittedAt": 300},
                "b": {"isCorrect": False, "submittedAt": 100},
                "c": {"scoreEarned": 500, "timestamp": 200},
                "d": {"isCorrect": True},
                "e": {"isCorrect": True, "submittedAt": 200},
            },
        }

        log = build_tie_breaker_log(QUESTIONS, answers)

        self.assertEqual(list(log), ["tb1"])
        self.assertEqual([e.participant_id for e in log["tb1"]], ["c", "e", "a"])

    def test_report_names_unknown_participants(self):
        answers = {"tb1": {"p-1234": {"isCorrect": True, "submittedAt": 10, "timeRemaining": 4}}}

        [report] = tie_breaker_report(QUESTIONS, answers, {})

        self.assertEqual(report.question_id, "tb1")
        self.assertEqual(report.answers[0].name, "Unknown (1234)")
        self.assertEqual(report.answers[0].time_remaining, 4)
        self.assertEqual(report.answers[0].order, 1)


class TeamTests(TestCase):
    def test_totals_averages_and_shared_ranks(self):
        participants = _people(
            ("a", 10, {"team": "Red"}),
            ("b", 5, {"team": "Red"}),
            ("c", 15, {"team": "Blue"}),
            ("d", 3, {}),
        )

        teams = rank_teams(participants)

        self.assertEqual([t.name for t in teams], ["Red", "Blue", NO_TEAM])
        self.assertEqual([t.total_score for t in teams], [15, 15, 3])
        self.assertEqual([t.display_rank for t in teams], [1, 1, 3])
        self.assertEqual(teams[0].average_score, 8)
        self.assertEqual(teams[0].member_count, 2)

    def test_tied_groups(self):
        participants = _people(("a", 10, {}), ("b", 10, {}), ("c", 4, {}), ("d", 4, {}), ("e", 1, {}))

        groups = tied_groups(participants)

        self.assertEqual([g.score for g in groups], [10, 4])
        self.assertEqual([p.id for p in groups[0].participants], ["a", "b"])
