from __future__ import annotations


class LiveQuizError(Exception):
    """Base class for errors raised by the live quiz core."""


class StoreError(LiveQuizError):
    """A read or write against the realtime store failed (transient)."""


class TimerControlError(LiveQuizError):
    """A host timer action could not be committed to the store."""

    def __init__(self, action: str, quiz_id: str, question_id: str | None = None):
        self.action = action
        self.quiz_id = quiz_id
        self.question_id = question_id
        target = f"{quiz_id}/{question_id}" if question_id else quiz_id
        super().__init__(f"Timer action '{action}' failed for {target}, please retry")


class SubmissionRejected(LiveQuizError, ValueError):
    """The answer was refused before anything was written."""

    ALREADY_SUBMITTED = "already_submitted"
    NOT_ANSWERABLE = "not_answerable"
    UNKNOWN_QUESTION = "unknown_question"
    UNKNOWN_PARTICIPANT = "unknown_participant"
    INVALID_ANSWER = "invalid_answer"

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or reason.replace("_", " "))


class SubmissionFailed(LiveQuizError):
    """The answer could not be stored; retrying is safe."""

    def __init__(self, question_id: str, participant_id: str):
        self.question_id = question_id
        self.participant_id = participant_id
        super().__init__("Submission failed, retry")


class ProfileUpdateRejected(LiveQuizError, ValueError):
    """Only a participant's own session may change its name or team."""
