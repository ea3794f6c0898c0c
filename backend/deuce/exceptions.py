from fastapi import HTTPException
from pydantic import BaseModel
from typing import Optional


class ProblemDetail(BaseModel):
    """RFC 7807 compliant error response."""

    type: str = "about:blank"
    title: str
    detail: Optional[str] = None
    status: int
    instance: Optional[str] = None
    code: str


class DomainException(Exception):
    """Base class for domain-specific exceptions."""

    def __init__(
        self,
        status_code: int,
        title: str,
        *,
        code: str,
        detail: str | None = None,
        type_: str = "about:blank",
    ) -> None:
        super().__init__(detail or title)
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type = type_
        self.code = code


# ---------------------------------------------------------------------------
# Validation: malformed input, rejected before any state change
# ---------------------------------------------------------------------------


class ValidationError(DomainException):
    def __init__(
        self,
        detail: str,
        *,
        code: str = "validation_error",
        title: str = "Invalid request",
        status_code: int = 422,
    ) -> None:
        super().__init__(status_code, title, code=code, detail=detail)


class InvalidScore(ValidationError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, code="invalid_score", title="Invalid score")


class InvalidParticipants(ValidationError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            detail, code="invalid_participants", title="Invalid participants"
        )


class NotParticipant(ValidationError):
    def __init__(self, match_id: str, player_id: str) -> None:
        super().__init__(
            f"player '{player_id}' is not an accepted participant of match '{match_id}'",
            code="not_participant",
            title="Not a participant",
            status_code=403,
        )


class NotFound(ValidationError):
    def __init__(self, kind: str, identifier: str, *, code: str) -> None:
        super().__init__(
            f"{kind} '{identifier}' not found",
            code=code,
            title=f"{kind.capitalize()} not found",
            status_code=404,
        )


class MatchNotFound(NotFound):
    def __init__(self, match_id: str) -> None:
        super().__init__("match", match_id, code="match_not_found")


class DisputeNotFound(NotFound):
    def __init__(self, dispute_id: str) -> None:
        super().__init__("dispute", dispute_id, code="dispute_not_found")


class RatingNotFound(NotFound):
    def __init__(self, rating_id: str) -> None:
        super().__init__("rating", rating_id, code="rating_not_found")


class RecalculationNotFound(NotFound):
    def __init__(self, job_id: str) -> None:
        super().__init__("recalculation", job_id, code="recalculation_not_found")


class RatingTaskNotFound(NotFound):
    def __init__(self, task_id: str) -> None:
        super().__init__("rating task", task_id, code="rating_task_not_found")


class TargetNotFound(NotFound):
    def __init__(self, scope: str, target_id: str) -> None:
        super().__init__(
            f"{scope.lower()} target", target_id, code="recalculation_target_not_found"
        )


# ---------------------------------------------------------------------------
# State conflicts: workflow bugs, rejected before any state change
# ---------------------------------------------------------------------------


class StateConflictError(DomainException):
    def __init__(self, detail: str, *, code: str, title: str = "Conflict") -> None:
        super().__init__(409, title, code=code, detail=detail)


class InvalidState(StateConflictError):
    def __init__(self, match_id: str, status: str, action: str) -> None:
        super().__init__(
            f"cannot {action} match '{match_id}' in status {status}",
            code="invalid_state",
            title="Invalid match state",
        )
        self.match_id = match_id
        self.status = status


class SelfConfirmation(StateConflictError):
    def __init__(self, match_id: str, player_id: str) -> None:
        super().__init__(
            f"player '{player_id}' cannot confirm a result submitted by their own side",
            code="self_confirmation",
            title="Self confirmation",
        )
        self.match_id = match_id


class AlreadyProcessed(StateConflictError):
    def __init__(self, match_id: str) -> None:
        super().__init__(
            f"match '{match_id}' already has rating history in this scope",
            code="already_processed",
            title="Match already processed",
        )
        self.match_id = match_id


class NotRatingEligible(StateConflictError):
    def __init__(self, match_id: str, reason: str) -> None:
        super().__init__(
            f"match '{match_id}' is not rating eligible: {reason}",
            code="not_rating_eligible",
            title="Not rating eligible",
        )
        self.match_id = match_id
        self.reason = reason


class DisputeAlreadyOpen(StateConflictError):
    def __init__(self, match_id: str) -> None:
        super().__init__(
            f"match '{match_id}' already has an open dispute",
            code="dispute_already_open",
            title="Dispute already open",
        )


class DisputeNotOpen(StateConflictError):
    def __init__(self, dispute_id: str, status: str) -> None:
        super().__init__(
            f"dispute '{dispute_id}' is {status}",
            code="dispute_not_open",
            title="Dispute not open",
        )


class SeasonLocked(StateConflictError):
    def __init__(self, season_id: str) -> None:
        super().__init__(
            f"ratings for season '{season_id}' are locked",
            code="season_locked",
            title="Season locked",
        )
        self.season_id = season_id


class RecalculationImmutable(StateConflictError):
    def __init__(self, job_id: str, status: str, action: str) -> None:
        super().__init__(
            f"cannot {action} recalculation '{job_id}' in status {status}",
            code="recalculation_immutable",
            title="Recalculation state conflict",
        )


class RatingTaskNotRequeueable(StateConflictError):
    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(
            f"rating task '{task_id}' is {status}; only BLOCKED or FAILED tasks can be requeued",
            code="rating_task_not_requeueable",
            title="Rating task state conflict",
        )


# ---------------------------------------------------------------------------
# Consistency violations: a caller broke an invariant. Logged and alerted,
# shown to end users as "try again later".
# ---------------------------------------------------------------------------


class ConsistencyViolation(DomainException):
    def __init__(self, detail: str, *, code: str) -> None:
        super().__init__(
            503, "Temporarily unavailable, try again later", code=code, detail=detail
        )


class OutOfOrderApply(ConsistencyViolation):
    def __init__(
        self, match_id: str, player_id: str, match_date, last_match_date, last_match_id=None
    ) -> None:
        last = f"'{last_match_id}' on " if last_match_id else ""
        super().__init__(
            f"match '{match_id}' dated {match_date.isoformat()} precedes the last "
            f"applied match of player '{player_id}' ({last}{last_match_date.isoformat()})",
            code="out_of_order_apply",
        )
        self.match_id = match_id
        self.player_id = player_id


class DisputePending(ConsistencyViolation):
    def __init__(self, match_id: str) -> None:
        super().__init__(
            f"match '{match_id}' has an open dispute",
            code="dispute_pending",
        )
        self.match_id = match_id


class TransactionFailure(DomainException):
    """The storage layer could not commit an atomic multi-row write."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            503,
            "Temporarily unavailable, try again later",
            code="transaction_failure",
            detail=detail,
        )


class FatalRecalculationError(DomainException):
    """A recalculation could not be rolled back; needs operator attention."""

    def __init__(self, job_id: str, detail: str) -> None:
        super().__init__(
            500,
            "Temporarily unavailable, try again later",
            code="recalculation_fatal",
            detail=f"recalculation '{job_id}': {detail}",
        )
        self.job_id = job_id


def http_problem(
    status_code: int,
    detail: str,
    code: str,
    *,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    """Create an HTTPException with an attached problem code."""

    exc = HTTPException(status_code=status_code, detail=detail, headers=headers)
    setattr(exc, "code", code)
    return exc
