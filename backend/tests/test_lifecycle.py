import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from deuce.exceptions import (
    AlreadyProcessed,
    DisputePending,
    InvalidParticipants,
    InvalidScore,
    InvalidState,
    NotParticipant,
    SelfConfirmation,
)
from deuce.models import (
    DisputeCategory,
    DisputeStatus,
    Match,
    MatchDispute,
    MatchOutcome,
    MatchStatus,
    OutboxEvent,
    RatingChangeReason,
    RatingTask,
    RatingTaskStatus,
    ResultSource,
    ScoreEntry,
    Sport,
    WalkoverReason,
)
from deuce.services import eligibility, lifecycle, outbox
from deuce.time_utils import utcnow

from factories import STRAIGHT_SETS_A, add_match, history_of, play, services_for


async def _schedule(session_factory, side_a, side_b, **kwargs) -> str:
    async with session_factory() as session:
        match = add_match(session, side_a, side_b, **kwargs)
        await session.commit()
        return match.id


async def _count(session, model, *criteria) -> int:
    stmt = select(func.count()).select_from(model)
    if criteria:
        stmt = stmt.where(*criteria)
    return (await session.execute(stmt)).scalar_one()


def test_submit_then_confirm_rates_each_player_once():
    async def scenario():
        async with services_for() as (session_factory, services):
            match_id = await _schedule(session_factory, ["a"], ["b"])

            async with session_factory() as session:
                match = await lifecycle.submit_result(
                    session, match_id, "a", set_scores=STRAIGHT_SETS_A
                )
                assert match.status == MatchStatus.ONGOING
                assert match.proposed_outcome == MatchOutcome.A
                assert match.outcome is None
                assert (match.side_a_score, match.side_b_score) == (2, 0)
                await session.commit()

            async with session_factory() as session:
                match = await lifecycle.confirm_result(session, match_id, "b", True)
                assert match.status == MatchStatus.COMPLETED
                assert match.outcome == MatchOutcome.A
                assert match.result_source == ResultSource.PARTICIPANTS
                assert match.result_confirmed_by == "b"
                await session.commit()

            async with session_factory() as session:
                tasks = await _count(session, RatingTask, RatingTask.match_id == match_id)
                assert tasks == 1
                # Confirmation only queues the work.
                assert await history_of(session, "a") == []

            counts = await services.worker.process_pending()
            assert counts == {"done": 1}

            async with session_factory() as session:
                a_history = await history_of(session, "a")
                b_history = await history_of(session, "b")
                assert [h.reason for h in a_history] == [RatingChangeReason.MATCH_WIN]
                assert [h.reason for h in b_history] == [RatingChangeReason.MATCH_LOSS]
                task = (
                    await session.execute(
                        select(RatingTask).where(RatingTask.match_id == match_id)
                    )
                ).scalar_one()
                assert task.status == RatingTaskStatus.DONE

            async with session_factory() as session:
                with pytest.raises(AlreadyProcessed):
                    await services.engine.apply(session, match_id)

    asyncio.run(scenario())


def test_submitter_and_partner_cannot_confirm():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await _schedule(
                session_factory, ["a1", "a2"], ["b1", "b2"], sport=Sport.PADEL
            )
            async with session_factory() as session:
                await lifecycle.submit_result(
                    session, match_id, "a1", set_scores=STRAIGHT_SETS_A
                )
                await session.commit()

            for player in ("a1", "a2"):
                async with session_factory() as session:
                    with pytest.raises(SelfConfirmation):
                        await lifecycle.confirm_result(session, match_id, player, True)

            async with session_factory() as session:
                match = await session.get(Match, match_id)
                assert match.status == MatchStatus.ONGOING

            async with session_factory() as session:
                match = await lifecycle.confirm_result(session, match_id, "b2", True)
                assert match.status == MatchStatus.COMPLETED

    asyncio.run(scenario())


def test_only_accepted_participants_may_submit():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await _schedule(session_factory, ["a"], ["b"], pending=["b"])
            async with session_factory() as session:
                with pytest.raises(NotParticipant):
                    await lifecycle.submit_result(
                        session, match_id, "stranger", set_scores=STRAIGHT_SETS_A
                    )
            async with session_factory() as session:
                with pytest.raises(NotParticipant):
                    await lifecycle.submit_result(
                        session, match_id, "b", set_scores=STRAIGHT_SETS_A
                    )
            async with session_factory() as session:
                # Side B has no accepted player yet.
                with pytest.raises(InvalidParticipants):
                    await lifecycle.submit_result(
                        session, match_id, "a", set_scores=STRAIGHT_SETS_A
                    )

    asyncio.run(scenario())


def test_invalid_score_leaves_match_untouched():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await _schedule(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                with pytest.raises(InvalidScore):
                    await lifecycle.submit_result(
                        session, match_id, "a", set_scores=[{"A": 6, "B": 5}]
                    )
            async with session_factory() as session:
                match = await session.get(Match, match_id)
                assert match.status == MatchStatus.SCHEDULED
                assert match.proposed_outcome is None
                assert await _count(session, ScoreEntry) == 0
                assert await _count(session, OutboxEvent) == 0

    asyncio.run(scenario())


def test_second_submission_is_rejected():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await _schedule(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                await lifecycle.submit_result(
                    session, match_id, "a", set_scores=STRAIGHT_SETS_A
                )
                await session.commit()
            async with session_factory() as session:
                with pytest.raises(InvalidState):
                    await lifecycle.submit_result(
                        session, match_id, "b", set_scores=STRAIGHT_SETS_A
                    )

    asyncio.run(scenario())


def test_rejection_opens_dispute_and_rolls_back():
    async def scenario():
        async with services_for() as (session_factory, services):
            match_id = await _schedule(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                await lifecycle.submit_result(
                    session, match_id, "a", set_scores=STRAIGHT_SETS_A
                )
                await session.commit()

            async with session_factory() as session:
                match = await lifecycle.confirm_result(
                    session,
                    match_id,
                    "b",
                    False,
                    dispute_category=DisputeCategory.WRONG_SCORE,
                    dispute_reason="I won the second set",
                    disputer_scores=[
                        {"A": 6, "B": 3},
                        {"A": 4, "B": 6},
                        {"A": 0, "B": 1, "tiebreakA": 5, "tiebreakB": 10},
                    ],
                )
                assert match.status == MatchStatus.SCHEDULED
                assert match.is_disputed is True
                assert match.proposed_outcome is None
                assert match.side_a_score is None
                await session.commit()

            async with session_factory() as session:
                dispute = (
                    await session.execute(
                        select(MatchDispute).where(MatchDispute.match_id == match_id)
                    )
                ).scalar_one()
                assert dispute.status == DisputeStatus.OPEN
                assert dispute.raised_by == "b"
                assert dispute.disputed_result["proposedOutcome"] == "A"
                assert len(dispute.disputed_result["units"]) == 2
                assert len(dispute.disputer_scores) == 3
                assert await _count(session, ScoreEntry) == 0
                assert await _count(session, RatingTask) == 0
                events = (
                    await session.execute(select(OutboxEvent.event_type))
                ).scalars().all()
                assert outbox.MATCH_DISPUTED in events

            async with session_factory() as session:
                with pytest.raises(DisputePending):
                    await lifecycle.submit_result(
                        session, match_id, "a", set_scores=STRAIGHT_SETS_A
                    )

            assert await services.worker.process_pending() == {}
            async with session_factory() as session:
                assert await history_of(session, "a") == []

    asyncio.run(scenario())


def test_rejection_with_invalid_alternative_is_refused():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await _schedule(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                await lifecycle.submit_result(
                    session, match_id, "a", set_scores=STRAIGHT_SETS_A
                )
                await session.commit()
            async with session_factory() as session:
                with pytest.raises(InvalidScore):
                    await lifecycle.confirm_result(
                        session, match_id, "b", False, disputer_scores=[{"A": 6, "B": 6}]
                    )
            async with session_factory() as session:
                match = await session.get(Match, match_id)
                assert match.status == MatchStatus.ONGOING
                assert await _count(session, MatchDispute) == 0

    asyncio.run(scenario())


def test_unfinished_match_is_never_rated():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await _schedule(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                match = await lifecycle.submit_result(
                    session,
                    match_id,
                    "a",
                    set_scores=[{"A": 6, "B": 4}, {"A": 3, "B": 2}],
                    is_unfinished=True,
                )
                assert match.status == MatchStatus.UNFINISHED
                assert match.outcome is None
                await session.commit()
            async with session_factory() as session:
                assert await _count(session, ScoreEntry) == 2
                assert await _count(session, RatingTask) == 0

    asyncio.run(scenario())


def test_walkover_awards_the_other_side():
    async def scenario():
        async with services_for() as (session_factory, services):
            match_id = await _schedule(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                match = await lifecycle.submit_walkover(
                    session, match_id, "b", "a", WalkoverReason.NO_SHOW
                )
                assert match.status == MatchStatus.WALKOVER
                assert match.outcome == MatchOutcome.B
                assert match.is_walkover is True
                assert (match.side_a_score, match.side_b_score) == (0, 2)
                await session.commit()

            await services.worker.process_pending()
            async with session_factory() as session:
                assert [h.reason for h in await history_of(session, "a")] == [
                    RatingChangeReason.WALKOVER_LOSS
                ]
                assert [h.reason for h in await history_of(session, "b")] == [
                    RatingChangeReason.WALKOVER_WIN
                ]

    asyncio.run(scenario())


def test_walkover_needs_participants():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await _schedule(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                with pytest.raises(NotParticipant):
                    await lifecycle.submit_walkover(
                        session, match_id, "b", "nobody", WalkoverReason.INJURY
                    )

    asyncio.run(scenario())


def test_cancel_only_from_scheduled():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await _schedule(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                match = await lifecycle.cancel_match(session, match_id, "a")
                assert match.status == MatchStatus.CANCELLED
                await session.commit()
            async with session_factory() as session:
                with pytest.raises(InvalidState):
                    await lifecycle.cancel_match(session, match_id, "a")
                with pytest.raises(InvalidState):
                    await lifecycle.submit_result(
                        session, match_id, "a", set_scores=STRAIGHT_SETS_A
                    )

    asyncio.run(scenario())


def test_auto_approve_completes_stale_submissions():
    async def scenario():
        async with services_for() as (session_factory, _):
            stale = await _schedule(session_factory, ["a"], ["b"])
            fresh = await _schedule(session_factory, ["c"], ["d"])
            for match_id, submitter in ((stale, "a"), (fresh, "c")):
                async with session_factory() as session:
                    await lifecycle.submit_result(
                        session, match_id, submitter, set_scores=STRAIGHT_SETS_A
                    )
                    await session.commit()
            async with session_factory() as session:
                match = await session.get(Match, stale)
                match.result_submitted_at = utcnow() - timedelta(hours=30)
                await session.commit()

            async with session_factory() as session:
                approved = await lifecycle.auto_approve_results(session)
                await session.commit()
            assert approved == [stale]

            async with session_factory() as session:
                match = await session.get(Match, stale)
                assert match.status == MatchStatus.COMPLETED
                assert match.result_source == ResultSource.AUTO_APPROVED
                assert match.is_auto_approved is True
                assert match.result_confirmed_by is None
                other = await session.get(Match, fresh)
                assert other.status == MatchStatus.ONGOING
                assert await _count(session, RatingTask) == 1

    asyncio.run(scenario())


def test_friendly_match_completes_without_rating_work():
    async def scenario():
        async with services_for() as (session_factory, _):
            match_id = await play(session_factory, ["a"], ["b"], is_friendly=True)
            async with session_factory() as session:
                match = await session.get(Match, match_id)
                assert match.status == MatchStatus.COMPLETED
                assert await _count(session, RatingTask) == 0
                participants = await eligibility.load_participants(session, match_id)
                assert not eligibility.is_rating_eligible(match, participants)
                match.is_friendly = False
                assert eligibility.is_rating_eligible(match, participants)
                assert not eligibility.is_rating_eligible(match, participants, True)

    asyncio.run(scenario())
