import asyncio

import pytest
from sqlalchemy import select

from deuce.exceptions import RatingNotFound, SeasonLocked, StateConflictError, ValidationError
from deuce.models import RatingAdjustment, RatingChangeReason, SeasonLock
from deuce.services import season_locks
from deuce.services.adjustments import adjust_rating

from factories import add_match, history_of, play, rating_of, services_for


def test_adjustment_is_recorded_in_history():
    async def scenario():
        async with services_for() as (session_factory, services):
            await play(session_factory, ["a"], ["b"])
            await services.worker.process_pending()

            async with session_factory() as session:
                rating = await rating_of(session, "a")
                before = rating.current_rating
                adjustment = await adjust_rating(
                    session, services.store, rating.id, 1400, "admin", "  sandbagging  "
                )
                await session.commit()
                assert adjustment.reason == "sandbagging"
                assert adjustment.delta == pytest.approx(1400 - before)

            async with session_factory() as session:
                rating = await rating_of(session, "a")
                assert rating.current_rating == 1400
                assert rating.lowest_rating == 1400
                assert rating.matches_played == 1
                last = (await history_of(session, "a"))[-1]
                assert last.reason == RatingChangeReason.ADJUSTMENT
                assert last.match_id is None
                assert last.rating_before == pytest.approx(before)
                assert last.adjustment_id == adjustment.id
                check = await services.store.verify_chain(session, rating.id)
                assert check.consistent

    asyncio.run(scenario())


def test_adjustment_requires_reason_and_rating():
    async def scenario():
        async with services_for() as (session_factory, services):
            await play(session_factory, ["a"], ["b"])
            await services.worker.process_pending()
            async with session_factory() as session:
                rating = await rating_of(session, "a")
                with pytest.raises(ValidationError):
                    await adjust_rating(session, services.store, rating.id, 1600, "admin", " ")
                with pytest.raises(RatingNotFound):
                    await adjust_rating(session, services.store, "nope", 1600, "admin", "x")
            async with session_factory() as session:
                adjustments = (await session.execute(select(RatingAdjustment))).scalars().all()
                assert adjustments == []

    asyncio.run(scenario())


def test_lock_refused_while_season_is_open():
    async def scenario():
        async with services_for() as (session_factory, services):
            async with session_factory() as session:
                add_match(session, ["a"], ["b"])
                await session.commit()
            async with session_factory() as session:
                with pytest.raises(StateConflictError) as exc:
                    await season_locks.lock_season(session, "s1", "admin")
                assert exc.value.code == "season_has_open_matches"

    asyncio.run(scenario())


def test_lock_refused_while_ratings_are_pending():
    async def scenario():
        async with services_for() as (session_factory, services):
            await play(session_factory, ["a"], ["b"])
            async with session_factory() as session:
                with pytest.raises(StateConflictError) as exc:
                    await season_locks.lock_season(session, "s1", "admin")
                assert exc.value.code == "season_has_pending_ratings"

    asyncio.run(scenario())


def test_locked_season_rejects_adjustments_until_unlocked():
    async def scenario():
        async with services_for() as (session_factory, services):
            await play(session_factory, ["a"], ["b"])
            await services.worker.process_pending()

            async with session_factory() as session:
                await season_locks.lock_season(session, "s1", "admin", notes="final")
                await session.commit()

            async with session_factory() as session:
                lock = await session.get(SeasonLock, "s1")
                assert lock.is_locked and lock.locked_by == "admin"
                rating = await rating_of(session, "a")
                with pytest.raises(SeasonLocked):
                    await adjust_rating(session, services.store, rating.id, 1600, "admin", "fix")
                with pytest.raises(SeasonLocked):
                    await season_locks.lock_season(session, "s1", "admin")

            async with session_factory() as session:
                await season_locks.unlock_season(session, "s1", "admin")
                await session.commit()

            async with session_factory() as session:
                rating = await rating_of(session, "a")
                await adjust_rating(session, services.store, rating.id, 1600, "admin", "fix")
                await session.commit()
                with pytest.raises(StateConflictError):
                    await season_locks.unlock_season(session, "s1", "admin")

    asyncio.run(scenario())
