import asyncio

from sqlalchemy import select

from deuce.models import OutboxEvent
from deuce.services import outbox
from deuce.services.outbox import OutboxDispatcher

from factories import play, services_for


class RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events = []

    async def deliver(self, event: OutboxEvent) -> None:
        if self.fail:
            raise ConnectionError("push gateway unavailable")
        self.events.append((event.event_type, event.aggregate_id))


def test_events_are_delivered_once_in_order():
    async def scenario():
        async with services_for() as (session_factory, services):
            match_id = await play(session_factory, ["a"], ["b"])
            await services.worker.process_pending()

            sink = RecordingSink()
            dispatcher = OutboxDispatcher(session_factory, sink, batch_size=10)
            assert await dispatcher.dispatch_pending() == 3
            assert sink.events == [
                (outbox.RESULT_SUBMITTED, match_id),
                (outbox.MATCH_COMPLETED, match_id),
                (outbox.RATING_UPDATED, match_id),
            ]
            assert await dispatcher.dispatch_pending() == 0

    asyncio.run(scenario())


def test_failed_delivery_is_retried_later():
    async def scenario():
        async with services_for() as (session_factory, _):
            await play(session_factory, ["a"], ["b"])
            sink = RecordingSink(fail=True)
            dispatcher = OutboxDispatcher(session_factory, sink)
            assert await dispatcher.dispatch_pending() == 0

            async with session_factory() as session:
                events = (await session.execute(select(OutboxEvent))).scalars().all()
                assert len(events) == 2
                for event in events:
                    assert event.dispatched_at is None
                    assert event.attempts == 1
                    assert "unavailable" in event.last_error

            sink.fail = False
            assert await dispatcher.dispatch_pending() == 2

    asyncio.run(scenario())


def test_events_past_the_attempt_limit_are_left_alone():
    async def scenario():
        async with services_for() as (session_factory, _):
            async with session_factory() as session:
                event = outbox.emit(session, outbox.SEASON_LOCKED, "s1", {"lockedBy": "admin"})
                event.attempts = outbox.MAX_DISPATCH_ATTEMPTS
                await session.commit()
            sink = RecordingSink()
            assert await OutboxDispatcher(session_factory, sink).dispatch_pending() == 0
            assert sink.events == []

    asyncio.run(scenario())
