import asyncio
import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import select

from deuce import db
from deuce.main import app, unhandled_exception_handler
from deuce.models import RatingTask

from factories import add_match

PREFIX = "/api/v0"
PLAYER_A = {"X-Actor-Id": "a"}
PLAYER_B = {"X-Actor-Id": "b"}
ADMIN = {"X-Actor-Id": "root", "X-Actor-Role": "admin"}


@pytest.fixture
def client(file_db_url, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", file_db_url)

    async def init_models():
        engine = db.get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(db.Base.metadata.create_all)

    asyncio.run(init_models())
    app.state.services = None
    with TestClient(app) as test_client:
        yield test_client
    app.state.services = None


def schedule(side_a=("a",), side_b=("b",), **kwargs) -> str:
    async def create():
        async with db.get_sessionmaker()() as session:
            match = add_match(session, list(side_a), list(side_b), **kwargs)
            await session.commit()
            return match.id

    return asyncio.run(create())


def drain_rating_queue():
    return asyncio.run(app.state.services.worker.process_pending())


def play_via_api(client, match_id, set_scores=([6, 3], [6, 4])):
    resp = client.post(
        f"{PREFIX}/matches/{match_id}/result",
        json={"setScores": list(set_scores)},
        headers=PLAYER_A,
    )
    assert resp.status_code == 200, resp.text
    resp = client.post(
        f"{PREFIX}/matches/{match_id}/confirm", json={"accept": True}, headers=PLAYER_B
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/api/healthz").json() == {"status": "ok"}


def test_submit_confirm_and_read_ratings(client):
    match_id = schedule()
    resp = client.post(
        f"{PREFIX}/matches/{match_id}/result",
        json={"setScores": [{"A": 6, "B": 3}, [6, 4]]},
        headers=PLAYER_A,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ONGOING"
    assert body["proposedOutcome"] == "A"
    assert body["outcome"] is None

    resp = client.post(
        f"{PREFIX}/matches/{match_id}/confirm", json={"accept": True}, headers=PLAYER_B
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "COMPLETED"
    assert resp.json()["resultSource"] == "PARTICIPANTS"

    assert drain_rating_queue() == {"done": 1}

    history = client.get(f"{PREFIX}/matches/{match_id}/rating-history").json()
    assert sorted(h["reason"] for h in history) == ["MATCH_LOSS", "MATCH_WIN"]

    ratings = client.get(f"{PREFIX}/ratings/players/a").json()
    assert len(ratings) == 1
    rating = ratings[0]
    assert rating["matchesPlayed"] == 1
    assert rating["isProvisional"] is True
    assert rating["confidenceLow"] < rating["rating"] < rating["confidenceHigh"]

    scoped = client.get(f"{PREFIX}/ratings/players/a/s1/tennis/SINGLES")
    assert scoped.status_code == 200
    assert scoped.json()["id"] == rating["id"]

    own_history = client.get(f"{PREFIX}/ratings/players/a/history").json()
    assert [h["reason"] for h in own_history] == ["MATCH_WIN"]

    missing = client.get(f"{PREFIX}/ratings/players/a/s9/tennis/SINGLES")
    assert missing.status_code == 404
    assert missing.json()["code"] == "rating_not_found"


def test_actor_header_is_required(client):
    match_id = schedule()
    resp = client.post(
        f"{PREFIX}/matches/{match_id}/result", json={"setScores": [[6, 3], [6, 4]]}
    )
    assert resp.status_code == 401
    assert resp.headers["content-type"].startswith("application/problem+json")
    assert resp.json()["code"] == "actor_required"


def test_domain_errors_are_problem_documents(client):
    match_id = schedule()
    client.post(
        f"{PREFIX}/matches/{match_id}/result",
        json={"setScores": [[6, 3], [6, 4]]},
        headers=PLAYER_A,
    )

    resp = client.post(
        f"{PREFIX}/matches/{match_id}/confirm", json={"accept": True}, headers=PLAYER_A
    )
    assert resp.status_code == 409
    assert resp.headers["content-type"].startswith("application/problem+json")
    problem = resp.json()
    assert problem["code"] == "self_confirmation"
    assert problem["status"] == 409

    resp = client.post(
        f"{PREFIX}/matches/{match_id}/confirm",
        json={"accept": True},
        headers={"X-Actor-Id": "stranger"},
    )
    assert resp.status_code == 403
    assert resp.json()["code"] == "not_participant"

    resp = client.post(f"{PREFIX}/matches/nope/cancel", headers=PLAYER_A)
    assert resp.status_code == 404
    assert resp.json()["code"] == "match_not_found"

    other = schedule()
    resp = client.post(
        f"{PREFIX}/matches/{other}/result",
        json={"setScores": [[6, 5], [6, 0]]},
        headers=PLAYER_A,
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "invalid_score"


def test_dispute_flow(client):
    match_id = schedule()
    client.post(
        f"{PREFIX}/matches/{match_id}/result",
        json={"setScores": [[6, 3], [6, 4]]},
        headers=PLAYER_A,
    )
    resp = client.post(
        f"{PREFIX}/matches/{match_id}/confirm",
        json={
            "accept": False,
            "disputeCategory": "WRONG_SCORE",
            "disputeReason": "  swapped sides  ",
            "disputerScores": [[3, 6], [4, 6]],
        },
        headers=PLAYER_B,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "SCHEDULED"
    assert resp.json()["isDisputed"] is True

    open_disputes = client.get(f"{PREFIX}/disputes", params={"status": "OPEN"}).json()
    assert len(open_disputes) == 1
    dispute = open_disputes[0]
    assert dispute["reason"] == "swapped sides"

    resp = client.post(
        f"{PREFIX}/disputes/{dispute['id']}/resolve",
        json={"action": "UPHOLD_DISPUTER"},
        headers={"X-Actor-Id": "a"},
    )
    assert resp.status_code == 403
    assert resp.json()["code"] == "admin_required"

    resp = client.post(
        f"{PREFIX}/disputes/{dispute['id']}/resolve",
        json={"action": "UPHOLD_DISPUTER", "notes": "video review"},
        headers=ADMIN,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "RESOLVED"
    assert resp.json()["resolvedBy"] == "root"
    assert drain_rating_queue() == {"done": 1}


def test_walkover_and_cancel(client):
    match_id = schedule()
    resp = client.post(
        f"{PREFIX}/matches/{match_id}/walkover",
        json={"defaultingPlayerId": "b", "reason": "NO_SHOW"},
        headers=PLAYER_A,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "WALKOVER"
    assert resp.json()["outcome"] == "A"

    resp = client.post(f"{PREFIX}/matches/{match_id}/cancel", headers=PLAYER_A)
    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_state"

    other = schedule()
    resp = client.post(f"{PREFIX}/matches/{other}/cancel", headers=PLAYER_B)
    assert resp.json()["status"] == "CANCELLED"


def test_adjustment_and_season_lock(client):
    play_via_api(client, schedule())
    drain_rating_queue()
    rating_id = client.get(f"{PREFIX}/ratings/players/b").json()[0]["id"]

    resp = client.post(
        f"{PREFIX}/ratings/{rating_id}/adjustments",
        json={"newRating": 1550, "reason": "returning champion"},
        headers=PLAYER_A,
    )
    assert resp.status_code == 403

    resp = client.post(
        f"{PREFIX}/ratings/{rating_id}/adjustments",
        json={"newRating": 1550, "reason": "returning champion"},
        headers=ADMIN,
    )
    assert resp.status_code == 201
    assert resp.json()["ratingAfter"] == 1550

    resp = client.post(
        f"{PREFIX}/ratings/seasons/s1/lock", json={"notes": "season over"}, headers=ADMIN
    )
    assert resp.status_code == 200
    assert resp.json()["isLocked"] is True

    resp = client.post(
        f"{PREFIX}/ratings/{rating_id}/adjustments",
        json={"newRating": 1600, "reason": "again"},
        headers=ADMIN,
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "season_locked"

    resp = client.delete(f"{PREFIX}/ratings/seasons/s1/lock", headers=ADMIN)
    assert resp.json()["isLocked"] is False


def test_win_probability(client):
    play_via_api(client, schedule())
    play_via_api(client, schedule(season_id="s2"))
    drain_rating_queue()
    a_s1, a_s2 = client.get(f"{PREFIX}/ratings/players/a").json()
    b_s1 = client.get(f"{PREFIX}/ratings/players/b", params={"seasonId": "s1"}).json()[0]

    resp = client.get(
        f"{PREFIX}/ratings/win-probability",
        params={"playerRatingId": a_s1["id"], "opponentRatingId": b_s1["id"]},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["playerId"] == "a" and body["opponentId"] == "b"
    assert 0.5 < body["probability"] < 1.0

    resp = client.get(
        f"{PREFIX}/ratings/win-probability",
        params={"playerRatingId": a_s2["id"], "opponentRatingId": b_s1["id"]},
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "rating_scope_mismatch"


def rating_task_for(match_id):
    async def fetch():
        async with db.get_sessionmaker()() as session:
            stmt = select(RatingTask.id).where(RatingTask.match_id == match_id)
            return (await session.execute(stmt)).scalar_one()

    return asyncio.run(fetch())


def test_requeue_is_admin_only_and_needs_a_stuck_task(client):
    match_id = schedule()
    play_via_api(client, match_id)
    drain_rating_queue()
    task_id = rating_task_for(match_id)

    resp = client.post(f"{PREFIX}/ratings/tasks/{task_id}/requeue", headers=PLAYER_A)
    assert resp.status_code == 403

    resp = client.post(f"{PREFIX}/ratings/tasks/{task_id}/requeue", headers=ADMIN)
    assert resp.status_code == 409
    assert resp.json()["code"] == "rating_task_not_requeueable"

    resp = client.post(f"{PREFIX}/ratings/tasks/missing/requeue", headers=ADMIN)
    assert resp.status_code == 404
    assert resp.json()["code"] == "rating_task_not_found"


def test_recalculation_preview_runs_after_request(client):
    play_via_api(client, schedule())
    drain_rating_queue()

    resp = client.post(
        f"{PREFIX}/recalculations",
        json={"scope": "SEASON", "targetId": "s1"},
        headers=ADMIN,
    )
    assert resp.status_code == 202
    job = resp.json()
    assert job["status"] == "PENDING"
    assert job["requestedBy"] == "root"

    job = client.get(f"{PREFIX}/recalculations/{job['id']}").json()
    assert job["status"] == "PREVIEW_READY"
    assert job["preview"]["playersAffected"] == 2

    resp = client.post(f"{PREFIX}/recalculations/{job['id']}/apply", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["status"] == "APPLIED"

    resp = client.post(f"{PREFIX}/recalculations/{job['id']}/cancel", headers=ADMIN)
    assert resp.status_code == 409
    assert resp.json()["code"] == "recalculation_immutable"

    resp = client.post(
        f"{PREFIX}/recalculations",
        json={"scope": "PLAYER", "targetId": "a"},
        headers=ADMIN,
    )
    assert resp.status_code == 422


def test_unhandled_exception_logs_traceback(caplog):
    boom_app = FastAPI()
    boom_app.add_exception_handler(Exception, unhandled_exception_handler)

    @boom_app.get("/boom")
    def boom():
        raise ValueError("boom")

    test_client = TestClient(boom_app, raise_server_exceptions=False)
    with caplog.at_level(logging.ERROR):
        response = test_client.get("/boom")

    assert response.status_code == 500
    assert response.json()["code"] == "internal_server_error"
    record = next((r for r in caplog.records if r.message == "Unhandled exception"), None)
    assert record is not None
    assert record.exc_info[0] is ValueError
    assert "ValueError: boom" in caplog.text
