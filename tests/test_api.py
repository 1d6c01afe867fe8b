"""End-to-end scenarios through the HTTP API."""

import asyncio
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import FakeResearch, LESSON_TEXT, OTHER_USER, USER, bird_outline
from main import create_app


async def _build(api, sessions=2):
    response = await api.post("/api/courses/build", json={"outline": bird_outline(sessions)}, headers=USER)
    assert response.status_code == 201, response.text
    return response.json()


async def _lesson_ids(api, course_id):
    response = await api.get(f"/api/courses/{course_id}", headers=USER)
    assert response.status_code == 200
    return [lesson["id"] for lesson in response.json()["lessons"]]


@pytest.mark.asyncio
async def test_health_and_models(api):
    assert (await api.get("/")).json()["status"] == "ok"
    models = (await api.get("/api/models")).json()["models"]
    assert any(m["default"] for m in models)


@pytest.mark.asyncio
async def test_missing_user_header_is_401(api):
    response = await api.get("/api/courses")
    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHENTICATED"


@pytest.mark.asyncio
async def test_build_bird_watching_basics(api, llm):
    llm.hold = asyncio.Event()
    course = await _build(api)

    assert course["title"] == "Bird Watching Basics"
    assert course["total_lessons"] == 2

    detail = (await api.get(f"/api/courses/{course['id']}", headers=USER)).json()
    assert [l["session_number"] for l in detail["lessons"]] == [1, 2]
    assert all(l["status"] in ("pending", "generating") for l in detail["lessons"])
    llm.hold.set()


@pytest.mark.asyncio
async def test_lesson_pending_then_ready_by_polling(api, llm, runner):
    llm.hold = asyncio.Event()
    course = await _build(api)
    first_id = (await _lesson_ids(api, course["id"]))[0]

    pending = (await api.get(f"/api/lessons/{first_id}", headers=USER)).json()
    assert pending["is_pending"] is True
    assert pending["content"] is None

    llm.hold.set()
    await runner.drain(timeout=5)

    ready = (await api.get(f"/api/lessons/{first_id}", headers=USER)).json()
    assert ready["is_pending"] is False
    assert ready["status"] == "ready"
    assert ready["content"] == LESSON_TEXT
    assert ready["next_lesson_id"] is not None


@pytest.mark.asyncio
async def test_simultaneous_fetches_generate_once(api, llm, runner, store):
    llm.hold = asyncio.Event()
    course = await _build(api)
    second_id = (await _lesson_ids(api, course["id"]))[1]

    responses = await asyncio.gather(
        api.get(f"/api/lessons/{second_id}", headers=USER),
        api.get(f"/api/lessons/{second_id}", headers=USER),
    )
    assert [r.status_code for r in responses] == [200, 200]
    assert all(r.json()["is_pending"] for r in responses)

    llm.hold.set()
    await runner.drain(timeout=5)

    assert store.lesson_commits[second_id] == 1
    # one call for the pre-generated first lesson, one for this lesson
    assert llm.calls == 2
    assert (await api.get(f"/api/lessons/{second_id}", headers=USER)).json()["content"] == LESSON_TEXT


@pytest.mark.asyncio
async def test_preview_marketing_question(api, llm):
    llm.responses = ['{"type": "question", "question": "Which part of marketing interests you?"}']
    response = await api.post("/api/courses/preview", json={"topic": "marketing"}, headers=USER)

    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "question"
    assert body["question"]


@pytest.mark.asyncio
async def test_preview_marketing_outline_and_revision(api, llm):
    outline = {
        "type": "outline",
        "title": "Marketing Fundamentals",
        "description": "Core ideas of marketing",
        "sessions": [{"title": f"Session {n}", "subtitle": "s", "sessionNumber": n} for n in (2, 5, 9)],
    }
    llm.responses = [json.dumps(outline)]
    first = await api.post("/api/courses/preview", json={"topic": "marketing"}, headers=USER)
    assert first.status_code == 200
    body = first.json()
    assert body["type"] == "outline"
    assert [s["sessionNumber"] for s in body["sessions"]] == [1, 2, 3]

    llm.responses = [json.dumps({**outline, "sessions": outline["sessions"][:2]})]
    revised = await api.post(
        "/api/courses/preview",
        json={"topic": "marketing", "feedback": "shorter", "previousOutline": body},
        headers=USER,
    )
    assert revised.status_code == 200
    assert len(revised.json()["sessions"]) == 2


@pytest.mark.asyncio
async def test_preview_unparseable_is_502(api, llm):
    llm.responses = ["Sorry, I can't do JSON today."]
    response = await api.post("/api/courses/preview", json={"topic": "marketing"}, headers=USER)
    assert response.status_code == 502
    assert response.json()["error"] == "OUTLINE_UNPROCESSABLE"


@pytest.mark.asyncio
async def test_build_rejects_bad_outline(api):
    outline = bird_outline(2)
    outline["sessions"][0]["sessionNumber"] = 2
    response = await api.post("/api/courses/build", json={"outline": outline}, headers=USER)
    assert response.status_code == 400
    assert response.json()["error"] == "DUPLICATE_SESSION_NUMBER"


@pytest.mark.asyncio
async def test_other_users_get_403_and_unknown_ids_404(api):
    course = await _build(api, sessions=1)
    lesson_id = (await _lesson_ids(api, course["id"]))[0]

    assert (await api.get(f"/api/courses/{course['id']}", headers=OTHER_USER)).status_code == 403
    assert (await api.get(f"/api/lessons/{lesson_id}", headers=OTHER_USER)).status_code == 403
    missing = await api.get("/api/lessons/99999", headers=USER)
    assert missing.status_code == 404
    assert missing.json()["error"] == "LESSON_NOT_FOUND"


@pytest.mark.asyncio
async def test_complete_feedback_and_expand(api, llm, runner):
    course = await _build(api, sessions=1)
    await runner.drain(timeout=5)
    lesson_id = (await _lesson_ids(api, course["id"]))[0]

    feedback = await api.post(f"/api/lessons/{lesson_id}/feedback", json={"feedback": "More photos"}, headers=USER)
    assert feedback.status_code == 201

    llm.default = "Binocular magnification explained."
    expansion = await api.post(f"/api/lessons/{lesson_id}/expand", json={"topic": "binoculars"}, headers=USER)
    assert expansion.status_code == 201
    assert expansion.json()["content"] == "Binocular magnification explained."

    completed = (await api.post(f"/api/lessons/{lesson_id}/complete", headers=USER)).json()
    assert completed["course_completed"] is True

    view = (await api.get(f"/api/lessons/{lesson_id}", headers=USER)).json()
    assert view["is_completed"] is True
    assert view["user_feedback"] == "More photos"
    assert [e["topic"] for e in view["expansions"]] == ["binoculars"]

    courses = (await api.get("/api/courses", headers=USER)).json()["courses"]
    assert courses[0]["is_completed"] is True
    assert courses[0]["completed_lessons"] == 1


@pytest.mark.asyncio
async def test_archive_unarchive_delete(api):
    course = await _build(api, sessions=1)
    course_id = course["id"]

    assert (await api.post(f"/api/courses/{course_id}/archive", headers=USER)).json()["is_archived"] is True
    assert (await api.get("/api/courses", headers=USER)).json()["course_count"] == 0
    assert (await api.get("/api/courses?include_archived=true", headers=USER)).json()["course_count"] == 1

    assert (await api.post(f"/api/courses/{course_id}/unarchive", headers=USER)).json()["is_archived"] is False

    assert (await api.delete(f"/api/courses/{course_id}", headers=USER)).json() == {"success": True}
    assert (await api.get(f"/api/courses/{course_id}", headers=USER)).status_code == 404


@pytest.mark.asyncio
async def test_delete_while_lesson_generates(api, llm, runner, store):
    llm.hold = asyncio.Event()
    course = await _build(api, sessions=2)
    first_id = (await _lesson_ids(api, course["id"]))[0]
    while llm.calls == 0:
        await asyncio.sleep(0)

    assert (await api.delete(f"/api/courses/{course['id']}", headers=USER)).status_code == 200
    llm.hold.set()
    await runner.drain(timeout=5)

    assert store.lesson_commits == {}
    assert (await api.get(f"/api/lessons/{first_id}", headers=USER)).status_code == 404
    assert (await api.get("/api/courses", headers=USER)).json()["course_count"] == 0


@pytest_asyncio.fixture
async def research_api(store, llm, runner):
    research = FakeResearch(error=RuntimeError("upstream 503"))
    app = create_app(store=store, llm=llm, research_client=research, runner=runner)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, research


@pytest.mark.asyncio
async def test_research_failure_and_retry(research_api, runner):
    api, research = research_api
    course = await _build(api, sessions=2)
    await runner.drain(timeout=5)

    status = (await api.get(f"/api/courses/{course['id']}/research", headers=USER)).json()
    assert status["status"] == "failed"
    assert "upstream 503" in status["error"]

    research.error = None
    retry = await api.post(f"/api/courses/{course['id']}/research/retry", headers=USER)
    assert retry.status_code == 202
    await runner.drain(timeout=5)

    status = (await api.get(f"/api/courses/{course['id']}/research", headers=USER)).json()
    assert status["status"] == "completed"
    assert status["confidence"] > 0
    assert len(status["citations"]) == 2
