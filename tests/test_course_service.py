"""Course build, listing, archive/delete and the research lifecycle."""

from datetime import timedelta

import pytest

from conftest import FakeResearch, bird_outline
from models.course_models import Citation, LessonStatus, ResearchStatus
from services.content_store import utcnow
from services.course_service import CourseService, research_confidence
from services.generation_gate import GenerationGate
from utils.exceptions import NotFoundError, OwnershipError, ResearchError, StorageError, ValidationError


@pytest.mark.asyncio
async def test_build_bird_watching_basics(store, runner, course_service):
    course = await course_service.build_course("user-1", bird_outline(2))

    assert course.title == "Bird Watching Basics"
    assert course.total_lessons == 2
    lessons = await store.get_lessons_by_course(course.id)
    assert [l.session_number for l in lessons] == [1, 2]
    assert all(l.status == LessonStatus.PENDING and l.content is None for l in lessons)

    # first lesson is pre-generated in the background
    await runner.drain(timeout=5)
    lessons = await store.get_lessons_by_course(course.id)
    assert lessons[0].status == LessonStatus.READY
    assert lessons[1].status == LessonStatus.PENDING


@pytest.mark.asyncio
async def test_build_numbers_lessons_contiguously(store, course_service):
    outline = bird_outline(4)
    for session, number in zip(outline["sessions"], [10, 4, 99, 7]):
        session["sessionNumber"] = number

    course = await course_service.build_course("user-1", outline)

    lessons = await store.get_lessons_by_course(course.id)
    assert [l.session_number for l in lessons] == [1, 2, 3, 4]
    assert [l.title for l in lessons] == [
        "Identifying Common Birds", "Field Journals", "Getting Started with Birding", "Songs and Calls",
    ]


@pytest.mark.asyncio
async def test_invalid_outline_persists_nothing(store, course_service):
    outline = bird_outline(2)
    outline["sessions"][1]["sessionNumber"] = 1
    with pytest.raises(ValidationError):
        await course_service.build_course("user-1", outline)
    assert store.courses == {}


@pytest.mark.asyncio
async def test_list_and_archive(store, course_service, lesson_service):
    first = await course_service.build_course("user-1", bird_outline(2))
    second = await course_service.build_course("user-1", bird_outline(3))
    await course_service.build_course("user-2", bird_outline(1))
    lessons = await store.get_lessons_by_course(first.id)
    await lesson_service.complete_lesson("user-1", lessons[0].id)

    await course_service.set_archived("user-1", second.id, True)

    visible = await course_service.list_courses("user-1")
    assert [c["id"] for c in visible] == [first.id]
    assert visible[0]["completed_lessons"] == 1

    everything = await course_service.list_courses("user-1", include_archived=True)
    assert {c["id"] for c in everything} == {first.id, second.id}

    await course_service.set_archived("user-1", second.id, False)
    assert len(await course_service.list_courses("user-1")) == 2


@pytest.mark.asyncio
async def test_course_detail(store, course_service, lesson_service):
    course = await course_service.build_course("user-1", bird_outline(2))
    lessons = await store.get_lessons_by_course(course.id)
    await lesson_service.complete_lesson("user-1", lessons[1].id)

    detail = await course_service.get_course_detail("user-1", course.id)

    assert detail["course"].id == course.id
    assert [l["is_completed"] for l in detail["lessons"]] == [False, True]
    assert detail["completed_lessons"] == 1
    assert detail["research"] is None


@pytest.mark.asyncio
async def test_ownership_enforced(course_service):
    course = await course_service.build_course("user-1", bird_outline(1))
    with pytest.raises(OwnershipError):
        await course_service.get_course_detail("user-2", course.id)
    with pytest.raises(OwnershipError):
        await course_service.delete_course("user-2", course.id)
    with pytest.raises(NotFoundError):
        await course_service.get_course_detail("user-1", 4242)


@pytest.mark.asyncio
async def test_delete_cascades(store, runner, course_service, lesson_service):
    course = await course_service.build_course("user-1", bird_outline(2))
    await runner.drain(timeout=5)
    lessons = await store.get_lessons_by_course(course.id)
    await lesson_service.submit_feedback("user-1", lessons[0].id, "great")
    await lesson_service.complete_lesson("user-1", lessons[0].id)

    await course_service.delete_course("user-1", course.id)

    assert await store.get_course(course.id) is None
    assert await store.get_lessons_by_course(course.id) == []
    assert store.feedback == []
    assert store.progress == {}


@pytest.mark.asyncio
async def test_build_with_research_completes_document(store, runner, lesson_service):
    research = FakeResearch()
    service = CourseService(store, lesson_service, runner, research_client=research)

    course = await service.build_course("user-1", bird_outline(2))
    await runner.drain(timeout=5)

    document = await store.get_research(course.id)
    assert document.status == ResearchStatus.COMPLETED
    assert document.confidence == research_confidence(research.result.citations)
    assert research.calls[0][0] == "Bird Watching Basics"
    assert "Getting Started with Birding" in research.calls[0][1]

    summary = await service.get_research("user-1", course.id)
    assert summary["status"] == "completed"
    assert [c["index"] for c in summary["citations"]] == [1, 2]


@pytest.mark.asyncio
async def test_research_failure_recorded_then_retried(store, runner, lesson_service):
    research = FakeResearch(error=ResearchError("Deep research request timed out after 300 seconds"))
    service = CourseService(store, lesson_service, runner, research_client=research)

    course = await service.build_course("user-1", bird_outline(1))
    await runner.drain(timeout=5)

    document = await store.get_research(course.id)
    assert document.status == ResearchStatus.FAILED
    assert "timed out" in document.error

    # never retried on its own
    assert await service.run_research(course.id) is None
    assert len(research.calls) == 1

    research.error = None
    result = await service.retry_research("user-1", course.id)
    assert result["status"] == "pending"
    await runner.drain(timeout=5)

    document = await store.get_research(course.id)
    assert document.status == ResearchStatus.COMPLETED
    assert document.error is None
    assert len(research.calls) == 2


@pytest.mark.asyncio
async def test_retry_rejected_unless_failed(store, runner, lesson_service, course_service):
    service = CourseService(store, lesson_service, runner, research_client=FakeResearch())
    course = await service.build_course("user-1", bird_outline(1))
    await runner.drain(timeout=5)

    with pytest.raises(ValidationError):
        await service.retry_research("user-1", course.id)
    with pytest.raises(ValidationError):
        await course_service.retry_research("user-1", course.id)


@pytest.mark.asyncio
async def test_research_missing(course_service):
    course = await course_service.build_course("user-1", bird_outline(1))
    with pytest.raises(NotFoundError):
        await course_service.get_research("user-1", course.id)


def test_research_confidence():
    assert research_confidence([]) == 0.0

    same_domain = [Citation(index=i, url=f"https://a.org/{i}", domain="a.org") for i in range(1, 11)]
    assert research_confidence(same_domain) == 0.6

    diverse = [Citation(index=i, url=f"https://s{i}.org/", domain=f"s{i}.org") for i in range(1, 13)]
    assert research_confidence(diverse) == 1.0


async def _course_with_research(store):
    course = await store.create_course("user-1", "Bird Watching Basics", "Spot birds", 1)
    await store.create_lessons(course.id, [{"session_number": 1, "title": "Getting Started with Birding"}])
    await store.create_research(course.id, "Bird Watching Basics")
    return course


@pytest.mark.asyncio
async def test_storage_error_after_claim_leaves_research_retryable(store, runner, lesson_service, monkeypatch):
    research = FakeResearch()
    service = CourseService(store, lesson_service, runner, research_client=research)
    course = await _course_with_research(store)

    async def lessons_unavailable(course_id):
        raise StorageError("Failed to get lessons")

    monkeypatch.setattr(store, "get_lessons_by_course", lessons_unavailable)
    with pytest.raises(StorageError):
        await service.run_research(course.id)

    document = await store.get_research(course.id)
    assert document.status == ResearchStatus.FAILED
    assert document.error == "Failed to get lessons"
    assert research.calls == []

    monkeypatch.undo()
    await service.retry_research("user-1", course.id)
    await runner.drain(timeout=5)

    assert (await store.get_research(course.id)).status == ResearchStatus.COMPLETED
    assert len(research.calls) == 1


@pytest.mark.asyncio
async def test_commit_error_marks_research_failed(store, runner, lesson_service, monkeypatch):
    service = CourseService(store, lesson_service, runner, research_client=FakeResearch())
    course = await _course_with_research(store)

    async def write_refused(course_id, **fields):
        raise StorageError("Failed to complete research")

    monkeypatch.setattr(store, "complete_research", write_refused)
    with pytest.raises(StorageError):
        await service.run_research(course.id)

    assert (await store.get_research(course.id)).status == ResearchStatus.FAILED


@pytest.mark.asyncio
async def test_stalled_research_can_be_retried(store, runner, lesson_service):
    research = FakeResearch()
    gate = GenerationGate(store, research_stale_after_seconds=60)
    service = CourseService(store, lesson_service, runner, research_client=research, gate=gate)
    course = await _course_with_research(store)
    # worker claimed the document, then the process went away
    assert await store.claim_research(course.id) is True

    with pytest.raises(ValidationError):
        await service.retry_research("user-1", course.id)

    stored = store.research[course.id]
    store.research[course.id] = stored.model_copy(update={"updated_at": utcnow() - timedelta(seconds=120)})

    result = await service.retry_research("user-1", course.id)
    assert result["status"] == "pending"
    await runner.drain(timeout=5)

    assert (await store.get_research(course.id)).status == ResearchStatus.COMPLETED
    assert len(research.calls) == 1
