"""
Course service.
Builds courses from approved outlines, serves course listings and details,
and runs the per-course deep research document.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from models.course_models import Citation, Course, CourseResearch, ResearchStatus
from prompts.course_prompts import build_research_query
from services.content_store import ContentStore
from services.generation_gate import GateDecision, GenerationGate
from services.lesson_service import LessonService
from services.outline_negotiator import OutlineNegotiator
from utils.background import BackgroundJobRunner
from utils.exceptions import NotFoundError, OwnershipError, ValidationError

logger = logging.getLogger(__name__)

# Citation count and source diversity at which confidence saturates
CONFIDENCE_CITATION_CAP = 10
CONFIDENCE_DOMAIN_CAP = 5


def research_confidence(citations: Sequence[Citation]) -> float:
    """
    Score 0..1 for a research document.

    Half from how many sources back it (capped at 10), half from how many
    distinct domains they span (capped at 5).
    """
    if not citations:
        return 0.0
    domains = {c.domain or c.url for c in citations}
    coverage = min(len(citations), CONFIDENCE_CITATION_CAP) / CONFIDENCE_CITATION_CAP
    diversity = min(len(domains), CONFIDENCE_DOMAIN_CAP) / CONFIDENCE_DOMAIN_CAP
    return round(0.5 * coverage + 0.5 * diversity, 2)


def research_summary(research: Optional[CourseResearch]) -> Optional[Dict[str, Any]]:
    if research is None:
        return None
    return {
        "status": research.status.value,
        "confidence": research.confidence,
        "citation_count": len(research.citations),
        "error": research.error,
        "updated_at": research.updated_at,
    }


class CourseService:
    """Course lifecycle: build, list, archive, delete, research"""

    def __init__(
        self,
        store: ContentStore,
        lesson_service: LessonService,
        runner: BackgroundJobRunner,
        research_client=None,
        gate: Optional[GenerationGate] = None
    ):
        self.store = store
        self.lesson_service = lesson_service
        self.runner = runner
        self.research_client = research_client
        self.gate = gate or lesson_service.gate

    @property
    def research_enabled(self) -> bool:
        return self.research_client is not None

    async def get_owned_course(self, user_id: str, course_id: int) -> Course:
        course = await self.store.get_course(course_id)
        if course is None:
            raise NotFoundError("Course not found", error_code="COURSE_NOT_FOUND", context={"course_id": course_id})
        if course.user_id != user_id:
            raise OwnershipError(context={"course_id": course_id})
        return course

    # Build
    async def build_course(self, user_id: str, raw_outline: Any) -> Course:
        """
        Persist an approved outline as a course with pending lessons.

        Nothing is generated inline: the first lesson and the research
        document are spawned and the course is returned immediately.
        """
        outline = OutlineNegotiator.validate_outline_for_build(raw_outline)
        logger.info(f"Building course from outline: {outline.title}")

        course = await self.store.create_course(
            user_id=user_id,
            title=outline.title,
            description=outline.description,
            total_lessons=len(outline.sessions),
        )

        sessions = [
            {"session_number": s.session_number, "title": s.title, "subtitle": s.subtitle}
            for s in outline.sessions
        ]
        try:
            lessons = await self.store.create_lessons(course.id, sessions)
        except Exception:
            # No course without its lessons
            await self.store.delete_course(course.id)
            raise

        if self.research_enabled:
            query = build_research_query(course.title, course.description, [s.title for s in outline.sessions])
            await self.store.create_research(course.id, query["topic"])
            self.schedule_research(course.id)

        self.lesson_service.schedule_generation(lessons[0].id)
        return course

    # Reads
    async def list_courses(self, user_id: str, include_archived: bool = False) -> List[Dict[str, Any]]:
        courses = await self.store.list_courses_by_user(user_id, include_archived=include_archived)
        results = []
        for course in courses:
            completed = await self.store.count_completed_lessons(user_id, course.id)
            results.append({**course.model_dump(), "completed_lessons": completed})
        return results

    async def get_course_detail(self, user_id: str, course_id: int) -> Dict[str, Any]:
        course = await self.get_owned_course(user_id, course_id)
        lessons = await self.store.get_lessons_by_course(course_id)
        progress = await self.store.get_progress_by_course(user_id, course_id)
        completed_ids = {p.lesson_id for p in progress if p.is_completed}
        research = await self.store.get_research(course_id)

        return {
            "course": course,
            "lessons": [
                {
                    "id": lesson.id,
                    "session_number": lesson.session_number,
                    "title": lesson.title,
                    "subtitle": lesson.subtitle,
                    "estimated_minutes": lesson.estimated_minutes,
                    "status": lesson.status.value,
                    "is_completed": lesson.id in completed_ids,
                }
                for lesson in lessons
            ],
            "completed_lessons": len(completed_ids),
            "research": research_summary(research),
        }

    # Writes
    async def set_archived(self, user_id: str, course_id: int, archived: bool) -> Course:
        await self.get_owned_course(user_id, course_id)
        course = await self.store.update_course(course_id, is_archived=archived)
        if course is None:
            raise NotFoundError("Course not found", error_code="COURSE_NOT_FOUND", context={"course_id": course_id})
        logger.info(f"Course {course_id} {'archived' if archived else 'unarchived'}")
        return course

    async def delete_course(self, user_id: str, course_id: int) -> None:
        """Delete a course and everything under it. In-flight generation commits become no-ops."""
        await self.get_owned_course(user_id, course_id)
        await self.store.delete_course(course_id)
        logger.info(f"Deleted course {course_id}")

    # Research
    async def get_research(self, user_id: str, course_id: int) -> Dict[str, Any]:
        await self.get_owned_course(user_id, course_id)
        research = await self.store.get_research(course_id)
        if research is None:
            raise NotFoundError("No research for this course", error_code="RESEARCH_NOT_FOUND", context={"course_id": course_id})

        return {
            **research_summary(research),
            "query": research.query,
            "citations": [c.model_dump() for c in research.citations],
            "token_count": research.token_count,
            "search_count": research.search_count,
        }

    async def retry_research(self, user_id: str, course_id: int) -> Dict[str, Any]:
        """User-triggered retry of a failed (or stalled) research document."""
        course = await self.get_owned_course(user_id, course_id)
        if not self.research_enabled:
            raise ValidationError("Deep research is not configured", error_code="RESEARCH_DISABLED")

        research = await self.store.get_research(course_id)
        if research is None:
            # Course was built while research was disabled
            lessons = await self.store.get_lessons_by_course(course_id)
            query = build_research_query(course.title, course.description, [l.title for l in lessons])
            await self.store.create_research(course_id, query["topic"])
        elif not await self.gate.reopen_research(course_id):
            raise ValidationError(
                "Only failed or stalled research can be retried",
                error_code="RESEARCH_NOT_RETRYABLE",
                context={"status": research.status.value},
            )

        self.schedule_research(course_id)
        return {"success": True, "status": "pending"}

    def schedule_research(self, course_id: int):
        return self.runner.spawn(self.run_research, course_id, name=f"research-course-{course_id}")

    async def run_research(self, course_id: int) -> Optional[ResearchStatus]:
        """
        Produce the research document for a course, once.

        Provider failures are recorded on the document (status=failed) rather
        than raised. Any other error after the claim also marks the document
        failed, then propagates; nothing retries automatically.
        """
        decision = await self.gate.request_research(course_id)
        if decision != GateDecision.PROCEED:
            logger.debug(f"Research for course {course_id} not started: {decision.value}")
            return None

        try:
            course = await self.store.get_course(course_id)
            if course is None:
                return None
            lessons = await self.store.get_lessons_by_course(course_id)
            query = build_research_query(course.title, course.description, [l.title for l in lessons])

            try:
                result = await self.research_client.research(query["topic"], query["course_context"])
            except Exception as e:
                logger.exception(f"Research failed for course {course_id}")
                await self.store.fail_research(course_id, str(e))
                return ResearchStatus.FAILED

            confidence = research_confidence(result.citations)
            await self.store.complete_research(
                course_id,
                content=result.content,
                citations=result.citations,
                confidence=confidence,
                token_count=result.token_count,
                search_count=result.search_count,
            )
        except Exception as e:
            await self.store.fail_research(course_id, str(e))
            raise

        logger.info(f"Research completed for course {course_id}: {len(result.citations)} citations, confidence {confidence}")
        return ResearchStatus.COMPLETED
