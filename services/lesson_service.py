"""
Lesson service: on-demand lesson generation and the lesson-level CRUD around it.

Generation pipeline (always run in the background):
claim (gate) → read feedback + research → compose prompt → provider call →
reconcile citations → conditional commit (gate).
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from models.course_models import (
    Citation,
    Course,
    Lesson,
    LessonFeedback,
    LessonView,
    ResearchStatus,
    TopicExpansion,
)
from prompts.course_prompts import build_lesson_content_prompt, build_topic_expansion_prompt
from services.citation_reconciler import reconcile_citations
from services.content_store import ContentStore, utcnow
from services.generation_gate import GateDecision, GenerationGate
from utils import settings
from utils.background import BackgroundJobRunner
from utils.exceptions import NotFoundError, OwnershipError, ValidationError
from utils.model_config import ModelConfig

logger = logging.getLogger(__name__)


class GenerationOutcome(str, Enum):
    GENERATED = "generated"
    ALREADY_GENERATED = "already_generated"
    IN_PROGRESS = "in_progress"
    RACE_DISCARDED = "race_discarded"
    MISSING = "missing"


_DECISION_OUTCOMES = {
    GateDecision.ALREADY_GENERATED: GenerationOutcome.ALREADY_GENERATED,
    GateDecision.IN_PROGRESS: GenerationOutcome.IN_PROGRESS,
    GateDecision.MISSING: GenerationOutcome.MISSING,
}


class LessonService:
    """Serves lessons and generates their content exactly once"""

    def __init__(
        self,
        store: ContentStore,
        llm,
        runner: BackgroundJobRunner,
        gate: Optional[GenerationGate] = None,
        feedback_window: Optional[int] = None,
        max_research_chars: Optional[int] = None
    ):
        self.store = store
        self.llm = llm
        self.runner = runner
        self.gate = gate or GenerationGate(store)
        self.feedback_window = feedback_window if feedback_window is not None else settings.FEEDBACK_WINDOW
        self.max_research_chars = max_research_chars or settings.MAX_RESEARCH_CHARS

    # Generation
    def schedule_generation(self, lesson_id: int):
        """Fire-and-forget generation; the gate makes duplicate schedules harmless."""
        return self.runner.spawn(self.generate_lesson, lesson_id, name=f"generate-lesson-{lesson_id}")

    async def generate_lesson(self, lesson_id: int) -> GenerationOutcome:
        claimed_at = utcnow()
        decision = await self.gate.request_lesson_generation(lesson_id, claimed_at=claimed_at)
        if decision != GateDecision.PROCEED:
            logger.debug(f"Lesson {lesson_id} not generated: {decision.value}")
            return _DECISION_OUTCOMES[decision]

        try:
            lesson = await self.store.get_lesson(lesson_id)
            course = await self.store.get_course(lesson.course_id) if lesson else None
            if lesson is None or course is None:
                return GenerationOutcome.MISSING

            prompt, sources = await self._compose_prompt(lesson, course)
            content = await self.llm.generate(prompt, max_tokens=ModelConfig.max_tokens_for("lesson"))
        except Exception:
            await self.gate.release_lesson(lesson_id, claimed_at=claimed_at)
            raise

        citations = reconcile_citations(content, sources)
        if not await self.gate.commit_lesson(lesson_id, content, citations):
            if await self.store.get_lesson(lesson_id) is None:
                logger.info(f"Lesson {lesson_id} was deleted during generation; result dropped")
                return GenerationOutcome.MISSING
            logger.debug(f"Race discard: lesson {lesson_id} was completed by another writer")
            return GenerationOutcome.RACE_DISCARDED

        logger.info(
            f"Generated lesson {lesson_id} (session {lesson.session_number} of course {course.id}, "
            f"{len(citations or {})} citations)"
        )
        return GenerationOutcome.GENERATED

    async def _compose_prompt(self, lesson: Lesson, course: Course) -> Tuple[str, Optional[List[Citation]]]:
        """Prompt plus the source list its [N] markers refer to (None without research)"""
        recent = await self.store.get_recent_feedback(course.id, self.feedback_window)
        research = await self.store.get_research(course.id)

        research_content = None
        sources = None
        if research is not None and research.status == ResearchStatus.COMPLETED and research.content:
            research_content = research.content
            sources = research.citations or None

        prompt = build_lesson_content_prompt(
            lesson_title=lesson.title,
            session_number=lesson.session_number,
            course_title=course.title,
            total_lessons=course.total_lessons,
            feedback=[entry.feedback for entry in recent],
            research_content=research_content,
            research_citations=sources,
            max_research_chars=self.max_research_chars,
        )
        return prompt, sources

    # Reads
    async def get_owned_lesson(self, user_id: str, lesson_id: int) -> Tuple[Lesson, Course]:
        lesson = await self.store.get_lesson(lesson_id)
        if lesson is None:
            raise NotFoundError("Lesson not found", error_code="LESSON_NOT_FOUND", context={"lesson_id": lesson_id})

        course = await self.store.get_course(lesson.course_id)
        if course is None:
            raise NotFoundError("Lesson not found", error_code="LESSON_NOT_FOUND", context={"lesson_id": lesson_id})
        if course.user_id != user_id:
            raise OwnershipError(context={"lesson_id": lesson_id})
        return lesson, course

    async def get_lesson_view(self, user_id: str, lesson_id: int) -> LessonView:
        """
        Lesson as the client sees it.

        A lesson that is not ready comes back with is_pending=True and no
        content; generation is scheduled unless a live claim already covers
        it. The client polls.
        """
        lesson, course = await self.get_owned_lesson(user_id, lesson_id)

        if self.gate.needs_generation(lesson):
            self.schedule_generation(lesson_id)

        expansions = await self.store.get_expansions_by_lesson(lesson_id)
        progress = await self.store.get_lesson_progress(user_id, lesson_id)
        next_lesson = await self.store.get_next_lesson(course.id, lesson.session_number)
        latest_feedback = await self.store.get_latest_lesson_feedback(user_id, lesson_id)

        return LessonView(
            id=lesson.id,
            course_id=lesson.course_id,
            session_number=lesson.session_number,
            title=lesson.title,
            subtitle=lesson.subtitle,
            content=lesson.content if lesson.is_ready else None,
            status=lesson.status,
            is_pending=not lesson.is_ready,
            citations=lesson.citations if lesson.is_ready else None,
            estimated_minutes=lesson.estimated_minutes,
            user_feedback=latest_feedback.feedback if latest_feedback else None,
            is_completed=bool(progress and progress.is_completed),
            next_lesson_id=next_lesson.id if next_lesson else None,
            course=course,
            expansions=expansions,
        )

    # Writes
    async def complete_lesson(self, user_id: str, lesson_id: int) -> Dict[str, Any]:
        """Mark a lesson done; the course completes when every lesson is done."""
        lesson, course = await self.get_owned_lesson(user_id, lesson_id)
        await self.store.upsert_lesson_progress(user_id, lesson_id, course.id)

        completed = await self.store.count_completed_lessons(user_id, course.id)
        course_completed = course.is_completed
        if completed >= course.total_lessons and not course.is_completed:
            await self.store.update_course(course.id, is_completed=True)
            course_completed = True
            logger.info(f"Course {course.id} completed by {user_id}")

        return {
            "success": True,
            "completed_lessons": completed,
            "total_lessons": course.total_lessons,
            "course_completed": course_completed,
        }

    async def submit_feedback(self, user_id: str, lesson_id: int, feedback: str) -> LessonFeedback:
        """Append feedback; it shapes every lesson generated after this point."""
        text = (feedback or "").strip()
        if not text:
            raise ValidationError("Feedback cannot be empty", error_code="EMPTY_FEEDBACK")

        lesson, course = await self.get_owned_lesson(user_id, lesson_id)
        return await self.store.add_feedback(user_id, lesson_id, course.id, text)

    async def expand_topic(self, user_id: str, lesson_id: int, topic: str) -> TopicExpansion:
        text = (topic or "").strip()
        if not text:
            raise ValidationError("Topic is required", error_code="EMPTY_TOPIC")

        lesson, _ = await self.get_owned_lesson(user_id, lesson_id)
        if not lesson.is_ready:
            raise ValidationError(
                "Lesson content is still being generated",
                error_code="LESSON_NOT_READY",
                context={"lesson_id": lesson_id},
            )

        prompt = build_topic_expansion_prompt(lesson.title, text)
        content = await self.llm.generate(prompt, max_tokens=ModelConfig.max_tokens_for("expansion"))
        return await self.store.add_expansion(lesson_id, text, content)
