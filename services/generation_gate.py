"""
Generation gate: decides who may generate a lesson or research document.

The gate holds no state of its own. A claim is a conditional status update in
the content store and only the caller whose update matched may call the
provider. The commit is a second conditional update that refuses to overwrite
a ready lesson, so at most one generated result is ever persisted.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from models.course_models import Lesson, LessonStatus, ResearchStatus
from services.content_store import ContentStore, utcnow
from utils import settings

logger = logging.getLogger(__name__)


class GateDecision(str, Enum):
    PROCEED = "proceed"
    ALREADY_GENERATED = "already_generated"
    IN_PROGRESS = "in_progress"
    MISSING = "missing"
    FAILED = "failed"  # research only; re-opened by an explicit retry


class GenerationGate:
    """Claim / commit / release around the content store's conditional updates."""

    def __init__(
        self,
        store: ContentStore,
        stale_after_seconds: Optional[int] = None,
        research_stale_after_seconds: Optional[int] = None
    ):
        self.store = store
        self.stale_after = timedelta(
            seconds=stale_after_seconds if stale_after_seconds is not None else settings.LESSON_CLAIM_STALE_SECONDS
        )
        self.research_stale_after = timedelta(
            seconds=research_stale_after_seconds
            if research_stale_after_seconds is not None else settings.RESEARCH_CLAIM_STALE_SECONDS
        )

    def needs_generation(self, lesson: Lesson) -> bool:
        """True when a trigger could win a claim: pending, or a generating claim gone stale."""
        if lesson.status == LessonStatus.PENDING:
            return True
        if lesson.status == LessonStatus.GENERATING:
            started = lesson.generation_started_at
            return started is None or started < utcnow() - self.stale_after
        return False

    async def request_lesson_generation(self, lesson_id: int, claimed_at: Optional[datetime] = None) -> GateDecision:
        """
        Try to claim a lesson. On PROCEED the claim is stamped with claimed_at;
        pass the same value to release_lesson.
        """
        lesson = await self.store.get_lesson(lesson_id)
        if lesson is None:
            return GateDecision.MISSING
        if lesson.status == LessonStatus.READY:
            return GateDecision.ALREADY_GENERATED

        if await self.store.claim_lesson(lesson_id, stale_before=utcnow() - self.stale_after, claimed_at=claimed_at):
            logger.info(f"Claimed lesson {lesson_id} for generation")
            return GateDecision.PROCEED

        # Lost the claim: someone else is generating or has just finished.
        lesson = await self.store.get_lesson(lesson_id)
        if lesson is None:
            return GateDecision.MISSING
        if lesson.status == LessonStatus.READY:
            return GateDecision.ALREADY_GENERATED
        return GateDecision.IN_PROGRESS

    async def commit_lesson(self, lesson_id: int, content: str, citations: Optional[Dict[int, str]]) -> bool:
        """
        Persist generated content unless the lesson is already ready.

        Returns False when another writer got there first or the lesson no
        longer exists; the caller discards its result.
        """
        return await self.store.commit_lesson(lesson_id, content, citations)

    async def release_lesson(self, lesson_id: int, claimed_at: Optional[datetime] = None) -> None:
        """
        Hand a failed claim back so the next access retries. A claim that was
        re-taken by another worker since claimed_at is left alone.
        """
        if await self.store.release_lesson(lesson_id, claimed_at=claimed_at):
            logger.info(f"Released generation claim on lesson {lesson_id}")
        else:
            logger.debug(f"Claim on lesson {lesson_id} no longer held; nothing released")

    async def request_research(self, course_id: int) -> GateDecision:
        research = await self.store.get_research(course_id)
        if research is None:
            return GateDecision.MISSING
        if research.status == ResearchStatus.COMPLETED:
            return GateDecision.ALREADY_GENERATED
        if research.status == ResearchStatus.FAILED:
            return GateDecision.FAILED
        if research.status == ResearchStatus.IN_PROGRESS:
            return GateDecision.IN_PROGRESS

        if await self.store.claim_research(course_id):
            logger.info(f"Claimed research for course {course_id}")
            return GateDecision.PROCEED
        return GateDecision.IN_PROGRESS

    async def reopen_research(self, course_id: int) -> bool:
        """
        failed → pending for a retry. An in_progress document whose worker
        stopped touching it (crash, restart) is reopened the same way.
        """
        reopened = await self.store.reset_research(course_id, stale_before=utcnow() - self.research_stale_after)
        if reopened:
            logger.info(f"Reopened research for course {course_id}")
        return reopened
