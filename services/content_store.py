"""
Content store: durable records for courses, lessons, progress, feedback,
topic expansions and research documents.

Two backends share one async interface:
- SupabaseContentStore for deployments
- MemoryContentStore for local runs and tests

Every state transition the generation gate relies on is a single conditional
update (compare-and-swap on a status column), so concurrent writers never
need an in-process lock.
"""

import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from clients.supabase_client import (
    COURSE_FIELDS,
    LESSON_FIELDS,
    RESEARCH_FIELDS,
    get_supabase,
    only_columns,
    serialize_for_supabase,
)
from models.course_models import (
    Citation,
    Course,
    CourseResearch,
    Lesson,
    LessonFeedback,
    LessonProgress,
    LessonStatus,
    ResearchStatus,
    TopicExpansion,
)
from utils.exceptions import StorageError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentStore:
    """Async storage interface used by the services."""

    # Courses
    async def create_course(self, user_id: str, title: str, description: Optional[str], total_lessons: int) -> Course:
        raise NotImplementedError

    async def get_course(self, course_id: int) -> Optional[Course]:
        raise NotImplementedError

    async def list_courses_by_user(self, user_id: str, include_archived: bool = False) -> List[Course]:
        raise NotImplementedError

    async def update_course(self, course_id: int, **fields: Any) -> Optional[Course]:
        raise NotImplementedError

    async def delete_course(self, course_id: int) -> bool:
        raise NotImplementedError

    # Lessons
    async def create_lessons(self, course_id: int, sessions: List[Dict[str, Any]]) -> List[Lesson]:
        raise NotImplementedError

    async def get_lesson(self, lesson_id: int) -> Optional[Lesson]:
        raise NotImplementedError

    async def get_lessons_by_course(self, course_id: int) -> List[Lesson]:
        raise NotImplementedError

    async def get_next_lesson(self, course_id: int, session_number: int) -> Optional[Lesson]:
        raise NotImplementedError

    async def claim_lesson(self, lesson_id: int, stale_before: datetime, claimed_at: Optional[datetime] = None) -> bool:
        """
        pending → generating, or re-take a generating claim started before
        stale_before. The claim is stamped with claimed_at (default: now).
        """
        raise NotImplementedError

    async def commit_lesson(self, lesson_id: int, content: str, citations: Optional[Dict[int, str]]) -> bool:
        """Write content only while the lesson is not ready. False means someone else won."""
        raise NotImplementedError

    async def release_lesson(self, lesson_id: int, claimed_at: Optional[datetime] = None) -> bool:
        """
        generating → pending after a failed attempt. With claimed_at, only the
        claim stamped with that time is released.
        """
        raise NotImplementedError

    # Progress
    async def get_lesson_progress(self, user_id: str, lesson_id: int) -> Optional[LessonProgress]:
        raise NotImplementedError

    async def get_progress_by_course(self, user_id: str, course_id: int) -> List[LessonProgress]:
        raise NotImplementedError

    async def upsert_lesson_progress(self, user_id: str, lesson_id: int, course_id: int) -> LessonProgress:
        raise NotImplementedError

    async def count_completed_lessons(self, user_id: str, course_id: int) -> int:
        raise NotImplementedError

    # Feedback
    async def add_feedback(self, user_id: str, lesson_id: int, course_id: int, feedback: str) -> LessonFeedback:
        raise NotImplementedError

    async def get_recent_feedback(self, course_id: int, limit: int) -> List[LessonFeedback]:
        """The `limit` most recent entries for a course, oldest first."""
        raise NotImplementedError

    async def get_latest_lesson_feedback(self, user_id: str, lesson_id: int) -> Optional[LessonFeedback]:
        raise NotImplementedError

    # Expansions
    async def add_expansion(self, lesson_id: int, topic: str, content: str) -> TopicExpansion:
        raise NotImplementedError

    async def get_expansions_by_lesson(self, lesson_id: int) -> List[TopicExpansion]:
        raise NotImplementedError

    # Research
    async def create_research(self, course_id: int, query: str) -> CourseResearch:
        raise NotImplementedError

    async def get_research(self, course_id: int) -> Optional[CourseResearch]:
        raise NotImplementedError

    async def claim_research(self, course_id: int) -> bool:
        """pending → in_progress."""
        raise NotImplementedError

    async def complete_research(
        self,
        course_id: int,
        content: str,
        citations: List[Citation],
        confidence: float,
        token_count: Optional[int] = None,
        search_count: Optional[int] = None,
    ) -> bool:
        raise NotImplementedError

    async def fail_research(self, course_id: int, error: str) -> bool:
        raise NotImplementedError

    async def reset_research(self, course_id: int, stale_before: Optional[datetime] = None) -> bool:
        """
        failed → pending, for a user-triggered retry. With stale_before, an
        in_progress document last touched before then is reset too.
        """
        raise NotImplementedError


class MemoryContentStore(ContentStore):
    """
    Process-local store. Each method runs without awaiting between its read
    and its write, which makes every conditional update atomic on the loop.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.courses: Dict[int, Course] = {}
        self.lessons: Dict[int, Lesson] = {}
        self.progress: Dict[tuple, LessonProgress] = {}
        self.feedback: List[LessonFeedback] = []
        self.expansions: List[TopicExpansion] = []
        self.research: Dict[int, CourseResearch] = {}
        self.lesson_commits: Dict[int, int] = {}

    # Courses
    async def create_course(self, user_id, title, description, total_lessons):
        now = utcnow()
        course = Course(
            id=next(self._ids), user_id=user_id, title=title, description=description,
            total_lessons=total_lessons, created_at=now, updated_at=now,
        )
        self.courses[course.id] = course
        return course.model_copy()

    async def get_course(self, course_id):
        course = self.courses.get(course_id)
        return course.model_copy() if course else None

    async def list_courses_by_user(self, user_id, include_archived=False):
        courses = [
            c for c in self.courses.values()
            if c.user_id == user_id and (include_archived or not c.is_archived)
        ]
        courses.sort(key=lambda c: (c.updated_at, c.id), reverse=True)
        return [c.model_copy() for c in courses]

    async def update_course(self, course_id, **fields):
        course = self.courses.get(course_id)
        if course is None:
            return None
        updated = course.model_copy(update={**fields, "updated_at": utcnow()})
        self.courses[course_id] = updated
        return updated.model_copy()

    async def delete_course(self, course_id):
        if self.courses.pop(course_id, None) is None:
            return False
        lesson_ids = {l.id for l in self.lessons.values() if l.course_id == course_id}
        for lesson_id in lesson_ids:
            del self.lessons[lesson_id]
        self.progress = {k: p for k, p in self.progress.items() if p.course_id != course_id}
        self.feedback = [f for f in self.feedback if f.course_id != course_id]
        self.expansions = [e for e in self.expansions if e.lesson_id not in lesson_ids]
        self.research.pop(course_id, None)
        return True

    # Lessons
    async def create_lessons(self, course_id, sessions):
        created = []
        now = utcnow()
        for session in sessions:
            lesson = Lesson(
                id=next(self._ids),
                course_id=course_id,
                session_number=session["session_number"],
                title=session["title"],
                subtitle=session.get("subtitle"),
                estimated_minutes=session.get("estimated_minutes", 5),
                status=LessonStatus.PENDING,
                created_at=now,
            )
            self.lessons[lesson.id] = lesson
            created.append(lesson.model_copy())
        return created

    async def get_lesson(self, lesson_id):
        lesson = self.lessons.get(lesson_id)
        return lesson.model_copy() if lesson else None

    async def get_lessons_by_course(self, course_id):
        lessons = [l for l in self.lessons.values() if l.course_id == course_id]
        lessons.sort(key=lambda l: l.session_number)
        return [l.model_copy() for l in lessons]

    async def get_next_lesson(self, course_id, session_number):
        later = [
            l for l in self.lessons.values()
            if l.course_id == course_id and l.session_number > session_number
        ]
        if not later:
            return None
        return min(later, key=lambda l: l.session_number).model_copy()

    async def claim_lesson(self, lesson_id, stale_before, claimed_at=None):
        lesson = self.lessons.get(lesson_id)
        if lesson is None:
            return False
        claimable = lesson.status == LessonStatus.PENDING or (
            lesson.status == LessonStatus.GENERATING
            and lesson.generation_started_at is not None
            and lesson.generation_started_at < stale_before
        )
        if not claimable:
            return False
        self.lessons[lesson_id] = lesson.model_copy(update={
            "status": LessonStatus.GENERATING,
            "generation_started_at": claimed_at or utcnow(),
        })
        return True

    async def commit_lesson(self, lesson_id, content, citations):
        lesson = self.lessons.get(lesson_id)
        if lesson is None or lesson.status == LessonStatus.READY:
            return False
        self.lessons[lesson_id] = lesson.model_copy(update={
            "status": LessonStatus.READY,
            "content": content,
            "citations": citations,
            "generation_started_at": None,
        })
        self.lesson_commits[lesson_id] = self.lesson_commits.get(lesson_id, 0) + 1
        return True

    async def release_lesson(self, lesson_id, claimed_at=None):
        lesson = self.lessons.get(lesson_id)
        if lesson is None or lesson.status != LessonStatus.GENERATING:
            return False
        if claimed_at is not None and lesson.generation_started_at != claimed_at:
            return False
        self.lessons[lesson_id] = lesson.model_copy(update={
            "status": LessonStatus.PENDING,
            "generation_started_at": None,
        })
        return True

    # Progress
    async def get_lesson_progress(self, user_id, lesson_id):
        progress = self.progress.get((user_id, lesson_id))
        return progress.model_copy() if progress else None

    async def get_progress_by_course(self, user_id, course_id):
        return [
            p.model_copy() for p in self.progress.values()
            if p.user_id == user_id and p.course_id == course_id
        ]

    async def upsert_lesson_progress(self, user_id, lesson_id, course_id):
        progress = LessonProgress(
            user_id=user_id, lesson_id=lesson_id, course_id=course_id,
            is_completed=True, completed_at=utcnow(),
        )
        self.progress[(user_id, lesson_id)] = progress
        return progress.model_copy()

    async def count_completed_lessons(self, user_id, course_id):
        return sum(
            1 for p in self.progress.values()
            if p.user_id == user_id and p.course_id == course_id and p.is_completed
        )

    # Feedback
    async def add_feedback(self, user_id, lesson_id, course_id, feedback):
        entry = LessonFeedback(
            id=next(self._ids), user_id=user_id, lesson_id=lesson_id,
            course_id=course_id, feedback=feedback, created_at=utcnow(),
        )
        self.feedback.append(entry)
        return entry.model_copy()

    async def get_recent_feedback(self, course_id, limit):
        entries = [f for f in self.feedback if f.course_id == course_id]
        entries.sort(key=lambda f: (f.created_at, f.id))
        return [f.model_copy() for f in entries[-limit:]] if limit > 0 else []

    async def get_latest_lesson_feedback(self, user_id, lesson_id):
        entries = [f for f in self.feedback if f.user_id == user_id and f.lesson_id == lesson_id]
        if not entries:
            return None
        return max(entries, key=lambda f: (f.created_at, f.id)).model_copy()

    # Expansions
    async def add_expansion(self, lesson_id, topic, content):
        expansion = TopicExpansion(
            id=next(self._ids), lesson_id=lesson_id, topic=topic,
            content=content, created_at=utcnow(),
        )
        self.expansions.append(expansion)
        return expansion.model_copy()

    async def get_expansions_by_lesson(self, lesson_id):
        return [e.model_copy() for e in self.expansions if e.lesson_id == lesson_id]

    # Research
    async def create_research(self, course_id, query):
        now = utcnow()
        research = CourseResearch(
            id=next(self._ids), course_id=course_id, query=query,
            status=ResearchStatus.PENDING, created_at=now, updated_at=now,
        )
        self.research[course_id] = research
        return research.model_copy()

    async def get_research(self, course_id):
        research = self.research.get(course_id)
        return research.model_copy() if research else None

    def _transition_research(self, course_id, expected: ResearchStatus, **fields) -> bool:
        research = self.research.get(course_id)
        if research is None or research.status != expected:
            return False
        self.research[course_id] = research.model_copy(update={**fields, "updated_at": utcnow()})
        return True

    async def claim_research(self, course_id):
        return self._transition_research(
            course_id, ResearchStatus.PENDING, status=ResearchStatus.IN_PROGRESS, error=None,
        )

    async def complete_research(self, course_id, content, citations, confidence, token_count=None, search_count=None):
        return self._transition_research(
            course_id, ResearchStatus.IN_PROGRESS,
            status=ResearchStatus.COMPLETED, content=content, citations=list(citations),
            confidence=confidence, token_count=token_count, search_count=search_count,
        )

    async def fail_research(self, course_id, error):
        return self._transition_research(
            course_id, ResearchStatus.IN_PROGRESS, status=ResearchStatus.FAILED, error=error,
        )

    async def reset_research(self, course_id, stale_before=None):
        if self._transition_research(course_id, ResearchStatus.FAILED, status=ResearchStatus.PENDING, error=None):
            return True
        research = self.research.get(course_id)
        if stale_before is None or research is None or research.updated_at is None:
            return False
        if research.updated_at >= stale_before:
            return False
        return self._transition_research(
            course_id, ResearchStatus.IN_PROGRESS, status=ResearchStatus.PENDING, error=None,
        )


class SupabaseContentStore(ContentStore):
    """Store backed by Supabase (PostgREST). Conditional updates use status filters."""

    def __init__(self, client=None):
        self._client = client

    async def _table(self, name: str):
        if self._client is None:
            self._client = await get_supabase()
        return self._client.table(name)

    @staticmethod
    async def _execute(query, action: str):
        try:
            return await query.execute()
        except Exception as e:
            logger.error(f"Supabase {action} failed: {e}")
            raise StorageError(f"Failed to {action}", context={"reason": str(e)}) from e

    # Courses
    async def create_course(self, user_id, title, description, total_lessons):
        data = only_columns({
            "user_id": user_id, "title": title, "description": description,
            "total_lessons": total_lessons, "is_completed": False, "is_archived": False,
        }, COURSE_FIELDS)
        response = await self._execute((await self._table("courses")).insert(data), "create course")
        if not response.data:
            raise StorageError("Course insert returned no row")
        return Course(**response.data[0])

    async def get_course(self, course_id):
        query = (await self._table("courses")).select("*").eq("id", course_id)
        response = await self._execute(query, "get course")
        return Course(**response.data[0]) if response.data else None

    async def list_courses_by_user(self, user_id, include_archived=False):
        query = (await self._table("courses")).select("*").eq("user_id", user_id)
        if not include_archived:
            query = query.eq("is_archived", False)
        query = query.order("updated_at", desc=True)
        response = await self._execute(query, "list courses")
        return [Course(**row) for row in response.data or []]

    async def update_course(self, course_id, **fields):
        data = only_columns({**fields, "updated_at": utcnow()}, COURSE_FIELDS)
        query = (await self._table("courses")).update(data).eq("id", course_id)
        response = await self._execute(query, "update course")
        return Course(**response.data[0]) if response.data else None

    async def delete_course(self, course_id):
        # lessons, progress, feedback, expansions and research cascade in the schema
        query = (await self._table("courses")).delete().eq("id", course_id)
        response = await self._execute(query, "delete course")
        return bool(response.data)

    # Lessons
    async def create_lessons(self, course_id, sessions):
        rows = [
            only_columns({
                "course_id": course_id,
                "session_number": s["session_number"],
                "title": s["title"],
                "subtitle": s.get("subtitle"),
                "estimated_minutes": s.get("estimated_minutes", 5),
                "status": LessonStatus.PENDING,
            }, LESSON_FIELDS)
            for s in sessions
        ]
        response = await self._execute((await self._table("lessons")).insert(rows), "create lessons")
        lessons = [Lesson(**row) for row in response.data or []]
        return sorted(lessons, key=lambda l: l.session_number)

    async def get_lesson(self, lesson_id):
        query = (await self._table("lessons")).select("*").eq("id", lesson_id)
        response = await self._execute(query, "get lesson")
        return Lesson(**response.data[0]) if response.data else None

    async def get_lessons_by_course(self, course_id):
        query = (await self._table("lessons")).select("*").eq("course_id", course_id).order("session_number")
        response = await self._execute(query, "list lessons")
        return [Lesson(**row) for row in response.data or []]

    async def get_next_lesson(self, course_id, session_number):
        query = (await self._table("lessons")).select("*") \
            .eq("course_id", course_id) \
            .gt("session_number", session_number) \
            .order("session_number") \
            .limit(1)
        response = await self._execute(query, "get next lesson")
        return Lesson(**response.data[0]) if response.data else None

    async def claim_lesson(self, lesson_id, stale_before, claimed_at=None):
        claim = serialize_for_supabase({
            "status": LessonStatus.GENERATING,
            "generation_started_at": claimed_at or utcnow(),
        })
        query = (await self._table("lessons")).update(claim) \
            .eq("id", lesson_id) \
            .eq("status", LessonStatus.PENDING.value)
        response = await self._execute(query, "claim lesson")
        if response.data:
            return True

        query = (await self._table("lessons")).update(claim) \
            .eq("id", lesson_id) \
            .eq("status", LessonStatus.GENERATING.value) \
            .lt("generation_started_at", stale_before.isoformat())
        response = await self._execute(query, "re-claim stale lesson")
        return bool(response.data)

    async def commit_lesson(self, lesson_id, content, citations):
        data = serialize_for_supabase({
            "status": LessonStatus.READY,
            "content": content,
            "citations": citations,
            "generation_started_at": None,
        })
        query = (await self._table("lessons")).update(data) \
            .eq("id", lesson_id) \
            .neq("status", LessonStatus.READY.value)
        response = await self._execute(query, "commit lesson")
        return bool(response.data)

    async def release_lesson(self, lesson_id, claimed_at=None):
        data = {"status": LessonStatus.PENDING.value, "generation_started_at": None}
        query = (await self._table("lessons")).update(data) \
            .eq("id", lesson_id) \
            .eq("status", LessonStatus.GENERATING.value)
        if claimed_at is not None:
            query = query.eq("generation_started_at", claimed_at.isoformat())
        response = await self._execute(query, "release lesson")
        return bool(response.data)

    # Progress
    async def get_lesson_progress(self, user_id, lesson_id):
        query = (await self._table("lesson_progress")).select("*") \
            .eq("user_id", user_id).eq("lesson_id", lesson_id)
        response = await self._execute(query, "get lesson progress")
        return LessonProgress(**response.data[0]) if response.data else None

    async def get_progress_by_course(self, user_id, course_id):
        query = (await self._table("lesson_progress")).select("*") \
            .eq("user_id", user_id).eq("course_id", course_id)
        response = await self._execute(query, "list progress")
        return [LessonProgress(**row) for row in response.data or []]

    async def upsert_lesson_progress(self, user_id, lesson_id, course_id):
        data = serialize_for_supabase({
            "user_id": user_id, "lesson_id": lesson_id, "course_id": course_id,
            "is_completed": True, "completed_at": utcnow(),
        })
        query = (await self._table("lesson_progress")).upsert(data, on_conflict="user_id,lesson_id")
        response = await self._execute(query, "upsert lesson progress")
        if not response.data:
            raise StorageError("Progress upsert returned no row")
        return LessonProgress(**response.data[0])

    async def count_completed_lessons(self, user_id, course_id):
        query = (await self._table("lesson_progress")).select("lesson_id", count="exact") \
            .eq("user_id", user_id).eq("course_id", course_id).eq("is_completed", True)
        response = await self._execute(query, "count completed lessons")
        return response.count or 0

    # Feedback
    async def add_feedback(self, user_id, lesson_id, course_id, feedback):
        data = {"user_id": user_id, "lesson_id": lesson_id, "course_id": course_id, "feedback": feedback}
        response = await self._execute((await self._table("lesson_feedback")).insert(data), "add feedback")
        if not response.data:
            raise StorageError("Feedback insert returned no row")
        return LessonFeedback(**response.data[0])

    async def get_recent_feedback(self, course_id, limit):
        if limit <= 0:
            return []
        query = (await self._table("lesson_feedback")).select("*") \
            .eq("course_id", course_id) \
            .order("created_at", desc=True) \
            .order("id", desc=True) \
            .limit(limit)
        response = await self._execute(query, "get recent feedback")
        return [LessonFeedback(**row) for row in reversed(response.data or [])]

    async def get_latest_lesson_feedback(self, user_id, lesson_id):
        query = (await self._table("lesson_feedback")).select("*") \
            .eq("user_id", user_id).eq("lesson_id", lesson_id) \
            .order("created_at", desc=True) \
            .order("id", desc=True) \
            .limit(1)
        response = await self._execute(query, "get lesson feedback")
        return LessonFeedback(**response.data[0]) if response.data else None

    # Expansions
    async def add_expansion(self, lesson_id, topic, content):
        data = {"lesson_id": lesson_id, "topic": topic, "content": content}
        response = await self._execute((await self._table("topic_expansions")).insert(data), "add expansion")
        if not response.data:
            raise StorageError("Expansion insert returned no row")
        return TopicExpansion(**response.data[0])

    async def get_expansions_by_lesson(self, lesson_id):
        query = (await self._table("topic_expansions")).select("*") \
            .eq("lesson_id", lesson_id).order("created_at")
        response = await self._execute(query, "list expansions")
        return [TopicExpansion(**row) for row in response.data or []]

    # Research
    async def create_research(self, course_id, query):
        data = {"course_id": course_id, "query": query, "status": ResearchStatus.PENDING.value, "content": ""}
        response = await self._execute((await self._table("course_research")).insert(data), "create research")
        if not response.data:
            raise StorageError("Research insert returned no row")
        return CourseResearch(**response.data[0])

    async def get_research(self, course_id):
        query = (await self._table("course_research")).select("*").eq("course_id", course_id).limit(1)
        response = await self._execute(query, "get research")
        return CourseResearch(**response.data[0]) if response.data else None

    async def _transition_research(self, course_id, expected: ResearchStatus, fields: Dict[str, Any], action: str) -> bool:
        data = only_columns({**fields, "updated_at": utcnow()}, RESEARCH_FIELDS)
        query = (await self._table("course_research")).update(data) \
            .eq("course_id", course_id) \
            .eq("status", expected.value)
        response = await self._execute(query, action)
        return bool(response.data)

    async def claim_research(self, course_id):
        return await self._transition_research(
            course_id, ResearchStatus.PENDING,
            {"status": ResearchStatus.IN_PROGRESS, "error": None}, "claim research",
        )

    async def complete_research(self, course_id, content, citations, confidence, token_count=None, search_count=None):
        return await self._transition_research(
            course_id, ResearchStatus.IN_PROGRESS,
            {
                "status": ResearchStatus.COMPLETED, "content": content,
                "citations": [c.model_dump() for c in citations], "confidence": confidence,
                "token_count": token_count, "search_count": search_count,
            },
            "complete research",
        )

    async def fail_research(self, course_id, error):
        return await self._transition_research(
            course_id, ResearchStatus.IN_PROGRESS,
            {"status": ResearchStatus.FAILED, "error": error}, "fail research",
        )

    async def reset_research(self, course_id, stale_before=None):
        reset = {"status": ResearchStatus.PENDING, "error": None}
        if await self._transition_research(course_id, ResearchStatus.FAILED, reset, "reset research"):
            return True
        if stale_before is None:
            return False

        data = only_columns({**reset, "updated_at": utcnow()}, RESEARCH_FIELDS)
        query = (await self._table("course_research")).update(data) \
            .eq("course_id", course_id) \
            .eq("status", ResearchStatus.IN_PROGRESS.value) \
            .lt("updated_at", stale_before.isoformat())
        response = await self._execute(query, "reset stale research")
        return bool(response.data)


def create_content_store(backend: str) -> ContentStore:
    """Pick the store backend by name ("supabase" or "memory")."""
    if backend == "memory":
        logger.warning("Using in-memory content store; data is lost on restart")
        return MemoryContentStore()
    if backend == "supabase":
        return SupabaseContentStore()
    raise ValueError(f"Unknown content store backend: {backend}")
