"""
Pydantic models for courses, lessons and the outline conversation, with
field validation kept close to the API payloads.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Literal, Union
from datetime import datetime
from enum import Enum


# Enums for type safety and validation
class LessonStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"


class ResearchStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class NegotiationState(str, Enum):
    AWAITING_TOPIC = "awaiting_topic"
    AWAITING_APPROVAL = "awaiting_approval"
    BUILT = "built"


# Stored entities
class Course(BaseModel):
    """A learner's course, owned by exactly one user"""
    id: int
    user_id: str
    title: str
    description: Optional[str] = None
    total_lessons: int = 0
    is_completed: bool = False
    is_archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Lesson(BaseModel):
    """One session of a course. Content stays empty until status is READY."""
    id: int
    course_id: int
    session_number: int
    title: str
    subtitle: Optional[str] = None
    content: Optional[str] = None
    status: LessonStatus = LessonStatus.PENDING
    citations: Optional[Dict[int, str]] = None  # marker number -> source url
    estimated_minutes: int = 5
    generation_started_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        return self.status == LessonStatus.READY


class LessonProgress(BaseModel):
    user_id: str
    lesson_id: int
    course_id: int
    is_completed: bool = False
    completed_at: Optional[datetime] = None


class LessonFeedback(BaseModel):
    id: Optional[int] = None
    user_id: str
    lesson_id: int
    course_id: int
    feedback: str
    created_at: Optional[datetime] = None


class TopicExpansion(BaseModel):
    id: Optional[int] = None
    lesson_id: int
    topic: str
    content: str
    created_at: Optional[datetime] = None


class Citation(BaseModel):
    """A research source; index is its 1-based position in the list"""
    index: int
    title: str = ""
    url: str
    domain: str = ""
    snippet: str = ""


class CourseResearch(BaseModel):
    id: Optional[int] = None
    course_id: int
    query: str = ""
    status: ResearchStatus = ResearchStatus.PENDING
    content: str = ""
    citations: List[Citation] = []
    confidence: Optional[float] = None
    token_count: Optional[int] = None
    search_count: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ResearchResult(BaseModel):
    """What the deep-research provider hands back"""
    content: str
    citations: List[Citation] = []
    token_count: Optional[int] = None
    search_count: Optional[int] = None


# Outline Models
class OutlineSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_number: int = Field(..., alias="sessionNumber", ge=1)
    title: str = Field(..., min_length=1)
    subtitle: Optional[str] = None


class Outline(BaseModel):
    """Proposed course shape before anything is persisted"""
    title: str = Field(..., min_length=1)
    description: str
    sessions: List[OutlineSession] = Field(..., min_length=1, max_length=20)


class ConversationTurn(BaseModel):
    """A clarifying question and the learner's answer to it"""
    question: str
    answer: Optional[str] = None


class OutlineConversation(BaseModel):
    """Negotiation state carried between turns"""
    topic: str
    state: NegotiationState = NegotiationState.AWAITING_TOPIC
    transcript: List[ConversationTurn] = []
    outline: Optional[Outline] = None


# Request Models
class PreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    topic: str = Field(..., min_length=1, max_length=500)
    feedback: Optional[str] = None
    previous_outline: Optional[Outline] = Field(None, alias="previousOutline")
    conversation: List[ConversationTurn] = []


class BuildCourseRequest(BaseModel):
    """The outline is validated by the negotiator, not by the schema"""
    outline: Dict


class FeedbackRequest(BaseModel):
    feedback: str = Field(..., min_length=1, max_length=2000)


class ExpandRequest(BaseModel):
    topic: str = Field(..., min_length=1, max_length=300)


# Response Models
class QuestionPayload(BaseModel):
    type: Literal["question"] = "question"
    question: str


class OutlinePayload(Outline):
    type: Literal["outline"] = "outline"


PreviewResponse = Union[QuestionPayload, OutlinePayload]


class LessonView(BaseModel):
    """Lesson as returned to the client; poll while is_pending is true"""
    id: int
    course_id: int
    session_number: int
    title: str
    subtitle: Optional[str] = None
    content: Optional[str] = None
    status: LessonStatus
    is_pending: bool
    citations: Optional[Dict[int, str]] = None
    estimated_minutes: int = 5
    user_feedback: Optional[str] = None
    is_completed: bool = False
    next_lesson_id: Optional[int] = None
    course: Course
    expansions: List[TopicExpansion] = []
