"""
FastAPI routes for courses and lessons.
The user id arrives in the X-User-Id header, set by the upstream auth layer.
"""

import logging
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, Header, Request

from models.course_models import (
    BuildCourseRequest,
    ExpandRequest,
    FeedbackRequest,
    LessonView,
    OutlinePayload,
    PreviewRequest,
    QuestionPayload,
)
from services.course_service import CourseService
from services.lesson_service import LessonService
from services.outline_negotiator import OutlineNegotiator
from utils.exceptions import AuthenticationError
from utils.model_config import DEFAULT_MODEL, MODEL_CONFIGS

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["courses"])


# Dependencies
async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError()
    return x_user_id.strip()


def get_course_service(request: Request) -> CourseService:
    return request.app.state.course_service


def get_lesson_service(request: Request) -> LessonService:
    return request.app.state.lesson_service


def get_negotiator(request: Request) -> OutlineNegotiator:
    return request.app.state.negotiator


# Course Endpoints
@router.get("/courses")
async def list_courses(
    include_archived: bool = False,
    user_id: str = Depends(get_current_user_id),
    course_service: CourseService = Depends(get_course_service),
):
    """List the user's courses, each with its completed lesson count"""
    courses = await course_service.list_courses(user_id, include_archived=include_archived)
    return {
        "course_count": len(courses),
        "courses": courses
    }


@router.post("/courses/preview", response_model=Union[QuestionPayload, OutlinePayload])
async def preview_course(
    request: PreviewRequest,
    user_id: str = Depends(get_current_user_id),
    negotiator: OutlineNegotiator = Depends(get_negotiator),
):
    """
    One turn of outline negotiation.

    Returns either a clarifying question ({"type": "question"}) or an
    outline ({"type": "outline"}). Send previousOutline plus feedback to
    revise; send the conversation so far to answer a question.
    """
    logger.info(f"Generating course preview for topic: {request.topic}")
    return await negotiator.preview(request)


@router.post("/courses/build", status_code=201)
async def build_course(
    request: BuildCourseRequest,
    user_id: str = Depends(get_current_user_id),
    course_service: CourseService = Depends(get_course_service),
):
    """
    Create a course from an approved outline.

    Returns at once; lessons are generated when first requested (the first
    one is started right away) and the research document is fetched in the
    background.
    """
    course = await course_service.build_course(user_id, request.outline)
    return course


@router.get("/courses/{course_id}")
async def get_course(
    course_id: int,
    user_id: str = Depends(get_current_user_id),
    course_service: CourseService = Depends(get_course_service),
):
    """Course with lessons, the user's progress and research status"""
    return await course_service.get_course_detail(user_id, course_id)


@router.post("/courses/{course_id}/archive")
async def archive_course(
    course_id: int,
    user_id: str = Depends(get_current_user_id),
    course_service: CourseService = Depends(get_course_service),
):
    return await course_service.set_archived(user_id, course_id, True)


@router.post("/courses/{course_id}/unarchive")
async def unarchive_course(
    course_id: int,
    user_id: str = Depends(get_current_user_id),
    course_service: CourseService = Depends(get_course_service),
):
    return await course_service.set_archived(user_id, course_id, False)


@router.delete("/courses/{course_id}")
async def delete_course(
    course_id: int,
    user_id: str = Depends(get_current_user_id),
    course_service: CourseService = Depends(get_course_service),
):
    """Delete a course with its lessons, progress, feedback and research"""
    await course_service.delete_course(user_id, course_id)
    return {"success": True}


# Research Endpoints
@router.get("/courses/{course_id}/research")
async def get_course_research(
    course_id: int,
    user_id: str = Depends(get_current_user_id),
    course_service: CourseService = Depends(get_course_service),
):
    """Research status, confidence and citations"""
    return await course_service.get_research(user_id, course_id)


@router.post("/courses/{course_id}/research/retry", status_code=202)
async def retry_course_research(
    course_id: int,
    user_id: str = Depends(get_current_user_id),
    course_service: CourseService = Depends(get_course_service),
):
    return await course_service.retry_research(user_id, course_id)


# Lesson Endpoints
@router.get("/lessons/{lesson_id}", response_model=LessonView)
async def get_lesson(
    lesson_id: int,
    user_id: str = Depends(get_current_user_id),
    lesson_service: LessonService = Depends(get_lesson_service),
):
    """
    Lesson with expansions, completion state and next lesson id.

    While is_pending is true the content is being generated; poll every
    couple of seconds.
    """
    return await lesson_service.get_lesson_view(user_id, lesson_id)


@router.post("/lessons/{lesson_id}/complete")
async def complete_lesson(
    lesson_id: int,
    user_id: str = Depends(get_current_user_id),
    lesson_service: LessonService = Depends(get_lesson_service),
) -> Dict[str, Any]:
    return await lesson_service.complete_lesson(user_id, lesson_id)


@router.post("/lessons/{lesson_id}/feedback", status_code=201)
async def submit_lesson_feedback(
    lesson_id: int,
    request: FeedbackRequest,
    user_id: str = Depends(get_current_user_id),
    lesson_service: LessonService = Depends(get_lesson_service),
):
    """Record feedback; later lessons in the course adapt to it"""
    feedback = await lesson_service.submit_feedback(user_id, lesson_id, request.feedback)
    return {"success": True, "feedback": feedback}


@router.post("/lessons/{lesson_id}/expand", status_code=201)
async def expand_lesson_topic(
    lesson_id: int,
    request: ExpandRequest,
    user_id: str = Depends(get_current_user_id),
    lesson_service: LessonService = Depends(get_lesson_service),
):
    """Deep dive on a phrase from the lesson (blocking, one provider call)"""
    return await lesson_service.expand_topic(user_id, lesson_id, request.topic)


# Model info endpoint
@router.get("/models")
async def get_available_models():
    """List all available AI models for generation"""
    models = []
    for key, config in MODEL_CONFIGS.items():
        models.append({
            "id": key,
            "name": config["model"],
            "provider": config["provider"],
            "default": key == DEFAULT_MODEL
        })

    return {"models": models}
