from services.content_store import ContentStore, MemoryContentStore, SupabaseContentStore, create_content_store
from services.generation_gate import GateDecision, GenerationGate
from services.outline_negotiator import OutlineNegotiator
from services.lesson_service import LessonService, GenerationOutcome
from services.course_service import CourseService

__all__ = [
    'ContentStore',
    'MemoryContentStore',
    'SupabaseContentStore',
    'create_content_store',
    'GateDecision',
    'GenerationGate',
    'OutlineNegotiator',
    'LessonService',
    'GenerationOutcome',
    'CourseService'
]
