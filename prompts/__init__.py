# Prompts module initialization

from .course_prompts import (
    build_outline_decision_prompt,
    build_outline_revision_prompt,
    build_lesson_content_prompt,
    build_topic_expansion_prompt,
    build_research_query,
    format_source_list,
)

__all__ = [
    'build_outline_decision_prompt',
    'build_outline_revision_prompt',
    'build_lesson_content_prompt',
    'build_topic_expansion_prompt',
    'build_research_query',
    'format_source_list',
]
