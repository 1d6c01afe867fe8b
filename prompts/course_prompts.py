"""
Prompt templates for outline negotiation and lesson generation.

Every builder here is a pure function of its arguments: the same persisted
state must always produce the same prompt text.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from models.course_models import Citation, ConversationTurn

MIN_OUTLINE_SESSIONS = 10
MAX_OUTLINE_SESSIONS = 14

OUTLINE_JSON_FORMAT = """{
  "title": "Course Title",
  "description": "A brief description of what the learner will gain",
  "sessions": [
    {
      "title": "Session Title",
      "subtitle": "Brief hook or description",
      "sessionNumber": 1
    }
  ]
}"""


def _format_transcript(conversation: Sequence[ConversationTurn]) -> str:
    lines = []
    for turn in conversation:
        lines.append(f"Q: {turn.question}")
        if turn.answer:
            lines.append(f"A: {turn.answer}")
    return "\n".join(lines)


def build_outline_decision_prompt(
    topic: str,
    conversation: Optional[Sequence[ConversationTurn]] = None
) -> str:
    """Ask the model to either clarify the topic or commit to an outline"""

    transcript_section = f"""
CONVERSATION SO FAR:
{_format_transcript(conversation)}
""" if conversation else ""

    return f"""You are an expert curriculum designer building a micro-learning course.

The learner wants to learn about: "{topic}"
{transcript_section}
DECIDE:
- If the topic (together with the conversation so far) is too broad or vague to design a focused course, ask ONE short clarifying question.
- Otherwise, produce the course outline.

Do not ask more than necessary. If the learner has already answered a question, prefer producing the outline.

If you need to ask a question, respond with:
{{"type": "question", "question": "Your clarifying question"}}

If you are ready, respond with:
{{"type": "outline", "title": "...", "description": "...", "sessions": [...]}}
where the outline follows this format:
{OUTLINE_JSON_FORMAT}

OUTLINE REQUIREMENTS:
1. Generate exactly {MIN_OUTLINE_SESSIONS}-{MAX_OUTLINE_SESSIONS} sessions that progressively teach this topic
2. Each session is a focused 5-minute read
3. Make titles engaging and subtitles informative
4. Order sessions logically for progressive learning

Only respond with valid JSON, no other text."""


def build_outline_revision_prompt(
    topic: str,
    previous_outline: Dict[str, Any],
    feedback: str
) -> str:
    """Revise an outline the learner has already seen"""

    return f"""I previously suggested this course outline for "{topic}":

{json.dumps(previous_outline, indent=2)}

The user provided this feedback: "{feedback}"

Please revise the course outline based on their feedback.
Keep between {MIN_OUTLINE_SESSIONS} and {MAX_OUTLINE_SESSIONS} sessions unless the feedback explicitly asks for a different length.

Respond with a JSON object in this exact format:
{OUTLINE_JSON_FORMAT}

Make titles engaging and subtitles informative. Order sessions logically for progressive learning.
Only respond with valid JSON, no other text."""


def format_source_list(citations: Sequence[Citation]) -> str:
    """Enumerate sources with 1-based labels matching the [N] markers"""
    lines = []
    for position, citation in enumerate(citations, start=1):
        title = citation.title or citation.domain or citation.url
        domain = f" ({citation.domain})" if citation.domain and citation.domain != title else ""
        lines.append(f"[{position}] {title}{domain} - {citation.url}")
    return "\n".join(lines)


def build_lesson_content_prompt(
    lesson_title: str,
    session_number: int,
    course_title: str,
    total_lessons: int,
    feedback: Optional[List[str]] = None,
    research_content: Optional[str] = None,
    research_citations: Optional[Sequence[Citation]] = None,
    max_research_chars: int = 12000
) -> str:
    """
    Build the prompt for a single lesson.

    Args:
        feedback: learner feedback texts, oldest first (already windowed).
        research_content: grounding document; only pass a completed one.
        research_citations: sources for the document, in stored order.
    """
    feedback_section = ""
    if feedback:
        bullets = "\n".join(f"- {entry}" for entry in feedback)
        feedback_section = f"""
LEARNER FEEDBACK ON EARLIER LESSONS (adapt this lesson accordingly):
{bullets}
"""

    research_section = ""
    citation_rule = ""
    if research_content:
        document = research_content[:max_research_chars]
        research_section = f"""
RESEARCH NOTES (use these to ground facts; do not copy verbatim):
{document}
"""
        if research_citations:
            research_section += f"""
SOURCES:
{format_source_list(research_citations)}
"""
            citation_rule = """
- When you state a fact taken from the sources, cite it with a bracketed number like [1] or [2]
- The number must match the SOURCES list above exactly; never invent a number that is not listed"""

    return f"""Write a 5-minute lesson for: "{lesson_title}"
This is part of a course on: "{course_title}"
Session {session_number} of {total_lessons}.
{feedback_section}{research_section}
Write engaging, educational content that:
- Is pitched at a motivated beginner (plain language, roughly a high-school reading level)
- Is formatted in clean markdown
- Uses clear paragraphs (no headers in the body)
- Includes real-world examples and analogies
- Is conversational but informative
- Is approximately 500-700 words{citation_rule}
- Ends with a short "Further Reading" section naming 2-3 credible sources (books, organizations or websites)

Just write the lesson content, no meta text or introductions."""


def build_topic_expansion_prompt(lesson_title: str, topic: str) -> str:
    """Deep dive on a phrase the learner highlighted in a lesson"""

    return f"""The user is reading a lesson titled "{lesson_title}" and wants to learn more about: "{topic}"

Write a focused deep-dive explanation (200-400 words) that:
- Expands on this specific topic
- Provides additional context, examples, or details
- Uses clean markdown formatting
- Is informative and engaging

Just provide the expanded content, no meta text."""


def build_research_query(
    course_title: str,
    course_description: Optional[str],
    session_titles: Sequence[str]
) -> Dict[str, str]:
    """Topic and context strings handed to the deep-research provider"""
    context_lines = []
    if course_description:
        context_lines.append(course_description)
    if session_titles:
        context_lines.append("The course covers: " + "; ".join(session_titles))
    return {
        "topic": course_title,
        "course_context": "\n".join(context_lines),
    }
