"""
Outline negotiation: topic → (clarifying questions) → outline → revisions → build.

The negotiator is a small state machine over OutlineConversation. The HTTP
layer is stateless, so preview() rebuilds the state from what the client
sends back on every turn.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from models.course_models import (
    ConversationTurn,
    NegotiationState,
    Outline,
    OutlineConversation,
    OutlinePayload,
    OutlineSession,
    PreviewRequest,
    QuestionPayload,
)
from prompts.course_prompts import build_outline_decision_prompt, build_outline_revision_prompt
from utils.exceptions import OutlineParseError, ValidationError
from utils.json_extract import extract_json
from utils.model_config import ModelConfig

logger = logging.getLogger(__name__)

MAX_BUILD_SESSIONS = 20

NegotiationReply = Union[QuestionPayload, OutlinePayload]


class OutlineNegotiator:
    """Turns a topic into an approved outline through the text generator"""

    def __init__(self, llm):
        self.llm = llm

    async def submit(self, conversation: OutlineConversation, user_input: Optional[str] = None) -> NegotiationReply:
        """
        Advance the conversation by one turn.

        In AWAITING_TOPIC the input answers the last open question (if any).
        In AWAITING_APPROVAL the input is revision feedback. The conversation
        is only mutated after the model reply has been parsed, so a failed turn
        can simply be retried.
        """
        if conversation.state == NegotiationState.BUILT:
            raise ValidationError("Course has already been built from this outline", error_code="OUTLINE_ALREADY_BUILT")

        if conversation.state == NegotiationState.AWAITING_APPROVAL:
            if not user_input or not user_input.strip():
                raise ValidationError("Feedback is required to revise an outline", error_code="MISSING_FEEDBACK")
            outline = await self._revise(conversation.topic, conversation.outline, user_input.strip())
            conversation.outline = outline
            return OutlinePayload(**outline.model_dump())

        transcript = self._answer_open_question(conversation.transcript, user_input)
        prompt = build_outline_decision_prompt(conversation.topic, transcript)
        text = await self.llm.generate(prompt, max_tokens=ModelConfig.max_tokens_for("outline"))
        reply = self.parse_decision(text)

        if isinstance(reply, QuestionPayload):
            transcript.append(ConversationTurn(question=reply.question))
            conversation.transcript = transcript
            logger.info(f"Asked clarifying question for topic '{conversation.topic}'")
        else:
            conversation.transcript = transcript
            conversation.outline = Outline(**reply.model_dump(exclude={"type"}))
            conversation.state = NegotiationState.AWAITING_APPROVAL
            logger.info(f"Proposed outline with {len(reply.sessions)} sessions for '{conversation.topic}'")
        return reply

    def approve(self, conversation: OutlineConversation) -> Outline:
        """Explicit build: hand the current outline to course creation."""
        if conversation.state != NegotiationState.AWAITING_APPROVAL or conversation.outline is None:
            raise ValidationError("There is no outline awaiting approval", error_code="NO_OUTLINE")
        conversation.state = NegotiationState.BUILT
        return conversation.outline

    async def preview(self, request: PreviewRequest) -> NegotiationReply:
        """One stateless preview turn, with the state derived from the request"""
        if request.previous_outline is not None and request.feedback:
            conversation = OutlineConversation(
                topic=request.topic,
                state=NegotiationState.AWAITING_APPROVAL,
                transcript=list(request.conversation),
                outline=request.previous_outline,
            )
            return await self.submit(conversation, request.feedback)

        conversation = OutlineConversation(
            topic=request.topic,
            transcript=list(request.conversation),
        )
        # Without a previous outline, feedback answers the open question
        return await self.submit(conversation, request.feedback)

    async def _revise(self, topic: str, outline: Optional[Outline], feedback: str) -> Outline:
        if outline is None:
            raise ValidationError("No outline to revise", error_code="NO_OUTLINE")
        prompt = build_outline_revision_prompt(topic, outline.model_dump(by_alias=True), feedback)
        text = await self.llm.generate(prompt, max_tokens=ModelConfig.max_tokens_for("outline"))
        try:
            data = extract_json(text)
        except ValueError as e:
            logger.warning(f"Unparseable outline revision for '{topic}': {e}")
            raise OutlineParseError() from e
        return self.parse_outline(data)

    @staticmethod
    def _answer_open_question(transcript: List[ConversationTurn], user_input: Optional[str]) -> List[ConversationTurn]:
        turns = [turn.model_copy() for turn in transcript]
        if user_input and user_input.strip() and turns and not turns[-1].answer:
            turns[-1].answer = user_input.strip()
        return turns

    @classmethod
    def parse_decision(cls, text: str) -> NegotiationReply:
        """Model reply → question or outline payload; OutlineParseError otherwise"""
        try:
            data = extract_json(text)
        except ValueError as e:
            logger.warning(f"Unparseable outline decision: {e}")
            raise OutlineParseError() from e

        if data.get("type") == "question":
            question = data.get("question")
            if not isinstance(question, str) or not question.strip():
                raise OutlineParseError("Clarifying question was empty")
            return QuestionPayload(question=question.strip())

        outline = cls.parse_outline(data)
        return OutlinePayload(**outline.model_dump())

    @staticmethod
    def parse_outline(data: Dict[str, Any]) -> Outline:
        """
        Validate a generated outline and renumber its sessions 1..N by position.

        Raises OutlineParseError (never returns a partial outline).
        """
        sessions = data.get("sessions")
        if not isinstance(sessions, list) or not sessions:
            raise OutlineParseError("Outline has no sessions")

        renumbered = []
        for position, session in enumerate(sessions, start=1):
            if not isinstance(session, dict):
                raise OutlineParseError("Outline session is not an object")
            renumbered.append({
                "sessionNumber": position,
                "title": (session.get("title") or "").strip() if isinstance(session.get("title"), str) else "",
                "subtitle": session.get("subtitle") if isinstance(session.get("subtitle"), str) else None,
            })

        description = data.get("description")
        if not isinstance(description, str) or not description.strip():
            raise OutlineParseError("Outline has no description")

        try:
            return Outline(
                title=(data.get("title") or "").strip() if isinstance(data.get("title"), str) else "",
                description=description.strip(),
                sessions=[OutlineSession(**s) for s in renumbered],
            )
        except PydanticValidationError as e:
            raise OutlineParseError("Outline is missing required fields", context={"errors": e.error_count()}) from e

    @staticmethod
    def validate_outline_for_build(raw: Any) -> Outline:
        """
        Validate a client-submitted outline before anything is persisted.

        Sessions come back ordered by ascending sessionNumber and renumbered
        1..N, which is how lessons are numbered.
        """
        if not isinstance(raw, dict):
            raise ValidationError("Valid outline with title is required", error_code="INVALID_OUTLINE")

        title = raw.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Valid outline with title is required", error_code="INVALID_OUTLINE")

        description = raw.get("description")
        if not isinstance(description, str):
            raise ValidationError("Valid outline description is required", error_code="INVALID_OUTLINE")

        sessions = raw.get("sessions")
        if not isinstance(sessions, list) or not 1 <= len(sessions) <= MAX_BUILD_SESSIONS:
            raise ValidationError(
                f"Outline must have 1-{MAX_BUILD_SESSIONS} sessions",
                error_code="INVALID_OUTLINE",
                context={"sessions": len(sessions) if isinstance(sessions, list) else None},
            )

        seen = set()
        for session in sessions:
            if not isinstance(session, dict):
                raise ValidationError("Each session must have a title and sessionNumber", error_code="INVALID_OUTLINE")
            number = session.get("sessionNumber")
            session_title = session.get("title")
            # bool is an int subclass; reject it explicitly
            if not isinstance(session_title, str) or not session_title.strip() \
                    or isinstance(number, bool) or not isinstance(number, int) or number < 1:
                raise ValidationError("Each session must have a title and sessionNumber", error_code="INVALID_OUTLINE")
            if number in seen:
                raise ValidationError(
                    "Session numbers must be unique",
                    error_code="DUPLICATE_SESSION_NUMBER",
                    context={"sessionNumber": number},
                )
            seen.add(number)

        ordered = sorted(sessions, key=lambda s: s["sessionNumber"])
        return Outline(
            title=title.strip(),
            description=description,
            sessions=[
                OutlineSession(
                    session_number=position,
                    title=s["title"].strip(),
                    subtitle=s.get("subtitle") if isinstance(s.get("subtitle"), str) else None,
                )
                for position, s in enumerate(ordered, start=1)
            ],
        )
