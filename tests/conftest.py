"""
Shared fixtures: in-memory store, scripted text generator, scripted research
provider and an ASGI client over a fully wired app.

Run with:
    python3 -m pytest tests -v
"""

import asyncio
import os
import sys
from typing import List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Settings are read at import time
os.environ["CONTENT_STORE_BACKEND"] = "memory"
os.environ["PERPLEXITY_API_KEY"] = ""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import create_app
from models.course_models import Citation, ResearchResult
from services.content_store import MemoryContentStore
from services.course_service import CourseService
from services.generation_gate import GenerationGate
from services.lesson_service import LessonService
from utils.background import BackgroundJobRunner

LESSON_TEXT = "Birds are everywhere once you start looking [1]. Binoculars help [2]."


class FakeLLM:
    """Scripted text generator; records every prompt it receives."""

    def __init__(self, responses: Optional[List] = None, default: str = LESSON_TEXT):
        self.responses = list(responses or [])
        self.default = default
        self.prompts: List[str] = []
        self.hold: Optional[asyncio.Event] = None

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str, max_tokens: Optional[int] = None, system_prompt: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        if self.hold is not None:
            await self.hold.wait()
        else:
            await asyncio.sleep(0)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return self.default


class FakeResearch:
    """Scripted deep-research provider."""

    def __init__(self, result: Optional[ResearchResult] = None, error: Optional[Exception] = None):
        self.result = result or ResearchResult(
            content="Birding notes: field marks, songs and habitats.",
            citations=[
                Citation(index=1, title="Audubon guide", url="https://www.audubon.org/guide", domain="www.audubon.org"),
                Citation(index=2, title="Cornell Lab", url="https://www.allaboutbirds.org/", domain="www.allaboutbirds.org"),
            ],
            token_count=1200,
            search_count=4,
        )
        self.error = error
        self.calls: List[tuple] = []

    async def research(self, topic: str, course_context: str = "") -> ResearchResult:
        self.calls.append((topic, course_context))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.result


def bird_outline(sessions: int = 2) -> dict:
    titles = ["Getting Started with Birding", "Identifying Common Birds", "Songs and Calls", "Field Journals"]
    return {
        "title": "Bird Watching Basics",
        "description": "Learn to spot and name the birds around you",
        "sessions": [
            {"title": titles[i], "subtitle": f"Part {i + 1}", "sessionNumber": i + 1}
            for i in range(sessions)
        ],
    }


@pytest.fixture
def store():
    return MemoryContentStore()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest_asyncio.fixture
async def runner():
    runner = BackgroundJobRunner()
    yield runner
    await runner.drain(timeout=5)


@pytest.fixture
def gate(store):
    return GenerationGate(store, stale_after_seconds=180)


@pytest.fixture
def lesson_service(store, llm, runner, gate):
    return LessonService(store, llm, runner, gate=gate, feedback_window=3)


@pytest.fixture
def course_service(store, lesson_service, runner):
    return CourseService(store, lesson_service, runner)


@pytest_asyncio.fixture
async def api(store, llm, runner):
    app = create_app(store=store, llm=llm, runner=runner)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    await runner.drain(timeout=5)


USER = {"X-User-Id": "user-1"}
OTHER_USER = {"X-User-Id": "user-2"}
