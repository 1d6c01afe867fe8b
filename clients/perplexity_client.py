"""
Perplexity deep-research client for course grounding documents.
Perplexity API is OpenAI-compatible (same SDK, different base_url).
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from openai import AsyncOpenAI

from models.course_models import Citation, ResearchResult
from utils import settings
from utils.exceptions import ResearchError

logger = logging.getLogger(__name__)

PERPLEXITY_BASE_URL = "https://api.perplexity.ai"
DEEP_RESEARCH_MODEL = "sonar-deep-research"

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


def extract_domain(url: str) -> str:
    host = urlparse(url).hostname
    return host or url


def strip_reasoning(content: str) -> str:
    """Drop <think>...</think> blocks that reasoning models prepend."""
    return _THINK_RE.sub("", content or "").strip()


def build_citations(urls: List[str], search_results: Optional[List[Dict[str, Any]]] = None) -> List[Citation]:
    """
    Citation list in provider order, indexed from 1.

    Titles and snippets come from search_results when the provider returns
    them for the same url.
    """
    details = {}
    for result in search_results or []:
        if isinstance(result, dict) and result.get("url"):
            details[result["url"]] = result

    citations = []
    for position, url in enumerate(urls, start=1):
        info = details.get(url, {})
        citations.append(Citation(
            index=position,
            url=url,
            domain=extract_domain(url),
            title=info.get("title") or "",
            snippet=info.get("snippet") or "",
        ))
    return citations


class DeepResearchClient:
    """Long-running research call: one grounding document per course"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEEP_RESEARCH_MODEL,
        timeout: Optional[float] = None
    ):
        self.api_key = api_key or settings.PERPLEXITY_API_KEY
        if not self.api_key:
            raise ValueError("PERPLEXITY_API_KEY must be set for deep research")
        self.model = model
        self.timeout = timeout if timeout is not None else settings.RESEARCH_TIMEOUT_SECONDS
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=PERPLEXITY_BASE_URL)
        return self._client

    async def research(self, topic: str, course_context: str = "") -> ResearchResult:
        """
        Research a course topic.

        Raises:
            ResearchError on API failure or when the call exceeds the timeout.
        """
        prompt = (
            "Research the following topic thoroughly and provide comprehensive information "
            f"that would be useful for creating an educational course: {topic}"
        )
        if course_context:
            prompt += f"\n\nCourse context:\n{course_context}"

        logger.info(f"Starting deep research for topic: {topic}")
        try:
            response = await asyncio.wait_for(
                self._get_client().chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Deep research timed out after {self.timeout}s")
            raise ResearchError(
                f"Deep research request timed out after {self.timeout} seconds",
                context={"topic": topic}
            ) from e
        except Exception as e:
            logger.error(f"Perplexity API error: {e}")
            raise ResearchError(f"Deep research failed: {e}", context={"topic": topic}) from e

        content = strip_reasoning(response.choices[0].message.content if response.choices else "")
        if not content:
            raise ResearchError("Deep research returned no content", context={"topic": topic})

        # citations and search_results are Perplexity extensions to the OpenAI schema
        citations = build_citations(
            list(getattr(response, "citations", None) or []),
            getattr(response, "search_results", None)
        )

        usage = getattr(response, "usage", None)
        token_count = getattr(usage, "total_tokens", None) if usage else None
        search_count = getattr(usage, "num_search_queries", None) if usage else None

        logger.info(f"Deep research completed with {len(citations)} citations")
        return ResearchResult(
            content=content,
            citations=citations,
            token_count=token_count,
            search_count=search_count,
        )
