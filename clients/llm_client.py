"""
Text-generation client.

One entry point, generate(), dispatched to Anthropic, OpenAI or Groq by the
model configuration. Every call is bounded by LLM_TIMEOUT_SECONDS and every
failure surfaces as GenerationError. There is no retry here; callers decide.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import anthropic
import groq
import openai

from utils import settings
from utils.exceptions import GenerationError
from utils.model_config import ModelConfig, ModelProvider

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are an expert educational content creator."


class LLMClient:
    """Async text generation against the configured provider"""

    def __init__(self, model_key: Optional[str] = None, timeout: Optional[float] = None):
        self.model_key = model_key
        self.model_config = ModelConfig.get_config(model_key)
        self.timeout = timeout if timeout is not None else settings.LLM_TIMEOUT_SECONDS
        self._clients: Dict[str, Any] = {}

    @property
    def provider(self) -> ModelProvider:
        return self.model_config["provider"]

    async def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None
    ) -> str:
        """
        Generate text for a prompt.

        Raises:
            GenerationError on provider errors, timeouts and empty output.
        """
        max_tokens = max_tokens or self.model_config["max_tokens"]
        system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

        try:
            text = await asyncio.wait_for(
                self._call_model(prompt, max_tokens, system_prompt),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(f"{self.provider.value} call timed out after {self.timeout}s")
            raise GenerationError(
                "Text generation timed out",
                error_code="GENERATION_TIMEOUT",
                context={"provider": self.provider.value, "timeout": self.timeout}
            ) from e
        except GenerationError:
            raise
        except Exception as e:
            logger.error(f"{self.provider.value} API error: {e}")
            raise GenerationError(
                f"Text generation failed: {e}",
                context={"provider": self.provider.value, "model": self.model_config["model"]}
            ) from e

        if not text or not text.strip():
            raise GenerationError("Model returned empty content", context={"provider": self.provider.value})
        return text

    async def _call_model(self, prompt: str, max_tokens: int, system_prompt: str) -> str:
        provider = self.provider
        if provider == ModelProvider.ANTHROPIC:
            return await self._call_claude(prompt, max_tokens, system_prompt)
        elif provider == ModelProvider.OPENAI:
            return await self._call_openai(prompt, max_tokens, system_prompt)
        elif provider == ModelProvider.GROQ:
            return await self._call_groq(prompt, max_tokens, system_prompt)
        raise GenerationError(f"Unknown provider: {provider}", error_code="INVALID_MODEL")

    def _client(self, provider: ModelProvider):
        """SDK clients are built on first use so the app starts without keys"""
        if provider.value not in self._clients:
            if provider == ModelProvider.ANTHROPIC:
                client = anthropic.AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
            elif provider == ModelProvider.OPENAI:
                client = openai.AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
            else:
                client = groq.AsyncGroq(api_key=settings.GROQ_API_KEY)
            self._clients[provider.value] = client
        return self._clients[provider.value]

    async def _call_claude(self, prompt: str, max_tokens: int, system_prompt: str) -> str:
        client = self._client(ModelProvider.ANTHROPIC)
        response = await client.messages.create(
            model=self.model_config["model"],
            max_tokens=max_tokens,
            temperature=self.model_config.get("temperature", 0.7),
            system=system_prompt,
            messages=[{"role": "user", "content": prompt}]
        )

        # Only text blocks carry the answer
        content = ""
        for block in response.content:
            if hasattr(block, "text"):
                content += block.text
        return content

    async def _call_openai(self, prompt: str, max_tokens: int, system_prompt: str) -> str:
        client = self._client(ModelProvider.OPENAI)
        params = {
            "model": self.model_config["model"],
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt}
            ],
            "max_completion_tokens": max_tokens,
        }
        if self.model_config.get("temperature") is not None:
            params["temperature"] = self.model_config["temperature"]

        response = await client.chat.completions.create(**params)
        return response.choices[0].message.content or ""

    async def _call_groq(self, prompt: str, max_tokens: int, system_prompt: str) -> str:
        client = self._client(ModelProvider.GROQ)
        response = await client.chat.completions.create(
            model=self.model_config["model"],
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt}
            ],
            max_tokens=max_tokens,
            temperature=self.model_config.get("temperature", 0.7),
            stream=False
        )
        choice = response.choices[0]
        if choice.finish_reason == "length":
            logger.warning(f"Groq response truncated at {max_tokens} tokens")
        return choice.message.content or ""
