"""
Model configuration and switching for lesson and outline generation.
The provider catalogue and per-task output budgets live here and nowhere else.
"""

from typing import Dict, Any, Optional
from enum import Enum

from utils import settings


class ModelProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GROQ = "groq"


# Model configurations
MODEL_CONFIGS: Dict[str, Dict[str, Any]] = {
    "claude-sonnet-4-5": {
        "provider": ModelProvider.ANTHROPIC,
        "model": "claude-sonnet-4-5-20250929",
        "max_tokens": 8192,
        "temperature": 0.7
    },
    "claude-haiku-4-5": {
        "provider": ModelProvider.ANTHROPIC,
        "model": "claude-haiku-4-5-20251001",
        "max_tokens": 8192,
        "temperature": 0.7
    },
    "gpt-4o": {
        "provider": ModelProvider.OPENAI,
        "model": "gpt-4o",
        "max_tokens": 8192,
        "temperature": 0.7
    },
    "gpt-5-mini": {
        "provider": ModelProvider.OPENAI,
        "model": "gpt-5-mini",
        "max_tokens": 8192,
        "temperature": None  # reasoning models only accept the default
    },
    "llama-4-scout": {
        "provider": ModelProvider.GROQ,
        "model": "meta-llama/llama-4-scout-17b-16e-instruct",
        "max_tokens": 8192,
        "temperature": 0.7
    },
}

DEFAULT_MODEL = settings.GENERATION_MODEL

# Output budgets per generation task
TASK_MAX_TOKENS: Dict[str, int] = {
    "outline": 4096,
    "lesson": 2048,
    "expansion": 1024,
}


class ModelConfig:
    """Model configuration manager"""

    @staticmethod
    def get_config(model_key: Optional[str] = None) -> Dict[str, Any]:
        """Get configuration for specified model or default"""
        key = model_key or DEFAULT_MODEL

        if key not in MODEL_CONFIGS:
            raise ValueError(f"Unknown model: {key}. Available: {list(MODEL_CONFIGS.keys())}")

        return MODEL_CONFIGS[key]

    @staticmethod
    def max_tokens_for(task: str, model_key: Optional[str] = None) -> int:
        """Task budget, capped by what the model allows"""
        config = ModelConfig.get_config(model_key)
        return min(TASK_MAX_TOKENS.get(task, config["max_tokens"]), config["max_tokens"])
