"""
Runtime settings read from the environment (.env supported).
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


# Storage
CONTENT_STORE_BACKEND = os.getenv("CONTENT_STORE_BACKEND", "supabase")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Providers
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
PERPLEXITY_API_KEY = os.getenv("PERPLEXITY_API_KEY")
GENERATION_MODEL = os.getenv("GENERATION_MODEL", "claude-sonnet-4-5")

# Timeouts (seconds)
LLM_TIMEOUT_SECONDS = _int_env("LLM_TIMEOUT_SECONDS", 90)
RESEARCH_TIMEOUT_SECONDS = _int_env("RESEARCH_TIMEOUT_SECONDS", 300)

# Generation gate: a "generating" claim older than this may be re-taken
LESSON_CLAIM_STALE_SECONDS = _int_env("LESSON_CLAIM_STALE_SECONDS", 180)

# In-progress research untouched for longer than this can be retried
RESEARCH_CLAIM_STALE_SECONDS = _int_env("RESEARCH_CLAIM_STALE_SECONDS", RESEARCH_TIMEOUT_SECONDS + 60)

# Prompt composition
FEEDBACK_WINDOW = _int_env("FEEDBACK_WINDOW", 3)
MAX_RESEARCH_CHARS = _int_env("MAX_RESEARCH_CHARS", 12000)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
