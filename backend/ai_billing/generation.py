"""
Generation collaborators.

The Request Gate only needs something that turns a prompt into text plus
token usage. Two implementations:
- OpenAIGenerator: chat completions through the OpenAI API
- SimulatedGenerator: echoes the prompt (development/test only)

GENERATION_BACKEND selects one (openai|simulated). Simulated generation is
refused in production.
"""

import logging
import math
import os
import uuid
from typing import Optional, Protocol

from openai import AsyncOpenAI

from utils.environment import allow_simulated_generation, is_production

from .config import AI_MODELS, CHARS_PER_TOKEN, DEFAULT_MODEL, GENERATION_TIMEOUT_SECONDS
from .errors import ValidationError
from .models import GenerationResult

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert web developer helping users build applications."


def resolve_model(model: Optional[str]) -> str:
    """Default when omitted; 400 for models outside the catalog."""
    model = model or DEFAULT_MODEL
    if model not in AI_MODELS:
        raise ValidationError(f"Unknown model: {model}")
    return model


class TextGenerator(Protocol):
    async def generate(self, prompt: str, model: str) -> GenerationResult:
        ...


class SimulatedGenerator:
    """Deterministic stand-in that reports ~len/4 tokens each way."""

    def __init__(self):
        if not allow_simulated_generation():
            raise RuntimeError("Simulated generation is not allowed in production")

    async def generate(self, prompt: str, model: str) -> GenerationResult:
        content = f"Generated response for: {prompt}"
        prompt_tokens = math.ceil(len(prompt) / CHARS_PER_TOKEN)
        completion_tokens = math.ceil(len(content) / CHARS_PER_TOKEN)
        return GenerationResult(
            job_id=str(uuid.uuid4()),
            model=model,
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens
        )


class OpenAIGenerator:
    """Chat completions with usage reported by the API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, timeout: float = GENERATION_TIMEOUT_SECONDS):
        self._client = client
        self.timeout = timeout

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is not set")
            self._client = AsyncOpenAI(api_key=api_key, timeout=self.timeout)
        return self._client

    async def generate(self, prompt: str, model: str) -> GenerationResult:
        api_model = AI_MODELS.get(model, {}).get("api_model", model)
        response = await self.client.chat.completions.create(
            model=api_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt}
            ]
        )

        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        total_tokens = usage.total_tokens if usage else prompt_tokens + completion_tokens

        return GenerationResult(
            job_id=response.id or str(uuid.uuid4()),
            model=model,
            content=response.choices[0].message.content or "",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens
        )


_generator: Optional[TextGenerator] = None


def build_generator() -> TextGenerator:
    default_backend = "openai" if is_production() else "simulated"
    backend = os.environ.get("GENERATION_BACKEND", default_backend).lower()
    if backend == "simulated":
        logger.info("Using simulated generation backend")
        return SimulatedGenerator()
    if backend != "openai":
        logger.warning(f"Unknown GENERATION_BACKEND '{backend}', using openai")
    return OpenAIGenerator()


def get_generator() -> TextGenerator:
    """FastAPI dependency returning the shared generator."""
    global _generator
    if _generator is None:
        _generator = build_generator()
    return _generator
