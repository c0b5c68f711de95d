"""External content generator: OpenAI chat completions with a local fallback."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Protocol

from openai import AsyncOpenAI

from config import settings
from services.generation_cache import GenerationSettings
from services.tools import ToolDefinition

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a marketing copywriter for video and podcast creators. "
    "Write ready-to-publish copy from the creator's transcript. "
    "Return only the copy, without commentary."
)


@dataclass(frozen=True)
class GeneratorResult:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ContentGenerator(Protocol):
    async def generate(self, prompt: str, model: str) -> GeneratorResult:
        ...


def build_prompt(tool: ToolDefinition, source_text: str, generation_settings: GenerationSettings) -> str:
    lines = [
        f"Task: {tool.label} - {tool.description}.",
        f"Emotion: {generation_settings.emotion}",
        f"Tone: {generation_settings.tone}",
        f"Language: {generation_settings.language}",
        f"Target region: {generation_settings.region}",
    ]
    if generation_settings.target_audience:
        lines.append(f"Audience: {generation_settings.target_audience}")
    if generation_settings.creator_notes:
        lines.append(f"Creator notes: {generation_settings.creator_notes}")
    lines.append("")
    lines.append("Transcript:")
    lines.append(source_text)
    return "\n".join(lines)


class OpenAIGenerator:
    def __init__(self, client: AsyncOpenAI, max_tokens: int = 1500):
        self._client = client
        self._max_tokens = max_tokens

    async def generate(self, prompt: str, model: str) -> GeneratorResult:
        response = await self._client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self._max_tokens,
        )
        text = (response.choices[0].message.content or "").strip()
        if not text:
            raise ValueError("Model returned an empty completion")
        usage = response.usage
        return GeneratorResult(
            text=text,
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )


class LocalFallbackGenerator:
    """Deterministic stand-in used when no OpenAI key is configured."""

    async def generate(self, prompt: str, model: str) -> GeneratorResult:
        digest = hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:12]
        task = prompt.splitlines()[0] if prompt else "Task"
        text = f"[local:{model}:{digest}] {task} Draft copy generated without an upstream model."
        words = len(prompt.split())
        return GeneratorResult(text=text, prompt_tokens=words, completion_tokens=len(text.split()))


def get_openai_client(api_key: str) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(api_key=api_key)


@lru_cache(maxsize=1)
def get_generator() -> ContentGenerator:
    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        logger.warning("OPENAI_API_KEY not configured; using local fallback generator.")
        return LocalFallbackGenerator()
    return OpenAIGenerator(client, max_tokens=settings.GENERATION_MAX_TOKENS)
