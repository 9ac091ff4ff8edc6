from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import GenerationError

if TYPE_CHECKING:
    from ..config import CaptureMemConfig

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 60
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-haiku-latest"
PROVIDERS = ("openai", "anthropic", "heuristic")

_FILLER_RE = re.compile(r"\b(?:um+|uh+|erm|you know|i mean)\b[,]?\s*", re.IGNORECASE)
_SPACE_RE = re.compile(r"\s+")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")

TITLE_SYSTEM = "You generate concise, engaging titles for personal memories."
CLEANUP_SYSTEM = (
    "You process transcribed text into a clean, readable format while preserving all "
    "information."
)
NARRATIVE_SYSTEM = (
    "You transform transcripts into polished, engaging narrative stories while preserving "
    "the speaker's voice and meaning."
)


def title_prompt(text: str, *, max_chars: int = MAX_TITLE_CHARS) -> str:
    return (
        f"Generate a concise, engaging title (maximum {max_chars} characters) for this "
        "memory. Capture the essence of what happened. Return only the title text.\n\n"
        f"Text: {text}"
    )


def cleanup_prompt(text: str) -> str:
    return (
        "Transform this dictated text into clean, readable text. Break up run-on "
        "sentences and remove filler words (um, uh, you know, I mean). Preserve all "
        "information and the speaker's voice; do not add anything.\n\n"
        f"Original text: {text}\n\n"
        "Return only the cleaned text."
    )


def narrative_prompt(text: str) -> str:
    return (
        "Transform this transcript into a polished narrative story with natural "
        "paragraphs. Remove filler words, keep the key details and the emotion of the "
        "memory, and write in first or third person as appropriate.\n\n"
        f"Transcript: {text}\n\n"
        "Return only the narrative text."
    )


def truncate_title(title: str, max_chars: int = MAX_TITLE_CHARS) -> str:
    """Strip wrapping quotes and cut at a word boundary, marking the cut with "..."."""
    cleaned = title.strip()
    if len(cleaned) >= 2 and cleaned[0] in "\"'" and cleaned[-1] in "\"'":
        cleaned = cleaned[1:-1].strip()
    else:
        cleaned = cleaned.strip("\"'").strip()
    if len(cleaned) <= max_chars:
        return cleaned
    cut = cleaned[:max_chars]
    last_space = cut.rfind(" ")
    if last_space > max_chars * 0.5:
        return cut[:last_space].rstrip() + "..."
    return cut + "..."


def _require_output(step: str, content: str | None) -> str:
    text = (content or "").strip()
    if not text:
        raise GenerationError(f"{step} returned no content")
    return text


class TextGenerator(Protocol):
    def generate_title(self, text: str) -> str: ...

    def process_text(self, text: str) -> str: ...

    def generate_narrative(self, text: str) -> str: ...


class OpenAIGenerator:
    def __init__(
        self,
        *,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        title_max_chars: int = MAX_TITLE_CHARS,
        client: Any | None = None,
    ) -> None:
        self.model = model or DEFAULT_OPENAI_MODEL
        self.title_max_chars = title_max_chars
        if client is None:
            from openai import OpenAI

            client = OpenAI(api_key=api_key, base_url=base_url)
        self.client = client

    def _complete(self, system: str, prompt: str, *, max_tokens: int) -> str | None:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
        )
        return resp.choices[0].message.content

    def generate_title(self, text: str) -> str:
        raw = self._complete(
            TITLE_SYSTEM, title_prompt(text, max_chars=self.title_max_chars), max_tokens=60
        )
        title = truncate_title(_require_output("title generation", raw), self.title_max_chars)
        return _require_output("title generation", title)

    def process_text(self, text: str) -> str:
        return _require_output(
            "text processing", self._complete(CLEANUP_SYSTEM, cleanup_prompt(text), max_tokens=2000)
        )

    def generate_narrative(self, text: str) -> str:
        return _require_output(
            "narrative generation",
            self._complete(NARRATIVE_SYSTEM, narrative_prompt(text), max_tokens=3000),
        )


class AnthropicGenerator:
    def __init__(
        self,
        *,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        title_max_chars: int = MAX_TITLE_CHARS,
        client: Any | None = None,
    ) -> None:
        self.model = model or DEFAULT_ANTHROPIC_MODEL
        self.title_max_chars = title_max_chars
        if client is None:
            import anthropic

            client = anthropic.Anthropic(api_key=api_key, base_url=base_url)
        self.client = client

    def _complete(self, system: str, prompt: str, *, max_tokens: int) -> str | None:
        resp = self.client.messages.create(
            model=self.model,
            system=system,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
        )
        parts = [getattr(block, "text", "") for block in resp.content]
        return "".join(part for part in parts if part)

    def generate_title(self, text: str) -> str:
        raw = self._complete(
            TITLE_SYSTEM, title_prompt(text, max_chars=self.title_max_chars), max_tokens=60
        )
        title = truncate_title(_require_output("title generation", raw), self.title_max_chars)
        return _require_output("title generation", title)

    def process_text(self, text: str) -> str:
        return _require_output(
            "text processing", self._complete(CLEANUP_SYSTEM, cleanup_prompt(text), max_tokens=2000)
        )

    def generate_narrative(self, text: str) -> str:
        return _require_output(
            "narrative generation",
            self._complete(NARRATIVE_SYSTEM, narrative_prompt(text), max_tokens=3000),
        )


class HeuristicGenerator:
    """Offline generator: no network, deterministic output."""

    def __init__(self, *, title_max_chars: int = MAX_TITLE_CHARS) -> None:
        self.title_max_chars = title_max_chars

    def process_text(self, text: str) -> str:
        cleaned = _FILLER_RE.sub("", text)
        cleaned = _SPACE_RE.sub(" ", cleaned).strip()
        sentences = [s.strip() for s in _SENTENCE_RE.split(cleaned) if s.strip()]
        sentences = [s[0].upper() + s[1:] for s in sentences]
        result = " ".join(sentences)
        if result and result[-1] not in ".!?":
            result += "."
        return _require_output("text processing", result)

    def generate_title(self, text: str) -> str:
        cleaned = self.process_text(text)
        first = _SENTENCE_RE.split(cleaned, maxsplit=1)[0].rstrip(".!?")
        return _require_output("title generation", truncate_title(first, self.title_max_chars))

    def generate_narrative(self, text: str) -> str:
        sentences = _SENTENCE_RE.split(self.process_text(text))
        paragraphs = [" ".join(sentences[i : i + 3]) for i in range(0, len(sentences), 3)]
        return _require_output("narrative generation", "\n\n".join(paragraphs))


def build_generator(config: CaptureMemConfig) -> TextGenerator:
    provider = (config.generator_provider or "openai").strip().lower()
    if provider not in PROVIDERS:
        raise ValueError(f"unknown generator provider: {provider}")
    logger.debug("generator_selected provider=%s model=%s", provider, config.generator_model)
    if provider == "heuristic":
        return HeuristicGenerator(title_max_chars=config.title_max_chars)
    if provider == "anthropic":
        return AnthropicGenerator(
            model=config.generator_model,
            api_key=config.generator_api_key,
            base_url=config.generator_base_url,
            title_max_chars=config.title_max_chars,
        )
    return OpenAIGenerator(
        model=config.generator_model,
        api_key=config.generator_api_key,
        base_url=config.generator_base_url,
        title_max_chars=config.title_max_chars,
    )
