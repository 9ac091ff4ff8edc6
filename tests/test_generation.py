from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from capturemem.config import CaptureMemConfig
from capturemem.errors import GenerationError
from capturemem.server.generation import (
    AnthropicGenerator,
    HeuristicGenerator,
    OpenAIGenerator,
    build_generator,
    truncate_title,
)


class FakeOpenAIClient:
    def __init__(self, replies: list[str | None]) -> None:
        self.replies = list(replies)
        self.requests: list[dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs: Any) -> SimpleNamespace:
        self.requests.append(kwargs)
        content = self.replies.pop(0)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeAnthropicClient:
    def __init__(self, replies: list[str]) -> None:
        self.replies = list(replies)
        self.requests: list[dict[str, Any]] = []
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs: Any) -> SimpleNamespace:
        self.requests.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.replies.pop(0))])


def test_truncate_title_strips_quotes() -> None:
    assert truncate_title('"Lunch with Sam"') == "Lunch with Sam"
    assert truncate_title("  'Beach day'  ") == "Beach day"


def test_truncate_title_cuts_at_a_late_word_boundary() -> None:
    title = "An unexpectedly long afternoon walk along the river with everyone"
    result = truncate_title(title, 40)
    assert result == "An unexpectedly long afternoon walk..."
    assert len(result) <= 43


def test_truncate_title_hard_cuts_when_boundary_is_early() -> None:
    title = "Supercalifragilisticexpialidocious adventures"
    assert truncate_title(title, 20) == "Supercalifragilistic..."


def test_openai_generator_uses_chat_completions() -> None:
    client = FakeOpenAIClient(['"Lunch with Sam"', "Lunch with Sam at noon.", "Once, Sam and I."])
    generator = OpenAIGenerator(model="gpt-test", client=client)

    assert generator.generate_title("lunch with sam") == "Lunch with Sam"
    assert generator.process_text("um lunch with sam at noon") == "Lunch with Sam at noon."
    assert generator.generate_narrative("sam and i") == "Once, Sam and I."
    assert [req["model"] for req in client.requests] == ["gpt-test"] * 3
    assert client.requests[0]["messages"][0]["role"] == "system"
    assert "lunch with sam" in client.requests[0]["messages"][1]["content"]


@pytest.mark.parametrize("reply", [None, "", "   ", '""'])
def test_empty_model_output_is_a_generation_error(reply: str | None) -> None:
    generator = OpenAIGenerator(client=FakeOpenAIClient([reply]))
    with pytest.raises(GenerationError):
        generator.generate_title("lunch with sam")


def test_anthropic_generator_uses_messages_api() -> None:
    client = FakeAnthropicClient(["Beach Day", "We went to the beach."])
    generator = AnthropicGenerator(model="claude-test", client=client)

    assert generator.generate_title("beach") == "Beach Day"
    assert generator.process_text("uh we went to the beach") == "We went to the beach."
    assert client.requests[0]["system"]
    assert client.requests[1]["model"] == "claude-test"


def test_heuristic_generator_cleans_filler_words() -> None:
    generator = HeuristicGenerator()
    text = "um so we had lunch with sam.  it was, you know, great"

    assert generator.process_text(text) == "So we had lunch with sam. It was, great."
    assert generator.generate_title(text) == "So we had lunch with sam"


def test_heuristic_narrative_groups_sentences_into_paragraphs() -> None:
    generator = HeuristicGenerator()
    text = "One. Two. Three. Four."
    assert generator.generate_narrative(text) == "One. Two. Three.\n\nFour."


def test_heuristic_generator_rejects_filler_only_text() -> None:
    with pytest.raises(GenerationError):
        HeuristicGenerator().process_text("um uh")


def test_build_generator_selects_provider() -> None:
    assert isinstance(
        build_generator(CaptureMemConfig(generator_provider="heuristic")), HeuristicGenerator
    )
    with pytest.raises(ValueError, match="unknown generator provider"):
        build_generator(CaptureMemConfig(generator_provider="llama"))
