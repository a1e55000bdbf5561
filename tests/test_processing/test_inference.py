"""Tests for AnthropicInferenceClient — the Anthropic API and embedder are mocked."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from anthropic.types import TextBlock

from src.processing.inference import (
    AnthropicInferenceClient,
    InferenceClient,
    InferenceError,
)


# ── Helpers ────────────────────────────────────────────────────────────────────


def make_response(*texts: str, stop_reason: str = "end_turn") -> MagicMock:
    response = MagicMock()
    response.content = [TextBlock(type="text", text=t) for t in texts]
    response.stop_reason = stop_reason
    return response


@pytest.fixture
def embedder() -> MagicMock:
    return MagicMock(return_value=[[0.25, 0.5, 0.75]])


@pytest.fixture
def client(embedder: MagicMock) -> AnthropicInferenceClient:
    with patch("src.processing.inference.AsyncAnthropic") as anthropic_cls:
        anthropic_cls.return_value.messages.create = AsyncMock(
            return_value=make_response("A summary.")
        )
        c = AnthropicInferenceClient(api_key="test-key", embedding_function=embedder)
    return c


def create_mock(client: AnthropicInferenceClient) -> AsyncMock:
    return client._client.messages.create  # type: ignore[return-value]


# ── complete ───────────────────────────────────────────────────────────────────


class TestComplete:
    def test_satisfies_protocol(self, client: AnthropicInferenceClient) -> None:
        assert isinstance(client, InferenceClient)

    async def test_returns_text(self, client: AnthropicInferenceClient) -> None:
        assert await client.complete("system", "user") == "A summary."

    async def test_sends_prompts_with_default_model(self, client: AnthropicInferenceClient) -> None:
        await client.complete("be brief", "<thread/>")

        kwargs = create_mock(client).call_args.kwargs
        assert kwargs["model"] == "claude-haiku-4-5-20251001"
        assert kwargs["system"] == "be brief"
        assert kwargs["messages"] == [{"role": "user", "content": "<thread/>"}]

    async def test_model_override(self, client: AnthropicInferenceClient) -> None:
        await client.complete("s", "u", model="claude-sonnet-4-6")
        assert create_mock(client).call_args.kwargs["model"] == "claude-sonnet-4-6"

    async def test_joins_and_strips_text_blocks(self, client: AnthropicInferenceClient) -> None:
        create_mock(client).return_value = make_response("  Billing,", " FYI \n")
        assert await client.complete("s", "u") == "Billing, FYI"

    async def test_empty_text_raises(self, client: AnthropicInferenceClient) -> None:
        create_mock(client).return_value = make_response("   ", stop_reason="max_tokens")
        with pytest.raises(InferenceError, match="max_tokens"):
            await client.complete("s", "u")

    async def test_api_errors_propagate(self, client: AnthropicInferenceClient) -> None:
        create_mock(client).side_effect = RuntimeError("overloaded")
        with pytest.raises(RuntimeError):
            await client.complete("s", "u")


# ── embed ──────────────────────────────────────────────────────────────────────


class TestEmbed:
    async def test_returns_first_vector_as_floats(
        self, client: AnthropicInferenceClient, embedder: MagicMock
    ) -> None:
        assert await client.embed("budget review") == [0.25, 0.5, 0.75]
        embedder.assert_called_once_with(["budget review"])

    async def test_blank_text_skips_embedder(
        self, client: AnthropicInferenceClient, embedder: MagicMock
    ) -> None:
        assert await client.embed("  \n") == []
        embedder.assert_not_called()

    async def test_no_vectors_raises(
        self, client: AnthropicInferenceClient, embedder: MagicMock
    ) -> None:
        embedder.return_value = []
        with pytest.raises(InferenceError):
            await client.embed("budget")
