"""Tests for AI providers and the provider registry."""

from unittest.mock import MagicMock

from llm.provider import (
    AiCompletionResponse,
    LangChainProvider,
    ProviderRegistry,
    build_registry,
    is_error_text,
)


def _provider(invoke_result=None, invoke_error=None):
    llm = MagicMock()
    if invoke_error is not None:
        llm.invoke.side_effect = invoke_error
    else:
        llm.invoke.return_value = invoke_result
    factory = MagicMock(return_value=llm)
    return LangChainProvider(name="test", model="test-model", model_factory=factory), factory, llm


class TestIsErrorText:
    def test_error_tags(self):
        assert is_error_text("[gemini error] quota exceeded")
        assert not is_error_text("[1] first item")
        assert not is_error_text("Plain answer")
        assert not is_error_text("")


class TestLangChainProvider:
    """Tests for LangChainProvider.complete."""

    def test_returns_text_and_usage(self):
        result = MagicMock()
        result.content = "  A summary.  "
        result.usage_metadata = {"input_tokens": 12, "output_tokens": 4}
        provider, factory, llm = _provider(result)

        response = provider.complete(
            [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "Summarize"}],
            max_tokens=150,
            temperature=0.3,
        )

        assert response.text == "A summary."
        assert response.input_tokens == 12
        assert response.output_tokens == 4
        assert response.provider == "test"
        assert response.is_error is False
        factory.assert_called_once_with(150, 0.3)
        messages = llm.invoke.call_args.args[0]
        assert [m.type for m in messages] == ["system", "human"]

    def test_list_content(self):
        """Test that multi-part message content is joined."""
        result = MagicMock()
        result.content = [{"type": "text", "text": "Hello "}, {"type": "text", "text": "world"}]
        result.usage_metadata = None
        provider, _, _ = _provider(result)

        response = provider.complete([{"role": "user", "content": "Hi"}])

        assert response.text == "Hello world"
        assert response.input_tokens == 0

    def test_errors_do_not_raise(self):
        provider, _, _ = _provider(invoke_error=RuntimeError("quota exceeded"))

        response = provider.complete([{"role": "user", "content": "Hi"}])

        assert response.text == "[test error] quota exceeded"
        assert response.is_error is True
        assert response.output_tokens == 0


class TestRegistry:
    def test_default_provider(self):
        registry = ProviderRegistry()
        first = MagicMock()
        first.name = "first"
        second = MagicMock()
        second.name = "second"

        registry.register(first)
        registry.register(second)
        assert registry.get() is first

        registry.register(second, default=True)
        assert registry.get() is second
        assert registry.get("first") is first
        assert registry.get("missing") is None
        assert registry.names() == ["first", "second"]

    def test_build_registry(self):
        assert build_registry("gemini", "gemini-2.5-flash", "").get() is None
        assert build_registry("unknown", "model", "key").get() is None

        provider = build_registry("gemini", "gemini-2.5-flash", "key").get()
        assert provider.name == "gemini"
        assert provider.model == "gemini-2.5-flash"


class TestAiCompletionResponse:
    def test_is_error(self):
        response = AiCompletionResponse("[gemini error] x", 0, 0, "m", "gemini", 0)
        assert response.is_error


class TestWithFakeChatModel:
    def test_fake_list_chat_model(self):
        """Test the provider against a real LangChain chat model implementation."""
        from langchain_core.language_models.fake_chat_models import FakeListChatModel

        provider = LangChainProvider(
            name="fake",
            model="fake-model",
            model_factory=lambda max_tokens, temperature: FakeListChatModel(responses=["Fake summary."]),
        )

        response = provider.complete([{"role": "user", "content": "Summarize"}], max_tokens=10)

        assert response.text == "Fake summary."
        assert response.provider == "fake"
        assert response.is_error is False
