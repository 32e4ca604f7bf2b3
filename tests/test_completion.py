import pytest
from google.api_core import exceptions as google_exceptions

from bookchat.completion import (
    CompletionClient,
    CompletionConfigError,
    CompletionError,
    CompletionNetworkError,
    GeminiBackend,
    ModelUnavailableError,
    QuotaExceededError,
    build_chat_prompt,
    classify_api_error,
    create_completion_client,
    format_history,
)
from bookchat.models import Message


class FakeResponse:
    def __init__(self, text=None):
        self._text = text

    @property
    def text(self):
        if self._text is None:
            raise ValueError("response has no candidates")
        return self._text


class FakeModel:
    def __init__(self, answer):
        self.answer = answer
        self.calls = []

    def generate_content(self, prompt, request_options=None):
        self.calls.append((prompt, request_options))
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer


def gemini_with(answer, timeout=7):
    backend = GeminiBackend(api_key="test-key", timeout=timeout)
    backend._model = FakeModel(answer)
    return backend


def test_api_errors_are_classified():
    assert isinstance(
        classify_api_error(google_exceptions.InvalidArgument("API key not valid")),
        CompletionConfigError,
    )
    assert isinstance(classify_api_error(google_exceptions.PermissionDenied("no")), CompletionConfigError)
    assert isinstance(classify_api_error(google_exceptions.NotFound("models/x")), ModelUnavailableError)
    assert isinstance(classify_api_error(google_exceptions.ResourceExhausted("429")), QuotaExceededError)
    assert isinstance(
        classify_api_error(google_exceptions.InvalidArgument("Quota exceeded for project")),
        QuotaExceededError,
    )
    assert isinstance(
        classify_api_error(google_exceptions.ServiceUnavailable("down")), CompletionNetworkError
    )
    assert type(classify_api_error(google_exceptions.InternalServerError("boom"))) is CompletionError


def test_missing_key_is_a_configuration_error():
    client = CompletionClient(GeminiBackend(api_key=""))
    with pytest.raises(CompletionConfigError):
        client.complete("hello")


def test_gemini_backend_returns_response_text():
    backend = gemini_with(FakeResponse("Hi there"))
    assert backend("hello") == "Hi there"
    assert backend._model.calls == [("hello", {"timeout": 7})]


def test_gemini_backend_without_candidates_fails():
    with pytest.raises(CompletionError):
        gemini_with(FakeResponse())("hello")


def test_gemini_sdk_errors_surface_as_typed_errors():
    client = CompletionClient(gemini_with(google_exceptions.ResourceExhausted("quota")))
    with pytest.raises(QuotaExceededError):
        client.complete("hello")


def test_unexpected_backend_errors_become_completion_errors():
    def broken(prompt):
        raise KeyError("surprise")

    with pytest.raises(CompletionError):
        CompletionClient(broken).complete("hello")


def test_history_keeps_last_turns_only():
    history = [Message.create("user", f"q{i}") for i in range(7)]
    text = format_history(history, limit=5)
    assert text.splitlines() == ["User: q2", "User: q3", "User: q4", "User: q5", "User: q6"]


def test_chat_prompt_embeds_guidelines_history_and_message():
    prompt = build_chat_prompt(
        "books like Dune?",
        [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
    )
    assert prompt.startswith("You are a friendly AI book companion")
    assert "User: hi\nAssistant: hello" in prompt
    assert "Current user message: books like Dune?" in prompt


def test_unknown_provider_rejected():
    with pytest.raises(ValueError):
        create_completion_client("carrier-pigeon")
