# bookchat/completion.py
"""
Text completion backends.

``CompletionClient.complete()`` sends one prompt and returns the raw
reply text. It is stateless: callers decide how much history goes into
the prompt (see ``build_chat_prompt``). Failures are raised as one of
the ``CompletionError`` subclasses so the conversation layer can pick a
suitable message for the user.
"""

import logging
from typing import Any, Callable, Iterable, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from .config import config


logger = logging.getLogger(__name__)


class CompletionError(Exception):
    """Generic failure talking to the completion upstream."""


class CompletionConfigError(CompletionError):
    """The API key is missing or was rejected."""


class ModelUnavailableError(CompletionError):
    """The configured model or endpoint does not exist."""


class QuotaExceededError(CompletionError):
    """Quota or rate limit reached upstream."""


class CompletionNetworkError(CompletionError):
    """The upstream could not be reached (DNS, connection, timeout)."""


Backend = Callable[[str], str]


CHAT_GUIDELINES = """You are a friendly AI book companion. You can have conversations about books, reading, and literature, but also provide book recommendations when appropriate.

Guidelines:
1. Be conversational and engaging - don't always recommend books
2. When the user asks general questions, have a natural conversation
3. Only recommend specific books when the user explicitly asks for recommendations or mentions wanting something to read
4. When recommending books, use this format: **"Book Title" by Author Name**: Brief description
5. Keep responses concise and engaging
6. Use markdown formatting for better readability
7. Recommend 2-3 books maximum when giving recommendations"""


def format_history(history: Iterable[Any], limit: Optional[int] = None) -> str:
    """Serialise the last ``limit`` turns as ``User: ...`` / ``Assistant: ...`` lines."""
    limit = config.CONTEXT_MESSAGES if limit is None else limit
    items = list(history)[-limit:] if limit > 0 else []
    lines = []
    for msg in items:
        role = msg.get("role") if isinstance(msg, dict) else getattr(msg, "role", "")
        content = msg.get("content") if isinstance(msg, dict) else getattr(msg, "content", "")
        speaker = "User" if role == "user" else "Assistant"
        lines.append(f"{speaker}: {content}")
    return "\n".join(lines)


def build_chat_prompt(message: str, history: Iterable[Any] = (), limit: Optional[int] = None) -> str:
    return (
        f"{CHAT_GUIDELINES}\n\n"
        f"Previous conversation:\n{format_history(history, limit)}\n\n"
        f"Current user message: {message}\n\n"
        "Instructions:\n"
        "- If the user is asking for book recommendations, provide 2-3 specific books with titles and authors\n"
        "- If the user is asking questions about reading, books, or literature, have a conversation "
        "without necessarily recommending specific books\n"
        "- If the user is greeting or having casual conversation, respond naturally\n"
        "- Always be helpful and book-focused, but don't force recommendations when not asked\n\n"
        "Respond naturally and conversationally:"
    )


class GeminiBackend:
    """Calls Gemini through the ``google-generativeai`` SDK."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else config.GEMINI_API_KEY
        self.model = model or config.GEMINI_MODEL
        self.timeout = timeout or config.HTTP_TIMEOUT
        self._model: Any = None

    def _get_model(self) -> Any:
        if self._model is None:
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(self.model)
        return self._model

    def __call__(self, prompt: str) -> str:
        if not self.api_key:
            raise CompletionConfigError(
                "Gemini API key not configured. Set GEMINI_API_KEY in the environment."
            )
        try:
            response = self._get_model().generate_content(
                prompt, request_options={"timeout": self.timeout}
            )
        except google_exceptions.GoogleAPIError as exc:
            raise classify_api_error(exc) from exc

        try:
            return response.text
        except (ValueError, AttributeError, IndexError) as exc:
            # blocked prompts and empty candidate lists have no text accessor
            raise CompletionError("Completion response had no text candidate") from exc


def classify_api_error(exc: Exception) -> CompletionError:
    """Map a Google API exception onto a ``CompletionError`` kind."""
    detail = str(exc)
    lowered = detail.lower()
    if isinstance(exc, (google_exceptions.PermissionDenied, google_exceptions.Unauthenticated)):
        return CompletionConfigError(f"Invalid API key: {detail}")
    if isinstance(exc, google_exceptions.InvalidArgument) and "api key" in lowered:
        return CompletionConfigError(f"Invalid API key: {detail}")
    if isinstance(exc, google_exceptions.NotFound):
        return ModelUnavailableError(f"Model not available: {detail}")
    if isinstance(exc, google_exceptions.ResourceExhausted) or "quota" in lowered:
        return QuotaExceededError(f"API quota exceeded: {detail}")
    if isinstance(
        exc,
        (
            google_exceptions.ServiceUnavailable,
            google_exceptions.DeadlineExceeded,
            google_exceptions.RetryError,
        ),
    ):
        return CompletionNetworkError(f"Could not reach completion endpoint: {detail}")
    return CompletionError(f"Completion request failed: {detail}")


class LocalPipelineBackend:
    """Runs a local seq2seq model through a ``transformers`` pipeline.

    The model is loaded on first use, not at import time.
    """

    def __init__(self, model_name: Optional[str] = None, max_new_tokens: int = 256) -> None:
        self.model_name = model_name or config.LOCAL_MODEL_NAME
        self.max_new_tokens = max_new_tokens
        self._pipeline = None

    def _load(self):
        from transformers import AutoModelForSeq2SeqLM, AutoTokenizer, pipeline

        try:
            tokenizer = AutoTokenizer.from_pretrained(self.model_name)
            model = AutoModelForSeq2SeqLM.from_pretrained(self.model_name)
        except OSError as exc:
            raise ModelUnavailableError(f"Model {self.model_name} could not be loaded") from exc
        logger.info("Loaded local completion model %s", self.model_name)
        return pipeline("text2text-generation", model=model, tokenizer=tokenizer)

    def __call__(self, prompt: str) -> str:
        if self._pipeline is None:
            self._pipeline = self._load()
        result = self._pipeline(prompt, max_new_tokens=self.max_new_tokens)[0]["generated_text"]
        return result


class CompletionClient:
    """Stateless prompt-in, text-out wrapper around a backend."""

    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    def complete(self, prompt: str) -> str:
        try:
            return self.backend(prompt)
        except CompletionError as exc:
            logger.warning("Completion failed (%s): %s", type(exc).__name__, exc)
            raise
        except Exception as exc:
            logger.error("Unexpected completion failure: %s", exc)
            raise CompletionError("Failed to get response from AI assistant") from exc


def create_completion_client(provider: Optional[str] = None) -> CompletionClient:
    provider = (provider or config.COMPLETION_PROVIDER).lower()
    if provider == "local":
        return CompletionClient(LocalPipelineBackend())
    if provider == "gemini":
        return CompletionClient(GeminiBackend())
    raise ValueError(f"Unknown completion provider: {provider}")
