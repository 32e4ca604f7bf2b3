# bookchat/conversation.py
"""
Conversation turn handling.

A ``ConversationSession`` owns one user's transcript and daily counter.
Each accepted submission walks IDLE -> AWAITING_MODEL ->
AWAITING_EXTRACTION -> IDLE. Submissions are rejected (never raised)
when the input is blank, no user is signed in, a turn is still in
flight or today's cap has been reached.
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from .completion import (
    CompletionClient,
    CompletionConfigError,
    CompletionError,
    CompletionNetworkError,
    ModelUnavailableError,
    QuotaExceededError,
    build_chat_prompt,
)
from .config import config
from .extraction import ExtractionEngine
from .models import Message
from .storage import ChatStore


logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    AWAITING_EXTRACTION = "awaiting_extraction"


class Rejection(str, Enum):
    EMPTY_INPUT = "empty_input"
    NOT_AUTHENTICATED = "not_authenticated"
    BUSY = "busy"
    USAGE_EXCEEDED = "usage_exceeded"


FALLBACK_REPLIES = {
    ModelUnavailableError: (
        "\U0001F527 **Model Unavailable**: The configured AI model could not be reached. "
        "Please check the model configuration and try again!"
    ),
    CompletionConfigError: (
        "❌ **API Key Issue**: Please check your Gemini API key configuration. "
        "Make sure GEMINI_API_KEY is set correctly.\n\n"
        "\U0001F517 Get a free API key from: https://makersuite.google.com/app/apikey"
    ),
    QuotaExceededError: (
        "⚠️ **Rate Limit**: You've hit the API rate limit. "
        "Please wait a few minutes before trying again."
    ),
    CompletionNetworkError: (
        "\U0001F310 **Connection Issue**: Please check your internet connection and try again."
    ),
}

GENERIC_FALLBACK = (
    "\U0001F916 **AI Service Temporarily Unavailable**: I'm having trouble connecting right now. "
    "Please try again in a moment!\n\n"
    "\U0001F4A1 In the meantime, try searching for books using the search bar."
)


def fallback_reply(exc: Exception) -> str:
    """User-facing text for a failed completion."""
    if isinstance(exc, asyncio.TimeoutError):
        return FALLBACK_REPLIES[CompletionNetworkError]
    for kind, text in FALLBACK_REPLIES.items():
        if isinstance(exc, kind):
            return text
    return GENERIC_FALLBACK


class TurnOutcome(BaseModel):
    accepted: bool
    reason: Optional[Rejection] = None
    notice: Optional[str] = None
    user_message: Optional[Message] = None
    assistant_message: Optional[Message] = None
    usage: int = 0
    failed: bool = False


class ConversationSession:
    """One user's chat session."""

    def __init__(
        self,
        user_id: Optional[str],
        store: ChatStore,
        completion: CompletionClient,
        extraction: ExtractionEngine,
        daily_limit: Optional[int] = None,
        context_messages: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.user_id = (user_id or "").strip() or None
        self.store = store
        self.completion = completion
        self.extraction = extraction
        self.daily_limit = config.DAILY_LIMIT if daily_limit is None else daily_limit
        self.context_messages = config.CONTEXT_MESSAGES if context_messages is None else context_messages
        self.timeout = timeout or config.HTTP_TIMEOUT * 3

        self.state = TurnState.IDLE
        self.messages: List[Message] = []
        self.usage = 0
        self.show_welcome = False
        self._usage_day: Optional[date] = None

    @property
    def is_loading(self) -> bool:
        return self.state is not TurnState.IDLE

    @property
    def usage_exceeded(self) -> bool:
        return self.usage >= self.daily_limit

    async def start(self) -> None:
        """Read usage, history and the welcome flag once for the session."""
        if not self.user_id:
            return
        self.usage = await self.store.get_usage_today(self.user_id)
        self._usage_day = self.store.today()
        self.messages = await self.store.load_history(self.user_id)
        if not await self.store.has_seen_welcome(self.user_id):
            self.show_welcome = True
            await self.store.mark_welcome_seen(self.user_id)
        logger.info(
            "Session started for %s: usage=%d, %d message(s) loaded",
            self.user_id, self.usage, len(self.messages),
        )

    async def _roll_over_day(self) -> None:
        today = self.store.today()
        if self._usage_day != today:
            self.usage = await self.store.get_usage_today(self.user_id)
            self._usage_day = today

    async def refresh_usage(self) -> int:
        """Re-read today's count when the calendar day has changed."""
        if self.user_id:
            await self._roll_over_day()
        return self.usage

    def _reject(self, reason: Rejection, notice: Optional[str] = None) -> TurnOutcome:
        return TurnOutcome(accepted=False, reason=reason, notice=notice, usage=self.usage)

    async def submit(self, text: Optional[str]) -> TurnOutcome:
        text = (text or "").strip()
        if not text:
            return self._reject(Rejection.EMPTY_INPUT)
        if not self.user_id:
            return self._reject(Rejection.NOT_AUTHENTICATED)
        if self.is_loading:
            return self._reject(Rejection.BUSY)

        # claimed before the first await so a concurrent submit sees BUSY
        self.state = TurnState.AWAITING_MODEL
        try:
            await self._roll_over_day()
            if self.usage_exceeded:
                return self._reject(
                    Rejection.USAGE_EXCEEDED,
                    f"You've reached your daily limit of {self.daily_limit} chats. Try again tomorrow!",
                )

            history = list(self.messages)
            user_message = Message.create("user", text)
            self.messages.append(user_message)
            await self.store.append_message(self.user_id, user_message)

            prompt = build_chat_prompt(text, history, self.context_messages)
            try:
                reply = await asyncio.wait_for(
                    asyncio.to_thread(self.completion.complete, prompt), self.timeout
                )
            except (CompletionError, asyncio.TimeoutError) as exc:
                logger.warning("Chat completion failed for %s: %r", self.user_id, exc)
                fallback = Message.create("assistant", fallback_reply(exc))
                self.messages.append(fallback)
                return TurnOutcome(
                    accepted=True,
                    user_message=user_message,
                    assistant_message=fallback,
                    usage=self.usage,
                    failed=True,
                )

            self.state = TurnState.AWAITING_EXTRACTION
            books = await self.extraction.extract_books(reply, text)

            assistant_message = Message.create("assistant", reply, books or None)
            self.messages.append(assistant_message)
            await self.store.append_message(self.user_id, assistant_message)

            persisted = await self.store.increment_usage(self.user_id, self.usage)
            if persisted == self.usage:
                logger.warning("Usage for %s not persisted; counting in memory only", self.user_id)
            self.usage += 1
        finally:
            self.state = TurnState.IDLE

        return TurnOutcome(
            accepted=True,
            user_message=user_message,
            assistant_message=assistant_message,
            usage=self.usage,
        )


class SessionRegistry:
    """In-process map of user id to started session.

    Holds at most ``max_sessions`` entries; the least recently used idle
    session is dropped first. A dropped user is started afresh from the
    store on the next request.
    """

    def __init__(
        self,
        store: ChatStore,
        completion: CompletionClient,
        extraction: ExtractionEngine,
        max_sessions: Optional[int] = None,
    ):
        self.store = store
        self.completion = completion
        self.extraction = extraction
        self.max_sessions = max_sessions or config.MAX_SESSIONS
        self._sessions: "OrderedDict[str, ConversationSession]" = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _evict(self) -> None:
        for key in list(self._sessions):
            if len(self._sessions) <= self.max_sessions:
                break
            if self._sessions[key].is_loading:
                continue
            del self._sessions[key]
            logger.debug("Evicted idle session for %s", key)

    async def get(self, user_id: str) -> ConversationSession:
        key = (user_id or "").strip()
        async with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                self._sessions.move_to_end(key)
                return session
            session = ConversationSession(key, self.store, self.completion, self.extraction)
            await session.start()
            if key:
                self._sessions[key] = session
                self._evict()
            return session
