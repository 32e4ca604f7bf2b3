# bookchat/models.py
import uuid
from datetime import date, datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field
from typing_extensions import Literal

from .catalog.schemas import Book, placeholder_initials


Role = Literal["user", "assistant"]

MAX_BOOKS_PER_MESSAGE = 3


def new_message_id(role: str) -> str:
    return f"{role}-{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """One transcript entry.

    ``books`` is ``None`` when a reply carried no recommendations, which
    keeps it distinct from a list that has not been computed yet.
    """

    id: str
    role: Role
    content: str
    books: Optional[List[Book]] = None
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def create(cls, role: Role, content: str, books: Optional[List[Book]] = None) -> "Message":
        books = list(books[:MAX_BOOKS_PER_MESSAGE]) if books else None
        return cls(id=new_message_id(role), role=role, content=content, books=books)


class UsageRecord(BaseModel):
    user_id: str
    day: date
    count: int = 0


class ChatRequest(BaseModel):
    message: str


class BookCard(Book):
    """A ``Book`` as rendered in the chat panel."""

    initials: str

    @classmethod
    def from_book(cls, book: Book) -> "BookCard":
        return cls(**book.model_dump(), initials=placeholder_initials(book.title, book.authors))


class MessageOut(BaseModel):
    id: str
    role: Role
    content: str
    books: Optional[List[BookCard]] = None
    created_at: datetime

    @classmethod
    def from_message(cls, message: Message) -> "MessageOut":
        cards = [BookCard.from_book(b) for b in message.books] if message.books else None
        return cls(
            id=message.id,
            role=message.role,
            content=message.content,
            books=cards,
            created_at=message.created_at,
        )


class ChatResponse(BaseModel):
    accepted: bool
    reason: Optional[str] = None
    notice: Optional[str] = None
    message: Optional[MessageOut] = None
    usage: int
    daily_limit: int


class UsageOut(BaseModel):
    user_id: str
    count: int
    daily_limit: int
    limit_reached: bool


class WelcomeOut(BaseModel):
    show: bool
