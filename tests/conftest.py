import asyncio
import time
from datetime import date

import pytest

from bookchat.catalog.schemas import Book
from bookchat.storage import ChatStore


def make_book(title, authors=None, **extra):
    return Book(
        id=extra.pop("id", f"/works/{title.replace(' ', '')}"),
        title=title,
        authors=authors or [],
        **extra,
    )


class FakeCompletion:
    """Answers by prompt kind; an Exception instance as answer is raised."""

    def __init__(self, chat="", gate="NO", extract="[]", delay=0):
        self.answers = {"chat": chat, "gate": gate, "extract": extract}
        self.delay = delay
        self.calls = []

    @staticmethod
    def kind(prompt):
        if prompt.startswith("Analyze this conversation"):
            return "gate"
        if prompt.startswith("Extract book titles"):
            return "extract"
        return "chat"

    def complete(self, prompt):
        kind = self.kind(prompt)
        self.calls.append((kind, prompt))
        time.sleep(self.delay)
        answer = self.answers[kind]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def count(self, kind):
        return sum(1 for k, _ in self.calls if k == kind)


class FakeCatalog:
    def __init__(self, results=None, delays=None, books=None):
        self.results = results or {}
        self.delays = delays or {}
        self.books = books or {}
        self.queries = []

    def search(self, query, max_results=10):
        self.queries.append(query)
        time.sleep(self.delays.get(query, 0))
        return list(self.results.get(query, []))[:max_results]

    def get_book(self, book_id):
        return self.books.get(book_id)


class FakeClock:
    def __init__(self, day=date(2026, 10, 17)):
        self.day = day

    def __call__(self):
        return self.day


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    chat_store = ChatStore(db_path=str(tmp_path / "chat.db"), today=clock)
    asyncio.run(chat_store.init_db())
    return chat_store
