import asyncio
from datetime import date, datetime, timedelta, timezone

from bookchat.models import Message
from bookchat.storage import ChatStore

from .conftest import FakeClock, make_book


def run(coro):
    return asyncio.run(coro)


def test_usage_is_keyed_by_day(store, clock):
    assert run(store.get_usage_today("reader-1")) == 0
    assert run(store.increment_usage("reader-1", 4)) == 5
    assert run(store.get_usage_today("reader-1")) == 5

    clock.day = clock.day + timedelta(days=1)
    assert run(store.get_usage_today("reader-1")) == 0


def test_usage_upsert_keeps_one_row_per_day(store):
    run(store.increment_usage("reader-1", 0))
    run(store.increment_usage("reader-1", 1))
    record = run(store.get_usage_record("reader-1"))
    assert record.count == 2
    assert record.day == date(2026, 10, 17)


def test_usage_is_per_user(store):
    run(store.increment_usage("reader-1", 2))
    assert run(store.get_usage_today("reader-2")) == 0


def test_message_round_trip(store):
    book = make_book(
        "Atomic Habits",
        ["James Clear"],
        cover="https://covers.example/1.jpg",
        cover_urls=["https://covers.example/1.jpg", "https://covers.example/2.jpg"],
        published_date=2018,
        categories=["Habit"],
    )
    question = Message.create("user", "Something on habits?")
    answer = Message.create("assistant", 'Try **"Atomic Habits" by James Clear**', [book])

    run(store.append_message("reader-1", question))
    run(store.append_message("reader-1", answer))
    history = run(store.load_history("reader-1"))

    assert [m.id for m in history] == [question.id, answer.id]
    assert history[0].books is None
    assert history[1].role == "assistant"
    assert history[1].content == answer.content
    assert history[1].books == [book]


def test_history_is_user_scoped(store):
    run(store.append_message("reader-1", Message.create("user", "mine")))
    assert run(store.load_history("reader-2")) == []


def test_history_returns_latest_twenty_oldest_first(store):
    start = datetime(2026, 10, 17, 8, 0, tzinfo=timezone.utc)
    for i in range(25):
        message = Message(id=f"user-{i}", role="user", content=f"msg {i}",
                          created_at=start + timedelta(minutes=i))
        run(store.append_message("reader-1", message))

    history = run(store.load_history("reader-1"))

    assert len(history) == 20
    assert history[0].content == "msg 5"
    assert history[-1].content == "msg 24"


def test_welcome_preference(store):
    assert run(store.has_seen_welcome("reader-1")) is False
    run(store.mark_welcome_seen("reader-1"))
    assert run(store.has_seen_welcome("reader-1")) is True
    assert run(store.has_seen_welcome("reader-2")) is False


def test_missing_tables_disable_store_for_session(tmp_path):
    store = ChatStore(db_path=str(tmp_path / "empty.db"), today=FakeClock())
    connects = []
    original = store._connect

    def counting_connect():
        connects.append(1)
        return original()

    store._connect = counting_connect

    assert run(store.get_usage_today("reader-1")) == 0
    assert store.unavailable
    assert len(connects) == 1

    assert run(store.load_history("reader-1")) == []
    assert run(store.increment_usage("reader-1", 3)) == 3
    run(store.append_message("reader-1", Message.create("user", "hello")))
    assert run(store.has_seen_welcome("reader-1")) is False
    run(store.mark_welcome_seen("reader-1"))
    assert len(connects) == 1


def test_anonymous_calls_are_noops(store):
    assert run(store.get_usage_today("")) == 0
    assert run(store.increment_usage("", 2)) == 2
    assert run(store.load_history("")) == []
