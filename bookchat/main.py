# bookchat/main.py
import logging
import sys
from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, Request

from .catalog import catalog_router
from .catalog.router import get_catalog_client
from .completion import create_completion_client
from .config import config
from .conversation import ConversationSession, SessionRegistry
from .extraction import ExtractionEngine
from .models import ChatRequest, ChatResponse, MessageOut, UsageOut, WelcomeOut
from .storage import ChatStore


def setup_logging(level: str = config.LOG_LEVEL) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
    root.setLevel(level)


logger = logging.getLogger(__name__)


def build_registry(store: ChatStore) -> SessionRegistry:
    completion = create_completion_client()
    extraction = ExtractionEngine(completion, get_catalog_client())
    return SessionRegistry(store, completion, extraction)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    store = ChatStore()
    try:
        await store.init_db()
    except Exception as exc:
        logger.error("Chat store init skipped: %s", exc)
    app.state.sessions = build_registry(store)
    yield


app = FastAPI(
    title="Book Chat",
    description=(
        "Book discovery service: Open Library catalogue search and an AI "
        "reading companion whose replies are turned into book cards."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(catalog_router)


async def get_session(user_id: str, request: Request) -> ConversationSession:
    registry: SessionRegistry = request.app.state.sessions
    return await registry.get(user_id)


@app.get("/")
def health_check():
    return {"status": "ok", "message": "Book chat is live"}


@app.post("/api/chat/{user_id}", response_model=ChatResponse)
async def chat(req: ChatRequest, session: ConversationSession = Depends(get_session)):
    outcome = await session.submit(req.message)
    return ChatResponse(
        accepted=outcome.accepted,
        reason=outcome.reason.value if outcome.reason else None,
        notice=outcome.notice,
        message=MessageOut.from_message(outcome.assistant_message) if outcome.assistant_message else None,
        usage=outcome.usage,
        daily_limit=session.daily_limit,
    )


@app.get("/api/chat/{user_id}/history", response_model=List[MessageOut])
async def history(session: ConversationSession = Depends(get_session)):
    return [MessageOut.from_message(m) for m in session.messages]


@app.get("/api/chat/{user_id}/usage", response_model=UsageOut)
async def usage(user_id: str, session: ConversationSession = Depends(get_session)):
    count = await session.refresh_usage()
    return UsageOut(
        user_id=user_id,
        count=count,
        daily_limit=session.daily_limit,
        limit_reached=session.usage_exceeded,
    )


@app.get("/api/chat/{user_id}/welcome", response_model=WelcomeOut)
async def welcome(session: ConversationSession = Depends(get_session)):
    show = session.show_welcome
    session.show_welcome = False
    return WelcomeOut(show=show)
