"""Application configuration loaded from the environment."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load the project-level .env regardless of the working directory
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class Config:
    """Settings shared by the completion, catalogue and store layers."""

    # Completion backend: "gemini" (hosted) or "local" (transformers pipeline)
    COMPLETION_PROVIDER = os.getenv("COMPLETION_PROVIDER", "gemini").lower()

    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

    LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "google/flan-t5-base")

    # Open Library
    OPENLIBRARY_BASE_URL = os.getenv("OPENLIBRARY_BASE_URL", "https://openlibrary.org")
    OPENLIBRARY_COVERS_URL = os.getenv(
        "OPENLIBRARY_COVERS_URL", "https://covers.openlibrary.org"
    )

    # Timeouts (seconds)
    HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10"))
    STORE_TIMEOUT = float(os.getenv("STORE_TIMEOUT", "5"))

    # Store
    CHAT_DB_PATH = os.getenv("CHAT_DB_PATH", "data/chat.db")

    # Chat policy
    DAILY_LIMIT = int(os.getenv("DAILY_LIMIT", "10"))
    HISTORY_LOAD_LIMIT = int(os.getenv("HISTORY_LOAD_LIMIT", "20"))
    CONTEXT_MESSAGES = int(os.getenv("CONTEXT_MESSAGES", "5"))
    MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "256"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


config = Config()
