# bookchat/extraction.py
"""
Turn an assistant reply into at most three book cards.

The pipeline runs in three stages:

1. A relevance gate asks the completion backend whether the reply names
   books worth showing as cards. When that call fails a keyword
   heuristic decides instead. A negative answer stops here, before any
   catalogue request is made.
2. Candidate "Title Author" strings are collected from several layers:
   a JSON extraction call, the ``**"Title" by Author**`` markdown
   convention, a small table of well-known titles and finally any
   plausible quoted span. Candidates are de-duplicated case-insensitively
   and keep their insertion order.
3. The first three candidates are looked up in the catalogue
   concurrently; the best hit of each is kept, in candidate order.

Each stage reports its outcome as a small result value carrying an
optional error. ``ExtractionEngine.extract_books`` maps every error to an
empty list so a chat turn never fails because cards could not be built.
"""

import asyncio
import json
import logging
import re
from typing import Dict, List, NamedTuple, Optional

from .catalog.openlibrary_service import CatalogClient
from .catalog.schemas import Book
from .completion import CompletionClient
from .config import config


logger = logging.getLogger(__name__)

MAX_BOOKS = 3
MAX_CANDIDATES_RESOLVED = 3
MAX_LLM_CANDIDATES = 3
QUOTED_LAYER_CAP = 5
CARD_CATEGORY_LIMIT = 3

RECOMMENDATION_PATTERN = re.compile(r'\*\*"([^"]+)"\s+by\s+([^*]+?)\*\*', re.IGNORECASE)
QUOTED_PATTERN = re.compile(r'"([A-Za-z][^"]{5,50})"')

# Well-known titles that are often mentioned without the markdown convention
KNOWN_TITLES = [
    (("atomic habits",), "Atomic Habits James Clear"),
    (("the power of now",), "The Power of Now Eckhart Tolle"),
    (("mindset",), "Mindset Carol Dweck"),
    (("educated",), "Educated Tara Westover"),
    (("sapiens",), "Sapiens Yuval Noah Harari"),
]

GATE_PROMPT = """Analyze this conversation to determine if the assistant's response contains book recommendations or mentions specific books that should be displayed as cards.

User message: "{user_message}"
Assistant response: "{reply}"

Respond with only "YES" if the assistant response:
- Recommends specific books
- Mentions book titles that should be shown as cards
- Discusses books in a way that would benefit from showing book cards

Respond with only "NO" if the assistant response:
- Only talks about books generally without mentioning specific titles
- Asks clarifying questions
- Discusses reading habits/preferences without specific recommendations

Response:"""

EXTRACTION_PROMPT = """Extract book titles and authors from this conversation. Focus on specific book recommendations or mentions.

User message: "{user_message}"
Assistant response: "{reply}"

Return ONLY a JSON array of strings in the format "Title Author" for each book mentioned.
If the user asked for books SIMILAR to a mentioned book, include similar books, not the original book itself.
Maximum 3 books.

Examples:
- If text mentions "Atomic Habits by James Clear", return: ["Atomic Habits James Clear"]
- If user asks for "books like Atomic Habits", return similar books like: ["The Power of Habit Charles Duhigg", "Tiny Habits BJ Fogg"]

JSON Array:"""


class GateDecision(NamedTuple):
    relevant: bool
    source: str  # "classifier" or "heuristic"
    error: Optional[Exception] = None


class LayerResult(NamedTuple):
    candidates: List[str]
    error: Optional[Exception] = None


class ExtractionResult(NamedTuple):
    books: List[Book]
    candidates: List[str]
    gate: Optional[GateDecision] = None
    error: Optional[Exception] = None


def normalize_candidate(text: str) -> str:
    return " ".join(text.split()).casefold()


class CandidateSet:
    """Insertion-ordered set of candidate strings keyed by normalised form."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def add(self, candidate: str) -> None:
        candidate = " ".join((candidate or "").split())
        if candidate:
            self._items.setdefault(normalize_candidate(candidate), candidate)

    def update(self, candidates: List[str]) -> None:
        for c in candidates:
            self.add(c)

    def __len__(self) -> int:
        return len(self._items)

    def to_list(self) -> List[str]:
        return list(self._items.values())


def heuristic_relevance(reply: str, user_message: str) -> bool:
    """Keyword fallback used when the classifier call is unavailable."""
    return (
        "recommend" in reply.lower()
        or '**"' in reply
        or "books like" in user_message.lower()
    )


def parse_gate_answer(answer: str) -> bool:
    return (answer or "").strip().upper() == "YES"


def parse_candidate_array(answer: str) -> LayerResult:
    """Parse the extraction call's answer as a JSON array of strings."""
    try:
        value = json.loads((answer or "").strip())
    except ValueError as exc:
        return LayerResult([], exc)
    if not isinstance(value, list):
        return LayerResult([], ValueError("extraction answer is not a JSON array"))
    return LayerResult([v for v in value if isinstance(v, str)][:MAX_LLM_CANDIDATES])


def pattern_candidates(reply: str) -> List[str]:
    """``**"Title" by Author**`` pairs as ``Title Author`` strings."""
    found = []
    for match in RECOMMENDATION_PATTERN.finditer(reply):
        title = match.group(1).strip()
        author = match.group(2).strip()
        if len(title) > 2:
            found.append(f"{title} {author}")
    return found


def keyword_candidates(reply: str) -> List[str]:
    lowered = reply.lower()
    return [search for keywords, search in KNOWN_TITLES if any(k in lowered for k in keywords)]


def quoted_candidates(reply: str, candidates: CandidateSet) -> None:
    """Add plausible quoted titles while the set holds fewer than five."""
    for match in QUOTED_PATTERN.finditer(reply):
        title = match.group(1).strip()
        if (
            5 < len(title) < 50
            and "?" not in title
            and "!" not in title
            and len(candidates) < QUOTED_LAYER_CAP
        ):
            candidates.add(title)


class ExtractionEngine:
    """Decides whether a reply gets book cards and resolves them."""

    def __init__(
        self,
        completion: CompletionClient,
        catalog: CatalogClient,
        timeout: Optional[float] = None,
    ) -> None:
        self.completion = completion
        self.catalog = catalog
        # Catalogue lookups may walk through three query formulations
        self.timeout = timeout or config.HTTP_TIMEOUT * 3

    async def _complete(self, prompt: str) -> str:
        return await asyncio.wait_for(
            asyncio.to_thread(self.completion.complete, prompt), self.timeout
        )

    async def check_relevance(self, reply: str, user_message: str) -> GateDecision:
        try:
            answer = await self._complete(GATE_PROMPT.format(user_message=user_message, reply=reply))
        except Exception as exc:
            relevant = heuristic_relevance(reply, user_message)
            logger.warning("Relevance classifier unavailable (%s); heuristic says %s", exc, relevant)
            return GateDecision(relevant, "heuristic", exc)
        decision = parse_gate_answer(answer)
        logger.info("Relevance classifier decision: %s", "YES" if decision else "NO")
        return GateDecision(decision, "classifier")

    async def classifier_candidates(self, reply: str, user_message: str) -> LayerResult:
        try:
            answer = await self._complete(
                EXTRACTION_PROMPT.format(user_message=user_message, reply=reply)
            )
        except Exception as exc:
            logger.warning("Candidate extraction call failed: %s", exc)
            return LayerResult([], exc)
        result = parse_candidate_array(answer)
        if result.error is not None:
            logger.warning("Could not parse extraction answer %r: %s", answer, result.error)
        return result

    async def collect_candidates(self, reply: str, user_message: str) -> List[str]:
        candidates = CandidateSet()
        candidates.update((await self.classifier_candidates(reply, user_message)).candidates)
        candidates.update(pattern_candidates(reply))
        candidates.update(keyword_candidates(reply))
        quoted_candidates(reply, candidates)
        found = candidates.to_list()
        logger.info("Collected %d candidate(s): %s", len(found), found)
        return found

    async def _resolve_one(self, candidate: str) -> List[Book]:
        try:
            books = await asyncio.wait_for(
                asyncio.to_thread(self.catalog.search, candidate, 1), self.timeout
            )
        except Exception as exc:
            logger.warning("Lookup for %r failed: %s", candidate, exc)
            return []
        return [
            b.model_copy(update={"categories": b.categories[:CARD_CATEGORY_LIMIT]})
            for b in books[:1]
        ]

    async def resolve(self, candidates: List[str]) -> List[Book]:
        """Look up the first three candidates concurrently, keeping their order."""
        picked = candidates[:MAX_CANDIDATES_RESOLVED]
        results = await asyncio.gather(*(self._resolve_one(c) for c in picked))
        books = [book for hits in results for book in hits]
        return books[:MAX_BOOKS]

    async def run(self, reply: str, user_message: str = "") -> ExtractionResult:
        user_message = user_message or ""
        try:
            gate = await self.check_relevance(reply, user_message)
            if not gate.relevant:
                return ExtractionResult([], [], gate)
            candidates = await self.collect_candidates(reply, user_message)
            books = await self.resolve(candidates)
        except Exception as exc:
            logger.error("Book extraction failed: %s", exc)
            return ExtractionResult([], [], None, exc)
        logger.info("Resolved %d book card(s)", len(books))
        return ExtractionResult(books, candidates, gate)

    async def extract_books(self, reply: str, user_message: str = "") -> List[Book]:
        result = await self.run(reply, user_message)
        return result.books if result.error is None else []
