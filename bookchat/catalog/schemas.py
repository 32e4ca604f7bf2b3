"""
Pydantic schema definitions for the catalog module.

The ``Book`` model is the canonical shape every Open Library record is
normalised into before it reaches a chat card or a search page. Open
Library documents are loosely typed, so apart from ``id`` and ``title``
every field is optional or defaults to an empty list. ``PaginatedBooks``
bundles a page of results with pagination metadata.
"""

from typing import List, Optional, Union

from pydantic import BaseModel, Field


UNKNOWN_TITLE = "Unknown Title"


class Book(BaseModel):
    """A single book entry.

    ``cover_urls`` lists every cover candidate in fallback order so the
    front-end can try the next one when an image fails to load. ``cover``
    is kept for consumers that only understand a single image and is
    always the first element of ``cover_urls``. When no candidate could
    be derived both are ``None`` and the card shows generated initials.
    """

    id: str
    title: str = UNKNOWN_TITLE
    authors: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    cover: Optional[str] = None
    cover_urls: Optional[List[str]] = None
    # Either a bare year or a full date string, depending on the source
    published_date: Optional[Union[int, str]] = None
    categories: List[str] = Field(default_factory=list)
    page_count: Optional[int] = None
    info_link: Optional[str] = None
    publisher: Optional[str] = None
    language: Optional[str] = None


class PaginatedBooks(BaseModel):
    """A wrapper for paginated results returned from ``/books`` endpoint."""

    page: int
    page_size: int
    total: int
    total_pages: int
    items: List[Book]


def placeholder_initials(title: str, authors: Optional[List[str]] = None) -> str:
    """Return up to two initials used in place of a missing cover.

    The first letter of the first title word is combined with the first
    letter of the second title word, or with the first author's initial
    when the title is a single word. A book glyph is returned when
    nothing usable is left.
    """
    words = (title or "").strip().split()
    first = words[0][0].upper() if words else ""
    second = words[1][0].upper() if len(words) > 1 else ""
    if not second and authors:
        author = authors[0].strip()
        second = author[0].upper() if author else ""
    return (first + second)[:2] or "\U0001F4DA"
