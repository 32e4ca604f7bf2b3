"""
Route definitions for the catalogue API.

Endpoints under /api/catalog:
- GET  /books            : search Open Library and return one page of books
- GET  /books/{book_id} : get one book by a search id (edition or work)
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from typing_extensions import Literal

from .openlibrary_service import CatalogClient
from .schemas import Book, PaginatedBooks


SortField = Literal["relevance", "title", "author", "year"]

router = APIRouter(prefix="/api/catalog", tags=["catalog"])

# Minimum number of results fetched per search so totals span several pages
FETCH_LIMIT = 50

_client: Optional[CatalogClient] = None


def get_catalog_client() -> CatalogClient:
    """Return the process-wide catalogue client (overridable in tests)."""
    global _client
    if _client is None:
        _client = CatalogClient()
    return _client


def _normalize(s: Optional[str]) -> str:
    return (s or "").strip().lower()


@router.get("/books", response_model=PaginatedBooks)
def list_books(
    q: Optional[str] = Query(default=None, description="Text search (title/author)"),
    sort: SortField = Query(default="relevance", description="Sort order"),
    page: int = Query(default=1, ge=1, description="Current page (1-indexed)"),
    page_size: int = Query(default=12, ge=1, le=100, description="Page size"),
    catalog: CatalogClient = Depends(get_catalog_client),
) -> PaginatedBooks:
    """
    Returns a paginated list of books.

    Open Library does not report a reliable total for the formulation
    that ends up answering, so enough results are fetched to cover the
    requested page (and a few more) and pagination is computed on those.
    """
    books = catalog.search(q or "", max_results=max(FETCH_LIMIT, page * page_size)) if _normalize(q) else []

    if sort == "title":
        books.sort(key=lambda b: _normalize(b.title))
    elif sort == "author":
        books.sort(key=lambda b: (_normalize(b.authors[0] if b.authors else ""), _normalize(b.title)))
    elif sort == "year":
        books.sort(key=lambda b: int(str(b.published_date)[:4]) if b.published_date else 0, reverse=True)

    total = len(books)
    total_pages = max(1, (total + page_size - 1) // page_size)
    page = min(page, total_pages)
    start = (page - 1) * page_size

    return PaginatedBooks(
        page=page,
        page_size=page_size,
        total=total,
        total_pages=total_pages,
        items=books[start:start + page_size],
    )


@router.get("/books/{book_id:path}", response_model=Book)
def get_book(book_id: str, catalog: CatalogClient = Depends(get_catalog_client)) -> Book:
    book = catalog.get_book(book_id)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return book
