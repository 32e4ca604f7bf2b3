"""
Catalog package for the book catalog API.

This package normalises Open Library search results into ``Book``
entries and exposes a small REST surface for browsing them. The same
``CatalogClient`` resolves chat candidates into book cards.
"""

from .openlibrary_service import CatalogClient  # noqa: F401
from .router import router as catalog_router  # noqa: F401
from .schemas import Book, PaginatedBooks  # noqa: F401
