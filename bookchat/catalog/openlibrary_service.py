"""
Open Library integration for the catalogue.

This module turns anonymous Open Library requests into ``Book`` objects.
It exposes:

* ``CatalogClient.search()``: run a text query through a short list of
  query formulations and normalise the first non-empty answer.

* ``CatalogClient.get_book()`` / ``get_work()``: retrieve detailed
  information about a single work, given a work or an edition identifier.

* ``normalize_doc()`` / ``build_cover_urls()``: the pure mapping from a
  loosely typed search document to the closed ``Book`` schema.

The client never raises: network and parse errors are logged and turn
into an empty result so that a chat turn or a search page can render a
"no results" state instead of failing. Only the Python standard library
is used for HTTP requests.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.parse
import urllib.request
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import config
from .schemas import UNKNOWN_TITLE, Book


logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Asking for default=false makes Open Library answer 404 instead of a
# blank placeholder image, which lets the front-end fail over.
COVER_SUFFIX = "-L.jpg?default=false"

FetchJson = Callable[[str], Optional[dict]]


def _http_get_json(url: str, timeout: Optional[float] = None) -> Optional[dict]:
    """Perform an HTTP GET and return parsed JSON or ``None`` on failure.

    A custom User-Agent and Accept header are provided to avoid 403
    responses from Open Library.  Network errors are logged and
    ``None`` is returned.
    """
    try:
        request = urllib.request.Request(
            url,
            headers={
                'User-Agent': 'bookchat/1.0 (+https://openlibrary.org/developers/api)',
                'Accept': 'application/json',
            },
        )
        with urllib.request.urlopen(request, timeout=timeout or config.HTTP_TIMEOUT) as response:
            if response.status != 200:
                logger.warning(
                    "Open Library request to %s returned status %s", url, response.status
                )
                return None
            data = response.read().decode('utf-8', errors='ignore')
            return json.loads(data)
    except Exception as exc:
        logger.error("Error fetching %s: %s", url, exc)
        return None


def _convert_language(code: Optional[str]) -> Optional[str]:
    """Convert a three-letter ISO 639‑2 code to a two-letter code.

    If the provided code is unknown, the first two characters are
    returned.  When no code is provided, ``None`` is returned.
    """
    if not code or not isinstance(code, str):
        return None
    code = code.lower().split('/')[-1]
    if len(code) == 2:
        return code
    mapping = {
        'eng': 'en', 'fre': 'fr', 'fra': 'fr', 'spa': 'es', 'ita': 'it',
        'por': 'pt', 'ger': 'de', 'deu': 'de', 'rus': 'ru', 'jpn': 'ja',
        'chi': 'zh', 'zho': 'zh', 'kor': 'ko', 'tur': 'tr', 'ara': 'ar',
        'hin': 'hi', 'urd': 'ur', 'per': 'fa', 'fas': 'fa', 'pes': 'fa',
        'dan': 'da', 'nor': 'no', 'nob': 'no', 'fin': 'fi', 'swe': 'sv',
        'dut': 'nl', 'nld': 'nl', 'pol': 'pl', 'cze': 'cs', 'ces': 'cs',
        'gre': 'el', 'ell': 'el', 'heb': 'he', 'hun': 'hu', 'rum': 'ro',
        'ron': 'ro', 'ukr': 'uk', 'vie': 'vi', 'cat': 'ca', 'lat': 'la',
    }
    return mapping.get(code, code[:2])


def _first(value: Any) -> Optional[Any]:
    """Return the first element of a non-empty list, else ``None``."""
    if isinstance(value, list) and value:
        return value[0]
    return None


def _str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str)]
    return []


def _olid_from_key(key: Any) -> Optional[str]:
    if not key or not isinstance(key, str):
        return None
    return key.replace('/works/', '').replace('/books/', '').strip('/') or None


def build_cover_urls(doc: Dict[str, Any], covers_url: Optional[str] = None) -> Optional[List[str]]:
    """Collect every cover candidate for a search document.

    Candidates are gathered in a fixed priority so the display layer can
    fail over from one to the next: ISBN, numeric cover id, work OLID
    (when it differs from the ISBN) and finally the first edition key.
    ``None`` means no candidate exists and a placeholder should be drawn.
    """
    base = (covers_url or config.OPENLIBRARY_COVERS_URL).rstrip('/')
    isbn = _first(doc.get('isbn'))
    cover_id = doc.get('cover_i')
    olid = _olid_from_key(doc.get('key'))
    edition = _first(doc.get('edition_key'))

    urls: List[str] = []
    if isbn:
        urls.append(f"{base}/b/isbn/{isbn}{COVER_SUFFIX}")
    if isinstance(cover_id, int) and not isinstance(cover_id, bool):
        urls.append(f"{base}/b/id/{cover_id}{COVER_SUFFIX}")
    if olid and olid != isbn:
        urls.append(f"{base}/b/olid/{olid}{COVER_SUFFIX}")
    if edition:
        urls.append(f"{base}/b/olid/{edition}{COVER_SUFFIX}")
    return urls or None


def normalize_doc(doc: Dict[str, Any], base_url: Optional[str] = None,
                  covers_url: Optional[str] = None) -> Book:
    """Map a raw Open Library search document onto ``Book``.

    Every field access is defaulted; nothing in ``doc`` is assumed to
    exist.
    """
    site = (base_url or config.OPENLIBRARY_BASE_URL).rstrip('/')
    title = doc.get('title') if isinstance(doc.get('title'), str) and doc.get('title') else UNKNOWN_TITLE
    key = doc.get('key') if isinstance(doc.get('key'), str) else None
    isbn = _first(doc.get('isbn'))
    edition = _first(doc.get('edition_key'))

    if edition:
        book_id = f"/books/{edition}"
    elif key:
        book_id = key
    else:
        book_id = f"{title}-{doc.get('cover_i') if doc.get('cover_i') is not None else isbn or ''}"

    description = doc.get('subtitle') if isinstance(doc.get('subtitle'), str) else None
    if not description:
        description = _first(_str_list(doc.get('first_sentence'))) or None

    cover_urls = build_cover_urls(doc, covers_url)

    year = doc.get('first_publish_year')
    published = year if isinstance(year, int) and not isinstance(year, bool) else None

    pages = doc.get('number_of_pages_median')
    page_count = pages if isinstance(pages, int) and not isinstance(pages, bool) else None

    if edition:
        info_link = f"{site}/books/{edition}"
    elif isbn:
        info_link = f"{site}/isbn/{isbn}"
    elif key:
        info_link = f"{site}{key}"
    else:
        info_link = None

    publisher = _first(_str_list(doc.get('publisher')))

    return Book(
        id=str(book_id),
        title=title,
        authors=_str_list(doc.get('author_name')),
        description=description,
        cover=cover_urls[0] if cover_urls else None,
        cover_urls=cover_urls,
        published_date=published,
        categories=_str_list(doc.get('subject')),
        page_count=page_count,
        info_link=info_link,
        publisher=publisher,
        language=_convert_language(_first(_str_list(doc.get('language')))),
    )


class CatalogClient:
    """Soft-failing Open Library client.

    ``fetch_json`` performs one GET and returns the decoded body or
    ``None``; tests substitute an in-memory fake for it.
    """

    def __init__(
        self,
        fetch_json: Optional[FetchJson] = None,
        base_url: Optional[str] = None,
        covers_url: Optional[str] = None,
    ) -> None:
        self.fetch_json = fetch_json or _http_get_json
        self.base_url = (base_url or config.OPENLIBRARY_BASE_URL).rstrip('/')
        self.covers_url = covers_url or config.OPENLIBRARY_COVERS_URL
        # Caches for search queries, works and authors
        self._search_cache: Dict[str, List[Book]] = {}
        self._work_cache: Dict[str, Book] = {}
        self._author_cache: Dict[str, str] = {}

    def _strategies(self, query: str, max_results: int = 10,
                    year_range: Optional[Tuple[int, int]] = None) -> List[Dict[str, Any]]:
        """Query formulations tried in order until one returns records."""
        q = query
        if year_range:
            q = f"{query} first_publish_year:[{year_range[0]} TO {year_range[1]}]"
        return [
            {'q': q, 'sort': 'new', 'limit': max(10, max_results)},
            {'q': q, 'sort': 'rating', 'limit': max(10, max_results)},
            {'q': q, 'has_fulltext': 'true', 'limit': max(15, max_results)},
        ]

    def search(
        self,
        query: str,
        max_results: int = 10,
        year_range: Optional[Tuple[int, int]] = None,
    ) -> List[Book]:
        """Search the catalogue and return at most ``max_results`` books.

        Never raises; any failure is logged and yields an empty list.
        Callers that render cards truncate ``categories`` themselves.
        """
        query = (query or '').strip()
        if not query or max_results <= 0:
            return []
        cache_key = f"{query}|{max_results}|{year_range or ''}"
        if cache_key in self._search_cache:
            return list(self._search_cache[cache_key])
        try:
            docs: List[dict] = []
            for params in self._strategies(query, max_results, year_range):
                url = f"{self.base_url}/search.json?{urllib.parse.urlencode(params)}"
                data = self.fetch_json(url)
                found = data.get('docs') if isinstance(data, dict) else None
                if isinstance(found, list) and found:
                    docs = found
                    break
                logger.debug("No records for %r with %s, trying next strategy", query, params)
            books = [
                normalize_doc(doc, self.base_url, self.covers_url)
                for doc in docs
                if isinstance(doc, dict)
            ][:max_results]
        except Exception as exc:
            logger.error("Catalog search for %r failed: %s", query, exc)
            return []
        if books:
            self._search_cache[cache_key] = books
        logger.info("Catalog search %r returned %d book(s)", query, len(books))
        return list(books)

    def _get_author_name(self, author_key: Optional[str]) -> Optional[str]:
        """Resolve an author key to a display name using the Open Library API."""
        if not author_key or not isinstance(author_key, str):
            return None
        key = author_key.strip().split('/')[-1]
        if not key:
            return None
        if key in self._author_cache:
            return self._author_cache[key]
        data = self.fetch_json(f"{self.base_url}/authors/{urllib.parse.quote(key)}.json")
        if isinstance(data, dict) and isinstance(data.get('name'), str):
            self._author_cache[key] = data['name']
            return data['name']
        return None

    def get_book(self, book_id: str) -> Optional[Book]:
        """Return detailed metadata for any id ``search`` hands out.

        Work ids (``/works/OL..W``) are looked up directly. Edition ids
        (``/books/OL..M``) are fetched first and followed to their work.
        """
        if not book_id:
            return None
        book_id = book_id.strip().strip('/')
        olid = book_id.split('/')[-1]
        if book_id.startswith('books/') or olid.upper().endswith('M'):
            return self._get_edition_work(olid)
        return self.get_work(olid)

    def _get_edition_work(self, edition_id: str) -> Optional[Book]:
        try:
            data = self.fetch_json(f"{self.base_url}/books/{urllib.parse.quote(edition_id)}.json")
        except Exception as exc:
            logger.error("Catalog lookup for edition %s failed: %s", edition_id, exc)
            return None
        if not isinstance(data, dict):
            return None
        work = _first(data.get('works'))
        if not isinstance(work, dict) or not isinstance(work.get('key'), str):
            logger.info("Edition %s has no work key", edition_id)
            return None
        return self.get_work(work['key'])

    def get_work(self, work_id: str) -> Optional[Book]:
        """Return detailed metadata for a work ID, or ``None``."""
        if not work_id:
            return None
        work_id = work_id.strip().split('/')[-1]
        if work_id in self._work_cache:
            return self._work_cache[work_id]
        try:
            data = self.fetch_json(f"{self.base_url}/works/{urllib.parse.quote(work_id)}.json")
            if not isinstance(data, dict):
                return None
            book = self._work_to_book(work_id, data)
        except Exception as exc:
            logger.error("Catalog lookup for work %s failed: %s", work_id, exc)
            return None
        self._work_cache[work_id] = book
        return book

    def _work_to_book(self, work_id: str, data: Dict[str, Any]) -> Book:
        authors: List[str] = []
        for entry in data.get('authors') or []:
            if isinstance(entry, dict) and isinstance(entry.get('author'), dict):
                name = self._get_author_name(entry['author'].get('key'))
                if name:
                    authors.append(name)
        # Description or excerpt
        desc = data.get('description')
        description: Optional[str] = None
        if isinstance(desc, str):
            description = desc.strip()
        elif isinstance(desc, dict) and isinstance(desc.get('value'), str):
            description = desc['value'].strip()
        if not description:
            for ex in data.get('excerpts') or []:
                if isinstance(ex, dict) and isinstance(ex.get('excerpt'), str):
                    description = ex['excerpt'].strip()
                    break
        cover_urls = build_cover_urls(
            {'key': f"/works/{work_id}", 'cover_i': _first(data.get('covers'))},
            self.covers_url,
        )
        published: Optional[int] = None
        if isinstance(data.get('first_publish_date'), str):
            m = re.match(r'\d{4}', data['first_publish_date'])
            if m:
                published = int(m.group())
        language = None
        first_lang = _first(data.get('languages'))
        if isinstance(first_lang, dict):
            language = _convert_language(first_lang.get('key'))
        title = data.get('title')
        return Book(
            id=f"/works/{work_id}",
            title=title if isinstance(title, str) and title else UNKNOWN_TITLE,
            authors=authors,
            description=description or None,
            cover=cover_urls[0] if cover_urls else None,
            cover_urls=cover_urls,
            published_date=published,
            categories=_str_list(data.get('subjects')),
            info_link=f"{self.base_url}/works/{work_id}",
            language=language,
        )
