"""
Tests for the Google Books and Open Library title-search adapters.
"""
import asyncio
import re

import pytest
from aiohttp import ClientError

from shelfscan.internal.env_settings import ApplicationSettings, Settings
from shelfscan.internal.metadata.catalog import rank_by_title_similarity, strip_untrusted_fields
from shelfscan.internal.metadata.google_books import (
    GoogleBooksProvider,
    GoogleBooksVolumeInfo,
    extract_isbn,
    get_cover,
)
from shelfscan.internal.metadata.open_library import OpenLibraryProvider
from shelfscan.internal.models import CacheSource, Candidate

GOOGLE_BOOKS_URL = re.compile(r"^https://www\.googleapis\.com/books/v1/volumes.*$")
OPEN_LIBRARY_URL = re.compile(r"^https://openlibrary\.org/search\.json.*$")


class TestGoogleBooksHelpers:
    def test_extract_isbn_prefers_isbn_13(self):
        info = GoogleBooksVolumeInfo(
            industryIdentifiers=[
                {"type": "ISBN_10", "identifier": "0441013597"},
                {"type": "ISBN_13", "identifier": "9780441013593"},
            ]
        )
        assert extract_isbn(info) == "9780441013593"

    def test_extract_isbn_falls_back_to_isbn_10(self):
        info = GoogleBooksVolumeInfo(
            industryIdentifiers=[
                {"type": "OTHER", "identifier": "UOM:39015"},
                {"type": "ISBN_10", "identifier": "0441013597"},
            ]
        )
        assert extract_isbn(info) == "0441013597"

    def test_extract_isbn_missing(self):
        assert extract_isbn(GoogleBooksVolumeInfo()) == ""

    def test_get_cover_upgrades_to_https(self):
        cover = get_cover({"thumbnail": "http://books.google.com/books/content?id=x"})
        assert cover == "https://books.google.com/books/content?id=x"

    def test_get_cover_uses_first_available_size(self):
        assert get_cover({"large": "https://example.com/large.jpg"}) == "https://example.com/large.jpg"
        assert get_cover(None) == ""


@pytest.mark.asyncio
class TestGoogleBooksProvider:
    """Google Books search with mocked HTTP."""

    async def test_search_maps_volumes(self, mock_client_session, limiter, mock_google_books_response):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, payload=mock_google_books_response)
        provider = GoogleBooksProvider(limiter)

        results = await provider.search(mock_client_session, "Dune")

        assert len(results) == 2
        dune = results[0]
        assert dune.title == "Dune"
        assert dune.author == "Frank Herbert"
        assert dune.isbn == "9780441013593"
        assert dune.cover_url.startswith("https://")
        assert dune.categories == ["Fiction / Science Fiction / General"]
        assert dune.publisher == "Penguin"
        assert dune.published_date == "2005"
        assert dune.detected_from == "Dune"
        assert provider.source == CacheSource.catalog_primary

    async def test_upstream_rating_and_description_are_dropped(
        self, mock_client_session, limiter, mock_google_books_response
    ):
        """averageRating and description from the catalog never reach the candidate."""
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, payload=mock_google_books_response)

        results = await GoogleBooksProvider(limiter).search(mock_client_session, "Dune")

        assert all(candidate.rating == "" for candidate in results)
        assert all(candidate.summary == "" for candidate in results)

    async def test_missing_authors_become_unknown(self, mock_client_session, limiter):
        mock_client_session._mocked.get(
            GOOGLE_BOOKS_URL, payload={"items": [{"volumeInfo": {"title": "Anonymous Poems"}}]}
        )
        results = await GoogleBooksProvider(limiter).search(mock_client_session, "Anonymous Poems")
        assert results[0].author == "Unknown Author"

    async def test_empty_response(self, mock_client_session, limiter, mock_google_books_empty_response):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, payload=mock_google_books_empty_response)
        assert await GoogleBooksProvider(limiter).search(mock_client_session, "Nothing Here") == []

    async def test_server_error_returns_empty(self, mock_client_session, limiter):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, status=500)
        assert await GoogleBooksProvider(limiter).search(mock_client_session, "Dune") == []

    async def test_network_error_returns_empty(self, mock_client_session, limiter):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, exception=ClientError("Connection refused"))
        assert await GoogleBooksProvider(limiter).search(mock_client_session, "Dune") == []

    async def test_timeout_returns_empty(self, mock_client_session, limiter):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, exception=asyncio.TimeoutError())
        assert await GoogleBooksProvider(limiter).search(mock_client_session, "Dune") == []

    async def test_invalid_json_returns_empty(self, mock_client_session, limiter):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, status=200, body="<html>not json</html>")
        assert await GoogleBooksProvider(limiter).search(mock_client_session, "Dune") == []

    async def test_unexpected_shape_returns_empty(self, mock_client_session, limiter):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, payload={"items": "not-a-list"})
        assert await GoogleBooksProvider(limiter).search(mock_client_session, "Dune") == []

    async def test_rate_limited_search_makes_no_request(self, mock_client_session, exhausted_limiter):
        """Quota exhaustion yields [] without touching the network."""
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, payload={"items": []})

        results = await GoogleBooksProvider(exhausted_limiter).search(mock_client_session, "Dune")

        assert results == []
        assert not mock_client_session._mocked.requests

    async def test_short_title_skipped(self, mock_client_session, limiter):
        assert await GoogleBooksProvider(limiter).search(mock_client_session, "x") == []
        assert limiter.usage("google-books") == 0

    async def test_search_counts_against_budget(self, mock_client_session, limiter, mock_google_books_response):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, payload=mock_google_books_response)
        await GoogleBooksProvider(limiter).search(mock_client_session, "Dune")
        assert limiter.usage("google-books") == 1

    async def test_api_key_sent_when_configured(self, mock_client_session, limiter):
        mock_client_session._mocked.get(GOOGLE_BOOKS_URL, payload={"items": []})
        settings = Settings(app=ApplicationSettings(google_books_api_key="secret"))

        await GoogleBooksProvider(limiter, settings).search(mock_client_session, "Dune")

        (method, url), = mock_client_session._mocked.requests.keys()
        assert method == "GET"
        assert url.query["key"] == "secret"
        assert url.query["q"] == 'intitle:"Dune"'


@pytest.mark.asyncio
class TestOpenLibraryProvider:
    """Open Library search with mocked HTTP."""

    async def test_search_maps_docs(self, mock_client_session, limiter, mock_open_library_response):
        mock_client_session._mocked.get(OPEN_LIBRARY_URL, payload=mock_open_library_response)
        provider = OpenLibraryProvider(limiter)

        results = await provider.search(mock_client_session, "Leviathan Wakes")

        assert len(results) == 1
        book = results[0]
        assert book.title == "Leviathan Wakes"
        assert book.author == "James S. A. Corey"
        assert book.isbn == "9780316129084"
        assert book.cover_url == "https://covers.openlibrary.org/b/id/6979861-M.jpg"
        assert book.categories == ["Science fiction", "Space warfare"]
        assert book.publisher == "Orbit"
        assert book.published_date == "2011"
        assert provider.source == CacheSource.catalog_fallback

    async def test_doc_without_cover(self, mock_client_session, limiter):
        mock_client_session._mocked.get(
            OPEN_LIBRARY_URL, payload={"docs": [{"title": "Obscure Pamphlet"}]}
        )
        results = await OpenLibraryProvider(limiter).search(mock_client_session, "Obscure Pamphlet")
        assert results[0].cover_url == ""
        assert results[0].author == "Unknown Author"

    async def test_server_error_returns_empty(self, mock_client_session, limiter):
        mock_client_session._mocked.get(OPEN_LIBRARY_URL, status=503)
        assert await OpenLibraryProvider(limiter).search(mock_client_session, "Leviathan Wakes") == []

    async def test_has_its_own_budget(self, mock_client_session, limiter, mock_open_library_response):
        mock_client_session._mocked.get(OPEN_LIBRARY_URL, payload=mock_open_library_response)
        await OpenLibraryProvider(limiter).search(mock_client_session, "Leviathan Wakes")
        assert limiter.usage("open-library") == 1
        assert limiter.usage("google-books") == 0


class TestCandidateHelpers:
    def test_strip_untrusted_fields(self):
        candidate = Candidate(title="Dune", rating="4.5", summary="From the catalog.", isbn="9780441013593")
        stripped = strip_untrusted_fields(candidate)
        assert stripped.rating == ""
        assert stripped.summary == ""
        assert stripped.isbn == "9780441013593"
        assert candidate.rating == "4.5"

    def test_rank_by_title_similarity(self):
        candidates = [
            Candidate(title="Project Hail Mary"),
            Candidate(title="Artemis"),
            Candidate(title="The Martian"),
        ]
        ranked = rank_by_title_similarity("the martian", candidates)
        assert ranked[0].title == "The Martian"

    def test_rank_keeps_provider_order_on_ties(self):
        """Subset titles score equally, so the provider's order wins."""
        candidates = [Candidate(title="Dune Messiah"), Candidate(title="Dune")]
        ranked = rank_by_title_similarity("Dune", candidates)
        assert [c.title for c in ranked] == ["Dune Messiah", "Dune"]
