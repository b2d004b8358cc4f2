"""
Pytest configuration and fixtures for the shelfscan test suite.
"""
from typing import AsyncGenerator, Generator

import pytest
from aiohttp import ClientSession
from aioresponses import aioresponses
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from fakes import FakeClock
from shelfscan.internal.book_cache import BookCacheService
from shelfscan.internal.env_settings import RateLimitBudget, Settings
from shelfscan.internal.models import BookCache, Candidate  # noqa: F401  (registers the table)
from shelfscan.internal.rate_limiter import RateLimiter


# Database fixtures
@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database shared across threads."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Provide a database session for inserting rows directly."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def book_cache(db_engine, settings) -> BookCacheService:
    return BookCacheService(db_engine, settings)


# Async HTTP mocking fixtures
@pytest.fixture(scope="function")
async def mock_client_session() -> AsyncGenerator[ClientSession, None]:
    """Provide a real ClientSession with aioresponses mocking for HTTP calls."""
    with aioresponses() as mocked:
        async with ClientSession() as session:
            # Attach mocked responses to session for easy access in tests
            session._mocked = mocked  # pyright: ignore[reportAttributeAccessIssue]
            yield session


# Rate limiter fixtures
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock) -> RateLimiter:
    return RateLimiter(
        {
            "google-books": RateLimitBudget(max_calls=100, window_seconds=60),
            "open-library": RateLimitBudget(max_calls=100, window_seconds=60),
            "openai": RateLimitBudget(max_calls=100, window_seconds=60),
        },
        clock=clock,
    )


@pytest.fixture
def exhausted_limiter(clock) -> RateLimiter:
    """Limiter whose budgets are all zero: every check fails."""
    return RateLimiter(
        {
            "google-books": RateLimitBudget(max_calls=0, window_seconds=60),
            "open-library": RateLimitBudget(max_calls=0, window_seconds=60),
            "openai": RateLimitBudget(max_calls=0, window_seconds=60),
        },
        clock=clock,
    )


# Sample data fixtures
@pytest.fixture
def mock_google_books_response():
    """Mock Google Books API response."""
    return {
        "items": [
            {
                "id": "B1RBXX3Vh8UC",
                "volumeInfo": {
                    "title": "Dune",
                    "authors": ["Frank Herbert"],
                    "description": "Set on the desert planet Arrakis.",
                    "categories": ["Fiction / Science Fiction / General"],
                    "imageLinks": {
                        "smallThumbnail": "http://books.google.com/books/content?id=B1RBXX3Vh8UC&zoom=5",
                        "thumbnail": "http://books.google.com/books/content?id=B1RBXX3Vh8UC&zoom=1",
                    },
                    "publisher": "Penguin",
                    "publishedDate": "2005",
                    "averageRating": 4.5,
                    "ratingsCount": 5000,
                    "industryIdentifiers": [
                        {"type": "ISBN_10", "identifier": "0441013597"},
                        {"type": "ISBN_13", "identifier": "9780441013593"},
                    ],
                },
            },
            {
                "id": "dune-messiah",
                "volumeInfo": {
                    "title": "Dune Messiah",
                    "authors": ["Frank Herbert"],
                    "averageRating": 4.1,
                },
            },
        ],
        "totalItems": 2,
    }


@pytest.fixture
def mock_google_books_empty_response():
    """Mock Google Books API empty response."""
    return {"totalItems": 0}


@pytest.fixture
def mock_open_library_response():
    """Mock Open Library search response."""
    return {
        "numFound": 1,
        "docs": [
            {
                "title": "Leviathan Wakes",
                "author_name": ["James S. A. Corey"],
                "isbn": ["9780316129084", "0316129089"],
                "cover_i": 6979861,
                "publisher": ["Orbit"],
                "subject": ["Science fiction", "Space warfare"],
                "first_publish_year": 2011,
            }
        ],
    }


@pytest.fixture
def sample_candidates() -> list[Candidate]:
    return [
        Candidate(title="Dune", author="Frank Herbert", categories=["Science Fiction"]),
        Candidate(title="Atomic Habits", author="James Clear", categories=["Self-Help"]),
        Candidate(title="Leviathan Wakes", author="James S. A. Corey", categories=["Science Fiction"]),
    ]
