"""
Provider adapters for book metadata.

Title search goes to Google Books first and Open Library second. Ratings and
summaries come from the OpenAI adapter, the verified rating table, or a
deterministic estimate.
"""

from .catalog import CatalogProvider
from .generative import GenerativeProvider
from .google_books import GoogleBooksProvider
from .open_library import OpenLibraryProvider

__all__ = ["CatalogProvider", "GenerativeProvider", "GoogleBooksProvider", "OpenLibraryProvider"]
