"""
Google Books API adapter, the primary title-search provider.
"""
from typing import Dict, List, Optional

from aiohttp import ClientSession
from pydantic import BaseModel, Field

from shelfscan.internal.metadata.catalog import CatalogProvider
from shelfscan.internal.models import CacheSource, Candidate


class GoogleBooksVolumeInfo(BaseModel):
    """Google Books API volume info response model."""
    title: str = ""
    subtitle: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    imageLinks: Optional[Dict[str, str]] = None
    publisher: Optional[str] = None
    publishedDate: Optional[str] = None
    averageRating: Optional[float] = None
    ratingsCount: Optional[int] = None
    industryIdentifiers: Optional[List[Dict[str, str]]] = None


class GoogleBooksItem(BaseModel):
    """Google Books API item response model."""
    id: Optional[str] = None
    volumeInfo: GoogleBooksVolumeInfo = Field(default_factory=GoogleBooksVolumeInfo)


class GoogleBooksResponse(BaseModel):
    """Google Books API search response model."""
    items: List[GoogleBooksItem] = Field(default_factory=list)
    totalItems: int = 0


def extract_isbn(volume_info: GoogleBooksVolumeInfo) -> str:
    """ISBN-13 when available, ISBN-10 otherwise."""
    if not volume_info.industryIdentifiers:
        return ""

    for preferred in ("ISBN_13", "ISBN_10"):
        for identifier in volume_info.industryIdentifiers:
            if identifier.get("type") == preferred:
                return identifier.get("identifier", "")

    return ""


def get_cover(image_links: Optional[Dict[str, str]]) -> str:
    if not image_links:
        return ""

    for size in ["thumbnail", "smallThumbnail", "small", "medium", "large"]:
        url = image_links.get(size)
        if url:
            if url.startswith("http://"):
                url = url.replace("http://", "https://", 1)
            return url

    return ""


class GoogleBooksProvider(CatalogProvider):
    """Exact-title search against the Google Books volumes API."""

    provider_key = "google-books"
    service_name = "Google Books"
    source = CacheSource.catalog_primary

    base_url: str = "https://www.googleapis.com/books/v1/volumes"

    async def _query(self, client_session: ClientSession, title: str) -> list[Candidate]:
        params: dict[str, str | int] = {
            "q": f'intitle:"{title}"',
            "maxResults": self.settings.app.search_max_results,
            "printType": "books",
        }
        if self.settings.app.google_books_api_key:
            params["key"] = self.settings.app.google_books_api_key

        data = await self._get_json(client_session, self.base_url, params)
        response = GoogleBooksResponse.model_validate(data)

        return [
            Candidate(
                title=item.volumeInfo.title or "Unknown Title",
                author=", ".join(item.volumeInfo.authors) or "Unknown Author",
                isbn=extract_isbn(item.volumeInfo),
                cover_url=get_cover(item.volumeInfo.imageLinks),
                categories=item.volumeInfo.categories,
                publisher=item.volumeInfo.publisher or "",
                published_date=item.volumeInfo.publishedDate or "",
                detected_from=title,
            )
            for item in response.items
        ]
