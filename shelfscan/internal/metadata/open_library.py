"""
Open Library search adapter, the fallback catalog provider.
"""
from typing import List, Optional

from aiohttp import ClientSession
from pydantic import BaseModel, Field

from shelfscan.internal.metadata.catalog import CatalogProvider
from shelfscan.internal.models import CacheSource, Candidate


class OpenLibraryDoc(BaseModel):
    title: Optional[str] = None
    author_name: List[str] = Field(default_factory=list)
    isbn: List[str] = Field(default_factory=list)
    cover_i: Optional[int] = None
    publisher: List[str] = Field(default_factory=list)
    subject: List[str] = Field(default_factory=list)
    first_publish_year: Optional[int] = None


class OpenLibraryResponse(BaseModel):
    docs: List[OpenLibraryDoc] = Field(default_factory=list)
    numFound: int = 0


class OpenLibraryProvider(CatalogProvider):
    provider_key = "open-library"
    service_name = "Open Library"
    source = CacheSource.catalog_fallback

    base_url: str = "https://openlibrary.org/search.json"
    covers_url: str = "https://covers.openlibrary.org/b/id"

    def _cover(self, cover_id: Optional[int]) -> str:
        if cover_id is None:
            return ""
        return f"{self.covers_url}/{cover_id}-M.jpg"

    async def _query(self, client_session: ClientSession, title: str) -> list[Candidate]:
        params = {"title": title, "limit": self.settings.app.search_max_results}
        data = await self._get_json(client_session, self.base_url, params)
        response = OpenLibraryResponse.model_validate(data)

        return [
            Candidate(
                title=doc.title or "Unknown Title",
                author=", ".join(doc.author_name) or "Unknown Author",
                isbn=doc.isbn[0] if doc.isbn else "",
                cover_url=self._cover(doc.cover_i),
                categories=doc.subject[:5],
                publisher=doc.publisher[0] if doc.publisher else "",
                published_date=str(doc.first_publish_year) if doc.first_publish_year else "",
                detected_from=title,
            )
            for doc in response.docs
        ]
