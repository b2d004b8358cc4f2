from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field as PydanticField, field_validator
from sqlalchemy import JSON, Column, DateTime, TypeDecorator, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator[datetime]):
    """
    Stores datetimes as UTC and always hands back aware values, including on
    SQLite, which keeps no offset.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class CacheSource(str, Enum):
    catalog_primary = "catalog-primary"
    catalog_fallback = "catalog-fallback"
    generative = "generative"
    user_saved = "user-saved"


class BookCache(SQLModel, table=True):
    """One row per distinct book, keyed by normalized title and author."""

    __tablename__ = "book_cache"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint("normalized_title", "normalized_author", name="uq_book_cache_title_author"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    book_id: str = Field(index=True)
    title: str
    author: str
    normalized_title: str = Field(index=True)
    normalized_author: str
    isbn: Optional[str] = Field(default=None, index=True)
    cover_url: Optional[str] = None
    rating: Optional[str] = None
    summary: Optional[str] = None
    source: Optional[CacheSource] = None
    metadata_json: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    expires_at: datetime = Field(index=True, sa_type=UTCDateTime)


class Candidate(BaseModel):
    """A book detected for the current request. Never persisted as-is."""

    title: str
    author: str = ""
    isbn: str = ""
    cover_url: str = ""
    summary: str = ""
    rating: str = ""
    categories: list[str] = PydanticField(default_factory=list)
    publisher: str = ""
    published_date: str = ""
    detected_from: str = ""


class ScoredCandidate(Candidate):
    score: float = 0.0
    match_score: int = 0
    already_read: bool = False
    original_read_title: Optional[str] = None

    @property
    def rating_display(self) -> str:
        return self.rating or "No rating available"

    @property
    def summary_display(self) -> str:
        return self.summary or "No summary available"


class DetectedTitle(BaseModel):
    """Seed handed over by the image-to-titles extractor."""

    title: str
    author: str = ""


class ReadHistoryEntry(BaseModel):
    """
    A previously read book. Accepts Goodreads export column names
    ("Title", "Author", "My Rating") as well as plain field names.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    title: str = PydanticField(default="", validation_alias=AliasChoices("title", "Title"))
    author: str = PydanticField(default="", validation_alias=AliasChoices("author", "Author"))
    rating: float = PydanticField(default=0.0, validation_alias=AliasChoices("rating", "My Rating"))

    @field_validator("title", "author", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("rating", mode="before")
    @classmethod
    def _parse_rating(cls, value: Any) -> float:
        if value is None or value == "":
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0


class Preferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    genres: list[str] = PydanticField(default_factory=list)
    read_history: list[ReadHistoryEntry] = PydanticField(
        default_factory=list,
        validation_alias=AliasChoices("read_history", "readHistory", "goodreadsData"),
    )


class RatingResult(BaseModel):
    """Free-text answer of the generative provider to a rating prompt."""

    text: str
    provider: str = "openai"
