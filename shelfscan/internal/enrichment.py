"""
Enrichment orchestrator.

Decides, for every candidate, whether ratings, summaries and catalog data come
from the cache, a catalog provider, the verified rating table, the generative
provider or the local estimate. No failure in here aborts a batch: the worst
outcome for a candidate is an estimated rating and an empty summary.
"""
import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, NamedTuple, Optional, Sequence
from uuid import uuid4

import structlog
from aiohttp import ClientSession
from sqlalchemy import Engine

from shelfscan.internal.book_cache import BookCacheService
from shelfscan.internal.env_settings import Settings
from shelfscan.internal.metadata.catalog import CatalogProvider, rank_by_title_similarity
from shelfscan.internal.metadata.generative import GenerativeProvider
from shelfscan.internal.metadata.google_books import GoogleBooksProvider
from shelfscan.internal.metadata.open_library import OpenLibraryProvider
from shelfscan.internal.metadata.ratings import (
    VERIFIED_RATINGS,
    VerifiedRating,
    estimate_rating,
    format_rating,
    is_valid_rating,
    lookup_verified_rating,
    parse_rating_text,
)
from shelfscan.internal.models import (
    BookCache,
    CacheSource,
    Candidate,
    DetectedTitle,
    Preferences,
    ScoredCandidate,
    utcnow,
)
from shelfscan.internal.rate_limiter import RateLimiter
from shelfscan.internal.recommendation import RecommendationScorer
from shelfscan.util.exceptions import (
    MalformedResponse,
    StoreFailure,
    handle_cache_error,
    handle_external_api_error,
)
from shelfscan.util.log import logger
from shelfscan.util.text import normalize_key


class RatingRequest(NamedTuple):
    title: str
    author: str
    isbn: Optional[str]


RatingResolver = Callable[[RatingRequest], Awaitable[Optional[str]]]


def candidate_from_entry(entry: BookCache, detected_from: str = "") -> Candidate:
    metadata = entry.metadata_json or {}
    return Candidate(
        title=entry.title,
        author=entry.author,
        isbn=entry.isbn or "",
        cover_url=entry.cover_url or "",
        categories=list(metadata.get("categories") or []),
        publisher=metadata.get("publisher") or "",
        published_date=metadata.get("published_date") or "",
        detected_from=detected_from,
    )


class EnrichmentOrchestrator:
    cache: BookCacheService
    rate_limiter: RateLimiter
    catalogs: tuple[CatalogProvider, ...]
    generative: Optional[GenerativeProvider]
    scorer: RecommendationScorer
    settings: Settings

    def __init__(
        self,
        cache: BookCacheService,
        rate_limiter: RateLimiter,
        catalogs: Sequence[CatalogProvider] = (),
        generative: Optional[GenerativeProvider] = None,
        scorer: Optional[RecommendationScorer] = None,
        settings: Optional[Settings] = None,
        verified_ratings: tuple[VerifiedRating, ...] = VERIFIED_RATINGS,
    ):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.catalogs = tuple(catalogs)
        self.generative = generative
        self.scorer = scorer or RecommendationScorer()
        self.settings = settings or Settings()
        self.verified_ratings = verified_ratings

        # First resolver returning a rating wins
        self.rating_resolvers: list[RatingResolver] = [
            self._rating_from_generative_cache,
            self._rating_from_isbn,
            self._rating_from_verified_table,
            self._rating_from_generative_provider,
        ]

    @classmethod
    def from_settings(cls, engine: Engine, settings: Optional[Settings] = None) -> "EnrichmentOrchestrator":
        """Wire the default providers: Google Books, then Open Library, plus OpenAI."""
        settings = settings or Settings()
        rate_limiter = RateLimiter(settings.rate_limits)
        return cls(
            cache=BookCacheService(engine, settings),
            rate_limiter=rate_limiter,
            catalogs=(
                GoogleBooksProvider(rate_limiter, settings),
                OpenLibraryProvider(rate_limiter, settings),
            ),
            generative=GenerativeProvider(rate_limiter, settings),
            settings=settings,
        )

    def _persist(self, title: str, author: str, **fields) -> Optional[BookCache]:
        """Write through to the cache; a failed write never reaches the caller."""
        try:
            return self.cache.upsert(title=title, author=author, **fields)
        except (StoreFailure, ValueError) as e:
            handle_cache_error(e, "upsert", f"{normalize_key(title)}|{normalize_key(author)}")
            return None

    # Ratings

    async def _rating_from_generative_cache(self, request: RatingRequest) -> Optional[str]:
        entry = self.cache.find_by_title_author(request.title, request.author)
        if entry and entry.rating and entry.source == CacheSource.generative:
            logger.debug("Using cached generative rating", title=request.title, rating=entry.rating)
            return entry.rating
        return None

    async def _rating_from_isbn(self, request: RatingRequest) -> Optional[str]:
        if not request.isbn:
            return None
        entry = self.cache.find_by_isbn(request.isbn)
        if entry is None or not is_valid_rating(entry.rating):
            return None
        logger.debug("Using cached ISBN rating", title=request.title, isbn=request.isbn, rating=entry.rating)
        rating = format_rating(entry.rating)
        self._persist(request.title, request.author, isbn=request.isbn, rating=rating)
        return rating

    async def _rating_from_verified_table(self, request: RatingRequest) -> Optional[str]:
        rating = lookup_verified_rating(request.title, request.author, self.verified_ratings)
        if rating:
            logger.debug("Using verified rating", title=request.title, rating=rating)
        return rating

    async def _rating_from_generative_provider(self, request: RatingRequest) -> Optional[str]:
        if self.generative is None or not self.generative.configured:
            return None
        result = await self.generative.rate(request.title, request.author)
        if result is None:
            return None
        try:
            rating = parse_rating_text(result.text, result.provider)
        except MalformedResponse as e:
            logger.warning("Unusable generative rating", title=request.title, error=str(e))
            return None

        self._persist(
            request.title,
            request.author,
            isbn=request.isbn,
            rating=rating,
            expires_at=utcnow() + timedelta(days=self.settings.cache.generative_rating_days),
        )
        logger.info("Generated rating", title=request.title, rating=rating)
        return rating

    async def enrich_rating(self, title: str, author: str, isbn: Optional[str] = None) -> str:
        """
        Rating in "d.d" form between 1.0 and 5.0. Falls back to a deterministic
        estimate, so this always returns a value.
        """
        request = RatingRequest(title, author, isbn)
        for resolver in self.rating_resolvers:
            try:
                rating = await resolver(request)
            except Exception as e:
                handle_external_api_error(e, "Rating resolver", resolver.__name__, title=title)
                continue
            if rating is not None and is_valid_rating(rating):
                return format_rating(rating)

        rating = estimate_rating(title, author)
        logger.debug("Using estimated rating", title=title, rating=rating)
        return rating

    # Summaries

    async def enrich_summary(
        self, title: str, author: str, existing: Optional[str] = None
    ) -> Optional[str]:
        """
        Cached generative summary, else a freshly generated one, else the best
        summary already known (possibly None).
        """
        entry = self.cache.find_by_title_author(title, author)
        if entry and entry.summary and entry.source == CacheSource.generative:
            logger.debug("Using cached generative summary", title=title)
            return entry.summary

        fallback = existing or (entry.summary if entry else None) or None

        if self.generative is None or not self.generative.configured:
            return fallback

        try:
            summary = await self.generative.summarize(title, author)
        except Exception as e:
            handle_external_api_error(e, "Generative provider", "summarize", title=title)
            return fallback

        if not summary:
            return fallback

        self._persist(
            title,
            author,
            summary=summary,
            expires_at=utcnow() + timedelta(days=self.settings.cache.generative_summary_days),
        )
        logger.info("Generated summary", title=title)
        return summary

    # Catalog search

    async def _first_catalog_hit(
        self, client_session: ClientSession, title: str
    ) -> Optional[tuple[CatalogProvider, list[Candidate]]]:
        for provider in self.catalogs:
            results = await provider.search(client_session, title)
            if results:
                return provider, rank_by_title_similarity(title, results)
            logger.debug("No catalog results, trying next provider", provider=provider.provider_key, title=title)
        return None

    async def search_catalogs(self, client_session: ClientSession, title: str) -> list[Candidate]:
        """Query catalogs in fallback order and stop at the first non-empty answer."""
        hit = await self._first_catalog_hit(client_session, title)
        return hit[1] if hit else []

    async def search_title(
        self, client_session: ClientSession, title: str, author: str = ""
    ) -> Optional[Candidate]:
        """
        Best catalog candidate for a detected title. Served from the cache when
        it already holds catalog data for the book; otherwise the best provider
        result is written to the cache under the provider's source class.
        """
        entry = self.cache.find_by_title_author(title, author)
        if entry and (entry.cover_url or entry.metadata_json):
            return candidate_from_entry(entry, detected_from=title)

        hit = await self._first_catalog_hit(client_session, title)
        if hit is None:
            logger.info("No catalog results", title=title)
            return None

        provider, ranked = hit
        best = ranked[0]
        self._persist(
            best.title,
            best.author,
            isbn=best.isbn,
            cover_url=best.cover_url,
            metadata={
                "categories": best.categories,
                "publisher": best.publisher,
                "published_date": best.published_date,
                "provider": provider.provider_key,
            },
            source=provider.source,
        )
        return best

    # Batch pipeline

    async def enrich_candidate(self, candidate: Candidate) -> Candidate:
        """Rating and summary are resolved independently; one failing keeps the other."""
        rating, summary = await asyncio.gather(
            self.enrich_rating(candidate.title, candidate.author, candidate.isbn or None),
            self.enrich_summary(candidate.title, candidate.author, candidate.summary or None),
            return_exceptions=True,
        )
        update: dict[str, str] = {}
        if isinstance(rating, BaseException):
            handle_external_api_error(rating, "Enrichment", "rating", title=candidate.title)
        else:
            update["rating"] = rating
        if isinstance(summary, BaseException):
            handle_external_api_error(summary, "Enrichment", "summary", title=candidate.title)
        else:
            update["summary"] = summary or ""
        return candidate.model_copy(update=update)

    async def enrich_candidates(self, candidates: Sequence[Candidate]) -> list[Candidate]:
        """
        Enrich candidates concurrently. A candidate whose enrichment failed is
        returned unchanged; output order follows input order.
        """
        semaphore = asyncio.Semaphore(self.settings.app.max_concurrent_enrichments)

        async def bounded(candidate: Candidate) -> Candidate:
            async with semaphore:
                return await self.enrich_candidate(candidate)

        results = await asyncio.gather(
            *(bounded(candidate) for candidate in candidates), return_exceptions=True
        )

        enriched: list[Candidate] = []
        for candidate, result in zip(candidates, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Candidate enrichment failed",
                    title=candidate.title,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                enriched.append(candidate)
            else:
                enriched.append(result)
        return enriched

    @staticmethod
    def deduplicate(candidates: Sequence[Candidate]) -> list[Candidate]:
        seen: set[tuple[str, str]] = set()
        unique: list[Candidate] = []
        for candidate in candidates:
            key = (normalize_key(candidate.title), normalize_key(candidate.author))
            if key in seen:
                continue
            seen.add(key)
            unique.append(candidate)
        return unique

    async def process(
        self,
        client_session: ClientSession,
        detected: Sequence[DetectedTitle],
        preferences: Preferences,
    ) -> list[ScoredCandidate]:
        """Detected titles in, ranked recommendations out."""
        with structlog.contextvars.bound_contextvars(batch_id=uuid4().hex[:8], batch_size=len(detected)):
            logger.info("Processing detected titles")
            return await self._process(client_session, detected, preferences)

    async def _process(
        self,
        client_session: ClientSession,
        detected: Sequence[DetectedTitle],
        preferences: Preferences,
    ) -> list[ScoredCandidate]:
        semaphore = asyncio.Semaphore(self.settings.app.max_concurrent_enrichments)

        async def lookup(seed: DetectedTitle) -> Optional[Candidate]:
            async with semaphore:
                return await self.search_title(client_session, seed.title, seed.author)

        found = await asyncio.gather(*(lookup(seed) for seed in detected), return_exceptions=True)

        candidates: list[Candidate] = []
        for seed, result in zip(detected, found):
            if isinstance(result, Candidate):
                candidates.append(result)
                continue
            if isinstance(result, BaseException):
                logger.error("Catalog lookup failed", title=seed.title, error=str(result))
            if seed.title.strip():
                candidates.append(
                    Candidate(title=seed.title.strip(), author=seed.author.strip(), detected_from=seed.title)
                )

        enriched = await self.enrich_candidates(self.deduplicate(candidates))
        return self.recommend(enriched, preferences)

    def recommend(
        self, candidates: Sequence[Candidate], preferences: Preferences
    ) -> list[ScoredCandidate]:
        return self.scorer.recommend(candidates, preferences)

    # Maintenance

    async def run_sweep(self) -> int:
        """Delete expired cache entries. Returns the number removed, never raises."""
        removed = await asyncio.to_thread(self.cache.expire_older_than, utcnow())
        logger.debug("Cache sweep finished", removed=removed)
        return removed

    async def run_periodic_sweep(self, interval_seconds: float, stop_event: asyncio.Event):
        """Sweep every `interval_seconds` until `stop_event` is set."""
        while not stop_event.is_set():
            await self.run_sweep()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
