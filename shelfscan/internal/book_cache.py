"""
Persistent book metadata cache.

Rows are keyed by normalized title and author (unique together) with ISBN as a
secondary lookup key. Reads only ever return non-expired rows. Writes always go
through `upsert`, which merges new fields into an existing row instead of
inserting a duplicate.
"""
import threading
import weakref
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import Engine, func, literal, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from shelfscan.internal.env_settings import Settings
from shelfscan.internal.metadata.ratings import format_rating, is_valid_rating
from shelfscan.internal.models import BookCache, CacheSource, as_utc, utcnow
from shelfscan.util.exceptions import StoreFailure, handle_database_error
from shelfscan.util.log import logger
from shelfscan.util.text import normalize_key, slugify

MERGED_FIELDS = ("isbn", "cover_url", "rating", "summary", "metadata_json")


def resolve_source(
    source: Optional[CacheSource],
    rating: Optional[str],
    summary: Optional[str],
    existing: Optional[BookCache] = None,
) -> CacheSource:
    """
    Decide the source class of a row after a write.

    - A write carrying a rating or a summary always makes the row `generative`,
      whatever source the caller passed.
    - Otherwise the caller's source is used (default `catalog-primary`), unless
      the existing row still holds a generative rating or summary, in which case
      it stays `generative`.
    """
    if rating or summary:
        return CacheSource.generative
    if (
        existing is not None
        and existing.source == CacheSource.generative
        and (existing.rating or existing.summary)
    ):
        return CacheSource.generative
    return source or CacheSource.catalog_primary


def merge_fields(entry: BookCache, incoming: dict[str, Any]) -> BookCache:
    """Replace a stored field only when the incoming value is non-empty."""
    for field in MERGED_FIELDS:
        value = incoming.get(field)
        if value:
            setattr(entry, field, value)
    return entry


class BookCacheService:
    engine: Engine
    settings: Settings

    def __init__(self, engine: Engine, settings: Settings | None = None):
        self.engine = engine
        self.settings = settings or Settings()
        self._key_locks: weakref.WeakValueDictionary[tuple[str, str], threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._key_locks_guard = threading.Lock()

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _lock_for(self, normalized_title: str, normalized_author: str) -> threading.Lock:
        """Per-key write lock. An entry lives only while some writer holds it."""
        key = (normalized_title, normalized_author)
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def ttl_for(self, source: CacheSource) -> timedelta:
        ttl = self.settings.cache
        days = {
            CacheSource.catalog_primary: ttl.catalog_primary_days,
            CacheSource.catalog_fallback: ttl.catalog_fallback_days,
            CacheSource.generative: ttl.generative_days,
            CacheSource.user_saved: ttl.user_saved_days,
        }[source]
        return timedelta(days=days)

    # Lookups

    def _find_exact_key(
        self, session: Session, normalized_title: str, normalized_author: str
    ) -> Optional[BookCache]:
        return session.exec(
            select(BookCache)
            .where(BookCache.normalized_title == normalized_title)
            .where(BookCache.normalized_author == normalized_author)
        ).first()

    def _find_by_title_author(
        self,
        session: Session,
        normalized_title: str,
        normalized_author: str,
        now: datetime,
    ) -> Optional[BookCache]:
        author_matches = or_(
            BookCache.normalized_author == normalized_author,
            col(BookCache.normalized_author).contains(normalized_author, autoescape=True),
            literal(normalized_author).contains(col(BookCache.normalized_author)),
        )

        exact = session.exec(
            select(BookCache)
            .where(BookCache.normalized_title == normalized_title)
            .where(author_matches)
            .where(BookCache.expires_at > now)
            .order_by(col(BookCache.id))
            .limit(1)
        ).first()
        if exact:
            return exact

        if len(normalized_title) < self.settings.app.fuzzy_match_min_length:
            return None

        return session.exec(
            select(BookCache)
            .where(
                or_(
                    col(BookCache.normalized_title).contains(normalized_title, autoescape=True),
                    literal(normalized_title).contains(col(BookCache.normalized_title)),
                )
            )
            .where(author_matches)
            .where(BookCache.expires_at > now)
            .order_by(col(BookCache.id))
            .limit(1)
        ).first()

    def find_by_title_author(self, title: str, author: str) -> Optional[BookCache]:
        """
        Non-expired entry for a title/author pair.

        Tries an exact title match first (author equal or contained either way),
        then a substring match in both directions on title and author.
        Store errors are logged and reported as a miss.
        """
        normalized_title = normalize_key(title)
        normalized_author = normalize_key(author)
        if not normalized_title:
            return None

        try:
            with self._session() as session:
                entry = self._find_by_title_author(
                    session, normalized_title, normalized_author, utcnow()
                )
        except SQLAlchemyError as e:
            handle_database_error(e, "find by title/author", title=title, author=author)
            return None

        if entry:
            logger.debug("Cache hit", title=title, author=author, entry_id=entry.id)
        else:
            logger.debug("Cache miss", title=title, author=author)
        return entry

    def find_by_isbn(self, isbn: str | None) -> Optional[BookCache]:
        if not isbn or len(isbn.strip()) < 10:
            return None

        try:
            with self._session() as session:
                entry = session.exec(
                    select(BookCache)
                    .where(BookCache.isbn == isbn.strip())
                    .where(BookCache.expires_at > utcnow())
                    .order_by(col(BookCache.id))
                ).first()
        except SQLAlchemyError as e:
            handle_database_error(e, "find by isbn", isbn=isbn)
            return None

        logger.debug("ISBN cache lookup", isbn=isbn, hit=entry is not None)
        return entry

    # Writes

    def _expires_at(
        self, source: CacheSource, expires_at: Optional[datetime], now: datetime
    ) -> datetime:
        if expires_at is None:
            return now + self.ttl_for(source)
        expires_at = as_utc(expires_at)
        if expires_at > now:
            return expires_at
        logger.warning(
            "Ignoring expiry in the past, using source lifetime",
            expires_at=expires_at.isoformat(),
            source=source.value,
        )
        return now + self.ttl_for(source)

    def upsert(
        self,
        title: str,
        author: str,
        isbn: Optional[str] = None,
        cover_url: Optional[str] = None,
        rating: Optional[str] = None,
        summary: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        source: Optional[CacheSource] = None,
        expires_at: Optional[datetime] = None,
    ) -> BookCache:
        """
        Insert or update the single row for a title/author pair.

        The row to update is found by exact normalized key, then by the fuzzy
        lookup of `find_by_title_author`; otherwise a new row is inserted.
        Non-empty incoming fields replace stored ones, empty ones keep them.
        `expires_at` is recomputed on every call.

        Raises:
            ValueError: empty title, or a rating outside 1.0-5.0
            StoreFailure: the store rejected the write
        """
        normalized_title = normalize_key(title)
        normalized_author = normalize_key(author)
        if not normalized_title:
            raise ValueError("A title is required to cache a book")
        if rating and not is_valid_rating(rating):
            raise ValueError(f"Rating must be a number between 1.0 and 5.0, got {rating!r}")

        incoming = {
            "isbn": (isbn or "").strip() or None,
            "cover_url": cover_url or None,
            "rating": format_rating(rating) if rating else None,
            "summary": summary or None,
            "metadata_json": metadata or None,
        }

        lock = self._lock_for(normalized_title, normalized_author)
        with lock:
            try:
                with self._session() as session:
                    return self._upsert(
                        session, title, author, normalized_title, normalized_author,
                        incoming, source, expires_at,
                    )
            except SQLAlchemyError as e:
                handle_database_error(e, "upsert", title=title, author=author)
                raise StoreFailure("upsert", e) from e

    def _upsert(
        self,
        session: Session,
        title: str,
        author: str,
        normalized_title: str,
        normalized_author: str,
        incoming: dict[str, Any],
        source: Optional[CacheSource],
        expires_at: Optional[datetime],
    ) -> BookCache:
        now = utcnow()
        existing = self._find_exact_key(session, normalized_title, normalized_author)
        if existing is None:
            existing = self._find_by_title_author(session, normalized_title, normalized_author, now)

        if existing is None:
            resolved = resolve_source(source, incoming["rating"], incoming["summary"])
            entry = BookCache(
                book_id=incoming["isbn"] or slugify(title, author),
                title=title.strip(),
                author=author.strip(),
                normalized_title=normalized_title,
                normalized_author=normalized_author,
                source=resolved,
                expires_at=self._expires_at(resolved, expires_at, now),
                created_at=now,
                updated_at=now,
            )
            merge_fields(entry, incoming)
            session.add(entry)
            try:
                session.commit()
                logger.debug("Inserted cache entry", title=title, author=author, source=resolved.value)
                return entry
            except IntegrityError:
                # Another writer inserted the same key first
                session.rollback()
                existing = self._find_exact_key(session, normalized_title, normalized_author)
                if existing is None:
                    raise

        resolved = resolve_source(source, incoming["rating"], incoming["summary"], existing)
        merge_fields(existing, incoming)
        existing.source = resolved
        existing.expires_at = self._expires_at(resolved, expires_at, now)
        existing.updated_at = now
        session.add(existing)
        session.commit()
        logger.debug("Updated cache entry", entry_id=existing.id, title=title, source=resolved.value)
        return existing

    def remember_saved_book(
        self,
        title: str,
        author: str,
        cover_url: Optional[str] = None,
        isbn: Optional[str] = None,
    ) -> BookCache:
        """Cache a book the user saved to a reading list."""
        return self.upsert(
            title=title,
            author=author,
            isbn=isbn,
            cover_url=cover_url,
            source=CacheSource.user_saved,
        )

    # Maintenance

    def expire_older_than(self, now: Optional[datetime] = None) -> int:
        """
        Delete every entry with expires_at <= now. Returns the number removed.

        Rows are deleted one commit at a time; a store error stops the sweep
        and the rows already removed are still counted.
        """
        now = as_utc(now) if now else utcnow()
        count = 0
        with self._session() as session:
            try:
                expired_ids = session.exec(
                    select(BookCache.id).where(BookCache.expires_at <= now)
                ).all()
                for entry_id in expired_ids:
                    entry = session.get(BookCache, entry_id)
                    if entry is None:
                        continue
                    session.delete(entry)
                    session.commit()
                    count += 1
            except SQLAlchemyError as e:
                handle_database_error(e, "expire entries", rollback_session=session, removed=count)

        if count:
            logger.info("Removed expired entries from book cache", count=count)
        return count

    def purge_non_authoritative_ratings(self) -> int:
        """Clear the rating of every entry whose source is not generative."""
        with self._session() as session:
            try:
                entries = session.exec(
                    select(BookCache)
                    .where(col(BookCache.rating).is_not(None))
                    .where(
                        or_(
                            col(BookCache.source).is_(None),
                            col(BookCache.source) != CacheSource.generative,
                        )
                    )
                ).all()
                for entry in entries:
                    entry.rating = None
                    session.add(entry)
                session.commit()
            except SQLAlchemyError as e:
                handle_database_error(e, "purge non-generative ratings", rollback_session=session)
                return 0

        logger.info("Cleared ratings from non-generative cache entries", count=len(entries))
        return len(entries)

    def reset_for_testing(
        self,
        preserve_summaries: bool = True,
        title_filter: Optional[str] = None,
    ) -> int:
        """
        Force cache misses for integration tests.

        Matching entries (all, or those whose title contains `title_filter`)
        get an expiry in the past. Summaries are cleared as well unless
        `preserve_summaries` is set. Without a filter and without preserving
        summaries every row is deleted.
        """
        try:
            with self._session() as session:
                if not preserve_summaries and not title_filter:
                    entries = session.exec(select(BookCache)).all()
                    for entry in entries:
                        session.delete(entry)
                    session.commit()
                    logger.info("Cleared book cache", count=len(entries))
                    return len(entries)

                query = select(BookCache)
                if title_filter:
                    query = query.where(
                        col(BookCache.normalized_title).contains(
                            normalize_key(title_filter), autoescape=True
                        )
                    )
                entries = session.exec(query).all()
                expiry = utcnow() - timedelta(
                    seconds=self.settings.cache.reset_expiry_offset_seconds
                )
                for entry in entries:
                    entry.expires_at = expiry
                    if not preserve_summaries:
                        entry.summary = None
                    session.add(entry)
                session.commit()
        except SQLAlchemyError as e:
            handle_database_error(e, "reset for testing")
            return 0

        logger.info(
            "Expired cache entries for testing",
            count=len(entries),
            preserve_summaries=preserve_summaries,
            title_filter=title_filter,
        )
        return len(entries)

    def count(self) -> int:
        with self._session() as session:
            return session.exec(select(func.count()).select_from(BookCache)).one()
