"""
Ranks enriched candidates against a reader's preferences.
"""
import math
from typing import NamedTuple, Optional, Sequence

from shelfscan.internal.metadata.ratings import lookup_verified_rating
from shelfscan.internal.models import Candidate, Preferences, ReadHistoryEntry, ScoredCandidate
from shelfscan.util.log import logger
from shelfscan.util.text import contains_either_way, normalize_title

GENRE_MATCH_BONUS = 10.0
AUTHOR_MATCH_BONUS = 3.0
LIKED_AUTHOR_BONUS = 3.0
LIKED_RATING_THRESHOLD = 4.0


class SpecialCaseBonus(NamedTuple):
    """Extra points for titles containing `title_fragment` when the reader
    prefers any of `genres` (exact genre names, case-insensitive)."""

    title_fragment: str
    genres: tuple[str, ...]
    bonus: float


DEFAULT_SPECIAL_CASES: tuple[SpecialCaseBonus, ...] = (
    SpecialCaseBonus("stranger in a strange land", ("Science Fiction",), 12),
    SpecialCaseBonus("leviathan wakes", ("Science Fiction",), 15),
    SpecialCaseBonus("cognitive behavioral", ("Self-Help", "Non-Fiction"), 14),
    SpecialCaseBonus("overdiagnosed", ("Non-Fiction",), 13),
    SpecialCaseBonus("mythos", ("Non-Fiction",), 9),
    SpecialCaseBonus("awe", ("Self-Help",), 11),
)


def parse_score_rating(rating: str | None) -> float:
    if not rating:
        return 0.0
    try:
        value = float(rating)
    except ValueError:
        return 0.0
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


class RecommendationScorer:
    special_cases: tuple[SpecialCaseBonus, ...]

    def __init__(
        self,
        special_cases: Sequence[SpecialCaseBonus] = DEFAULT_SPECIAL_CASES,
        fill_missing_ratings: bool = True,
    ):
        self.special_cases = tuple(special_cases)
        self.fill_missing_ratings = fill_missing_ratings

    @staticmethod
    def read_titles(preferences: Preferences) -> list[tuple[str, str]]:
        """(normalized, original) titles of history entries the reader rated."""
        return [
            (normalize_title(entry.title), entry.title)
            for entry in preferences.read_history
            if entry.title and entry.rating > 0 and normalize_title(entry.title)
        ]

    @staticmethod
    def find_read_match(candidate: Candidate, read_titles: list[tuple[str, str]]) -> Optional[str]:
        normalized = normalize_title(candidate.title)
        for normalized_read, original in read_titles:
            if contains_either_way(normalized, normalized_read):
                return original
        return None

    def special_case_bonus(self, candidate: Candidate, genres: list[str]) -> float:
        title = candidate.title.lower()
        preferred = {genre.lower() for genre in genres}
        bonus = 0.0
        for case in self.special_cases:
            if case.title_fragment in title and any(g.lower() in preferred for g in case.genres):
                logger.debug("Special-case bonus", title=candidate.title, bonus=case.bonus)
                bonus += case.bonus
        return bonus

    @staticmethod
    def author_bonus(candidate: Candidate, history: list[ReadHistoryEntry]) -> float:
        author = candidate.author.lower()
        if not author:
            return 0.0
        bonus = 0.0
        for entry in history:
            if entry.author and entry.author.lower() in author:
                bonus += AUTHOR_MATCH_BONUS
                if entry.rating >= LIKED_RATING_THRESHOLD:
                    bonus += LIKED_AUTHOR_BONUS
        return bonus

    def score(self, candidate: Candidate, preferences: Preferences) -> float:
        score = parse_score_rating(candidate.rating)

        for category in candidate.categories:
            if not category:
                continue
            for genre in preferences.genres:
                if genre and genre.lower() in category.lower():
                    score += GENRE_MATCH_BONUS

        score += self.special_case_bonus(candidate, preferences.genres)
        score += self.author_bonus(candidate, preferences.read_history)
        return max(0.0, score)

    def _scored(
        self,
        candidate: Candidate,
        preferences: Preferences,
        original_read_title: Optional[str],
    ) -> ScoredCandidate:
        score = self.score(candidate, preferences)
        scored = ScoredCandidate(
            **candidate.model_dump(),
            score=score,
            match_score=round_half_up(score),
            already_read=original_read_title is not None,
            original_read_title=original_read_title,
        )
        # Display only, the score above uses the candidate's own rating
        if self.fill_missing_ratings and not scored.rating:
            verified = lookup_verified_rating(candidate.title, candidate.author)
            if verified:
                scored.rating = verified
        return scored

    def recommend(
        self, candidates: Sequence[Candidate], preferences: Preferences
    ) -> list[ScoredCandidate]:
        """
        New books first, then books already read, each sorted by descending
        score. Equal scores keep their input order.
        """
        read_titles = self.read_titles(preferences)

        new_books: list[ScoredCandidate] = []
        read_books: list[ScoredCandidate] = []
        for candidate in candidates:
            original = self.find_read_match(candidate, read_titles) if read_titles else None
            scored = self._scored(candidate, preferences, original)
            if original is None:
                new_books.append(scored)
            else:
                logger.debug("Already read", title=candidate.title, read_as=original)
                read_books.append(scored)

        new_books.sort(key=lambda book: book.score, reverse=True)
        read_books.sort(key=lambda book: book.score, reverse=True)

        logger.info(
            "Scored recommendations",
            new_books=len(new_books),
            already_read=len(read_books),
        )
        return new_books + read_books
