"""
Local rating sources: the verified rating table, parsing of generative
rating text, and the deterministic estimate used as the last resort.
"""
import hashlib
import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import NamedTuple

from shelfscan.util.exceptions import MalformedResponse
from shelfscan.util.text import contains_either_way, normalize_key

MIN_RATING = Decimal("1.0")
MAX_RATING = Decimal("5.0")

_RATING_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")


class VerifiedRating(NamedTuple):
    title: str
    author: str
    rating: str


VERIFIED_RATINGS: tuple[VerifiedRating, ...] = (
    VerifiedRating("atomic habits", "james clear", "4.8"),
    VerifiedRating("the creative act", "rick rubin", "4.8"),
    VerifiedRating("american gods", "neil gaiman", "4.6"),
    VerifiedRating("the psychology of money", "morgan housel", "4.7"),
    VerifiedRating("stumbling on happiness", "daniel gilbert", "4.3"),
    VerifiedRating("this is how you lose the time war", "amal el-mohtar", "4.5"),
    VerifiedRating("this is how you lose the time war", "max gladstone", "4.5"),
    VerifiedRating("the book of five rings", "miyamoto musashi", "4.7"),
    VerifiedRating("economics for everyone", "jim stanford", "4.5"),
    VerifiedRating("apocalypse never", "michael shellenberger", "4.7"),
    VerifiedRating("economic facts and fallacies", "thomas sowell", "4.8"),
    VerifiedRating("thinking, fast and slow", "daniel kahneman", "4.6"),
    VerifiedRating("sapiens", "yuval noah harari", "4.7"),
    VerifiedRating("educated", "tara westover", "4.7"),
    VerifiedRating("becoming", "michelle obama", "4.8"),
    VerifiedRating("the silent patient", "alex michaelides", "4.5"),
    VerifiedRating("where the crawdads sing", "delia owens", "4.8"),
    VerifiedRating("dune", "frank herbert", "4.7"),
    VerifiedRating("project hail mary", "andy weir", "4.8"),
    VerifiedRating("the martian", "andy weir", "4.7"),
    VerifiedRating("the midnight library", "matt haig", "4.3"),
    VerifiedRating("1984", "george orwell", "4.7"),
    VerifiedRating("to kill a mockingbird", "harper lee", "4.8"),
    VerifiedRating("the great gatsby", "f. scott fitzgerald", "4.5"),
    VerifiedRating("pride and prejudice", "jane austen", "4.7"),
    VerifiedRating("the alchemist", "paulo coelho", "4.7"),
    VerifiedRating("the four agreements", "don miguel ruiz", "4.7"),
    VerifiedRating("the power of now", "eckhart tolle", "4.7"),
    VerifiedRating("man's search for meaning", "viktor e. frankl", "4.7"),
    VerifiedRating("a brief history of time", "stephen hawking", "4.7"),
)


def lookup_verified_rating(
    title: str,
    author: str,
    table: tuple[VerifiedRating, ...] = VERIFIED_RATINGS,
) -> str | None:
    """Rating from the verified table, matching exactly first, then by containment."""
    normalized_title = normalize_key(title)
    normalized_author = normalize_key(author)
    if not normalized_title:
        return None

    for book in table:
        if normalized_title == book.title and book.author in normalized_author:
            return book.rating

    for book in table:
        if contains_either_way(normalized_title, book.title) and contains_either_way(
            normalized_author, book.author
        ):
            return book.rating

    return None


def is_valid_rating(value: str | None) -> bool:
    if not value:
        return False
    try:
        number = Decimal(value.strip())
    except InvalidOperation:
        return False
    return number.is_finite() and MIN_RATING <= number <= MAX_RATING


def format_rating(value: str | Decimal) -> str:
    """One fractional digit, extra digits truncated: "4" -> "4.0", "4.59" -> "4.5"."""
    return str(Decimal(value).quantize(Decimal("0.1"), rounding=ROUND_DOWN))


def parse_rating_text(text: str | None, provider: str = "openai") -> str:
    """
    Extract the first number from free text and format it as "d.d".

    Extra fractional digits are truncated, not rounded ("4.59" -> "4.5").

    Raises:
        MalformedResponse: no number found, or the number is outside [1.0, 5.0]
    """
    match = _RATING_PATTERN.search(text or "")
    if not match:
        raise MalformedResponse(provider, text)
    number = Decimal(match.group(1))
    if not MIN_RATING <= number <= MAX_RATING:
        raise MalformedResponse(provider, text)
    return format_rating(number)


def estimate_rating(title: str, author: str) -> str:
    """
    Deterministic rating estimate between 3.5 and 4.7, keyed on title and author.
    Never fails.
    """
    key = f"{normalize_key(title)}|{normalize_key(author)}".encode()
    bucket = int(hashlib.sha256(key).hexdigest()[:8], 16) % 13
    return str(Decimal("3.5") + Decimal(bucket) / 10)
