"""
Error taxonomy and standard error logging for the enrichment core.

Nothing raised here is meant to reach the end caller. Provider adapters log and
return empty results, cache reads log and report a miss, and cache writes raise
`StoreFailure` so the orchestrator can log it and keep the in-memory value.
Quota exhaustion is not an error: the rate limiter simply answers False.
"""
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from shelfscan.util.log import logger


class EnrichmentError(Exception):
    """Base class for errors raised inside the enrichment core."""


class ProviderUnavailable(EnrichmentError):
    """A provider could not be reached, timed out or answered with a non-2xx status."""

    def __init__(self, provider: str, detail: str):
        super().__init__(f"{provider} unavailable: {detail}")
        self.provider = provider
        self.detail = detail


class MalformedResponse(EnrichmentError):
    """A provider answered, but the payload could not be used."""

    def __init__(self, provider: str, payload: str | None):
        super().__init__(f"{provider} returned an unusable payload: {payload!r}")
        self.provider = provider
        self.payload = payload


class StoreFailure(EnrichmentError):
    """Reading from or writing to the metadata cache failed."""

    def __init__(self, operation: str, cause: Exception | None = None):
        super().__init__(f"Cache store {operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


def _log_failure(level: str, message: str, error: BaseException, **context: Any) -> None:
    getattr(logger, level)(
        message,
        error=str(error),
        error_type=type(error).__name__,
        **context,
    )


def handle_external_api_error(
    error: BaseException,
    service: str,
    operation: str,
    **context: Any,
) -> None:
    """
    Log a failed call to a catalog or generative provider.

    Example:
        except ClientError as e:
            handle_external_api_error(e, "Open Library", "search", title=title)
            return []
    """
    _log_failure("error", f"{service} {operation} failed", error, service=service, operation=operation, **context)


def handle_database_error(
    error: SQLAlchemyError,
    operation: str,
    rollback_session: Any = None,
    **context: Any,
) -> None:
    """Log a failed cache store operation and roll back `rollback_session` if given."""
    _log_failure("error", f"Database {operation} failed", error, operation=operation, **context)

    if rollback_session is None:
        return
    try:
        rollback_session.rollback()
    except SQLAlchemyError as rollback_error:
        logger.warning("Rollback after database error failed", error=str(rollback_error))


def handle_validation_error(error: ValidationError, data_source: str, **context: Any) -> None:
    _log_failure(
        "error",
        f"{data_source} validation failed",
        error,
        data_source=data_source,
        validation_errors=error.error_count(),
        **context,
    )


def handle_cache_error(error: BaseException, operation: str, cache_key: str, **context: Any) -> None:
    """
    Log a cache failure the caller recovers from, such as a persist that did
    not happen while the resolved value is still returned.
    """
    _log_failure("warning", f"Cache {operation} failed", error, operation=operation, cache_key=cache_key, **context)
