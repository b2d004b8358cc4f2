"""
Shared behaviour of the title-search / catalog adapters.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
from aiohttp import ClientError, ClientSession
from pydantic import ValidationError
from rapidfuzz import fuzz

from shelfscan.internal.env_settings import Settings
from shelfscan.internal.models import CacheSource, Candidate
from shelfscan.internal.rate_limiter import RateLimiter
from shelfscan.util.exceptions import (
    MalformedResponse,
    ProviderUnavailable,
    handle_external_api_error,
    handle_validation_error,
)
from shelfscan.util.log import logger


class CatalogProvider(ABC):
    """Base class for providers answering `search(title)` with candidates.

    Every search passes the rate limiter first and never raises: quota
    exhaustion, transport errors and unusable payloads all yield `[]`.
    Ratings and summaries carried by upstream catalogs are stripped.
    Adapters never chain to one another; the orchestrator owns the fallback order.
    """

    provider_key: str
    service_name: str
    source: CacheSource

    rate_limiter: RateLimiter
    settings: Settings

    def __init__(self, rate_limiter: RateLimiter, settings: Settings | None = None):
        self.rate_limiter = rate_limiter
        self.settings = settings or Settings()

    @abstractmethod
    async def _query(self, client_session: ClientSession, title: str) -> list[Candidate]: ...

    async def _get_json(
        self,
        client_session: ClientSession,
        url: str,
        params: dict[str, Any],
    ) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.settings.app.http_timeout)
        async with client_session.get(url, params=params, timeout=timeout) as response:
            if response.status != 200:
                raise ProviderUnavailable(self.service_name, f"HTTP {response.status}")
            try:
                return await response.json(content_type=None)
            except (json.JSONDecodeError, aiohttp.ContentTypeError) as e:
                raise MalformedResponse(self.service_name, str(e)) from e

    async def search(self, client_session: ClientSession, title: str) -> list[Candidate]:
        if not title or len(title.strip()) < 2:
            logger.debug("Skipping search for invalid title", title=title, provider=self.provider_key)
            return []

        if not self.rate_limiter.check_and_increment(self.provider_key):
            return []

        try:
            candidates = await self._query(client_session, title.strip())
        except (ClientError, asyncio.TimeoutError, ProviderUnavailable, MalformedResponse) as e:
            handle_external_api_error(e, self.service_name, "search", title=title)
            return []
        except ValidationError as e:
            handle_validation_error(e, f"{self.service_name} response", title=title)
            return []

        logger.debug(
            "Catalog search finished",
            provider=self.provider_key,
            title=title,
            results=len(candidates),
        )
        return [strip_untrusted_fields(candidate) for candidate in candidates]


def strip_untrusted_fields(candidate: Candidate) -> Candidate:
    """Drop upstream ratings and summaries; only trusted sources may set them."""
    return candidate.model_copy(update={"rating": "", "summary": ""})


def rank_by_title_similarity(query: str, candidates: list[Candidate]) -> list[Candidate]:
    """Order candidates by title similarity to the query. Ties keep provider order."""
    return sorted(
        candidates,
        key=lambda candidate: fuzz.token_set_ratio(query, candidate.title, processor=str.lower),
        reverse=True,
    )
