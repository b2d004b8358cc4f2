"""
OpenAI chat-completions adapter used to synthesize ratings and summaries
from the model's knowledge of a book.
"""
import asyncio

import openai

from shelfscan.internal.env_settings import Settings
from shelfscan.internal.models import RatingResult
from shelfscan.internal.rate_limiter import RateLimiter
from shelfscan.util.exceptions import handle_external_api_error
from shelfscan.util.log import logger

RATING_SYSTEM_PROMPT = (
    "You are a literary expert with extensive knowledge of books and their reception. "
    "Your task is to provide an accurate rating for a book based on critical consensus "
    "and general reader reception. Base your rating only on your knowledge of this "
    "book's reception - do not conduct web searches."
)

RATING_USER_PROMPT = (
    'Please rate the book "{title}" by {author} on a scale of 1.0 to 5.0 stars '
    "(with one decimal place). Only respond with a single number between 1.0 and 5.0. "
    "If you don't have sufficient knowledge about this book, provide your best estimate "
    "based on similar works by this author or in this genre."
)

SUMMARY_SYSTEM_PROMPT = (
    "You are a literary expert providing engaging book summaries. Craft a concise "
    "3-4 sentence summary that captures the essence of the book, its main themes, "
    "and what makes it notable. Focus on being informative yet brief."
)

SUMMARY_USER_PROMPT = (
    'Summarize the book "{title}" by {author} in 3-4 sentences. Be engaging and '
    "highlight what makes this book special. Use only your existing knowledge about "
    "this book."
)


class GenerativeProvider:
    """Rates and summarizes books through the OpenAI API.

    Every call passes the rate limiter first. Quota exhaustion, missing
    configuration and API errors all return None.
    """

    provider_key = "openai"
    service_name = "OpenAI"

    rate_limiter: RateLimiter
    settings: Settings

    def __init__(
        self,
        rate_limiter: RateLimiter,
        settings: Settings | None = None,
        client: openai.AsyncOpenAI | None = None,
    ):
        self.rate_limiter = rate_limiter
        self.settings = settings or Settings()
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.settings.app.openai_api_key)

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.settings.app.openai_api_key,
                timeout=self.settings.app.openai_timeout,
                max_retries=self.settings.app.openai_max_retries,
            )
        return self._client

    async def _complete(
        self,
        operation: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
        **context: str,
    ) -> str | None:
        if not self.configured:
            logger.debug("OpenAI not configured", operation=operation, **context)
            return None

        if not self.rate_limiter.check_and_increment(self.provider_key):
            return None

        try:
            response = await self._get_client().chat.completions.create(
                model=self.settings.app.openai_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except (openai.OpenAIError, asyncio.TimeoutError) as e:
            handle_external_api_error(e, self.service_name, operation, **context)
            return None

        if not response.choices:
            return None
        content = response.choices[0].message.content
        return content.strip() if content else None

    async def rate(self, title: str, author: str) -> RatingResult | None:
        text = await self._complete(
            "rate",
            RATING_SYSTEM_PROMPT,
            RATING_USER_PROMPT.format(title=title, author=author),
            max_tokens=10,
            temperature=0.3,
            title=title,
            author=author,
        )
        if text is None:
            return None
        logger.debug("OpenAI rating response", title=title, response=text)
        return RatingResult(text=text, provider=self.provider_key)

    async def summarize(self, title: str, author: str) -> str | None:
        return await self._complete(
            "summarize",
            SUMMARY_SYSTEM_PROMPT,
            SUMMARY_USER_PROMPT.format(title=title, author=author),
            max_tokens=200,
            temperature=0.6,
            title=title,
            author=author,
        )
