"""
OpenAI Service for email triage.
Scores single emails (1-10 importance) and summarises threads using a chat
model in JSON mode. Transient API failures are retried here, so callers only
see an AIServiceError once every attempt is spent.
"""

import asyncio
import json
from typing import Any

import openai
from openai import AsyncOpenAI

from inbox_triage.config import settings
from inbox_triage.errors import AIServiceError, ConfigurationError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.queue.payloads import ThreadMessage
from inbox_triage.triage.domain import AIScore, EmailRecord, ThreadSummary

logger = get_logger(__name__)

SCORING_SYSTEM_MESSAGE = """### Role
You triage a busy professional's inbox. Rate how important it is that the user reads this email soon.

### Output Requirements
- Return ONLY valid JSON: {"score": <number 1-10>, "reasoning": "<one sentence>"}
- 10 = needs attention now (direct request, deadline, key person); 1 = safe to ignore (bulk, promotional)
- A rule-based pre-score (0-100) is supplied as a hint; disagree with it when the content warrants"""

SUMMARY_SYSTEM_MESSAGE = """### Role
You summarise email threads for a busy professional.

### Output Requirements
- Return ONLY valid JSON: {"summary": "<2-3 sentences>", "key_points": ["<point>", ...]}
- At most 5 key points, each under 20 words
- Mention decisions, requests and deadlines; skip greetings and signatures"""


class OpenAITriageService:
    """
    OpenAI adapter implementing the AIScorer interface.

    Uses a small chat model with JSON responses; every call goes through
    ``_call_openai_with_retry``.
    """

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        self.model = model or settings.OPENAI_MODEL
        self.max_retries = settings.OPENAI_MAX_RETRIES
        self.client = client or self._initialize_client()
        logger.info("OpenAI triage service initialized", model=self.model)

    def _initialize_client(self) -> AsyncOpenAI:
        if not settings.OPENAI_API_KEY:
            raise ConfigurationError("OPENAI_API_KEY not configured in settings")

        return AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
        )

    # ------------------------------------------------------------------
    # AIScorer interface
    # ------------------------------------------------------------------

    async def score_email(self, email: EmailRecord, rule_score: int) -> AIScore:
        """
        Ask the model for a 1-10 importance score.

        Raises:
            AIServiceError: API failed after retries or returned unusable output
        """
        user_message = (
            f"From: {email.from_email}\n"
            f"Subject: {email.subject}\n"
            f"Snippet: {email.snippet[:1000]}\n"
            f"Flags: important={email.is_important}, starred={email.is_starred}, "
            f"unread={email.is_unread}, attachment={email.has_attachment}\n"
            f"Rule pre-score: {rule_score}"
        )

        raw = await self._call_openai_with_retry(SCORING_SYSTEM_MESSAGE, user_message)
        data = self._parse_json(raw)

        try:
            score = float(data["score"])
        except (KeyError, TypeError, ValueError) as e:
            raise AIServiceError("OpenAI response missing numeric score", recoverable=True) from e

        return AIScore(score=max(1.0, min(10.0, score)), reasoning=str(data.get("reasoning", ""))[:500])

    async def summarize_thread(self, subject: str, messages: list[ThreadMessage]) -> ThreadSummary:
        """Summarise an ordered thread into a short summary plus key points."""
        lines = [f"Thread subject: {subject}", ""]
        for index, message in enumerate(messages, start=1):
            lines.append(
                f"[{index}] {message.date} | {message.from_email} | {message.subject}\n{message.snippet[:500]}"
            )

        raw = await self._call_openai_with_retry(SUMMARY_SYSTEM_MESSAGE, "\n".join(lines))
        data = self._parse_json(raw)

        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise AIServiceError("OpenAI response missing summary", recoverable=True)

        key_points = data.get("key_points") or []
        if not isinstance(key_points, list):
            key_points = [str(key_points)]

        return ThreadSummary(summary=summary.strip(), key_points=[str(p) for p in key_points[:5]])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse_json(self, raw: str) -> dict[str, Any]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise AIServiceError("OpenAI returned invalid JSON", recoverable=True) from e
        if not isinstance(data, dict):
            raise AIServiceError("OpenAI returned a non-object JSON value", recoverable=True)
        return data

    async def _call_openai_with_retry(self, system_message: str, user_message: str) -> str:
        """Call OpenAI API with retry logic for transient failures."""

        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_message},
                        {"role": "user", "content": user_message},
                    ],
                    max_tokens=settings.OPENAI_MAX_TOKENS,
                    temperature=settings.OPENAI_TEMPERATURE,
                    response_format={"type": "json_object"},
                )

                if not response.choices or not response.choices[0].message.content:
                    raise AIServiceError("Empty response from OpenAI API")

                result = response.choices[0].message.content.strip()

                logger.debug(
                    "OpenAI API call successful",
                    attempt=attempt + 1,
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return result

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(settings.OPENAI_RETRY_DELAY_SECONDS * 2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    attempt=attempt + 1,
                    wait_time=wait_time,
                    error=str(e),
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIStatusError as e:
                last_error = e
                # Don't retry on client errors (4xx)
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    raise AIServiceError(
                        "OpenAI rejected the request", api_error=str(e), recoverable=False
                    ) from e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except AIServiceError as e:
                last_error = e
                logger.warning("Unusable OpenAI response, retrying", attempt=attempt + 1)

        logger.error(
            "OpenAI API call failed after all retries",
            max_retries=self.max_retries,
            final_error=str(last_error),
        )
        raise AIServiceError(
            f"OpenAI API failed after {self.max_retries} attempts",
            api_error=str(last_error),
            recoverable=True,
        ) from last_error
