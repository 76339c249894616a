from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from inbox_triage.errors import AIServiceError, ConfigurationError
from inbox_triage.queue.payloads import ThreadMessage
from inbox_triage.services.openai_service import OpenAITriageService


def _response(content: str | None):
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    response.usage = None
    return response


def _service(*contents) -> tuple[OpenAITriageService, AsyncMock]:
    client = MagicMock()
    create = AsyncMock(side_effect=[_response(c) for c in contents])
    client.chat.completions.create = create
    return OpenAITriageService(client=client, model="test-model"), create


@pytest.mark.asyncio
async def test_score_email_parses_and_clamps(email_factory):
    service, create = _service('{"score": 14, "reasoning": "Direct request from manager"}')

    verdict = await service.score_email(email_factory(subject="Need this today"), 65)

    assert verdict.score == 10.0
    assert verdict.reasoning == "Direct request from manager"
    kwargs = create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert "Rule pre-score: 65" in kwargs["messages"][1]["content"]


@pytest.mark.asyncio
async def test_invalid_json_raises_ai_service_error(email_factory):
    service, _ = _service("not json")

    with pytest.raises(AIServiceError):
        await service.score_email(email_factory(), 50)


@pytest.mark.asyncio
async def test_missing_score_raises_ai_service_error(email_factory):
    service, _ = _service('{"reasoning": "no number"}')

    with pytest.raises(AIServiceError):
        await service.score_email(email_factory(), 50)


@pytest.mark.asyncio
async def test_empty_content_is_retried_then_fails(email_factory):
    service, create = _service(None, None, None)
    service.max_retries = 3

    with pytest.raises(AIServiceError) as exc:
        await service.score_email(email_factory(), 50)

    assert create.await_count == 3
    assert exc.value.recoverable is True


@pytest.mark.asyncio
async def test_empty_then_valid_content_succeeds(email_factory):
    service, create = _service("", '{"score": 3}')
    service.max_retries = 3

    verdict = await service.score_email(email_factory(), 50)

    assert verdict.score == 3.0
    assert create.await_count == 2


@pytest.mark.asyncio
async def test_client_error_is_not_retried(email_factory):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    error = openai.BadRequestError(
        "bad request", response=httpx.Response(400, request=request), body=None
    )
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=error)
    service = OpenAITriageService(client=client, model="test-model")

    with pytest.raises(AIServiceError) as exc:
        await service.score_email(email_factory(), 50)

    assert exc.value.recoverable is False
    assert client.chat.completions.create.await_count == 1


@pytest.mark.asyncio
async def test_summarize_thread_limits_key_points():
    service, create = _service(
        '{"summary": " Budget approved. ", "key_points": ["a", "b", "c", "d", "e", "f"]}'
    )
    messages = [ThreadMessage(subject="Budget", from_email="cfo@example.com", snippet="Approved")]

    summary = await service.summarize_thread("Budget", messages)

    assert summary.summary == "Budget approved."
    assert summary.key_points == ["a", "b", "c", "d", "e"]
    assert "cfo@example.com" in create.call_args.kwargs["messages"][1]["content"]


def test_missing_api_key_is_configuration_error():
    with patch("inbox_triage.services.openai_service.settings.OPENAI_API_KEY", None):
        with pytest.raises(ConfigurationError):
            OpenAITriageService()
