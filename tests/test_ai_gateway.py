"""
Tests for the AI gateway client.

The httpx client is injected as an AsyncMock, so no network is touched.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.exceptions import (
    ExternalServiceError,
    ExternalTimeoutError,
    MalformedResponseError,
    QuotaExhaustedError,
    RateLimitedError,
)
from app.services.ai_gateway import AIGatewayClient, parse_json_content


def _response(status_code: int = 200, json_data=None, headers=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    if isinstance(json_data, Exception):
        response.json.side_effect = json_data
    else:
        response.json.return_value = json_data
    return response


def _completion(content) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def http_client() -> AsyncMock:
    """Mock httpx client."""
    client = AsyncMock(spec=httpx.AsyncClient)
    client.post = AsyncMock(return_value=_response(json_data=_completion('{"ok": true}')))
    return client


@pytest.fixture
def gateway(http_client: AsyncMock) -> AIGatewayClient:
    """Gateway client over the mock transport."""
    return AIGatewayClient(
        url="https://gateway.test/v1/chat/completions",
        api_key="test-key",
        model="test-model",
        timeout=5.0,
        http_client=http_client,
    )


class TestParseJsonContent:
    """Tests for recovering JSON from model replies."""

    def test_plain_json(self):
        """Bare JSON parses."""
        assert parse_json_content('{"fr": {"title": "x"}}') == {"fr": {"title": "x"}}

    def test_fenced_json(self):
        """Markdown fences are stripped."""
        content = '```json\n{"de": {"title": "y"}}\n```'
        assert parse_json_content(content) == {"de": {"title": "y"}}

    def test_json_with_chatter(self):
        """The outermost object is extracted from surrounding prose."""
        content = 'Here you go:\n{"nl": {"title": "z"}}\nHope that helps!'
        assert parse_json_content(content) == {"nl": {"title": "z"}}

    @pytest.mark.parametrize("content", ["not json at all", "[1, 2, 3]", "{broken"])
    def test_unrecoverable_raises(self, content: str):
        """Anything that isn't a JSON object is malformed."""
        with pytest.raises(MalformedResponseError):
            parse_json_content(content)


class TestComplete:
    """Tests for chat completion calls."""

    async def test_success_returns_content(self, gateway, http_client):
        """The assistant message text is returned."""
        content = await gateway.complete("system", "prompt")

        assert content == '{"ok": true}'
        call = http_client.post.call_args
        assert call.args[0] == "https://gateway.test/v1/chat/completions"
        assert call.kwargs["headers"] == {"Authorization": "Bearer test-key"}
        assert call.kwargs["json"]["model"] == "test-model"
        assert [m["role"] for m in call.kwargs["json"]["messages"]] == ["system", "user"]

    async def test_complete_json(self, gateway):
        """complete_json parses the reply."""
        assert await gateway.complete_json("system", "prompt") == {"ok": True}

    async def test_missing_key_fails_before_request(self, http_client):
        """An unconfigured gateway never calls out."""
        gateway = AIGatewayClient(api_key="", http_client=http_client)

        with pytest.raises(ExternalServiceError, match="not configured"):
            await gateway.complete("system", "prompt")

        http_client.post.assert_not_called()

    async def test_rate_limited(self, gateway, http_client):
        """429 maps to RateLimitedError with the retry hint."""
        http_client.post.return_value = _response(429, headers={"retry-after": "7"})

        with pytest.raises(RateLimitedError) as exc_info:
            await gateway.complete("system", "prompt")

        assert exc_info.value.retry_after == 7.0

    async def test_quota_exhausted(self, gateway, http_client):
        """402 maps to QuotaExhaustedError."""
        http_client.post.return_value = _response(402)

        with pytest.raises(QuotaExhaustedError):
            await gateway.complete("system", "prompt")

    async def test_server_error(self, gateway, http_client):
        """Other error statuses are generic service errors."""
        http_client.post.return_value = _response(500, text="internal")

        with pytest.raises(ExternalServiceError) as exc_info:
            await gateway.complete("system", "prompt")

        assert exc_info.value.message == "AI error: 500"
        assert not isinstance(exc_info.value, (RateLimitedError, QuotaExhaustedError))

    async def test_timeout(self, gateway, http_client):
        """httpx timeouts become ExternalTimeoutError."""
        http_client.post.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(ExternalTimeoutError) as exc_info:
            await gateway.complete("system", "prompt")

        assert exc_info.value.timeout == 5.0

    async def test_connection_error(self, gateway, http_client):
        """Transport errors become ExternalServiceError."""
        http_client.post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(ExternalServiceError):
            await gateway.complete("system", "prompt")

    @pytest.mark.parametrize(
        "json_data",
        [
            ValueError("not json"),
            {"choices": []},
            {"unexpected": True},
            _completion(""),
            _completion(None),
        ],
    )
    async def test_malformed_body(self, gateway, http_client, json_data):
        """Bodies without usable content are malformed."""
        http_client.post.return_value = _response(json_data=json_data)

        with pytest.raises(MalformedResponseError):
            await gateway.complete("system", "prompt")

    async def test_call_is_recorded(self, gateway, http_client):
        """Every call is recorded with its outcome."""
        http_client.post.return_value = _response(402)

        with patch("app.services.ai_gateway.metrics") as mock_metrics:
            with pytest.raises(QuotaExhaustedError):
                await gateway.complete("system", "prompt")

        service, outcome, _ = mock_metrics.record_external_call.call_args.args
        assert (service, outcome) == ("ai_gateway", "quota_exhausted")

    async def test_close(self, gateway, http_client):
        """close() releases the HTTP client."""
        await gateway.close()
        http_client.aclose.assert_awaited_once()
