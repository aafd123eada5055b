"""
AI Gateway Client - OpenAI-compatible chat completions over httpx.

Gateway failures are mapped onto the ExternalServiceError family so the
metering layer can tell "try later" from "we're out of quota" from
"garbage came back". None of them debit the caller.
"""

import json
import re
import time
from typing import Any

import httpx
from structlog import get_logger

from app.config import settings
from app.exceptions import (
    ExternalServiceError,
    ExternalTimeoutError,
    MalformedResponseError,
    QuotaExhaustedError,
    RateLimitedError,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)

SERVICE = "ai_gateway"

_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def parse_json_content(content: str) -> dict[str, Any]:
    """
    Parse a model reply that should be a JSON object.

    Markdown fences are stripped first. If the result still doesn't parse,
    the outermost {...} block is tried before giving up.

    Raises:
        MalformedResponseError: No JSON object could be recovered
    """
    cleaned = _FENCE.sub("", content).strip()
    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if 0 <= start < end:
        candidates.append(cleaned[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.error("ai_gateway_unparseable_content", preview=cleaned[:200])
    raise MalformedResponseError(SERVICE, "reply is not a JSON object")


class AIGatewayClient:
    """Chat completion client for the AI gateway."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url or settings.ai_gateway_url
        self.api_key = api_key if api_key is not None else settings.ai_gateway_api_key
        self.model = model or settings.ai_model
        self.timeout = timeout if timeout is not None else settings.ai_timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def complete(self, system: str, prompt: str) -> str:
        """
        Run one chat completion and return the assistant message text.

        Raises:
            RateLimitedError: Gateway returned 429
            QuotaExhaustedError: Gateway returned 402
            ExternalTimeoutError: No response within the timeout
            MalformedResponseError: Response had no message content
            ExternalServiceError: Any other gateway failure
        """
        if not self.api_key:
            raise ExternalServiceError(SERVICE, "AI gateway is not configured")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        start = time.time()
        outcome = "success"
        try:
            response = await self.http_client.post(self.url, json=body, headers=headers)
            if response.status_code == 429:
                outcome = "rate_limited"
                retry_after = response.headers.get("retry-after")
                raise RateLimitedError(
                    SERVICE, float(retry_after) if retry_after and retry_after.isdigit() else None
                )
            if response.status_code == 402:
                outcome = "quota_exhausted"
                raise QuotaExhaustedError(SERVICE)
            if response.status_code >= 400:
                outcome = "error"
                logger.error(
                    "ai_gateway_error", status=response.status_code, text=response.text[:200]
                )
                raise ExternalServiceError(SERVICE, f"AI error: {response.status_code}")

            try:
                data = response.json()
                content = data["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                outcome = "malformed"
                raise MalformedResponseError(SERVICE, "missing message content") from e
            if not isinstance(content, str) or not content.strip():
                outcome = "malformed"
                raise MalformedResponseError(SERVICE, "empty message content")
            return content

        except httpx.TimeoutException as e:
            outcome = "timeout"
            raise ExternalTimeoutError(SERVICE, self.timeout) from e
        except httpx.HTTPError as e:
            outcome = "error"
            logger.error("ai_gateway_request_failed", error=str(e))
            raise ExternalServiceError(SERVICE, str(e)) from e
        finally:
            metrics.record_external_call(SERVICE, outcome, time.time() - start)

    async def complete_json(self, system: str, prompt: str) -> dict[str, Any]:
        """Chat completion whose reply must be a JSON object."""
        return parse_json_content(await self.complete(system, prompt))

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
