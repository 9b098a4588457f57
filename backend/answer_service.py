"""
Answer Service — transport to the remote answer-generation endpoint.

The service does one request per call and reports what happened as a
ServiceResponse; it never retries. Retrying and interpretation of status
codes belong to RetryingAnswerClient.

Backends:
- AzureInferenceAnswerService: chat-completions on an Azure AI Inference /
  Azure OpenAI deployment, over httpx
- MockAnswerService: scripted responses for development and tests
"""
from __future__ import annotations

import abc
import structlog
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx

from config.settings import LLMConfig, get_settings

logger = structlog.get_logger()

STATUS_OK = 200
STATUS_RATE_LIMITED = 429
STATUS_TRANSPORT_ERROR = 0          # request never produced an HTTP status


@dataclass
class AnswerServiceRequest:
    system_prompt: str
    user_message: str
    temperature: float = 0.7
    top_p: float = 1.0
    max_tokens: int = 500
    model_id: str = ""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": self.user_message},
            ],
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        }
        if self.model_id:
            payload["model"] = self.model_id
        return payload


@dataclass
class ServiceResponse:
    status: int
    text: str = ""
    error_message: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def rate_limited(self) -> bool:
        return self.status == STATUS_RATE_LIMITED

    @classmethod
    def success(cls, text: str) -> "ServiceResponse":
        return cls(status=STATUS_OK, text=text)

    @classmethod
    def failure(cls, status: int, message: str = "") -> "ServiceResponse":
        return cls(status=status, error_message=message)


class AnswerService(abc.ABC):
    """Abstract base for answer-generation backends."""

    @abc.abstractmethod
    async def complete(self, request: AnswerServiceRequest) -> ServiceResponse:
        """Send one request. Must not raise for HTTP-level failures."""
        ...

    async def close(self) -> None:
        return None


class AzureInferenceAnswerService(AnswerService):
    """
    Chat-completions client for an Azure inference endpoint.
    Authenticates with the `api-key` header.
    """

    API_VERSION = "2024-05-01-preview"

    def __init__(self, config: LLMConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().llm
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.endpoint.rstrip("/"),
                headers={"api-key": self.config.api_key},
                timeout=httpx.Timeout(self.config.timeout_s, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def complete(self, request: AnswerServiceRequest) -> ServiceResponse:
        client = await self._get_client()
        try:
            resp = await client.post(
                "/chat/completions",
                params={"api-version": self.API_VERSION},
                json=request.to_payload(),
            )
        except httpx.HTTPError as e:
            logger.error("answer_service_transport_error", error=str(e))
            return ServiceResponse.failure(STATUS_TRANSPORT_ERROR, str(e) or type(e).__name__)

        body = self._json_or_empty(resp)
        if resp.status_code >= 400:
            logger.warning(
                "answer_service_error",
                status=resp.status_code,
                body=resp.text[:500],
            )
            return ServiceResponse.failure(resp.status_code, self._error_message(body))

        choices = body.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        return ServiceResponse(status=resp.status_code, text=content)

    @staticmethod
    def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _error_message(body: dict[str, Any]) -> str:
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message", "")
        return ""

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()


class MockAnswerService(AnswerService):
    """
    Replays a script of responses; once the script runs out every call
    answers with `default_text`. Records every request it receives.
    """

    def __init__(self, responses: Iterable[ServiceResponse] = (), default_text: str = "Mock answer."):
        self._script: deque[ServiceResponse] = deque(responses)
        self.default_text = default_text
        self.requests: list[AnswerServiceRequest] = []

    def enqueue(self, *responses: ServiceResponse) -> None:
        self._script.extend(responses)

    async def complete(self, request: AnswerServiceRequest) -> ServiceResponse:
        self.requests.append(request)
        if self._script:
            return self._script.popleft()
        return ServiceResponse.success(self.default_text)

    @property
    def call_count(self) -> int:
        return len(self.requests)


def create_answer_service(config: LLMConfig = None) -> AnswerService:
    """Use the Azure backend when an endpoint and key are configured, else the mock."""
    config = config or get_settings().llm
    if config.endpoint and config.api_key:
        logger.info("answer_service_selected", backend="azure", model=config.model)
        return AzureInferenceAnswerService(config)
    logger.warning("answer_service_unconfigured_using_mock")
    return MockAnswerService()
