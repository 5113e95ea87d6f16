"""Vision chat client used by the classification and sender stages.

Talks to an OpenAI-compatible /v1/chat/completions endpoint. A user
message may carry a list of parts instead of a string, which is how the
evidence image and the landing page screenshot reach the model next to the
message text.

Usage:
    client = InferenceClient(InferenceConfig(api_key="sk-...", model_name="gpt-4o-mini"))

    response = await client.chat(
        [
            ChatMessage(role="system", content="Return JSON."),
            ChatMessage(role="user", content=[
                text_part("Chip in $5 for our 5X match"),
                image_part("data:image/png;base64,..."),
            ]),
        ],
        json_mode=True,
    )
    response.content                 # raw JSON text from the model
    response.model_info.model_name   # stored as the submission's ai_version
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
PROVIDER = "openai"


class InferenceError(Exception):
    """The model could not produce an answer."""


class MissingApiKeyError(InferenceError):
    """OPENAI_API_KEY is not configured."""


class ConnectionInferenceError(InferenceError):
    pass


class TimeoutInferenceError(InferenceError):
    pass


class ResponseInferenceError(InferenceError):
    """The provider answered with an error object or an unusable body."""


@dataclass
class InferenceConfig:
    """Provider settings.

    A timeout of None leaves the request unbounded, as the provider
    enforces its own limit on long vision requests.
    """

    api_key: Optional[str] = None
    base_url: str = "https://api.openai.com"
    model_name: str = "gpt-4o-mini"
    timeout: Optional[float] = None
    max_tokens: int = 1500
    temperature: float = 0.0


ContentPart = dict[str, Any]


def text_part(text: str) -> ContentPart:
    return {"type": "text", "text": text}


def image_part(url: str) -> ContentPart:
    """An image the model should look at; https URL or data URL."""
    return {"type": "image_url", "image_url": {"url": url}}


@dataclass
class ChatMessage:
    role: str
    content: Union[str, list[ContentPart]]

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class ModelInfo:
    """What answered and at what cost; logged with every stage result."""

    model_name: str
    provider: str
    temperature: float
    max_tokens: int
    input_tokens: int
    output_tokens: int
    latency_ms: int
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "model_name": self.model_name,
            "provider": self.provider,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_ms": self.latency_ms,
        }
        data.update(self.extra)
        return data


@dataclass
class ChatResponse:
    content: str
    model_info: ModelInfo
    finish_reason: str


def _provider_error(body: dict) -> Optional[str]:
    error = body.get("error")
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


class InferenceClient:
    """Async client for one OpenAI-compatible provider."""

    def __init__(
        self,
        config: InferenceConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            config: Provider settings.
            http_client: Client to send requests with; one is created
                lazily (and closed by close()) when omitted.
        """
        self.config = config
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
            )
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _post(self, payload: dict) -> dict:
        try:
            response = await self._client().post(
                CHAT_COMPLETIONS_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.ConnectError as e:
            raise ConnectionInferenceError(f"Cannot reach {self.config.base_url}: {e}") from e
        except httpx.TimeoutException as e:
            raise TimeoutInferenceError(f"Model request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise InferenceError(f"Provider returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise InferenceError(f"Model request failed: {e}") from e
        except ValueError as e:
            raise ResponseInferenceError(f"Provider response is not JSON: {e}") from e

        if not isinstance(body, dict):
            raise ResponseInferenceError("Provider response is not an object")
        return body

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ChatResponse:
        """Run one chat completion.

        Args:
            messages: Conversation to send.
            temperature: Overrides the configured temperature.
            max_tokens: Overrides the configured max_tokens.
            json_mode: Ask the provider for a JSON object answer.

        Raises:
            MissingApiKeyError: No API key is configured.
            InferenceError: The request failed or the answer is unusable.
        """
        if not self.config.api_key:
            raise MissingApiKeyError("OPENAI_API_KEY is not set")

        temperature = self.config.temperature if temperature is None else temperature
        max_tokens = self.config.max_tokens if max_tokens is None else max_tokens
        payload: dict[str, Any] = {
            "model": self.config.model_name,
            "messages": [message.to_dict() for message in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        started = time.monotonic()
        body = await self._post(payload)
        latency_ms = int((time.monotonic() - started) * 1000)

        error = _provider_error(body)
        if error:
            logger.warning(f"inference:provider_error model={self.config.model_name} error={error}")
            raise ResponseInferenceError(f"Provider error: {error}")

        choices = body.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ResponseInferenceError("Provider response has no choices")
        choice = choices[0]
        message = choice.get("message") or {}
        usage = body.get("usage") or {}

        logger.debug(
            f"inference:done model={body.get('model')} ms={latency_ms} "
            f"in={usage.get('prompt_tokens', 0)} out={usage.get('completion_tokens', 0)}"
        )
        return ChatResponse(
            content=message.get("content") or "",
            model_info=ModelInfo(
                model_name=body.get("model") or self.config.model_name,
                provider=PROVIDER,
                temperature=temperature,
                max_tokens=max_tokens,
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
                latency_ms=latency_ms,
            ),
            finish_reason=choice.get("finish_reason") or "unknown",
        )


def get_inference_client(settings=None) -> InferenceClient:
    """Build a client from settings.

    A missing API key is only reported by chat(), so stages can turn it
    into an openai_key_missing result.
    """
    if settings is None:
        from abjail_core.config import get_settings

        settings = get_settings()

    return InferenceClient(
        InferenceConfig(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model_name=settings.openai_model_vision,
            timeout=settings.openai_timeout,
        )
    )
