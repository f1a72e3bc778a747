"""
AI Provider Backends for AI Collaboration Hub

Thin clients for the inference services the router can dispatch to.
Each provider turns an AIRequest into an AIResponse, or into a lazy
sequence of text chunks for streaming.
"""

import json
import logging
import time
from typing import Any, Dict, Iterator, List, Optional, Union

import requests
from pydantic import Field, ValidationError, model_validator

from ..core.errors import InvalidArgument
from ..core.models import HubModel
from ..utils.config import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """A single provider failed to answer."""


class AIRequest(HubModel):
    prompt: Optional[str] = None
    messages: List[Dict[str, str]] = Field(default_factory=list)
    system: Optional[str] = None
    model: Optional[str] = None
    max_tokens: int = Field(default=512, alias="maxTokens", ge=1)
    temperature: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_content(self):
        if not self.prompt and not self.messages:
            raise ValueError("request needs a prompt or messages")
        return self

    def as_messages(self) -> List[Dict[str, str]]:
        messages = []
        if self.system:
            messages.append({"role": "system", "content": self.system})
        messages.extend(self.messages)
        if self.prompt:
            messages.append({"role": "user", "content": self.prompt})
        return messages

    def prompt_tokens(self) -> int:
        """Rough token count of the input, four characters per token."""
        text = "".join(m.get("content", "") for m in self.as_messages())
        return len(text) // 4

    def estimated_tokens(self) -> int:
        return self.prompt_tokens() + self.max_tokens


class AIResponse(HubModel):
    content: str
    provider: str
    model: Optional[str] = None
    usage: Dict[str, int] = Field(default_factory=dict)
    latency_ms: float = Field(default=0.0, alias="latencyMs")

    @property
    def total_tokens(self) -> int:
        if "totalTokens" in self.usage:
            return self.usage["totalTokens"]
        return self.usage.get("promptTokens", 0) + self.usage.get("completionTokens", 0)


def coerce_request(request: Union[AIRequest, Dict[str, Any], str, None]) -> AIRequest:
    """Accept a prompt string, a dict or an AIRequest."""
    if isinstance(request, AIRequest):
        return request
    if isinstance(request, str):
        request = {"prompt": request}
    try:
        return AIRequest.model_validate(request or {})
    except ValidationError as e:
        raise InvalidArgument(f"Invalid AI request: {e.errors()[0]['msg']}") from e


def _usage(prompt_tokens: int, completion_tokens: int) -> Dict[str, int]:
    return {
        "promptTokens": prompt_tokens,
        "completionTokens": completion_tokens,
        "totalTokens": prompt_tokens + completion_tokens,
    }


class AIProvider:
    """Base class for AI providers."""

    kind = "base"

    def __init__(self, name: str, model: Optional[str] = None, timeout: float = 30.0):
        self.name = name
        self.model = model
        self.timeout = timeout

    def complete(self, request: AIRequest) -> AIResponse:
        raise NotImplementedError

    def stream(self, request: AIRequest) -> Iterator[str]:
        """Yield response text in chunks; the default yields one chunk."""
        yield self.complete(request).content

    def close(self):
        pass

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "kind": self.kind, "model": self.model}


class HTTPProvider(AIProvider):
    """Provider talking JSON over HTTP with a pooled requests session."""

    def __init__(self, name: str, base_url: str, model: Optional[str] = None,
                 timeout: float = 30.0, headers: Optional[Dict[str, str]] = None):
        super().__init__(name, model, timeout)
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if headers:
            self.session.headers.update(headers)

    def _post(self, path: str, payload: Dict[str, Any], stream: bool = False) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout, stream=stream)
            response.raise_for_status()
        except requests.Timeout as e:
            raise ProviderError(f"{self.name} request timed out") from e
        except requests.RequestException as e:
            raise ProviderError(f"{self.name} request failed: {e}") from e
        return response

    def close(self):
        self.session.close()


class OpenAICompatibleProvider(HTTPProvider):
    """Chat-completions API (OpenAI and compatible gateways)."""

    kind = "openai"

    def __init__(self, name: str, base_url: str = "https://api.openai.com/v1",
                 api_key: Optional[str] = None, model: str = "gpt-4o-mini",
                 timeout: float = 30.0):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        super().__init__(name, base_url, model, timeout, headers)

    def _payload(self, request: AIRequest, stream: bool) -> Dict[str, Any]:
        payload = {
            "model": request.model or self.model,
            "messages": request.as_messages(),
            "max_tokens": request.max_tokens,
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    def complete(self, request: AIRequest) -> AIResponse:
        started = time.monotonic()
        response = self._post("/chat/completions", self._payload(request, False))
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, ValueError) as e:
            raise ProviderError(f"Unexpected {self.name} response format: {e}") from e

        usage = data.get("usage") or {}
        return AIResponse(
            content=content,
            provider=self.name,
            model=data.get("model", request.model or self.model),
            usage=_usage(usage.get("prompt_tokens", request.prompt_tokens()),
                         usage.get("completion_tokens", len(content) // 4)),
            latency_ms=(time.monotonic() - started) * 1000,
        )

    def stream(self, request: AIRequest) -> Iterator[str]:
        response = self._post("/chat/completions", self._payload(request, True), stream=True)
        try:
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    return
                try:
                    delta = json.loads(data)["choices"][0].get("delta", {})
                except (KeyError, IndexError, ValueError) as e:
                    raise ProviderError(f"Malformed {self.name} stream event: {e}") from e
                if delta.get("content"):
                    yield delta["content"]
        finally:
            response.close()


class OllamaProvider(HTTPProvider):
    """Local Ollama server, /api/chat endpoint."""

    kind = "ollama"

    def __init__(self, name: str, base_url: str = "http://localhost:11434",
                 model: str = "llama3", timeout: float = 30.0):
        super().__init__(name, base_url, model, timeout)

    def _payload(self, request: AIRequest, stream: bool) -> Dict[str, Any]:
        options = {"num_predict": request.max_tokens}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        return {
            "model": request.model or self.model,
            "messages": request.as_messages(),
            "stream": stream,
            "options": options,
        }

    def complete(self, request: AIRequest) -> AIResponse:
        started = time.monotonic()
        response = self._post("/api/chat", self._payload(request, False))
        try:
            data = response.json()
            content = data["message"]["content"]
        except (KeyError, ValueError) as e:
            raise ProviderError(f"Unexpected Ollama response format: {e}") from e

        return AIResponse(
            content=content,
            provider=self.name,
            model=data.get("model", request.model or self.model),
            usage=_usage(data.get("prompt_eval_count", request.prompt_tokens()),
                         data.get("eval_count", len(content) // 4)),
            latency_ms=(time.monotonic() - started) * 1000,
        )

    def stream(self, request: AIRequest) -> Iterator[str]:
        response = self._post("/api/chat", self._payload(request, True), stream=True)
        try:
            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except ValueError as e:
                    raise ProviderError(f"Malformed Ollama stream line: {e}") from e
                if data.get("error"):
                    raise ProviderError(f"Ollama error: {data['error']}")
                content = (data.get("message") or {}).get("content")
                if content:
                    yield content
                if data.get("done"):
                    return
        finally:
            response.close()


class EchoProvider(AIProvider):
    """Offline provider that answers with the prompt; for development."""

    kind = "echo"

    def __init__(self, name: str = "echo", model: str = "echo", timeout: float = 30.0):
        super().__init__(name, model, timeout)

    def _reply(self, request: AIRequest) -> str:
        last = request.as_messages()[-1]["content"]
        return f"echo: {last}"

    def complete(self, request: AIRequest) -> AIResponse:
        content = self._reply(request)
        return AIResponse(
            content=content,
            provider=self.name,
            model=self.model,
            usage=_usage(request.prompt_tokens(), len(content) // 4),
        )

    def stream(self, request: AIRequest) -> Iterator[str]:
        words = self._reply(request).split(" ")
        for i, word in enumerate(words):
            yield word if i == len(words) - 1 else word + " "


def build_provider(config: ProviderConfig) -> AIProvider:
    """Create a provider from its configuration entry."""
    if config.kind == "openai":
        return OpenAICompatibleProvider(
            config.name,
            base_url=config.base_url or "https://api.openai.com/v1",
            api_key=config.resolve_api_key(),
            model=config.model,
            timeout=config.timeout,
        )
    if config.kind == "ollama":
        return OllamaProvider(
            config.name,
            base_url=config.base_url or "http://localhost:11434",
            model=config.model,
            timeout=config.timeout,
        )
    if config.kind == "echo":
        return EchoProvider(config.name, model=config.model, timeout=config.timeout)
    raise ValueError(f"Unknown provider kind: {config.kind}")
