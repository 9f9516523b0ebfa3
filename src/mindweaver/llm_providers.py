"""Model gateway: one request shape over several LLM providers.

``ModelGateway.complete(messages, profile)`` dispatches on ``profile.kind``
to one adapter per wire protocol and always returns a ``Completion`` with the
generated text:

- openai:    OpenAI-style chat completions (openai SDK; any compatible base URL)
- anthropic: Anthropic messages API (anthropic SDK)
- together:  hosted inference endpoint, POST {endpoint}/inference
- local:     llama.cpp POST {endpoint}/completion, or Ollama POST {endpoint}/api/generate

Adapters raise ``ProviderError`` on any non-success status, transport failure
or malformed body. The gateway does not retry and does not cache; every call
is a fresh round trip.

Usage:
    async with ModelGateway() as gateway:
        profile = resolve_profile(config)
        completion = await gateway.complete(messages, profile)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from .config import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    LOCAL_DEFAULT_ENDPOINT,
    REQUEST_TIMEOUT_SECONDS,
    TOGETHER_DEFAULT_ENDPOINT,
    ConfigurationError,
    WeaverConfig,
)
from .errors import AmbiguousResponse, ProviderError
from .models import ProviderKind, ProviderProfile

log = logging.getLogger(__name__)

Message = dict[str, str]

# Local servers take a flat prompt and follow chat roles loosely, so binary
# judgments get an explicit instruction up front.
LOCAL_BINARY_INSTRUCTION = "Respond with only 'true' or 'false'."


@dataclass
class Completion:
    """Normalized provider response."""

    text: str


# =============================================================================
# Model Catalog
# =============================================================================

# Friendly model names mapped to (provider kind, provider-specific model id).
# Names not listed here are passed through unchanged.
MODEL_CATALOG: dict[str, tuple[ProviderKind, str]] = {
    "gpt-4": ("openai", "gpt-4"),
    "gpt-3.5-turbo": ("openai", "gpt-3.5-turbo"),
    "gpt-4o-mini": ("openai", "gpt-4o-mini"),
    "llama-2-70b": ("together", "togethercomputer/llama-2-70b-chat"),
    "llama-local": ("local", "llama"),
    "claude-3.5-haiku": ("anthropic", "claude-3-5-haiku-20241022"),
    "claude-3.5-sonnet": ("anthropic", "claude-3-5-sonnet-20241022"),
    "claude-sonnet-4": ("anthropic", "claude-sonnet-4-20250514"),
}

# Environment variable holding the credential for each hosted provider
CREDENTIAL_ENV_VARS: dict[ProviderKind, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "together": "TOGETHER_API_KEY",
}

_PROVIDER_NAMES: dict[ProviderKind, str] = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "together": "Together",
    "local": "local model server",
}


def resolve_model(model: str, provider: ProviderKind | None = None) -> tuple[ProviderKind, str]:
    """Resolve a model name to (provider kind, provider-specific model id).

    Examples:
        >>> resolve_model("llama-2-70b")
        ("together", "togethercomputer/llama-2-70b-chat")
        >>> resolve_model("mistral", "local")
        ("local", "mistral")
        >>> resolve_model("claude-3-opus-20240229")
        ("anthropic", "claude-3-opus-20240229")
    """
    if model in MODEL_CATALOG:
        kind, model_id = MODEL_CATALOG[model]
        if provider is None or provider == kind:
            return kind, model_id
        # Explicit provider wins and the name is passed through unchanged
        return provider, model

    if provider is not None:
        return provider, model

    if model.startswith("claude"):
        return "anthropic", model
    return "openai", model


def resolve_profile(config: WeaverConfig) -> ProviderProfile:
    """Build the provider profile for the configured model.

    Credentials come from the settings file when set there, otherwise from
    the provider's environment variable.
    """
    kind, model_id = resolve_model(config.model, config.provider)

    overrides: dict[ProviderKind, str] = {
        "openai": config.openai_api_key,
        "anthropic": config.anthropic_api_key,
        "together": config.together_api_key,
    }
    credential = ""
    if kind in CREDENTIAL_ENV_VARS:
        credential = overrides[kind] or os.environ.get(CREDENTIAL_ENV_VARS[kind], "")

    endpoint = config.endpoint
    if not endpoint and kind == "local":
        endpoint = os.environ.get("LOCAL_LLM_ENDPOINT", LOCAL_DEFAULT_ENDPOINT)
    if not endpoint and kind == "together":
        endpoint = TOGETHER_DEFAULT_ENDPOINT

    return ProviderProfile(
        model_id=model_id,
        kind=kind,
        endpoint=endpoint,
        credential=credential,
        local_api=config.local_api,
    )


def require_credentials(profile: ProviderProfile) -> None:
    """Check the profile can be used before any network call is attempted.

    Raises:
        ConfigurationError: If the hosted provider has no API key, or the
            local provider has no endpoint.
    """
    name = _PROVIDER_NAMES[profile.kind]
    if profile.kind == "local":
        if not profile.endpoint:
            raise ConfigurationError(
                "Please set the local model server endpoint "
                "(endpoint in settings or LOCAL_LLM_ENDPOINT)"
            )
        return

    if not profile.credential:
        env_var = CREDENTIAL_ENV_VARS[profile.kind]
        raise ConfigurationError(f"Please set your {name} API key ({env_var} or settings file)")


# =============================================================================
# Adapters
# =============================================================================


@dataclass
class _Request:
    messages: Sequence[Message]
    profile: ProviderProfile
    binary: bool
    max_tokens: int
    temperature: float
    http_client: httpx.AsyncClient
    sdk_clients: dict[tuple[str, str, str], Any]


Adapter = Callable[[_Request], Awaitable[str]]


def _flatten_messages(messages: Sequence[Message]) -> str:
    """Render chat turns as ``role: content`` lines for prompt-only endpoints."""
    return "\n".join(f"{m['role']}: {m['content']}" for m in messages)


def coerce_boolean_text(text: str) -> str:
    """Reduce free text to ``"true"`` or ``"false"``; the earliest token wins.

    Raises:
        AmbiguousResponse: If neither token occurs.
    """
    lowered = text.lower()
    true_at = lowered.find("true")
    false_at = lowered.find("false")

    if true_at == -1 and false_at == -1:
        raise AmbiguousResponse("Response contains neither 'true' nor 'false'", raw=text)
    if false_at == -1 or (true_at != -1 and true_at < false_at):
        return "true"
    return "false"


async def _post_json(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> Any:
    try:
        response = await client.post(
            url, json=payload, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS
        )
    except httpx.HTTPError as e:
        raise ProviderError(None, f"Request to {url} failed: {e}") from e

    if not response.is_success:
        log.debug("Provider error body from %s: %s", url, response.text)
        raise ProviderError(response.status_code, response.reason_phrase or "request failed")

    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(response.status_code, f"Response from {url} is not JSON") from e


def _get_openai_client(profile: ProviderProfile, http_client: httpx.AsyncClient) -> Any:
    """Get an asynchronous OpenAI client for the profile."""
    try:
        from openai import AsyncOpenAI
    except ImportError:
        raise ConfigurationError(
            "openai package is required for the OpenAI provider. "
            "Install with: pip install openai"
        )

    return AsyncOpenAI(
        api_key=profile.credential,
        base_url=profile.endpoint or None,
        max_retries=0,
        http_client=http_client,
    )


def _get_anthropic_client(profile: ProviderProfile, http_client: httpx.AsyncClient) -> Any:
    """Get an asynchronous Anthropic client for the profile."""
    try:
        import anthropic
    except ImportError:
        raise ConfigurationError(
            "anthropic package is required for the Anthropic provider. "
            "Install with: pip install anthropic"
        )

    return anthropic.AsyncAnthropic(
        api_key=profile.credential,
        base_url=profile.endpoint or None,
        max_retries=0,
        http_client=http_client,
    )


def _sdk_client(request: _Request, factory: Callable[[ProviderProfile, httpx.AsyncClient], Any]) -> Any:
    """Reuse one SDK client per (kind, credential, endpoint) for the gateway's lifetime."""
    profile = request.profile
    key = (profile.kind, profile.credential, profile.endpoint)
    client = request.sdk_clients.get(key)
    if client is None:
        client = factory(profile, request.http_client)
        request.sdk_clients[key] = client
    return client


async def _complete_openai(request: _Request) -> str:
    client = _sdk_client(request, _get_openai_client)

    import openai

    try:
        response = await client.chat.completions.create(
            model=request.profile.model_id,
            messages=list(request.messages),
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )
    except openai.APIStatusError as e:
        log.debug("OpenAI error response: %s", e.message)
        raise ProviderError(e.status_code, "OpenAI request failed") from e
    except openai.APIError as e:
        log.debug("OpenAI request error: %s", e)
        raise ProviderError(None, "OpenAI request failed") from e

    if not response.choices:
        raise ProviderError(None, "OpenAI response contained no choices")
    return response.choices[0].message.content or ""


async def _complete_anthropic(request: _Request) -> str:
    system = "\n\n".join(m["content"] for m in request.messages if m["role"] == "system")
    turns = [m for m in request.messages if m["role"] != "system"]

    kwargs: dict[str, Any] = {
        "model": request.profile.model_id,
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "messages": turns,
    }
    if system:
        kwargs["system"] = system

    client = _sdk_client(request, _get_anthropic_client)

    import anthropic

    try:
        response = await client.messages.create(**kwargs)
    except anthropic.APIStatusError as e:
        log.debug("Anthropic error response: %s", e.message)
        raise ProviderError(e.status_code, "Anthropic request failed") from e
    except anthropic.APIError as e:
        log.debug("Anthropic request error: %s", e)
        raise ProviderError(None, "Anthropic request failed") from e

    if not response.content:
        raise ProviderError(None, "Anthropic response contained no content")
    return response.content[0].text


async def _complete_together(request: _Request) -> str:
    url = f"{request.profile.endpoint.rstrip('/')}/inference"
    data = await _post_json(
        request.http_client,
        url,
        {
            "model": request.profile.model_id,
            "prompt": _flatten_messages(request.messages),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        },
        headers={"Authorization": f"Bearer {request.profile.credential}"},
    )

    try:
        output = data["output"]
        if output.get("choices"):
            return output["choices"][0]["text"]
        return output["content"]
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        log.debug("Malformed Together response: %r", data)
        raise ProviderError(None, f"Malformed Together response: missing {e}") from e


async def _complete_local(request: _Request) -> str:
    prompt = _flatten_messages(request.messages)
    if request.binary:
        prompt = f"{LOCAL_BINARY_INSTRUCTION}\n\n{prompt}"

    base = request.profile.endpoint.rstrip("/")
    if request.profile.local_api == "generate":
        url = f"{base}/api/generate"
        payload: dict[str, Any] = {
            "model": request.profile.model_id,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
        }
        field = "response"
    else:
        url = f"{base}/completion"
        payload = {
            "prompt": prompt,
            "n_predict": request.max_tokens,
            "temperature": request.temperature,
        }
        field = "content"

    data = await _post_json(request.http_client, url, payload)
    try:
        text = data[field]
    except (KeyError, TypeError) as e:
        log.debug("Malformed local server response: %r", data)
        raise ProviderError(None, f"Malformed local server response: missing '{field}'") from e

    if request.binary:
        return coerce_boolean_text(text)
    return text


_ADAPTERS: dict[ProviderKind, Adapter] = {
    "openai": _complete_openai,
    "anthropic": _complete_anthropic,
    "together": _complete_together,
    "local": _complete_local,
}


# =============================================================================
# Gateway
# =============================================================================


class ModelGateway:
    """Uniform ``complete`` over every provider kind.

    The gateway owns one ``httpx.AsyncClient`` shared by the SDK clients and
    the raw HTTP adapters. SDK clients are built once per provider profile
    and reused. Use it as an async context manager, or call
    ``aclose()`` when done.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> None:
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sdk_clients: dict[tuple[str, str, str], Any] = {}
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)
        return self._http_client

    async def complete(
        self,
        messages: Sequence[Message],
        profile: ProviderProfile,
        *,
        binary: bool = False,
        max_tokens: int | None = None,
    ) -> Completion:
        """Send one request and return the normalized response.

        Args:
            messages: Ordered chat turns, each with ``role`` and ``content``.
            profile: Which provider and model to call.
            binary: The caller expects a bare true/false judgment. Local
                servers get an explicit instruction and their output coerced.
            max_tokens: Override the default completion budget.

        Raises:
            ProviderError: On any provider or transport failure.
            AmbiguousResponse: If a binary local response has no true/false token.
        """
        adapter = _ADAPTERS[profile.kind]
        request = _Request(
            messages=messages,
            profile=profile,
            binary=binary,
            max_tokens=max_tokens or self.max_tokens,
            temperature=self.temperature,
            http_client=self.http_client,
            sdk_clients=self._sdk_clients,
        )

        log.debug("Calling %s model %s", profile.kind, profile.model_id)
        text = await adapter(request)
        log.debug("Raw %s response: %r", profile.kind, text)
        return Completion(text=text)

    async def aclose(self) -> None:
        self._sdk_clients.clear()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> ModelGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
