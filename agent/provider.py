"""Provider Gateway -- uniform streaming interface to a model backend.

Every backend is driven through the same capability::

    provider.stream(messages, tools, config, token) -> AsyncIterator[ProviderEvent]

yielding ``text`` deltas as they arrive, then one ``tool_call`` event per
requested call, a ``usage`` event when the backend reports token counts,
then a single ``finish``. Backends are picked from a
factory table keyed by provider kind; vendor wire formats stay behind the
OpenAI-compatible client.

The provider metadata table (aliases, default base URLs, key env vars) is
shared by the CLI config layer and the HTTP server.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

import openai
from openai import AsyncOpenAI

from shai_constants import OLLAMA_BASE_URL, OPENAI_BASE_URL, OPENROUTER_BASE_URL
from agent.cancellation import CancellationToken
from agent.errors import (
    AgentError,
    MalformedUpstreamResponse,
    ProviderRateLimited,
    ProviderUnavailable,
)
from agent.models import AgentConfig, ToolCall, new_id

logger = logging.getLogger(__name__)

EnvGetter = Callable[[str], Optional[str]]


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    kind: str = "openai"  # which gateway implementation speaks to it
    default_base_url: str = ""
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    # backend accepts stream_options={"include_usage": true}
    stream_usage: bool = False


PROVIDERS: Dict[str, ProviderMeta] = {
    "openai": ProviderMeta(
        id="openai",
        label="OpenAI",
        default_base_url=OPENAI_BASE_URL,
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
        stream_usage=True,
    ),
    "openrouter": ProviderMeta(
        id="openrouter",
        label="OpenRouter",
        default_base_url=OPENROUTER_BASE_URL,
        api_key_env_vars=("OPENROUTER_API_KEY",),
        base_url_env_var="OPENROUTER_BASE_URL",
        stream_usage=True,
    ),
    "ollama": ProviderMeta(
        id="ollama",
        label="Ollama (local)",
        default_base_url=OLLAMA_BASE_URL,
        api_key_env_vars=("OLLAMA_API_KEY",),
        base_url_env_var="OLLAMA_BASE_URL",
        aliases=("local",),
    ),
    "mistral": ProviderMeta(
        id="mistral",
        label="Mistral",
        default_base_url="https://api.mistral.ai/v1",
        api_key_env_vars=("MISTRAL_API_KEY",),
        base_url_env_var="MISTRAL_BASE_URL",
    ),
    "ovh": ProviderMeta(
        id="ovh",
        label="OVHcloud AI Endpoints",
        default_base_url="https://oai.endpoints.kepler.ai.cloud.ovh.net/v1",
        api_key_env_vars=("OVH_API_KEY",),
        base_url_env_var="OVH_BASE_URL",
        aliases=("ovhcloud",),
    ),
    "custom": ProviderMeta(
        id="custom",
        label="Custom endpoint",
        api_key_env_vars=("SHAI_API_KEY", "OPENAI_API_KEY"),
        base_url_env_var="SHAI_BASE_URL",
    ),
}

_ALIAS_TO_PROVIDER: Dict[str, str] = {}
for _pid, _meta in PROVIDERS.items():
    _ALIAS_TO_PROVIDER[_pid] = _pid
    for _alias in _meta.aliases:
        _ALIAS_TO_PROVIDER[_alias.lower()] = _pid


def normalize_provider_id(provider_id: Optional[str], default: str = "openai") -> str:
    """Normalize a provider ID or alias to a canonical ID."""
    if not provider_id:
        return default
    key = provider_id.strip().lower()
    if not key:
        return default
    return _ALIAS_TO_PROVIDER.get(key, key)


def get_provider_meta(provider_id: str) -> Optional[ProviderMeta]:
    return PROVIDERS.get(normalize_provider_id(provider_id))


def resolve_provider_api_key(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_api_key: Optional[str] = None,
) -> Optional[str]:
    if explicit_api_key:
        return explicit_api_key
    meta = get_provider_meta(provider_id)
    if not meta:
        return None
    for env_var in meta.api_key_env_vars:
        value = env_get(env_var)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_provider_base_url(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_base_url: Optional[str] = None,
) -> Optional[str]:
    if explicit_base_url:
        return explicit_base_url.strip()
    meta = get_provider_meta(provider_id)
    if not meta:
        return None
    if meta.base_url_env_var:
        env_value = env_get(meta.base_url_env_var)
        if isinstance(env_value, str) and env_value.strip():
            return env_value.strip().rstrip("/")
    if meta.default_base_url:
        return meta.default_base_url.rstrip("/")
    return None


# ---------------------------------------------------------------------------
# Gateway interface
# ---------------------------------------------------------------------------

@dataclass
class ProviderEvent:
    """One unit of model output: ``text`` | ``tool_call`` | ``usage`` | ``finish``."""

    kind: str
    text: str = ""
    tool_call: Optional[ToolCall] = None
    finish_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def usage(cls, input_tokens: int, output_tokens: int) -> "ProviderEvent":
        return cls(kind="usage", input_tokens=input_tokens, output_tokens=output_tokens)

    @classmethod
    def text_delta(cls, text: str) -> "ProviderEvent":
        return cls(kind="text", text=text)

    @classmethod
    def call(cls, tool_call: ToolCall) -> "ProviderEvent":
        return cls(kind="tool_call", tool_call=tool_call)

    @classmethod
    def finish(cls, reason: str = "stop") -> "ProviderEvent":
        return cls(kind="finish", finish_reason=reason)


class ProviderGateway(Protocol):
    def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        config: AgentConfig,
        token: CancellationToken,
    ) -> AsyncIterator[ProviderEvent]:
        ...


def classify_openai_error(exc: Exception) -> AgentError:
    """Map an openai SDK exception onto the agent error taxonomy."""
    if isinstance(exc, AgentError):
        return exc
    if isinstance(exc, openai.RateLimitError):
        retry_after = None
        response = getattr(exc, "response", None)
        if response is not None:
            raw = response.headers.get("retry-after")
            try:
                retry_after = float(raw) if raw is not None else None
            except ValueError:
                retry_after = None
        return ProviderRateLimited(str(exc), retry_after=retry_after)
    if isinstance(exc, openai.APIConnectionError):
        # includes APITimeoutError
        return ProviderUnavailable(f"Connection to model backend failed: {exc}")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderUnavailable(f"Model backend rejected credentials: {exc}")
    if isinstance(exc, openai.APIResponseValidationError):
        return MalformedUpstreamResponse(f"Unexpected response shape: {exc}")
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status >= 500 or status in (408, 409):
            return ProviderUnavailable(f"Model backend error (HTTP {status}): {exc}")
        return MalformedUpstreamResponse(f"Model backend refused request (HTTP {status}): {exc}")
    if isinstance(exc, (json.JSONDecodeError, ValueError)):
        return MalformedUpstreamResponse(f"Undecodable response from model backend: {exc}")
    return ProviderUnavailable(f"{type(exc).__name__}: {exc}")


_END = object()


async def _next_chunk(iterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class OpenAIChatProvider:
    """Chat Completions streaming client for any OpenAI-compatible backend."""

    kind = "openai"

    def __init__(self, config: AgentConfig, client: Optional[AsyncOpenAI] = None):
        if client is None:
            base_url = resolve_provider_base_url(config.provider, explicit_base_url=config.base_url)
            api_key = resolve_provider_api_key(config.provider, explicit_api_key=config.api_key)
            client = AsyncOpenAI(
                api_key=api_key or "not-needed",  # local servers often ignore auth
                base_url=base_url,
                max_retries=0,  # the conversation owns retries
            )
        self._client = client

    def _request_kwargs(self, messages, tools, config: AgentConfig) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": config.model,
            "messages": messages,
            "stream": True,
        }
        meta = get_provider_meta(config.provider)
        if meta is not None and meta.stream_usage:
            kwargs["stream_options"] = {"include_usage": True}
        if tools:
            kwargs["tools"] = tools
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.max_tokens is not None:
            kwargs["max_tokens"] = config.max_tokens
        return kwargs

    async def stream(self, messages, tools, config, token) -> AsyncIterator[ProviderEvent]:
        token.raise_if_cancelled()
        try:
            response = await token.race(
                self._client.chat.completions.create(**self._request_kwargs(messages, tools, config))
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        tool_parts: Dict[int, Dict[str, Any]] = {}
        finish_reason: Optional[str] = None
        usage: Optional[ProviderEvent] = None
        saw_choice = False
        iterator = response.__aiter__()
        try:
            while True:
                try:
                    chunk = await token.race(_next_chunk(iterator))
                except openai.OpenAIError as e:
                    raise classify_openai_error(e) from e
                except json.JSONDecodeError as e:
                    raise MalformedUpstreamResponse(f"Undecodable stream chunk: {e}") from e
                if chunk is _END:
                    break
                reported = getattr(chunk, "usage", None)
                if reported is not None:
                    usage = ProviderEvent.usage(
                        getattr(reported, "prompt_tokens", None) or 0,
                        getattr(reported, "completion_tokens", None) or 0,
                    )
                choices = getattr(chunk, "choices", None)
                if not choices:
                    # usage-only or keep-alive chunk
                    continue
                saw_choice = True
                choice = choices[0]
                delta = choice.delta
                if delta is not None:
                    if delta.content:
                        yield ProviderEvent.text_delta(delta.content)
                    for tc in delta.tool_calls or ():
                        part = tool_parts.setdefault(
                            tc.index if tc.index is not None else len(tool_parts),
                            {"id": None, "name": "", "arguments": []},
                        )
                        if tc.id:
                            part["id"] = tc.id
                        if tc.function is not None:
                            if tc.function.name:
                                part["name"] += tc.function.name
                            if tc.function.arguments:
                                part["arguments"].append(tc.function.arguments)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        finally:
            close = getattr(response, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug("Error closing provider stream: %s", e)

        if not saw_choice:
            raise MalformedUpstreamResponse("Model backend returned a stream with no choices")

        for index in sorted(tool_parts):
            part = tool_parts[index]
            if not part["name"]:
                raise MalformedUpstreamResponse(f"Tool call #{index} arrived without a function name")
            yield ProviderEvent.call(ToolCall(
                id=part["id"] or new_id("call_"),
                name=part["name"],
                arguments="".join(part["arguments"]) or "{}",
            ))
        if usage is not None:
            yield usage
        yield ProviderEvent.finish(finish_reason or ("tool_calls" if tool_parts else "stop"))


ProviderFactory = Callable[[AgentConfig], ProviderGateway]

_FACTORIES: Dict[str, ProviderFactory] = {
    "openai": OpenAIChatProvider,
}


def register_provider_kind(kind: str, factory: ProviderFactory) -> None:
    _FACTORIES[kind] = factory


def build_provider(config: AgentConfig) -> ProviderGateway:
    """Instantiate the gateway variant for ``config.provider``.

    Unknown provider ids are treated as OpenAI-compatible endpoints so a
    bare ``base_url`` keeps working.
    """
    meta = get_provider_meta(config.provider)
    kind = meta.kind if meta else "openai"
    factory = _FACTORIES.get(kind)
    if factory is None:
        raise ValueError(f"No provider gateway registered for kind '{kind}'")
    return factory(config)
