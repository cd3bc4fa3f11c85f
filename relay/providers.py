"""Provider config resolution: (provider, model_api, credentials) -> endpoint.

Routing is a static table keyed by model_api. API families whose wire
format is an OpenAI chat-completions superset/subset go to the generic
transport; families with incompatible content blocks, headers or stream
framing go to a native transport keyed by provider.

resolve() never raises. Problems that make an endpoint unusable
(no base URL, native transport not bundled) surface as
ConfigurationError when the transport is loaded, before any network
call is made.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any

import httpx

from relay.config import Settings
from relay.errors import ConfigurationError
from relay.models import GenericEndpoint, NativeEndpoint, ProviderEndpoint

logger = logging.getLogger(__name__)

# model_api -> native transport name. Everything else is generic.
NATIVE_TRANSPORTS: dict[str, str] = {
    "anthropic-messages": "anthropic",
    "bedrock-converse-stream": "bedrock",
}

GENERIC_APIS = frozenset({
    "openai-completions",
    "openai-responses",
    "openai-codex-responses",
    "google-generative-ai",
    "ollama",
    "github-copilot",
})

DEFAULT_BASE_URLS: dict[str, str] = {
    "anthropic-messages": "https://api.anthropic.com",
    "openai-completions": "https://api.openai.com/v1",
    "openai-responses": "https://api.openai.com/v1",
    "openai-codex-responses": "https://api.openai.com/v1",
    "google-generative-ai": "https://generativelanguage.googleapis.com/v1beta/openai",
    "ollama": "http://localhost:11434/v1",
    "github-copilot": "https://api.githubcopilot.com",
}

# Bundled transport modules, imported lazily on first use
TRANSPORT_MODULES: dict[str, str] = {
    "generic": "relay.engine.openai_compat",
    "anthropic": "relay.engine.anthropic",
}

# Native transports whose default auth is not a bearer token
_NON_BEARER_TRANSPORTS = frozenset({"anthropic"})
_OAUTH_TOKEN_MARKER = "sk-ant-oat"

ANTHROPIC_THINKING_BUDGETS: dict[str, int] = {
    "minimal": 1_024,
    "low": 2_048,
    "medium": 8_000,
    "high": 16_000,
    "xhigh": 32_000,
}

OPENAI_REASONING_EFFORT: dict[str, str] = {
    "minimal": "low",
    "low": "low",
    "medium": "medium",
    "high": "high",
    "xhigh": "high",
}


def resolve(
    provider: str,
    model_api: str | None,
    base_url: str | None = None,
    api_key: str | None = None,
    headers: dict[str, str] | None = None,
    *,
    model_id: str = "",
) -> ProviderEndpoint:
    """Resolve a provider endpoint. Pure function of its inputs; never raises."""
    api = (model_api or "").strip()
    url = resolve_base_url(api, base_url)
    merged_headers = dict(headers or {})

    transport = NATIVE_TRANSPORTS.get(api)
    if transport is not None:
        key = api_key
        if key and is_oauth_token(key) and transport in _NON_BEARER_TRANSPORTS:
            # OAuth tokens need Bearer auth plus the oauth beta header
            merged_headers.setdefault("authorization", f"Bearer {key}")
            merged_headers.setdefault("anthropic-beta", "oauth-2025-04-20")
            merged_headers.setdefault("anthropic-dangerous-direct-browser-access", "true")
            key = None
        return NativeEndpoint(
            provider=provider,
            model_api=api,
            transport=transport,
            model_id=model_id,
            base_url=url,
            api_key=key,
            headers=merged_headers,
        )

    if api not in GENERIC_APIS:
        logger.warning("Unknown model api %r for provider %s, using generic transport", api, provider)
    return GenericEndpoint(
        id=f"{provider}/{model_id}" if model_id else provider,
        url=url,
        api_key=api_key,
        headers=merged_headers,
    )


def resolve_base_url(model_api: str | None, custom_base_url: str | None = None) -> str | None:
    """Custom base URL wins over the default table."""
    if custom_base_url and custom_base_url.strip():
        return custom_base_url.strip()
    return DEFAULT_BASE_URLS.get(model_api or "")


def is_oauth_token(api_key: str) -> bool:
    return _OAUTH_TOKEN_MARKER in api_key


def resolve_provider_options(think_level: str | None, provider: str) -> dict[str, Any] | None:
    """Map a think level to provider-specific request options (None when off)."""
    if not think_level or think_level == "off":
        return None
    provider = (provider or "").lower()
    if provider.startswith("anthropic"):
        budget = ANTHROPIC_THINKING_BUDGETS.get(think_level, 8_000)
        return {"anthropic": {"thinking": {"type": "enabled", "budget_tokens": budget}}}
    if provider.startswith("openai"):
        return {"openai": {"reasoning_effort": OPENAI_REASONING_EFFORT.get(think_level, "medium")}}
    return None


async def load_transport(endpoint: ProviderEndpoint, client: httpx.AsyncClient, settings: Settings) -> Any:
    """Import and construct the transport for an endpoint.

    Raises ConfigurationError for endpoints that cannot be served.
    """
    if isinstance(endpoint, GenericEndpoint):
        if not endpoint.url:
            raise ConfigurationError(
                f"No base URL configured for {endpoint.id}; set base_url for this model"
            )
        name = "generic"
    else:
        name = endpoint.transport
        if name not in TRANSPORT_MODULES:
            raise ConfigurationError(
                f"Native transport {name!r} for {endpoint.model_api!r} is not available in this build"
            )
        if not endpoint.base_url:
            raise ConfigurationError(f"No base URL configured for native transport {name!r}")

    module_path = TRANSPORT_MODULES[name]

    try:
        module = await asyncio.to_thread(importlib.import_module, module_path)
    except ImportError as e:
        raise ConfigurationError(f"Transport module {module_path} failed to import: {e}") from e
    logger.debug("Loaded transport %s for %s", module_path, getattr(endpoint, "id", endpoint))
    return module.create_transport(endpoint, client, settings)
