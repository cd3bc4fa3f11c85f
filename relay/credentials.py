"""Credential resolution for provider endpoints."""

from __future__ import annotations

import logging
from typing import Protocol

from relay.config import Settings
from relay.models import Credentials
from relay.providers import is_oauth_token

logger = logging.getLogger(__name__)


class CredentialResolver(Protocol):
    async def resolve_credentials(self, provider: str, model_api: str | None) -> Credentials: ...


class SettingsCredentialResolver:
    """Reads API keys from Settings.

    Anthropic auth: an explicit auth token (Bearer) takes precedence
    over the API key. provider_api_keys covers any other provider.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def resolve_credentials(self, provider: str, model_api: str | None) -> Credentials:
        s = self._settings
        provider = (provider or "").lower()
        if provider in s.provider_api_keys:
            return Credentials(api_key=s.provider_api_keys[provider])

        if provider.startswith("anthropic"):
            token = s.anthropic_auth_token
            if token:
                if is_oauth_token(token):
                    # Provider resolution adds the OAuth beta headers
                    return Credentials(api_key=token)
                return Credentials(headers={"authorization": f"Bearer {token}"})
            key = s.anthropic_api_key
        elif provider.startswith("openai"):
            key = s.openai_api_key
        elif provider in ("google", "gemini"):
            key = s.gemini_api_key
        else:
            key = ""

        if not key and model_api != "ollama":
            logger.warning("No API key configured for provider %s -- API calls may fail", provider)
        return Credentials(api_key=key or None)
