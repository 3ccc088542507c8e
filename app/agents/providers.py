"""Credential lookup for language-model providers."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_AZURE_API_VERSION = "2024-06-01"


@dataclass(frozen=True)
class ProviderCredentials:
    """Credentials resolved for a provider; ``api_key`` is never logged.

    For ``azure`` the ``base_url`` is the resource endpoint and
    ``api_version`` selects the Azure OpenAI REST version.
    """

    provider: str
    api_key: str | None
    base_url: str | None = None
    api_version: str | None = None

    @property
    def configured(self) -> bool:
        if not (self.api_key and self.api_key.strip()):
            return False
        # Azure clients cannot route without the resource endpoint.
        return self.provider != "azure" or bool(self.base_url)


class ProviderRegistry:
    """Resolve provider credentials from explicit overrides or the environment.

    Credential absence is checked up front so the generator can skip the
    network call entirely instead of treating it as a runtime failure.
    """

    _DEFAULT_ENV_MAP: Mapping[str, str] = {
        "openai": "OPENAI_API_KEY",
        "azure": "AZURE_OPENAI_API_KEY",
    }

    def __init__(self, overrides: Mapping[str, Mapping[str, str | None]] | None = None):
        self._overrides = {k.lower(): dict(v) for k, v in (overrides or {}).items()}

    def get_credentials(self, provider: str) -> ProviderCredentials:
        key = provider.lower()
        if key in self._overrides:
            override = self._overrides[key]
            return ProviderCredentials(
                provider=key,
                api_key=override.get("api_key"),
                base_url=override.get("base_url"),
                api_version=override.get("api_version")
                or (DEFAULT_AZURE_API_VERSION if key == "azure" else None),
            )
        env_var = self._DEFAULT_ENV_MAP.get(key)
        api_key = os.getenv(env_var) if env_var else None
        if key == "azure":
            return ProviderCredentials(
                provider=key,
                api_key=api_key,
                base_url=os.getenv("AZURE_OPENAI_ENDPOINT") or None,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION") or DEFAULT_AZURE_API_VERSION,
            )
        return ProviderCredentials(
            provider=key, api_key=api_key, base_url=os.getenv("OPENAI_BASE_URL") or None
        )

    def is_configured(self, provider: str) -> bool:
        return self.get_credentials(provider).configured
