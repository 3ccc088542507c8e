"""Language-model collaborator interface and the OpenAI chat adapter."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from ..core.errors import ModelUnavailableError
from .providers import ProviderCredentials

logger = logging.getLogger(__name__)


class LanguageModel(Protocol):
    """One blocking completion call.

    ``history`` holds ``{"role": "user" | "assistant", "content": str}`` items
    ordered oldest first. Implementations raise :class:`ModelUnavailableError`
    on any failure, including timeouts.
    """

    def complete(
        self,
        system_prompt: str,
        history: Sequence[dict[str, str]],
        max_tokens: int,
        timeout: float,
    ) -> str: ...


def build_client(credentials: ProviderCredentials):
    """Create the SDK client for ``credentials.provider``."""

    if credentials.provider == "azure":
        from openai import AzureOpenAI

        return AzureOpenAI(
            api_key=credentials.api_key,
            azure_endpoint=credentials.base_url,
            api_version=credentials.api_version,
        )
    from openai import OpenAI

    return OpenAI(api_key=credentials.api_key, base_url=credentials.base_url)


class OpenAIChatModel:
    """Chat completions through the ``openai`` SDK.

    With the ``azure`` provider ``model`` names the deployment.
    """

    def __init__(self, credentials: ProviderCredentials, model: str, client=None):
        self.model = model
        self._client = client if client is not None else build_client(credentials)

    def complete(
        self,
        system_prompt: str,
        history: Sequence[dict[str, str]],
        max_tokens: int,
        timeout: float,
    ) -> str:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        try:
            completion = self._client.with_options(timeout=timeout).chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
            )
        except Exception as exc:
            raise ModelUnavailableError(f"{type(exc).__name__}: {exc}") from exc
        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            raise ModelUnavailableError("Model returned no choices") from exc
        text = (content or "").strip()
        if not text:
            raise ModelUnavailableError("Model returned empty content")
        return text
