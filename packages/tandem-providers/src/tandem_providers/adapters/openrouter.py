"""OpenRouter chat completions API.

Environment: ``OPENROUTER_API_KEY`` (required), ``OPENROUTER_ENDPOINT``,
``OPENROUTER_MODEL`` (default ``openai/gpt-4o-mini``), and the optional
attribution headers ``OPENROUTER_HTTP_REFERER`` / ``OPENROUTER_X_TITLE``.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from tandem_core.types import ProviderCapabilities, ProviderDescriptor, ProviderKind

from tandem_providers.http import HttpProvider, HttpTarget

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tandem_core.types import InvocationRequest

DEFAULT_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "openai/gpt-4o-mini"


class OpenRouterProvider(HttpProvider):
    descriptor = ProviderDescriptor(
        id="openrouter",
        display_name="OpenRouter",
        kind=ProviderKind.HTTP,
        capabilities=ProviderCapabilities(model=True),
    )
    api_key_env = "OPENROUTER_API_KEY"

    def resolve_target(self, env: Mapping[str, str]) -> HttpTarget:
        url = (env.get("OPENROUTER_ENDPOINT") or "").strip() or DEFAULT_ENDPOINT
        base_url = url.rsplit("/chat/completions", 1)[0]
        return HttpTarget(url=url, style="chat", base_url=base_url, pinned=True)

    def resolve_model(
        self, request: InvocationRequest, env: Mapping[str, str], target: HttpTarget
    ) -> str | None:
        return (
            (request.model or "").strip()
            or (env.get("OPENROUTER_MODEL") or "").strip()
            or DEFAULT_MODEL
        )

    def build_headers(self, api_key: str, env: Mapping[str, str]) -> dict[str, str]:
        headers = super().build_headers(api_key, env)
        referer = (env.get("OPENROUTER_HTTP_REFERER") or "").strip()
        title = (env.get("OPENROUTER_X_TITLE") or "").strip()
        if referer:
            headers["HTTP-Referer"] = referer
        if title:
            headers["X-Title"] = title
        return headers
