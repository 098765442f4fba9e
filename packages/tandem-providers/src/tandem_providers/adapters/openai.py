"""OpenAI API (Responses or Chat Completions).

Environment:

* ``OPENAI_API_KEY`` (required)
* ``OPENAI_BASE_URL`` (default ``https://api.openai.com/v1``); any other
  base URL is treated as an OpenAI-compatible server and defaults to
  ``chat`` style
* ``OPENAI_ENDPOINT`` full URL, or ``OPENAI_ENDPOINT_PATH`` appended to the
  base URL
* ``OPENAI_API_STYLE`` ``responses`` | ``chat``
* ``OPENAI_MODEL`` (default ``gpt-4.1-mini`` on the default base URL)
* ``OPENAI_REQUEST_TIMEOUT_MS``
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from tandem_core.types import ProviderCapabilities, ProviderDescriptor, ProviderKind

from tandem_providers.http import CHAT_COMPLETIONS_PATH, HttpProvider, HttpTarget

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tandem_core.types import InvocationRequest

DEFAULT_BASE_URL = "https://api.openai.com/v1"
RESPONSES_PATH = "/responses"
DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_TIMEOUT_SECONDS = 120.0
COMPAT_TIMEOUT_SECONDS = 60.0


def _env(env: Mapping[str, str], name: str) -> str:
    return (env.get(name) or "").strip()


def _is_default_base(base_url: str) -> bool:
    return base_url.rstrip("/") == DEFAULT_BASE_URL


class OpenAIProvider(HttpProvider):
    descriptor = ProviderDescriptor(
        id="openai",
        display_name="OpenAI",
        kind=ProviderKind.HTTP,
        capabilities=ProviderCapabilities(model=True),
    )
    api_key_env = "OPENAI_API_KEY"

    def resolve_target(self, env: Mapping[str, str]) -> HttpTarget:
        base_url = (_env(env, "OPENAI_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        endpoint = _env(env, "OPENAI_ENDPOINT")
        path = _env(env, "OPENAI_ENDPOINT_PATH")
        style_override = _env(env, "OPENAI_API_STYLE").lower()

        pinned = bool(endpoint or path or style_override)

        if style_override in ("responses", "chat"):
            style = style_override
        elif not endpoint and not path and not _is_default_base(base_url):
            style = "chat"
        elif CHAT_COMPLETIONS_PATH in endpoint.lower():
            style = "chat"
        else:
            style = "responses"

        if endpoint:
            url = endpoint
        else:
            path = path or (CHAT_COMPLETIONS_PATH if style == "chat" else RESPONSES_PATH)
            url = f"{base_url}{'' if path.startswith('/') else '/'}{path}"

        return HttpTarget(
            url=url,
            style=style,
            base_url=base_url,
            pinned=pinned,
        )

    def resolve_model(
        self, request: InvocationRequest, env: Mapping[str, str], target: HttpTarget
    ) -> str | None:
        model = (request.model or "").strip() or _env(env, "OPENAI_MODEL")
        if model:
            return model
        return DEFAULT_MODEL if _is_default_base(target.base_url) else None

    def resolve_timeout(
        self, request: InvocationRequest, env: Mapping[str, str], target: HttpTarget
    ) -> float:
        raw = _env(env, "OPENAI_REQUEST_TIMEOUT_MS")
        try:
            explicit_ms = float(raw) if raw else 0.0
        except ValueError:
            explicit_ms = 0.0
        if explicit_ms > 0:
            return explicit_ms / 1000
        if request.timeout_seconds:
            return request.timeout_seconds
        return DEFAULT_TIMEOUT_SECONDS if _is_default_base(target.base_url) else COMPAT_TIMEOUT_SECONDS
