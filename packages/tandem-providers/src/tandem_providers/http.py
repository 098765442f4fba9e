"""Base class for providers that call a remote HTTP API."""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Literal

import httpx
from tandem_core.errors import ProviderAuthenticationError, ProviderRuntimeError
from tandem_core.logging import get_logger
from tandem_core.types import InvocationResult

from tandem_providers.base import BaseProvider, compose_prompt
from tandem_providers.records import as_record, ensure_trailing_newline, read_content_text

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tandem_core.types import InvocationRequest

logger = get_logger("providers.http")

ApiStyle = Literal["responses", "chat"]
CHAT_COMPLETIONS_PATH = "/chat/completions"
_ERROR_BODY_LIMIT = 2_000


@dataclass(frozen=True, slots=True)
class HttpTarget:
    """Where and how one request is sent.

    ``pinned`` is set when the caller chose the endpoint, path or style
    explicitly; pinned targets never fall back.
    """
    url: str
    style: ApiStyle
    base_url: str
    pinned: bool = False

    @property
    def can_fall_back(self) -> bool:
        return self.style == "responses" and not self.pinned

    def chat_fallback(self) -> HttpTarget:
        return HttpTarget(
            url=f"{self.base_url}{CHAT_COMPLETIONS_PATH}",
            style="chat",
            base_url=self.base_url,
            pinned=True,
        )


@dataclass(frozen=True, slots=True)
class _Attempt:
    result: InvocationResult
    retryable: bool = False


class HttpProvider(BaseProvider):
    """Backend reached over HTTP.

    The lifecycle is: credential check, target and model resolution, one
    POST, and at most one retry in ``chat`` style when the default
    ``responses`` style answers 404 or times out. Non-2xx answers become
    failed results (exit code 1); a 2xx answer without usable text raises
    :class:`ProviderRuntimeError`.
    """

    api_key_env: ClassVar[str]
    default_timeout_seconds: ClassVar[float] = 120.0

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    # ── Adapter hooks ───────────────────────────────────────────────

    @abc.abstractmethod
    def resolve_target(self, env: Mapping[str, str]) -> HttpTarget:
        """Endpoint URL and API style for the given environment."""

    @abc.abstractmethod
    def resolve_model(
        self, request: InvocationRequest, env: Mapping[str, str], target: HttpTarget
    ) -> str | None:
        """Model to request, or None when no model can be chosen."""

    def resolve_timeout(
        self, request: InvocationRequest, env: Mapping[str, str], target: HttpTarget
    ) -> float:
        return request.timeout_seconds or self.default_timeout_seconds

    def build_headers(self, api_key: str, env: Mapping[str, str]) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(
        self, request: InvocationRequest, model: str, style: ApiStyle
    ) -> dict[str, Any]:
        prompt = compose_prompt(request)
        if style == "chat":
            messages: list[dict[str, str]] = []
            if request.system_prompt:
                messages.append({"role": "system", "content": request.system_prompt})
            messages.append({"role": "user", "content": prompt})
            return {"model": model, "messages": messages}

        payload: dict[str, Any] = {"model": model, "input": prompt}
        if request.system_prompt:
            payload["instructions"] = request.system_prompt
        return payload

    def parse_text(self, payload: Any, style: ApiStyle) -> str | None:
        body = as_record(payload)
        if body is None:
            return None
        if style == "chat":
            choices = body.get("choices")
            if isinstance(choices, list) and choices:
                message = as_record((as_record(choices[0]) or {}).get("message"))
                if message is not None:
                    return read_content_text(message.get("content"))
            return None

        output_text = body.get("output_text")
        if isinstance(output_text, str) and output_text.strip():
            return output_text.strip()
        parts: list[str] = []
        for item in body.get("output") or []:
            for content in (as_record(item) or {}).get("content") or []:
                content = as_record(content) or {}
                if content.get("type") in ("output_text", "text") and isinstance(
                    content.get("text"), str
                ):
                    parts.append(content["text"])
        return "".join(parts).strip() or None

    # ── Lifecycle ───────────────────────────────────────────────────

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        self.validate_request(request)
        env = request.env
        api_key = (env.get(self.api_key_env) or "").strip()
        if not api_key:
            raise ProviderAuthenticationError(
                f"Provider '{self.id}' needs an API key: set {self.api_key_env}.",
                provider_id=self.id,
            )

        target = self.resolve_target(env)
        model = self.resolve_model(request, env, target)
        if not model:
            return InvocationResult(
                exit_code=1,
                stderr=(
                    f"Missing model for provider '{self.id}' at {target.base_url}; "
                    "pass a model or configure a default."
                ),
            )

        timeout = self.resolve_timeout(request, env, target)
        headers = self.build_headers(api_key, env)
        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            attempt = await self._send(client, target, request, model, headers, timeout)
            if attempt.retryable and target.can_fall_back:
                fallback = target.chat_fallback()
                logger.warning(
                    "%s %s style failed, retrying once at %s",
                    self.id, target.style, fallback.url,
                    extra={"provider_id": self.id},
                )
                attempt = await self._send(client, fallback, request, model, headers, timeout)

        result = attempt.result
        if result.ok and request.on_stdout is not None:
            request.on_stdout(result.stdout)
        elif not result.ok and request.on_stderr is not None:
            request.on_stderr(result.stderr)
        return result

    async def _send(
        self,
        client: httpx.AsyncClient,
        target: HttpTarget,
        request: InvocationRequest,
        model: str,
        headers: dict[str, str],
        timeout: float,
    ) -> _Attempt:
        logger.info(
            "POST %s (%s style, model=%s)", target.url, target.style, model,
            extra={"provider_id": self.id},
        )
        try:
            response = await client.post(
                target.url,
                json=self.build_payload(request, model, target.style),
                headers=headers,
            )
        except httpx.TimeoutException:
            return _Attempt(
                InvocationResult(exit_code=1, stderr=f"Request timed out after {timeout:g}s"),
                retryable=True,
            )
        except httpx.HTTPError as exc:
            return _Attempt(InvocationResult(exit_code=1, stderr=f"Request failed: {exc}"))

        if response.is_error:
            body = response.text[:_ERROR_BODY_LIMIT]
            return _Attempt(
                InvocationResult(exit_code=1, stderr=f"HTTP {response.status_code}: {body}"),
                retryable=response.status_code == 404,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"Provider '{self.id}' returned a non-JSON response from {target.url}"
            raise ProviderRuntimeError(msg, provider_id=self.id) from exc

        text = self.parse_text(payload, target.style)
        if not text:
            msg = f"Provider '{self.id}' returned no text output from {target.url}"
            raise ProviderRuntimeError(msg, provider_id=self.id)
        return _Attempt(InvocationResult(exit_code=0, stdout=ensure_trailing_newline(text)))
