"""Built-in provider adapters."""
from __future__ import annotations

from tandem_providers.adapters.claude_code import ClaudeCodeProvider
from tandem_providers.adapters.codex import CodexProvider
from tandem_providers.adapters.copilot import CopilotCliProvider
from tandem_providers.adapters.cursor import CursorProvider
from tandem_providers.adapters.gemini import GeminiProvider
from tandem_providers.adapters.openai import OpenAIProvider
from tandem_providers.adapters.opencode import OpenCodeProvider
from tandem_providers.adapters.openrouter import OpenRouterProvider

__all__ = [
    "ClaudeCodeProvider",
    "CodexProvider",
    "CopilotCliProvider",
    "CursorProvider",
    "GeminiProvider",
    "OpenAIProvider",
    "OpenCodeProvider",
    "OpenRouterProvider",
]
