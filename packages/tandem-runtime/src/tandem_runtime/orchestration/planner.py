"""Prompts exchanged during a planning loop."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tandem_agents.routing import delegation_candidates

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tandem_agents.types import AgentManifest

_WHITESPACE = re.compile(r"\s+")

SUMMARY_MAX_CHARS = 180
DELEGATE_NOTES_MAX_CHARS = 4000


@dataclass(slots=True)
class PlannerContext:
    """Working memory of one planning loop."""
    user_message: str
    notes_max_chars: int
    events_window: int
    shared_notes: list[str] = field(default_factory=list)
    recent_events: list[str] = field(default_factory=list)

    def add_note(self, note: str) -> None:
        self.shared_notes.append(clamp_middle(note, 2000))

    def add_event(self, event: str) -> None:
        self.recent_events.append(summarize_text(event))
        del self.recent_events[:-self.events_window]

    def notes_text(self, max_chars: int | None = None) -> str:
        return clamp_middle("\n\n".join(self.shared_notes), max_chars or self.notes_max_chars)


def build_planner_prompt(
    context: PlannerContext,
    *,
    agent_id: str,
    manifests: Sequence[AgentManifest],
    step: int,
    remaining_delegations: int,
) -> str:
    """The instruction a planning agent answers with one JSON decision."""
    allowed = delegation_candidates(manifests, exclude=(agent_id,))
    lines = [
        f"You are {agent_id}, the planning agent of a multi-agent run.",
        "Decide the next best action to solve the user request.",
        "Use only the JSON format requested below; do not add extra text.",
        "",
        "Action policy:",
        "- Use delegate_to_agent when a specialized agent should execute the next step.",
        "- Use finish when the task is complete or you can answer directly.",
        f"- At most {remaining_delegations} more delegation(s) are allowed in this run.",
        "",
        "Allowed agents:",
    ]
    if allowed:
        lines.extend(
            f"- {m.agent_id}: name={m.descriptor.display_name}; "
            f"description={m.descriptor.description}; provider={m.provider}; "
            f"canDelegate={str(m.descriptor.delegation.can_delegate).lower()}"
            for m in allowed
        )
    else:
        lines.append("- (none)")

    lines += [
        "",
        f"Step {step}",
        "",
        "User request:",
        context.user_message,
        "",
        "Shared notes:",
        context.notes_text() or "(none)",
        "",
        "Recent events:",
        *([f"- {event}" for event in context.recent_events] or ["- (none)"]),
        "",
        "Return JSON with shape:",
        "{",
        '  "rationale": "short reason",',
        '  "action": {',
        '    "type": "delegate_to_agent|finish",',
        '    "mode": "direct|artifacts|hybrid",',
        '    "reason": "optional short reason",',
        '    "targetAgentId": "required for delegate_to_agent",',
        '    "message": "required",',
        '    "expectedOutput": "optional for delegate_to_agent"',
        "  }",
        "}",
    ]
    return "\n".join(lines)


def render_delegate_message(
    context: PlannerContext,
    *,
    step: int,
    message: str,
    expected_output: str | None,
) -> str:
    """Message a delegate receives for one hand-off."""
    lines = [
        f"Delegation step: {step}",
        "",
        "Original user request:",
        context.user_message,
        "",
        "Delegation instruction:",
        message,
        "",
    ]
    if expected_output:
        lines += ["Expected output:", expected_output, ""]
    if context.shared_notes:
        lines += [
            "Shared notes from previous steps:",
            context.notes_text(DELEGATE_NOTES_MAX_CHARS),
            "",
        ]
    lines.append("Return a concise result for the agent that delegated to you.")
    return "\n".join(lines)


def summarize_text(value: str) -> str:
    normalized = _WHITESPACE.sub(" ", value).strip()
    if len(normalized) <= SUMMARY_MAX_CHARS:
        return normalized
    return f"{normalized[:SUMMARY_MAX_CHARS - 3]}..."


def clamp_middle(value: str, max_chars: int) -> str:
    """Keep the head and tail of ``value`` around a truncation marker."""
    if len(value) <= max_chars:
        return value
    head = value[: int(max_chars * 0.7)]
    tail = value[-max(0, max_chars - len(head) - 20):] if max_chars - len(head) > 20 else ""
    return f"{head}\n...[truncated]...\n{tail}"
