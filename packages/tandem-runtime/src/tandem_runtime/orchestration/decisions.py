"""Planner decisions.

A planning turn must answer with one JSON object. Two shapes are
accepted::

    {"rationale": "...", "action": {"type": "delegate_to_agent", ...}}
    {"type": "finish", "message": "...", "rationale": "..."}

The object may be wrapped in a fenced ```json block or surrounded by
prose. Anything else is rejected with MalformedPlannerOutputError; the
engine never guesses a decision on the model's behalf.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

from tandem_core.errors import MalformedPlannerOutputError

DelegationMode = Literal["direct", "artifacts", "hybrid"]

DELEGATE = "delegate_to_agent"
FINISH = "finish"
RESPOND_USER = "respond_user"

_FENCED_JSON = re.compile(r"```json\s*(.*?)```", re.IGNORECASE | re.DOTALL)
_MODES = ("direct", "artifacts", "hybrid")


@dataclass(frozen=True, slots=True)
class DelegateDecision:
    target_agent_id: str
    message: str
    expected_output: str | None = None
    rationale: str = ""
    reason: str | None = None
    mode: DelegationMode = "hybrid"

    type: Literal["delegate_to_agent"] = DELEGATE

    def to_dict(self) -> dict[str, Any]:
        action: dict[str, Any] = {
            "type": self.type,
            "targetAgentId": self.target_agent_id,
            "message": self.message,
            "mode": self.mode,
        }
        if self.expected_output:
            action["expectedOutput"] = self.expected_output
        if self.reason:
            action["reason"] = self.reason
        return {"rationale": self.rationale, "action": action}


@dataclass(frozen=True, slots=True)
class FinishDecision:
    message: str
    rationale: str = ""
    reason: str | None = None

    type: Literal["finish"] = FINISH

    def to_dict(self) -> dict[str, Any]:
        action: dict[str, Any] = {"type": self.type, "message": self.message}
        if self.reason:
            action["reason"] = self.reason
        return {"rationale": self.rationale, "action": action}


PlanningDecision = DelegateDecision | FinishDecision


def parse_decision(raw: str, *, agent_id: str | None = None) -> PlanningDecision:
    """Parse a planner's raw output into a decision or raise."""
    payload = _extract_json(raw)
    if payload is None:
        raise MalformedPlannerOutputError(
            "Planner output contains no JSON decision", agent_id=agent_id, raw_output=raw,
        )
    if not isinstance(payload, dict):
        raise MalformedPlannerOutputError(
            "Planner decision must be a JSON object", agent_id=agent_id, raw_output=raw,
        )

    action = payload.get("action")
    if isinstance(action, dict):
        rationale = payload.get("rationale")
    elif "type" in payload:
        action, rationale = payload, payload.get("rationale")
    else:
        raise MalformedPlannerOutputError(
            "Planner decision has no action", agent_id=agent_id, raw_output=raw,
        )
    if rationale is not None and not isinstance(rationale, str):
        raise MalformedPlannerOutputError(
            "Planner rationale must be a string", agent_id=agent_id, raw_output=raw,
        )
    return _build(action, (rationale or "").strip(), agent_id, raw)


def _build(action: dict[str, Any], rationale: str, agent_id: str | None, raw: str) -> PlanningDecision:
    kind = action.get("type")
    message = action.get("message")
    reason = _optional_str(action.get("reason"))

    if kind == DELEGATE:
        target = action.get("targetAgentId", action.get("target_agent_id"))
        if not isinstance(target, str) or not target.strip():
            raise MalformedPlannerOutputError(
                "delegate_to_agent requires targetAgentId", agent_id=agent_id, raw_output=raw,
            )
        if not isinstance(message, str) or not message.strip():
            raise MalformedPlannerOutputError(
                "delegate_to_agent requires a message", agent_id=agent_id, raw_output=raw,
            )
        mode = action.get("mode") or "hybrid"
        if mode not in _MODES:
            raise MalformedPlannerOutputError(
                f"Unknown delegation mode {mode!r}", agent_id=agent_id, raw_output=raw,
            )
        return DelegateDecision(
            target_agent_id=target.strip().lower(),
            message=message.strip(),
            expected_output=_optional_str(
                action.get("expectedOutput", action.get("expected_output"))
            ),
            rationale=rationale or "Delegating to specialized agent.",
            reason=reason,
            mode=mode,
        )

    if kind in (FINISH, RESPOND_USER):
        if not isinstance(message, str):
            raise MalformedPlannerOutputError(
                f"{kind} requires a message", agent_id=agent_id, raw_output=raw,
            )
        return FinishDecision(
            message=message.strip() or "Completed.",
            rationale=rationale or "Responding directly to user.",
            reason=reason,
        )

    raise MalformedPlannerOutputError(
        f"Unsupported planner action {kind!r}", agent_id=agent_id, raw_output=raw,
    )


def _extract_json(raw: str) -> Any | None:
    text = raw.strip()
    if not text:
        return None

    candidates: list[str] = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    candidates.append(text)
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
