"""Heuristic routing of a user message to the best matching agent.

Used to suggest a delegation target without asking a planner, and to
order the candidate list the planner sees.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from tandem_agents.parser import normalize_agent_id
from tandem_agents.types import AgentManifest

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_BODY_TOKEN_LIMIT = 80
_MAX_MATCHED_TERMS = 8


@dataclass(frozen=True, slots=True)
class RoutingCandidate:
    agent_id: str
    agent_name: str
    score: float
    priority: int
    matched_terms: tuple[str, ...] = ()
    reason: str = ""


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    entry_agent_id: str
    target_agent_id: str
    confidence: float
    reason: str
    rewritten_message: str
    candidates: tuple[RoutingCandidate, ...] = field(default_factory=tuple)


def delegation_candidates(
    manifests: Iterable[AgentManifest], exclude: Iterable[str] = ()
) -> list[AgentManifest]:
    """Discoverable agents accepting delegation, highest priority first."""
    excluded = {normalize_agent_id(agent_id) for agent_id in exclude}
    eligible = [
        m for m in manifests
        if m.agent_id not in excluded and m.descriptor.eligible_for_delegation
    ]
    return sorted(eligible, key=lambda m: (-m.descriptor.priority, m.agent_id))


class RoutingService:
    """Scores delegation candidates by term overlap with a message."""

    def __init__(self, default_agent_id: str) -> None:
        self._default_agent_id = normalize_agent_id(default_agent_id)

    def decide(
        self,
        entry_agent_id: str,
        message: str,
        manifests: Sequence[AgentManifest],
    ) -> RoutingDecision:
        entry = normalize_agent_id(entry_agent_id)
        message = message.strip()

        if not message:
            return RoutingDecision(
                entry_agent_id=entry,
                target_agent_id=entry,
                confidence=1.0,
                reason="Empty message; keeping current agent.",
                rewritten_message=message,
            )
        if entry != self._default_agent_id:
            return RoutingDecision(
                entry_agent_id=entry,
                target_agent_id=entry,
                confidence=1.0,
                reason="Direct invocation of a non-orchestrator agent.",
                rewritten_message=message,
            )

        candidates = sorted(
            (
                score_candidate(message, manifest)
                for manifest in delegation_candidates(manifests, exclude=[entry])
            ),
            key=lambda c: (-c.score, -c.priority, c.agent_id),
        )

        top = candidates[0] if candidates else None
        if top is None or top.score <= 0:
            return RoutingDecision(
                entry_agent_id=entry,
                target_agent_id=self._default_agent_id,
                confidence=0.35,
                reason="No specialized agent strongly matched the request.",
                rewritten_message=message,
                candidates=tuple(candidates),
            )

        confidence = round(min(0.99, top.score / max(4, len(_tokenize(message)) + 1)), 2)
        reason = f"Matched {len(top.matched_terms)} relevant term(s) for {top.agent_name}."
        return RoutingDecision(
            entry_agent_id=entry,
            target_agent_id=top.agent_id,
            confidence=confidence,
            reason=reason,
            rewritten_message="\n\n".join([
                f"Original user request:\n{message}",
                f"Delegation target: {top.agent_name}",
                f"Delegation reason: {reason}",
                "Please execute the task and return a concise, user-ready response.",
            ]),
            candidates=tuple(candidates),
        )


def score_candidate(message: str, manifest: AgentManifest) -> RoutingCandidate:
    """Term overlap counts double, an explicit mention adds 4.

    Priority only adds a small boost (at most 3) to already relevant
    candidates, so it orders matches without creating them.
    """
    meta = manifest.descriptor
    metadata_tokens = _tokenize(" ".join([meta.id, meta.name, meta.description, *meta.tags]))
    body_tokens = _tokenize(manifest.body)[:_BODY_TOKEN_LIMIT]
    vocabulary = set(metadata_tokens) | set(body_tokens)

    matched: list[str] = []
    for token in _tokenize(message):
        if token in vocabulary and token not in matched:
            matched.append(token)

    explicit = _mentions(message, meta.id) or _mentions(message, meta.name)
    relevance = len(matched) * 2 + (4 if explicit else 0)
    boost = max(0.0, min(3.0, meta.priority / 50)) if relevance > 0 else 0.0

    reason = (
        f"Explicit mention and {len(matched)} matched metadata terms."
        if explicit
        else f"{len(matched)} matched metadata terms."
    )
    return RoutingCandidate(
        agent_id=manifest.agent_id,
        agent_name=meta.name,
        score=round(relevance + boost, 2),
        priority=meta.priority,
        matched_terms=tuple(matched[:_MAX_MATCHED_TERMS]),
        reason=reason,
    )


def _tokenize(value: str) -> list[str]:
    return [t for t in _TOKEN_SPLIT.split(value.lower()) if len(t) >= 2]


def _mentions(haystack: str, needle: str) -> bool:
    needle = needle.strip()
    if not needle:
        return False
    return re.search(rf"\b{re.escape(needle)}\b", haystack, re.IGNORECASE) is not None
