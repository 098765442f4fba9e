"""Agent descriptor validation."""
from __future__ import annotations

import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

from tandem_core.errors import AgentValidationError

if TYPE_CHECKING:
    from tandem_agents.types import AgentDescriptor

_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_]*(-[a-z0-9_]+)*$")
_ID_MAX_LENGTH = 64
_DESCRIPTION_MAX_LENGTH = 1024
_TAG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


class AgentValidator:
    """Validates an AgentDescriptor before it is written to disk."""

    def __init__(self, known_providers: Iterable[str] | None = None) -> None:
        self._known_providers = (
            None if known_providers is None else frozenset(known_providers)
        )

    def validate(self, agent: AgentDescriptor) -> list[str]:
        """Return a list of validation error messages.

        An empty list means the descriptor is valid.
        """
        errors: list[str] = []

        if not agent.id:
            errors.append("Agent id is required.")
        else:
            if len(agent.id) > _ID_MAX_LENGTH:
                errors.append(
                    f"Agent id exceeds {_ID_MAX_LENGTH} characters: "
                    f"'{agent.id}' ({len(agent.id)} chars)."
                )
            if not _ID_PATTERN.match(agent.id):
                errors.append(
                    f"Agent id must be lowercase alphanumeric with hyphens: "
                    f"'{agent.id}'."
                )

        if not agent.name.strip():
            errors.append("Agent name is required.")

        if len(agent.description) > _DESCRIPTION_MAX_LENGTH:
            errors.append(
                f"Agent description exceeds {_DESCRIPTION_MAX_LENGTH} characters "
                f"({len(agent.description)} chars)."
            )

        if not agent.provider:
            errors.append("Agent provider is required.")
        elif (
            self._known_providers is not None
            and agent.provider not in self._known_providers
        ):
            errors.append(
                f"Unknown provider '{agent.provider}'. "
                f"Available: {', '.join(sorted(self._known_providers))}."
            )

        for tag in agent.tags:
            if not _TAG_PATTERN.match(tag):
                errors.append(f"Tag must be a lowercase slug: '{tag}'.")

        return errors

    def validate_strict(self, agent: AgentDescriptor) -> None:
        """Validate and raise AgentValidationError if invalid.

        Raises:
            AgentValidationError: With all validation errors joined.
        """
        errors = self.validate(agent)
        if errors:
            combined = "; ".join(errors)
            msg = f"Agent '{agent.id or '<unnamed>'}' validation failed: {combined}"
            raise AgentValidationError(msg)
