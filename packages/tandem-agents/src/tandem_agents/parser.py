"""AGENTS.md parser: extracts YAML front matter and the markdown body.

Parsing is tolerant. A document without a front matter block, with an
unterminated block, with invalid YAML, or with a block that is not a
mapping yields empty metadata; :func:`normalize_metadata` then derives
every field from defaults.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

import yaml
from tandem_core.logging import get_logger

from tandem_agents.types import (
    DEFAULT_AGENT_ID,
    DEFAULT_PRIORITY,
    AgentDescriptor,
    DelegationPolicy,
    ParsedManifest,
)

logger = get_logger("agents.parser")

_DELIMITER = "---"
_SLUG_STRIP = re.compile(r"[^a-z0-9_-]+")
_TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"false", "no", "off", "0"})


def normalize_agent_id(value: str) -> str:
    """Lowercase slug: ``"Product Manager"`` → ``"product-manager"``."""
    slug = _SLUG_STRIP.sub("-", str(value).strip().lower())
    slug = re.sub(r"-{2,}", "-", slug).strip("-_")
    return slug


def parse_manifest(markdown: str) -> ParsedManifest:
    """Parse a manifest document into recognized metadata and body."""
    front, body = _split_front_matter(markdown)
    if front is None:
        return ParsedManifest(data={}, body=markdown.strip(), has_front_matter=False)

    try:
        meta = yaml.safe_load(front)
    except yaml.YAMLError as exc:
        logger.warning("Invalid manifest front matter, using defaults: %s", exc)
        return ParsedManifest(data={}, body=body, has_front_matter=False)

    if meta is None:
        meta = {}
    if not isinstance(meta, dict):
        logger.warning(
            "Manifest front matter must be a mapping, got %s", type(meta).__name__
        )
        return ParsedManifest(data={}, body=body, has_front_matter=False)

    return ParsedManifest(data=_extract(meta), body=body, has_front_matter=True)


def normalize_metadata(
    agent_id: str,
    provider_id: str,
    data: Mapping[str, Any] | None = None,
    *,
    display_name: str | None = None,
    default_agent_id: str = DEFAULT_AGENT_ID,
) -> AgentDescriptor:
    """Fill derived defaults for every field missing from ``data``."""
    data = data or {}
    normalized_id = normalize_agent_id(agent_id)
    is_default = normalized_id == normalize_agent_id(default_agent_id)

    name = data.get("name") or display_name or normalized_id
    description = data.get("description") or (
        "Primary orchestration agent." if is_default else f"Agent {name}."
    )
    delegation = data.get("delegation", {})

    return AgentDescriptor(
        id=normalized_id,
        name=name,
        description=description,
        provider=data.get("provider") or provider_id,
        discoverable=data.get("discoverable", True),
        tags=_dedupe(data.get("tags", ())),
        delegation=DelegationPolicy(
            can_receive=delegation.get("can_receive", True),
            can_delegate=delegation.get("can_delegate", is_default),
        ),
        priority=data.get("priority", DEFAULT_PRIORITY),
    )


def format_manifest(descriptor: AgentDescriptor, body: str = "") -> str:
    """Render a descriptor and body back into an AGENTS.md document."""
    front = yaml.safe_dump(
        descriptor.to_dict(),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=2**16,
    )
    text = f"{_DELIMITER}\n{front}{_DELIMITER}\n"
    body = body.strip()
    if body:
        text += f"\n{body}\n"
    return text


def _split_front_matter(text: str) -> tuple[str | None, str]:
    """Return ``(front_matter, body)``; front matter is None when absent."""
    lines = text.lstrip("\ufeff").splitlines()
    start = 0
    while start < len(lines) and not lines[start].strip():
        start += 1
    if start >= len(lines) or lines[start].strip() != _DELIMITER:
        return None, text

    for idx in range(start + 1, len(lines)):
        if lines[idx].strip() in (_DELIMITER, "..."):
            front = "\n".join(lines[start + 1 : idx])
            body = "\n".join(lines[idx + 1 :]).strip()
            return front, body

    # Unterminated block: treat the whole document as body.
    return None, text


def _extract(meta: Mapping[str, Any]) -> dict[str, Any]:
    data: dict[str, Any] = {}

    raw_id = _as_text(meta.get("id"))
    if raw_id and normalize_agent_id(raw_id):
        data["id"] = normalize_agent_id(raw_id)

    for key in ("name", "description"):
        text = _as_text(meta.get(key))
        if text:
            data[key] = text

    provider = _as_text(meta.get("provider"))
    if provider:
        data["provider"] = provider.lower()

    discoverable = _as_bool(meta.get("discoverable"))
    if discoverable is not None:
        data["discoverable"] = discoverable

    if "tags" in meta:
        data["tags"] = _as_tags(meta.get("tags"))

    delegation = _extract_delegation(meta)
    if delegation:
        data["delegation"] = delegation

    priority = _as_int(meta.get("priority"))
    if priority is not None:
        data["priority"] = priority

    return data


def _extract_delegation(meta: Mapping[str, Any]) -> dict[str, bool]:
    nested = meta.get("delegation")
    sources: list[Mapping[str, Any]] = []
    if isinstance(nested, Mapping):
        sources.append(nested)
    # Flat spellings: ``delegation.canReceive: true``.
    sources.append({
        key.split(".", 1)[1]: value
        for key, value in meta.items()
        if isinstance(key, str) and key.startswith("delegation.")
    })

    policy: dict[str, bool] = {}
    for source in sources:
        for key, value in source.items():
            field_name = _DELEGATION_KEYS.get(str(key).replace("-", "_").lower())
            flag = _as_bool(value)
            if field_name and flag is not None:
                policy[field_name] = flag
    return policy


_DELEGATION_KEYS = {
    "canreceive": "can_receive",
    "can_receive": "can_receive",
    "candelegate": "can_delegate",
    "can_delegate": "can_delegate",
}


def _as_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.strip().strip("[]").split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value if item is not None]
    else:
        items = [str(value)]
    return list(_dedupe(items))


def _dedupe(tags: Any) -> tuple[str, ...]:
    seen: list[str] = []
    for tag in tags:
        slug = normalize_agent_id(tag)
        if slug and slug not in seen:
            seen.append(slug)
    return tuple(seen)
