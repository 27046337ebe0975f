"""
Mutation Commands — how the agent rewrites its own memory.

At the end of a cycle the executor may include a block like::

    MEMORY_COMMANDS:
    [
      {"command": "add_lesson", "reason": "...", "data": {"content": "...", "confidence": "high"}}
    ]

Extraction is pluggable (``CommandExtractor``) because free-text markers drift
with model phrasing. Validation is per command: a bad entry is skipped and
reported, never fatal to the rest of the block. ``apply_commands`` is the only
code path that mutates a ``KnowledgeBase``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

import structlog

from autocycle.knowledge import (
    Hypothesis,
    KnowledgeBase,
    Lesson,
    Observation,
    Strategy,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_MARKER = "MEMORY_COMMANDS:"

# kind -> required string fields
REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "add_observation": ("content",),
    "add_lesson": ("content",),
    "add_hypothesis": ("content",),
    "add_strategy": ("name", "description"),
    "prune_old": (),
}

_CONFIDENCE_VALUES = {"high", "medium", "low"}


@dataclass
class MutationCommand:
    """One validated instruction from the agent."""

    command: str
    reason: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class SkippedCommand:
    """An entry that failed validation, kept for reporting."""

    raw: Any
    error: str


@dataclass
class ExtractionResult:
    commands: list[MutationCommand] = field(default_factory=list)
    skipped: list[SkippedCommand] = field(default_factory=list)
    block_found: bool = False


@dataclass
class ApplyReport:
    applied: list[MutationCommand] = field(default_factory=list)
    skipped: list[SkippedCommand] = field(default_factory=list)


class CommandExtractor(Protocol):
    """Turns an executor's final text into validated mutation commands."""

    def extract(self, text: str) -> ExtractionResult: ...


def validate_command(raw: Any) -> MutationCommand:
    """
    Validate a single decoded JSON entry.

    Raises ValueError describing the first problem found. Blank strings count
    as missing.
    """
    if not isinstance(raw, dict):
        raise ValueError("command entry must be an object")

    kind = raw.get("command")
    if not isinstance(kind, str) or kind not in REQUIRED_FIELDS:
        raise ValueError(f"unknown memory command: {kind!r}")

    data = raw.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"{kind}: data must be an object")

    for name in REQUIRED_FIELDS[kind]:
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{kind}: {name} must be a non-empty string")

    reason = raw.get("reason")
    return MutationCommand(
        command=kind,
        reason=reason if isinstance(reason, str) else "",
        data=data,
    )


class MarkerExtractor:
    """
    Finds the single ``MEMORY_COMMANDS:`` block in the text.

    The marker must start a line and be followed by a JSON array. Zero blocks
    or more than one block yield no commands.
    """

    def __init__(self, marker: str = DEFAULT_MARKER) -> None:
        self.marker = marker
        self._marker_re = re.compile(rf"^[ \t>*#-]*{re.escape(marker)}[ \t*]*", re.MULTILINE)
        self._decoder = json.JSONDecoder()

    def extract(self, text: str) -> ExtractionResult:
        matches = list(self._marker_re.finditer(text or ""))
        if not matches:
            return ExtractionResult()
        if len(matches) > 1:
            logger.warning("commands.multiple_blocks", count=len(matches))
            return ExtractionResult()

        entries = self._decode_array(text, matches[0].end())
        if entries is None:
            return ExtractionResult(block_found=True)

        result = ExtractionResult(block_found=True)
        for raw in entries:
            try:
                result.commands.append(validate_command(raw))
            except ValueError as e:
                logger.warning("commands.invalid", error=str(e))
                result.skipped.append(SkippedCommand(raw=raw, error=str(e)))
        return result

    def _decode_array(self, text: str, start: int) -> Optional[list[Any]]:
        body = text[start:].lstrip()
        # Tolerate a fenced ```json block right after the marker.
        if body.startswith("```"):
            body = body.split("\n", 1)[1] if "\n" in body else ""
        try:
            value, _ = self._decoder.raw_decode(body)
        except json.JSONDecodeError as e:
            logger.warning("commands.parse_failed", error=str(e))
            return None
        if not isinstance(value, list):
            logger.warning("commands.not_an_array", type=type(value).__name__)
            return None
        return value


def apply_commands(
    kb: KnowledgeBase,
    commands: list[MutationCommand],
    cycle: int,
    now: Optional[datetime] = None,
) -> ApplyReport:
    """Apply validated commands to *kb* in place, in order."""
    now = now or utcnow()
    report = ApplyReport()
    for cmd in commands:
        try:
            _apply_one(kb, cmd, cycle, now)
        except ValueError as e:
            logger.warning("commands.apply_skipped", command=cmd.command, error=str(e))
            report.skipped.append(SkippedCommand(raw=cmd, error=str(e)))
            continue
        logger.info("commands.applied", command=cmd.command, reason=cmd.reason)
        report.applied.append(cmd)
    return report


def _apply_one(kb: KnowledgeBase, cmd: MutationCommand, cycle: int, now: datetime) -> None:
    # Re-validate: commands may be built by hand, not only by an extractor.
    validate_command({"command": cmd.command, "reason": cmd.reason, "data": cmd.data})
    data = cmd.data

    if cmd.command == "add_observation":
        kb.observations.append(Observation(content=data["content"], timestamp=now, cycle=cycle))

    elif cmd.command == "add_lesson":
        kb.lessons.append(
            Lesson(
                content=data["content"],
                timestamp=now,
                cycle=cycle,
                confidence=_normalize_confidence(data.get("confidence")),
            )
        )

    elif cmd.command == "add_hypothesis":
        kb.hypotheses.append(
            Hypothesis(content=data["content"], timestamp=now, cycle=cycle, status="testing")
        )

    elif cmd.command == "add_strategy":
        kb.strategies.append(
            Strategy(
                name=data["name"],
                description=data["description"],
                timestamp=now,
                cycle=cycle,
            )
        )

    elif cmd.command == "prune_old":
        # No eviction policy is defined; the request is accepted and recorded only.
        logger.info("commands.prune_old_noop", cycle=cycle)


def _normalize_confidence(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() in _CONFIDENCE_VALUES:
        return value.strip().lower()
    return ""
