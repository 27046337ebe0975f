"""
Prompt Assembly — persisted state in, next cycle's prompt out.

``build_user_prompt`` is a pure function: no clock reads, no file access. The
caller supplies ``now`` so identical inputs always render identical text,
which keeps golden-file tests stable.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from autocycle.commands import DEFAULT_MARKER
from autocycle.knowledge import GoalSet, KnowledgeBase

RECENT_OBSERVATION_LIMIT = 5
MISSION_SUMMARY_MAX_CHARS = 400

SYSTEM_PROMPT_FILE = "system-prompt.md"

DEFAULT_SYSTEM_PROMPT = f"""\
You are an autonomous agent running on a heartbeat. Every cycle you receive your
mission, your active goals and the knowledge you have accumulated so far. Pick one
goal, use your tools to make concrete progress on it, and report what you did.

You manage your own memory. To record what you learned, end your reply with a
single block in exactly this form:

{DEFAULT_MARKER}
[
  {{"command": "add_observation", "reason": "why", "data": {{"content": "what you noticed"}}}},
  {{"command": "add_lesson", "reason": "why", "data": {{"content": "rule", "confidence": "high|medium|low"}}}},
  {{"command": "add_hypothesis", "reason": "why", "data": {{"content": "theory to test"}}}},
  {{"command": "add_strategy", "reason": "why", "data": {{"name": "short name", "description": "how"}}}}
]

Only one such block per reply. Omit it when there is nothing worth remembering.
"""


def build_system_prompt(home_dir: Optional[Path] = None) -> str:
    """Return ``system-prompt.md`` from the home dir when present, else the built-in prompt."""
    if home_dir is not None:
        path = Path(home_dir) / SYSTEM_PROMPT_FILE
        try:
            text = path.read_text(encoding="utf-8")
        except OSError:
            text = ""
        if text.strip():
            return text
    return DEFAULT_SYSTEM_PROMPT


def summarize_mission(mission: str, max_chars: int = MISSION_SUMMARY_MAX_CHARS) -> str:
    """First prose paragraph of the mission, headings skipped, clipped to *max_chars*."""
    paragraph: list[str] = []
    for line in mission.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            if paragraph:
                break
            continue
        if not stripped:
            if paragraph:
                break
            continue
        paragraph.append(stripped)

    summary = " ".join(paragraph)
    if len(summary) > max_chars:
        summary = summary[: max_chars - 3].rstrip() + "..."
    return summary


def build_user_prompt(
    kb: KnowledgeBase,
    goals: GoalSet,
    mission: str,
    cycle_number: int,
    now: datetime,
) -> str:
    """Render the prompt for *cycle_number* from the given state."""
    parts: list[str] = []

    parts.append(f"# Heartbeat Cycle {cycle_number}\n\n")
    parts.append(f"**Time**: {now.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}\n\n")

    parts.append("## Mission\n\n")
    summary = summarize_mission(mission)
    parts.append(f"{summary}\n\n" if summary else "*No mission statement*\n\n")

    parts.append("## Active Goals\n\n")
    active = goals.active()
    if not active:
        parts.append("*No active goals*\n\n")
    for i, goal in enumerate(active, start=1):
        parts.append(f"{i}. **[{goal.priority}] {goal.title}**\n")
        if goal.description:
            parts.append(f"   {goal.description}\n")
        if goal.latest_progress is not None:
            parts.append(f"   *Latest: {goal.latest_progress}*\n")
        parts.append("\n")

    parts.append("## Your Knowledge\n\n")

    recent = kb.observations[-RECENT_OBSERVATION_LIMIT:]
    if recent:
        parts.append("### Recent Observations\n\n")
        for obs in recent:
            parts.append(f"- [Cycle {obs.cycle}] {obs.content}\n")
        parts.append("\n")

    if kb.lessons:
        parts.append("### Lessons Learned\n\n")
        for lesson in kb.lessons:
            confidence = f" [{lesson.confidence} confidence]" if lesson.confidence else ""
            parts.append(f"- {lesson.content}{confidence}\n")
        parts.append("\n")

    testing = [h for h in kb.hypotheses if h.status == "testing"]
    if testing:
        parts.append("### Hypotheses Being Tested\n\n")
        for hyp in testing:
            parts.append(f"- {hyp.content}\n")
        parts.append("\n")

    if kb.strategies:
        parts.append("### Strategies\n\n")
        for strat in kb.strategies:
            effectiveness = f" - {strat.effectiveness}" if strat.effectiveness else ""
            parts.append(f"- **{strat.name}**: {strat.description}{effectiveness}\n")
        parts.append("\n")

    parts.append("## This Cycle\n\n")
    parts.append(
        "What will you work on this cycle? Choose a goal, use tools to make "
        "progress, and update your memory.\n\n"
    )
    parts.append("Remember:\n")
    parts.append("- Check your observations before re-researching\n")
    parts.append("- Work incrementally toward goals\n")
    parts.append(f"- Record what you learn in a single {DEFAULT_MARKER} block at the end\n\n")
    parts.append("Begin your autonomous work now.\n")

    return "".join(parts)
