"""
Shared fixtures for the autocycle test suite.

Provides a temporary home directory, a store rooted there, a config that
ignores the developer's environment, and a scripted executor double so the
scheduler can be driven deterministically.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

import pytest

from autocycle.config import AutocycleConfig
from autocycle.store import KnowledgeStore

FIXED_NOW = datetime(2026, 3, 14, 9, 26, 53, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Executor double
# ---------------------------------------------------------------------------

class ScriptedExecutor:
    """Replies with queued texts in order; a queued exception fails that run."""

    def __init__(self, responses: list[Union[str, Exception]] | None = None) -> None:
        self.responses = list(responses or [])
        self.titles: list[str] = []
        self.prompts: list[str] = []
        self._texts: dict[str, str] = {}

    async def create_session(self, title: str) -> str:
        self.titles.append(title)
        return f"session-{len(self.titles)}"

    async def invoke(self, session_id: str, prompt: str):
        self.prompts.append(prompt)
        item = self.responses.pop(0) if self.responses else ""
        done = asyncio.get_running_loop().create_future()
        if isinstance(item, Exception):
            done.set_exception(item)
        else:
            self._texts[session_id] = item
            done.set_result(None)
        return done

    def final_text(self, session_id: str) -> str:
        return self._texts.pop(session_id, "")


def memory_block(*commands: str) -> str:
    """Wrap raw JSON command objects in a reply with a MEMORY_COMMANDS block."""
    return "## Did some work\n\nDetails here.\n\nMEMORY_COMMANDS:\n[" + ", ".join(commands) + "]\n"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture()
def store(home: Path) -> KnowledgeStore:
    return KnowledgeStore(home)


@pytest.fixture()
def config(home: Path) -> AutocycleConfig:
    return AutocycleConfig.for_home(home)
