"""
Knowledge — the persisted records the agent builds up across cycles.

Two documents are kept on disk: the knowledge base (observations, lessons,
hypotheses, strategies and cycle metadata) and the goal set. Both are plain
Pydantic models serialised as indented JSON by ``autocycle.store``. Unknown
keys are ignored on load so older or hand-edited files keep loading.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

KNOWLEDGE_FORMAT_VERSION = "1.0"

Confidence = Literal["high", "medium", "low", ""]
HypothesisStatus = Literal["testing", "validated", "rejected"]
Effectiveness = Literal["works", "partial", "failed", ""]
Priority = Literal["HIGH", "MEDIUM", "LOW"]
GoalStatus = Literal["active", "completed", "paused"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Observation(_Record):
    """Something the agent noticed."""

    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    cycle: int = 0


class Lesson(_Record):
    """A codified pattern or rule."""

    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    cycle: int = 0
    confidence: Confidence = ""


class Hypothesis(_Record):
    """A theory under test."""

    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    cycle: int = 0
    status: HypothesisStatus = "testing"
    evidence: list[str] = Field(default_factory=list)


class Strategy(_Record):
    """An approach the agent uses to accomplish goals."""

    name: str
    description: str
    timestamp: datetime = Field(default_factory=utcnow)
    cycle: int = 0
    effectiveness: Effectiveness = ""


class KnowledgeMetadata(_Record):
    version: str = KNOWLEDGE_FORMAT_VERSION
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    total_cycles: int = 0


class KnowledgeBase(_Record):
    """The agent's self-managed memory."""

    observations: list[Observation] = Field(default_factory=list)
    lessons: list[Lesson] = Field(default_factory=list)
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    strategies: list[Strategy] = Field(default_factory=list)
    metadata: KnowledgeMetadata = Field(default_factory=KnowledgeMetadata)

    @classmethod
    def empty(cls, now: Optional[datetime] = None) -> "KnowledgeBase":
        now = now or utcnow()
        return cls(metadata=KnowledgeMetadata(created_at=now, updated_at=now))

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_cycles": self.metadata.total_cycles,
            "observations": len(self.observations),
            "lessons": len(self.lessons),
            "hypotheses": len(self.hypotheses),
            "strategies": len(self.strategies),
        }


class Goal(_Record):
    id: int
    title: str
    description: str = ""
    priority: Priority = "MEDIUM"
    status: GoalStatus = "active"
    created_at: datetime = Field(default_factory=utcnow)
    progress: list[str] = Field(default_factory=list)

    @property
    def latest_progress(self) -> Optional[str]:
        return self.progress[-1] if self.progress else None


class GoalsMetadata(_Record):
    next_id: int = 1
    updated_at: datetime = Field(default_factory=utcnow)


class GoalSet(_Record):
    """Goals the agent works toward. Created and edited outside the engine."""

    goals: list[Goal] = Field(default_factory=list)
    metadata: GoalsMetadata = Field(default_factory=GoalsMetadata)

    @model_validator(mode="after")
    def repair_next_id(self) -> "GoalSet":
        # ids are never reused: next_id must stay above every id ever handed out
        highest = max((g.id for g in self.goals), default=0)
        if self.metadata.next_id <= highest:
            self.metadata.next_id = highest + 1
        return self

    def active(self) -> list[Goal]:
        return [g for g in self.goals if g.status == "active"]
