"""
Knowledge Store — durable state under the autocycle home directory.

Layout (relative to the home root)::

    context.json          knowledge base, rewritten every cycle
    active-goals.json     goal set
    mission.md            mission statement (read-only here)
    mission-log.md        append-only activity log
    backups/              context_<YYYYMMDD_HHMMSS>_<reason>.json snapshots

State files are written atomically (tempfile in the same directory, then
``os.replace``) so an interrupted save never leaves a half-written file.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, ValidationError

from autocycle.knowledge import GoalSet, KnowledgeBase, utcnow

logger = structlog.get_logger(__name__)

CONTEXT_FILE = "context.json"
GOALS_FILE = "active-goals.json"
MISSION_FILE = "mission.md"
LOG_FILE = "mission-log.md"
BACKUP_DIR = "backups"

_REASON_SAFE_RE = re.compile(r"[^A-Za-z0-9_-]+")


class StoreError(Exception):
    """Base class for persisted-state failures."""


class StateLoadError(StoreError):
    """A state file exists but cannot be read or parsed."""


class StateSaveError(StoreError):
    """A state file could not be written."""


class BackupError(StoreError):
    """A pre-mutation snapshot could not be written."""


class KnowledgeStore:
    """Loads and saves the knowledge base, goals and mission; keeps the log and backups."""

    def __init__(self, home_dir: Path, max_backups: int = 0) -> None:
        self.home_dir = Path(home_dir)
        # 0 => unlimited
        self.max_backups = max(0, int(max_backups))

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def context_path(self) -> Path:
        return self.home_dir / CONTEXT_FILE

    @property
    def goals_path(self) -> Path:
        return self.home_dir / GOALS_FILE

    @property
    def mission_path(self) -> Path:
        return self.home_dir / MISSION_FILE

    @property
    def log_path(self) -> Path:
        return self.home_dir / LOG_FILE

    @property
    def backup_dir(self) -> Path:
        return self.home_dir / BACKUP_DIR

    def ensure_home(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Knowledge base
    # ------------------------------------------------------------------

    def load_knowledge(self) -> KnowledgeBase:
        """Load the knowledge base; a missing file yields an empty one."""
        raw = self._read_text(self.context_path)
        if raw is None:
            return KnowledgeBase.empty()
        return self._parse(KnowledgeBase, raw, self.context_path)

    def save_knowledge(self, kb: KnowledgeBase) -> None:
        kb.metadata.updated_at = utcnow()
        self._write_model(self.context_path, kb)
        logger.debug(
            "store.knowledge_saved",
            total_cycles=kb.metadata.total_cycles,
            observations=len(kb.observations),
        )

    def backup_knowledge(
        self,
        reason: str,
        current: Optional[KnowledgeBase] = None,
    ) -> Optional[Path]:
        """
        Copy the current knowledge file into backups/ before it is mutated.

        When nothing has been saved yet, *current* (the in-memory, pre-mutation
        copy) is snapshotted instead; without it None is returned.
        Raises BackupError if the snapshot cannot be written; callers must not
        go on to overwrite the original in that case.
        """
        on_disk = self.context_path.exists()
        if not on_disk and current is None:
            logger.debug("store.backup_skipped_no_context")
            return None

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        tag = _REASON_SAFE_RE.sub("_", reason).strip("_") or "manual"
        target = self.backup_dir / f"context_{timestamp}_{tag}.json"
        suffix = 1
        while target.exists():
            target = self.backup_dir / f"context_{timestamp}_{tag}_{suffix}.json"
            suffix += 1

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            if on_disk:
                data = self.context_path.read_bytes()
            else:
                data = self._serialize(current).encode("utf-8")
            self._atomic_write(target, data)
        except OSError as e:
            raise BackupError(f"Failed to write backup {target.name}: {e}") from e

        logger.info("store.backup_created", path=str(target), reason=tag)
        if self.max_backups:
            self._prune_backups()
        return target

    def list_backups(self) -> list[Path]:
        """Backup files, newest first."""
        if not self.backup_dir.exists():
            return []
        return sorted(
            self.backup_dir.glob("context_*.json"),
            key=lambda p: (p.stat().st_mtime, p.name),
            reverse=True,
        )

    # ------------------------------------------------------------------
    # Goals and mission
    # ------------------------------------------------------------------

    def load_goals(self) -> GoalSet:
        raw = self._read_text(self.goals_path)
        if raw is None:
            return GoalSet()
        return self._parse(GoalSet, raw, self.goals_path)

    def save_goals(self, goals: GoalSet) -> None:
        goals.metadata.updated_at = utcnow()
        self._write_model(self.goals_path, goals)

    def load_mission(self) -> str:
        """Mission text, or an empty string when none has been written."""
        return self._read_text(self.mission_path) or ""

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def append_log(self, entry: str) -> None:
        """Append a timestamped section to the activity log. Existing text is never rewritten."""
        timestamp = datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
        self.home_dir.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(f"\n### {timestamp}\n{entry}\n")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read_text(path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise StateLoadError(f"Failed to read {path.name}: {e}") from e

    @staticmethod
    def _parse(model: type[BaseModel], raw: str, path: Path):
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StateLoadError(f"Failed to parse {path.name}: {e}") from e

    @staticmethod
    def _serialize(model: BaseModel) -> str:
        return json.dumps(model.model_dump(mode="json"), ensure_ascii=False, indent=2)

    def _write_model(self, path: Path, model: BaseModel) -> None:
        try:
            self._atomic_write(path, self._serialize(model).encode("utf-8"))
        except OSError as e:
            raise StateSaveError(f"Failed to write {path.name}: {e}") from e

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        """Write to a temp file beside *path*, fsync, then rename over it."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=f".{path.stem}_")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _prune_backups(self) -> None:
        """Delete the oldest backups beyond max_backups."""
        for old in self.list_backups()[self.max_backups:]:
            try:
                old.unlink()
                logger.debug("store.backup_pruned", path=str(old))
            except OSError as e:
                logger.warning("store.backup_prune_failed", path=str(old), error=str(e))


