"""
Heartbeat — the cycle scheduler.

On a fixed interval the heartbeat loads persisted state, renders the next
prompt, hands it to the executor, applies whatever memory commands come back,
persists, and writes an activity-log entry. Then it waits for the next tick
or a shutdown request, whichever comes first.

Each cycle is a complete act: LOAD → ASSEMBLE → DELEGATE → MUTATE → PERSIST
→ LOG. Exactly one delegation is ever in flight because the loop never starts
a cycle before the previous one has returned. A failed cycle is logged and
forgotten; the next tick fires at the normal interval with no backoff.

State machine::

    IDLE → RUNNING → WAITING → RUNNING → … → STOPPED

STOPPED is terminal. Shutdown is cooperative: it interrupts the wait between
ticks immediately but never cancels an in-flight executor run.
"""

from __future__ import annotations

import asyncio
import re
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from autocycle.commands import CommandExtractor, MarkerExtractor, apply_commands
from autocycle.config import AutocycleConfig
from autocycle.executor import Executor
from autocycle.lock import LockStatus, SingleInstanceLock
from autocycle.prompt import build_user_prompt
from autocycle.store import KnowledgeStore, StoreError

logger = structlog.get_logger(__name__)

SUMMARY_MAX_CHARS = 150
_SUMMARY_PREFIX_RE = re.compile(r"^[#\s*-]+")


class SchedulerState(str, Enum):
    """Lifecycle states of the heartbeat."""

    IDLE = "idle"
    RUNNING = "running"  # a cycle is executing
    WAITING = "waiting"  # between ticks
    STOPPED = "stopped"


@dataclass
class CycleRecord:
    """What happened during one cycle. Logged, never reloaded."""

    cycle_number: int
    started_at: float
    ended_at: float = 0.0
    summary: str = ""
    commands_applied: int = 0
    commands_skipped: int = 0
    backup_path: Optional[Path] = None
    success: bool = False
    error: Optional[str] = None

    @property
    def duration(self) -> float:
        return max(0.0, self.ended_at - self.started_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_number": self.cycle_number,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(self.duration, 2),
            "summary": self.summary,
            "commands_applied": self.commands_applied,
            "commands_skipped": self.commands_skipped,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "success": self.success,
            "error": self.error,
        }


def extract_summary(response: str) -> str:
    """First non-blank line with markdown decoration stripped, clipped to 150 chars."""
    for line in response.splitlines():
        trimmed = _SUMMARY_PREFIX_RE.sub("", line).strip()
        if trimmed:
            return _clip(trimmed)
    return _clip(response.strip())


def next_tick(previous: float, now: float, interval: float) -> float:
    """
    First tick on the ``previous + k * interval`` grid that lies after *now*.

    Ticks are anchored to the start time, so cycle duration does not push the
    schedule back. Ticks that fell inside a long-running cycle are dropped.
    """
    if now < previous:
        return previous
    missed = int((now - previous) // interval)
    return previous + (missed + 1) * interval


def _clip(text: str) -> str:
    if len(text) > SUMMARY_MAX_CHARS:
        return text[: SUMMARY_MAX_CHARS - 3] + "..."
    return text


class Heartbeat:
    """
    The autonomous cycle loop.

    Collaborators are injected so the loop can run against a scripted executor
    and a temporary home directory. ``clock`` returns the timestamp rendered
    into each prompt.
    """

    def __init__(
        self,
        config: AutocycleConfig,
        executor: Executor,
        *,
        store: Optional[KnowledgeStore] = None,
        lock: Optional[SingleInstanceLock] = None,
        extractor: Optional[CommandExtractor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config.heartbeat
        self._interval = self._config.interval
        self._executor = executor
        self._store = store or KnowledgeStore(config.home_dir, config.store.max_backups)
        self._lock = lock or SingleInstanceLock(config.pid_file)
        self._extractor = extractor or MarkerExtractor()
        self._clock = clock or (lambda: datetime.now().astimezone())

        self._state = SchedulerState.IDLE
        self._shutdown_event = asyncio.Event()
        self._cycle_number = 0
        self._last_cycle: Optional[CycleRecord] = None
        self._last_error: Optional[str] = None

    # -------------------------------------------------------------------------
    # Public accessors
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def cycle_number(self) -> int:
        """Number of the last completed cycle."""
        return self._cycle_number

    @property
    def store(self) -> KnowledgeStore:
        return self._store

    @property
    def status(self) -> dict[str, Any]:
        lock_status = self._lock.status()
        return {
            "state": self._state.value,
            "running": self._state in (SchedulerState.RUNNING, SchedulerState.WAITING),
            "cycle_number": self._cycle_number,
            "interval": self._interval,
            "owner_pid": lock_status.pid,
            "last_error": self._last_error,
            "last_cycle": self._last_cycle.to_dict() if self._last_cycle else None,
        }

    def get_status(self) -> LockStatus:
        """Whether any live process (this one or another) holds the marker."""
        return self._lock.status()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Run until stopped.

        Raises AlreadyRunning (before any cycle) when another live process
        holds the lock, and RuntimeError when this heartbeat already stopped.
        """
        if self._state is SchedulerState.STOPPED:
            raise RuntimeError("heartbeat is stopped; create a new one to restart")
        if self._state is not SchedulerState.IDLE:
            logger.warning("heartbeat.already_running")
            return

        self._lock.acquire()
        try:
            self._store.ensure_home()
            self._cycle_number = self._persisted_cycle_count()
            self._append_log(
                f"**Cycle {self._cycle_number} - Heartbeat Started**\n\n"
                f"Heartbeat service activated. Interval: {self._interval:g}s\n"
            )
            logger.info(
                "heartbeat.started",
                interval=self._interval,
                cycle_number=self._cycle_number,
                pid=self._lock.pid,
            )
            await self._live()
        finally:
            self._state = SchedulerState.STOPPED
            self._append_log(
                f"**Cycle {self._cycle_number} - Heartbeat Stopped**\n\n"
                "Heartbeat service deactivated.\n"
            )
            self._lock.release()
            logger.info("heartbeat.stopped", cycle_number=self._cycle_number)

    def stop(self) -> None:
        """Request a graceful stop. An in-flight cycle finishes first."""
        logger.info("heartbeat.stop_requested", state=self._state.value)
        if self._state is SchedulerState.IDLE:
            self._state = SchedulerState.STOPPED
        self._shutdown_event.set()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                pass

    # -------------------------------------------------------------------------
    # The loop
    # -------------------------------------------------------------------------

    async def _live(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._interval
        while not self._shutdown_event.is_set():
            self._state = SchedulerState.WAITING
            logger.debug("heartbeat.waiting", interval=self._interval)
            if await self._wait_for_tick(max(0.0, deadline - loop.time())):
                break
            self._state = SchedulerState.RUNNING
            await self.run_cycle()
            deadline = next_tick(deadline, loop.time(), self._interval)

    async def _wait_for_tick(self, timeout: float) -> bool:
        """Sleep until the next tick. Returns True if shutdown was signalled instead."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_cycle(self) -> CycleRecord:
        """Execute one cycle. Never raises for cycle-level failures."""
        record = CycleRecord(cycle_number=self._cycle_number + 1, started_at=time.time())
        logger.info("heartbeat.cycle_start", cycle=record.cycle_number)

        try:
            await self._execute_cycle(record)
            record.success = True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            record.error = str(e) or type(e).__name__
            logger.error(
                "heartbeat.cycle_failed",
                cycle=record.cycle_number,
                error=record.error,
                exc_info=True,
            )

        record.ended_at = time.time()
        self._last_cycle = record
        self._last_error = record.error
        self._append_log(self._format_log_entry(record))

        if record.success:
            logger.info(
                "heartbeat.cycle_complete",
                cycle=record.cycle_number,
                commands_applied=record.commands_applied,
                commands_skipped=record.commands_skipped,
                elapsed_seconds=round(record.duration, 2),
            )
        return record

    async def _execute_cycle(self, record: CycleRecord) -> None:
        # 1. LOAD
        kb = self._store.load_knowledge()
        goals = self._store.load_goals()
        mission = self._store.load_mission()

        cycle = kb.metadata.total_cycles + 1
        record.cycle_number = cycle
        logger.info(
            "heartbeat.state_loaded",
            cycle=cycle,
            observations=len(kb.observations),
            lessons=len(kb.lessons),
            active_goals=len(goals.active()),
        )

        # 2. ASSEMBLE
        prompt = build_user_prompt(kb, goals, mission, cycle, self._clock())

        # 3. DELEGATE: block until the executor signals completion
        session_id = await self._executor.create_session(
            f"{self._config.session_title_prefix} {cycle}"
        )
        done = await self._executor.invoke(session_id, prompt)
        await done
        response = self._executor.final_text(session_id)
        record.summary = extract_summary(response)
        logger.info("heartbeat.executor_complete", cycle=cycle, response_chars=len(response))

        # 4. EXTRACT
        extraction = self._extractor.extract(response)
        record.commands_skipped = len(extraction.skipped)

        # 5. BACKUP, only when something will change
        if extraction.commands:
            record.backup_path = self._store.backup_knowledge(f"cycle_{cycle}", current=kb)

        # 6. MUTATE + PERSIST
        report = apply_commands(kb, extraction.commands, cycle)
        record.commands_applied = len(report.applied)
        record.commands_skipped += len(report.skipped)
        kb.metadata.total_cycles = cycle
        self._store.save_knowledge(kb)
        self._cycle_number = cycle

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _persisted_cycle_count(self) -> int:
        try:
            return self._store.load_knowledge().metadata.total_cycles
        except StoreError as e:
            logger.error("heartbeat.initial_load_failed", error=str(e))
            return 0

    def _append_log(self, entry: str) -> None:
        try:
            self._store.append_log(entry)
        except OSError as e:
            logger.warning("heartbeat.log_append_failed", error=str(e))

    @staticmethod
    def _format_log_entry(record: CycleRecord) -> str:
        if record.success:
            status = "Success"
        else:
            status = f"Failed ({record.error})"
        updates = f"{record.commands_applied} commands"
        if record.commands_skipped:
            updates += f" ({record.commands_skipped} skipped)"
        return (
            f"**Cycle {record.cycle_number}**\n\n"
            f"Summary: {record.summary or '-'}\n"
            f"Memory Updates: {updates}\n"
            f"Duration: {record.duration:.1f}s\n"
            f"Status: {status}\n"
        )
