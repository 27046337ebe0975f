"""
Executor — the external reasoning backend, seen only through a narrow contract.

The scheduler never talks to a model directly. It asks an ``Executor`` for a
fresh session, hands it a prompt, awaits the one-shot completion signal the
executor returns, then reads the session's final text. Anything satisfying
that contract works: the Anthropic-backed ``ClaudeExecutor`` below, a
scripted stub, or a deterministic test double.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Awaitable, Protocol

import anthropic
import structlog

from autocycle.config import ClaudeConfig
from autocycle.retry import RetryConfig, with_retries

logger = structlog.get_logger(__name__)


class ExecutorError(RuntimeError):
    """The executor could not open a session or complete a run."""


class Executor(Protocol):
    async def create_session(self, title: str) -> str:
        """Open an isolated session and return its identity."""
        ...

    async def invoke(self, session_id: str, prompt: str) -> Awaitable[None]:
        """Start work on *prompt*; the returned awaitable resolves when it is done."""
        ...

    def final_text(self, session_id: str) -> str:
        """The session's final text output. Consumed on read."""
        ...


class ClaudeExecutor:
    """
    Runs each cycle prompt through the Anthropic Messages API.

    Every session gets its own response buffer so a late read never returns
    another cycle's text. Transient API failures are retried with backoff;
    anything else fails the run and surfaces as ``ExecutorError``.
    """

    def __init__(self, config: ClaudeConfig, system_prompt: str) -> None:
        self._client = anthropic.AsyncAnthropic(api_key=config.api_key)
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._request_timeout_seconds = float(config.request_timeout_seconds)
        self._retry_config = RetryConfig(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            exponential_base=config.retry_exponential_base,
            jitter_range=config.retry_jitter_range,
        )
        self._system_prompt = system_prompt
        self._sessions: dict[str, str] = {}
        self._responses: dict[str, str] = {}

        # Telemetry
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._total_calls = 0

        logger.info("executor.initialized", model=self._model)

    async def create_session(self, title: str) -> str:
        session_id = uuid.uuid4().hex[:12]
        self._sessions[session_id] = title
        logger.debug("executor.session_created", session_id=session_id, title=title)
        return session_id

    async def invoke(self, session_id: str, prompt: str) -> Awaitable[None]:
        if session_id not in self._sessions:
            raise ExecutorError(f"Unknown session: {session_id}")
        return asyncio.create_task(
            self._run(session_id, prompt),
            name=f"executor-{session_id}",
        )

    def final_text(self, session_id: str) -> str:
        self._sessions.pop(session_id, None)
        return self._responses.pop(session_id, "")

    async def _run(self, session_id: str, prompt: str) -> None:
        start_time = time.monotonic()

        async def _create() -> anthropic.types.Message:
            return await asyncio.wait_for(
                self._client.messages.create(
                    model=self._model,
                    max_tokens=self._max_tokens,
                    system=self._system_prompt,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=self._request_timeout_seconds,
            )

        try:
            response = await with_retries(_create, config=self._retry_config)
        except (anthropic.APIError, asyncio.TimeoutError, ConnectionError) as e:
            logger.error("executor.run_failed", session_id=session_id, error=str(e))
            raise ExecutorError(f"Executor run failed: {e}") from e
        finally:
            # A session serves one run; failed runs never reach final_text.
            self._sessions.pop(session_id, None)

        self._responses[session_id] = self.extract_text(response)
        self._total_calls += 1
        self._total_input_tokens += response.usage.input_tokens
        self._total_output_tokens += response.usage.output_tokens

        logger.info(
            "executor.run_complete",
            session_id=session_id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            elapsed_seconds=round(time.monotonic() - start_time, 2),
            stop_reason=response.stop_reason,
        )

    @staticmethod
    def extract_text(response: anthropic.types.Message) -> str:
        """Concatenate text blocks, ignoring tool use and thinking blocks."""
        return "\n".join(block.text for block in response.content if block.type == "text")

    @property
    def telemetry(self) -> dict[str, int]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
        }
