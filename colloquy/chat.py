"""The turn loop: one user message driven to completion.

``Chat.send_text`` appends the user message and calls the model until
it stops proposing tool calls, the user denies or cancels every call,
or the model call fails for good.  Tool and provider failures never
escape the loop; only model-call exhaustion ends a turn abnormally.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import httpx

from colloquy.api.retry import RetryHandler, RetryState
from colloquy.config.models import ChatConfig
from colloquy.context.message import Message, Role
from colloquy.context.parts import Part, TextPart, ToolCallPart, ToolResultPart
from colloquy.context.resources import LiveProbe, file_probe
from colloquy.context.session import LoadedSession, SessionManager
from colloquy.context.store import ContextStore
from colloquy.llm.client import GenerationConfig, LLMError, ModelClient, ModelResponse
from colloquy.providers.base import ContextPosition, ContextProvider
from colloquy.providers.builtin import default_providers
from colloquy.providers.factory import ContentFactory
from colloquy.status import ChatStatus, StatusManager, StatusSnapshot
from colloquy.tools.base import JobInfo, ToolContext
from colloquy.tools.failures import FailureTracker
from colloquy.tools.orchestrator import ToolOrchestrator, to_jsonable
from colloquy.tools.prompter import ApprovalPreferences, ConfirmationPrompter
from colloquy.tools.registry import ToolRegistry
from colloquy.workers import BackgroundWorkers

logger = logging.getLogger(__name__)

NO_RESPONSE_PLACEHOLDER = "[No response from model]"
ASYNC_JOB_RESULT = "async_job_result"

API_ERRORS = (LLMError, httpx.HTTPError, ConnectionError, TimeoutError)


def _is_usable(part: Part) -> bool:
    if isinstance(part, TextPart):
        return bool(part.text.strip()) and not part.thought
    return True


class Chat:
    """A conversation with one model, its context, and its tools."""

    def __init__(
        self,
        config: ChatConfig,
        client: ModelClient,
        registry: ToolRegistry,
        prompter: ConfirmationPrompter,
        *,
        providers: Optional[Iterable[ContextProvider]] = None,
        preferences: Optional[ApprovalPreferences] = None,
        probe: LiveProbe = file_probe,
        workers: Optional[BackgroundWorkers] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.client = client
        self.registry = registry
        self.workers = workers or BackgroundWorkers()

        self.store = ContextStore(
            registry,
            turns_to_keep=config.context.turns_to_keep,
            token_threshold=config.context.token_threshold,
            probe=probe,
        )
        self.status = StatusManager(token_ratio=self.store.token_usage_ratio)
        self.sessions = SessionManager(
            self.store,
            config.session_directory,
            config.session_id,
            workers=self.workers,
        )
        if config.session.autobackup:
            self.store.set_backup(self.sessions.trigger_autobackup)

        if providers is None:
            extra = config.system_instructions_file
            providers = default_providers(Path(extra).expanduser() if extra else None)
        self.content = ContentFactory(
            providers,
            parallel=config.providers.parallel,
            timeout=config.providers.timeout,
        )
        self.content.set_enabled(config.providers.disabled, False)

        self.ctx = ToolContext(
            store=self.store,
            cwd=config.working_directory,
            providers=self.content,
            settings={
                "max_file_size": config.tools.max_file_size,
                "shell_timeout": config.tools.shell_timeout,
            },
        )
        if preferences is None:
            prefs_file = config.tools.preferences_file
            preferences = ApprovalPreferences(Path(prefs_file).expanduser() if prefs_file else None)
        self.orchestrator = ToolOrchestrator(
            registry,
            prompter,
            preferences=preferences,
            failures=FailureTracker(
                max_failures=config.tools.max_failures,
                window_seconds=config.tools.failure_window_seconds,
            ),
            workers=self.workers,
            status=self.status,
            on_job_complete=self.notify_job_completion,
            enabled=config.tools.enabled,
        )
        self.retry = RetryHandler(config.retry, sleep=sleep)
        self._turn_lock = threading.Lock()
        self._interrupt = threading.Event()

    # -- public API -------------------------------------------------------

    @property
    def is_processing(self) -> bool:
        return self._turn_lock.locked()

    def send_text(self, text: str) -> bool:
        return self.send_parts([TextPart(text=text)])

    def send_parts(self, parts: Sequence[Part]) -> bool:
        """Append a user message and run the turn. False if busy or the model failed."""
        if not self._turn_lock.acquire(blocking=False):
            logger.warning("A turn is already in progress; ignoring new user input")
            return False
        try:
            self._interrupt.clear()
            self.store.add(
                Message(sequence_id=self.store.next_sequence_id(), role=Role.USER, parts=list(parts))
            )
            return self._process_turn()
        finally:
            if not self.status.current.is_terminal_failure:
                self.status.set_status(ChatStatus.IDLE_WAITING_FOR_USER)
            self._turn_lock.release()

    def resume(self) -> bool:
        """Retry the model call after a terminal failure, without new user input."""
        if not self._turn_lock.acquire(blocking=False):
            return False
        try:
            self._interrupt.clear()
            self.status.set_status(ChatStatus.IDLE_WAITING_FOR_USER)
            return self._process_turn()
        finally:
            if not self.status.current.is_terminal_failure:
                self.status.set_status(ChatStatus.IDLE_WAITING_FOR_USER)
            self._turn_lock.release()

    def kill(self) -> None:
        """Interrupt provider fan-out and stop executing further tool calls."""
        self._interrupt.set()
        self.orchestrator.kill()

    def status_snapshot(self) -> StatusSnapshot:
        return self.status.snapshot()

    def clear(self) -> None:
        self.store.clear()

    def save_session(self, name: str) -> Path:
        return self.sessions.save(name)

    def load_session(self, name: str) -> LoadedSession:
        loaded = self.sessions.load(name)
        self.orchestrator.reset_call_ids(loaded.next_tool_call_id)
        return loaded

    def notify_job_completion(self, job: JobInfo) -> bool:
        """Add a finished background job's result, unless a turn is running."""
        if self.is_processing:
            logger.warning(
                f"Dropped completion of background job {job.job_id} ({job.tool_name}): chat is busy"
            )
            return False
        result = ToolResultPart(name=ASYNC_JOB_RESULT, payload={"output": to_jsonable(job)})
        self.store.add(
            Message(sequence_id=self.store.next_sequence_id(), role=Role.TOOL, parts=[result])
        )
        return True

    def shutdown(self) -> None:
        self.content.shutdown()
        self.workers.shutdown(wait=True)
        close = getattr(self.client, "close", None)
        if callable(close):
            close()

    # -- turn loop --------------------------------------------------------

    def _process_turn(self) -> bool:
        while True:
            response = self._call_model()
            if response is None:
                return False

            if not any(_is_usable(p) for p in response.parts):
                self.store.add(
                    Message(
                        sequence_id=self.store.next_sequence_id(),
                        role=Role.MODEL,
                        parts=[*response.parts, TextPart(text=NO_RESPONSE_PLACEHOLDER)],
                        usage=response.usage,
                        model_id=response.model_id,
                    )
                )
                return True

            self.orchestrator.assign_ids(response.parts)
            model_message = Message(
                sequence_id=self.store.next_sequence_id(),
                role=Role.MODEL,
                parts=list(response.parts),
                usage=response.usage,
                model_id=response.model_id,
            )
            self.store.add(model_message)

            if not any(isinstance(p, ToolCallPart) for p in model_message.parts):
                return True

            self.status.set_status(ChatStatus.TOOL_EXECUTION_IN_PROGRESS)
            result = self.orchestrator.run(model_message, self.ctx)
            for message in self.orchestrator.assemble(model_message, result, self.store):
                self.store.add(message)

            if not result.should_continue:
                return True

    def build_request(self) -> Tuple[List[Message], GenerationConfig]:
        """Outbound history plus freshly produced, never persisted, provider content."""
        history = list(self.store.snapshot())
        augmented = self.content.produce(ContextPosition.AUGMENTED_WORKSPACE, self, self._interrupt)
        if augmented:
            extra = Message(sequence_id=0, role=Role.USER, parts=augmented)
            if history and history[-1].role == Role.USER:
                history.insert(len(history) - 1, extra)
            else:
                history.append(extra)

        system_parts = self.content.produce(ContextPosition.SYSTEM_INSTRUCTIONS, self, self._interrupt)
        system = "\n\n".join(p.text for p in system_parts if isinstance(p, TextPart))
        generation = GenerationConfig(
            system_instruction=system,
            tools=self.registry.get_specs() if self.config.tools.enabled else [],
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )
        return history, generation

    def _call_model(self) -> Optional[ModelResponse]:
        self.status.set_status(ChatStatus.AUGMENTING_CONTEXT)
        outbound, generation = self.build_request()

        attempts = 0

        def attempt() -> ModelResponse:
            nonlocal attempts
            attempts += 1
            self.status.set_status(ChatStatus.API_CALL_IN_PROGRESS)
            return self.client.send(outbound, generation)

        def on_retry(state: RetryState) -> None:
            self.status.record_api_error(
                model_id=self.client.model,
                api_key_suffix=self.client.api_key_suffix,
                attempt=state.attempt,
                backoff_seconds=state.next_delay,
                error=state.last_error,
                status_code=state.last_status_code,
            )
            logger.warning(
                f"Model call attempt {state.attempt} failed ({state.last_error}); "
                f"retrying in {state.next_delay:.1f}s"
            )
            self.status.set_status(ChatStatus.WAITING_WITH_BACKOFF)

        try:
            response = self.retry.execute(attempt, on_retry=on_retry)
        except API_ERRORS as e:
            self.status.record_api_error(
                model_id=self.client.model,
                api_key_suffix=self.client.api_key_suffix,
                attempt=attempts,
                backoff_seconds=0.0,
                error=e,
                status_code=RetryHandler.status_code_of(e),
            )
            if self.retry.is_retryable(e):
                self.status.set_status(ChatStatus.MAX_RETRIES_REACHED)
                logger.error(f"Model call failed after {attempts} attempts: {e}")
            else:
                self.status.set_status(ChatStatus.API_CALL_FAILED)
                logger.error(f"Model call failed: {e}")
            return None

        self.status.clear_api_errors()
        self.status.last_usage = response.usage
        return response
