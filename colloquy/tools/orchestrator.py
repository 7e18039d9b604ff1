"""Approval and execution of the tool calls a model message proposes.

Per call: identify (stable id), gate (autopilot or confirmation dialog),
execute approved calls (inline or as a background job), then assemble a
``tool`` message with the results and a ``user`` feedback message that
closes every proposed call, executed or not.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import threading
import traceback
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from colloquy.context.message import Message, Role
from colloquy.context.parts import BlobPart, Part, TextPart, ToolCallPart, ToolResultPart
from colloquy.tools.base import (
    AttachmentResponse,
    ContextBehavior,
    FeedbackResult,
    JobInfo,
    JobStatus,
    ToolBlockedError,
    ToolContext,
)
from colloquy.tools.failures import FailureTracker
from colloquy.tools.prompter import (
    ApprovalPreferences,
    ConfirmationPrompter,
    Decision,
    PromptResult,
    describe_decisions,
)
from colloquy.tools.registry import ToolRegistry
from colloquy.workers import BackgroundWorkers

if TYPE_CHECKING:
    from colloquy.context.store import ContextStore
    from colloquy.status import StatusManager

logger = logging.getLogger(__name__)


class CallStatus(str, Enum):
    ALWAYS = "ALWAYS"
    YES = "YES"
    NO = "NO"
    NEVER = "NEVER"
    CANCELLED = "CANCELLED"
    DISABLED = "DISABLED"
    ERROR = "ERROR"
    KILLED = "KILLED"

    @property
    def approved(self) -> bool:
        return self in (CallStatus.ALWAYS, CallStatus.YES)


@dataclass
class IdentifiedCall:
    part: ToolCallPart
    call_id: str
    sequence_id: int

    @property
    def name(self) -> str:
        return self.part.name

    @property
    def args(self) -> Dict[str, Any]:
        return self.part.args


@dataclass
class ToolCallOutcome:
    call: IdentifiedCall
    status: CallStatus
    feedback: Optional[str] = None

    def feedback_line(self) -> str:
        line = f"[{self.call.name} id={self.call.call_id}] {self.status.value}"
        if self.feedback:
            line += f": {self.feedback}"
        return line


@dataclass
class ExecutedCall:
    call: IdentifiedCall
    result: ToolResultPart
    attachments: List[BlobPart] = field(default_factory=list)
    error: Optional[BaseException] = None


@dataclass
class OrchestrationResult:
    outcomes: List[ToolCallOutcome] = field(default_factory=list)
    executed: List[ExecutedCall] = field(default_factory=list)
    comment: str = ""
    dialog_shown: bool = False

    @property
    def killed(self) -> bool:
        return any(o.status == CallStatus.KILLED for o in self.outcomes)

    @property
    def should_continue(self) -> bool:
        """Loop again only if something ran and nothing was killed."""
        return bool(self.executed) and not self.killed

    def outcome_for(self, call_id: str) -> Optional[ToolCallOutcome]:
        for outcome in self.outcomes:
            if outcome.call.call_id == call_id:
                return outcome
        return None


_DECISION_STATUS = {
    Decision.YES: CallStatus.YES,
    Decision.NO: CallStatus.NO,
    Decision.ALWAYS: CallStatus.ALWAYS,
    Decision.NEVER: CallStatus.NEVER,
}


def to_jsonable(value: Any) -> Any:
    """Best-effort conversion of tool return values into JSON-friendly data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(dataclasses.asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


def _format_error(error: BaseException) -> str:
    return "".join(traceback.format_exception_only(type(error), error)).strip()


class ToolOrchestrator:
    """Runs the identify/gate/execute/assemble pipeline for one model message."""

    def __init__(
        self,
        registry: ToolRegistry,
        prompter: ConfirmationPrompter,
        *,
        preferences: Optional[ApprovalPreferences] = None,
        failures: Optional[FailureTracker] = None,
        workers: Optional[BackgroundWorkers] = None,
        status: Optional["StatusManager"] = None,
        on_job_complete: Optional[Callable[[JobInfo], None]] = None,
        enabled: bool = True,
    ):
        self.registry = registry
        self.prompter = prompter
        self.preferences = preferences or ApprovalPreferences()
        self.failures = failures or FailureTracker()
        self.workers = workers or BackgroundWorkers()
        self.status = status
        self.on_job_complete = on_job_complete
        self.enabled = enabled
        self.jobs: Dict[str, Future] = {}
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()
        self._kill = threading.Event()

    # -- identify ---------------------------------------------------------

    def next_call_id(self) -> str:
        with self._id_lock:
            return str(next(self._ids))

    def reset_call_ids(self, start: int) -> None:
        with self._id_lock:
            self._ids = itertools.count(start)

    def assign_ids(self, parts: Iterable[Part]) -> None:
        """Give every tool call without a model-supplied id a counter id."""
        for part in parts:
            if isinstance(part, ToolCallPart) and not part.id:
                part.id = self.next_call_id()

    def identify(self, message: Message) -> List[IdentifiedCall]:
        self.assign_ids(message.parts)
        return [
            IdentifiedCall(part=part, call_id=part.id, sequence_id=message.sequence_id)
            for part in message.parts
            if isinstance(part, ToolCallPart)
        ]

    # -- gate -------------------------------------------------------------

    def _always_approved(self, call: IdentifiedCall) -> bool:
        if not self.registry.requires_approval(call.name) and call.name in self.registry:
            return True
        return self.preferences.get(call.name) == Decision.ALWAYS

    def gate(self, calls: List[IdentifiedCall], ctx: ToolContext) -> Tuple[Dict[str, CallStatus], str, bool]:
        """Statuses per call id, the user's comment, and whether a dialog was shown."""
        if not self.enabled:
            return {c.call_id: CallStatus.DISABLED for c in calls}, "", False

        if all(self._always_approved(c) for c in calls):
            return {c.call_id: CallStatus.ALWAYS for c in calls}, "", False

        try:
            answer = self.prompter.prompt(calls, ctx)
        except Exception:
            logger.exception("Confirmation prompt failed; treating the batch as cancelled")
            answer = PromptResult(cancelled=True)

        if answer.cancelled:
            return {c.call_id: CallStatus.CANCELLED for c in calls}, answer.comment, True

        logger.debug(f"Confirmation decisions: {describe_decisions(answer)}")
        statuses: Dict[str, CallStatus] = {}
        for call in calls:
            decision = answer.decisions.get(call.call_id)
            if decision is None:
                decision = Decision.ALWAYS if self._always_approved(call) else Decision.NO
            self.preferences.set(call.name, decision)
            statuses[call.call_id] = _DECISION_STATUS[decision]
        return statuses, answer.comment, True

    # -- execute ----------------------------------------------------------

    def kill(self) -> None:
        """Stop executing the remaining approved calls of the current batch."""
        self._kill.set()

    def run(self, message: Message, ctx: ToolContext) -> OrchestrationResult:
        calls = self.identify(message)
        result = OrchestrationResult()
        if not calls:
            return result

        self._kill.clear()
        statuses, result.comment, result.dialog_shown = self.gate(calls, ctx)

        for call in calls:
            status = statuses[call.call_id]
            if not status.approved:
                feedback = "tool execution is disabled" if status == CallStatus.DISABLED else None
                result.outcomes.append(ToolCallOutcome(call, status, feedback))
                continue
            if self._kill.is_set():
                result.outcomes.append(ToolCallOutcome(call, CallStatus.KILLED, "stopped by user"))
                continue

            executed, feedback = self._execute(call, ctx)
            result.executed.append(executed)
            if executed.error is not None:
                result.outcomes.append(ToolCallOutcome(call, CallStatus.ERROR, feedback))
            else:
                result.outcomes.append(ToolCallOutcome(call, status, feedback))
        return result

    def _execute(self, call: IdentifiedCall, ctx: ToolContext) -> Tuple[ExecutedCall, Optional[str]]:
        args = dict(call.args)
        asynchronous = bool(args.pop("asynchronous", False))
        name = call.name
        attachments: List[BlobPart] = []
        feedback: Optional[str] = None
        error: Optional[BaseException] = None

        if self.status is not None:
            self.status.set_executing_tool(name)
        try:
            if self.failures.is_blocked(name, args):
                raise ToolBlockedError(
                    f"{name} failed {self.failures.max_failures} times with these arguments "
                    f"in the last {int(self.failures.window_seconds)}s; not retrying. "
                    f"Last error: {self.failures.last_error(name, args)}"
                )
            if asynchronous:
                raw = self._start_job(name, args, ctx)
            else:
                raw = self.registry.invoke(name, args, ctx)
            payload, attachments, feedback = self._convert(name, raw)
        except ToolBlockedError as e:
            error = e
            payload = {"error": _format_error(e)}
            feedback = "blocked after repeated failures"
            logger.warning(str(e))
        except Exception as e:
            error = e
            payload = {"error": _format_error(e)}
            feedback = f"failed: {e}"
            self.failures.record_failure(name, args, e)
            logger.warning(f"Tool {name} (id={call.call_id}) failed: {e}")
        finally:
            if self.status is not None:
                self.status.set_executing_tool(None)

        result = ToolResultPart(name=name, payload=payload, id=call.call_id)
        return ExecutedCall(call=call, result=result, attachments=attachments, error=error), feedback

    def _convert(self, name: str, raw: Any) -> Tuple[Dict[str, Any], List[BlobPart], Optional[str]]:
        feedback = None
        if isinstance(raw, FeedbackResult):
            feedback = raw.user_feedback
            raw = raw.output

        if isinstance(raw, AttachmentResponse):
            blobs = []
            for path in raw.file_paths:
                try:
                    blobs.append(BlobPart.from_file(Path(path)))
                except OSError as e:
                    logger.warning(f"Could not attach {path}: {e}")
            output = {"attached": [b.source for b in blobs]}
            if raw.message:
                output["message"] = raw.message
            return {"output": output}, blobs, feedback

        if self.registry.behavior_of(name) == ContextBehavior.STATEFUL_REPLACE and isinstance(raw, BaseModel):
            return raw.model_dump(mode="json"), [], feedback

        return {"output": to_jsonable(raw)}, [], feedback

    def _start_job(self, name: str, args: Dict[str, Any], ctx: ToolContext) -> JobInfo:
        job = JobInfo(
            job_id=uuid.uuid4().hex,
            tool_name=name,
            status=JobStatus.STARTED,
            description=f"Started background job for {name}",
        )
        self.jobs[job.job_id] = self.workers.submit(self._run_job, job, args, ctx)
        logger.info(f"Started background job {job.job_id} for {name}")
        return job

    def _run_job(self, job: JobInfo, args: Dict[str, Any], ctx: ToolContext) -> JobInfo:
        try:
            raw = self.registry.invoke(job.tool_name, args, ctx)
            done = dataclasses.replace(
                job,
                status=JobStatus.COMPLETED,
                description=f"Background job for {job.tool_name} completed",
                result=to_jsonable(raw),
            )
        except Exception as e:
            self.failures.record_failure(job.tool_name, args, e)
            done = dataclasses.replace(
                job,
                status=JobStatus.FAILED,
                description=f"Background job for {job.tool_name} failed",
                result=_format_error(e),
            )
        if self.on_job_complete is not None:
            self.on_job_complete(done)
        return done

    # -- assemble ---------------------------------------------------------

    @staticmethod
    def feedback_text(result: OrchestrationResult) -> str:
        lines = []
        if result.dialog_shown and result.comment:
            lines.append(f"Tool confirmation popup comment: '{result.comment}'")
        lines.append("Tool Feedback:")
        lines.extend(o.feedback_line() for o in result.outcomes)
        if not result.dialog_shown and result.outcomes and all(
            o.status in (CallStatus.ALWAYS, CallStatus.ERROR) for o in result.outcomes
        ):
            lines.append("(All calls were pre-approved; the user was not prompted.)")
        elif result.dialog_shown and not result.comment:
            lines.append("(The user did not leave a comment.)")
        return "\n".join(lines)

    def assemble(
        self,
        model_message: Message,
        result: OrchestrationResult,
        store: "ContextStore",
    ) -> List[Message]:
        """Tool-result message (if anything ran) followed by the feedback message."""
        messages: List[Message] = []
        if result.executed:
            tool_message = Message(
                sequence_id=store.next_sequence_id(),
                role=Role.TOOL,
                parts=[e.result for e in result.executed],
            )
            for executed in result.executed:
                if store.link_dependency(model_message.sequence_id, executed.call.part, executed.result):
                    tool_message.link_dependency(executed.result, executed.call.part)
                for blob in executed.attachments:
                    tool_message.link_dependency(executed.result, blob)
            messages.append(tool_message)

        attachments = [blob for e in result.executed for blob in e.attachments]
        feedback_message = Message(
            sequence_id=store.next_sequence_id(),
            role=Role.USER,
            parts=[TextPart(text=self.feedback_text(result)), *attachments],
            tool_feedback=True,
        )
        for executed in result.executed:
            for blob in executed.attachments:
                feedback_message.link_dependency(blob, executed.result)
        messages.append(feedback_message)
        return messages
