"""Mode dispatch loop: call the model, decode its envelope, act, and record."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from modeagent.agent.handlers import ModeHandlers, RequestUserInput
from modeagent.agent.history import ConversationHistory
from modeagent.agent.models import (
    ActionEnvelope,
    ClarifyEnvelope,
    CreateFileEnvelope,
    HandlerResult,
    LoopOutcome,
    ModeEnvelope,
    OutputEnvelope,
    ParseFailure,
    ThinkEnvelope,
    Turn,
    UnknownEnvelope,
    VerifyEnvelope,
)
from modeagent.agent.parser import parse_envelope
from modeagent.agent.retry import CORRECTIVE_PROMPT_TEXT, RetryPolicy
from modeagent.config import DEFAULT_SYSTEM_PROMPT

LOGGER = logging.getLogger(__name__)

Display = Callable[[str, str], None]

CONTINUE_PROMPT_TEXT = "Continue with your plan."
CLARIFY_RESPONSE_PROMPT = "Your response: "


class CompletionClient(Protocol):
    def complete(self, turns: Sequence[Turn]) -> str: ...


class AgentLoop:
    """Runs the request/decode/dispatch cycle until OUTPUT or retry exhaustion.

    Each ``run`` owns a fresh ``ConversationHistory``. Transport errors raised
    by the client propagate to the caller unchanged.
    """

    def __init__(
        self,
        *,
        client: CompletionClient,
        handlers: ModeHandlers,
        request_user_input: RequestUserInput,
        log_dir: str | Path,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        retry_policy: RetryPolicy | None = None,
        display: Display | None = None,
    ) -> None:
        self.client = client
        self.handlers = handlers
        self.request_user_input = request_user_input
        self.log_dir = Path(log_dir)
        self.system_prompt = system_prompt
        self.retry_policy = retry_policy or RetryPolicy()
        self.display = display

    def run(self, task: str) -> LoopOutcome:
        history = ConversationHistory(self.system_prompt)
        history.append("user", task)
        retry_count = 0
        remote_calls = 0

        while True:
            raw = self.client.complete(history.turns)
            remote_calls += 1
            parsed = parse_envelope(raw)

            if isinstance(parsed, (ParseFailure, UnknownEnvelope)):
                retry_count += 1
                if isinstance(parsed, ParseFailure):
                    LOGGER.warning(
                        "envelope_parse_failed",
                        extra={"error": parsed.error, "retry_count": retry_count},
                    )
                    self._show("Failed to parse JSON response", parsed.error)
                else:
                    LOGGER.warning(
                        "unknown_mode_ignored",
                        extra={"mode": parsed.mode, "retry_count": retry_count},
                    )
                    self._show("Unknown mode", parsed.mode)

                if not self.retry_policy.should_retry(retry_count):
                    reason = f"Max retries reached after {retry_count} consecutive failures."
                    LOGGER.error(
                        "max_retries_reached",
                        extra={"retry_count": retry_count, "remote_calls": remote_calls},
                    )
                    self._show("Max retries reached", "Ending conversation.")
                    self._append_log(
                        task=task,
                        cycle=remote_calls,
                        mode=None,
                        raw_response=raw,
                        result=None,
                        retry_count=retry_count,
                        history_length=len(history),
                    )
                    return LoopOutcome(
                        status="max_retries",
                        history=history,
                        remote_calls=remote_calls,
                        reason=reason,
                    )

                if isinstance(parsed, ParseFailure):
                    history.append_exchange(raw, CORRECTIVE_PROMPT_TEXT)
                self._append_log(
                    task=task,
                    cycle=remote_calls,
                    mode=None if isinstance(parsed, ParseFailure) else parsed.mode,
                    raw_response=raw,
                    result=None,
                    retry_count=retry_count,
                    history_length=len(history),
                )
                continue

            retry_count = 0
            if isinstance(parsed, OutputEnvelope):
                self._show("SUMMARY", parsed.summary)
                self._show("RESULT", parsed.result)
                self._show("NEXT STEPS", parsed.next_steps)
                self._append_log(
                    task=task,
                    cycle=remote_calls,
                    mode=parsed.mode,
                    raw_response=raw,
                    result=None,
                    retry_count=retry_count,
                    history_length=len(history),
                )
                return LoopOutcome(
                    status="completed",
                    history=history,
                    remote_calls=remote_calls,
                    output=parsed,
                )

            result = self._dispatch(parsed)
            history.append_exchange(parsed.raw, result.message)
            self._append_log(
                task=task,
                cycle=remote_calls,
                mode=parsed.mode,
                raw_response=raw,
                result=result,
                retry_count=retry_count,
                history_length=len(history),
            )

    def _dispatch(self, envelope: ModeEnvelope) -> HandlerResult:
        if isinstance(envelope, ThinkEnvelope):
            self._show("THINKING", envelope.thought)
            self._show("NEXT ACTION", envelope.next_action)
            return HandlerResult(ok=True, message=CONTINUE_PROMPT_TEXT)
        if isinstance(envelope, ActionEnvelope):
            self._show("EXECUTING", envelope.command)
            self._show("REASON", envelope.explanation)
            result = self.handlers.handle_action(envelope)
            self._show("COMMAND RESULT" if result.ok else "COMMAND ERROR", result.message)
            return result
        if isinstance(envelope, CreateFileEnvelope):
            self._show("CREATING FILE", envelope.filename)
            self._show("REASON", envelope.explanation)
            result = self.handlers.handle_create_file(envelope)
            self._show("FILE CREATED" if result.ok else "FILE ERROR", result.message)
            return result
        if isinstance(envelope, VerifyEnvelope):
            self._show("VERIFYING FILE", envelope.filename)
            self._show("REASON", envelope.explanation)
            result = self.handlers.handle_verify(envelope)
            self._show("FILE CONTENT" if result.ok else "VERIFICATION ERROR", result.message)
            return result
        if isinstance(envelope, ClarifyEnvelope):
            answer = self.request_user_input(self._clarify_prompt(envelope))
            return HandlerResult(ok=True, message=answer)
        msg = f"No handler for mode {envelope.mode!r}"
        raise TypeError(msg)

    @staticmethod
    def _clarify_prompt(envelope: ClarifyEnvelope) -> str:
        lines = [f"QUESTION: {envelope.question or '(no question provided)'}"]
        if envelope.options:
            lines.append(f"OPTIONS: {', '.join(envelope.options)}")
        lines.append(CLARIFY_RESPONSE_PROMPT)
        return "\n".join(lines)

    def _show(self, label: str, text: str | None) -> None:
        if self.display is None or text is None:
            return
        self.display(label, text)

    def _append_log(
        self,
        *,
        task: str,
        cycle: int,
        mode: str | None,
        raw_response: str,
        result: HandlerResult | None,
        retry_count: int,
        history_length: int,
    ) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        entry = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": getattr(self.client, "model", None),
            "shell": getattr(self.handlers.runner, "name", None),
            "cycle": cycle,
            "mode": mode,
            "raw_response": raw_response,
            "handler_ok": result.ok if result else None,
            "handler_message": result.message if result else None,
            "retry_count": retry_count,
            "history_length": history_length,
        }
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry) + "\n")
