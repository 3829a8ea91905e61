"""Data models used by the mode dispatch loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Union

if TYPE_CHECKING:
    from modeagent.agent.history import ConversationHistory

Role = Literal["system", "assistant", "user"]
LoopStatus = Literal["completed", "max_retries"]

MODE_THINK = "THINK"
MODE_ACTION = "ACTION"
MODE_CREATE_FILE = "CREATE_FILE"
MODE_VERIFY = "VERIFY"
MODE_OUTPUT = "OUTPUT"
MODE_CLARIFY = "CLARIFY"
KNOWN_MODES = frozenset(
    {MODE_THINK, MODE_ACTION, MODE_CREATE_FILE, MODE_VERIFY, MODE_OUTPUT, MODE_CLARIFY}
)


@dataclass(frozen=True, slots=True)
class Turn:
    """One role-tagged entry of the conversation replayed to the model."""

    role: Role
    content: str


@dataclass(frozen=True, slots=True)
class ThinkEnvelope:
    raw: str
    thought: str | None = None
    next_action: str | None = None
    mode: str = MODE_THINK


@dataclass(frozen=True, slots=True)
class ActionEnvelope:
    raw: str
    command: str | None = None
    explanation: str | None = None
    safety_check: str | None = None
    mode: str = MODE_ACTION


@dataclass(frozen=True, slots=True)
class CreateFileEnvelope:
    raw: str
    filename: str | None = None
    content: str | None = None
    explanation: str | None = None
    mode: str = MODE_CREATE_FILE


@dataclass(frozen=True, slots=True)
class VerifyEnvelope:
    raw: str
    filename: str | None = None
    explanation: str | None = None
    mode: str = MODE_VERIFY


@dataclass(frozen=True, slots=True)
class OutputEnvelope:
    raw: str
    summary: str | None = None
    result: str | None = None
    next_steps: str | None = None
    mode: str = MODE_OUTPUT


@dataclass(frozen=True, slots=True)
class ClarifyEnvelope:
    raw: str
    question: str | None = None
    options: tuple[str, ...] | None = None
    mode: str = MODE_CLARIFY


@dataclass(frozen=True, slots=True)
class UnknownEnvelope:
    """Well-formed response whose ``mode`` is not one the loop understands."""

    raw: str
    mode: str


ModeEnvelope = Union[
    ThinkEnvelope,
    ActionEnvelope,
    CreateFileEnvelope,
    VerifyEnvelope,
    OutputEnvelope,
    ClarifyEnvelope,
    UnknownEnvelope,
]


@dataclass(frozen=True, slots=True)
class ParseFailure:
    """Model output that could not be decoded into a mode envelope."""

    raw: str
    error: str


@dataclass(frozen=True, slots=True)
class HandlerResult:
    """Outcome text produced by a side-effect handler."""

    ok: bool
    message: str


@dataclass(slots=True)
class LoopOutcome:
    """Terminal state of a single ``AgentLoop.run`` invocation."""

    status: LoopStatus
    history: ConversationHistory
    remote_calls: int
    output: OutputEnvelope | None = None
    reason: str | None = None

    @property
    def completed(self) -> bool:
        return self.status == "completed"
