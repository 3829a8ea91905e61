"""Append-only conversation history replayed to the model on every call."""

from __future__ import annotations

from collections.abc import Iterator

from modeagent.agent.models import Role, Turn


class ConversationHistory:
    """Ordered log of turns seeded with a single system prompt.

    Turns are only ever appended; nothing is removed or reordered, so the
    sequence sent to the model on call ``n + 1`` always extends the one sent
    on call ``n``.
    """

    def __init__(self, system_prompt: str) -> None:
        self._turns: list[Turn] = [Turn(role="system", content=system_prompt)]

    def append(self, role: Role, content: str) -> Turn:
        turn = Turn(role=role, content=content)
        self._turns.append(turn)
        return turn

    def append_exchange(self, assistant_content: str, user_content: str) -> None:
        """Record a model response and the user-role reply that answers it."""
        self.append("assistant", assistant_content)
        self.append("user", user_content)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def last(self) -> Turn:
        return self._turns[-1]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))
