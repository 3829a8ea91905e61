"""Side-effect collaborators and the per-mode handlers that wrap them."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from modeagent.agent.models import (
    ActionEnvelope,
    CreateFileEnvelope,
    HandlerResult,
    VerifyEnvelope,
)
from modeagent.shell import ShellAdapter

LOGGER = logging.getLogger(__name__)

RequestUserInput = Callable[[str], str]


class HandlerError(Exception):
    """Raised by a collaborator when the requested side effect failed."""


class CommandRunner(Protocol):
    def run(self, command: str) -> str: ...


class FileWriter(Protocol):
    def write(self, filename: str, content: str) -> str: ...


class FileReader(Protocol):
    def read(self, filename: str) -> str: ...


class ShellCommandRunner:
    """Run a command through a shell adapter and return its combined output."""

    def __init__(
        self,
        shell: ShellAdapter,
        *,
        working_directory: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.shell = shell
        self.working_directory = working_directory
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.shell.name

    def run(self, command: str) -> str:
        result = self.shell.execute(command, cwd=self.working_directory, timeout=self.timeout)
        if result.timed_out:
            raise HandlerError(f"Command timed out after {self.timeout}s: {command}")
        if not result.executed:
            raise HandlerError(result.stderr or f"Command was not executed: {command}")
        output = _combine_output(result.stdout, result.stderr)
        if result.returncode != 0:
            raise HandlerError(f"Command exited with code {result.returncode}: {output}")
        return output


class WorkspaceFiles:
    """Read and write files relative to the agent's working directory."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else None

    def resolve(self, filename: str) -> Path:
        path = Path(filename).expanduser()
        if self.root is not None and not path.is_absolute():
            return self.root / path
        return path

    def write(self, filename: str, content: str) -> str:
        path = self.resolve(filename)
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise HandlerError(f"Error creating file: {_describe_os_error(exc)}") from exc
        except ValueError as exc:
            raise HandlerError(f"Error creating file: {exc}") from exc
        return f"File '{filename}' created successfully"

    def read(self, filename: str) -> str:
        path = self.resolve(filename)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise HandlerError(f"Error reading file: {_describe_os_error(exc)}") from exc
        except UnicodeDecodeError as exc:
            raise HandlerError(f"Error reading file: {filename} is not UTF-8 text") from exc
        except ValueError as exc:
            raise HandlerError(f"Error reading file: {exc}") from exc


class ModeHandlers:
    """Turn ACTION, CREATE_FILE and VERIFY envelopes into handler results."""

    def __init__(
        self,
        *,
        runner: CommandRunner,
        writer: FileWriter,
        reader: FileReader,
    ) -> None:
        self.runner = runner
        self.writer = writer
        self.reader = reader

    def handle_action(self, envelope: ActionEnvelope) -> HandlerResult:
        try:
            if not envelope.command:
                raise HandlerError("No command provided")
            output = self.runner.run(envelope.command)
        except HandlerError as exc:
            return self._failure("ACTION", f"Command failed with error: {exc}")
        return HandlerResult(ok=True, message=f"Command executed. Result: {output}")

    def handle_create_file(self, envelope: CreateFileEnvelope) -> HandlerResult:
        try:
            if not envelope.filename:
                raise HandlerError("No filename provided")
            ack = self.writer.write(envelope.filename, envelope.content or "")
        except HandlerError as exc:
            return self._failure("CREATE_FILE", f"File creation failed with error: {exc}")
        return HandlerResult(ok=True, message=f"File created successfully: {ack}")

    def handle_verify(self, envelope: VerifyEnvelope) -> HandlerResult:
        try:
            if not envelope.filename:
                raise HandlerError("No filename provided")
            content = self.reader.read(envelope.filename)
        except HandlerError as exc:
            return self._failure("VERIFY", f"File verification failed with error: {exc}")
        return HandlerResult(
            ok=True,
            message=(
                "File verification complete. Current content of "
                f"{envelope.filename}:\n\n{content}"
            ),
        )

    @staticmethod
    def _failure(mode: str, message: str) -> HandlerResult:
        LOGGER.warning("handler_failed", extra={"mode": mode, "error": message})
        return HandlerResult(ok=False, message=message)


def _combine_output(stdout: str, stderr: str) -> str:
    parts = [part for part in (stdout.rstrip("\n"), stderr.rstrip("\n")) if part]
    return "\n".join(parts)


def _describe_os_error(exc: OSError) -> str:
    if exc.strerror and exc.filename:
        return f"{exc.strerror}: {exc.filename}"
    return str(exc)
