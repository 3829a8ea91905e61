"""Command-line interface for modeagent."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import cast

from .agent.handlers import ModeHandlers, ShellCommandRunner, WorkspaceFiles
from .agent.loop import AgentLoop
from .agent.models import LoopOutcome
from .agent.retry import RetryPolicy
from .config import AppConfig
from .llm.client import LLMClient, LLMTransportError
from .shell import create_shell_adapter

LOGGER = logging.getLogger(__name__)

WELCOME_LINES = (
    "Welcome to ModeAgent.",
    "Ask me to help with coding tasks: create files, run commands, and more.",
    "Example: 'make a todo app with html, css and javascript'",
)


class CLIArgs(argparse.Namespace):
    task: str | None
    working_directory: str | None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="modeagent", description="Mode-driven coding agent")
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help=(
            "Directory commands run in and file paths resolve against. "
            "Takes precedence over config/env cwd values."
        ),
    )
    parser.add_argument("task", nargs="?", help="Task for the agent to work on")
    return parser


def main() -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args())
    config = AppConfig.from_env()
    logging.basicConfig(level=config.log_level, format="[%(levelname)s] %(name)s: %(message)s")

    for line in WELCOME_LINES:
        print(line)
    print()

    task = args.task
    if task is None:
        try:
            task = input("What would you like me to help you with? ")
        except (EOFError, KeyboardInterrupt):
            print("\nInput cancelled. Exiting...")
            return 1
    if not task.strip():
        print("No query provided. Exiting...")
        return 1

    configured_working_directory = (
        args.working_directory if args.working_directory is not None else config.working_directory
    )
    working_directory: str | None = None
    if configured_working_directory is not None:
        resolved_working_directory = Path(configured_working_directory).expanduser().resolve()
        if not resolved_working_directory.exists() or not resolved_working_directory.is_dir():
            print(f"Invalid configured cwd directory: {configured_working_directory}")
            return 1
        working_directory = str(resolved_working_directory)

    adapter = create_shell_adapter(config.shell)
    LOGGER.debug("shell_adapter_selected", extra={"shell": adapter.name})
    client = LLMClient(
        api_key=config.api_key,
        model=config.model,
        api_url=config.api_url,
        timeout=config.request_timeout,
        json_response_format=config.json_response_format,
    )
    files = WorkspaceFiles(working_directory)
    loop = AgentLoop(
        client=client,
        handlers=ModeHandlers(
            runner=ShellCommandRunner(
                adapter,
                working_directory=working_directory,
                timeout=config.command_timeout,
            ),
            writer=files,
            reader=files,
        ),
        request_user_input=input,
        log_dir=config.log_dir,
        system_prompt=config.system_prompt,
        retry_policy=RetryPolicy(max_retries=config.max_retries),
        display=_display,
    )

    print(f"\nStarting task: {task}\n")
    try:
        outcome = loop.run(task)
    except LLMTransportError as exc:
        print(f"Error in conversation loop: {exc}")
        return 1
    except (EOFError, KeyboardInterrupt):
        print("\nInput cancelled. Exiting...")
        return 1
    return _report_outcome(outcome)


def _display(label: str, text: str) -> None:
    if "\n" in text:
        print(f"{label}:")
        print("-" * 50)
        print(text)
        print("-" * 50)
        return
    print(f"{label}: {text}")


def _report_outcome(outcome: LoopOutcome) -> int:
    if outcome.completed:
        print("Conversation completed!")
        return 0
    print(outcome.reason or "Conversation ended.")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
