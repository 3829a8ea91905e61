from __future__ import annotations

import json
from collections.abc import Sequence

import pytest

from modeagent.agent.handlers import (
    HandlerError,
    ModeHandlers,
    ShellCommandRunner,
    WorkspaceFiles,
)
from modeagent.agent.loop import CONTINUE_PROMPT_TEXT, AgentLoop
from modeagent.agent.models import Turn
from modeagent.agent.retry import CORRECTIVE_PROMPT_TEXT, RetryPolicy
from modeagent.llm.client import LLMTransportError
from modeagent.shell import BashAdapter

ACTION_LS = '{"mode":"ACTION","command":"ls","explanation":"list dir","safety_check":"safe"}'
OUTPUT_DONE = '{"mode":"OUTPUT","summary":"done","result":"ok","next_steps":"none"}'
THINK_PLAN = '{"mode":"THINK","thought":"plan it","next_action":"list files"}'


class ScriptedClient:
    model = "fake-model"

    def __init__(self, responses: list[str]) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[Turn, ...]] = []

    def complete(self, turns: Sequence[Turn]) -> str:
        self.calls.append(tuple(turns))
        if not self.responses:
            raise AssertionError("unexpected remote call")
        return self.responses.pop(0)


class FakeRunner:
    name = "fake"

    def __init__(self, output: str = "a.txt\nb.txt", error: str | None = None) -> None:
        self.output = output
        self.error = error
        self.commands: list[str] = []

    def run(self, command: str) -> str:
        self.commands.append(command)
        if self.error:
            raise HandlerError(self.error)
        return self.output


class FakeFiles:
    def __init__(self) -> None:
        self.files: dict[str, str] = {}

    def write(self, filename: str, content: str) -> str:
        if filename.startswith("/forbidden"):
            raise HandlerError("Error creating file: Permission denied")
        self.files[filename] = content
        return f"File '{filename}' created successfully"

    def read(self, filename: str) -> str:
        if filename not in self.files:
            raise HandlerError(f"Error reading file: No such file or directory: {filename}")
        return self.files[filename]


def _no_input(prompt: str) -> str:
    raise AssertionError(f"unexpected prompt: {prompt}")


def _make_loop(
    tmp_path,
    client: ScriptedClient,
    *,
    runner: FakeRunner | None = None,
    files: FakeFiles | None = None,
    request_user_input=_no_input,
    retry_policy: RetryPolicy | None = None,
    display=None,
) -> AgentLoop:
    files = files or FakeFiles()
    return AgentLoop(
        client=client,
        handlers=ModeHandlers(runner=runner or FakeRunner(), writer=files, reader=files),
        request_user_input=request_user_input,
        log_dir=tmp_path / "logs",
        system_prompt="contract",
        retry_policy=retry_policy,
        display=display,
    )


def _log_entries(tmp_path) -> list[dict[str, object]]:
    log_files = list((tmp_path / "logs").glob("session-*.log"))
    assert len(log_files) == 1
    lines = log_files[0].read_text(encoding="utf-8").strip().splitlines()
    return [json.loads(line) for line in lines]


def test_output_first_ends_after_one_call(tmp_path) -> None:
    client = ScriptedClient([OUTPUT_DONE])

    outcome = _make_loop(tmp_path, client).run("summarize")

    assert outcome.status == "completed"
    assert outcome.completed is True
    assert outcome.remote_calls == 1
    assert outcome.output is not None
    assert outcome.output.summary == "done"
    assert outcome.output.next_steps == "none"
    assert [turn.role for turn in outcome.history] == ["system", "user"]


def test_history_is_seeded_with_system_prompt_and_task(tmp_path) -> None:
    client = ScriptedClient([OUTPUT_DONE])

    _make_loop(tmp_path, client).run("list files")

    assert client.calls[0] == (
        Turn(role="system", content="contract"),
        Turn(role="user", content="list files"),
    )


def test_action_appends_envelope_and_command_output(tmp_path) -> None:
    client = ScriptedClient([ACTION_LS, OUTPUT_DONE])
    runner = FakeRunner()

    outcome = _make_loop(tmp_path, client, runner=runner).run("list files")

    assert runner.commands == ["ls"]
    assert len(client.calls) == 2
    second_call = client.calls[1]
    assert len(second_call) == 4
    assert second_call[2] == Turn(role="assistant", content=ACTION_LS)
    assert second_call[3].role == "user"
    assert "a.txt\nb.txt" in second_call[3].content
    assert second_call[3].content.startswith("Command executed. Result:")
    assert len(outcome.history) == 4


def test_action_failure_is_fed_back_and_loop_continues(tmp_path) -> None:
    client = ScriptedClient([ACTION_LS, OUTPUT_DONE])
    runner = FakeRunner(error="Command exited with code 2: ls: cannot access")

    outcome = _make_loop(tmp_path, client, runner=runner).run("list files")

    assert outcome.completed
    assert runner.commands == ["ls"]
    last = client.calls[1][-1]
    assert last.role == "user"
    assert last.content == (
        "Command failed with error: Command exited with code 2: ls: cannot access"
    )


def test_action_without_command_reports_failure(tmp_path) -> None:
    client = ScriptedClient(['{"mode":"ACTION","explanation":"oops"}', OUTPUT_DONE])
    runner = FakeRunner()

    _make_loop(tmp_path, client, runner=runner).run("task")

    assert runner.commands == []
    assert client.calls[1][-1].content == "Command failed with error: No command provided"


@pytest.mark.parametrize(
    "response",
    [
        THINK_PLAN,
        ACTION_LS,
        '{"mode":"CREATE_FILE","filename":"a.txt","content":"hi","explanation":"x"}',
        '{"mode":"VERIFY","filename":"missing.txt","explanation":"check"}',
    ],
)
def test_non_terminal_modes_append_two_turns_ending_on_user(tmp_path, response: str) -> None:
    client = ScriptedClient([response, OUTPUT_DONE])

    _make_loop(tmp_path, client).run("task")

    before, after = client.calls
    assert len(after) == len(before) + 2
    assert after[-2].role == "assistant"
    assert after[-2].content == response
    assert after[-1].role == "user"
    assert after[: len(before)] == before


def test_think_appends_continue_prompt(tmp_path) -> None:
    client = ScriptedClient([THINK_PLAN, OUTPUT_DONE])
    shown: list[tuple[str, str]] = []

    _make_loop(tmp_path, client, display=lambda label, text: shown.append((label, text))).run(
        "task"
    )

    assert client.calls[1][-1] == Turn(role="user", content=CONTINUE_PROMPT_TEXT)
    assert ("THINKING", "plan it") in shown
    assert ("NEXT ACTION", "list files") in shown
    assert ("SUMMARY", "done") in shown


def test_create_then_verify_embeds_file_content(tmp_path) -> None:
    create = json.dumps(
        {
            "mode": "CREATE_FILE",
            "filename": "index.html",
            "content": "<h1>todo</h1>",
            "explanation": "markup",
        }
    )
    verify = '{"mode":"VERIFY","filename":"index.html","explanation":"check"}'
    client = ScriptedClient([create, verify, OUTPUT_DONE])
    files = FakeFiles()

    _make_loop(tmp_path, client, files=files).run("make a page")

    assert files.files == {"index.html": "<h1>todo</h1>"}
    assert client.calls[1][-1].content == (
        "File created successfully: File 'index.html' created successfully"
    )
    assert client.calls[2][-1].content == (
        "File verification complete. Current content of index.html:\n\n<h1>todo</h1>"
    )


def test_file_failures_are_reported_as_user_turns(tmp_path) -> None:
    create = '{"mode":"CREATE_FILE","filename":"/forbidden/x","content":"","explanation":""}'
    verify = '{"mode":"VERIFY","filename":"nope.txt","explanation":"check"}'
    client = ScriptedClient([create, verify, OUTPUT_DONE])

    outcome = _make_loop(tmp_path, client).run("task")

    assert outcome.completed
    assert client.calls[1][-1].content.startswith("File creation failed with error:")
    assert "Permission denied" in client.calls[1][-1].content
    assert client.calls[2][-1].content.startswith("File verification failed with error:")


@pytest.mark.parametrize(
    ("response", "expected_prefix"),
    [
        (
            r'{"mode":"CREATE_FILE","filename":"a\u0000b","content":"x","explanation":""}',
            "File creation failed with error:",
        ),
        (
            r'{"mode":"CREATE_FILE","filename":"notes.txt","content":"\ud800","explanation":""}',
            "File creation failed with error:",
        ),
        (
            r'{"mode":"VERIFY","filename":"a\u0000b","explanation":""}',
            "File verification failed with error:",
        ),
        (
            r'{"mode":"ACTION","command":"echo a\u0000b","explanation":"","safety_check":""}',
            "Command failed with error:",
        ),
    ],
)
def test_unencodable_model_text_is_a_handler_failure(
    tmp_path, response: str, expected_prefix: str
) -> None:
    client = ScriptedClient([response, OUTPUT_DONE])
    files = WorkspaceFiles(tmp_path)
    loop = AgentLoop(
        client=client,
        handlers=ModeHandlers(
            runner=ShellCommandRunner(BashAdapter(), working_directory=str(tmp_path)),
            writer=files,
            reader=files,
        ),
        request_user_input=_no_input,
        log_dir=tmp_path / "logs",
        system_prompt="contract",
    )

    outcome = loop.run("task")

    assert outcome.completed
    assert client.calls[1][-1].role == "user"
    assert client.calls[1][-1].content.startswith(expected_prefix)


def test_clarify_appends_human_answer_verbatim(tmp_path) -> None:
    clarify = '{"mode":"CLARIFY","question":"Which framework?","options":["react","vue"]}'
    client = ScriptedClient([clarify, OUTPUT_DONE])
    prompts: list[str] = []
    answer = "  vue, but keep it small\n"

    def request_user_input(prompt: str) -> str:
        prompts.append(prompt)
        return answer

    _make_loop(tmp_path, client, request_user_input=request_user_input).run("build app")

    assert len(prompts) == 1
    assert "Which framework?" in prompts[0]
    assert "react, vue" in prompts[0]
    assert client.calls[1][-2] == Turn(role="assistant", content=clarify)
    assert client.calls[1][-1] == Turn(role="user", content=answer)


def test_invalid_json_injects_corrective_turn_pair(tmp_path) -> None:
    client = ScriptedClient(["not json", OUTPUT_DONE])

    outcome = _make_loop(tmp_path, client).run("task")

    assert outcome.completed
    second_call = client.calls[1]
    assert second_call[-2] == Turn(role="assistant", content="not json")
    assert second_call[-1] == Turn(role="user", content=CORRECTIVE_PROMPT_TEXT)
    entries = _log_entries(tmp_path)
    assert entries[0]["retry_count"] == 1
    assert entries[0]["mode"] is None
    assert entries[1]["retry_count"] == 0


def test_always_invalid_output_stops_at_max_retries(tmp_path) -> None:
    client = ScriptedClient(["nope"] * 10)
    shown: list[tuple[str, str]] = []

    outcome = _make_loop(
        tmp_path, client, display=lambda label, text: shown.append((label, text))
    ).run("task")

    assert outcome.status == "max_retries"
    assert outcome.remote_calls == 3
    assert len(client.calls) == 3
    assert outcome.reason is not None
    assert "Max retries reached" in outcome.reason
    assert ("Max retries reached", "Ending conversation.") in shown
    # two corrective pairs; the final failure ends the loop without appending
    assert len(outcome.history) == 2 + 4


def test_valid_envelope_resets_retry_counter(tmp_path) -> None:
    client = ScriptedClient(["bad", "bad", THINK_PLAN, "bad", "bad", "bad"])

    outcome = _make_loop(tmp_path, client).run("task")

    assert outcome.status == "max_retries"
    assert outcome.remote_calls == 6
    assert [entry["retry_count"] for entry in _log_entries(tmp_path)] == [1, 2, 0, 1, 2, 3]


def test_retry_budget_is_configurable(tmp_path) -> None:
    client = ScriptedClient(["bad"] * 5)

    outcome = _make_loop(tmp_path, client, retry_policy=RetryPolicy(max_retries=5)).run("task")

    assert outcome.status == "max_retries"
    assert outcome.remote_calls == 5


def test_unknown_mode_leaves_history_unchanged(tmp_path) -> None:
    client = ScriptedClient(['{"mode":"DANCE","style":"tango"}', OUTPUT_DONE])

    outcome = _make_loop(tmp_path, client).run("task")

    assert outcome.completed
    assert client.calls[0] == client.calls[1]
    assert len(outcome.history) == 2


def test_repeated_unknown_mode_is_bounded_by_retry_policy(tmp_path) -> None:
    client = ScriptedClient(['{"mode":"DANCE"}'] * 10)

    outcome = _make_loop(tmp_path, client).run("task")

    assert outcome.status == "max_retries"
    assert outcome.remote_calls == 3
    assert len(outcome.history) == 2


def test_transport_failure_propagates(tmp_path) -> None:
    class FailingClient:
        def complete(self, turns: Sequence[Turn]) -> str:
            raise LLMTransportError("Model request transport error: refused")

    loop = AgentLoop(
        client=FailingClient(),
        handlers=ModeHandlers(runner=FakeRunner(), writer=FakeFiles(), reader=FakeFiles()),
        request_user_input=_no_input,
        log_dir=tmp_path / "logs",
    )

    with pytest.raises(LLMTransportError):
        loop.run("task")


def test_each_run_owns_a_fresh_history(tmp_path) -> None:
    client = ScriptedClient([ACTION_LS, OUTPUT_DONE, OUTPUT_DONE])
    loop = _make_loop(tmp_path, client)

    first = loop.run("first task")
    second = loop.run("second task")

    assert len(first.history) == 4
    assert len(second.history) == 2
    assert second.history.last == Turn(role="user", content="second task")


def test_session_log_records_each_cycle(tmp_path) -> None:
    client = ScriptedClient([ACTION_LS, OUTPUT_DONE])

    _make_loop(tmp_path, client).run("list files")

    first, last = _log_entries(tmp_path)
    assert first["log_version"] == 1
    assert first["task"] == "list files"
    assert first["model"] == "fake-model"
    assert first["shell"] == "fake"
    assert first["cycle"] == 1
    assert first["mode"] == "ACTION"
    assert first["raw_response"] == ACTION_LS
    assert first["handler_ok"] is True
    assert first["history_length"] == 4
    assert last["mode"] == "OUTPUT"
    assert last["handler_ok"] is None
