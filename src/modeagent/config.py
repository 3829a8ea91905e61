"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from modeagent.agent.retry import DEFAULT_MAX_RETRIES
from modeagent.llm.client import DEFAULT_API_URL

DEFAULT_MODEL = "gpt-4"
DEFAULT_LOG_LEVEL = "WARNING"
LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"})

DEFAULT_SYSTEM_PROMPT = """\
You are ModeAgent, an intelligent coding agent.

CRITICAL: You MUST respond ONLY with valid JSON. No additional text before or after the JSON.

Respond with a JSON object in exactly one of these modes:

THINK, when you need to analyze or plan:
{"mode": "THINK", "thought": "your reasoning", "next_action": "what you plan to do next"}

ACTION, when you need to run a single shell command:
{"mode": "ACTION", "command": "shell command", "explanation": "why you are running it",
 "safety_check": "confirmation this is safe"}

CREATE_FILE, when you need to create a file with content:
{"mode": "CREATE_FILE", "filename": "path of the file", "content": "file content",
 "explanation": "why you are creating it"}

VERIFY, when you need to read a file back:
{"mode": "VERIFY", "filename": "path of the file", "explanation": "why you are checking it"}

OUTPUT, when you are providing the final result to the user:
{"mode": "OUTPUT", "summary": "what happened", "result": "the actual result",
 "next_steps": "suggested next actions"}

CLARIFY, when you need more information from the user:
{"mode": "CLARIFY", "question": "what you need to know", "options": ["possible choices"]}

RULES:
- Use CREATE_FILE instead of ACTION to write files.
- Use ACTION for shell commands such as listing files or running programs.
- After creating important files, use VERIFY to check their content.
- Plan in THINK mode before building something, then build it completely.
- Use CLARIFY only when a missing fact blocks progress.
- Your entire response must be a single parseable JSON object.
"""


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _file_bool(value: object, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _to_bool(value, default)
    return default


def _to_log_level(value: str | None) -> str:
    if value is None:
        return DEFAULT_LOG_LEVEL
    normalized = value.strip().upper()
    if normalized in LOG_LEVELS:
        return normalized
    return DEFAULT_LOG_LEVEL


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and config files."""

    api_key: str | None
    model: str
    api_url: str
    request_timeout: float
    json_response_format: bool
    log_dir: str
    log_level: str
    system_prompt: str
    shell: str
    command_timeout: float | None
    max_retries: int
    working_directory: str | None

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}

        return cls(
            api_key=(
                os.getenv("MODEAGENT_API_KEY")
                or os.getenv("OPENAI_API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            model=(
                os.getenv("MODEAGENT_MODEL")
                or _to_optional_string(file_config.get("model"))
                or DEFAULT_MODEL
            ),
            api_url=(
                os.getenv("MODEAGENT_API_URL")
                or _to_optional_string(openai_config.get("api_url"))
                or DEFAULT_API_URL
            ),
            request_timeout=_to_positive_float(
                os.getenv("MODEAGENT_REQUEST_TIMEOUT") or file_config.get("request_timeout"),
                default=60.0,
            ),
            json_response_format=_to_bool(
                os.getenv("MODEAGENT_JSON_RESPONSE_FORMAT"),
                default=_file_bool(file_config.get("json_response_format")),
            ),
            log_dir=(
                os.getenv("MODEAGENT_LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            log_level=_to_log_level(
                os.getenv("MODEAGENT_LOG_LEVEL")
                or _to_optional_string(file_config.get("log_level"))
            ),
            system_prompt=(
                os.getenv("MODEAGENT_SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("system_prompt"))
                or DEFAULT_SYSTEM_PROMPT
            ),
            shell=_resolve_shell(
                os.getenv("MODEAGENT_SHELL") or _to_optional_string(file_config.get("shell"))
            ),
            command_timeout=_to_optional_positive_float(
                os.getenv("MODEAGENT_COMMAND_TIMEOUT") or file_config.get("command_timeout")
            ),
            max_retries=_to_positive_int(
                os.getenv("MODEAGENT_MAX_RETRIES") or file_config.get("max_retries"),
                default=DEFAULT_MAX_RETRIES,
            ),
            working_directory=(
                os.getenv("MODEAGENT_CWD") or _to_optional_string(file_config.get("cwd"))
            ),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("MODEAGENT_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("modeagent.config.json")
    local_override = _load_file_config("modeagent.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _default_shell_for_platform(os_name: str | None = None) -> str:
    platform_name = os.name if os_name is None else os_name
    return "powershell" if platform_name == "nt" else "bash"


def _resolve_shell(value: str | None) -> str:
    if value is None:
        return _default_shell_for_platform()
    normalized = value.strip().lower()
    if normalized in {"powershell", "pwsh"}:
        return "powershell"
    if normalized in {"bash", "sh", "shell"}:
        return "bash"
    return _default_shell_for_platform()


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_optional_positive_float(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None


def _to_positive_float(value: object, *, default: float) -> float:
    parsed = _to_optional_positive_float(value)
    return default if parsed is None else parsed
