"""Decode raw model text into a mode envelope."""

from __future__ import annotations

import json
import re

from modeagent.agent.models import (
    MODE_ACTION,
    MODE_CLARIFY,
    MODE_CREATE_FILE,
    MODE_OUTPUT,
    MODE_THINK,
    MODE_VERIFY,
    ActionEnvelope,
    ClarifyEnvelope,
    CreateFileEnvelope,
    ModeEnvelope,
    OutputEnvelope,
    ParseFailure,
    ThinkEnvelope,
    UnknownEnvelope,
    VerifyEnvelope,
)

_CODE_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*\n(?P<body>.*)\n\s*```$", re.DOTALL)


def parse_envelope(raw: str) -> ModeEnvelope | ParseFailure:
    """Return the envelope encoded in ``raw`` or a ``ParseFailure``.

    Only structural shape is checked: the text must be a JSON object with a
    string ``mode``. Missing display fields become ``None``; unrecognised
    modes decode to ``UnknownEnvelope``.
    """
    text = _strip_code_fence(raw)
    try:
        decoded = json.loads(text)
    except (ValueError, RecursionError, TypeError) as exc:
        return ParseFailure(raw=raw, error=f"Invalid JSON: {exc}")

    payload = _coerce_object_dict(decoded)
    if payload is None:
        return ParseFailure(raw=raw, error="Expected a JSON object at the top level")

    mode = payload.get("mode")
    if not isinstance(mode, str) or not mode.strip():
        return ParseFailure(raw=raw, error="Missing required field: mode")

    return _to_envelope(raw, mode.strip(), payload)


def _strip_code_fence(raw: str) -> str:
    text = raw.strip()
    match = _CODE_FENCE_PATTERN.match(text)
    if match:
        return match.group("body")
    return text


def _coerce_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return {str(key): raw_value for key, raw_value in value.items()}


def _optional_text(payload: dict[str, object], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str):
        return value
    return None


def _optional_options(payload: dict[str, object]) -> tuple[str, ...] | None:
    value = payload.get("options")
    if not isinstance(value, list):
        return None
    options = tuple(str(item) for item in value if isinstance(item, (str, int, float)))
    return options or None


def _to_envelope(raw: str, mode: str, payload: dict[str, object]) -> ModeEnvelope:
    if mode == MODE_THINK:
        return ThinkEnvelope(
            raw=raw,
            thought=_optional_text(payload, "thought"),
            next_action=_optional_text(payload, "next_action"),
        )
    if mode == MODE_ACTION:
        return ActionEnvelope(
            raw=raw,
            command=_optional_text(payload, "command"),
            explanation=_optional_text(payload, "explanation"),
            safety_check=_optional_text(payload, "safety_check"),
        )
    if mode == MODE_CREATE_FILE:
        return CreateFileEnvelope(
            raw=raw,
            filename=_optional_text(payload, "filename"),
            content=_optional_text(payload, "content"),
            explanation=_optional_text(payload, "explanation"),
        )
    if mode == MODE_VERIFY:
        return VerifyEnvelope(
            raw=raw,
            filename=_optional_text(payload, "filename"),
            explanation=_optional_text(payload, "explanation"),
        )
    if mode == MODE_OUTPUT:
        return OutputEnvelope(
            raw=raw,
            summary=_optional_text(payload, "summary"),
            result=_optional_text(payload, "result"),
            next_steps=_optional_text(payload, "next_steps"),
        )
    if mode == MODE_CLARIFY:
        return ClarifyEnvelope(
            raw=raw,
            question=_optional_text(payload, "question"),
            options=_optional_options(payload),
        )
    return UnknownEnvelope(raw=raw, mode=mode)
