"""Thin chat-completions client that returns the model's raw reply text."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from urllib import request
from urllib.error import HTTPError, URLError

from modeagent.agent.models import Turn

DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"
LOGGER = logging.getLogger(__name__)


class LLMTransportError(RuntimeError):
    """The model service could not be reached or returned an unusable payload."""


class LLMClient:
    """Small HTTP client for chat-completion calls.

    Only transport concerns live here; whether the reply text is a usable
    mode envelope is decided by the agent loop.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 60.0,
        json_response_format: bool = False,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.timeout = timeout
        self.json_response_format = json_response_format

    def complete(self, turns: Iterable[Turn]) -> str:
        payload = self._build_payload(turns)
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "messages": len(payload["messages"]),
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_response = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            body_excerpt = self._read_error_body_excerpt(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": body_excerpt,
                },
            )
            details = f"Model request failed with HTTP {exc.code}: {exc.reason}"
            if body_excerpt:
                details = f"{details}. Response body: {body_excerpt}"
            raise LLMTransportError(details) from exc
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "reason": str(exc.reason),
                },
            )
            raise LLMTransportError(f"Model request transport error: {exc.reason}") from exc
        except TimeoutError as exc:
            LOGGER.error(
                "llm_request_timeout",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "timeout_seconds": self.timeout,
                },
            )
            raise LLMTransportError(
                f"Model request timed out after {self.timeout:.1f}s"
            ) from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "error": str(exc),
                },
            )
            raise LLMTransportError(f"Model response parsing error: {exc}") from exc

        content = self._extract_message_content(raw_response)
        if content is None:
            LOGGER.error(
                "llm_response_parse_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "error": "missing choices[0].message.content",
                },
            )
            raise LLMTransportError(
                "Model response parsing error: expected choices[0].message.content"
            )
        return content

    def _build_payload(self, turns: Iterable[Turn]) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "messages": [{"role": turn.role, "content": turn.content} for turn in turns],
        }
        if self.json_response_format:
            payload["response_format"] = {"type": "json_object"}
        return payload

    @staticmethod
    def _extract_message_content(payload: object) -> str | None:
        if not isinstance(payload, dict):
            return None
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        first_choice = choices[0]
        if not isinstance(first_choice, dict):
            return None
        message = first_choice.get("message")
        if not isinstance(message, dict):
            return None
        content = message.get("content")
        if not isinstance(content, str):
            return None
        return content

    @staticmethod
    def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None

        if not raw:
            return None

        excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt
