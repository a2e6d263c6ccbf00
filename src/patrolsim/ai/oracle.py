"""OpenAIOracle — optional chat-completions client for the decision hook.

Every method either returns a usable answer or raises ``OracleError``; the
decision hook catches it and falls through to its heuristic.
"""
from __future__ import annotations

import json
import re
from typing import Any

import httpx
from httpx import HTTPError as _HTTPError
from loguru import logger

from patrolsim.config import PatrolSettings
from patrolsim.errors import OracleError

SYSTEM_PROMPT = "You are an assistant for tabletop game automation."

_PROMPTS = {
    "bribery": "Decide if a guard will accept a bribe. Answer true or false. Data: {data}",
    "captureOutcome": "Decide capture outcome. Answer with one of {options}. Data: {data}",
    "combatAction": "Decide combat action. Answer with one of {options}. Data: {data}",
}

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class OpenAIOracle:
    """Chat-completions client configured from ``PatrolSettings``."""

    def __init__(self, settings: PatrolSettings) -> None:
        self._api_key = settings.ai_api_key
        self._url = settings.ai_api_url
        self._model = settings.ai_model
        self._timeout = settings.ai_timeout

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    def build_payload(self, intent: str, data: dict, options: list[str] | None = None) -> dict:
        template = _PROMPTS.get(intent, "General decision. Data: {data}")
        prompt = template.format(data=json.dumps(data, default=str),
                                 options=", ".join(options or []))
        return {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.5,
        }

    def complete(self, intent: str, data: dict, options: list[str] | None = None) -> str:
        """POST one prompt and return the first choice's message content."""
        if not self.available:
            raise OracleError("No API key configured")
        try:
            resp = httpx.post(
                self._url,
                json=self.build_payload(intent, data, options),
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except _HTTPError as exc:
            logger.warning(f"Oracle request for {intent} failed: {exc}")
            raise OracleError(str(exc)) from exc
        except ValueError as exc:
            raise OracleError(f"Oracle returned invalid JSON: {exc}") from exc
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OracleError("Oracle response had no message content") from exc
        if not isinstance(content, str) or not content.strip():
            raise OracleError("Oracle returned empty content")
        return content

    @staticmethod
    def _embedded_json(content: str) -> Any:
        match = _JSON_OBJECT.search(content)
        if match is None:
            return None
        try:
            return json.loads(match.group(0))
        except ValueError:
            return None

    def decide_bribery(self, data: dict) -> bool:
        content = self.complete("bribery", data)
        parsed = self._embedded_json(content)
        if isinstance(parsed, dict):
            for key in ("accept", "accepted", "decision", "result"):
                if isinstance(parsed.get(key), bool):
                    return parsed[key]
        return "true" in content.lower()

    def choose(self, intent: str, data: dict, options: list[str]) -> str:
        """Pick one of ``options``; anything else is an OracleError."""
        content = self.complete(intent, data, options)
        parsed = self._embedded_json(content)
        if isinstance(parsed, dict):
            for value in parsed.values():
                if isinstance(value, str) and value.lower() in options:
                    return value.lower()
        answer = content.strip().split("\n")[0].strip().strip(".").lower()
        if answer not in options:
            raise OracleError(f"Oracle answered '{answer}', expected one of {options}")
        return answer
