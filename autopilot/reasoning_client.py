"""
Reasoning Service Client

Request/response contract with the delegated reasoning service, carried
over the Anthropic Messages HTTP API with httpx.

Request:  {context, max_output_units}
Response: {action_json, usage: {input_units, output_units}, latency}

The client only transports. Interpreting action_json is the decision
engine's job, and every failure here is raised as a ReasoningError so the
engine can fall back to rules.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger("reasoning_client")

ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = (
    "You supervise an AI coding assistant working inside an editor session. "
    "You receive a JSON description of the session's current state, the "
    "project configuration, recent decisions and the available skills. "
    "Reply with a single JSON object and nothing else, with keys: "
    '"action" (one of continue, use_skill, notify, phase_transition, wait), '
    '"command" (text to send to the assistant, optional), '
    '"skillRef" (skill name when action is use_skill), '
    '"reasoning" (one sentence), "confidence" (number between 0 and 1). '
    "Prefer notify when unsure or when a human decision is needed."
)


class ReasoningError(Exception):
    """The reasoning service could not produce a usable response."""


class ReasoningTimeout(ReasoningError):
    pass


@dataclass(frozen=True)
class ReasoningRequest:
    context: str
    max_output_units: int = 512


@dataclass(frozen=True)
class Usage:
    input_units: int = 0
    output_units: int = 0


@dataclass(frozen=True)
class ReasoningResponse:
    action_json: str
    usage: Usage
    latency: float
    model: str


class ReasoningClient:
    """Thin async client for the reasoning service."""

    def __init__(
        self,
        api_key: str,
        model: str,
        api_url: str = "https://api.anthropic.com/v1/messages",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        if not api_key:
            raise ValueError("Reasoning client requires an API key")
        self.model = model
        self._api_key = api_key
        self._api_url = api_url
        self._timeout = timeout
        self._transport = transport
        self._system_prompt = system_prompt

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _payload(self, request: ReasoningRequest) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": request.max_output_units,
            "system": self._system_prompt,
            "messages": [{"role": "user", "content": request.context}],
        }

    async def complete(self, request: ReasoningRequest) -> ReasoningResponse:
        """Send one request. Raises ReasoningError / ReasoningTimeout."""
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._api_url,
                    headers=self._headers(),
                    json=self._payload(request),
                )
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as e:
            raise ReasoningTimeout(f"Reasoning service timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise ReasoningError(
                f"Reasoning service returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ReasoningError(f"Reasoning service request failed: {e}") from e
        except ValueError as e:
            raise ReasoningError(f"Reasoning service returned invalid JSON: {e}") from e

        latency = time.monotonic() - started
        text = _extract_text(body)
        usage_data = body.get("usage") or {}
        usage = Usage(
            input_units=int(usage_data.get("input_tokens", 0)),
            output_units=int(usage_data.get("output_tokens", 0)),
        )

        logger.debug(
            f"Reasoning call: {usage.input_units} in / {usage.output_units} out, {latency:.2f}s"
        )
        return ReasoningResponse(
            action_json=text,
            usage=usage,
            latency=latency,
            model=body.get("model") or self.model,
        )


def _extract_text(body: Any) -> str:
    if not isinstance(body, dict):
        raise ReasoningError("Reasoning service response is not an object")
    blocks = body.get("content")
    if not isinstance(blocks, list):
        raise ReasoningError("Reasoning service response has no content")
    text = "".join(
        block.get("text", "")
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text"
    )
    if not text.strip():
        raise ReasoningError("Reasoning service response has no text content")
    return text
