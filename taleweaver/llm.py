"""Text-generation transport used by the narrative and creation services.

Anything with this call shape can be injected as the LLM:

    async def __call__(self, stage: str, prompt: str) -> str: ...

HttpLLM looks the stage up in STAGES to decide sampling temperature, the
token budget, and whether the reply must be a JSON document (every stage but
canon_events). Tests inject StubLLM from tests/stubs.py instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)

ProviderFormat = Literal["koboldcpp", "openai"]


class LLMError(RuntimeError):
    """The backend was unreachable, failed, or answered in an unknown shape."""


class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


@dataclass(frozen=True)
class StageParams:
    temperature: float = 0.7
    max_tokens: int = 1024
    json_reply: bool = True


STAGES: dict[str, StageParams] = {
    "narrator": StageParams(max_tokens=1536),
    "scaffold": StageParams(max_tokens=2048),
    "tab_options": StageParams(max_tokens=2048),
    "visual_theme": StageParams(max_tokens=256),
    "canon_events": StageParams(max_tokens=512, json_reply=False),
    "simple_character": StageParams(temperature=0.8, max_tokens=2048),
}


class HttpLLM:
    """Calls a KoboldCpp or OpenAI-compatible chat backend over HTTP.

    koboldcpp  POST {base}/api/v1/generate
               {"prompt", "temperature", "max_length"} -> {"results": [{"text"}]}
    openai     POST {base}/v1/chat/completions
               {"messages", "temperature", "max_tokens", "model"?, "response_format"?}
               -> {"choices": [{"message": {"content"}}]}

    `system_prompt` only reaches openai-format backends, as the system message.
    A blank reply is treated as a failure.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        system_prompt: str = "",
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._system_prompt = system_prompt

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {"Content-Type": "application/json"}
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}

    # ── koboldcpp ───────────────────────────────────────

    def _kobold_request(self, params: StageParams, prompt: str) -> tuple[str, dict]:
        body = {
            "prompt": prompt,
            "temperature": params.temperature,
            "max_length": params.max_tokens,
        }
        return f"{self._base_url}/api/v1/generate", body

    @staticmethod
    def _kobold_text(data: dict) -> str:
        try:
            return data["results"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("Unexpected response format from KoboldCpp backend") from e

    # ── openai ──────────────────────────────────────────

    def _chat_request(self, params: StageParams, prompt: str) -> tuple[str, dict]:
        system = [{"role": "system", "content": self._system_prompt}] if self._system_prompt else []
        body: dict = {
            "messages": [*system, {"role": "user", "content": prompt}],
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
        }
        if self._model:
            body["model"] = self._model
        if params.json_reply:
            body["response_format"] = {"type": "json_object"}
        return f"{self._base_url}/v1/chat/completions", body

    @staticmethod
    def _chat_text(data: dict) -> str:
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("Unexpected response format from OpenAI-compatible backend") from e

    # ── call ────────────────────────────────────────────

    async def __call__(self, stage: str, prompt: str) -> str:
        params = STAGES.get(stage, StageParams())
        if self._format == "openai":
            url, body = self._chat_request(params, prompt)
        else:
            url, body = self._kobold_request(params, prompt)
        logger.debug("LLM %s -> %s (%d chars)", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM backend returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request to {url} failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = self._chat_text(data) if self._format == "openai" else self._kobold_text(data)
        if not isinstance(text, str) or not text.strip():
            raise LLMError("LLM backend returned an empty response")
        logger.debug("LLM %s <- %d chars", stage, len(text))
        return text
