"""LLM gateway: the ``generate`` capability over an OpenAI-compatible API.

Adapted from the OpenRouter client pattern (httpx, bearer auth, JSON
parsing with code-fence stripping). Each invoke() makes exactly one HTTP
request; retries and backoff belong to the module registry, so this
provider only classifies failures as retryable or not.
"""

from __future__ import annotations

import json
import os
import re
from typing import Any, Optional

import httpx

from autodev.core.config import LLMConfig
from autodev.core.exceptions import ProviderError
from autodev.modules.base import Capability, CapabilityProvider, ModuleRequest, ModuleResponse

_PLAN_SYSTEM_PROMPT = (
    "You plan work for an autonomous development agent. Reply with JSON only: "
    '{"steps": [{"capability": "execute_tool", "operation": "run", '
    '"payload": {"command": "..."}, "paths": [], "parallel": false, "risk_score": 0.1}]}. '
    "Allowed capabilities: generate, analyze, execute_tool, query_knowledge."
)

_PROPOSAL_SYSTEM_PROMPT = (
    "You improve the configuration and strategy files of an autonomous agent. "
    "Given an improvement opportunity, reply with JSON only: "
    '{"changes": [{"path": "relative/path", "content": "full new file content"}], '
    '"rationale": "...", "risk_score": 0.0}. Never target core, safety or auth files.'
)


class LLMGateway(CapabilityProvider):
    """Chat-completions client exposing ``complete``, ``plan`` and ``propose_modification``."""

    name = "llm_gateway"
    capabilities = frozenset({Capability.GENERATE})
    idempotent_operations = frozenset({"complete", "plan", "propose_modification"})

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__()
        self.config = config or LLMConfig()
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY", "")
        self.base_url = self.config.base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.config.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    def invoke(self, request: ModuleRequest) -> ModuleResponse:
        payload = request.payload
        if request.operation == "complete":
            messages = payload.get("messages") or _messages(
                payload.get("system"), payload.get("prompt", "")
            )
            content, model, tokens = self._chat(messages, payload.get("model"))
            return ModuleResponse(data={"content": content, "model": model, "tokens": tokens})

        if request.operation == "plan":
            user = json.dumps(
                {"task": payload.get("task", {}), "context": payload.get("context", {})},
                default=str,
            )
            content, model, _ = self._chat(
                _messages(_PLAN_SYSTEM_PROMPT, user), payload.get("model"), json_mode=True
            )
            data = _parse_json_response(content)
            steps = data.get("steps")
            if not isinstance(steps, list):
                raise ProviderError("Plan response has no 'steps' list", retryable=True)
            return ModuleResponse(data={"steps": steps, "model": model})

        if request.operation == "propose_modification":
            user = json.dumps(payload.get("opportunity", {}), default=str)
            content, model, _ = self._chat(
                _messages(_PROPOSAL_SYSTEM_PROMPT, user), payload.get("model"), json_mode=True
            )
            data = _parse_json_response(content)
            if not isinstance(data.get("changes"), list) or not data["changes"]:
                raise ProviderError("Proposal response has no 'changes'", retryable=True)
            data["model"] = model
            return ModuleResponse(data=data)

        raise ProviderError(f"Unsupported generate operation: {request.operation}")

    def health(self) -> bool:
        return bool(self.api_key)

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def _chat(
        self,
        messages: list[dict[str, str]],
        model: Optional[str] = None,
        json_mode: bool = False,
    ) -> tuple[str, str, int]:
        """Send one chat completion request.

        Raises:
            ProviderError: 401/404 and malformed replies are not retryable;
                429, 5xx and network errors are.
        """
        if not self.api_key:
            raise ProviderError("OPENROUTER_API_KEY not set")

        body: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": messages,
            "temperature": self.config.default_temperature,
            "max_tokens": self.config.default_max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "autodev",
        }

        try:
            resp = self.client.post(f"{self.base_url}/chat/completions", json=body, headers=headers)
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            raise ProviderError(f"Network error: {e}", retryable=True) from e

        if resp.status_code == 401:
            raise ProviderError("Invalid API key")
        if resp.status_code == 404:
            raise ProviderError(f"Model not found: {body['model']}")
        if resp.status_code == 429:
            raise ProviderError("Rate limited", retryable=True)
        if resp.status_code >= 500:
            raise ProviderError(f"Server error {resp.status_code}", retryable=True)
        if resp.status_code >= 400:
            raise ProviderError(f"Request rejected with status {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Malformed completion response: {e}") from e

        used_model = data.get("model", body["model"])
        tokens = data.get("usage", {}).get("total_tokens", 0)
        self.logger.debug("LLM response: model=%s tokens=%d", used_model, tokens)
        return content, used_model, tokens


def _messages(system: Optional[str], user: str) -> list[dict[str, str]]:
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": user})
    return messages


def _parse_json_response(text: str) -> dict[str, Any]:
    """Parse JSON from LLM response, stripping markdown code fences if present."""
    cleaned = text.strip()

    # Strip markdown code fences
    fence_pattern = r"^```(?:json)?\s*\n?(.*?)\n?```$"
    match = re.match(fence_pattern, cleaned, re.DOTALL)
    if match:
        cleaned = match.group(1).strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ProviderError(
            f"Failed to parse JSON from LLM response: {e}\nRaw: {text[:500]}", retryable=True
        ) from e
    if not isinstance(data, dict):
        raise ProviderError("LLM response JSON is not an object", retryable=True)
    return data
