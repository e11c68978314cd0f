"""Tests for autodev/modules/llm_gateway.py — uses httpx.MockTransport, no network."""

from __future__ import annotations

import json

import httpx
import pytest

from autodev.core.config import LLMConfig
from autodev.core.exceptions import ProviderError
from autodev.modules.base import Capability, ModuleRequest
from autodev.modules.llm_gateway import LLMGateway, _parse_json_response


def _completion(content: str, model: str = "test/model") -> dict:
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"total_tokens": 42},
    }


def _gateway(handler, api_key: str = "sk-test") -> tuple[LLMGateway, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    config = LLMConfig(base_url="https://llm.test/api/v1/", model="test/model")
    return LLMGateway(config=config, api_key=api_key, transport=httpx.MockTransport(recording)), seen


def _request(operation: str, **payload) -> ModuleRequest:
    return ModuleRequest(Capability.GENERATE, operation, payload)


class TestParseJsonResponse:
    def test_plain_json(self):
        assert _parse_json_response('{"key": "value"}') == {"key": "value"}

    def test_json_with_fences(self):
        assert _parse_json_response('```json\n{"key": "value"}\n```') == {"key": "value"}

    def test_invalid_json_is_retryable(self):
        with pytest.raises(ProviderError, match="Failed to parse JSON") as exc_info:
            _parse_json_response("not json at all")
        assert exc_info.value.retryable

    def test_non_object_rejected(self):
        with pytest.raises(ProviderError, match="not an object"):
            _parse_json_response("[1, 2]")


class TestComplete:
    def test_success(self):
        gateway, seen = _gateway(lambda r: httpx.Response(200, json=_completion("hello")))
        response = gateway.invoke(_request("complete", prompt="hi", system="be terse"))

        assert response.data == {"content": "hello", "model": "test/model", "tokens": 42}
        sent = seen[0]
        assert str(sent.url) == "https://llm.test/api/v1/chat/completions"
        assert sent.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(sent.content)
        assert body["messages"] == [
            {"role": "system", "content": "be terse"},
            {"role": "user", "content": "hi"},
        ]
        assert "response_format" not in body

    @pytest.mark.parametrize("status,retryable", [(429, True), (500, True), (503, True), (401, False), (404, False), (400, False)])
    def test_status_classification(self, status: int, retryable: bool):
        gateway, _ = _gateway(lambda r: httpx.Response(status, text="nope"))
        with pytest.raises(ProviderError) as exc_info:
            gateway.invoke(_request("complete", prompt="hi"))
        assert exc_info.value.retryable is retryable

    def test_network_error_is_retryable(self):
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        gateway, _ = _gateway(fail)
        with pytest.raises(ProviderError, match="Network error") as exc_info:
            gateway.invoke(_request("complete", prompt="hi"))
        assert exc_info.value.retryable

    def test_malformed_body(self):
        gateway, _ = _gateway(lambda r: httpx.Response(200, json={"choices": []}))
        with pytest.raises(ProviderError, match="Malformed"):
            gateway.invoke(_request("complete", prompt="hi"))

    def test_missing_key_never_calls_out(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        gateway, seen = _gateway(lambda r: httpx.Response(200, json=_completion("x")), api_key="")
        assert not gateway.health()
        with pytest.raises(ProviderError, match="OPENROUTER_API_KEY"):
            gateway.invoke(_request("complete", prompt="hi"))
        assert seen == []


class TestPlan:
    def test_fenced_plan(self):
        plan = {"steps": [{"capability": "execute_tool", "operation": "run", "payload": {"command": "ls"}}]}
        content = "```json\n" + json.dumps(plan) + "\n```"
        gateway, seen = _gateway(lambda r: httpx.Response(200, json=_completion(content)))

        response = gateway.invoke(_request("plan", task={"description": "list files"}))

        assert response.data["steps"] == plan["steps"]
        body = json.loads(seen[0].content)
        assert body["response_format"] == {"type": "json_object"}
        assert "list files" in body["messages"][-1]["content"]

    def test_plan_without_steps_is_retryable(self):
        gateway, _ = _gateway(lambda r: httpx.Response(200, json=_completion('{"thoughts": "hmm"}')))
        with pytest.raises(ProviderError, match="no 'steps'") as exc_info:
            gateway.invoke(_request("plan", task={}))
        assert exc_info.value.retryable


class TestProposeModification:
    def test_proposal(self):
        proposal = {
            "changes": [{"path": "strategies/retry.yaml", "content": "attempts: 5\n"}],
            "rationale": "fewer timeouts",
            "risk_score": 0.2,
        }
        gateway, _ = _gateway(lambda r: httpx.Response(200, json=_completion(json.dumps(proposal))))
        response = gateway.invoke(_request("propose_modification", opportunity={"kind": "timeouts"}))
        assert response.data["changes"] == proposal["changes"]
        assert response.data["model"] == "test/model"

    def test_empty_changes_rejected(self):
        gateway, _ = _gateway(lambda r: httpx.Response(200, json=_completion('{"changes": []}')))
        with pytest.raises(ProviderError, match="no 'changes'"):
            gateway.invoke(_request("propose_modification", opportunity={}))


class TestLifecycle:
    def test_unsupported_operation(self):
        gateway, _ = _gateway(lambda r: httpx.Response(200, json=_completion("x")))
        with pytest.raises(ProviderError, match="Unsupported"):
            gateway.invoke(_request("embed"))

    def test_close_is_repeatable(self):
        gateway, _ = _gateway(lambda r: httpx.Response(200, json=_completion("x")))
        gateway.invoke(_request("complete", prompt="hi"))
        gateway.close()
        gateway.close()
        assert gateway._client is None
