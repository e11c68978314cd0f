"""Shared fixtures for the autodev core tests.

Components are real; only capability providers are replaced by in-process
fakes so no test needs a network, an API key or a subprocess it does not
start itself.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import pytest
from dotenv import load_dotenv

# Load .env from project root so OPENROUTER_API_KEY etc. are available
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from autodev.core.config import AppConfig, load_config
from autodev.core.exceptions import ProviderError
from autodev.core.factory import AgentBundle, ComponentFactory
from autodev.improvement.analyzer import Observation, Opportunity, OpportunityAnalyzer
from autodev.modules.base import Capability, CapabilityProvider, ModuleRequest, ModuleResponse
from autodev.modules.registry import ModuleRegistry, RetryPolicy
from autodev.orchestrator.state_manager import StateManager
from autodev.storage.checkpoint_store import CheckpointStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

Handler = Callable[[ModuleRequest], Any]


class FakeProvider(CapabilityProvider):
    """Provider whose behaviour is a plain function of the request.

    The handler may return a ModuleResponse, a dict (used as ``data``),
    or None; it may also raise.
    """

    def __init__(
        self,
        capability: Capability | str,
        handler: Optional[Handler] = None,
        name: str = "fake",
        idempotent: Iterable[str] = (),
        healthy: bool = True,
    ):
        self.name = name
        self.capabilities = frozenset({Capability(capability)})
        self.idempotent_operations = frozenset(idempotent)
        super().__init__()
        self.handler = handler
        self.healthy = healthy
        self.calls: list[ModuleRequest] = []
        self.closed = False

    def invoke(self, request: ModuleRequest) -> ModuleResponse:
        self.calls.append(request)
        if self.handler is None:
            return ModuleResponse()
        result = self.handler(request)
        if isinstance(result, dict):
            return ModuleResponse(data=result)
        return result

    def health(self) -> bool:
        return self.healthy

    def close(self) -> None:
        self.closed = True

    @property
    def operations(self) -> list[str]:
        return [c.operation for c in self.calls]


class StaticAnalyzer(OpportunityAnalyzer):
    """Returns a fixed list of opportunities."""

    name = "static"

    def __init__(self, opportunities: list[Opportunity]):
        self.opportunities = opportunities
        self.observations: list[Observation] = []

    def find_opportunities(self, observation: Observation) -> list[Opportunity]:
        self.observations.append(observation)
        return list(self.opportunities)


def passing_tests(request: ModuleRequest) -> dict:
    return {"passed": True, "return_code": 0, "output": "1 passed"}


def failing_tests(request: ModuleRequest) -> ModuleResponse:
    return ModuleResponse(
        success=False,
        data={"passed": False, "return_code": 1, "output": "1 failed"},
        error="self-tests failed with exit code 1",
    )


def raising(message: str, retryable: bool = False) -> Handler:
    def handler(request: ModuleRequest) -> Any:
        raise ProviderError(message, retryable=retryable)
    return handler


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def test_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir, env="test")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> CheckpointStore:
    return CheckpointStore()


@pytest.fixture
def state_manager(store: CheckpointStore) -> StateManager:
    return StateManager(store)


@pytest.fixture
def registry():
    reg = ModuleRegistry(
        retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=0.0, max_delay_seconds=0.0),
        default_timeout=2.0,
        sleep=lambda seconds: None,
    )
    yield reg
    reg.close()


def _with_updates(config: AppConfig, **sections: dict[str, Any]) -> AppConfig:
    data = config.model_dump()
    for section, values in sections.items():
        data[section].update(values)
    return AppConfig(**data)


@pytest.fixture
def make_agent(test_config: AppConfig, workspace: Path):
    """Build a fully wired AgentBundle on a temp workspace.

    Keyword arguments are per-section config updates, e.g.
    ``make_agent(self_improvement={"auto_apply": True})``. The LLM gateway
    is never registered and self-tests pass unless replaced.
    """
    bundles: list[AgentBundle] = []

    def factory(**sections: dict[str, Any]) -> AgentBundle:
        config = _with_updates(test_config, **sections)
        bundle = ComponentFactory.create(config=config, workspace_dir=workspace)
        bundle.registry.unregister(Capability.GENERATE)
        bundle.registry.register(
            Capability.RUN_SELF_TESTS,
            FakeProvider(Capability.RUN_SELF_TESTS, passing_tests, name="fake_tests"),
            replace=True,
        )
        bundles.append(bundle)
        return bundle

    yield factory

    for bundle in bundles:
        ComponentFactory.close(bundle)
