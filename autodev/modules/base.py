"""Abstract capability provider for the autodev module registry.

Every pluggable collaborator (LLM gateway, tool framework, knowledge store,
self-modification, self-tests) sits behind this one interface. The
orchestrator and improvement engine depend on it, never on a concrete
provider type.
"""

from __future__ import annotations

import enum
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


class Capability(str, enum.Enum):
    GENERATE = "generate"
    ANALYZE = "analyze"
    EXECUTE_TOOL = "execute_tool"
    QUERY_KNOWLEDGE = "query_knowledge"
    SELF_MODIFY = "self_modify"
    RUN_SELF_TESTS = "run_self_tests"


@dataclass
class ModuleRequest:
    """One call into a provider.

    ``cancel_event`` is set by the registry when the caller stops waiting;
    long-running providers should poll it and abandon work.
    """

    capability: Capability
    operation: str
    payload: dict[str, Any] = field(default_factory=dict)
    task_id: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class ModuleResponse:
    """Provider result. ``success=False`` is a reported failure, not an error."""

    success: bool = True
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    provider: str = ""
    attempts: int = 1
    duration_seconds: float = 0.0


class CapabilityProvider(ABC):
    """Base class for all capability providers.

    Subclasses declare ``capabilities`` and implement ``invoke()``. They
    raise ProviderError (with ``retryable`` set appropriately) for failed
    calls and receive dependencies via __init__ injection.
    """

    name: str = "provider"
    capabilities: frozenset[Capability] = frozenset()
    # Operations that may be retried safely after a failure
    idempotent_operations: frozenset[str] = frozenset()

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"autodev.modules.{self.name.lower()}")

    @abstractmethod
    def invoke(self, request: ModuleRequest) -> ModuleResponse:
        """Handle one request.

        Raises:
            ProviderError: If the call fails.
        """

    def health(self) -> bool:
        return True

    def is_idempotent(self, operation: str) -> bool:
        return operation in self.idempotent_operations

    def close(self) -> None:
        """Release resources. Called once at shutdown."""
